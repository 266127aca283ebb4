"""
Staged change log: the pending writes of one session.

Repositories never touch the session's own change tracking when staging. Each
insert/update/delete is recorded here as a tagged entry (ADDED, MODIFIED,
REMOVED, or one of the bulk kinds) and the whole log is applied in order, inside
one flush, when the unit of work saves.

The log lives in ``session.info`` so every repository bound to the same session
shares a single instance by reference.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import delete, inspect as sa_inspect, tuple_, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from framework.config import settings
from framework.exceptions.errors import EntityNotFoundError, PreconditionError


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"
    BULK_INSERTED = "bulk_inserted"
    BULK_UPDATED = "bulk_updated"
    BULK_REMOVED = "bulk_removed"

    @property
    def is_bulk(self) -> bool:
        return self.name.startswith("BULK_")


@dataclass
class BulkConfig:
    """Tuning knobs for bulk operations."""

    batch_size: int = field(default_factory=lambda: settings.BULK_BATCH_SIZE)
    # Write database-generated keys back into inserted entities
    set_output_identity: bool = False
    # Columns left untouched by bulk update
    properties_to_exclude: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise PreconditionError(f"batch_size must be positive, got {self.batch_size}")
        self.properties_to_exclude = tuple(self.properties_to_exclude)


@dataclass
class StagedChange:
    kind: ChangeKind
    model: type
    # A single entity, or the list of entities for bulk kinds
    target: Any
    config: Optional[BulkConfig] = None


def has_identity(entity: Any) -> bool:
    """True when the entity is persistent/detached or carries a full primary key."""
    state = sa_inspect(entity)
    if state.key is not None:
        return True
    return all(value is not None for value in state.mapper.primary_key_from_instance(entity))


class ChangeLog:
    INFO_KEY = "staged_changes"

    def __init__(self) -> None:
        self._entries: List[StagedChange] = []
        # id(entity) -> entry, for single-entity kinds only
        self._by_entity: Dict[int, StagedChange] = {}

    @classmethod
    def for_session(cls, session: Any) -> "ChangeLog":
        """Return the log attached to ``session``, creating it on first use."""
        info = getattr(session, "sync_session", session).info
        log = info.get(cls.INFO_KEY)
        if log is None:
            log = info[cls.INFO_KEY] = cls()
        return log

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[StagedChange]:
        return iter(list(self._entries))

    def __bool__(self) -> bool:
        return bool(self._entries)

    @property
    def entries(self) -> Tuple[StagedChange, ...]:
        return tuple(self._entries)

    def state_of(self, entity: Any) -> Optional[ChangeKind]:
        entry = self._by_entity.get(id(entity))
        return entry.kind if entry is not None else None

    # Registration --------------------------------------------------------
    def stage_added(self, entity: Any) -> None:
        entry = self._by_entity.get(id(entity))
        if entry is None:
            self._append(StagedChange(ChangeKind.ADDED, type(entity), entity))
        elif entry.kind is ChangeKind.REMOVED:
            # re-adding a removed entity cancels the removal
            self._discard(entry)

    def stage_modified(self, entity: Any) -> None:
        entry = self._by_entity.get(id(entity))
        if entry is None:
            self._append(StagedChange(ChangeKind.MODIFIED, type(entity), entity))
        elif entry.kind is ChangeKind.REMOVED:
            entry.kind = ChangeKind.MODIFIED
        # ADDED already writes every column; MODIFIED is already staged

    def stage_removed(self, entity: Any) -> None:
        entry = self._by_entity.get(id(entity))
        if entry is None:
            self._append(StagedChange(ChangeKind.REMOVED, type(entity), entity))
        elif entry.kind is ChangeKind.ADDED and sa_inspect(entity).key is None:
            # never persisted (a caller-assigned key included), nothing to delete
            self._discard(entry)
        else:
            entry.kind = ChangeKind.REMOVED

    def stage_bulk(self, kind: ChangeKind, model: type, entities: Sequence[Any], config: BulkConfig) -> None:
        if not kind.is_bulk:
            raise PreconditionError(f"{kind} is not a bulk change kind")
        self._entries.append(StagedChange(kind, model, list(entities), config))

    def clear(self) -> None:
        self._entries.clear()
        self._by_entity.clear()

    def _append(self, entry: StagedChange) -> None:
        self._entries.append(entry)
        self._by_entity[id(entry.target)] = entry

    def _discard(self, entry: StagedChange) -> None:
        self._entries.remove(entry)
        self._by_entity.pop(id(entry.target), None)


# Application -------------------------------------------------------------
def apply_changes(session: Session, log: ChangeLog) -> int:
    """
    Apply every staged entry to ``session`` in order and flush.

    Runs against a blocking Session; the async unit of work calls it through
    ``AsyncSession.run_sync``. Returns the number of entries applied. The log
    itself is left untouched; the caller clears it once the save is durable.
    """
    applied = 0
    for entry in log:
        if entry.kind is ChangeKind.ADDED:
            session.add(entry.target)
        elif entry.kind is ChangeKind.MODIFIED:
            _mark_all_modified(_attach(session, entry.target))
        elif entry.kind is ChangeKind.REMOVED:
            session.delete(_attach(session, entry.target))
        else:
            # Set-based statements bypass the unit of work, so pending single
            # entries staged before this one are written first.
            session.flush()
            if entry.kind is ChangeKind.BULK_INSERTED:
                _bulk_insert(session, entry)
            elif entry.kind is ChangeKind.BULK_UPDATED:
                _bulk_update(session, entry)
            else:
                _bulk_delete(session, entry)
        applied += 1
    session.flush()
    return applied


def _attach(session: Session, entity: Any) -> Any:
    """Return the instance of ``entity`` that ``session`` tracks."""
    if entity in session:
        return entity
    state = sa_inspect(entity)
    if state.detached:
        session.add(entity)
        return entity
    target = session.merge(entity)
    if sa_inspect(target).pending:
        session.expunge(target)
        key = state.mapper.primary_key_from_instance(entity)
        raise EntityNotFoundError(f"{type(entity).__name__} with key {tuple(key)} does not exist")
    return target


def _mark_all_modified(entity: Any) -> None:
    """Force every loaded non-key column into the next UPDATE."""
    state = sa_inspect(entity)
    pk_keys = {state.mapper.get_property_by_column(col).key for col in state.mapper.primary_key}
    for attr in state.mapper.column_attrs:
        if attr.key in pk_keys or attr.key not in state.dict:
            continue
        flag_modified(entity, attr.key)


def _batches(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _bulk_insert(session: Session, entry: StagedChange) -> None:
    for batch in _batches(entry.target, entry.config.batch_size):
        session.bulk_save_objects(batch, return_defaults=entry.config.set_output_identity)


def _bulk_update(session: Session, entry: StagedChange) -> None:
    mapper = sa_inspect(entry.model)
    pk_keys = {mapper.get_property_by_column(col).key for col in mapper.primary_key}
    excluded = set(entry.config.properties_to_exclude) - pk_keys
    keys = [attr.key for attr in mapper.column_attrs if attr.key not in excluded]
    for batch in _batches(entry.target, entry.config.batch_size):
        rows = [{key: getattr(entity, key) for key in keys} for entity in batch]
        session.execute(update(entry.model), rows)


def _bulk_delete(session: Session, entry: StagedChange) -> None:
    mapper = sa_inspect(entry.model)
    pk_columns = list(mapper.primary_key)
    for batch in _batches(entry.target, entry.config.batch_size):
        keys = [tuple(mapper.primary_key_from_instance(entity)) for entity in batch]
        if len(pk_columns) == 1:
            criterion = pk_columns[0].in_([key[0] for key in keys])
        else:
            criterion = tuple_(*pk_columns).in_(keys)
        session.execute(
            delete(entry.model).where(criterion).execution_options(synchronize_session=False)
        )
        for entity in batch:
            if entity in session:
                session.expunge(entity)
