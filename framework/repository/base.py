"""
Generic repositories: typed CRUD and query composition over one session.

Staging operations (insert/update/delete and their bulk variants) only record
entries in the session's ChangeLog; nothing reaches the database until the
owning unit of work saves. Query operations perform I/O.
"""

from typing import Any, Generic, Iterable, List, Optional, Type, TypeVar, Union

from sqlalchemy import func, inspect as sa_inspect
from sqlmodel import Session, SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from framework.exceptions.errors import CancellationSignal, PreconditionError, raise_if_cancelled
from .changes import BulkConfig, ChangeKind, ChangeLog, has_identity
from .query import AsyncQuery, Filter, Include, OrderBy, Query

T = TypeVar("T", bound=SQLModel)


def is_entity_type(model: Any) -> bool:
    """True for mapped entity classes (SQLModel ``table=True`` models)."""
    if not isinstance(model, type):
        return False
    return sa_inspect(model, raiseerr=False) is not None


class _RepositoryBase(Generic[T]):
    def __init__(self, session: Any, model: Type[T]):
        """Initialize repository with session and model."""
        if session is None:
            raise PreconditionError("Session must be provided")
        if not is_entity_type(model):
            raise PreconditionError(f"{model!r} is not a mapped entity type")
        self.session = session
        self.model = model

    def __repr__(self) -> str:
        return f"<{type(self).__name__}[{self.model.__name__}]>"

    @property
    def changes(self) -> ChangeLog:
        """Staged changes shared by every repository of this session."""
        return ChangeLog.for_session(self.session)

    def _check_entity(self, entity: Any) -> None:
        if entity is None:
            raise PreconditionError("Entity must not be None")
        if not isinstance(entity, self.model):
            raise PreconditionError(
                f"{type(entity).__name__} cannot be staged through a {self.model.__name__} repository"
            )

    def _check_keyed(self, entity: Any) -> None:
        self._check_entity(entity)
        if not has_identity(entity):
            raise PreconditionError(f"{self.model.__name__} has no primary key value; insert it instead")

    def _as_list(self, entities: Union[T, Iterable[T]]) -> List[T]:
        # SQLModel instances are iterable (pydantic fields), so test the type first
        if isinstance(entities, self.model):
            return [entities]
        if entities is None:
            raise PreconditionError("Entities must not be None")
        return list(entities)

    def _stage_inserts(self, entities: Union[T, Iterable[T]]) -> None:
        batch = self._as_list(entities)
        for entity in batch:
            self._check_entity(entity)
        for entity in batch:
            self.changes.stage_added(entity)

    def _stage_update(self, entity: T) -> None:
        self._check_keyed(entity)
        self.changes.stage_modified(entity)

    def _stage_deletes(self, entities: Union[T, Iterable[T]]) -> None:
        batch = self._as_list(entities)
        for entity in batch:
            self._check_entity(entity)
            # an entity still staged for insertion is simply un-staged
            if self.changes.state_of(entity) is not ChangeKind.ADDED and not has_identity(entity):
                raise PreconditionError(f"{self.model.__name__} has no primary key value and is not staged")
        for entity in batch:
            self.changes.stage_removed(entity)

    def _stage_bulk(self, kind: ChangeKind, entities: Iterable[T], config: Optional[BulkConfig]) -> None:
        batch = self._as_list(entities)
        for entity in batch:
            if kind is ChangeKind.BULK_INSERTED:
                self._check_entity(entity)
            else:
                self._check_keyed(entity)
        if batch:
            self.changes.stage_bulk(kind, self.model, batch, config or BulkConfig())

    def _count_statement(self, filter: Optional[Filter]):
        statement = select(func.count()).select_from(self.model)
        if filter is not None:
            statement = statement.where(*filter) if isinstance(filter, (list, tuple)) else statement.where(filter)
        return statement


class Repository(_RepositoryBase[T]):
    """Generic blocking repository bound to one Session."""

    session: Session

    # Create ------------------------------------------------------------
    def insert(self, entities: Union[T, Iterable[T]]) -> None:
        """Stage one entity or a list of entities for insertion."""
        self._stage_inserts(entities)

    def bulk_insert(self, entities: Iterable[T], config: Optional[BulkConfig] = None) -> None:
        """Stage a batched, set-based insert. Applied at save time like insert()."""
        self._stage_bulk(ChangeKind.BULK_INSERTED, entities, config)

    # Read --------------------------------------------------------------
    def get_queryable(
        self,
        filter: Optional[Filter] = None,
        order_by: Optional[OrderBy] = None,
        include: Optional[Include] = None,
        is_read_only: bool = False,
    ) -> Query[T]:
        """Lazy query: include, tracking, filter and order_by applied in that order."""
        return Query.build(self.session, self.model, filter, order_by, include, is_read_only)

    def get_list(
        self,
        filter: Optional[Filter] = None,
        order_by: Optional[OrderBy] = None,
        include: Optional[Include] = None,
        is_read_only: bool = False,
    ) -> List[T]:
        return self.get_queryable(filter, order_by, include, is_read_only).all()

    def get_single(self, filter: Filter, include: Optional[Include] = None, is_read_only: bool = False) -> Optional[T]:
        """Return the only match, None when nothing matches, MultipleResultsError otherwise."""
        if filter is None:
            raise PreconditionError("get_single requires a filter")
        return self.get_queryable(filter, None, include, is_read_only).one_or_none()

    def get_by_id(self, id: Any, is_read_only: bool = False) -> Optional[T]:
        """Get entity by primary key."""
        with self.session.no_autoflush:
            if is_read_only:
                with Session(bind=self.session.connection()) as scratch:
                    return scratch.get(self.model, id)
            return self.session.get(self.model, id)

    def count(self, filter: Optional[Filter] = None) -> int:
        """Count entities matching filter."""
        with self.session.no_autoflush:
            return self.session.exec(self._count_statement(filter)).one()

    def exists(self, filter: Filter) -> bool:
        return self.get_queryable(filter).first() is not None

    # Update ------------------------------------------------------------
    def update(self, entity: T) -> None:
        """Stage a full-row update: every column is written on save."""
        self._stage_update(entity)

    def bulk_update(self, entities: Iterable[T], config: Optional[BulkConfig] = None) -> None:
        self._stage_bulk(ChangeKind.BULK_UPDATED, entities, config)

    # Delete ------------------------------------------------------------
    def delete(self, entities: Union[T, Iterable[T]]) -> None:
        """Stage one entity or a list of entities for removal."""
        self._stage_deletes(entities)

    def bulk_delete(self, entities: Iterable[T], config: Optional[BulkConfig] = None) -> None:
        self._stage_bulk(ChangeKind.BULK_REMOVED, entities, config)


class AsyncRepository(_RepositoryBase[T]):
    """
    Generic repository bound to one AsyncSession.

    Every method accepts an optional cancellation signal, checked before any
    state is touched: a cancelled call raises OperationCancelled and stages
    nothing.
    """

    session: AsyncSession

    # Create ------------------------------------------------------------
    async def insert(self, entities: Union[T, Iterable[T]], cancel: Optional[CancellationSignal] = None) -> None:
        raise_if_cancelled(cancel)
        self._stage_inserts(entities)

    async def bulk_insert(
        self,
        entities: Iterable[T],
        config: Optional[BulkConfig] = None,
        cancel: Optional[CancellationSignal] = None,
    ) -> None:
        raise_if_cancelled(cancel)
        self._stage_bulk(ChangeKind.BULK_INSERTED, entities, config)

    # Read --------------------------------------------------------------
    def get_queryable(
        self,
        filter: Optional[Filter] = None,
        order_by: Optional[OrderBy] = None,
        include: Optional[Include] = None,
        is_read_only: bool = False,
        cancel: Optional[CancellationSignal] = None,
    ) -> AsyncQuery[T]:
        raise_if_cancelled(cancel)
        return AsyncQuery.build(self.session, self.model, filter, order_by, include, is_read_only)

    async def get_list(
        self,
        filter: Optional[Filter] = None,
        order_by: Optional[OrderBy] = None,
        include: Optional[Include] = None,
        is_read_only: bool = False,
        cancel: Optional[CancellationSignal] = None,
    ) -> List[T]:
        return await self.get_queryable(filter, order_by, include, is_read_only, cancel).all(cancel)

    async def get_single(
        self,
        filter: Filter,
        include: Optional[Include] = None,
        is_read_only: bool = False,
        cancel: Optional[CancellationSignal] = None,
    ) -> Optional[T]:
        if filter is None:
            raise PreconditionError("get_single requires a filter")
        return await self.get_queryable(filter, None, include, is_read_only, cancel).one_or_none(cancel)

    async def get_by_id(
        self, id: Any, is_read_only: bool = False, cancel: Optional[CancellationSignal] = None
    ) -> Optional[T]:
        raise_if_cancelled(cancel)
        with self.session.sync_session.no_autoflush:
            if is_read_only:
                connection = await self.session.connection()
                async with AsyncSession(bind=connection) as scratch:
                    return await scratch.get(self.model, id)
            return await self.session.get(self.model, id)

    async def count(self, filter: Optional[Filter] = None, cancel: Optional[CancellationSignal] = None) -> int:
        raise_if_cancelled(cancel)
        with self.session.sync_session.no_autoflush:
            result = await self.session.exec(self._count_statement(filter))
            return result.one()

    async def exists(self, filter: Filter, cancel: Optional[CancellationSignal] = None) -> bool:
        return await self.get_queryable(filter, cancel=cancel).first(cancel) is not None

    # Update ------------------------------------------------------------
    async def update(self, entity: T, cancel: Optional[CancellationSignal] = None) -> None:
        raise_if_cancelled(cancel)
        self._stage_update(entity)

    async def bulk_update(
        self,
        entities: Iterable[T],
        config: Optional[BulkConfig] = None,
        cancel: Optional[CancellationSignal] = None,
    ) -> None:
        raise_if_cancelled(cancel)
        self._stage_bulk(ChangeKind.BULK_UPDATED, entities, config)

    # Delete ------------------------------------------------------------
    async def delete(self, entities: Union[T, Iterable[T]], cancel: Optional[CancellationSignal] = None) -> None:
        raise_if_cancelled(cancel)
        self._stage_deletes(entities)

    async def bulk_delete(
        self,
        entities: Iterable[T],
        config: Optional[BulkConfig] = None,
        cancel: Optional[CancellationSignal] = None,
    ) -> None:
        raise_if_cancelled(cancel)
        self._stage_bulk(ChangeKind.BULK_REMOVED, entities, config)
