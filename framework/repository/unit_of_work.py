"""
Unit of Work: owns the session, hands out repositories and manages transaction boundaries.

State machine: IDLE --begin_transaction--> IN_TRANSACTION --commit/rollback--> IDLE.
At most one explicit transaction is live per unit of work. save_changes() applies
the staged change log; outside an explicit transaction each call commits on its
own, inside one it only flushes.

A unit of work is meant for a single logical operation (one request) and is not
safe for concurrent use.
"""

from contextlib import asynccontextmanager, contextmanager
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from sqlmodel import Session
from sqlmodel.ext.asyncio.session import AsyncSession

from framework.config import settings
from framework.exceptions.errors import (
    CancellationSignal,
    NoActiveTransactionError,
    PreconditionError,
    TransactionAlreadyActiveError,
    UnitOfWorkDisposedError,
    raise_if_cancelled,
)
from framework.logging.logger import get_logger
from .base import AsyncRepository, Repository, is_entity_type
from .changes import ChangeLog, apply_changes

logger = get_logger("unit_of_work")


class TransactionState(str, Enum):
    IDLE = "idle"
    IN_TRANSACTION = "in_transaction"


class IsolationLevel(str, Enum):
    READ_UNCOMMITTED = "READ UNCOMMITTED"
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"

    @classmethod
    def parse(cls, value: Union["IsolationLevel", str]) -> "IsolationLevel":
        """Accept a member, its value ("READ COMMITTED") or its name ("READ_COMMITTED")."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return cls[normalized]
        except KeyError:
            raise PreconditionError(f"Unknown isolation level: {value!r}") from None


def _has_pending_writes(session: Any) -> bool:
    return bool(session.new or session.dirty or session.deleted)


class _UnitOfWorkBase:
    repository_class: type = Repository

    def __init__(
        self,
        session: Any = None,
        repositories: Optional[Mapping[type, type]] = None,
        default_isolation_level: Union[IsolationLevel, str, None] = None,
    ):
        """Initialize UnitOfWork; session must be provided (e.g. UnitOfWork.from_session())."""
        if session is None:
            raise PreconditionError("Session must be provided. Use UnitOfWork.from_session() or pass session explicitly.")

        self.session = session
        self.default_isolation_level = IsolationLevel.parse(
            default_isolation_level or settings.DEFAULT_ISOLATION_LEVEL
        )
        self._factories = self._resolve_factories(repositories or {})
        self._repositories: Dict[type, Any] = {}
        self._transaction = None
        self._disposed = False

    def _resolve_factories(self, repositories: Mapping[type, type]) -> Dict[type, type]:
        """Validate the custom repository registry once, up front."""
        factories = {}
        for model, repository_class in repositories.items():
            if not is_entity_type(model):
                raise PreconditionError(f"{model!r} is not a mapped entity type")
            if not (isinstance(repository_class, type) and issubclass(repository_class, self.repository_class)):
                raise PreconditionError(
                    f"{repository_class!r} must subclass {self.repository_class.__name__}"
                )
            factories[model] = repository_class
        return factories

    @property
    def state(self) -> TransactionState:
        return TransactionState.IN_TRANSACTION if self._transaction is not None else TransactionState.IDLE

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def changes(self) -> ChangeLog:
        return ChangeLog.for_session(self.session)

    def _ensure_active(self) -> None:
        if self._disposed:
            raise UnitOfWorkDisposedError("Unit of work has been disposed")

    def _require_transaction(self):
        if self._transaction is None:
            raise NoActiveTransactionError()
        return self._transaction

    def _require_idle(self) -> None:
        if self._transaction is not None:
            raise TransactionAlreadyActiveError()

    def get_repository(self, model: type):
        """Get or create the repository for ``model`` (cached). None if ``model`` is not an entity type."""
        self._ensure_active()
        repository = self._repositories.get(model)
        if repository is not None:
            return repository
        if not is_entity_type(model):
            logger.warning(f"Cannot build a repository for {model!r}: not a mapped entity type")
            return None
        factory = self._factories.get(model)
        repository = factory(self.session) if factory is not None else self.repository_class(self.session, model)
        self._repositories[model] = repository
        return repository


class UnitOfWork(_UnitOfWorkBase):
    """Blocking unit of work over a Session."""

    repository_class = Repository
    session: Session

    @classmethod
    def from_session(cls, session: Session, **kwargs) -> "UnitOfWork":
        """Create UnitOfWork from an existing session."""
        return cls(session=session, **kwargs)

    @classmethod
    def from_factory(cls, session_factory, **kwargs) -> "UnitOfWork":
        """Create UnitOfWork owning a fresh session from ``session_factory``."""
        return cls(session=session_factory(), **kwargs)

    # Transactions -------------------------------------------------------
    def begin_transaction(self, isolation_level: Union[IsolationLevel, str, None] = None) -> None:
        """Start an explicit transaction. TransactionAlreadyActiveError if one is live."""
        self._ensure_active()
        self._require_idle()
        level = IsolationLevel.parse(isolation_level or self.default_isolation_level)

        if self.session.in_transaction():
            if _has_pending_writes(self.session):
                logger.warning(
                    f"Adopting implicit transaction with pending tracked changes; isolation level {level.value} not applied"
                )
                self._transaction = self.session.get_transaction()
                return
            # reads since the last save left an implicit transaction open
            self.session.commit()

        transaction = self.session.begin()
        try:
            self.session.connection(execution_options={"isolation_level": level.value})
        except BaseException:
            transaction.rollback()
            raise
        self._transaction = transaction
        logger.debug(f"Transaction started ({level.value})")

    def commit_transaction(self) -> None:
        """Commit the explicit transaction. NoActiveTransactionError when idle."""
        self._ensure_active()
        transaction = self._require_transaction()
        try:
            transaction.commit()
        except BaseException:
            logger.warning("Commit failed, rolling back transaction")
            self._transaction = None
            self.session.rollback()
            raise
        self._transaction = None
        logger.debug("Transaction committed")

    def rollback_transaction(self) -> None:
        """Roll back the explicit transaction and discard staged changes."""
        self._ensure_active()
        transaction = self._require_transaction()
        try:
            transaction.rollback()
        finally:
            self._transaction = None
            self.changes.clear()
        logger.debug("Transaction rolled back")

    @contextmanager
    def transaction(self, isolation_level: Union[IsolationLevel, str, None] = None):
        """Begin; commit on success, roll back and re-raise on error."""
        self.begin_transaction(isolation_level)
        try:
            yield self
        except BaseException:
            if self._transaction is not None:
                self.rollback_transaction()
            raise
        self.commit_transaction()

    # Saving ---------------------------------------------------------------
    def save_changes(self, create_inner_transaction: bool = False) -> int:
        """
        Apply the staged change log and return the number of entries applied.

        Idle: the flush is committed on its own (atomic for this call only).
        Inside an explicit transaction: flushed into it, committed or rolled
        back with it. create_inner_transaction=True wraps the flush in its own
        begin/commit and is rejected while an explicit transaction is live.
        On failure any transaction this call opened is rolled back, the staged
        log is kept, and the error is re-raised.
        """
        self._ensure_active()
        changes = self.changes

        if create_inner_transaction:
            if self._transaction is not None:
                raise TransactionAlreadyActiveError(
                    "save_changes(create_inner_transaction=True) cannot run inside an explicit transaction"
                )
            self.begin_transaction()
            try:
                applied = apply_changes(self.session, changes)
                self.commit_transaction()
            except BaseException:
                self._abandon_transaction()
                raise
        elif self._transaction is not None:
            applied = apply_changes(self.session, changes)
        else:
            try:
                applied = apply_changes(self.session, changes)
                self.session.commit()
            except BaseException:
                logger.warning("Save failed, rolling back")
                self.session.rollback()
                raise

        changes.clear()
        logger.debug(f"Saved {applied} staged change(s)")
        return applied

    def _abandon_transaction(self) -> None:
        """Roll back a transaction opened by a failing call, keeping staged changes."""
        if self._transaction is not None:
            logger.warning("Save failed, rolling back transaction")
            transaction, self._transaction = self._transaction, None
            transaction.rollback()

    # Lifetime -------------------------------------------------------------
    def dispose(self) -> None:
        """Roll back (never commit) a live transaction, then close the session. Idempotent."""
        if self._disposed:
            return
        self._disposed = True
        try:
            if self._transaction is not None:
                logger.warning("Disposing unit of work with an open transaction; rolling back")
                transaction, self._transaction = self._transaction, None
                transaction.rollback()
        finally:
            self._repositories.clear()
            self.session.close()

    close = dispose

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.dispose()


class AsyncUnitOfWork(_UnitOfWorkBase):
    """Unit of work over an AsyncSession. I/O methods accept an optional cancellation signal."""

    repository_class = AsyncRepository
    session: AsyncSession

    @classmethod
    async def from_session(cls, session: AsyncSession, **kwargs) -> "AsyncUnitOfWork":
        """Create UnitOfWork from an existing session."""
        return cls(session=session, **kwargs)

    @classmethod
    def from_factory(cls, session_factory, **kwargs) -> "AsyncUnitOfWork":
        return cls(session=session_factory(), **kwargs)

    async def get_repository_async(self, model: type, cancel: Optional[CancellationSignal] = None):
        raise_if_cancelled(cancel)
        return self.get_repository(model)

    # Transactions -------------------------------------------------------
    async def begin_transaction(
        self,
        isolation_level: Union[IsolationLevel, str, None] = None,
        cancel: Optional[CancellationSignal] = None,
    ) -> None:
        self._ensure_active()
        self._require_idle()
        raise_if_cancelled(cancel)
        level = IsolationLevel.parse(isolation_level or self.default_isolation_level)

        if self.session.in_transaction():
            if _has_pending_writes(self.session):
                logger.warning(
                    f"Adopting implicit transaction with pending tracked changes; isolation level {level.value} not applied"
                )
                self._transaction = self.session.get_transaction()
                return
            await self.session.commit()

        transaction = await self.session.begin()
        try:
            await self.session.connection(execution_options={"isolation_level": level.value})
        except BaseException:
            await transaction.rollback()
            raise
        self._transaction = transaction
        logger.debug(f"Transaction started ({level.value})")

    async def commit_transaction(self, cancel: Optional[CancellationSignal] = None) -> None:
        self._ensure_active()
        transaction = self._require_transaction()
        raise_if_cancelled(cancel)
        try:
            await transaction.commit()
        except BaseException:
            logger.warning("Commit failed, rolling back transaction")
            self._transaction = None
            await self.session.rollback()
            raise
        self._transaction = None
        logger.debug("Transaction committed")

    async def rollback_transaction(self, cancel: Optional[CancellationSignal] = None) -> None:
        self._ensure_active()
        transaction = self._require_transaction()
        raise_if_cancelled(cancel)
        try:
            await transaction.rollback()
        finally:
            self._transaction = None
            self.changes.clear()
        logger.debug("Transaction rolled back")

    @asynccontextmanager
    async def transaction(self, isolation_level: Union[IsolationLevel, str, None] = None):
        await self.begin_transaction(isolation_level)
        try:
            yield self
        except BaseException:
            if self._transaction is not None:
                await self.rollback_transaction()
            raise
        await self.commit_transaction()

    # Saving ---------------------------------------------------------------
    async def save_changes(
        self,
        create_inner_transaction: bool = False,
        cancel: Optional[CancellationSignal] = None,
    ) -> int:
        """Async save_changes(); see UnitOfWork.save_changes. Cancellation also rolls back."""
        self._ensure_active()
        raise_if_cancelled(cancel)
        changes = self.changes

        if create_inner_transaction:
            if self._transaction is not None:
                raise TransactionAlreadyActiveError(
                    "save_changes(create_inner_transaction=True) cannot run inside an explicit transaction"
                )
            await self.begin_transaction()
            try:
                raise_if_cancelled(cancel)
                applied = await self.session.run_sync(apply_changes, changes)
                await self.commit_transaction(cancel)
            except BaseException:
                await self._abandon_transaction()
                raise
        elif self._transaction is not None:
            applied = await self.session.run_sync(apply_changes, changes)
        else:
            try:
                applied = await self.session.run_sync(apply_changes, changes)
                await self.session.commit()
            except BaseException:
                logger.warning("Save failed, rolling back")
                await self.session.rollback()
                raise

        changes.clear()
        logger.debug(f"Saved {applied} staged change(s)")
        return applied

    async def _abandon_transaction(self) -> None:
        if self._transaction is not None:
            logger.warning("Save failed, rolling back transaction")
            transaction, self._transaction = self._transaction, None
            await transaction.rollback()

    # Lifetime -------------------------------------------------------------
    async def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        try:
            if self._transaction is not None:
                logger.warning("Disposing unit of work with an open transaction; rolling back")
                transaction, self._transaction = self._transaction, None
                await transaction.rollback()
        finally:
            self._repositories.clear()
            await self.session.close()

    close = dispose

    async def __aenter__(self) -> "AsyncUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.dispose()
