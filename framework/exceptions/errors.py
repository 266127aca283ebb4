"""
Data access error taxonomy.

Every failure raised by the repository, unit of work and cache layers derives
from DataAccessError. Storage errors (SQLAlchemy, redis) are not wrapped; they
propagate unchanged after any transaction opened by the failing call is rolled
back.
"""

from typing import Optional, Protocol


class CancellationSignal(Protocol):
    """Anything exposing is_set(), e.g. asyncio.Event or threading.Event."""

    def is_set(self) -> bool: ...


class DataAccessError(Exception):
    """Base class for data access errors."""


class PreconditionError(DataAccessError, ValueError):
    """A required argument is missing or invalid."""


class UnitOfWorkDisposedError(PreconditionError):
    """The unit of work was used after dispose()."""


class TransactionStateError(DataAccessError):
    """Transaction control called in the wrong state. Programmer error, never retried."""


class TransactionAlreadyActiveError(TransactionStateError):
    def __init__(self, message: str = "A transaction is already active for this unit of work"):
        super().__init__(message)


class NoActiveTransactionError(TransactionStateError):
    def __init__(self, message: str = "No active transaction for this unit of work"):
        super().__init__(message)


class MultipleResultsError(DataAccessError):
    """A single-row fetch matched more than one row."""


class EntityNotFoundError(DataAccessError):
    """A staged update/delete targets a row that does not exist."""


class OperationCancelled(DataAccessError):
    """The cancellation signal was set before the operation started."""

    def __init__(self, message: str = "Operation was cancelled"):
        super().__init__(message)


def raise_if_cancelled(cancel: Optional[CancellationSignal]) -> None:
    """Check-then-act cancellation: raise before any state is touched."""
    if cancel is not None and cancel.is_set():
        raise OperationCancelled()
