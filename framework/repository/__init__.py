"""
Repository pattern: data access abstraction, decouples service layer from database session.
"""

from .base import AsyncRepository, Repository, is_entity_type
from .changes import BulkConfig, ChangeKind, ChangeLog
from .query import AsyncQuery, Query
from .unit_of_work import AsyncUnitOfWork, IsolationLevel, TransactionState, UnitOfWork

__all__ = [
    "AsyncQuery",
    "AsyncRepository",
    "AsyncUnitOfWork",
    "BulkConfig",
    "ChangeKind",
    "ChangeLog",
    "IsolationLevel",
    "Query",
    "Repository",
    "TransactionState",
    "UnitOfWork",
    "is_entity_type",
]
