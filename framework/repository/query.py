"""
Lazy, composable queries returned by Repository.get_queryable().

A query wraps a SQLAlchemy Select. Nothing is executed until the query is
enumerated, and every enumeration executes the statement exactly once.
Read-only queries load into a scratch session bound to the owning session's
connection: they see the same transaction but the loaded objects are never
tracked, so mutating them has no effect on the next save.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Callable, Generic, Iterator, List, Optional, Sequence, TypeVar, Union

from sqlalchemy import Select
from sqlalchemy.sql import ClauseElement
from sqlalchemy.sql.base import ExecutableOption
from sqlmodel import Session, SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from framework.exceptions.errors import CancellationSignal, MultipleResultsError, raise_if_cancelled

T = TypeVar("T", bound=SQLModel)

StatementFn = Callable[[Select], Select]
# A boolean SQL expression (Side.name == "Light") or several of them
Filter = Union[Any, Sequence[Any]]
# A callable over the statement, or one or more ordering expressions
OrderBy = Union[StatementFn, Any, Sequence[Any]]
# A callable over the statement, or one or more loader options (selectinload(...))
Include = Union[StatementFn, ExecutableOption, Sequence[ExecutableOption]]


def _is_expression(value: Any) -> bool:
    return isinstance(value, ClauseElement) or hasattr(value, "__clause_element__")


def apply_include(statement: Select, include: Include) -> Select:
    if isinstance(include, ExecutableOption):
        return statement.options(include)
    if isinstance(include, (list, tuple)):
        return statement.options(*include)
    return include(statement)


def apply_filter(statement: Select, filter: Filter) -> Select:
    if isinstance(filter, (list, tuple)):
        return statement.where(*filter)
    return statement.where(filter)


def apply_order_by(statement: Select, order_by: OrderBy) -> Select:
    if isinstance(order_by, (list, tuple)):
        return statement.order_by(*order_by)
    if _is_expression(order_by):
        return statement.order_by(order_by)
    return order_by(statement)


class _BaseQuery(Generic[T]):
    def __init__(self, session: Any, model: type, statement: Optional[Select] = None, is_read_only: bool = False):
        self.session = session
        self.model = model
        self.statement = statement if statement is not None else select(model)
        self.is_read_only = is_read_only

    @classmethod
    def build(
        cls,
        session: Any,
        model: type,
        filter: Optional[Filter] = None,
        order_by: Optional[OrderBy] = None,
        include: Optional[Include] = None,
        is_read_only: bool = False,
    ):
        """include, then tracking, then filter, then order_by."""
        statement = select(model)
        if include is not None:
            statement = apply_include(statement, include)
        query = cls(session, model, statement, is_read_only=is_read_only)
        if filter is not None:
            query = query._replace(apply_filter(query.statement, filter))
        if order_by is not None:
            query = query._replace(apply_order_by(query.statement, order_by))
        return query

    def _replace(self, statement: Select):
        return type(self)(self.session, self.model, statement, is_read_only=self.is_read_only)

    def where(self, *criteria):
        return self._replace(self.statement.where(*criteria))

    def order_by(self, *clauses):
        return self._replace(self.statement.order_by(*clauses))

    def options(self, *options):
        return self._replace(self.statement.options(*options))

    def limit(self, limit: Optional[int]):
        return self._replace(self.statement.limit(limit))

    def __repr__(self) -> str:
        mode = "read-only" if self.is_read_only else "tracked"
        return f"<{type(self).__name__} {self.model.__name__} ({mode})>"

    @staticmethod
    def _single(rows: List[T]) -> Optional[T]:
        if len(rows) > 1:
            raise MultipleResultsError("Query matched more than one row")
        return rows[0] if rows else None


class Query(_BaseQuery[T]):
    """Blocking query over a Session."""

    session: Session

    def _execute(self) -> List[T]:
        with self.session.no_autoflush:
            if self.is_read_only:
                with Session(bind=self.session.connection()) as scratch:
                    return list(scratch.exec(self.statement).unique().all())
            return list(self.session.exec(self.statement).unique().all())

    def __iter__(self) -> Iterator[T]:
        return iter(self._execute())

    def all(self) -> List[T]:
        return self._execute()

    def first(self) -> Optional[T]:
        rows = self.limit(1)._execute()
        return rows[0] if rows else None

    def one_or_none(self) -> Optional[T]:
        return self._single(self.limit(2)._execute())


class AsyncQuery(_BaseQuery[T]):
    """Query over an AsyncSession; enumerate with ``async for`` or ``await query.all()``."""

    session: AsyncSession

    async def _execute(self, cancel: Optional[CancellationSignal] = None) -> List[T]:
        raise_if_cancelled(cancel)
        with self.session.sync_session.no_autoflush:
            if self.is_read_only:
                connection = await self.session.connection()
                async with AsyncSession(bind=connection) as scratch:
                    result = await scratch.exec(self.statement)
                    return list(result.unique().all())
            result = await self.session.exec(self.statement)
            return list(result.unique().all())

    async def __aiter__(self) -> AsyncIterator[T]:
        for row in await self._execute():
            yield row

    async def all(self, cancel: Optional[CancellationSignal] = None) -> List[T]:
        return await self._execute(cancel)

    async def first(self, cancel: Optional[CancellationSignal] = None) -> Optional[T]:
        rows = await self.limit(1)._execute(cancel)
        return rows[0] if rows else None

    async def one_or_none(self, cancel: Optional[CancellationSignal] = None) -> Optional[T]:
        return self._single(await self.limit(2)._execute(cancel))
