from typing import Optional
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import Session, SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from .base import BaseDatabaseDriver

class SQLDriver(BaseDatabaseDriver):
    """
    Async engine plus an optional blocking engine for the same database.

    Sessions are built with expire_on_commit=False and autoflush=False: loaded
    entities stay usable after a save, and nothing reaches the database except
    through an explicit save.
    """

    def __init__(self, url: str, sync_url: Optional[str] = None, echo: bool = False, **engine_kwargs):
        self.url = url
        self.sync_url = sync_url
        self.echo = echo
        self._engine_kwargs = engine_kwargs
        self.engine = create_async_engine(url, echo=echo, future=True, **engine_kwargs)
        self.session_factory = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )
        self._sync_engine: Optional[Engine] = None
        self._sync_session_factory = None
        self._connected = False

    @property
    def sync_engine(self) -> Engine:
        """Blocking engine, created on first use."""
        if self._sync_engine is None:
            if not self.sync_url:
                raise RuntimeError("No blocking database URL configured (SYNC_DATABASE_URL)")
            self._sync_engine = create_engine(self.sync_url, echo=self.echo, **self._engine_kwargs)
        return self._sync_engine

    @property
    def sync_session_factory(self):
        if self._sync_session_factory is None:
            self._sync_session_factory = sessionmaker(
                self.sync_engine, class_=Session, expire_on_commit=False, autoflush=False
            )
        return self._sync_session_factory

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self):
        """Connect to database (SQLModel engine manages connections)."""
        async with self.engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        self._connected = True

    async def disconnect(self):
        """Disconnect from database."""
        await self.engine.dispose()
        if self._sync_engine is not None:
            self._sync_engine.dispose()
        self._connected = False

    async def create_all(self):
        """Create tables for every registered SQLModel (dev/test helper)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def get_session(self):
        async with self.session_factory() as session:
            yield session

    def get_sync_session(self):
        with self.sync_session_factory() as session:
            yield session
