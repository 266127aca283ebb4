"""Test config and shared fixtures."""
import os

# SQLite has no READ COMMITTED; must be set before settings are loaded
os.environ.setdefault("DEFAULT_ISOLATION_LEVEL", "SERIALIZABLE")
os.environ.setdefault("CACHE_BACKEND", "memory")

import fnmatch
import pytest
from datetime import timedelta
from typing import AsyncGenerator, Dict, Optional, Tuple
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import Session, SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

import apps.models  # noqa: F401  register tables in metadata
from apps.starwars.models import Side
from framework.cache import MemoryCacheService
from framework.repository import AsyncUnitOfWork, UnitOfWork


# File-backed SQLite per test: every session gets its own connection, so
# uncommitted writes stay invisible to the checking sessions
TEST_DATABASE_URL = "sqlite+pysqlite:///{path}"
TEST_ASYNC_DATABASE_URL = "sqlite+aiosqlite:///{path}"


class ManualClock:
    """Monotonic clock driven by the test."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedisStore:
    """Dict-backed stand-in for one Redis database, shared by the fake clients."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.ttl: Dict[str, Optional[timedelta]] = {}
        self.commands: list = []

    def set(self, key, value, ex=None):
        self.commands.append(("set", key))
        self.data[key] = value.decode() if isinstance(value, bytes) else value
        self.ttl[key] = ex
        return True

    def get(self, key):
        return self.data.get(key)

    def mget(self, keys):
        return [self.data.get(key) for key in keys]

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttl.pop(key, None)
        self.commands.append(("delete",) + tuple(keys))
        return removed

    def scan(self, match="*") -> Tuple[str, ...]:
        self.commands.append(("scan", match))
        return tuple(key for key in list(self.data) if fnmatch.fnmatchcase(key, match))

    def flushdb(self):
        self.commands.append(("flushdb",))
        self.data.clear()
        self.ttl.clear()
        return True

    def expire(self, key):
        """Simulate the server expiring ``key``."""
        self.data.pop(key, None)
        self.ttl.pop(key, None)


class FakeRedis:
    def __init__(self, store: FakeRedisStore):
        self.store = store

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ex=None):
        return self.store.set(key, value, ex=ex)

    def mget(self, keys):
        return self.store.mget(keys)

    def delete(self, *keys):
        return self.store.delete(*keys)

    def scan_iter(self, match=None, count=None):
        return iter(self.store.scan(match or "*"))

    def flushdb(self):
        return self.store.flushdb()


class FakeAsyncRedis:
    def __init__(self, store: FakeRedisStore):
        self.store = store

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        return self.store.set(key, value, ex=ex)

    async def mget(self, keys):
        return self.store.mget(keys)

    async def delete(self, *keys):
        return self.store.delete(*keys)

    async def scan_iter(self, match=None, count=None):
        for key in self.store.scan(match or "*"):
            yield key

    async def flushdb(self):
        return self.store.flushdb()


@pytest.fixture
def engine(tmp_path):
    """Blocking engine with every table created."""
    engine = create_engine(
        TEST_DATABASE_URL.format(path=tmp_path / "sync.db"),
        connect_args={"check_same_thread": False},
        echo=False,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=Session, expire_on_commit=False, autoflush=False)


@pytest.fixture
def uow(session_factory):
    """Blocking unit of work over a fresh session."""
    unit = UnitOfWork.from_factory(session_factory, default_isolation_level="SERIALIZABLE")
    yield unit
    unit.dispose()


@pytest.fixture
def sides(session_factory):
    """Seed the Light and Dark sides; returns their ids by name."""
    with session_factory() as session:
        light, dark = Side(name="Light"), Side(name="Dark")
        session.add_all([light, dark])
        session.commit()
        return {"Light": light.id, "Dark": dark.id}


@pytest.fixture
def committed_count(session_factory):
    """Count rows through an independent session (sees committed data only)."""
    def _count(model, *criteria) -> int:
        from sqlmodel import func, select
        with session_factory() as session:
            statement = select(func.count()).select_from(model)
            if criteria:
                statement = statement.where(*criteria)
            return session.exec(statement).one()
    return _count


@pytest.fixture(scope="function")
async def async_engine(tmp_path):
    engine = create_async_engine(
        TEST_ASYNC_DATABASE_URL.format(path=tmp_path / "async.db"),
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def async_session_factory(async_engine):
    return sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def async_uow(async_session_factory) -> AsyncGenerator[AsyncUnitOfWork, None]:
    unit = AsyncUnitOfWork.from_factory(async_session_factory, default_isolation_level="SERIALIZABLE")
    yield unit
    await unit.dispose()


@pytest.fixture
async def async_sides(async_session_factory):
    async with async_session_factory() as session:
        light, dark = Side(name="Light"), Side(name="Dark")
        session.add_all([light, dark])
        await session.commit()
        return {"Light": light.id, "Dark": dark.id}


@pytest.fixture
def async_count(async_session_factory):
    async def _count(model, *criteria) -> int:
        from sqlmodel import func, select
        async with async_session_factory() as session:
            statement = select(func.count()).select_from(model)
            if criteria:
                statement = statement.where(*criteria)
            result = await session.exec(statement)
            return result.one()
    return _count


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def memory_cache(clock) -> MemoryCacheService:
    return MemoryCacheService(clock=clock)


@pytest.fixture
def redis_store() -> FakeRedisStore:
    return FakeRedisStore()


@pytest.fixture
def fake_redis(redis_store) -> FakeRedis:
    return FakeRedis(redis_store)


@pytest.fixture
def fake_async_redis(redis_store) -> FakeAsyncRedis:
    return FakeAsyncRedis(redis_store)


@pytest.fixture
def api_cache() -> MemoryCacheService:
    return MemoryCacheService()


@pytest.fixture
async def client(async_session_factory, api_cache) -> AsyncGenerator[AsyncClient, None]:
    """Create test client over the test database and a fresh memory cache."""
    from main import app
    from apps.starwars.api.router import get_cache, get_db

    async def _get_db():
        async with async_session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_cache] = lambda: api_cache

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
