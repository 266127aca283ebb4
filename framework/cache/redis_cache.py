"""
Redis cache backend.

Values are stored as JSON. Only absolute expiration is supported (key TTL);
a sliding expiration passed to set() is ignored. Pattern operations run
server-side through SCAN MATCH, so substring patterns are sent as ``*pattern*``.
"""

from datetime import timedelta
from typing import Any, List, Optional

import redis
import redis.asyncio as aioredis
from pydantic_core import from_json, to_json

from framework.exceptions.errors import CancellationSignal, PreconditionError, raise_if_cancelled
from framework.logging.logger import get_logger
from .base import MATCH_ALL, CacheService, Expiration, as_timedelta, check_key, is_glob, type_adapter

logger = get_logger("cache.redis")


def to_match(pattern: str) -> str:
    """Translate a cache pattern into a Redis MATCH glob."""
    if pattern == MATCH_ALL or is_glob(pattern):
        return pattern
    return f"*{pattern}*"


class RedisCacheService(CacheService):
    def __init__(
        self,
        sync_client: Optional[redis.Redis] = None,
        async_client: Optional[aioredis.Redis] = None,
        default_absolute_expiration: Expiration = timedelta(hours=12),
        scan_count: int = 500,
    ):
        if sync_client is None and async_client is None:
            raise PreconditionError("RedisCacheService needs a blocking or an async client")
        self.sync_client = sync_client
        self.async_client = async_client
        self.default_absolute_expiration = as_timedelta(default_absolute_expiration)
        self.scan_count = scan_count

    @classmethod
    def from_settings(cls, settings, sync_client=None, async_client=None) -> "RedisCacheService":
        if sync_client is None:
            sync_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        if async_client is None:
            async_client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        return cls(
            sync_client=sync_client,
            async_client=async_client,
            default_absolute_expiration=timedelta(hours=settings.CACHE_ABSOLUTE_EXPIRATION_HOURS),
        )

    @property
    def _sync(self) -> redis.Redis:
        if self.sync_client is None:
            raise PreconditionError("No blocking Redis client configured; use the async methods")
        return self.sync_client

    @property
    def _async(self) -> aioredis.Redis:
        if self.async_client is None:
            raise PreconditionError("No async Redis client configured; use the blocking methods")
        return self.async_client

    def _ttl(self, absolute_expiration: Expiration) -> Optional[timedelta]:
        return as_timedelta(absolute_expiration) or self.default_absolute_expiration

    @staticmethod
    def _decode(raw: Any, type_: Any) -> Any:
        if raw is None:
            return None
        if type_ is not None:
            return type_adapter(type_).validate_json(raw)
        return from_json(raw)

    # Blocking ------------------------------------------------------------
    def get(self, key: str, type_: Any = None) -> Any:
        return self._decode(self._sync.get(key), type_)

    def set(
        self,
        key: str,
        value: Any,
        absolute_expiration: Expiration = None,
        sliding_expiration: Expiration = None,
    ) -> None:
        check_key(key)
        self._sync.set(key, to_json(value), ex=self._ttl(absolute_expiration))

    def get_keys(self, pattern: str = MATCH_ALL) -> List[str]:
        return sorted(self._sync.scan_iter(match=to_match(pattern), count=self.scan_count))

    def delete_keys_by_pattern(self, pattern: str = MATCH_ALL) -> int:
        keys = self.get_keys(pattern)
        if keys:
            self._sync.delete(*keys)
        logger.debug(f"Removed {len(keys)} Redis key(s) matching {pattern!r}")
        return len(keys)

    def remove(self, key: str) -> None:
        self._sync.delete(key)

    def clear(self) -> None:
        self._sync.flushdb()
        logger.info("Redis cache database flushed")

    # Async ---------------------------------------------------------------
    async def get_async(self, key: str, type_: Any = None, cancel: Optional[CancellationSignal] = None) -> Any:
        raise_if_cancelled(cancel)
        return self._decode(await self._async.get(key), type_)

    async def set_async(
        self,
        key: str,
        value: Any,
        absolute_expiration: Expiration = None,
        sliding_expiration: Expiration = None,
        cancel: Optional[CancellationSignal] = None,
    ) -> None:
        raise_if_cancelled(cancel)
        check_key(key)
        await self._async.set(key, to_json(value), ex=self._ttl(absolute_expiration))

    async def get_keys_async(self, pattern: str = MATCH_ALL, cancel: Optional[CancellationSignal] = None) -> List[str]:
        raise_if_cancelled(cancel)
        keys = [key async for key in self._async.scan_iter(match=to_match(pattern), count=self.scan_count)]
        return sorted(keys)

    async def get_by_pattern_async(
        self, pattern: str = MATCH_ALL, type_: Any = None, cancel: Optional[CancellationSignal] = None
    ) -> List[Any]:
        keys = await self.get_keys_async(pattern, cancel)
        if not keys:
            return []
        raws = await self._async.mget(keys)
        return [self._decode(raw, type_) for raw in raws if raw is not None]

    async def delete_keys_by_pattern_async(
        self, pattern: str = MATCH_ALL, cancel: Optional[CancellationSignal] = None
    ) -> int:
        keys = await self.get_keys_async(pattern, cancel)
        if keys:
            await self._async.delete(*keys)
        logger.debug(f"Removed {len(keys)} Redis key(s) matching {pattern!r}")
        return len(keys)

    async def remove_async(self, key: str, cancel: Optional[CancellationSignal] = None) -> None:
        raise_if_cancelled(cancel)
        await self._async.delete(key)

    async def clear_async(self, cancel: Optional[CancellationSignal] = None) -> None:
        raise_if_cancelled(cancel)
        await self._async.flushdb()
        logger.info("Redis cache database flushed")
