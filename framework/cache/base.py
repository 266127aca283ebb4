"""
Cache service contract shared by the in-memory and Redis backends.

Keys are strings. Pattern operations accept ``"*"`` (every key), a glob
(any pattern containing ``*``, ``?`` or ``[``) or a plain substring, matched
anywhere in the key. A pattern with any of those characters is never a
substring: to find keys containing a literal ``[`` or ``?``, write a glob that
escapes it as a one-character class, e.g. ``"*item[[]1]*"`` for keys containing
``item[1]``.
"""

from abc import ABC, abstractmethod
from datetime import timedelta
from fnmatch import fnmatchcase
from functools import lru_cache
from typing import Any, List, Optional, Union

from pydantic import TypeAdapter

from framework.exceptions.errors import CancellationSignal, PreconditionError, raise_if_cancelled

Expiration = Union[timedelta, int, float, None]

MATCH_ALL = "*"
_GLOB_CHARS = frozenset("*?[")


def is_glob(pattern: str) -> bool:
    return any(char in _GLOB_CHARS for char in pattern)


def matches(key: str, pattern: str) -> bool:
    """Match ``key`` against a cache pattern (all / glob / substring)."""
    if pattern == MATCH_ALL:
        return True
    if is_glob(pattern):
        return fnmatchcase(key, pattern)
    return pattern in key


def as_timedelta(value: Expiration) -> Optional[timedelta]:
    """Seconds or timedelta; non-positive durations are rejected."""
    if value is None:
        return None
    delta = value if isinstance(value, timedelta) else timedelta(seconds=value)
    if delta <= timedelta(0):
        raise PreconditionError(f"Expiration must be positive, got {value!r}")
    return delta


@lru_cache(maxsize=256)
def type_adapter(type_: Any) -> TypeAdapter:
    return TypeAdapter(type_)


def check_key(key: str) -> None:
    if not key:
        raise PreconditionError("Cache key must be a non-empty string")


class CacheService(ABC):
    """
    Typed key/value cache with pattern-based invalidation.

    Blocking methods are abstract; the async forms default to calling them and
    are overridden by backends with a native async client. Every async form
    checks its cancellation signal before touching the store.

    Patterns containing ``*``, ``?`` or ``[`` are globs on every backend; escape
    a literal ``[`` or ``?`` as ``[[]`` or ``[?]``.
    """

    @abstractmethod
    def get(self, key: str, type_: Any = None) -> Any:
        """Return the cached value (validated as ``type_`` when given), or None."""

    @abstractmethod
    def set(
        self,
        key: str,
        value: Any,
        absolute_expiration: Expiration = None,
        sliding_expiration: Expiration = None,
    ) -> None:
        """Store ``value``; without explicit expirations the backend defaults apply."""

    @abstractmethod
    def get_keys(self, pattern: str = MATCH_ALL) -> List[str]:
        """Live keys matching ``pattern``."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove one key; a missing key is not an error."""

    @abstractmethod
    def clear(self) -> None:
        """Drop every entry."""

    def get_by_pattern(self, pattern: str = MATCH_ALL, type_: Any = None) -> List[Any]:
        """Values of every key matching ``pattern``; entries that vanished meanwhile are skipped."""
        values = []
        for key in self.get_keys(pattern):
            value = self.get(key, type_)
            if value is not None:
                values.append(value)
        return values

    def delete_keys_by_pattern(self, pattern: str = MATCH_ALL) -> int:
        """Remove every key matching ``pattern``; returns how many were removed."""
        keys = self.get_keys(pattern)
        for key in keys:
            self.remove(key)
        return len(keys)

    # Async forms ---------------------------------------------------------
    async def get_async(self, key: str, type_: Any = None, cancel: Optional[CancellationSignal] = None) -> Any:
        raise_if_cancelled(cancel)
        return self.get(key, type_)

    async def set_async(
        self,
        key: str,
        value: Any,
        absolute_expiration: Expiration = None,
        sliding_expiration: Expiration = None,
        cancel: Optional[CancellationSignal] = None,
    ) -> None:
        raise_if_cancelled(cancel)
        self.set(key, value, absolute_expiration, sliding_expiration)

    async def get_keys_async(self, pattern: str = MATCH_ALL, cancel: Optional[CancellationSignal] = None) -> List[str]:
        raise_if_cancelled(cancel)
        return self.get_keys(pattern)

    async def get_by_pattern_async(
        self, pattern: str = MATCH_ALL, type_: Any = None, cancel: Optional[CancellationSignal] = None
    ) -> List[Any]:
        raise_if_cancelled(cancel)
        return self.get_by_pattern(pattern, type_)

    async def delete_keys_by_pattern_async(
        self, pattern: str = MATCH_ALL, cancel: Optional[CancellationSignal] = None
    ) -> int:
        raise_if_cancelled(cancel)
        return self.delete_keys_by_pattern(pattern)

    async def remove_async(self, key: str, cancel: Optional[CancellationSignal] = None) -> None:
        raise_if_cancelled(cancel)
        self.remove(key)

    async def clear_async(self, cancel: Optional[CancellationSignal] = None) -> None:
        raise_if_cancelled(cancel)
        self.clear()


def create_cache_service(settings, sync_client=None, async_client=None) -> CacheService:
    """Build the backend named by ``settings.CACHE_BACKEND`` (memory or redis)."""
    backend = settings.CACHE_BACKEND.lower()
    if backend == "memory":
        from .memory import MemoryCacheService

        return MemoryCacheService.from_settings(settings)
    if backend == "redis":
        from .redis_cache import RedisCacheService

        return RedisCacheService.from_settings(settings, sync_client=sync_client, async_client=async_client)
    raise PreconditionError(f"Unknown cache backend: {settings.CACHE_BACKEND!r}")
