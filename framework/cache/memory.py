"""
Process-local cache backend.

Entries live in a dict guarded by a lock. Alongside the store the service
tracks every key it has written; pattern operations work on that tracked set
after a reconciliation pass drops keys whose entries have expired. Between
passes the tracked set may still name expired keys. Writes also evict expired
entries from the store, at most once per sweep interval, so a write-only
workload does not keep stale values alive.
"""

import time
from dataclasses import dataclass
from datetime import timedelta
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Set

from framework.logging.logger import get_logger
from .base import MATCH_ALL, CacheService, Expiration, as_timedelta, check_key, matches, type_adapter

logger = get_logger("cache.memory")


@dataclass
class _Entry:
    value: Any
    # monotonic deadline, None for no absolute expiration
    expires_at: Optional[float]
    sliding: Optional[float]
    last_access: float

    def expired(self, now: float) -> bool:
        if self.expires_at is not None and now >= self.expires_at:
            return True
        return self.sliding is not None and now - self.last_access >= self.sliding


class MemoryCacheService(CacheService):
    def __init__(
        self,
        default_absolute_expiration: Expiration = timedelta(hours=12),
        default_sliding_expiration: Expiration = timedelta(minutes=30),
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = 60.0,
    ):
        self.default_absolute_expiration = as_timedelta(default_absolute_expiration)
        self.default_sliding_expiration = as_timedelta(default_sliding_expiration)
        self._clock = clock
        self.sweep_interval = sweep_interval
        self._last_sweep = clock()
        self._store: Dict[str, _Entry] = {}
        self._tracked: Set[str] = set()
        self._lock = RLock()

    @classmethod
    def from_settings(cls, settings) -> "MemoryCacheService":
        return cls(
            default_absolute_expiration=timedelta(hours=settings.CACHE_ABSOLUTE_EXPIRATION_HOURS),
            default_sliding_expiration=timedelta(minutes=settings.CACHE_SLIDING_EXPIRATION_MINUTES),
        )

    @property
    def tracked_keys(self) -> Set[str]:
        """Snapshot of the tracked key set (may include expired keys until the next reconciliation)."""
        with self._lock:
            return set(self._tracked)

    def _live_entry(self, key: str, now: float) -> Optional[_Entry]:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.expired(now):
            del self._store[key]
            return None
        return entry

    def _sweep(self, now: float) -> None:
        """Evict expired entries from the store at most once per sweep interval."""
        if now - self._last_sweep < self.sweep_interval:
            return
        self._last_sweep = now
        for key in [key for key, entry in self._store.items() if entry.expired(now)]:
            del self._store[key]

    def reconcile(self) -> int:
        """Drop tracked keys whose entries are gone or expired. Returns how many were dropped."""
        with self._lock:
            now = self._clock()
            stale = [key for key in self._tracked if self._live_entry(key, now) is None]
            self._tracked.difference_update(stale)
            return len(stale)

    def get(self, key: str, type_: Any = None) -> Any:
        with self._lock:
            now = self._clock()
            entry = self._live_entry(key, now)
            if entry is None:
                return None
            entry.last_access = now
            value = entry.value
        if type_ is not None:
            return type_adapter(type_).validate_python(value)
        return value

    def set(
        self,
        key: str,
        value: Any,
        absolute_expiration: Expiration = None,
        sliding_expiration: Expiration = None,
    ) -> None:
        check_key(key)
        absolute = as_timedelta(absolute_expiration)
        sliding = as_timedelta(sliding_expiration)
        if absolute is None and sliding is None:
            absolute = self.default_absolute_expiration
            sliding = self.default_sliding_expiration

        with self._lock:
            now = self._clock()
            self._sweep(now)
            self._store[key] = _Entry(
                value=value,
                expires_at=now + absolute.total_seconds() if absolute is not None else None,
                sliding=sliding.total_seconds() if sliding is not None else None,
                last_access=now,
            )
            self._tracked.add(key)

    def get_keys(self, pattern: str = MATCH_ALL) -> List[str]:
        with self._lock:
            self.reconcile()
            return sorted(key for key in self._tracked if matches(key, pattern))

    def delete_keys_by_pattern(self, pattern: str = MATCH_ALL) -> int:
        with self._lock:
            keys = self.get_keys(pattern)
            for key in keys:
                self._store.pop(key, None)
                self._tracked.discard(key)
        logger.debug(f"Removed {len(keys)} cache key(s) matching {pattern!r}")
        return len(keys)

    def remove(self, key: str) -> None:
        with self._lock:
            self._store.pop(key, None)
            self._tracked.discard(key)

    def clear(self) -> None:
        with self._lock:
            count = len(self._store)
            self._store.clear()
            self._tracked.clear()
        logger.info(f"In-memory cache cleared ({count} entries)")
