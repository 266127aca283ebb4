"""
Cache tier: one contract, an in-memory and a Redis backend.
"""

from .base import CacheService, create_cache_service, matches
from .memory import MemoryCacheService
from .redis_cache import RedisCacheService

__all__ = ["CacheService", "MemoryCacheService", "RedisCacheService", "create_cache_service", "matches"]
