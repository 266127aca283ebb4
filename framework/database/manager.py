from framework.cache.base import create_cache_service
from .sql_driver import SQLDriver
from .redis_driver import RedisDriver

class DatabaseManager:
    _instance = None

    def __init__(self, settings):
        self.sql = SQLDriver(
            settings.DATABASE_URL,
            sync_url=settings.SYNC_DATABASE_URL,
            echo=settings.DB_ECHO,
        )
        self.redis = RedisDriver(settings.REDIS_URL)
        self.cache = create_cache_service(
            settings,
            sync_client=self.redis.get_sync_client(),
            async_client=self.redis.get_client(),
        )

    @classmethod
    def get_instance(cls, settings=None):
        if cls._instance is None:
            if settings is None:
                from framework.config import settings as app_settings
                settings = app_settings
            cls._instance = cls(settings)
        return cls._instance

    @classmethod
    def reset_instance(cls):
        cls._instance = None
