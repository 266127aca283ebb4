import redis
import redis.asyncio as aioredis
from .base import BaseDatabaseDriver

class RedisDriver(BaseDatabaseDriver):
    """
    Holds the blocking and async Redis clients for one URL.

    Clients are created up front (from_url does not open a connection);
    connect() verifies the server is reachable.
    """

    def __init__(self, url: str):
        self.url = url
        self.client = aioredis.from_url(url, decode_responses=True)
        self.sync_client = redis.from_url(url, decode_responses=True)
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self):
        await self.client.ping()
        self._connected = True

    async def disconnect(self):
        await self.client.aclose()
        self.sync_client.close()
        self._connected = False

    def get_client(self):
        return self.client

    def get_sync_client(self):
        return self.sync_client
