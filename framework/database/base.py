from abc import ABC, abstractmethod

class BaseDatabaseDriver(ABC):
    """Connection owner for one backing store (SQL engine or Redis client)."""

    @abstractmethod
    async def connect(self):
        pass

    @abstractmethod
    async def disconnect(self):
        pass

    @property
    def connected(self) -> bool:
        return False
