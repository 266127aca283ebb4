from typing import List, Optional
from sqlalchemy.orm import selectinload
from framework.cache import CacheService
from framework.exceptions.errors import CancellationSignal
from framework.exceptions.handler import BusinessException
from framework.logging.logger import get_logger
from framework.repository.changes import BulkConfig
from framework.repository.unit_of_work import AsyncUnitOfWork
from .models import (
    Side,
    SideCreate,
    SideRead,
    SideReadWithUsers,
    TransactionalInsert,
    User,
    UserCreate,
    UserRead,
    UserReadWithSide,
    UserUpdate,
)
from .repository import UserRepository

logger = get_logger("starwars_service")

USERS_CACHE_KEY = "users"


def user_cache_key(user_id: int) -> str:
    return f"users_{user_id}"


class StarWarsService:
    """Sides and users through the unit of work, with cache-aside reads for users."""

    def __init__(self, uow: AsyncUnitOfWork, cache: CacheService, cancel: Optional[CancellationSignal] = None):
        self.uow = uow
        self.cache = cache
        self.cancel = cancel

    @property
    def sides(self):
        return self.uow.get_repository(Side)

    @property
    def users(self) -> UserRepository:
        return self.uow.get_repository(User)

    # --- Sides ---
    async def create_side(self, payload: SideCreate) -> SideRead:
        side = Side.model_validate(payload)
        await self.sides.insert(side, cancel=self.cancel)
        await self.uow.save_changes(cancel=self.cancel)
        logger.info(f"Side created: {side.id} ({side.name})")
        return SideRead.model_validate(side)

    async def list_sides(self, name: Optional[str] = None, with_users: bool = False) -> List[SideRead]:
        sides = await self.sides.get_list(
            filter=Side.name == name if name else None,
            order_by=Side.id,
            include=selectinload(Side.users) if with_users else None,
            is_read_only=True,
            cancel=self.cancel,
        )
        schema = SideReadWithUsers if with_users else SideRead
        return [schema.model_validate(side) for side in sides]

    async def get_side_by_name(self, name: str) -> SideReadWithUsers:
        """Exactly one side is expected; duplicates surface as MultipleResultsError."""
        side = await self.sides.get_single(
            filter=Side.name == name,
            include=selectinload(Side.users),
            is_read_only=True,
            cancel=self.cancel,
        )
        if side is None:
            raise BusinessException(f"Side not found: {name}", status_code=404, code=404)
        return SideReadWithUsers.model_validate(side)

    async def _require_side(self, side_id: int) -> None:
        if not await self.sides.exists(Side.id == side_id, cancel=self.cancel):
            raise BusinessException(f"Side not found: {side_id}", status_code=404, code=404)

    # --- Users ---
    async def list_users(self, ordered: bool = False) -> List[UserRead]:
        if not ordered:
            cached = await self.cache.get_async(USERS_CACHE_KEY, List[UserRead], cancel=self.cancel)
            if cached is not None:
                return cached
        users = await self.users.get_ordered(self.cancel) if ordered else await self.users.get_list(
            order_by=User.id, is_read_only=True, cancel=self.cancel
        )
        result = [UserRead.model_validate(user) for user in users]
        if not ordered:
            await self.cache.set_async(USERS_CACHE_KEY, result, cancel=self.cancel)
        return result

    async def list_users_of_side(self, side_id: int) -> List[UserRead]:
        await self._require_side(side_id)
        users = await self.users.get_by_side(side_id, self.cancel)
        return [UserRead.model_validate(user) for user in users]

    async def list_users_with_details(self) -> List[UserReadWithSide]:
        """Users with side, test and test descriptions eagerly loaded; never cached."""
        users = await self.users.get_with_side_details(self.cancel)
        return [UserReadWithSide.model_validate(user) for user in users]

    async def get_user(self, user_id: int) -> UserRead:
        key = user_cache_key(user_id)
        cached = await self.cache.get_async(key, UserRead, cancel=self.cancel)
        if cached is not None:
            return cached
        user = await self.users.get_single(filter=User.id == user_id, is_read_only=True, cancel=self.cancel)
        if user is None:
            raise BusinessException(f"User not found: {user_id}", status_code=404, code=404)
        result = UserRead.model_validate(user)
        await self.cache.set_async(key, result, cancel=self.cancel)
        return result

    async def create_users(self, payload: List[UserCreate]) -> List[UserRead]:
        for side_id in {item.side_id for item in payload}:
            await self._require_side(side_id)
        users = [User.model_validate(item) for item in payload]
        await self.users.insert(users, cancel=self.cancel)
        await self.uow.save_changes(cancel=self.cancel)
        await self.cache.remove_async(USERS_CACHE_KEY, cancel=self.cancel)
        return [UserRead.model_validate(user) for user in users]

    async def bulk_insert_users(self, payload: List[UserCreate], batch_size: int) -> int:
        for side_id in {item.side_id for item in payload}:
            await self._require_side(side_id)
        users = [User.model_validate(item) for item in payload]
        await self.users.bulk_insert(users, BulkConfig(batch_size=batch_size), cancel=self.cancel)
        await self.uow.save_changes(cancel=self.cancel)
        await self.cache.remove_async(USERS_CACHE_KEY, cancel=self.cancel)
        logger.info(f"Bulk inserted {len(users)} users (batch size {batch_size})")
        return len(users)

    async def update_user(self, user_id: int, payload: UserUpdate) -> UserRead:
        user = await self.users.get_by_id(user_id, cancel=self.cancel)
        if user is None:
            raise BusinessException(f"User not found: {user_id}", status_code=404, code=404)
        await self._require_side(payload.side_id)
        user.sqlmodel_update(payload.model_dump())
        await self.users.update(user, cancel=self.cancel)
        await self.uow.save_changes(cancel=self.cancel)
        await self.cache.delete_keys_by_pattern_async(USERS_CACHE_KEY, cancel=self.cancel)
        return UserRead.model_validate(user)

    async def delete_user(self, user_id: int) -> None:
        user = await self.users.get_by_id(user_id, cancel=self.cancel)
        if user is None:
            raise BusinessException(f"User not found: {user_id}", status_code=404, code=404)
        await self.users.delete(user, cancel=self.cancel)
        await self.uow.save_changes(cancel=self.cancel)
        await self.cache.delete_keys_by_pattern_async(USERS_CACHE_KEY, cancel=self.cancel)

    async def insert_with_transaction(self, payload: TransactionalInsert) -> SideRead:
        """Users and a new side in one explicit transaction; all or nothing."""
        for side_id in {item.side_id for item in payload.users}:
            await self._require_side(side_id)
        async with self.uow.transaction():
            await self.users.insert([User.model_validate(item) for item in payload.users], cancel=self.cancel)
            await self.uow.save_changes(cancel=self.cancel)

            side = Side(name=payload.side_name)
            await self.sides.insert(side, cancel=self.cancel)
            await self.uow.save_changes(cancel=self.cancel)
        await self.cache.remove_async(USERS_CACHE_KEY, cancel=self.cancel)
        logger.info(f"Transactional insert committed: {len(payload.users)} users, side {side.id}")
        return SideRead.model_validate(side)
