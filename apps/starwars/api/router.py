from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlmodel.ext.asyncio.session import AsyncSession
from framework.cache import CacheService
from framework.database.manager import DatabaseManager
from framework.repository.unit_of_work import AsyncUnitOfWork
from framework.response import ResponseModel
from ..models import SideCreate, TransactionalInsert, User, UserCreate, UserUpdate
from ..repository import UserRepository
from ..service import StarWarsService

router = APIRouter()


async def get_db():
    """Get database session."""
    manager = DatabaseManager.get_instance()
    async for session in manager.sql.get_session():
        yield session


async def get_uow(db: AsyncSession = Depends(get_db)):
    """Dependency: one UnitOfWork per request, disposed when the request ends."""
    async with AsyncUnitOfWork(session=db, repositories={User: UserRepository}) as uow:
        yield uow


def get_cache() -> CacheService:
    """Dependency: process-wide cache service."""
    return DatabaseManager.get_instance().cache


def get_service(
    uow: AsyncUnitOfWork = Depends(get_uow),
    cache: CacheService = Depends(get_cache),
) -> StarWarsService:
    """Dependency: create StarWarsService."""
    return StarWarsService(uow, cache)


@router.post("/sides")
async def create_side(payload: SideCreate, service: StarWarsService = Depends(get_service)):
    return ResponseModel.success(data=await service.create_side(payload))


@router.get("/sides")
async def list_sides(
    name: Optional[str] = None,
    with_users: bool = False,
    service: StarWarsService = Depends(get_service),
):
    """List sides, optionally filtered by name and with users eagerly loaded."""
    return ResponseModel.success(data=await service.list_sides(name=name, with_users=with_users))


@router.get("/sides/by-name/{name}")
async def get_side_by_name(name: str, service: StarWarsService = Depends(get_service)):
    """Single side by name; 409 when the name is ambiguous."""
    return ResponseModel.success(data=await service.get_side_by_name(name))


@router.get("/sides/{side_id}/users")
async def list_users_of_side(side_id: int, service: StarWarsService = Depends(get_service)):
    """Users of one side, ordered by name."""
    return ResponseModel.success(data=await service.list_users_of_side(side_id))


@router.get("/users")
async def list_users(ordered: bool = False, service: StarWarsService = Depends(get_service)):
    """All users (cached); ordered=true sorts by name then id descending and bypasses the cache."""
    return ResponseModel.success(data=await service.list_users(ordered=ordered))


@router.get("/users/details")
async def list_users_with_details(service: StarWarsService = Depends(get_service)):
    """Users with side, the side's test and its descriptions."""
    return ResponseModel.success(data=await service.list_users_with_details())


@router.get("/users/{user_id}")
async def get_user(user_id: int, service: StarWarsService = Depends(get_service)):
    return ResponseModel.success(data=await service.get_user(user_id))


@router.post("/users")
async def create_users(payload: List[UserCreate], service: StarWarsService = Depends(get_service)):
    return ResponseModel.success(data=await service.create_users(payload))


@router.post("/users/bulk")
async def bulk_insert_users(
    payload: List[UserCreate],
    batch_size: int = Query(default=2000, ge=1),
    service: StarWarsService = Depends(get_service),
):
    inserted = await service.bulk_insert_users(payload, batch_size)
    return ResponseModel.success(data={"inserted": inserted})


@router.post("/users/transactional")
async def insert_with_transaction(payload: TransactionalInsert, service: StarWarsService = Depends(get_service)):
    """Insert users and a new side atomically."""
    return ResponseModel.success(data=await service.insert_with_transaction(payload))


@router.put("/users/{user_id}")
async def update_user(user_id: int, payload: UserUpdate, service: StarWarsService = Depends(get_service)):
    return ResponseModel.success(data=await service.update_user(user_id, payload))


@router.delete("/users/{user_id}")
async def delete_user(user_id: int, service: StarWarsService = Depends(get_service)):
    await service.delete_user(user_id)
    return ResponseModel.success()
