"""Star Wars module repository implementations."""

from typing import List, Optional
from sqlalchemy.orm import selectinload
from framework.exceptions.errors import CancellationSignal
from framework.repository.base import AsyncRepository
from .models import Side, Test, User


class UserRepository(AsyncRepository[User]):
    """User repository."""

    def __init__(self, session):
        super().__init__(session, User)

    async def get_by_side(
        self, side_id: int, cancel: Optional[CancellationSignal] = None
    ) -> List[User]:
        """Users of one side, ordered by name."""
        return await self.get_list(
            filter=User.side_id == side_id,
            order_by=User.name,
            is_read_only=True,
            cancel=cancel,
        )

    async def get_ordered(self, cancel: Optional[CancellationSignal] = None) -> List[User]:
        """All users by name ascending, then id descending."""
        return await self.get_list(
            order_by=lambda statement: statement.order_by(User.name).order_by(User.id.desc()),
            is_read_only=True,
            cancel=cancel,
        )

    async def get_with_side_details(self, cancel: Optional[CancellationSignal] = None) -> List[User]:
        """Users with side, the side's test and its descriptions eagerly loaded."""
        return await self.get_list(
            include=selectinload(User.side).selectinload(Side.test).selectinload(Test.test_descriptions),
            order_by=User.id,
            is_read_only=True,
            cancel=cancel,
        )
