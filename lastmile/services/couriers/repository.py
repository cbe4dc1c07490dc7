"""
Courier (user) data access.

Couriers are users whose role, trimmed and lower-cased, belongs to the
configured courier role allow-list.
"""

import uuid
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.errors import ErrorCode, NotFoundError, RepositoryError
from lastmile.core.logging import get_logger
from lastmile.database.models import User

logger = get_logger(__name__)

SORTABLE_FIELDS = {
    "full_name": User.full_name,
    "email": User.email,
    "created_at": User.created_at,
}


def _role_in(roles: Iterable[str]):
    return func.lower(func.trim(User.role)).in_(list(roles))


class CourierRepository:
    """Repository for reading courier accounts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, courier_id: uuid.UUID) -> User:
        """
        Load a user by id.

        Raises:
            NotFoundError: If the user does not exist
        """
        try:
            user = await self.session.get(User, courier_id)
        except SQLAlchemyError as e:
            logger.error("Failed to load courier", courier_id=str(courier_id), error=str(e))
            raise RepositoryError("Failed to load courier", courier_id=str(courier_id)) from e

        if user is None:
            raise NotFoundError(
                f"Courier {courier_id} not found",
                code=ErrorCode.COURIER_NOT_FOUND,
                courier_id=str(courier_id),
            )
        return user

    async def list_active(self, roles: Iterable[str]) -> Sequence[User]:
        """Active users holding one of ``roles``."""
        result = await self.session.execute(
            select(User)
            .where(User.is_active.is_(True), _role_in(roles))
            .order_by(User.full_name, User.id)
        )
        return result.scalars().all()

    async def search(
        self,
        roles: Iterable[str],
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        sort_by: str = "full_name",
        descending: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[User], int]:
        conditions = [_role_in(roles)]
        if is_active is not None:
            conditions.append(User.is_active.is_(is_active))
        if search:
            pattern = f"%{search.strip().lower()}%"
            conditions.append(
                or_(
                    func.lower(User.full_name).like(pattern),
                    func.lower(User.email).like(pattern),
                    User.phone.like(pattern),
                )
            )

        column = SORTABLE_FIELDS.get(sort_by, User.full_name)
        ordering = column.desc() if descending else column.asc()

        total = await self.session.scalar(select(func.count(User.id)).where(*conditions))
        result = await self.session.execute(
            select(User)
            .where(*conditions)
            .order_by(ordering, User.id)
            .limit(limit)
            .offset(offset)
        )
        return result.scalars().all(), int(total or 0)

    async def count_by_activity(self, roles: Iterable[str]) -> dict[bool, int]:
        result = await self.session.execute(
            select(User.is_active, func.count(User.id))
            .where(_role_in(roles))
            .group_by(User.is_active)
        )
        return {bool(is_active): count for is_active, count in result.all()}
