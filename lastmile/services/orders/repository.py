"""
Order data access.

``OrderRepository.update_state`` is the single write path for an order's
status, loaded flag, delivery timestamp and logistics projection. The
delivery manager, assignment engine, route planner and synchronizer all go
through it, so status changes are validated and logged in one place.
"""

import uuid
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.errors import (
    ErrorCode,
    NotFoundError,
    RepositoryError,
    StateConflictError,
)
from lastmile.core.logging import get_logger
from lastmile.database.connection import flush
from lastmile.database.models import LogisticsState, Order, OrderStatus

logger = get_logger(__name__)

UNSET = object()


class OrderRepository:
    """Repository for reading and updating orders."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find(self, order_id: uuid.UUID, for_update: bool = False) -> Optional[Order]:
        stmt = select(Order).where(Order.id == order_id)
        if for_update:
            stmt = stmt.with_for_update()
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to load order", order_id=str(order_id), error=str(e))
            raise RepositoryError("Failed to load order", order_id=str(order_id)) from e
        return result.scalar_one_or_none()

    async def get(self, order_id: uuid.UUID, for_update: bool = False) -> Order:
        """
        Load an order or fail.

        Raises:
            NotFoundError: If the order does not exist
        """
        order = await self.find(order_id, for_update=for_update)
        if order is None:
            raise NotFoundError(
                f"Order {order_id} not found",
                code=ErrorCode.ORDER_NOT_FOUND,
                order_id=str(order_id),
            )
        return order

    async def get_many(
        self, order_ids: Iterable[uuid.UUID], for_update: bool = False
    ) -> dict[uuid.UUID, Order]:
        ids = list(order_ids)
        if not ids:
            return {}
        stmt = select(Order).where(Order.id.in_(ids)).order_by(Order.id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return {order.id: order for order in result.scalars()}

    async def update_state(
        self,
        order: Order,
        *,
        status: Optional[OrderStatus] = None,
        logistics_state: Optional[LogisticsState] = None,
        assigned_courier_id=UNSET,
        delivered_at: Optional[datetime] = None,
        loaded_on_vehicle: Optional[bool] = None,
        allow_regression: bool = False,
        reason: Optional[str] = None,
    ) -> Order:
        """
        Apply dispatch-driven changes to an order.

        Status moves forward along the happy path only, unless
        ``allow_regression`` is set (route finalization returning an
        undelivered order to the pool). Setting the current status again is
        a no-op.

        Args:
            order: Order to update (loaded in this session)
            status: New authoritative status
            logistics_state: New logistics projection
            assigned_courier_id: Courier now holding the order, or None to clear
            delivered_at: Real delivery timestamp
            loaded_on_vehicle: New loaded flag
            allow_regression: Permit moving status backwards
            reason: Free text recorded in the log

        Raises:
            StateConflictError: If the status change is not allowed
        """
        old_status = order.status

        if status is not None and status != old_status:
            if old_status.is_terminal:
                raise StateConflictError(
                    f"Order {order.order_number} is {old_status.value} and can no longer change",
                    code=ErrorCode.ORDER_STATUS_REGRESSION,
                    order_id=str(order.id),
                    current_status=old_status.value,
                    target_status=status.value,
                )
            if status.rank < old_status.rank and not allow_regression:
                raise StateConflictError(
                    f"Order {order.order_number} cannot move from "
                    f"{old_status.value} back to {status.value}",
                    code=ErrorCode.ORDER_STATUS_REGRESSION,
                    order_id=str(order.id),
                    current_status=old_status.value,
                    target_status=status.value,
                )
            order.status = status

        if logistics_state is not None:
            order.logistics_state = logistics_state
        if assigned_courier_id is not UNSET:
            order.assigned_courier_id = assigned_courier_id
        if delivered_at is not None:
            order.delivered_at = delivered_at
        if loaded_on_vehicle is not None:
            order.loaded_on_vehicle = loaded_on_vehicle

        await flush(self.session, "update_order", order_id=str(order.id))

        if status is not None and status != old_status:
            logger.info(
                "Order status changed",
                order_id=str(order.id),
                order_number=order.order_number,
                transition=f"{old_status.value}->{status.value}",
                reason=reason,
            )

        return order
