"""
Courier eligibility and directory.

``ensure_eligible`` is the one eligibility check used by assignment,
reassignment and route planning, so an ineligible courier always fails with
the same error code whichever operation was called.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.config import Settings, get_settings
from lastmile.core.errors import ErrorCode, ValidationFailedError
from lastmile.core.logging import get_logger
from lastmile.database.models import (
    ACTIVE_DELIVERY_STATES,
    DeliveryRecord,
    DeliveryState,
    Order,
    OrderStatus,
    User,
)
from lastmile.services.couriers.repository import CourierRepository
from lastmile.services.deliveries.repository import DeliveryRepository

logger = get_logger(__name__)


def delivery_counters(by_state: dict[DeliveryState, int]) -> dict[str, int]:
    """Collapse per-state record counts into the directory counters."""
    return {
        "total": sum(by_state.values()),
        "in_progress": sum(by_state.get(state, 0) for state in ACTIVE_DELIVERY_STATES),
        "delivered": by_state.get(DeliveryState.DELIVERED, 0),
        "cancelled": by_state.get(DeliveryState.CANCELLED, 0),
        "failed": by_state.get(DeliveryState.FAILED, 0),
    }


class CourierService:
    """Courier eligibility checks and read-only directory views."""

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.repository = CourierRepository(session)
        self.deliveries = DeliveryRepository(session)

    def is_courier_role(self, role: Optional[str]) -> bool:
        return (role or "").strip().lower() in self.settings.courier_roles

    async def ensure_eligible(self, courier_id: uuid.UUID) -> User:
        """
        Load a courier and check it may receive deliveries.

        Raises:
            NotFoundError: If the user does not exist
            ValidationFailedError: If the user is inactive or not a courier
        """
        courier = await self.repository.get(courier_id)

        if not courier.is_active:
            logger.warning(
                "Courier eligibility rejected: inactive",
                courier_id=str(courier_id),
            )
            raise ValidationFailedError(
                f"Courier {courier.full_name} is inactive",
                code=ErrorCode.COURIER_INACTIVE,
                courier_id=str(courier_id),
            )

        if not self.is_courier_role(courier.role):
            logger.warning(
                "Courier eligibility rejected: role",
                courier_id=str(courier_id),
                role=courier.role,
            )
            raise ValidationFailedError(
                f"User {courier.full_name} does not hold a courier role",
                code=ErrorCode.INVALID_COURIER_ROLE,
                courier_id=str(courier_id),
                role=courier.role,
                accepted_roles=self.settings.courier_roles,
            )

        return courier

    async def list_couriers(
        self,
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        sort_by: str = "full_name",
        descending: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        """
        Page through couriers with their delivery counters.

        Returns:
            ([{"courier": User, "counters": {...}}], total)
        """
        couriers, total = await self.repository.search(
            self.settings.courier_roles,
            search=search,
            is_active=is_active,
            sort_by=sort_by,
            descending=descending,
            limit=limit,
            offset=offset,
        )
        counts = await self.deliveries.count_by_state([c.id for c in couriers])
        items = [
            {"courier": courier, "counters": delivery_counters(counts.get(courier.id, {}))}
            for courier in couriers
        ]
        return items, total

    async def get_courier(self, courier_id: uuid.UUID) -> dict[str, Any]:
        """
        One courier with delivery statistics.

        Raises:
            NotFoundError: If the courier does not exist
        """
        courier = await self.repository.get(courier_id)
        counts = await self.deliveries.count_by_state([courier_id])
        return {
            "courier": courier,
            "counters": delivery_counters(counts.get(courier_id, {})),
        }

    async def fleet_statistics(self) -> dict[str, Any]:
        """Totals across every courier account."""
        activity = await self.repository.count_by_activity(self.settings.courier_roles)
        couriers = await self.repository.list_active(self.settings.courier_roles)
        counts = await self.deliveries.count_by_state()

        by_state: dict[DeliveryState, int] = {}
        for per_courier in counts.values():
            for state, count in per_courier.items():
                by_state[state] = by_state.get(state, 0) + count

        in_flight = await self.deliveries.count_in_flight([c.id for c in couriers])
        saturated = sum(
            1
            for courier in couriers
            if in_flight.get(courier.id, 0) >= self.settings.max_in_flight_deliveries
        )

        return {
            "total_couriers": sum(activity.values()),
            "active_couriers": activity.get(True, 0),
            "inactive_couriers": activity.get(False, 0),
            "available_couriers": len(couriers) - saturated,
            "deliveries": delivery_counters(by_state),
        }

    async def delivery_history(
        self,
        courier_id: uuid.UUID,
        state: Optional[DeliveryState] = None,
        order_status: Optional[OrderStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[tuple[DeliveryRecord, Order]], int]:
        """
        A courier's delivery records with their orders, newest first.

        Raises:
            NotFoundError: If the courier does not exist
        """
        await self.repository.get(courier_id)
        return await self.deliveries.list_for_courier(
            courier_id,
            state=state,
            order_status=order_status,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
