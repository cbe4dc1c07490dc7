"""
Courier ranking for assignment and reassignment.

Load and proximity are combined into one score instead of switching between
them::

    score = load_weight * in_flight + distance_weight_per_km * distance_km

When either the courier's last known position or the order's destination is
missing, ``unknown_distance_km`` stands in for the distance, so a courier with
no position ranks as if it were that far away. Couriers at or above the
in-flight ceiling are never candidates.
"""

import uuid
from typing import Any, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.config import Settings, get_settings
from lastmile.core.logging import get_logger
from lastmile.database.models import Order, User
from lastmile.services.couriers.repository import CourierRepository
from lastmile.services.deliveries.repository import DeliveryRepository
from lastmile.services.geo.service import haversine_km

logger = get_logger(__name__)


class CourierRanker:
    """Scores and orders candidate couriers for an order."""

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.couriers = CourierRepository(session)
        self.deliveries = DeliveryRepository(session)

    def score(self, in_flight: int, distance_km: Optional[float]) -> float:
        if distance_km is None:
            distance_km = self.settings.reassignment_unknown_distance_km
        return (
            self.settings.reassignment_load_weight * in_flight
            + self.settings.reassignment_distance_weight_per_km * distance_km
        )

    def rank(
        self,
        couriers: Sequence[User],
        in_flight: dict[uuid.UUID, int],
        order: Optional[Order] = None,
    ) -> list[dict[str, Any]]:
        """
        Build ranked candidates from already loaded couriers.

        Ties on score fall back to fewer in-flight deliveries, then shorter
        distance, then name and id, so the ranking is deterministic.
        """
        destination = order.destination if order is not None else None
        ceiling = self.settings.max_in_flight_deliveries

        candidates = []
        for courier in couriers:
            load = in_flight.get(courier.id, 0)
            if load >= ceiling:
                continue

            distance_km = None
            position = courier.last_known_position
            if destination is not None and position is not None:
                distance_km = round(haversine_km(position, destination), 3)

            candidates.append(
                {
                    "courier": courier,
                    "in_flight": load,
                    "distance_km": distance_km,
                    "score": round(self.score(load, distance_km), 6),
                }
            )

        candidates.sort(
            key=lambda c: (
                c["score"],
                c["in_flight"],
                c["distance_km"] if c["distance_km"] is not None else float("inf"),
                c["courier"].full_name,
                str(c["courier"].id),
            )
        )
        return candidates

    async def candidates(
        self,
        order: Optional[Order] = None,
        exclude: Sequence[uuid.UUID] = (),
    ) -> list[dict[str, Any]]:
        """Active, eligible couriers under the in-flight ceiling, best first."""
        excluded = set(exclude)
        couriers = [
            courier
            for courier in await self.couriers.list_active(self.settings.courier_roles)
            if courier.id not in excluded
        ]
        in_flight = await self.deliveries.count_in_flight([c.id for c in couriers])
        ranked = self.rank(couriers, in_flight, order)

        logger.debug(
            "Courier candidates ranked",
            order_id=str(order.id) if order is not None else None,
            candidates=len(ranked),
            excluded=len(exclude),
        )
        return ranked

    async def best(
        self, order: Order, exclude: Sequence[uuid.UUID] = ()
    ) -> Optional[dict[str, Any]]:
        ranked = await self.candidates(order, exclude)
        return ranked[0] if ranked else None
