"""
Order-state synchronizer.

Guards the ``confirmed -> in_process`` promotion behind four independent
readiness checks: the ledger knows the customer, the ledger knows the order,
an active delivery record with a courier exists, and the order has been
physically loaded. Promotion happens only when all four hold at the same
time; it is re-evaluated after assignment, route creation and loading.
"""

import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.logging import get_logger
from lastmile.database.models import Order, OrderStatus
from lastmile.services.deliveries.repository import DeliveryRepository
from lastmile.services.orders.repository import OrderRepository

logger = get_logger(__name__)


class OrderSynchronizer:
    """Evaluates dispatch preconditions and promotes ready orders."""

    def __init__(self, session: AsyncSession):
        self.orders = OrderRepository(session)
        self.deliveries = DeliveryRepository(session)

    async def evaluate(self, order: Order) -> dict[str, Any]:
        active = await self.deliveries.get_active_for_order(order.id)
        checks = {
            "ledger_party": bool(order.ledger_party_ref),
            "ledger_order": bool(order.ledger_order_ref),
            "courier_assigned": active is not None and active.courier_id is not None,
            "loaded": bool(order.loaded_on_vehicle),
        }
        return {
            "order_id": order.id,
            "status": order.status,
            "satisfied": all(checks.values()),
            "checks": checks,
            "missing": [name for name, ok in checks.items() if not ok],
        }

    async def check_preconditions(self, order_id: uuid.UUID) -> dict[str, Any]:
        """
        Report which of the four preconditions hold for an order.

        Raises:
            NotFoundError: If the order does not exist
        """
        order = await self.orders.get(order_id)
        return await self.evaluate(order)

    async def promote_if_ready(self, order: Order) -> dict[str, Any]:
        """
        Promote a confirmed order to ``in_process`` when every check holds.

        Orders in any other status are reported but never changed.
        """
        result = await self.evaluate(order)
        promoted = False

        if result["satisfied"] and order.status == OrderStatus.CONFIRMED:
            await self.orders.update_state(
                order,
                status=OrderStatus.IN_PROCESS,
                reason="dispatch preconditions satisfied",
            )
            promoted = True
        elif not result["satisfied"]:
            logger.debug(
                "Order not ready for dispatch",
                order_id=str(order.id),
                missing=result["missing"],
            )

        return {**result, "status": order.status, "promoted": promoted}

    async def verify_and_promote(self, order_id: uuid.UUID) -> dict[str, Any]:
        """Re-run the checks for an order and promote it if ready."""
        order = await self.orders.get(order_id, for_update=True)
        return await self.promote_if_ready(order)

    async def mark_loaded(self, order_id: uuid.UUID) -> dict[str, Any]:
        """
        Flag an order as physically loaded, then re-evaluate it.

        Setting the flag twice is harmless.
        """
        order = await self.orders.get(order_id, for_update=True)
        if not order.loaded_on_vehicle:
            await self.orders.update_state(order, loaded_on_vehicle=True)
            logger.info("Order marked as loaded", order_id=str(order.id))
        return await self.promote_if_ready(order)
