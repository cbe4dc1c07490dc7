"""
Assignment and reassignment engine.

This module implements AssignmentService, which decides which courier serves
an order. Direct assignment validates the courier and the order, is
idempotent for the same courier and requires an explicit reason to take an
order away from another courier. Cancellation with reassignment cancels the
current record and hands the order to the best ranked replacement courier as
one atomic unit; finding no replacement is a valid outcome, not an error.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.config import Settings, get_settings
from lastmile.core.errors import ErrorCode, StateConflictError, ValidationFailedError
from lastmile.core.logging import get_logger
from lastmile.database.connection import atomic
from lastmile.database.models import (
    ACTIVE_DELIVERY_STATES,
    OPEN_ROUTE_STATES,
    OPEN_STOP_STATES,
    DeliveryRecord,
    DeliveryState,
    LogisticsState,
    Order,
    OrderStatus,
    Route,
    RouteStop,
    User,
)
from lastmile.schemas.common import Actor
from lastmile.services.assignment.selection import CourierRanker
from lastmile.services.couriers.service import CourierService
from lastmile.services.deliveries.repository import DeliveryRepository
from lastmile.services.deliveries.service import DeliveryService
from lastmile.services.deliveries.state_machine import DeliveryEvent
from lastmile.services.orders.repository import OrderRepository
from lastmile.services.orders.synchronizer import OrderSynchronizer

logger = get_logger(__name__)

# Orders shown in the dispatcher's assignment board.
DISPATCHABLE_ORDER_STATUSES = (
    OrderStatus.CONFIRMED,
    OrderStatus.IN_PROCESS,
    OrderStatus.SHIPPED,
)

REASSIGNMENT_NOTE = "Reassigned from previous courier. Reason: {reason}"


def _require_reason(reason: Optional[str], **context: Any) -> str:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailedError(
            "A reason is required to reassign an order to another courier",
            code=ErrorCode.REASSIGNMENT_REASON_REQUIRED,
            **context,
        )
    return reason


class AssignmentService:
    """
    Courier assignment, reassignment and dispatcher views.

    Attributes:
        deliveries: Delivery lifecycle service
        couriers: Courier eligibility checks
        ranker: Replacement courier ranking
        synchronizer: Order-state synchronizer run after every assignment
    """

    def __init__(self, session: AsyncSession, settings: Optional[Settings] = None):
        self.session = session
        self.settings = settings or get_settings()
        self.orders = OrderRepository(session)
        self.records = DeliveryRepository(session)
        self.deliveries = DeliveryService(session, self.settings)
        self.couriers = CourierService(session, self.settings)
        self.ranker = CourierRanker(session, self.settings)
        self.synchronizer = OrderSynchronizer(session)

    async def assign(
        self,
        order_id: uuid.UUID,
        courier_id: uuid.UUID,
        actor: Actor,
        reassignment_reason: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Assign an order to a courier.

        Args:
            order_id: Order to assign
            courier_id: Courier to receive it
            actor: Dispatcher performing the assignment
            reassignment_reason: Required when another courier holds the order

        Returns:
            {"delivery", "already_assigned", "reassigned",
            "previous_delivery_id", "preconditions"}

        Raises:
            NotFoundError: If the courier or order does not exist
            ValidationFailedError: If the courier is not eligible or a
                required reassignment reason is missing
            StateConflictError: If the order is not confirmed
        """
        courier = await self.couriers.ensure_eligible(courier_id)
        order = await self.orders.get(order_id, for_update=True)
        current = await self.records.get_active_for_order(order.id, for_update=True)

        if current is not None and current.courier_id == courier.id:
            logger.info(
                "Order already assigned to courier",
                order_id=str(order.id),
                courier_id=str(courier.id),
                delivery_id=str(current.id),
            )
            return {
                "delivery": current,
                "already_assigned": True,
                "reassigned": False,
                "previous_delivery_id": None,
                "preconditions": await self.synchronizer.evaluate(order),
            }

        if order.status != OrderStatus.CONFIRMED:
            raise StateConflictError(
                f"Order {order.order_number} cannot be assigned from status {order.status.value}",
                code=ErrorCode.ORDER_NOT_ASSIGNABLE,
                order_id=str(order.id),
                current_status=order.status.value,
                required_status=OrderStatus.CONFIRMED.value,
            )

        reason = None
        if current is not None:
            reason = _require_reason(
                reassignment_reason,
                order_id=str(order.id),
                current_courier_id=str(current.courier_id),
            )

        async with atomic(self.session):
            notes = None
            if current is not None:
                await self.deliveries.apply_event(
                    current,
                    DeliveryEvent.CANCEL,
                    actor_id=actor.id,
                    reason=reason,
                    detail=f"Reassigned to courier {courier.id}",
                )
                notes = REASSIGNMENT_NOTE.format(reason=reason)

            record = await self.records.create(
                order_id=order.id,
                courier_id=courier.id,
                notes=notes,
                reassigned_from_id=current.id if current is not None else None,
            )
            await self.orders.update_state(
                order,
                logistics_state=LogisticsState.ROUTE_ASSIGNED,
                assigned_courier_id=courier.id,
            )

        preconditions = await self.synchronizer.promote_if_ready(order)

        logger.info(
            "Order assigned",
            order_id=str(order.id),
            courier_id=str(courier.id),
            delivery_id=str(record.id),
            reassigned=current is not None,
            actor_id=str(actor.id),
        )
        return {
            "delivery": record,
            "already_assigned": False,
            "reassigned": current is not None,
            "previous_delivery_id": current.id if current is not None else None,
            "preconditions": preconditions,
        }

    async def cancel_and_reassign(
        self,
        delivery_id: uuid.UUID,
        actor: Actor,
        reason: Optional[str],
        detail: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Cancel a delivery and hand the order to the best available courier.

        The cancellation and the new record are written in one savepoint. When
        no courier is available the order stays unassigned in the pending
        route pool and the call still succeeds with ``reassigned=False``.

        Returns:
            {"cancelled_delivery", "reassigned", "new_delivery", "courier",
            "message"}

        Raises:
            ValidationFailedError: If no reason is given
            NotFoundError: If the delivery does not exist
            PermissionDeniedError: If the actor neither owns it nor is elevated
            StateConflictError: If the delivery is already terminal
        """
        reason = _require_reason(reason, delivery_id=str(delivery_id))

        record = await self.records.get(delivery_id, for_update=True)
        self.deliveries.ensure_owner(record, actor)
        order = await self.orders.get(record.order_id, for_update=True)
        previous_courier_id = record.courier_id

        async with atomic(self.session):
            await self.deliveries.apply_event(
                record,
                DeliveryEvent.CANCEL,
                actor_id=actor.id,
                reason=reason,
                detail=detail,
            )

            candidate = await self.ranker.best(order, exclude=[previous_courier_id])
            new_record = None
            if candidate is not None:
                new_record = await self.records.create(
                    order_id=order.id,
                    courier_id=candidate["courier"].id,
                    notes=REASSIGNMENT_NOTE.format(reason=reason),
                    reassigned_from_id=record.id,
                )
                await self.orders.update_state(
                    order,
                    logistics_state=LogisticsState.ROUTE_ASSIGNED,
                    assigned_courier_id=candidate["courier"].id,
                    reason="reassigned after cancellation",
                )

        if new_record is None:
            logger.warning(
                "No courier available for reassignment",
                order_id=str(order.id),
                cancelled_delivery_id=str(record.id),
            )
            message = "Delivery cancelled; no courier available, order returned to the pending pool"
        else:
            await self.synchronizer.promote_if_ready(order)
            logger.info(
                "Delivery reassigned",
                order_id=str(order.id),
                cancelled_delivery_id=str(record.id),
                new_delivery_id=str(new_record.id),
                courier_id=str(new_record.courier_id),
                score=candidate["score"],
            )
            message = "Delivery cancelled and reassigned"

        return {
            "cancelled_delivery": record,
            "reassigned": new_record is not None,
            "new_delivery": new_record,
            "courier": candidate["courier"] if candidate is not None else None,
            "message": message,
        }

    async def list_available_couriers(
        self, order_id: Optional[uuid.UUID] = None
    ) -> list[dict[str, Any]]:
        """
        Couriers that can take another delivery.

        With an order, candidates are ordered by distance to its destination
        (unknown distances last); otherwise by current load and name.

        Raises:
            NotFoundError: If ``order_id`` is given and does not exist
        """
        order = await self.orders.get(order_id) if order_id is not None else None
        candidates = await self.ranker.candidates(order)

        if order is not None:
            candidates.sort(
                key=lambda c: (
                    c["distance_km"] is None,
                    c["distance_km"] if c["distance_km"] is not None else 0.0,
                    c["in_flight"],
                    c["courier"].full_name,
                )
            )
        else:
            candidates.sort(key=lambda c: (c["in_flight"], c["courier"].full_name))
        return candidates

    async def list_assigned_orders(
        self,
        state: Optional[DeliveryState] = None,
        courier_id: Optional[uuid.UUID] = None,
        order_status: Optional[OrderStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        """
        Dispatcher board of orders awaiting or under delivery.

        Lists confirmed, in-process and shipped orders with their active
        delivery record and courier (when any), excluding orders already
        held by an open stop of an open route. Dates filter on the
        assignment time, or the order creation time for unassigned orders.

        Returns:
            ([{"order", "delivery", "courier"}], total)
        """
        in_open_route = exists(
            select(RouteStop.id)
            .join(Route, Route.id == RouteStop.route_id)
            .where(
                RouteStop.order_id == Order.id,
                RouteStop.state.in_(OPEN_STOP_STATES),
                Route.state.in_(OPEN_ROUTE_STATES),
            )
        )
        reference_date = func.coalesce(DeliveryRecord.assigned_at, Order.created_at)

        conditions = [~in_open_route]
        if order_status is not None:
            conditions.append(Order.status == order_status)
        else:
            conditions.append(Order.status.in_(DISPATCHABLE_ORDER_STATUSES))
        if state is not None:
            conditions.append(DeliveryRecord.state == state)
        if courier_id is not None:
            conditions.append(
                or_(
                    DeliveryRecord.courier_id == courier_id,
                    and_(DeliveryRecord.id.is_(None), Order.assigned_courier_id == courier_id),
                )
            )
        if date_from is not None:
            conditions.append(reference_date >= date_from)
        if date_to is not None:
            conditions.append(reference_date <= date_to)

        def joined(stmt):
            return (
                stmt.select_from(Order)
                .outerjoin(
                    DeliveryRecord,
                    and_(
                        DeliveryRecord.order_id == Order.id,
                        DeliveryRecord.state.in_(ACTIVE_DELIVERY_STATES),
                    ),
                )
                .outerjoin(User, User.id == DeliveryRecord.courier_id)
                .where(*conditions)
            )

        total = await self.session.scalar(joined(select(func.count(Order.id))))
        result = await self.session.execute(
            joined(select(Order, DeliveryRecord, User))
            .order_by(reference_date.desc(), Order.id)
            .limit(limit)
            .offset(offset)
        )
        items = [
            {"order": order, "delivery": record, "courier": courier}
            for order, record, courier in result.all()
        ]
        return items, int(total or 0)
