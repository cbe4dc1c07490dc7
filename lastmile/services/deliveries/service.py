"""
Delivery record service.

This module implements DeliveryService, the single entry point for moving a
delivery record through its lifecycle. Each transition loads the record with
a row lock, checks that the actor owns it (or holds an elevated role), runs
the state machine and then propagates the change to the parent order and the
route stop in the same transaction.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.config import Settings, get_settings
from lastmile.core.errors import ErrorCode, PermissionDeniedError
from lastmile.core.logging import get_logger
from lastmile.database.models import (
    OPEN_STOP_STATES,
    DeliveryRecord,
    DeliveryState,
    LogisticsState,
    Order,
    OrderStatus,
    StopState,
)
from lastmile.schemas.common import Actor
from lastmile.services.deliveries.repository import DeliveryRepository
from lastmile.services.deliveries.state_machine import (
    DeliveryEvent,
    DeliveryStateMachine,
    get_delivery_state_machine,
)
from lastmile.services.orders.repository import OrderRepository
from lastmile.services.routes.repository import RouteRepository

logger = get_logger(__name__)

_STOP_STATE_FOR_EVENT = {
    DeliveryEvent.START: StopState.EN_ROUTE,
    DeliveryEvent.COMPLETE: StopState.DELIVERED,
    DeliveryEvent.CANCEL: StopState.CANCELLED,
    DeliveryEvent.FAIL: StopState.CANCELLED,
}


class DeliveryService:
    """
    Delivery lifecycle operations.

    Attributes:
        repository: Delivery record repository
        orders: Order repository, the only write path for order status
        routes: Route repository, used to keep route stops in step
        state_machine: Delivery state machine
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[Settings] = None,
        state_machine: Optional[DeliveryStateMachine] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.repository = DeliveryRepository(session)
        self.orders = OrderRepository(session)
        self.routes = RouteRepository(session)
        self.state_machine = state_machine or get_delivery_state_machine(self.settings)

    def ensure_owner(self, record: DeliveryRecord, actor: Actor) -> None:
        if record.courier_id == actor.id or actor.is_elevated(self.settings):
            return
        logger.warning(
            "Delivery access denied",
            delivery_id=str(record.id),
            actor_id=str(actor.id),
            actor_role=actor.role,
        )
        raise PermissionDeniedError(
            "Only the assigned courier or a dispatcher may act on this delivery",
            code=ErrorCode.NOT_DELIVERY_OWNER,
            delivery_id=str(record.id),
        )

    async def get(self, delivery_id: uuid.UUID, actor: Actor) -> tuple[DeliveryRecord, Order]:
        """
        Load one delivery with its order.

        Raises:
            NotFoundError: If the delivery does not exist
            PermissionDeniedError: If the actor neither owns it nor is elevated
        """
        record = await self.repository.get(delivery_id)
        self.ensure_owner(record, actor)
        order = await self.orders.get(record.order_id)
        return record, order

    async def list_for_courier(
        self,
        actor: Actor,
        courier_id: Optional[uuid.UUID] = None,
        state: Optional[DeliveryState] = None,
        order_status: Optional[OrderStatus] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[tuple[DeliveryRecord, Order]], int]:
        """
        List a courier's deliveries, newest first.

        Couriers see their own deliveries; elevated roles may list any
        courier's.
        """
        courier_id = courier_id or actor.id
        if courier_id != actor.id and not actor.is_elevated(self.settings):
            raise PermissionDeniedError(
                "Couriers may only list their own deliveries",
                code=ErrorCode.NOT_DELIVERY_OWNER,
                courier_id=str(courier_id),
            )
        return await self.repository.list_for_courier(
            courier_id,
            state=state,
            order_status=order_status,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )

    async def start(
        self,
        delivery_id: uuid.UUID,
        actor: Actor,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
    ) -> DeliveryRecord:
        return await self.transition(delivery_id, actor, DeliveryEvent.START, lat=lat, lon=lon)

    async def arrive(
        self,
        delivery_id: uuid.UUID,
        actor: Actor,
        lat: Optional[float],
        lon: Optional[float],
    ) -> DeliveryRecord:
        return await self.transition(delivery_id, actor, DeliveryEvent.ARRIVE, lat=lat, lon=lon)

    async def complete(
        self,
        delivery_id: uuid.UUID,
        actor: Actor,
        signature: Optional[str] = None,
        photo_url: Optional[str] = None,
        notes: Optional[str] = None,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
    ) -> DeliveryRecord:
        return await self.transition(
            delivery_id,
            actor,
            DeliveryEvent.COMPLETE,
            signature=signature,
            photo_url=photo_url,
            notes=notes,
            lat=lat,
            lon=lon,
        )

    async def fail(
        self,
        delivery_id: uuid.UUID,
        actor: Actor,
        reason: str,
        detail: Optional[str] = None,
    ) -> DeliveryRecord:
        """
        Mark a delivery as failed and release the order to the pending pool.

        Unlike cancellation, no replacement courier is searched for.
        """
        return await self.transition(
            delivery_id, actor, DeliveryEvent.FAIL, reason=reason, detail=detail
        )

    async def transition(
        self,
        delivery_id: uuid.UUID,
        actor: Actor,
        event: DeliveryEvent,
        **payload: Any,
    ) -> DeliveryRecord:
        """
        Apply a lifecycle event on behalf of an actor.

        Raises:
            NotFoundError: If the delivery does not exist
            PermissionDeniedError: If the actor neither owns it nor is elevated
            StateConflictError: If the event is not accepted in the current state
            ValidationFailedError: If the event payload is incomplete
        """
        record = await self.repository.get(delivery_id, for_update=True)
        self.ensure_owner(record, actor)
        return await self.apply_event(record, event, actor_id=actor.id, **payload)

    async def apply_event(
        self,
        record: DeliveryRecord,
        event: DeliveryEvent,
        actor_id: Optional[uuid.UUID] = None,
        **payload: Any,
    ) -> DeliveryRecord:
        """
        Transition an already loaded record and propagate the change.

        Callers are responsible for locking and authorization.
        """
        self.state_machine.apply(record, event, actor_id=actor_id, **payload)
        await self.repository.save(record, f"delivery_{event.value}")

        await self._sync_route_stop(record, event)
        await self._sync_order(record, event)

        logger.info(
            "Delivery updated",
            delivery_id=str(record.id),
            order_id=str(record.order_id),
            courier_id=str(record.courier_id),
            state=record.state.value,
            actor_id=str(actor_id) if actor_id else None,
        )
        return record

    async def _sync_route_stop(self, record: DeliveryRecord, event: DeliveryEvent) -> None:
        stop_state = _STOP_STATE_FOR_EVENT.get(event)
        if stop_state is None or record.route_id is None:
            return
        stop = await self.routes.get_stop(record.route_id, record.order_id)
        if stop is None or stop.state not in OPEN_STOP_STATES:
            return
        stop.state = stop_state
        if stop.delivery_record_id is None:
            stop.delivery_record_id = record.id
        await self.routes.save_stops(record.route_id, f"stop_{event.value}")

    async def _sync_order(self, record: DeliveryRecord, event: DeliveryEvent) -> None:
        if event is DeliveryEvent.ARRIVE:
            return
        order = await self.orders.get(record.order_id, for_update=True)

        if event is DeliveryEvent.START:
            await self.orders.update_state(
                order,
                status=OrderStatus.SHIPPED,
                logistics_state=LogisticsState.IN_TRANSIT,
                assigned_courier_id=record.courier_id,
                reason="delivery started",
            )
        elif event is DeliveryEvent.COMPLETE:
            await self.orders.update_state(
                order,
                status=OrderStatus.DELIVERED,
                logistics_state=LogisticsState.DELIVERED,
                delivered_at=record.delivered_at,
                reason="delivery completed",
            )
        else:
            await self.orders.update_state(
                order,
                logistics_state=LogisticsState.PENDING_ROUTE,
                assigned_courier_id=None,
                reason=f"delivery {record.state.value}",
            )
