"""
Route planner service.

This module implements RouteService: creating capacity-bounded routes for a
courier, reading the active route with its effective stop order, publishing
and toggling alternate stop orderings, starting a route (which puts every
assigned delivery on the road) and finishing it, which settles every stop in
one savepoint. It also suggests a stop order for a batch of orders using the
nearest-neighbor heuristic from the geo service.
"""

import uuid
from collections import Counter
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.config import Settings, get_settings
from lastmile.core.errors import (
    ErrorCode,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationFailedError,
)
from lastmile.core.logging import get_logger
from lastmile.database.base import utcnow
from lastmile.database.connection import atomic
from lastmile.database.models import (
    OPEN_STOP_STATES,
    AlternatePlanStop,
    AlternateRoutePlan,
    DeliveryRecord,
    DeliveryState,
    LogisticsState,
    OrderStatus,
    Route,
    RouteState,
    RouteStop,
    StopState,
)
from lastmile.schemas.common import Actor
from lastmile.services.couriers.service import CourierService
from lastmile.services.deliveries.repository import DeliveryRepository
from lastmile.services.deliveries.service import DeliveryService
from lastmile.services.deliveries.state_machine import DeliveryEvent
from lastmile.services.geo.providers import Position
from lastmile.services.geo.service import GeoService
from lastmile.services.orders.repository import OrderRepository
from lastmile.services.orders.synchronizer import OrderSynchronizer
from lastmile.services.routes.repository import RouteRepository

logger = get_logger(__name__)

UNDELIVERED_CANCEL_REASON = "route_finished_undelivered"


def effective_order(
    stops: Sequence[RouteStop], positions: Sequence[AlternatePlanStop]
) -> list[RouteStop]:
    """
    Stops in the order a courier should visit them.

    Plan positions come first; stops the plan does not mention keep their
    original relative order at the end.
    """
    by_order = {stop.order_id: stop for stop in stops}
    ordered = [by_order[p.order_id] for p in positions if p.order_id in by_order]
    planned = {stop.order_id for stop in ordered}
    ordered.extend(stop for stop in stops if stop.order_id not in planned)
    return ordered


class RouteService:
    """
    Route planning and execution.

    Attributes:
        repository: Route repository
        deliveries: Delivery lifecycle service used for every record change
        couriers: Courier eligibility checks
        synchronizer: Order-state synchronizer
        geo: Geo service for route suggestions
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[Settings] = None,
        geo: Optional[GeoService] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.repository = RouteRepository(session)
        self.records = DeliveryRepository(session)
        self.orders = OrderRepository(session)
        self.deliveries = DeliveryService(session, self.settings)
        self.couriers = CourierService(session, self.settings)
        self.synchronizer = OrderSynchronizer(session)
        self._geo = geo

    @property
    def geo(self) -> GeoService:
        if self._geo is None:
            self._geo = GeoService(settings=self.settings)
        return self._geo

    def _ensure_owner(self, route: Route, actor: Actor) -> None:
        if route.courier_id == actor.id or actor.is_elevated(self.settings):
            return
        logger.warning(
            "Route access denied",
            route_id=str(route.id),
            actor_id=str(actor.id),
            actor_role=actor.role,
        )
        raise PermissionDeniedError(
            "Only the route's courier or a dispatcher may act on this route",
            code=ErrorCode.NOT_ROUTE_OWNER,
            route_id=str(route.id),
        )

    # Views

    async def _describe(
        self, routes: Sequence[Route], active_plan_only: bool = False
    ) -> list[dict[str, Any]]:
        route_ids = [route.id for route in routes]
        stops = await self.repository.list_stops_for_routes(route_ids)

        if active_plan_only:
            plans = {}
            for route in routes:
                plan = await self.repository.get_active_plan(route.id)
                if plan is not None:
                    plans[route.id] = plan
        else:
            plans = await self.repository.plans_for_routes(route_ids)
        positions = await self.repository.plan_positions(p.id for p in plans.values())

        order_ids = {stop.order_id for route_stops in stops.values() for stop in route_stops}
        orders = await self.orders.get_many(order_ids)

        views = []
        for route in routes:
            route_stops = stops.get(route.id, [])
            plan = plans.get(route.id)
            alternate = None
            effective = list(route_stops)
            if plan is not None:
                alternate = {"plan": plan, "sequence": positions.get(plan.id, [])}
                if plan.is_active:
                    effective = effective_order(route_stops, alternate["sequence"])
            views.append(
                {
                    "route": route,
                    "stops": route_stops,
                    "orders": {stop.order_id: orders.get(stop.order_id) for stop in route_stops},
                    "alternate_plan": alternate,
                    "effective_stops": effective,
                }
            )
        return views

    async def describe(self, route: Route, active_plan_only: bool = False) -> dict[str, Any]:
        return (await self._describe([route], active_plan_only))[0]

    # Creation

    async def create_route(
        self,
        courier_id: uuid.UUID,
        name: str,
        capacity: int,
        order_ids: Sequence[uuid.UUID],
        actor: Actor,
        description: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Create a route for a courier with one stop per order.

        Stops are numbered 1..N in the order the ids were given. An order's
        active delivery record is reused when it already belongs to this
        courier; otherwise a new record is created.

        Raises:
            NotFoundError: If the courier or an order does not exist
            PermissionDeniedError: If a courier creates a route for someone else
            ValidationFailedError: On any invalid batch (empty, duplicates,
                over capacity, non-routable orders, orders in another open
                route or held by another courier)
        """
        if courier_id != actor.id and not actor.is_elevated(self.settings):
            raise PermissionDeniedError(
                "Couriers may only create routes for themselves",
                code=ErrorCode.NOT_ROUTE_OWNER,
                courier_id=str(courier_id),
            )
        courier = await self.couriers.ensure_eligible(courier_id)

        order_ids = list(order_ids)
        if not order_ids:
            raise ValidationFailedError(
                "A route needs at least one order",
                code=ErrorCode.EMPTY_ROUTE,
            )
        duplicates = sorted(str(oid) for oid, n in Counter(order_ids).items() if n > 1)
        if duplicates:
            raise ValidationFailedError(
                "Each order may appear only once in a route",
                code=ErrorCode.DUPLICATE_ROUTE_ORDERS,
                duplicated_order_ids=duplicates,
            )
        if len(order_ids) > capacity:
            raise ValidationFailedError(
                f"Route capacity is {capacity} but {len(order_ids)} orders were given",
                code=ErrorCode.ROUTE_CAPACITY_EXCEEDED,
                capacity=capacity,
                order_count=len(order_ids),
            )

        orders = await self.orders.get_many(order_ids, for_update=True)
        missing = [str(oid) for oid in order_ids if oid not in orders]
        if missing:
            raise NotFoundError(
                "Some orders do not exist",
                code=ErrorCode.ORDER_NOT_FOUND,
                order_ids=missing,
            )

        not_routable = [
            {"order_id": str(o.id), "status": o.status.value}
            for o in (orders[oid] for oid in order_ids)
            if not o.status.is_routable
        ]
        if not_routable:
            raise ValidationFailedError(
                "Some orders cannot be routed in their current status",
                code=ErrorCode.ORDERS_NOT_ROUTABLE,
                orders=not_routable,
            )

        busy = await self.repository.find_open_stops(order_ids)
        if busy:
            raise ValidationFailedError(
                "Some orders already belong to an active route",
                code=ErrorCode.ORDERS_IN_ACTIVE_ROUTE,
                orders=[
                    {"order_id": str(stop.order_id), "route_id": str(route.id)}
                    for stop, route in busy
                ],
            )

        active = await self.records.get_active_for_orders(order_ids)
        foreign = [
            {"order_id": str(oid), "courier_id": str(record.courier_id)}
            for oid, record in active.items()
            if record.courier_id != courier.id
        ]
        if foreign:
            raise ValidationFailedError(
                "Some orders are assigned to another courier; reassign them first",
                code=ErrorCode.ORDER_ASSIGNED_TO_OTHER_COURIER,
                orders=foreign,
            )

        async with atomic(self.session):
            route = await self.repository.create(
                courier_id=courier.id,
                name=name,
                capacity=capacity,
                stop_count=len(order_ids),
                description=description,
                created_by=actor.id,
            )

            entries = []
            for order_id in order_ids:
                record = active.get(order_id)
                if record is None:
                    record = await self.records.create(
                        order_id=order_id,
                        courier_id=courier.id,
                        route_id=route.id,
                    )
                else:
                    record.route_id = route.id
                    await self.records.save(record, "attach_delivery_to_route")
                entries.append((order_id, record.id))

                await self.orders.update_state(
                    orders[order_id],
                    logistics_state=LogisticsState.ROUTE_ASSIGNED,
                    assigned_courier_id=courier.id,
                )

            await self.repository.add_stops(route.id, entries)

        for order_id in order_ids:
            await self.synchronizer.promote_if_ready(orders[order_id])

        logger.info(
            "Route created",
            route_id=str(route.id),
            courier_id=str(courier.id),
            stop_count=len(order_ids),
            capacity=capacity,
            actor_id=str(actor.id),
        )
        return await self.describe(route)

    # Reads

    async def get_route(self, route_id: uuid.UUID, actor: Actor) -> dict[str, Any]:
        route = await self.repository.get(route_id)
        self._ensure_owner(route, actor)
        return await self.describe(route)

    async def get_active_route(
        self, actor: Actor, courier_id: Optional[uuid.UUID] = None
    ) -> Optional[dict[str, Any]]:
        """
        The courier's most recent open route, or None.

        Only the currently active alternate plan is included, and the
        effective stop order reflects it.
        """
        courier_id = courier_id or actor.id
        if courier_id != actor.id and not actor.is_elevated(self.settings):
            raise PermissionDeniedError(
                "Couriers may only read their own active route",
                code=ErrorCode.NOT_ROUTE_OWNER,
                courier_id=str(courier_id),
            )
        route = await self.repository.latest_open_for_courier(courier_id)
        if route is None:
            return None
        return await self.describe(route, active_plan_only=True)

    async def list_routes(
        self,
        state: Optional[RouteState] = None,
        courier_id: Optional[uuid.UUID] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        """Routes newest first, each with its stops and active (or latest) plan."""
        routes, total = await self.repository.list_routes(
            state=state,
            courier_id=courier_id,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        )
        return await self._describe(routes), total

    # Alternate plans

    async def propose_alternate_order(
        self,
        route_id: uuid.UUID,
        actor: Actor,
        order_ids: Sequence[uuid.UUID],
        reason: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Publish a new stop ordering as the route's active alternate plan.

        The sequence must contain exactly the orders of the route's
        non-cancelled stops. Earlier plans are deactivated, and the stored
        stop sequence numbers are left untouched.

        Raises:
            PermissionDeniedError: If the actor neither drives the route nor is elevated
            StateConflictError: If the route is completed or cancelled
            ValidationFailedError: If the sequence is not a permutation of the stops
        """
        route = await self.repository.get(route_id, for_update=True)
        self._ensure_owner(route, actor)
        self._ensure_modifiable(route)

        stops = await self.repository.list_stops(route.id)
        expected = [stop.order_id for stop in stops if stop.state != StopState.CANCELLED]
        proposed = list(order_ids)

        if len(proposed) != len(set(proposed)) or set(proposed) != set(expected):
            raise ValidationFailedError(
                "The proposed sequence must contain each of the route's orders exactly once",
                code=ErrorCode.INVALID_ALTERNATE_SEQUENCE,
                route_id=str(route.id),
                missing=sorted(str(oid) for oid in set(expected) - set(proposed)),
                unexpected=sorted(str(oid) for oid in set(proposed) - set(expected)),
                duplicated=sorted(str(oid) for oid, n in Counter(proposed).items() if n > 1),
            )

        async with atomic(self.session):
            deactivated = await self.repository.deactivate_plans(route.id)
            plan = await self.repository.create_plan(
                route_id=route.id,
                courier_id=route.courier_id,
                order_ids=proposed,
                reason=reason,
                created_by=actor.id,
            )

        logger.info(
            "Alternate route order proposed",
            route_id=str(route.id),
            plan_id=str(plan.id),
            deactivated_plans=deactivated,
            actor_id=str(actor.id),
        )
        return await self.describe(route)

    async def toggle_alternate(
        self, route_id: uuid.UUID, actor: Actor, active: bool
    ) -> dict[str, Any]:
        """
        Switch the route's most recent alternate plan on or off.

        Raises:
            NotFoundError: If the route has no alternate plan
            StateConflictError: If activating on a route that can no longer change
        """
        route = await self.repository.get(route_id, for_update=True)
        self._ensure_owner(route, actor)

        plan = await self.repository.get_latest_plan(route.id, for_update=True)
        if plan is None:
            raise NotFoundError(
                "This route has no alternate plan",
                code=ErrorCode.ALTERNATE_PLAN_NOT_FOUND,
                route_id=str(route.id),
            )
        if active:
            self._ensure_modifiable(route)

        if plan.is_active != active:
            if active:
                await self.repository.deactivate_plans(route.id)
            plan.is_active = active
            await self.repository.save_plan(plan, "toggle_alternate_plan")

        logger.info(
            "Alternate route plan toggled",
            route_id=str(route.id),
            plan_id=str(plan.id),
            active=active,
            actor_id=str(actor.id),
        )
        return await self.describe(route)

    def _ensure_modifiable(self, route: Route) -> None:
        if not route.state.is_modifiable:
            raise StateConflictError(
                f"Route is {route.state.value} and can no longer be changed",
                code=ErrorCode.ROUTE_NOT_MODIFIABLE,
                route_id=str(route.id),
                current_state=route.state.value,
            )

    # Execution

    async def start_route(self, route_id: uuid.UUID, actor: Actor) -> dict[str, Any]:
        """
        Start a planned or active route.

        Every delivery still ``assigned`` on the route goes ``in_transit``,
        which also ships its order and puts its stop en route.

        Raises:
            StateConflictError: If the route is not planned or active
        """
        route = await self.repository.get(route_id, for_update=True)
        self._ensure_owner(route, actor)
        if not route.state.is_startable:
            raise StateConflictError(
                f"Route is {route.state.value} and cannot be started",
                code=ErrorCode.ROUTE_NOT_STARTABLE,
                route_id=str(route.id),
                current_state=route.state.value,
            )

        async with atomic(self.session):
            started = 0
            for record in await self.records.list_for_route(route.id, [DeliveryState.ASSIGNED]):
                locked = await self.records.get(record.id, for_update=True)
                await self.deliveries.apply_event(locked, DeliveryEvent.START, actor_id=actor.id)
                started += 1

            route.state = RouteState.IN_PROGRESS
            route.start_at = utcnow()
            await self.repository.save(route, "start_route")

        logger.info(
            "Route started",
            route_id=str(route.id),
            courier_id=str(route.courier_id),
            deliveries_started=started,
            actor_id=str(actor.id),
        )
        return await self.describe(route)

    async def finish_route(
        self,
        route_id: uuid.UUID,
        actor: Actor,
        delivered_order_ids: Sequence[uuid.UUID],
        undelivered_order_ids: Sequence[uuid.UUID] = (),
    ) -> dict[str, Any]:
        """
        Settle every stop of an in-progress route and complete it.

        Delivered orders complete their delivery. Undelivered orders, and any
        open stop not listed at all, get their delivery cancelled and
        detached from the route and return to ``in_process`` so they can be
        assigned again. The whole batch is applied in one savepoint: if any
        order cannot be updated, nothing is.

        Raises:
            StateConflictError: If the route is not in progress, or an order
                cannot take the new status
            ValidationFailedError: If the lists overlap, repeat an order or
                name orders that are not open stops of the route
        """
        route = await self.repository.get(route_id, for_update=True)
        self._ensure_owner(route, actor)
        if route.state != RouteState.IN_PROGRESS:
            raise StateConflictError(
                f"Route is {route.state.value}; only a route in progress can be finished",
                code=ErrorCode.ROUTE_NOT_IN_PROGRESS,
                route_id=str(route.id),
                current_state=route.state.value,
            )

        delivered_ids = list(delivered_order_ids)
        undelivered_ids = list(undelivered_order_ids)
        stops = {stop.order_id: stop for stop in await self.repository.list_stops(route.id)}
        self._validate_finish(route, stops, delivered_ids, undelivered_ids)

        listed = set(delivered_ids) | set(undelivered_ids)
        undelivered_ids.extend(
            order_id
            for order_id, stop in stops.items()
            if stop.state in OPEN_STOP_STATES and order_id not in listed
        )

        records: dict[uuid.UUID, Optional[DeliveryRecord]] = {}
        for order_id in delivered_ids + undelivered_ids:
            record_id = stops[order_id].delivery_record_id
            records[order_id] = (
                await self.records.get(record_id, for_update=True) if record_id else None
            )

        unusable = [
            str(order_id)
            for order_id in delivered_ids
            if records[order_id] is None
            or records[order_id].state in (DeliveryState.CANCELLED, DeliveryState.FAILED)
        ]
        if unusable:
            raise ValidationFailedError(
                "Some orders have no live delivery on this route and cannot be marked delivered",
                code=ErrorCode.INVALID_FINISH_REQUEST,
                route_id=str(route.id),
                order_ids=unusable,
            )

        async with atomic(self.session):
            for order_id in delivered_ids:
                await self._settle_delivered(stops[order_id], records[order_id], actor)
            for order_id in undelivered_ids:
                await self._settle_undelivered(stops[order_id], records[order_id], actor)

            route.state = RouteState.COMPLETED
            route.end_at = utcnow()
            await self.repository.save(route, "finish_route")

        logger.info(
            "Route finished",
            route_id=str(route.id),
            delivered=len(delivered_ids),
            undelivered=len(undelivered_ids),
            actor_id=str(actor.id),
        )
        return await self.describe(route)

    def _validate_finish(
        self,
        route: Route,
        stops: dict[uuid.UUID, RouteStop],
        delivered_ids: list[uuid.UUID],
        undelivered_ids: list[uuid.UUID],
    ) -> None:
        problems: dict[str, list[str]] = {}

        repeated = [
            oid for oid, n in Counter(delivered_ids + undelivered_ids).items() if n > 1
        ]
        if repeated:
            problems["repeated"] = sorted(str(oid) for oid in repeated)

        unknown = [oid for oid in delivered_ids + undelivered_ids if oid not in stops]
        if unknown:
            problems["not_in_route"] = sorted({str(oid) for oid in unknown})

        closed = [
            oid
            for oid in delivered_ids + undelivered_ids
            if oid in stops
            and stops[oid].state not in OPEN_STOP_STATES
            and not (oid in delivered_ids and stops[oid].state == StopState.DELIVERED)
        ]
        if closed:
            problems["stop_closed"] = sorted({str(oid) for oid in closed})

        if problems:
            raise ValidationFailedError(
                "The finish request does not match the route's open stops",
                code=ErrorCode.INVALID_FINISH_REQUEST,
                route_id=str(route.id),
                **problems,
            )

    async def _settle_delivered(
        self, stop: RouteStop, record: DeliveryRecord, actor: Actor
    ) -> None:
        if record.state == DeliveryState.ASSIGNED:
            await self.deliveries.apply_event(record, DeliveryEvent.START, actor_id=actor.id)
        if record.state != DeliveryState.DELIVERED:
            await self.deliveries.apply_event(record, DeliveryEvent.COMPLETE, actor_id=actor.id)

        if stop.state != StopState.DELIVERED:
            stop.state = StopState.DELIVERED
            await self.repository.save_stops(stop.route_id, "settle_delivered_stop")

        order = await self.orders.get(stop.order_id, for_update=True)
        await self.orders.update_state(
            order,
            status=OrderStatus.DELIVERED,
            logistics_state=LogisticsState.DELIVERED,
            delivered_at=order.delivered_at or record.delivered_at,
            reason="route finished",
        )

    async def _settle_undelivered(
        self, stop: RouteStop, record: Optional[DeliveryRecord], actor: Actor
    ) -> None:
        stop.state = StopState.UNDELIVERED
        await self.repository.save_stops(stop.route_id, "settle_undelivered_stop")

        if record is not None:
            if not record.state.is_terminal:
                await self.deliveries.apply_event(
                    record,
                    DeliveryEvent.CANCEL,
                    actor_id=actor.id,
                    reason=UNDELIVERED_CANCEL_REASON,
                    detail="Not delivered when the route was finished",
                )
            if record.route_id is not None:
                record.route_id = None
                await self.records.save(record, "detach_delivery_from_route")

        order = await self.orders.get(stop.order_id, for_update=True)
        await self.orders.update_state(
            order,
            status=OrderStatus.IN_PROCESS,
            logistics_state=LogisticsState.PENDING_ROUTE,
            assigned_courier_id=None,
            allow_regression=True,
            reason="not delivered on route",
        )

    # Suggestions

    async def suggest_route(
        self,
        order_ids: Sequence[uuid.UUID],
        origin: Optional[Position] = None,
    ) -> dict[str, Any]:
        """
        Suggest a visiting order for a batch of orders.

        Orders without a geocoded destination are returned separately. The
        read transaction is closed before any provider call.

        Raises:
            NotFoundError: If an order does not exist
        """
        orders = await self.orders.get_many(order_ids)
        missing = [str(oid) for oid in order_ids if oid not in orders]
        if missing:
            raise NotFoundError(
                "Some orders do not exist",
                code=ErrorCode.ORDER_NOT_FOUND,
                order_ids=missing,
            )

        destinations = []
        unlocated = []
        for order_id in dict.fromkeys(order_ids):
            order = orders[order_id]
            if order.destination is None:
                unlocated.append(str(order.id))
                continue
            destinations.append(
                {
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "lat": order.destination_lat,
                    "lon": order.destination_lon,
                }
            )
        await self.session.commit()

        origin = origin or self.settings.depot
        suggestion = await self.geo.nearest_neighbor_order(origin, destinations)

        polyline = None
        points = [(stop["lat"], stop["lon"]) for stop in suggestion["stops"]]
        if points:
            full = await self.geo.compute_route(origin, points[-1], points[:-1])
            polyline = full["polyline"] if full is not None else None

        logger.info(
            "Route suggested",
            stops=len(points),
            unlocated=len(unlocated),
            approximate=suggestion["approximate"],
        )
        return {
            "origin": {"lat": origin[0], "lon": origin[1]},
            **suggestion,
            "polyline": polyline,
            "unlocated_order_ids": unlocated,
        }
