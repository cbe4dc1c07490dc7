"""
Tests for RouteService: creation rules, alternate stop orderings, starting
and finishing a route, and route suggestions.
"""

import uuid
from datetime import timedelta

import pytest

from lastmile.core.errors import (
    ErrorCode,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationFailedError,
)
from lastmile.database.models import (
    DeliveryRecord,
    DeliveryState,
    LogisticsState,
    Order,
    OrderStatus,
    Route,
    RouteState,
    StopState,
)
from lastmile.services.assignment.service import AssignmentService
from lastmile.services.geo.service import GeoService
from lastmile.services.routes.service import UNDELIVERED_CANCEL_REASON, RouteService
from tests.helpers import UnavailableProvider, actor_for


@pytest.fixture
def service(session, settings) -> RouteService:
    geo = GeoService(provider=UnavailableProvider(settings=settings), settings=settings)
    return RouteService(session, settings, geo=geo)


@pytest.fixture
async def crew(factory):
    courier = await factory.courier("Ana")
    dispatcher = await factory.dispatcher()
    orders = [
        await factory.order(lat=4.60 + i * 0.01, lon=-74.08 + i * 0.01) for i in range(3)
    ]
    return {
        "courier": courier,
        "dispatcher": dispatcher,
        "courier_actor": actor_for(courier),
        "dispatcher_actor": actor_for(dispatcher),
        "orders": orders,
    }


async def create(service, crew, orders=None, capacity=5, name="Morning run"):
    orders = crew["orders"] if orders is None else orders
    return await service.create_route(
        crew["courier"].id,
        name,
        capacity,
        [o.id for o in orders],
        crew["dispatcher_actor"],
    )


def effective_ids(view):
    return [stop.order_id for stop in view["effective_stops"]]


class TestCreateRoute:
    async def test_creates_numbered_stops_and_records(self, service, crew, session):
        view = await create(service, crew)

        route = view["route"]
        assert route.state == RouteState.PLANNED
        assert route.stop_count == 3
        assert [s.sequence_number for s in view["stops"]] == [1, 2, 3]
        assert [s.order_id for s in view["stops"]] == [o.id for o in crew["orders"]]
        assert view["alternate_plan"] is None

        for order, stop in zip(crew["orders"], view["stops"]):
            assert order.logistics_state == LogisticsState.ROUTE_ASSIGNED
            assert order.assigned_courier_id == crew["courier"].id
            record = await session.get(DeliveryRecord, stop.delivery_record_id)
            assert record.route_id == route.id
            assert record.state == DeliveryState.ASSIGNED

    async def test_reuses_the_couriers_active_record(self, service, crew, session):
        order = crew["orders"][0]
        assigned = await AssignmentService(session).assign(
            order.id, crew["courier"].id, crew["dispatcher_actor"]
        )

        view = await create(service, crew, orders=[order])

        assert view["stops"][0].delivery_record_id == assigned["delivery"].id
        assert assigned["delivery"].route_id == view["route"].id

    async def test_rejects_orders_held_by_another_courier(self, service, crew, factory, session):
        other = await factory.courier("Beto")
        order = crew["orders"][0]
        await AssignmentService(session).assign(order.id, other.id, crew["dispatcher_actor"])

        with pytest.raises(ValidationFailedError) as exc_info:
            await create(service, crew)

        assert exc_info.value.code == ErrorCode.ORDER_ASSIGNED_TO_OTHER_COURIER.value

    @pytest.mark.parametrize(
        "kwargs, code",
        [
            ({"orders": []}, ErrorCode.EMPTY_ROUTE),
            ({"capacity": 2}, ErrorCode.ROUTE_CAPACITY_EXCEEDED),
        ],
    )
    async def test_batch_validation(self, service, crew, kwargs, code):
        with pytest.raises(ValidationFailedError) as exc_info:
            await create(service, crew, **kwargs)

        assert exc_info.value.code == code.value

    async def test_duplicate_orders(self, service, crew):
        order = crew["orders"][0]

        with pytest.raises(ValidationFailedError) as exc_info:
            await create(service, crew, orders=[order, order])

        assert exc_info.value.code == ErrorCode.DUPLICATE_ROUTE_ORDERS.value
        assert exc_info.value.context["duplicated_order_ids"] == [str(order.id)]

    async def test_terminal_orders_are_not_routable(self, service, crew, factory):
        delivered = await factory.order(status=OrderStatus.DELIVERED)

        with pytest.raises(ValidationFailedError) as exc_info:
            await create(service, crew, orders=[crew["orders"][0], delivered])

        assert exc_info.value.code == ErrorCode.ORDERS_NOT_ROUTABLE.value

    async def test_order_in_another_open_route(self, service, crew):
        await create(service, crew, orders=crew["orders"][:1])

        with pytest.raises(ValidationFailedError) as exc_info:
            await create(service, crew, orders=crew["orders"][:2], name="Second run")

        assert exc_info.value.code == ErrorCode.ORDERS_IN_ACTIVE_ROUTE.value

    async def test_courier_cannot_create_for_someone_else(self, service, crew, factory):
        other = await factory.courier("Beto")

        with pytest.raises(PermissionDeniedError) as exc_info:
            await service.create_route(
                other.id, "Not mine", 5, [crew["orders"][0].id], crew["courier_actor"]
            )

        assert exc_info.value.code == ErrorCode.NOT_ROUTE_OWNER.value


class TestAlternatePlans:
    async def test_propose_changes_effective_order_only(self, service, crew):
        route = (await create(service, crew))["route"]
        o1, o2, o3 = (o.id for o in crew["orders"])

        view = await service.propose_alternate_order(
            route.id, crew["courier_actor"], [o3, o1, o2], reason="road works"
        )

        assert view["alternate_plan"]["plan"].is_active is True
        assert view["alternate_plan"]["plan"].reason == "road works"
        assert [p.order_id for p in view["alternate_plan"]["sequence"]] == [o3, o1, o2]
        assert effective_ids(view) == [o3, o1, o2]
        assert [s.order_id for s in view["stops"]] == [o1, o2, o3]
        assert [s.sequence_number for s in view["stops"]] == [1, 2, 3]

    async def test_toggle_off_and_on(self, service, crew):
        route = (await create(service, crew))["route"]
        o1, o2, o3 = (o.id for o in crew["orders"])
        await service.propose_alternate_order(route.id, crew["courier_actor"], [o2, o3, o1])

        view = await service.toggle_alternate(route.id, crew["courier_actor"], active=False)
        assert view["alternate_plan"]["plan"].is_active is False
        assert effective_ids(view) == [o1, o2, o3]

        active = await service.get_active_route(crew["courier_actor"])
        assert active["alternate_plan"] is None
        assert effective_ids(active) == [o1, o2, o3]

        view = await service.toggle_alternate(route.id, crew["courier_actor"], active=True)
        assert effective_ids(view) == [o2, o3, o1]

        active = await service.get_active_route(crew["courier_actor"])
        assert effective_ids(active) == [o2, o3, o1]

    async def test_sequence_must_be_a_permutation(self, service, crew):
        route = (await create(service, crew))["route"]
        o1, o2, _ = (o.id for o in crew["orders"])

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.propose_alternate_order(route.id, crew["courier_actor"], [o2, o1])

        assert exc_info.value.code == ErrorCode.INVALID_ALTERNATE_SEQUENCE.value
        assert exc_info.value.context["missing"] == [str(crew["orders"][2].id)]

    async def test_toggle_without_plan(self, service, crew):
        route = (await create(service, crew))["route"]

        with pytest.raises(NotFoundError) as exc_info:
            await service.toggle_alternate(route.id, crew["courier_actor"], active=True)

        assert exc_info.value.code == ErrorCode.ALTERNATE_PLAN_NOT_FOUND.value

    async def test_other_courier_cannot_propose(self, service, crew, factory):
        route = (await create(service, crew))["route"]
        other = actor_for(await factory.courier("Beto"))

        with pytest.raises(PermissionDeniedError):
            await service.propose_alternate_order(
                route.id, other, [o.id for o in crew["orders"]]
            )


class TestExecution:
    async def test_start_puts_every_delivery_on_the_road(self, service, crew, session):
        view = await create(service, crew)

        view = await service.start_route(view["route"].id, crew["courier_actor"])

        assert view["route"].state == RouteState.IN_PROGRESS
        assert view["route"].start_at is not None
        assert all(stop.state == StopState.EN_ROUTE for stop in view["stops"])
        for order in crew["orders"]:
            assert order.status == OrderStatus.SHIPPED
            assert order.logistics_state == LogisticsState.IN_TRANSIT

        with pytest.raises(StateConflictError) as exc_info:
            await service.start_route(view["route"].id, crew["courier_actor"])
        assert exc_info.value.code == ErrorCode.ROUTE_NOT_STARTABLE.value

    async def test_finish_settles_every_stop(self, service, crew, session):
        route = (await create(service, crew))["route"]
        await service.start_route(route.id, crew["courier_actor"])
        o1, o2, o3 = crew["orders"]

        view = await service.finish_route(
            route.id, crew["courier_actor"], delivered_order_ids=[o1.id], undelivered_order_ids=[o2.id]
        )

        assert view["route"].state == RouteState.COMPLETED
        assert view["route"].end_at is not None
        states = {stop.order_id: stop.state for stop in view["stops"]}
        assert states == {
            o1.id: StopState.DELIVERED,
            o2.id: StopState.UNDELIVERED,
            o3.id: StopState.UNDELIVERED,
        }

        assert o1.status == OrderStatus.DELIVERED
        assert o1.logistics_state == LogisticsState.DELIVERED
        for order in (o2, o3):
            assert order.status == OrderStatus.IN_PROCESS
            assert order.logistics_state == LogisticsState.PENDING_ROUTE
            assert order.assigned_courier_id is None

        stops = {stop.order_id: stop for stop in view["stops"]}
        cancelled = await session.get(DeliveryRecord, stops[o2.id].delivery_record_id)
        assert cancelled.state == DeliveryState.CANCELLED
        assert cancelled.cancel_reason == UNDELIVERED_CANCEL_REASON
        assert cancelled.route_id is None

    async def test_finish_requires_route_in_progress(self, service, crew):
        route = (await create(service, crew))["route"]

        with pytest.raises(StateConflictError) as exc_info:
            await service.finish_route(route.id, crew["courier_actor"], [crew["orders"][0].id])

        assert exc_info.value.code == ErrorCode.ROUTE_NOT_IN_PROGRESS.value

    async def test_finish_rejects_foreign_and_repeated_orders(self, service, crew, factory):
        route = (await create(service, crew))["route"]
        await service.start_route(route.id, crew["courier_actor"])
        o1 = crew["orders"][0]
        stranger = await factory.order()

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.finish_route(
                route.id,
                crew["courier_actor"],
                delivered_order_ids=[o1.id, stranger.id],
                undelivered_order_ids=[o1.id],
            )

        error = exc_info.value
        assert error.code == ErrorCode.INVALID_FINISH_REQUEST.value
        assert error.context["repeated"] == [str(o1.id)]
        assert error.context["not_in_route"] == [str(stranger.id)]

    async def test_finish_is_all_or_nothing(self, service, crew, session):
        route = (await create(service, crew))["route"]
        await service.start_route(route.id, crew["courier_actor"])
        o1, o2, _ = crew["orders"]
        route_id, o1_id = route.id, o1.id

        o2.status = OrderStatus.CANCELLED
        await session.flush()

        with pytest.raises(StateConflictError) as exc_info:
            await service.finish_route(
                route_id, crew["courier_actor"], delivered_order_ids=[o1_id, o2.id]
            )
        assert exc_info.value.code == ErrorCode.ORDER_STATUS_REGRESSION.value

        route = await session.get(Route, route_id, populate_existing=True)
        first = await session.get(Order, o1_id, populate_existing=True)
        assert route.state == RouteState.IN_PROGRESS
        assert first.status == OrderStatus.SHIPPED


class TestReads:
    async def test_active_route_is_none_without_routes(self, service, crew):
        assert await service.get_active_route(crew["courier_actor"]) is None

    async def test_courier_reads_only_own_active_route(self, service, crew, factory):
        other = await factory.courier("Beto")

        with pytest.raises(PermissionDeniedError):
            await service.get_active_route(crew["courier_actor"], courier_id=other.id)

    async def test_most_recent_open_route_is_active(self, service, crew, session):
        first = await create(service, crew, orders=crew["orders"][:1])
        second = await create(service, crew, orders=crew["orders"][1:], name="Afternoon run")
        first["route"].created_at = second["route"].created_at - timedelta(hours=1)
        await session.flush()

        view = await service.get_active_route(crew["courier_actor"])

        assert view["route"].id == second["route"].id

    async def test_list_routes_filters(self, service, crew):
        view = await create(service, crew)

        views, total = await service.list_routes(courier_id=crew["courier"].id)
        assert total == 1
        assert views[0]["route"].id == view["route"].id
        assert len(views[0]["stops"]) == 3

        views, total = await service.list_routes(state=RouteState.COMPLETED)
        assert (views, total) == ([], 0)


class TestSuggestRoute:
    async def test_nearest_neighbor_with_degraded_provider(self, service, crew, factory):
        o1, o2, o3 = crew["orders"]
        unlocated = await factory.order(lat=None, lon=None)

        result = await service.suggest_route(
            [o3.id, unlocated.id, o1.id, o2.id], origin=(4.59, -74.09)
        )

        assert [stop["order_id"] for stop in result["stops"]] == [o1.id, o2.id, o3.id]
        assert result["unlocated_order_ids"] == [str(unlocated.id)]
        assert result["approximate"] is True
        assert result["polyline"] is None
        assert result["origin"] == {"lat": 4.59, "lon": -74.09}

    async def test_unknown_orders(self, service, crew):
        with pytest.raises(NotFoundError):
            await service.suggest_route([crew["orders"][0].id, uuid.uuid4()])
