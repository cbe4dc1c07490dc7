"""
Tests for AssignmentService: direct assignment, idempotency, explicit
reassignment, courier eligibility and cancellation with automatic
reassignment.
"""

import uuid

import pytest

from lastmile.core.errors import (
    ErrorCode,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationFailedError,
)
from lastmile.database.models import DeliveryState, LogisticsState, OrderStatus
from lastmile.services.assignment.service import AssignmentService
from lastmile.services.deliveries.repository import DeliveryRepository
from tests.helpers import actor_for


@pytest.fixture
def service(session) -> AssignmentService:
    return AssignmentService(session)


@pytest.fixture
async def dispatcher(factory):
    return actor_for(await factory.dispatcher())


class TestAssign:
    async def test_assign_creates_delivery_and_projection(self, service, factory, dispatcher):
        courier = await factory.courier("Ana")
        order = await factory.order()

        result = await service.assign(order.id, courier.id, dispatcher)

        delivery = result["delivery"]
        assert result["already_assigned"] is False
        assert result["reassigned"] is False
        assert delivery.state == DeliveryState.ASSIGNED
        assert delivery.courier_id == courier.id
        assert order.logistics_state == LogisticsState.ROUTE_ASSIGNED
        assert order.assigned_courier_id == courier.id
        assert order.status == OrderStatus.CONFIRMED
        assert result["preconditions"]["satisfied"] is False
        assert result["preconditions"]["checks"]["courier_assigned"] is True

    async def test_assign_promotes_ready_order(self, service, factory, dispatcher):
        courier = await factory.courier()
        order = await factory.order(ledger=True, loaded=True)

        result = await service.assign(order.id, courier.id, dispatcher)

        assert result["preconditions"]["promoted"] is True
        assert order.status == OrderStatus.IN_PROCESS

    async def test_assign_same_courier_is_idempotent(self, service, factory, dispatcher, session):
        courier = await factory.courier()
        order = await factory.order(ledger=True, loaded=True)

        first = await service.assign(order.id, courier.id, dispatcher)
        second = await service.assign(order.id, courier.id, dispatcher)

        assert second["already_assigned"] is True
        assert second["delivery"].id == first["delivery"].id
        records = await DeliveryRepository(session).list_for_order(order.id)
        assert len(records) == 1

    async def test_reassignment_requires_reason(self, service, factory, dispatcher):
        first_courier = await factory.courier("Ana")
        second_courier = await factory.courier("Beto")
        order = await factory.order()
        await service.assign(order.id, first_courier.id, dispatcher)

        for reason in (None, "", "   "):
            with pytest.raises(ValidationFailedError) as exc_info:
                await service.assign(
                    order.id, second_courier.id, dispatcher, reassignment_reason=reason
                )
            assert exc_info.value.code == ErrorCode.REASSIGNMENT_REASON_REQUIRED.value

    async def test_reassignment_cancels_previous_record(self, service, factory, dispatcher, session):
        first_courier = await factory.courier("Ana")
        second_courier = await factory.courier("Beto")
        order = await factory.order()
        original = (await service.assign(order.id, first_courier.id, dispatcher))["delivery"]

        result = await service.assign(
            order.id,
            second_courier.id,
            dispatcher,
            reassignment_reason="courier sick",
        )

        replacement = result["delivery"]
        assert result["reassigned"] is True
        assert result["previous_delivery_id"] == original.id
        assert original.state == DeliveryState.CANCELLED
        assert original.cancel_reason == "courier sick"
        assert replacement.courier_id == second_courier.id
        assert replacement.reassigned_from_id == original.id
        assert "courier sick" in replacement.notes
        assert order.assigned_courier_id == second_courier.id

        records = await DeliveryRepository(session).list_for_order(order.id)
        active = [r for r in records if r.state.is_active]
        assert [r.id for r in active] == [replacement.id]

    async def test_order_must_be_confirmed(self, service, factory, dispatcher):
        courier = await factory.courier()
        order = await factory.order(status=OrderStatus.PENDING)

        with pytest.raises(StateConflictError) as exc_info:
            await service.assign(order.id, courier.id, dispatcher)

        assert exc_info.value.code == ErrorCode.ORDER_NOT_ASSIGNABLE.value
        assert exc_info.value.status_code == 409

    async def test_inactive_courier_rejected(self, service, factory, dispatcher):
        courier = await factory.courier(is_active=False)
        order = await factory.order()

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.assign(order.id, courier.id, dispatcher)

        assert exc_info.value.code == ErrorCode.COURIER_INACTIVE.value

    async def test_non_courier_role_rejected(self, service, factory, dispatcher):
        user = await factory.user(role="customer")
        order = await factory.order()

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.assign(order.id, user.id, dispatcher)

        assert exc_info.value.code == ErrorCode.INVALID_COURIER_ROLE.value

    async def test_courier_role_is_normalized(self, service, factory, dispatcher):
        courier = await factory.user(role="  Repartidor ")
        order = await factory.order()

        result = await service.assign(order.id, courier.id, dispatcher)

        assert result["delivery"].courier_id == courier.id

    async def test_unknown_courier_and_order(self, service, factory, dispatcher):
        courier = await factory.courier()
        order = await factory.order()

        with pytest.raises(NotFoundError) as exc_info:
            await service.assign(order.id, uuid.uuid4(), dispatcher)
        assert exc_info.value.code == ErrorCode.COURIER_NOT_FOUND.value

        with pytest.raises(NotFoundError) as exc_info:
            await service.assign(uuid.uuid4(), courier.id, dispatcher)
        assert exc_info.value.code == ErrorCode.ORDER_NOT_FOUND.value


class TestCancelAndReassign:
    async def test_hands_order_to_best_courier(self, service, factory, dispatcher):
        holder = await factory.courier("Ana", lat=4.70, lon=-74.10)
        near = await factory.courier("Beto", lat=4.651, lon=-74.051)
        await factory.courier("Carla", lat=4.80, lon=-74.20)
        order = await factory.order(lat=4.65, lon=-74.05)
        original = (await service.assign(order.id, holder.id, dispatcher))["delivery"]

        result = await service.cancel_and_reassign(
            original.id, actor_for(holder), reason="vehicle breakdown", detail="Engine failure"
        )

        assert result["reassigned"] is True
        assert result["cancelled_delivery"].state == DeliveryState.CANCELLED
        assert result["cancelled_delivery"].cancel_detail == "Engine failure"
        assert result["courier"].id == near.id
        assert result["new_delivery"].courier_id == near.id
        assert result["new_delivery"].reassigned_from_id == original.id
        assert order.assigned_courier_id == near.id
        assert order.logistics_state == LogisticsState.ROUTE_ASSIGNED

    async def test_no_courier_available_is_not_an_error(self, service, factory, dispatcher):
        holder = await factory.courier("Ana")
        order = await factory.order()
        original = (await service.assign(order.id, holder.id, dispatcher))["delivery"]

        result = await service.cancel_and_reassign(original.id, dispatcher, reason="no show")

        assert result["reassigned"] is False
        assert result["new_delivery"] is None
        assert result["courier"] is None
        assert original.state == DeliveryState.CANCELLED
        assert order.assigned_courier_id is None
        assert order.logistics_state == LogisticsState.PENDING_ROUTE

    async def test_skips_saturated_and_inactive_couriers(self, service, factory, dispatcher, settings):
        holder = await factory.courier("Ana")
        busy = await factory.courier("Beto", lat=4.65, lon=-74.05)
        await factory.courier("Carla", is_active=False, lat=4.65, lon=-74.05)
        free = await factory.courier("Dario")

        for _ in range(settings.max_in_flight_deliveries):
            extra = await factory.order()
            await service.assign(extra.id, busy.id, dispatcher)

        order = await factory.order(lat=4.65, lon=-74.05)
        original = (await service.assign(order.id, holder.id, dispatcher))["delivery"]

        result = await service.cancel_and_reassign(original.id, dispatcher, reason="no show")

        assert result["courier"].id == free.id

    async def test_reason_is_required(self, service, factory, dispatcher):
        holder = await factory.courier()
        order = await factory.order()
        original = (await service.assign(order.id, holder.id, dispatcher))["delivery"]

        with pytest.raises(ValidationFailedError) as exc_info:
            await service.cancel_and_reassign(original.id, dispatcher, reason=" ")

        assert exc_info.value.code == ErrorCode.REASSIGNMENT_REASON_REQUIRED.value
        assert original.state == DeliveryState.ASSIGNED

    async def test_only_owner_or_dispatcher(self, service, factory, dispatcher):
        holder = await factory.courier("Ana")
        other = await factory.courier("Beto")
        order = await factory.order()
        original = (await service.assign(order.id, holder.id, dispatcher))["delivery"]

        with pytest.raises(PermissionDeniedError) as exc_info:
            await service.cancel_and_reassign(original.id, actor_for(other), reason="mine now")

        assert exc_info.value.code == ErrorCode.NOT_DELIVERY_OWNER.value

    async def test_terminal_delivery_cannot_be_cancelled(self, service, factory, dispatcher):
        holder = await factory.courier()
        order = await factory.order()
        original = (await service.assign(order.id, holder.id, dispatcher))["delivery"]
        await service.cancel_and_reassign(original.id, dispatcher, reason="first")

        with pytest.raises(StateConflictError) as exc_info:
            await service.cancel_and_reassign(original.id, dispatcher, reason="again")

        assert exc_info.value.code == ErrorCode.DELIVERY_TERMINAL.value


class TestDispatcherViews:
    async def test_available_couriers_nearest_first(self, service, factory):
        far = await factory.courier("Ana", lat=4.80, lon=-74.20)
        unknown = await factory.courier("Beto")
        near = await factory.courier("Carla", lat=4.651, lon=-74.051)
        order = await factory.order(lat=4.65, lon=-74.05)

        candidates = await service.list_available_couriers(order.id)

        assert [c["courier"].id for c in candidates] == [near.id, far.id, unknown.id]
        assert candidates[-1]["distance_km"] is None

    async def test_available_couriers_without_order_by_load(self, service, factory, dispatcher):
        loaded = await factory.courier("Ana")
        idle = await factory.courier("Beto")
        order = await factory.order()
        await service.assign(order.id, loaded.id, dispatcher)

        candidates = await service.list_available_couriers()

        assert [c["courier"].id for c in candidates] == [idle.id, loaded.id]
        assert [c["in_flight"] for c in candidates] == [0, 1]

    async def test_assigned_orders_board(self, service, factory, dispatcher):
        courier = await factory.courier("Ana")
        other = await factory.courier("Beto")
        unassigned = await factory.order()
        assigned = await factory.order()
        await factory.order(status=OrderStatus.PENDING)
        delivered = await factory.order(status=OrderStatus.DELIVERED)
        await service.assign(assigned.id, courier.id, dispatcher)

        items, total = await service.list_assigned_orders()

        assert total == 2
        by_order = {item["order"].id: item for item in items}
        assert set(by_order) == {unassigned.id, assigned.id}
        assert delivered.id not in by_order
        assert by_order[assigned.id]["courier"].id == courier.id
        assert by_order[unassigned.id]["delivery"] is None

        items, total = await service.list_assigned_orders(courier_id=courier.id)
        assert total == 1
        assert items[0]["order"].id == assigned.id

        items, total = await service.list_assigned_orders(courier_id=other.id)
        assert (items, total) == ([], 0)

        items, total = await service.list_assigned_orders(state=DeliveryState.ASSIGNED)
        assert [item["order"].id for item in items] == [assigned.id]
