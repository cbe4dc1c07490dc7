"""
Tests for DeliveryService: ownership, lifecycle transitions and their
propagation to the parent order.
"""

import logging
import uuid

import pytest

from lastmile.core.errors import (
    ErrorCode,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationFailedError,
)
from lastmile.core.logging import configure_logging
from lastmile.database.connection import atomic
from lastmile.database.models import DeliveryState, LogisticsState, OrderStatus
from lastmile.services.assignment.service import AssignmentService
from lastmile.services.deliveries.repository import DeliveryRepository
from lastmile.services.deliveries.service import DeliveryService
from lastmile.services.deliveries.state_machine import DeliveryEvent
from tests.helpers import actor_for


@pytest.fixture
def service(session) -> DeliveryService:
    return DeliveryService(session)


@pytest.fixture
async def assigned(session, factory):
    """A ready order assigned to a courier, promoted to in_process."""
    courier = await factory.courier("Ana")
    dispatcher = await factory.dispatcher()
    order = await factory.order(ledger=True, loaded=True)
    result = await AssignmentService(session).assign(order.id, courier.id, actor_for(dispatcher))
    return {
        "courier": courier,
        "dispatcher": dispatcher,
        "order": order,
        "delivery": result["delivery"],
    }


class TestLifecycle:
    async def test_full_happy_path_updates_order(self, service, assigned):
        courier = actor_for(assigned["courier"])
        delivery, order = assigned["delivery"], assigned["order"]
        assert order.status == OrderStatus.IN_PROCESS

        await service.start(delivery.id, courier, lat=4.60, lon=-74.08)
        assert order.status == OrderStatus.SHIPPED
        assert order.logistics_state == LogisticsState.IN_TRANSIT

        await service.arrive(delivery.id, courier, lat=4.65, lon=-74.05)
        assert delivery.state == DeliveryState.ARRIVED
        assert order.status == OrderStatus.SHIPPED

        await service.complete(delivery.id, courier, signature="sig", notes="Left at door")
        assert delivery.state == DeliveryState.DELIVERED
        assert delivery.distance_km is not None
        assert order.status == OrderStatus.DELIVERED
        assert order.logistics_state == LogisticsState.DELIVERED
        assert order.delivered_at == delivery.delivered_at

    async def test_fail_releases_order_without_reassignment(self, service, assigned):
        courier = actor_for(assigned["courier"])
        delivery, order = assigned["delivery"], assigned["order"]

        await service.start(delivery.id, courier)
        await service.fail(delivery.id, courier, reason="address not found")

        assert delivery.state == DeliveryState.FAILED
        assert delivery.failure_reason == "address not found"
        assert order.assigned_courier_id is None
        assert order.logistics_state == LogisticsState.PENDING_ROUTE
        assert order.status == OrderStatus.SHIPPED

    async def test_completed_delivery_rejects_further_events(self, service, assigned):
        courier = actor_for(assigned["courier"])
        delivery = assigned["delivery"]
        await service.start(delivery.id, courier)
        await service.complete(delivery.id, courier)

        with pytest.raises(StateConflictError) as exc_info:
            await service.fail(delivery.id, courier, reason="too late")

        assert exc_info.value.code == ErrorCode.DELIVERY_TERMINAL.value
        assert delivery.state == DeliveryState.DELIVERED

    async def test_arrive_without_coordinates_is_rejected(self, service, assigned):
        courier = actor_for(assigned["courier"])
        delivery = assigned["delivery"]
        await service.start(delivery.id, courier)

        with pytest.raises(ValidationFailedError):
            await service.transition(delivery.id, courier, DeliveryEvent.ARRIVE)

        assert delivery.state == DeliveryState.IN_TRANSIT


class TestOwnership:
    async def test_other_courier_is_rejected(self, service, assigned, factory):
        intruder = actor_for(await factory.courier("Beto"))

        with pytest.raises(PermissionDeniedError) as exc_info:
            await service.start(assigned["delivery"].id, intruder)

        assert exc_info.value.code == ErrorCode.NOT_DELIVERY_OWNER.value
        assert assigned["delivery"].state == DeliveryState.ASSIGNED

    async def test_dispatcher_may_act(self, service, assigned):
        await service.start(assigned["delivery"].id, actor_for(assigned["dispatcher"]))

        assert assigned["delivery"].state == DeliveryState.IN_TRANSIT

    async def test_get_returns_record_and_order(self, service, assigned):
        record, order = await service.get(
            assigned["delivery"].id, actor_for(assigned["courier"])
        )

        assert record.id == assigned["delivery"].id
        assert order.id == assigned["order"].id

    async def test_unknown_delivery(self, service, assigned):
        with pytest.raises(NotFoundError) as exc_info:
            await service.get(uuid.uuid4(), actor_for(assigned["dispatcher"]))

        assert exc_info.value.code == ErrorCode.DELIVERY_NOT_FOUND.value


class TestListing:
    async def test_courier_lists_own_deliveries(self, service, assigned):
        rows, total = await service.list_for_courier(actor_for(assigned["courier"]))

        assert total == 1
        record, order = rows[0]
        assert record.id == assigned["delivery"].id
        assert order.id == assigned["order"].id

    async def test_courier_cannot_list_others(self, service, assigned, factory):
        other = await factory.courier("Beto")

        with pytest.raises(PermissionDeniedError):
            await service.list_for_courier(
                actor_for(other), courier_id=assigned["courier"].id
            )

    async def test_dispatcher_filters_by_state(self, service, assigned):
        dispatcher = actor_for(assigned["dispatcher"])
        courier_id = assigned["courier"].id

        rows, total = await service.list_for_courier(
            dispatcher, courier_id=courier_id, state=DeliveryState.DELIVERED
        )
        assert (rows, total) == ([], 0)

        rows, total = await service.list_for_courier(
            dispatcher, courier_id=courier_id, state=DeliveryState.ASSIGNED
        )
        assert total == 1


class TestLifecycleLogging:
    async def test_transitions_log_through_structlog(self, service, assigned, caplog):
        configure_logging()
        caplog.set_level(logging.INFO)
        courier = actor_for(assigned["courier"])
        delivery = assigned["delivery"]

        await service.start(delivery.id, courier, lat=4.60, lon=-74.08)
        await service.arrive(delivery.id, courier, lat=4.65, lon=-74.05)
        await service.complete(
            delivery.id,
            courier,
            signature="sig-ana",
            photo_url="https://cdn.example.com/pod/1.jpg",
            notes="Handed to doorman",
        )

        assert delivery.state == DeliveryState.DELIVERED
        assert delivery.duration_minutes == 0
        assert 6.0 < delivery.distance_km < 7.0
        assert delivery.distance_estimated is True
        assert delivery.signature == "sig-ana"
        assert delivery.photo_url == "https://cdn.example.com/pod/1.jpg"
        assert delivery.notes == "Handed to doorman"

        transitions = [m for m in caplog.messages if "Delivery transition applied" in m]
        assert len(transitions) == 3
        assert "in_transit->arrived" in transitions[1]


class TestActiveRecordInvariant:
    async def test_second_active_record_is_rejected(self, assigned, session):
        repository = DeliveryRepository(session)
        order = assigned["order"]

        with pytest.raises(StateConflictError) as exc_info:
            async with atomic(session):
                await repository.create(order.id, assigned["courier"].id)

        assert exc_info.value.code == ErrorCode.CONCURRENT_MODIFICATION.value
        records = await repository.list_for_order(order.id)
        assert [r.id for r in records] == [assigned["delivery"].id]

    async def test_closed_records_do_not_count(self, service, assigned, session):
        courier = actor_for(assigned["courier"])
        order = assigned["order"]
        await service.fail(assigned["delivery"].id, courier, reason="closed")

        replacement = await DeliveryRepository(session).create(order.id, assigned["courier"].id)

        assert replacement.state == DeliveryState.ASSIGNED
        assert len(await DeliveryRepository(session).list_for_order(order.id)) == 2
