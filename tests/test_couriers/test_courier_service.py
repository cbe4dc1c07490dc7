"""
Tests for the courier directory views.
"""

import uuid

import pytest

from lastmile.core.errors import ErrorCode, NotFoundError
from lastmile.database.models import DeliveryState
from lastmile.services.assignment.service import AssignmentService
from lastmile.services.couriers.service import CourierService, delivery_counters
from tests.helpers import actor_for


@pytest.fixture
def service(session, settings) -> CourierService:
    return CourierService(session, settings)


def test_counters_group_active_states():
    counters = delivery_counters(
        {
            DeliveryState.ASSIGNED: 2,
            DeliveryState.IN_TRANSIT: 1,
            DeliveryState.DELIVERED: 4,
            DeliveryState.FAILED: 1,
        }
    )

    assert counters == {
        "total": 8,
        "in_progress": 3,
        "delivered": 4,
        "cancelled": 0,
        "failed": 1,
    }


class TestDirectory:
    async def test_search_excludes_non_couriers(self, service, factory):
        await factory.courier("Ana Gomez")
        await factory.courier("Beto Ruiz", is_active=False)
        await factory.dispatcher("Ana Dispatcher")

        items, total = await service.list_couriers(search="ana")
        assert total == 1
        assert items[0]["courier"].full_name == "Ana Gomez"

        items, total = await service.list_couriers(is_active=False)
        assert [item["courier"].full_name for item in items] == ["Beto Ruiz"]

    async def test_courier_counters_follow_assignments(self, service, factory, session):
        courier = await factory.courier("Ana")
        dispatcher = actor_for(await factory.dispatcher())
        order = await factory.order()
        await AssignmentService(session).assign(order.id, courier.id, dispatcher)

        detail = await service.get_courier(courier.id)

        assert detail["courier"].id == courier.id
        assert detail["counters"]["total"] == 1
        assert detail["counters"]["in_progress"] == 1

    async def test_unknown_courier(self, service):
        with pytest.raises(NotFoundError) as exc_info:
            await service.get_courier(uuid.uuid4())

        assert exc_info.value.code == ErrorCode.COURIER_NOT_FOUND.value

    async def test_fleet_statistics(self, service, factory):
        await factory.courier("Ana")
        await factory.courier("Beto", is_active=False)

        stats = await service.fleet_statistics()

        assert stats["total_couriers"] == 2
        assert stats["active_couriers"] == 1
        assert stats["inactive_couriers"] == 1
        assert stats["available_couriers"] == 1
        assert stats["deliveries"]["total"] == 0

    async def test_history_for_unknown_courier(self, service):
        with pytest.raises(NotFoundError):
            await service.delivery_history(uuid.uuid4())
