"""
Delivery record data access.

Transitions load the record ``FOR UPDATE`` and rely on the mapper's version
counter, so two concurrent transitions on the same record cannot both be
persisted.
"""

import uuid
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.errors import ErrorCode, NotFoundError, RepositoryError
from lastmile.core.logging import get_logger
from lastmile.database.base import utcnow
from lastmile.database.connection import flush
from lastmile.database.models import (
    ACTIVE_DELIVERY_STATES,
    DeliveryRecord,
    DeliveryState,
    Order,
)

logger = get_logger(__name__)


class DeliveryRepository:
    """Repository for delivery records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, delivery_id: uuid.UUID, for_update: bool = False) -> DeliveryRecord:
        """
        Load a delivery record or fail.

        Raises:
            NotFoundError: If the record does not exist
        """
        stmt = select(DeliveryRecord).where(DeliveryRecord.id == delivery_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(
                "Failed to load delivery",
                delivery_id=str(delivery_id),
                error=str(e),
            )
            raise RepositoryError("Failed to load delivery") from e

        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError(
                f"Delivery {delivery_id} not found",
                code=ErrorCode.DELIVERY_NOT_FOUND,
                delivery_id=str(delivery_id),
            )
        return record

    async def get_active_for_order(
        self, order_id: uuid.UUID, for_update: bool = False
    ) -> Optional[DeliveryRecord]:
        stmt = select(DeliveryRecord).where(
            DeliveryRecord.order_id == order_id,
            DeliveryRecord.state.in_(ACTIVE_DELIVERY_STATES),
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def get_active_for_orders(
        self, order_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, DeliveryRecord]:
        ids = list(order_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(DeliveryRecord).where(
                DeliveryRecord.order_id.in_(ids),
                DeliveryRecord.state.in_(ACTIVE_DELIVERY_STATES),
            )
        )
        return {record.order_id: record for record in result.scalars()}

    async def list_for_order(self, order_id: uuid.UUID) -> Sequence[DeliveryRecord]:
        result = await self.session.execute(
            select(DeliveryRecord)
            .where(DeliveryRecord.order_id == order_id)
            .order_by(DeliveryRecord.assigned_at, DeliveryRecord.id)
        )
        return result.scalars().all()

    async def list_for_route(
        self,
        route_id: uuid.UUID,
        states: Optional[Iterable[DeliveryState]] = None,
    ) -> Sequence[DeliveryRecord]:
        stmt = select(DeliveryRecord).where(DeliveryRecord.route_id == route_id)
        if states is not None:
            stmt = stmt.where(DeliveryRecord.state.in_(list(states)))
        result = await self.session.execute(stmt.order_by(DeliveryRecord.id))
        return result.scalars().all()

    async def list_for_courier(
        self,
        courier_id: uuid.UUID,
        state: Optional[DeliveryState] = None,
        order_status=None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[tuple[DeliveryRecord, Order]], int]:
        """
        Page through a courier's delivery records with their orders.

        Returns:
            ((record, order) rows ordered newest first, total count)
        """
        conditions = [DeliveryRecord.courier_id == courier_id]
        if state is not None:
            conditions.append(DeliveryRecord.state == state)
        if order_status is not None:
            conditions.append(Order.status == order_status)
        if date_from is not None:
            conditions.append(DeliveryRecord.assigned_at >= date_from)
        if date_to is not None:
            conditions.append(DeliveryRecord.assigned_at <= date_to)

        total = await self.session.scalar(
            select(func.count(DeliveryRecord.id))
            .join(Order, Order.id == DeliveryRecord.order_id)
            .where(*conditions)
        )
        result = await self.session.execute(
            select(DeliveryRecord, Order)
            .join(Order, Order.id == DeliveryRecord.order_id)
            .where(*conditions)
            .order_by(DeliveryRecord.assigned_at.desc(), DeliveryRecord.id)
            .limit(limit)
            .offset(offset)
        )
        return [(record, order) for record, order in result.all()], int(total or 0)

    async def count_in_flight(
        self, courier_ids: Optional[Iterable[uuid.UUID]] = None
    ) -> dict[uuid.UUID, int]:
        """In-flight (assigned, in transit or arrived) record count per courier."""
        stmt = (
            select(DeliveryRecord.courier_id, func.count(DeliveryRecord.id))
            .where(DeliveryRecord.state.in_(ACTIVE_DELIVERY_STATES))
            .group_by(DeliveryRecord.courier_id)
        )
        if courier_ids is not None:
            stmt = stmt.where(DeliveryRecord.courier_id.in_(list(courier_ids)))
        result = await self.session.execute(stmt)
        return {courier_id: count for courier_id, count in result.all()}

    async def count_by_state(
        self, courier_ids: Optional[Iterable[uuid.UUID]] = None
    ) -> dict[uuid.UUID, dict[DeliveryState, int]]:
        stmt = select(
            DeliveryRecord.courier_id, DeliveryRecord.state, func.count(DeliveryRecord.id)
        ).group_by(DeliveryRecord.courier_id, DeliveryRecord.state)
        if courier_ids is not None:
            stmt = stmt.where(DeliveryRecord.courier_id.in_(list(courier_ids)))
        result = await self.session.execute(stmt)

        counts: dict[uuid.UUID, dict[DeliveryState, int]] = {}
        for courier_id, state, count in result.all():
            counts.setdefault(courier_id, {})[state] = count
        return counts

    async def create(
        self,
        order_id: uuid.UUID,
        courier_id: uuid.UUID,
        route_id: Optional[uuid.UUID] = None,
        notes: Optional[str] = None,
        reassigned_from_id: Optional[uuid.UUID] = None,
    ) -> DeliveryRecord:
        """
        Create a delivery record in state ``assigned``.

        Raises:
            StateConflictError: If another active record for the order was
                committed concurrently
        """
        record = DeliveryRecord(
            id=uuid.uuid4(),
            order_id=order_id,
            courier_id=courier_id,
            route_id=route_id,
            state=DeliveryState.ASSIGNED,
            assigned_at=utcnow(),
            notes=notes,
            reassigned_from_id=reassigned_from_id,
        )
        self.session.add(record)
        await flush(
            self.session,
            "create_delivery",
            order_id=str(order_id),
            courier_id=str(courier_id),
        )

        logger.info(
            "Delivery record created",
            delivery_id=str(record.id),
            order_id=str(order_id),
            courier_id=str(courier_id),
            route_id=str(route_id) if route_id else None,
        )
        return record

    async def save(self, record: DeliveryRecord, operation: str) -> DeliveryRecord:
        await flush(self.session, operation, delivery_id=str(record.id))
        return record
