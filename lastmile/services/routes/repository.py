"""
Route, route stop and alternate plan data access.
"""

import uuid
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from lastmile.core.errors import ErrorCode, NotFoundError, RepositoryError
from lastmile.core.logging import get_logger
from lastmile.database.connection import flush
from lastmile.database.models import (
    OPEN_ROUTE_STATES,
    OPEN_STOP_STATES,
    AlternatePlanStop,
    AlternateRoutePlan,
    Route,
    RouteState,
    RouteStop,
    StopState,
)

logger = get_logger(__name__)


class RouteRepository:
    """Repository for routes and their child rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Routes

    async def get(self, route_id: uuid.UUID, for_update: bool = False) -> Route:
        """
        Load a route or fail.

        Raises:
            NotFoundError: If the route does not exist
        """
        stmt = select(Route).where(Route.id == route_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to load route", route_id=str(route_id), error=str(e))
            raise RepositoryError("Failed to load route", route_id=str(route_id)) from e

        route = result.scalar_one_or_none()
        if route is None:
            raise NotFoundError(
                f"Route {route_id} not found",
                code=ErrorCode.ROUTE_NOT_FOUND,
                route_id=str(route_id),
            )
        return route

    async def create(
        self,
        courier_id: uuid.UUID,
        name: str,
        capacity: int,
        stop_count: int,
        description: Optional[str] = None,
        created_by: Optional[uuid.UUID] = None,
    ) -> Route:
        route = Route(
            id=uuid.uuid4(),
            courier_id=courier_id,
            name=name,
            description=description,
            capacity=capacity,
            stop_count=stop_count,
            state=RouteState.PLANNED,
            created_by=created_by,
        )
        self.session.add(route)
        await flush(self.session, "create_route", courier_id=str(courier_id))
        return route

    async def latest_open_for_courier(self, courier_id: uuid.UUID) -> Optional[Route]:
        result = await self.session.execute(
            select(Route)
            .where(Route.courier_id == courier_id, Route.state.in_(OPEN_ROUTE_STATES))
            .order_by(Route.created_at.desc(), Route.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_routes(
        self,
        state: Optional[RouteState] = None,
        courier_id: Optional[uuid.UUID] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Route], int]:
        conditions = []
        if state is not None:
            conditions.append(Route.state == state)
        if courier_id is not None:
            conditions.append(Route.courier_id == courier_id)
        if date_from is not None:
            conditions.append(Route.created_at >= date_from)
        if date_to is not None:
            conditions.append(Route.created_at <= date_to)

        total = await self.session.scalar(
            select(func.count(Route.id)).where(*conditions)
        )
        result = await self.session.execute(
            select(Route)
            .where(*conditions)
            .order_by(Route.created_at.desc(), Route.id)
            .limit(limit)
            .offset(offset)
        )
        return result.scalars().all(), int(total or 0)

    async def save(self, route: Route, operation: str) -> Route:
        await flush(self.session, operation, route_id=str(route.id))
        return route

    # Stops

    async def add_stops(
        self,
        route_id: uuid.UUID,
        entries: Sequence[tuple[uuid.UUID, Optional[uuid.UUID]]],
    ) -> list[RouteStop]:
        """
        Create one stop per (order_id, delivery_record_id) entry.

        Sequence numbers follow the order of ``entries``, starting at 1.
        """
        stops = [
            RouteStop(
                id=uuid.uuid4(),
                route_id=route_id,
                order_id=order_id,
                delivery_record_id=delivery_record_id,
                sequence_number=position,
                state=StopState.PENDING,
            )
            for position, (order_id, delivery_record_id) in enumerate(entries, start=1)
        ]
        self.session.add_all(stops)
        await flush(self.session, "create_route_stops", route_id=str(route_id))
        return stops

    async def list_stops(self, route_id: uuid.UUID) -> Sequence[RouteStop]:
        result = await self.session.execute(
            select(RouteStop)
            .where(RouteStop.route_id == route_id)
            .order_by(RouteStop.sequence_number)
        )
        return result.scalars().all()

    async def list_stops_for_routes(
        self, route_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, list[RouteStop]]:
        ids = list(route_ids)
        stops: dict[uuid.UUID, list[RouteStop]] = {route_id: [] for route_id in ids}
        if not ids:
            return stops
        result = await self.session.execute(
            select(RouteStop)
            .where(RouteStop.route_id.in_(ids))
            .order_by(RouteStop.route_id, RouteStop.sequence_number)
        )
        for stop in result.scalars():
            stops[stop.route_id].append(stop)
        return stops

    async def get_stop(self, route_id: uuid.UUID, order_id: uuid.UUID) -> Optional[RouteStop]:
        result = await self.session.execute(
            select(RouteStop).where(
                RouteStop.route_id == route_id, RouteStop.order_id == order_id
            )
        )
        return result.scalar_one_or_none()

    async def find_open_stops(
        self,
        order_ids: Iterable[uuid.UUID],
        exclude_route_id: Optional[uuid.UUID] = None,
    ) -> list[tuple[RouteStop, Route]]:
        """Open stops of open routes holding any of the given orders."""
        ids = list(order_ids)
        if not ids:
            return []
        stmt = (
            select(RouteStop, Route)
            .join(Route, Route.id == RouteStop.route_id)
            .where(
                RouteStop.order_id.in_(ids),
                RouteStop.state.in_(OPEN_STOP_STATES),
                Route.state.in_(OPEN_ROUTE_STATES),
            )
        )
        if exclude_route_id is not None:
            stmt = stmt.where(Route.id != exclude_route_id)
        result = await self.session.execute(stmt)
        return [(stop, route) for stop, route in result.all()]

    async def save_stops(self, route_id: uuid.UUID, operation: str) -> None:
        await flush(self.session, operation, route_id=str(route_id))

    # Alternate plans

    async def get_active_plan(self, route_id: uuid.UUID) -> Optional[AlternateRoutePlan]:
        result = await self.session.execute(
            select(AlternateRoutePlan).where(
                AlternateRoutePlan.route_id == route_id,
                AlternateRoutePlan.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def get_latest_plan(
        self, route_id: uuid.UUID, for_update: bool = False
    ) -> Optional[AlternateRoutePlan]:
        stmt = (
            select(AlternateRoutePlan)
            .where(AlternateRoutePlan.route_id == route_id)
            .order_by(AlternateRoutePlan.created_at.desc(), AlternateRoutePlan.id.desc())
            .limit(1)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def plans_for_routes(
        self, route_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, AlternateRoutePlan]:
        """Active plan per route, or its most recent plan when none is active."""
        ids = list(route_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(AlternateRoutePlan)
            .where(AlternateRoutePlan.route_id.in_(ids))
            .order_by(AlternateRoutePlan.created_at, AlternateRoutePlan.id)
        )
        plans: dict[uuid.UUID, AlternateRoutePlan] = {}
        for plan in result.scalars():
            current = plans.get(plan.route_id)
            if current is None or plan.is_active or not current.is_active:
                plans[plan.route_id] = plan
        return plans

    async def deactivate_plans(self, route_id: uuid.UUID) -> int:
        result = await self.session.execute(
            update(AlternateRoutePlan)
            .where(
                AlternateRoutePlan.route_id == route_id,
                AlternateRoutePlan.is_active.is_(True),
            )
            .values(is_active=False)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    async def create_plan(
        self,
        route_id: uuid.UUID,
        courier_id: uuid.UUID,
        order_ids: Sequence[uuid.UUID],
        reason: Optional[str] = None,
        created_by: Optional[uuid.UUID] = None,
    ) -> AlternateRoutePlan:
        plan = AlternateRoutePlan(
            id=uuid.uuid4(),
            route_id=route_id,
            courier_id=courier_id,
            reason=reason,
            is_active=True,
            created_by=created_by,
        )
        self.session.add(plan)
        # Parent row first; positions reference it.
        await flush(self.session, "create_alternate_plan", route_id=str(route_id))

        self.session.add_all(
            AlternatePlanStop(
                id=uuid.uuid4(),
                plan_id=plan.id,
                route_id=route_id,
                order_id=order_id,
                position=position,
            )
            for position, order_id in enumerate(order_ids, start=1)
        )
        await flush(self.session, "create_alternate_plan_stops", route_id=str(route_id))
        return plan

    async def plan_positions(
        self, plan_ids: Iterable[uuid.UUID]
    ) -> dict[uuid.UUID, list[AlternatePlanStop]]:
        ids = list(plan_ids)
        positions: dict[uuid.UUID, list[AlternatePlanStop]] = {plan_id: [] for plan_id in ids}
        if not ids:
            return positions
        result = await self.session.execute(
            select(AlternatePlanStop)
            .where(AlternatePlanStop.plan_id.in_(ids))
            .order_by(AlternatePlanStop.plan_id, AlternatePlanStop.position)
        )
        for position in result.scalars():
            positions[position.plan_id].append(position)
        return positions

    async def save_plan(self, plan: AlternateRoutePlan, operation: str) -> AlternateRoutePlan:
        await flush(self.session, operation, plan_id=str(plan.id), route_id=str(plan.route_id))
        return plan
