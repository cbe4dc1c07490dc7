"""
Route, route stop and alternate route plan models.

The alternate plan is stored as an owned child collection of positions so
that the "same set of orders as the route's stops" rule is backed by the
schema: each position references a (route_id, order_id) pair that must
exist in ``route_stops``, positions and orders are unique within a plan, and
a partial unique index keeps at most one active plan per route.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from lastmile.database.base import BaseModel, enum_column


class RouteState(str, Enum):
    PLANNED = "planned"
    ACTIVE = "active"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_modifiable(self) -> bool:
        return self in OPEN_ROUTE_STATES

    @property
    def is_startable(self) -> bool:
        return self in (RouteState.PLANNED, RouteState.ACTIVE)


OPEN_ROUTE_STATES = frozenset(
    {RouteState.PLANNED, RouteState.ACTIVE, RouteState.IN_PROGRESS}
)


class StopState(str, Enum):
    PENDING = "pending"
    EN_ROUTE = "en_route"
    DELIVERED = "delivered"
    UNDELIVERED = "undelivered"
    CANCELLED = "cancelled"


OPEN_STOP_STATES = frozenset({StopState.PENDING, StopState.EN_ROUTE})


class Route(BaseModel):
    """
    Named, capacity-bounded bundle of stops for one courier.

    Attributes:
        courier_id: Courier driving the route
        name: Route display name
        description: Optional free text
        capacity: Maximum number of stops
        stop_count: Number of stops declared at creation
        state: Route lifecycle state
        created_by: Actor that created the route
        start_at: When the route was started
        end_at: When the route was finished
    """

    __tablename__ = "routes"

    courier_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    name: Mapped[str] = mapped_column(String(120), nullable=False)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    capacity: Mapped[int] = mapped_column(Integer, nullable=False)

    stop_count: Mapped[int] = mapped_column(Integer, nullable=False)

    state: Mapped[RouteState] = mapped_column(
        enum_column(RouteState, "route_state"),
        nullable=False,
        default=RouteState.PLANNED,
    )

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), nullable=True
    )

    start_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    end_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        CheckConstraint("capacity > 0", name="ck_routes_capacity_positive"),
        CheckConstraint("stop_count <= capacity", name="ck_routes_stop_count_capacity"),
        Index("ix_routes_courier_state", "courier_id", "state"),
        Index("ix_routes_created", "created_at"),
    )


class RouteStop(BaseModel):
    """One order's position within a route."""

    __tablename__ = "route_stops"

    route_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("routes.id", ondelete="RESTRICT"),
        nullable=False,
    )

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
    )

    delivery_record_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("delivery_records.id", ondelete="SET NULL"),
        nullable=True,
    )

    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)

    state: Mapped[StopState] = mapped_column(
        enum_column(StopState, "stop_state"),
        nullable=False,
        default=StopState.PENDING,
    )

    __table_args__ = (
        UniqueConstraint("route_id", "sequence_number", name="uq_route_stops_sequence"),
        UniqueConstraint("route_id", "order_id", name="uq_route_stops_order"),
        CheckConstraint("sequence_number >= 1", name="ck_route_stops_sequence_positive"),
        Index("ix_route_stops_order", "order_id"),
    )


class AlternateRoutePlan(BaseModel):
    """Togglable overlay proposing a different stop order for a route."""

    __tablename__ = "alternate_route_plans"

    route_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("routes.id", ondelete="CASCADE"),
        nullable=False,
    )

    courier_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), nullable=True
    )

    __table_args__ = (
        Index(
            "uq_alternate_route_plans_active_route",
            "route_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_alternate_route_plans_route_created", "route_id", "created_at"),
    )


class AlternatePlanStop(BaseModel):
    """One position of an alternate route plan."""

    __tablename__ = "alternate_plan_stops"

    plan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("alternate_route_plans.id", ondelete="CASCADE"),
        nullable=False,
    )

    route_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    order_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)

    position: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        ForeignKeyConstraint(
            ["route_id", "order_id"],
            ["route_stops.route_id", "route_stops.order_id"],
            name="fk_alternate_plan_stops_route_stop",
            ondelete="CASCADE",
        ),
        UniqueConstraint("plan_id", "position", name="uq_alternate_plan_stops_position"),
        UniqueConstraint("plan_id", "order_id", name="uq_alternate_plan_stops_order"),
        CheckConstraint("position >= 1", name="ck_alternate_plan_stops_position_positive"),
    )
