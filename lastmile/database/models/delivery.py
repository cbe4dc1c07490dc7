"""
Delivery record model.

A delivery record is one courier's attempt to fulfill one order. Records
are never deleted: cancellation and failure are states, so the attempt
history for an order stays queryable. A partial unique index guarantees at
most one active record per order, and the ``version`` column provides
optimistic locking for concurrent transitions.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from lastmile.database.base import BaseModel, enum_column


class DeliveryState(str, Enum):
    """
    Delivery record lifecycle.

    ASSIGNED -> IN_TRANSIT -> ARRIVED -> DELIVERED, with CANCELLED and
    FAILED reachable from any non-terminal state.
    """

    ASSIGNED = "assigned"
    IN_TRANSIT = "in_transit"
    ARRIVED = "arrived"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_DELIVERY_STATES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_DELIVERY_STATES


ACTIVE_DELIVERY_STATES = frozenset(
    {DeliveryState.ASSIGNED, DeliveryState.IN_TRANSIT, DeliveryState.ARRIVED}
)
TERMINAL_DELIVERY_STATES = frozenset(
    {DeliveryState.DELIVERED, DeliveryState.CANCELLED, DeliveryState.FAILED}
)

_ACTIVE_STATE_SQL = "state IN ('assigned', 'in_transit', 'arrived')"


class DeliveryRecord(BaseModel):
    """
    One courier's attempt to deliver one order.

    Attributes:
        order_id: Order being delivered
        courier_id: Courier holding the attempt
        route_id: Route bundling this attempt, if any
        state: Lifecycle state
        assigned_at / departed_at / arrived_at / delivered_at /
        cancelled_at / failed_at: Transition timestamps
        departure_lat / departure_lon: Where the courier started
        arrival_lat / arrival_lon: Where the courier reported arrival
        signature / photo_url / notes: Proof of delivery
        distance_km / duration_minutes: Computed at completion
        distance_estimated: Distance is a great-circle estimate
        cancel_reason / cancel_detail / cancelled_by: Cancellation audit
        failure_reason: Why the attempt failed
        reassigned_from_id: Record this one replaced
        version: Optimistic lock counter
    """

    __tablename__ = "delivery_records"

    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Order being delivered",
    )

    courier_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        comment="Courier holding the attempt",
    )

    route_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("routes.id", ondelete="SET NULL"),
        nullable=True,
        comment="Route bundling this attempt",
    )

    state: Mapped[DeliveryState] = mapped_column(
        enum_column(DeliveryState, "delivery_state"),
        nullable=False,
        default=DeliveryState.ASSIGNED,
        comment="Lifecycle state",
    )

    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the courier was assigned",
    )

    departed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    arrived_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    failed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    departure_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    departure_lon: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    arrival_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    arrival_lon: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    signature: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Recipient signature (encoded image)",
    )

    photo_url: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
        comment="Proof-of-delivery photo location",
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    distance_km: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    distance_estimated: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Distance is a great-circle estimate, not a measured route",
    )

    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    cancel_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cancel_detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), nullable=True
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    reassigned_from_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("delivery_records.id", ondelete="SET NULL"),
        nullable=True,
        comment="Record replaced by this one",
    )

    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Optimistic lock counter",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index(
            "uq_delivery_records_active_order",
            "order_id",
            unique=True,
            postgresql_where=text(_ACTIVE_STATE_SQL),
            sqlite_where=text(_ACTIVE_STATE_SQL),
        ),
        Index("ix_delivery_records_courier_state", "courier_id", "state"),
        Index("ix_delivery_records_route", "route_id"),
        Index("ix_delivery_records_order", "order_id"),
    )

    @property
    def departure_position(self) -> Optional[tuple[float, float]]:
        if self.departure_lat is None or self.departure_lon is None:
            return None
        return (self.departure_lat, self.departure_lon)

    @property
    def arrival_position(self) -> Optional[tuple[float, float]]:
        if self.arrival_lat is None or self.arrival_lon is None:
            return None
        return (self.arrival_lat, self.arrival_lon)
