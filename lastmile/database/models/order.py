"""
Order model as shared with the order-management collaborator.

Dispatch reads the authoritative ``status`` and writes it only through
``OrderRepository.update_state``. The logistics projection columns
(``logistics_state``, ``assigned_courier_id``) summarize where the order
sits in the delivery pipeline and are updated on the same path.
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
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from lastmile.database.base import BaseModel, enum_column


class OrderStatus(str, Enum):
    """
    Order lifecycle status.

    Happy path: PENDING -> CONFIRMED -> IN_PROCESS -> SHIPPED -> DELIVERED.
    CANCELLED and REFUNDED are terminal and owned by order management.
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROCESS = "in_process"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """
        Create OrderStatus from string value.

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid_values = ", ".join(s.value for s in cls)
            raise ValueError(
                f"Invalid order status: {value}. Valid values are: {valid_values}"
            )

    @property
    def is_terminal(self) -> bool:
        return self in (
            OrderStatus.DELIVERED,
            OrderStatus.CANCELLED,
            OrderStatus.REFUNDED,
        )

    @property
    def is_routable(self) -> bool:
        """Whether an order in this status may be bundled into a route."""
        return self in (
            OrderStatus.PENDING,
            OrderStatus.CONFIRMED,
            OrderStatus.IN_PROCESS,
            OrderStatus.SHIPPED,
        )

    @property
    def rank(self) -> int:
        """Position along the happy path; terminal side exits rank last."""
        return _STATUS_RANK[self]


_STATUS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.IN_PROCESS: 2,
    OrderStatus.SHIPPED: 3,
    OrderStatus.DELIVERED: 4,
    OrderStatus.CANCELLED: 5,
    OrderStatus.REFUNDED: 5,
}


class LogisticsState(str, Enum):
    """Where an order sits in the delivery pipeline."""

    PENDING_ROUTE = "pending_route"
    ROUTE_ASSIGNED = "route_assigned"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class Order(BaseModel):
    """
    Customer order with its geocoded destination.

    Attributes:
        order_number: Human-readable order number
        status: Authoritative lifecycle status
        loaded_on_vehicle: Set once the order is physically staged
        ledger_party_ref: Customer reference in the external ledger
        ledger_order_ref: Order reference in the external ledger
        destination_address: Free-text delivery address
        destination_lat: Geocoded latitude
        destination_lon: Geocoded longitude
        delivered_at: Real delivery timestamp
        logistics_state: Delivery pipeline projection
        assigned_courier_id: Courier currently holding the order
    """

    __tablename__ = "orders"

    order_number: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        comment="Human-readable order number",
    )

    status: Mapped[OrderStatus] = mapped_column(
        enum_column(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
        comment="Authoritative order status",
    )

    loaded_on_vehicle: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Physically staged on a vehicle",
    )

    ledger_party_ref: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Customer record reference in the external ledger",
    )

    ledger_order_ref: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        comment="Order record reference in the external ledger",
    )

    customer_name: Mapped[Optional[str]] = mapped_column(
        String(200),
        nullable=True,
        comment="Recipient display name",
    )

    destination_address: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Delivery address",
    )

    destination_lat: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Destination latitude",
    )

    destination_lon: Mapped[Optional[float]] = mapped_column(
        Float,
        nullable=True,
        comment="Destination longitude",
    )

    delivered_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Real delivery timestamp",
    )

    logistics_state: Mapped[Optional[LogisticsState]] = mapped_column(
        enum_column(LogisticsState, "logistics_state"),
        nullable=True,
        comment="Delivery pipeline projection",
    )

    assigned_courier_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="Courier currently holding the order",
    )

    __table_args__ = (
        Index("ix_orders_status_created", "status", "created_at"),
        Index("ix_orders_assigned_courier", "assigned_courier_id"),
    )

    @property
    def destination(self) -> Optional[tuple[float, float]]:
        if self.destination_lat is None or self.destination_lon is None:
            return None
        return (self.destination_lat, self.destination_lon)
