"""
Assignment Pydantic schemas.
"""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from lastmile.schemas.common import PageMeta
from lastmile.schemas.couriers import CourierSummary
from lastmile.schemas.deliveries import DeliveryResponse
from lastmile.schemas.orders import OrderSummary, PreconditionsResponse


class AssignOrderRequest(BaseModel):
    """Assign an order to a courier."""

    courier_id: UUID = Field(..., description="Courier to receive the order")
    reassignment_reason: Optional[str] = Field(
        None,
        max_length=100,
        description="Required when the order is held by another courier",
    )


class AssignmentResponse(BaseModel):
    """Outcome of an assignment request."""

    delivery: DeliveryResponse
    already_assigned: bool
    reassigned: bool
    previous_delivery_id: Optional[UUID] = None
    preconditions: PreconditionsResponse


class AssignedOrderItem(BaseModel):
    """One row of the dispatcher's assignment board."""

    order: OrderSummary
    delivery: Optional[DeliveryResponse] = None
    courier: Optional[CourierSummary] = None


class AssignedOrderListResponse(BaseModel):
    """Paginated assignment board."""

    items: list[AssignedOrderItem]
    pagination: PageMeta
