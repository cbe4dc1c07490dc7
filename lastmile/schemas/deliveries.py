"""
Delivery record Pydantic schemas.

Request bodies for courier actions (start, arrive, complete, cancel, fail)
and the delivery responses shared by the delivery, assignment and courier
history endpoints.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from lastmile.database.models import DeliveryRecord, DeliveryState, Order
from lastmile.schemas.common import PageMeta
from lastmile.schemas.couriers import CourierSummary
from lastmile.schemas.orders import OrderSummary


class DeliveryStartRequest(BaseModel):
    """Start a delivery, optionally reporting the departure position."""

    lat: Optional[float] = Field(None, ge=-90, le=90)
    lon: Optional[float] = Field(None, ge=-180, le=180)


class DeliveryArriveRequest(BaseModel):
    """Report arrival at the destination."""

    lat: Optional[float] = Field(None, ge=-90, le=90, description="Courier latitude")
    lon: Optional[float] = Field(None, ge=-180, le=180, description="Courier longitude")


class DeliveryCompleteRequest(BaseModel):
    """Complete a delivery with proof of delivery."""

    model_config = ConfigDict(str_strip_whitespace=True)

    signature: Optional[str] = Field(None, max_length=255, description="Recipient signature reference")
    photo_url: Optional[str] = Field(None, max_length=500, description="Proof-of-delivery photo")
    notes: Optional[str] = Field(None, max_length=2000)
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lon: Optional[float] = Field(None, ge=-180, le=180)


class DeliveryCancelRequest(BaseModel):
    """Cancel a delivery and try to hand it to another courier."""

    model_config = ConfigDict(str_strip_whitespace=True)

    reason: Optional[str] = Field(None, max_length=100, description="Why the courier cannot deliver")
    detail: Optional[str] = Field(None, max_length=2000)


class DeliveryFailRequest(BaseModel):
    """Mark a delivery as failed."""

    model_config = ConfigDict(str_strip_whitespace=True)

    reason: str = Field(..., min_length=1, max_length=100)
    detail: Optional[str] = Field(None, max_length=2000)


class DeliveryResponse(BaseModel):
    """Delivery record."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    courier_id: UUID
    route_id: Optional[UUID] = None
    state: DeliveryState
    assigned_at: datetime
    departed_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    arrival_lat: Optional[float] = None
    arrival_lon: Optional[float] = None
    signature: Optional[str] = None
    photo_url: Optional[str] = None
    notes: Optional[str] = None
    distance_km: Optional[float] = None
    distance_estimated: bool = False
    duration_minutes: Optional[int] = None
    cancel_reason: Optional[str] = None
    cancel_detail: Optional[str] = None
    failure_reason: Optional[str] = None
    reassigned_from_id: Optional[UUID] = None


class DeliveryDetailResponse(DeliveryResponse):
    """Delivery record with its order."""

    order: OrderSummary

    @classmethod
    def build(cls, record: DeliveryRecord, order: Order) -> "DeliveryDetailResponse":
        return cls.model_validate(
            {
                **DeliveryResponse.model_validate(record).model_dump(),
                "order": OrderSummary.model_validate(order),
            }
        )


class DeliveryListResponse(BaseModel):
    """Paginated deliveries with their orders."""

    items: list[DeliveryDetailResponse]
    pagination: PageMeta


class CancelReassignResponse(BaseModel):
    """Outcome of cancelling a delivery with automatic reassignment."""

    cancelled_delivery: DeliveryResponse
    reassigned: bool = Field(..., description="False when no courier was available")
    new_delivery: Optional[DeliveryResponse] = None
    courier: Optional[CourierSummary] = None
    message: str
