"""
Courier directory Pydantic schemas.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from lastmile.schemas.common import PageMeta


class CourierSummary(BaseModel):
    """Courier identity embedded in other responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    full_name: str
    email: str
    phone: Optional[str] = None
    role: str
    is_active: bool


class DeliveryCounters(BaseModel):
    """Delivery record counts for one courier or the whole fleet."""

    total: int = Field(0, ge=0)
    in_progress: int = Field(0, ge=0, description="Assigned, in transit or arrived")
    delivered: int = Field(0, ge=0)
    cancelled: int = Field(0, ge=0)
    failed: int = Field(0, ge=0)


class CourierResponse(CourierSummary):
    """Courier with last known position and delivery counters."""

    last_known_lat: Optional[float] = None
    last_known_lon: Optional[float] = None
    last_position_at: Optional[datetime] = None
    created_at: datetime
    counters: DeliveryCounters = Field(default_factory=DeliveryCounters)

    @classmethod
    def from_entry(cls, entry: dict) -> "CourierResponse":
        courier = entry["courier"]
        return cls.model_validate(
            {
                **CourierSummary.model_validate(courier).model_dump(),
                "last_known_lat": courier.last_known_lat,
                "last_known_lon": courier.last_known_lon,
                "last_position_at": courier.last_position_at,
                "created_at": courier.created_at,
                "counters": entry["counters"],
            }
        )


class CourierListResponse(BaseModel):
    """Paginated courier directory."""

    items: list[CourierResponse]
    pagination: PageMeta


class AvailableCourierResponse(BaseModel):
    """Courier able to take another delivery, with its ranking inputs."""

    courier: CourierSummary
    in_flight: int = Field(..., ge=0, description="Active delivery records held")
    distance_km: Optional[float] = Field(
        None, ge=0, description="Great-circle distance to the order destination"
    )
    score: float = Field(..., description="Ranking score; lower is better")

    model_config = ConfigDict(from_attributes=True)


class FleetStatisticsResponse(BaseModel):
    """Fleet-wide courier and delivery totals."""

    total_couriers: int = Field(..., ge=0)
    active_couriers: int = Field(..., ge=0)
    inactive_couriers: int = Field(..., ge=0)
    available_couriers: int = Field(
        ..., ge=0, description="Active couriers below the in-flight ceiling"
    )
    deliveries: DeliveryCounters
