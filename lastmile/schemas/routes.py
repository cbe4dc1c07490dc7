"""
Route planner Pydantic schemas.

``RouteResponse.from_view`` turns the view dictionaries produced by
RouteService into responses; ``stops`` always lists the stored sequence and
``effective_stops`` the order the courier should follow.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from lastmile.database.models import RouteState, StopState
from lastmile.schemas.common import PageMeta
from lastmile.schemas.geo import Point
from lastmile.schemas.orders import OrderSummary


class RouteCreateRequest(BaseModel):
    """Create a route for a courier from a batch of orders."""

    model_config = ConfigDict(str_strip_whitespace=True)

    courier_id: Optional[UUID] = Field(
        None, description="Courier driving the route; defaults to the caller"
    )
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = Field(None, max_length=2000)
    capacity: int = Field(..., le=100, description="Maximum number of stops")
    order_ids: list[UUID] = Field(..., description="Orders in visiting order")


class AlternateOrderRequest(BaseModel):
    """Propose a different visiting order for a route's stops."""

    order_ids: list[UUID] = Field(..., description="Every order of the route, reordered")
    reason: Optional[str] = Field(None, max_length=500)


class AlternateToggleRequest(BaseModel):
    active: bool = Field(..., description="Whether the latest alternate plan applies")


class RouteFinishRequest(BaseModel):
    """Settle an in-progress route. Open stops not listed count as undelivered."""

    delivered_order_ids: list[UUID] = Field(default_factory=list)
    undelivered_order_ids: list[UUID] = Field(default_factory=list)


class RouteSuggestRequest(BaseModel):
    """Ask for a suggested visiting order."""

    order_ids: list[UUID] = Field(..., min_length=1, max_length=50)
    origin: Optional[Point] = Field(None, description="Starting point; defaults to the depot")


class RouteStopResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID
    delivery_record_id: Optional[UUID] = None
    sequence_number: int
    state: StopState
    order: Optional[OrderSummary] = None


class AlternateSequenceEntry(BaseModel):
    order_id: UUID
    sequence_number: int


class AlternatePlanResponse(BaseModel):
    """Alternate stop ordering overlay."""

    id: UUID
    courier_id: UUID
    reason: Optional[str] = None
    is_active: bool
    created_by: Optional[UUID] = None
    created_at: datetime
    sequence: list[AlternateSequenceEntry]


class RouteResponse(BaseModel):
    """Route with stored and effective stop order."""

    id: UUID
    courier_id: UUID
    name: str
    description: Optional[str] = None
    capacity: int
    stop_count: int
    state: RouteState
    created_by: Optional[UUID] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    created_at: datetime
    stops: list[RouteStopResponse]
    effective_stops: list[RouteStopResponse]
    alternate_plan: Optional[AlternatePlanResponse] = None

    @classmethod
    def from_view(cls, view: dict[str, Any]) -> "RouteResponse":
        route = view["route"]
        orders = view["orders"]

        def stop_response(stop) -> RouteStopResponse:
            order = orders.get(stop.order_id)
            return RouteStopResponse(
                id=stop.id,
                order_id=stop.order_id,
                delivery_record_id=stop.delivery_record_id,
                sequence_number=stop.sequence_number,
                state=stop.state,
                order=OrderSummary.model_validate(order) if order is not None else None,
            )

        alternate = None
        if view["alternate_plan"] is not None:
            plan = view["alternate_plan"]["plan"]
            alternate = AlternatePlanResponse(
                id=plan.id,
                courier_id=plan.courier_id,
                reason=plan.reason,
                is_active=plan.is_active,
                created_by=plan.created_by,
                created_at=plan.created_at,
                sequence=[
                    AlternateSequenceEntry(order_id=p.order_id, sequence_number=p.position)
                    for p in view["alternate_plan"]["sequence"]
                ],
            )

        return cls(
            id=route.id,
            courier_id=route.courier_id,
            name=route.name,
            description=route.description,
            capacity=route.capacity,
            stop_count=route.stop_count,
            state=route.state,
            created_by=route.created_by,
            start_at=route.start_at,
            end_at=route.end_at,
            created_at=route.created_at,
            stops=[stop_response(s) for s in view["stops"]],
            effective_stops=[stop_response(s) for s in view["effective_stops"]],
            alternate_plan=alternate,
        )


class RouteListResponse(BaseModel):
    items: list[RouteResponse]
    pagination: PageMeta


class SuggestedStop(BaseModel):
    order_id: UUID
    order_number: str
    lat: float
    lon: float
    sequence: int
    leg_distance_km: float
    leg_duration_minutes: int
    approximate: bool


class RouteSuggestionResponse(BaseModel):
    """Nearest-neighbor visiting order with per-leg and total metrics."""

    origin: Point
    stops: list[SuggestedStop]
    total_distance_km: float
    total_duration_minutes: int
    approximate: bool = Field(..., description="True when any leg is a great-circle estimate")
    polyline: Optional[str] = None
    unlocated_order_ids: list[str] = Field(default_factory=list)

    @field_validator("unlocated_order_ids", mode="before")
    @classmethod
    def stringify_ids(cls, v: list) -> list[str]:
        return [str(item) for item in v]
