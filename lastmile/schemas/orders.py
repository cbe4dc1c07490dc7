"""
Order and synchronizer Pydantic schemas.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from lastmile.database.models import LogisticsState, OrderStatus


class OrderSummary(BaseModel):
    """Order fields relevant to dispatch."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    status: OrderStatus
    customer_name: Optional[str] = None
    destination_address: Optional[str] = None
    destination_lat: Optional[float] = None
    destination_lon: Optional[float] = None
    loaded_on_vehicle: bool = False
    logistics_state: Optional[LogisticsState] = None
    assigned_courier_id: Optional[UUID] = None
    delivered_at: Optional[datetime] = None


class PreconditionChecks(BaseModel):
    """The four readiness checks gating promotion to in_process."""

    ledger_party: bool = Field(..., description="Customer exists in the ledger")
    ledger_order: bool = Field(..., description="Order exists in the ledger")
    courier_assigned: bool = Field(..., description="An active delivery has a courier")
    loaded: bool = Field(..., description="Order is physically loaded")


class PreconditionsResponse(BaseModel):
    """Result of evaluating an order's dispatch preconditions."""

    order_id: UUID
    status: OrderStatus
    satisfied: bool
    checks: PreconditionChecks
    missing: list[str] = Field(default_factory=list)
    promoted: bool = False
