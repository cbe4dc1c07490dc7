"""
ORM models.

Importing this package registers every table on ``Base.metadata``.
"""

from lastmile.database.models.delivery import (
    ACTIVE_DELIVERY_STATES,
    TERMINAL_DELIVERY_STATES,
    DeliveryRecord,
    DeliveryState,
)
from lastmile.database.models.order import LogisticsState, Order, OrderStatus
from lastmile.database.models.route import (
    OPEN_ROUTE_STATES,
    OPEN_STOP_STATES,
    AlternatePlanStop,
    AlternateRoutePlan,
    Route,
    RouteState,
    RouteStop,
    StopState,
)
from lastmile.database.models.user import User

__all__ = [
    "ACTIVE_DELIVERY_STATES",
    "TERMINAL_DELIVERY_STATES",
    "OPEN_ROUTE_STATES",
    "OPEN_STOP_STATES",
    "AlternatePlanStop",
    "AlternateRoutePlan",
    "DeliveryRecord",
    "DeliveryState",
    "LogisticsState",
    "Order",
    "OrderStatus",
    "Route",
    "RouteState",
    "RouteStop",
    "StopState",
    "User",
]
