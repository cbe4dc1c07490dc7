"""
API v1 routers.
"""

from lastmile.api.v1.couriers import router as couriers_router
from lastmile.api.v1.deliveries import router as deliveries_router
from lastmile.api.v1.geo import router as geo_router
from lastmile.api.v1.orders import router as orders_router
from lastmile.api.v1.routes import router as routes_router

__all__ = [
    "couriers_router",
    "deliveries_router",
    "geo_router",
    "orders_router",
    "routes_router",
]
