"""Helpers shared by test modules."""

from typing import Any, Optional

from lastmile.core.security import create_access_token
from lastmile.database.models import User
from lastmile.schemas.common import Actor
from lastmile.services.geo.providers import MapProvider


def actor_for(user: User) -> Actor:
    return Actor(id=user.id, role=user.role)


def auth_headers(user: User) -> dict[str, str]:
    token = create_access_token(user.id, user.role)
    return {"Authorization": f"Bearer {token}"}


class UnavailableProvider(MapProvider):
    """Provider whose every call fails as if the vendor were down."""

    name = "unavailable"

    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        self.calls = 0

    async def geocode(self, address: str) -> Optional[dict[str, Any]]:
        self.calls += 1
        raise self._unavailable("down", operation="geocode")

    async def reverse_geocode(self, lat: float, lon: float) -> Optional[str]:
        self.calls += 1
        raise self._unavailable("down", operation="reverse_geocode")

    async def directions(self, origin, destination, waypoints=()) -> Optional[dict[str, Any]]:
        self.calls += 1
        raise self._unavailable("down", operation="directions")
