"""
Geo service: geocoding, routing metrics and nearest-neighbor stop ordering.

Provider failures stop here. Every public coroutine returns ``None`` (or an
approximate result) when the mapping provider is unavailable, and logs the
degradation, so callers proceed without distance metrics instead of failing.
"""

import math
from typing import Any, Mapping, Optional, Sequence

from lastmile.core.config import Settings, get_settings
from lastmile.core.errors import UpstreamUnavailableError
from lastmile.core.logging import get_logger
from lastmile.services.geo.providers import MapProvider, Position, get_map_provider

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(origin: Position, destination: Position) -> float:
    """Great-circle distance in kilometres between two (lat, lon) points."""
    lat1, lon1 = origin
    lat2, lon2 = destination
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def estimate_minutes(distance_km: float, speed_kmh: float) -> int:
    """Travel time at a constant assumed speed, rounded to whole minutes."""
    return round(distance_km / speed_kmh * 60)


class GeoService:
    """
    Stateless facade over the configured mapping provider.

    Args:
        provider: Provider adapter; defaults to the one selected in settings
        settings: Application settings
    """

    def __init__(
        self,
        provider: Optional[MapProvider] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.provider = provider or get_map_provider(self.settings)

    def _degraded(self, operation: str, error: UpstreamUnavailableError) -> None:
        logger.warning(
            "Geo provider unavailable, continuing without geo data",
            operation=operation,
            provider=error.context.get("provider", self.provider.name),
            error=error.message,
        )

    async def geocode(self, address: str) -> Optional[dict[str, Any]]:
        """
        Resolve a free-text address.

        Returns:
            {"lat", "lon", "formatted_address"} or None when not found or
            when the provider is unavailable
        """
        address = (address or "").strip()
        if not address:
            return None
        try:
            result = await self.provider.geocode(address)
        except UpstreamUnavailableError as e:
            self._degraded("geocode", e)
            return None

        if result is None:
            logger.info("Address not found", address=address)
        return result

    async def reverse_geocode(self, lat: float, lon: float) -> Optional[str]:
        try:
            return await self.provider.reverse_geocode(lat, lon)
        except UpstreamUnavailableError as e:
            self._degraded("reverse_geocode", e)
            return None

    async def compute_route(
        self,
        origin: Position,
        destination: Position,
        waypoints: Sequence[Position] = (),
    ) -> Optional[dict[str, Any]]:
        """
        Driving distance and duration between points as measured by the provider.

        Returns:
            {"distance_km", "duration_minutes", "polyline", "steps",
            "approximate": False} or None when no route is available
        """
        try:
            result = await self.provider.directions(origin, destination, list(waypoints))
        except UpstreamUnavailableError as e:
            self._degraded("compute_route", e)
            return None

        if result is None:
            return None
        return {**result, "approximate": False}

    def estimate_route(self, origin: Position, destination: Position) -> dict[str, Any]:
        """Great-circle estimate used when the provider cannot measure a leg."""
        distance_km = haversine_km(origin, destination)
        return {
            "distance_km": round(distance_km, 3),
            "duration_minutes": estimate_minutes(
                distance_km, self.settings.assumed_speed_kmh
            ),
            "polyline": None,
            "steps": [],
            "approximate": True,
        }

    async def nearest_neighbor_order(
        self,
        origin: Position,
        destinations: Sequence[Mapping[str, Any]],
        measure_legs: bool = True,
    ) -> dict[str, Any]:
        """
        Order destinations greedily by great-circle proximity.

        From the current point, the unvisited destination with the smallest
        haversine distance is visited next; ties go to the destination listed
        first. Each leg is then measured by the provider when possible and
        estimated at the assumed speed otherwise. O(n^2), not optimal.

        Args:
            origin: Starting (lat, lon)
            destinations: Mappings with "lat" and "lon"; other keys are
                carried through to the output
            measure_legs: Ask the provider for real leg metrics

        Returns:
            {"stops": [...], "total_distance_km", "total_duration_minutes",
            "approximate"} where each stop carries its input keys plus
            "sequence", "leg_distance_km", "leg_duration_minutes" and
            "approximate"
        """
        remaining = list(enumerate(destinations))
        current = origin
        stops: list[dict[str, Any]] = []
        total_distance = 0.0
        total_duration = 0

        while remaining:
            index, destination = min(
                remaining,
                key=lambda item: (
                    haversine_km(current, (item[1]["lat"], item[1]["lon"])),
                    item[0],
                ),
            )
            remaining.remove((index, destination))
            point = (destination["lat"], destination["lon"])

            leg = None
            if measure_legs:
                leg = await self.compute_route(current, point)
            if leg is None:
                leg = self.estimate_route(current, point)

            total_distance += leg["distance_km"]
            total_duration += leg["duration_minutes"]
            stops.append(
                {
                    **destination,
                    "sequence": len(stops) + 1,
                    "leg_distance_km": leg["distance_km"],
                    "leg_duration_minutes": leg["duration_minutes"],
                    "approximate": leg["approximate"],
                }
            )
            current = point

        return {
            "stops": stops,
            "total_distance_km": round(total_distance, 3),
            "total_duration_minutes": total_duration,
            "approximate": any(stop["approximate"] for stop in stops),
        }


def get_geo_service() -> GeoService:
    """FastAPI dependency returning a GeoService bound to settings."""
    return GeoService()
