"""
Tests for GeoService: great-circle math, graceful degradation and the
nearest-neighbor stop ordering.
"""

from typing import Any, Optional

import pytest

from lastmile.services.geo.providers import MapProvider
from lastmile.services.geo.service import GeoService, estimate_minutes, haversine_km
from tests.helpers import UnavailableProvider


class FixedLegProvider(MapProvider):
    """Provider that measures every leg as 2.5 km / 7 minutes."""

    name = "fixed"

    async def directions(self, origin, destination, waypoints=()) -> Optional[dict[str, Any]]:
        return {"distance_km": 2.5, "duration_minutes": 7, "polyline": "abc", "steps": []}


@pytest.fixture
def degraded_geo(settings) -> GeoService:
    return GeoService(provider=UnavailableProvider(settings=settings), settings=settings)


class TestHaversine:
    def test_one_degree_of_longitude_at_the_equator(self):
        assert haversine_km((0.0, 0.0), (0.0, 1.0)) == pytest.approx(111.195, abs=0.01)

    def test_same_point_is_zero(self):
        assert haversine_km((4.711, -74.0721), (4.711, -74.0721)) == 0.0

    def test_symmetric(self):
        a, b = (4.60, -74.08), (6.25, -75.56)
        assert haversine_km(a, b) == pytest.approx(haversine_km(b, a))

    def test_estimate_minutes(self):
        assert estimate_minutes(25.0, 50.0) == 30


class TestDegradation:
    async def test_geocode_returns_none_when_provider_down(self, degraded_geo):
        assert await degraded_geo.geocode("Calle 100 # 15-20") is None

    async def test_blank_address_skips_provider(self, degraded_geo):
        assert await degraded_geo.geocode("   ") is None
        assert degraded_geo.provider.calls == 0

    async def test_reverse_geocode_returns_none(self, degraded_geo):
        assert await degraded_geo.reverse_geocode(4.65, -74.05) is None

    async def test_compute_route_returns_none(self, degraded_geo):
        assert await degraded_geo.compute_route((4.60, -74.08), (4.65, -74.05)) is None

    def test_estimate_route_is_marked_approximate(self, degraded_geo, settings):
        leg = degraded_geo.estimate_route((0.0, 0.0), (0.0, 1.0))

        assert leg["approximate"] is True
        assert leg["distance_km"] == pytest.approx(111.195, abs=0.01)
        assert leg["duration_minutes"] == estimate_minutes(
            haversine_km((0.0, 0.0), (0.0, 1.0)), settings.assumed_speed_kmh
        )


class TestNearestNeighbor:
    async def test_visits_closest_destination_first(self, degraded_geo):
        destinations = [
            {"order_id": "far", "lat": 0.0, "lon": 3.0},
            {"order_id": "near", "lat": 0.0, "lon": 1.0},
            {"order_id": "middle", "lat": 0.0, "lon": 2.0},
        ]

        result = await degraded_geo.nearest_neighbor_order((0.0, 0.0), destinations)

        assert [s["order_id"] for s in result["stops"]] == ["near", "middle", "far"]
        assert [s["sequence"] for s in result["stops"]] == [1, 2, 3]
        assert result["approximate"] is True
        assert result["total_distance_km"] == pytest.approx(
            sum(s["leg_distance_km"] for s in result["stops"]), abs=0.01
        )

    async def test_ties_go_to_the_destination_listed_first(self, degraded_geo):
        destinations = [
            {"order_id": "north", "lat": 1.0, "lon": 0.0},
            {"order_id": "east", "lat": 0.0, "lon": 1.0},
        ]

        result = await degraded_geo.nearest_neighbor_order((0.0, 0.0), destinations)

        assert [s["order_id"] for s in result["stops"]] == ["north", "east"]

    async def test_same_input_gives_same_output(self, degraded_geo):
        destinations = [
            {"order_id": str(i), "lat": 4.6 + (i % 3) * 0.01, "lon": -74.1 + i * 0.005}
            for i in range(8)
        ]

        first = await degraded_geo.nearest_neighbor_order((4.711, -74.0721), destinations)
        second = await degraded_geo.nearest_neighbor_order((4.711, -74.0721), destinations)

        assert first == second

    async def test_measured_legs_are_not_approximate(self, settings):
        geo = GeoService(provider=FixedLegProvider(settings=settings), settings=settings)
        destinations = [
            {"order_id": "a", "lat": 0.0, "lon": 1.0},
            {"order_id": "b", "lat": 0.0, "lon": 2.0},
        ]

        result = await geo.nearest_neighbor_order((0.0, 0.0), destinations)

        assert result["approximate"] is False
        assert result["total_distance_km"] == 5.0
        assert result["total_duration_minutes"] == 14
        assert all(s["leg_duration_minutes"] == 7 for s in result["stops"])

    async def test_skip_measurement(self, settings):
        provider = UnavailableProvider(settings=settings)
        geo = GeoService(provider=provider, settings=settings)

        result = await geo.nearest_neighbor_order(
            (0.0, 0.0), [{"lat": 0.0, "lon": 1.0}], measure_legs=False
        )

        assert provider.calls == 0
        assert result["stops"][0]["approximate"] is True

    async def test_no_destinations(self, degraded_geo):
        result = await degraded_geo.nearest_neighbor_order((0.0, 0.0), [])

        assert result == {
            "stops": [],
            "total_distance_km": 0.0,
            "total_duration_minutes": 0,
            "approximate": False,
        }
