"""
Tests for the mapping provider adapters using httpx.MockTransport.
"""

import httpx
import pytest

from lastmile.core.errors import ErrorCode, UpstreamUnavailableError
from lastmile.services.geo.providers import (
    GoogleMapsProvider,
    MapboxProvider,
    get_map_provider,
)

GOOGLE_GEOCODE_OK = {
    "status": "OK",
    "results": [
        {
            "formatted_address": "Cra. 7 #32-16, Bogotá, Colombia",
            "geometry": {"location": {"lat": 4.6175, "lng": -74.0689}},
        }
    ],
}


def google(handler, settings, max_retries: int = 2) -> GoogleMapsProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleMapsProvider(
        api_key="test-key",
        client=client,
        max_retries=max_retries,
        backoff_seconds=0,
        settings=settings,
    )


def mapbox(handler, settings) -> MapboxProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MapboxProvider(
        access_token="test-token",
        client=client,
        max_retries=0,
        backoff_seconds=0,
        settings=settings,
    )


class TestGoogleMapsProvider:
    async def test_geocode_normalizes_result(self, settings):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=GOOGLE_GEOCODE_OK)

        result = await google(handler, settings).geocode("Carrera 7 # 32-16")

        assert result == {
            "lat": 4.6175,
            "lon": -74.0689,
            "formatted_address": "Cra. 7 #32-16, Bogotá, Colombia",
        }
        assert seen[0].url.params["address"] == "Carrera 7 # 32-16"
        assert seen[0].url.params["key"] == "test-key"

    async def test_zero_results_is_not_found(self, settings):
        provider = google(
            lambda request: httpx.Response(200, json={"status": "ZERO_RESULTS", "results": []}),
            settings,
        )

        assert await provider.geocode("nowhere at all") is None

    async def test_request_denied_is_unavailable(self, settings):
        provider = google(
            lambda request: httpx.Response(
                200, json={"status": "REQUEST_DENIED", "error_message": "bad key"}
            ),
            settings,
        )

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await provider.geocode("Carrera 7")

        assert exc_info.value.code == ErrorCode.UPSTREAM_UNAVAILABLE.value
        assert exc_info.value.context["provider_status"] == "REQUEST_DENIED"

    async def test_retries_transient_errors(self, settings):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json=GOOGLE_GEOCODE_OK)

        result = await google(handler, settings, max_retries=2).geocode("Carrera 7")

        assert result is not None
        assert len(calls) == 3

    async def test_gives_up_after_retries(self, settings):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503)

        with pytest.raises(UpstreamUnavailableError):
            await google(handler, settings, max_retries=1).geocode("Carrera 7")

        assert len(calls) == 2

    async def test_client_error_is_not_retried(self, settings):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(403)

        with pytest.raises(UpstreamUnavailableError):
            await google(handler, settings).geocode("Carrera 7")

        assert len(calls) == 1

    async def test_missing_key_fails_without_calling(self, settings):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json=GOOGLE_GEOCODE_OK)

        provider = GoogleMapsProvider(
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            settings=settings,
        )
        provider.api_key = None

        with pytest.raises(UpstreamUnavailableError):
            await provider.geocode("Carrera 7")
        assert calls == []

    async def test_directions_sums_legs(self, settings):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "status": "OK",
                    "routes": [
                        {
                            "overview_polyline": {"points": "enc0ded"},
                            "legs": [
                                {
                                    "distance": {"value": 3000},
                                    "duration": {"value": 600},
                                    "steps": [
                                        {
                                            "distance": {"value": 3000},
                                            "duration": {"value": 600},
                                            "html_instructions": "Head north",
                                        }
                                    ],
                                },
                                {
                                    "distance": {"value": 1500},
                                    "duration": {"value": 300},
                                    "steps": [],
                                },
                            ],
                        }
                    ],
                },
            )

        result = await google(handler, settings).directions(
            (4.60, -74.08), (4.65, -74.05), [(4.62, -74.07)]
        )

        assert result["distance_km"] == 4.5
        assert result["duration_minutes"] == 15
        assert result["polyline"] == "enc0ded"
        assert result["steps"] == [
            {"distance_km": 3.0, "duration_minutes": 10, "instruction": "Head north"}
        ]
        assert seen[0].url.params["waypoints"] == "4.62,-74.07"


class TestMapboxProvider:
    async def test_geocode_reads_center_as_lon_lat(self, settings):
        provider = mapbox(
            lambda request: httpx.Response(
                200,
                json={"features": [{"center": [-74.0689, 4.6175], "place_name": "Bogotá"}]},
            ),
            settings,
        )

        assert await provider.geocode("Bogotá") == {
            "lat": 4.6175,
            "lon": -74.0689,
            "formatted_address": "Bogotá",
        }

    async def test_geocode_without_features(self, settings):
        provider = mapbox(lambda request: httpx.Response(200, json={"features": []}), settings)

        assert await provider.geocode("nowhere") is None

    async def test_directions(self, settings):
        provider = mapbox(
            lambda request: httpx.Response(
                200,
                json={
                    "code": "Ok",
                    "routes": [
                        {
                            "distance": 5400,
                            "duration": 600,
                            "geometry": "poly",
                            "legs": [
                                {
                                    "steps": [
                                        {
                                            "distance": 5400,
                                            "duration": 600,
                                            "maneuver": {"instruction": "Drive west"},
                                        }
                                    ]
                                }
                            ],
                        }
                    ],
                },
            ),
            settings,
        )

        result = await provider.directions((4.60, -74.08), (4.65, -74.05))

        assert result["distance_km"] == 5.4
        assert result["duration_minutes"] == 10
        assert result["polyline"] == "poly"
        assert result["steps"][0]["instruction"] == "Drive west"

    async def test_no_route(self, settings):
        provider = mapbox(lambda request: httpx.Response(200, json={"code": "NoRoute"}), settings)

        assert await provider.directions((4.60, -74.08), (4.65, -74.05)) is None

    async def test_invalid_input_code_is_unavailable(self, settings):
        provider = mapbox(
            lambda request: httpx.Response(200, json={"code": "InvalidInput", "message": "bad"}),
            settings,
        )

        with pytest.raises(UpstreamUnavailableError):
            await provider.directions((4.60, -74.08), (4.65, -74.05))


def test_provider_selection(settings):
    assert isinstance(get_map_provider(settings), GoogleMapsProvider)
    assert isinstance(
        get_map_provider(settings.model_copy(update={"maps_provider": "mapbox"})),
        MapboxProvider,
    )
