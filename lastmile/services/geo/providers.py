"""
Mapping provider adapters.

Each adapter speaks one vendor's HTTP API and normalizes its responses to
the shapes used by GeoService:

- geocode -> {"lat", "lon", "formatted_address"} or None
- reverse_geocode -> address string or None
- directions -> {"distance_km", "duration_minutes", "polyline", "steps"} or None

``None`` means the provider answered but found nothing. Transport errors,
quota/credential rejections and malformed payloads raise
UpstreamUnavailableError after the configured retries.
"""

import asyncio
from typing import Any, Optional, Sequence
from urllib.parse import quote

import httpx

from lastmile.core.config import Settings, get_settings
from lastmile.core.errors import ErrorCode, UpstreamUnavailableError
from lastmile.core.logging import get_logger

logger = get_logger(__name__)

Position = tuple[float, float]

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class MapProvider:
    """
    Base class for mapping provider adapters.

    Subclasses implement the three vendor operations; the shared
    ``_get_json`` handles timeouts, retries with exponential backoff and
    error normalization.
    """

    name = "base"

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        language: Optional[str] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self._client = client
        self.timeout = timeout if timeout is not None else settings.maps_timeout_seconds
        self.max_retries = (
            max_retries if max_retries is not None else settings.maps_max_retries
        )
        self.backoff_seconds = (
            backoff_seconds
            if backoff_seconds is not None
            else settings.maps_backoff_seconds
        )
        self.language = language or settings.maps_language

    async def geocode(self, address: str) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    async def reverse_geocode(self, lat: float, lon: float) -> Optional[str]:
        raise NotImplementedError

    async def directions(
        self,
        origin: Position,
        destination: Position,
        waypoints: Sequence[Position] = (),
    ) -> Optional[dict[str, Any]]:
        raise NotImplementedError

    def _unavailable(self, message: str, **context: Any) -> UpstreamUnavailableError:
        return UpstreamUnavailableError(
            message,
            code=ErrorCode.UPSTREAM_UNAVAILABLE,
            provider=self.name,
            **context,
        )

    async def _send(self, client: httpx.AsyncClient, url: str, params: dict) -> httpx.Response:
        return await client.get(url, params=params)

    async def _get_json(
        self, operation: str, url: str, params: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Perform a GET request and decode the JSON body with retries.

        Raises:
            UpstreamUnavailableError: When the provider stays unreachable,
                rejects the request or returns a non-JSON body
        """
        attempt = 0
        while True:
            try:
                if self._client is not None:
                    response = await self._send(self._client, url, params)
                else:
                    async with httpx.AsyncClient(
                        timeout=httpx.Timeout(self.timeout, connect=5.0)
                    ) as client:
                        response = await self._send(client, url, params)

                if response.status_code in RETRYABLE_STATUS_CODES:
                    raise httpx.HTTPStatusError(
                        f"Provider returned {response.status_code}",
                        request=response.request,
                        response=response,
                    )
                if response.status_code >= 400:
                    raise self._unavailable(
                        f"{self.name} rejected {operation} request",
                        operation=operation,
                        status_code=response.status_code,
                    )
                return response.json()

            except (httpx.TimeoutException, httpx.NetworkError, httpx.HTTPStatusError) as e:
                attempt += 1
                if attempt > self.max_retries:
                    raise self._unavailable(
                        f"{self.name} {operation} failed after {self.max_retries} retries",
                        operation=operation,
                        error=str(e),
                        error_type=type(e).__name__,
                    ) from e
                wait_time = self.backoff_seconds * (2 ** (attempt - 1))
                logger.debug(
                    "Map provider request failed, retrying",
                    provider=self.name,
                    operation=operation,
                    attempt=attempt,
                    wait_seconds=wait_time,
                    error=str(e),
                )
                await asyncio.sleep(wait_time)
            except httpx.HTTPError as e:
                raise self._unavailable(
                    f"{self.name} {operation} request error",
                    operation=operation,
                    error=str(e),
                ) from e
            except ValueError as e:
                raise self._unavailable(
                    f"{self.name} returned a non-JSON body",
                    operation=operation,
                ) from e


class GoogleMapsProvider(MapProvider):
    """Google Maps Platform geocoding and directions."""

    name = "google"

    GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
    DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"

    NOT_FOUND_STATUSES = frozenset({"ZERO_RESULTS", "NOT_FOUND"})

    def __init__(self, api_key: Optional[str] = None, **kwargs: Any):
        settings = kwargs.get("settings") or get_settings()
        super().__init__(**kwargs)
        self.api_key = api_key or settings.google_maps_api_key

    def _check_status(self, operation: str, data: dict[str, Any]) -> bool:
        """Return True for a usable payload, False for an empty answer."""
        status = data.get("status")
        if status == "OK":
            return True
        if status in self.NOT_FOUND_STATUSES:
            return False
        raise self._unavailable(
            f"google {operation} returned status {status}",
            operation=operation,
            provider_status=status,
            provider_message=data.get("error_message"),
        )

    def _require_key(self) -> None:
        if not self.api_key:
            raise self._unavailable("Google Maps API key is not configured")

    async def geocode(self, address: str) -> Optional[dict[str, Any]]:
        self._require_key()
        data = await self._get_json(
            "geocode",
            self.GEOCODE_URL,
            {"address": address, "key": self.api_key, "language": self.language},
        )
        if not self._check_status("geocode", data) or not data.get("results"):
            return None
        try:
            result = data["results"][0]
            location = result["geometry"]["location"]
            return {
                "lat": float(location["lat"]),
                "lon": float(location["lng"]),
                "formatted_address": result.get("formatted_address"),
            }
        except (KeyError, TypeError, ValueError) as e:
            raise self._unavailable("google geocode payload malformed") from e

    async def reverse_geocode(self, lat: float, lon: float) -> Optional[str]:
        self._require_key()
        data = await self._get_json(
            "reverse_geocode",
            self.GEOCODE_URL,
            {"latlng": f"{lat},{lon}", "key": self.api_key, "language": self.language},
        )
        if not self._check_status("reverse_geocode", data) or not data.get("results"):
            return None
        return data["results"][0].get("formatted_address")

    async def directions(
        self,
        origin: Position,
        destination: Position,
        waypoints: Sequence[Position] = (),
    ) -> Optional[dict[str, Any]]:
        self._require_key()
        params: dict[str, Any] = {
            "origin": f"{origin[0]},{origin[1]}",
            "destination": f"{destination[0]},{destination[1]}",
            "mode": "driving",
            "key": self.api_key,
            "language": self.language,
        }
        if waypoints:
            params["waypoints"] = "|".join(f"{lat},{lon}" for lat, lon in waypoints)

        data = await self._get_json("directions", self.DIRECTIONS_URL, params)
        if not self._check_status("directions", data) or not data.get("routes"):
            return None

        try:
            route = data["routes"][0]
            legs = route["legs"]
            distance_m = sum(leg["distance"]["value"] for leg in legs)
            duration_s = sum(leg["duration"]["value"] for leg in legs)
            steps = [
                {
                    "distance_km": step["distance"]["value"] / 1000,
                    "duration_minutes": round(step["duration"]["value"] / 60),
                    "instruction": step.get("html_instructions", ""),
                }
                for leg in legs
                for step in leg.get("steps", [])
            ]
            return {
                "distance_km": distance_m / 1000,
                "duration_minutes": round(duration_s / 60),
                "polyline": route.get("overview_polyline", {}).get("points"),
                "steps": steps,
            }
        except (KeyError, TypeError) as e:
            raise self._unavailable("google directions payload malformed") from e


class MapboxProvider(MapProvider):
    """Mapbox geocoding (v5) and driving directions."""

    name = "mapbox"

    GEOCODE_URL = "https://api.mapbox.com/geocoding/v5/mapbox.places/{query}.json"
    DIRECTIONS_URL = "https://api.mapbox.com/directions/v5/mapbox/driving/{coordinates}"

    NOT_FOUND_CODES = frozenset({"NoRoute", "NoSegment"})

    def __init__(self, access_token: Optional[str] = None, **kwargs: Any):
        settings = kwargs.get("settings") or get_settings()
        super().__init__(**kwargs)
        self.access_token = access_token or settings.mapbox_access_token

    def _require_token(self) -> None:
        if not self.access_token:
            raise self._unavailable("Mapbox access token is not configured")

    async def geocode(self, address: str) -> Optional[dict[str, Any]]:
        self._require_token()
        data = await self._get_json(
            "geocode",
            self.GEOCODE_URL.format(query=quote(address, safe="")),
            {"access_token": self.access_token, "language": self.language, "limit": 1},
        )
        features = data.get("features") or []
        if not features:
            return None
        try:
            lon, lat = features[0]["center"]
            return {
                "lat": float(lat),
                "lon": float(lon),
                "formatted_address": features[0].get("place_name"),
            }
        except (KeyError, TypeError, ValueError) as e:
            raise self._unavailable("mapbox geocode payload malformed") from e

    async def reverse_geocode(self, lat: float, lon: float) -> Optional[str]:
        self._require_token()
        data = await self._get_json(
            "reverse_geocode",
            self.GEOCODE_URL.format(query=f"{lon},{lat}"),
            {"access_token": self.access_token, "language": self.language, "limit": 1},
        )
        features = data.get("features") or []
        if not features:
            return None
        return features[0].get("place_name")

    async def directions(
        self,
        origin: Position,
        destination: Position,
        waypoints: Sequence[Position] = (),
    ) -> Optional[dict[str, Any]]:
        self._require_token()
        points = [origin, *waypoints, destination]
        coordinates = ";".join(f"{lon},{lat}" for lat, lon in points)

        data = await self._get_json(
            "directions",
            self.DIRECTIONS_URL.format(coordinates=coordinates),
            {
                "access_token": self.access_token,
                "geometries": "polyline",
                "overview": "full",
                "steps": "true",
                "language": self.language,
            },
        )

        code = data.get("code")
        if code in self.NOT_FOUND_CODES or (code == "Ok" and not data.get("routes")):
            return None
        if code != "Ok":
            raise self._unavailable(
                f"mapbox directions returned code {code}",
                operation="directions",
                provider_status=code,
                provider_message=data.get("message"),
            )

        try:
            route = data["routes"][0]
            steps = [
                {
                    "distance_km": step["distance"] / 1000,
                    "duration_minutes": round(step["duration"] / 60),
                    "instruction": step.get("maneuver", {}).get("instruction", ""),
                }
                for leg in route.get("legs", [])
                for step in leg.get("steps", [])
            ]
            return {
                "distance_km": route["distance"] / 1000,
                "duration_minutes": round(route["duration"] / 60),
                "polyline": route.get("geometry"),
                "steps": steps,
            }
        except (KeyError, TypeError) as e:
            raise self._unavailable("mapbox directions payload malformed") from e


def get_map_provider(settings: Optional[Settings] = None) -> MapProvider:
    """
    Build the provider adapter selected by ``APP_MAPS_PROVIDER``.

    Returns:
        Configured MapProvider instance
    """
    settings = settings or get_settings()
    if settings.maps_provider == "mapbox":
        return MapboxProvider(settings=settings)
    return GoogleMapsProvider(settings=settings)
