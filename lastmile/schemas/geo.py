"""
Geo Pydantic schemas.
"""

from typing import Optional

from pydantic import BaseModel, Field


class Point(BaseModel):
    """A WGS84 coordinate pair."""

    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)

    def as_tuple(self) -> tuple[float, float]:
        return (self.lat, self.lon)


class GeocodeResponse(BaseModel):
    """Resolved address."""

    lat: float
    lon: float
    formatted_address: Optional[str] = None


class ReverseGeocodeResponse(BaseModel):
    """Address found at a coordinate."""

    lat: float
    lon: float
    address: str


class RouteComputeRequest(BaseModel):
    """Driving route between two points, optionally via waypoints."""

    origin: Point
    destination: Point
    waypoints: list[Point] = Field(default_factory=list, max_length=23)


class RouteStep(BaseModel):
    distance_km: float
    duration_minutes: int
    instruction: Optional[str] = None


class RouteComputeResponse(BaseModel):
    """Route metrics; ``approximate`` marks a great-circle estimate."""

    distance_km: float
    duration_minutes: int
    polyline: Optional[str] = None
    steps: list[RouteStep] = Field(default_factory=list)
    approximate: bool = False
