"""
Geo API endpoints.

Thin wrappers over GeoService. Provider outages never surface as errors:
an unavailable provider reads as "not found" for lookups.
"""

from fastapi import APIRouter, Query, Request, status

from lastmile.api.deps import CurrentActor, GeoServiceDep
from lastmile.core.errors import ErrorCode, NotFoundError
from lastmile.core.logging import get_logger
from lastmile.core.rate_limit import geo_rate_limit, limiter
from lastmile.schemas.geo import (
    GeocodeResponse,
    ReverseGeocodeResponse,
    RouteComputeRequest,
    RouteComputeResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/geo", tags=["Geo"])


@router.get(
    "/geocode",
    response_model=GeocodeResponse,
    summary="Geocode an address",
)
@limiter.limit(geo_rate_limit)
async def geocode(
    request: Request,
    actor: CurrentActor,
    geo: GeoServiceDep,
    address: str = Query(..., min_length=3, max_length=500),
) -> GeocodeResponse:
    result = await geo.geocode(address)
    if result is None:
        raise NotFoundError(
            "Address could not be resolved",
            code=ErrorCode.GEO_NOT_FOUND,
            address=address,
        )
    return GeocodeResponse(**result)


@router.get(
    "/reverse",
    response_model=ReverseGeocodeResponse,
    summary="Reverse-geocode a coordinate",
)
@limiter.limit(geo_rate_limit)
async def reverse_geocode(
    request: Request,
    actor: CurrentActor,
    geo: GeoServiceDep,
    lat: float = Query(..., ge=-90, le=90),
    lon: float = Query(..., ge=-180, le=180),
) -> ReverseGeocodeResponse:
    address = await geo.reverse_geocode(lat, lon)
    if address is None:
        raise NotFoundError(
            "No address found at this position",
            code=ErrorCode.GEO_NOT_FOUND,
            lat=lat,
            lon=lon,
        )
    return ReverseGeocodeResponse(lat=lat, lon=lon, address=address)


@router.post(
    "/route",
    response_model=RouteComputeResponse,
    status_code=status.HTTP_200_OK,
    summary="Compute a driving route",
    description="Distance, duration, polyline and steps between two points as measured by the provider",
)
@limiter.limit(geo_rate_limit)
async def compute_route(
    request: Request,
    payload: RouteComputeRequest,
    actor: CurrentActor,
    geo: GeoServiceDep,
) -> RouteComputeResponse:
    result = await geo.compute_route(
        payload.origin.as_tuple(),
        payload.destination.as_tuple(),
        [point.as_tuple() for point in payload.waypoints],
    )
    if result is None:
        raise NotFoundError(
            "No route found between these points",
            code=ErrorCode.GEO_NOT_FOUND,
        )
    return RouteComputeResponse(**result)
