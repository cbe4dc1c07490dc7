"""
Route planner API endpoints.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from lastmile.api.deps import (
    CurrentActor,
    DatabaseSession,
    ElevatedActor,
    GeoServiceDep,
    Pagination,
)
from lastmile.core.logging import get_logger
from lastmile.database.models import RouteState
from lastmile.schemas.common import PageMeta
from lastmile.schemas.routes import (
    AlternateOrderRequest,
    AlternateToggleRequest,
    RouteCreateRequest,
    RouteFinishRequest,
    RouteListResponse,
    RouteResponse,
    RouteSuggestionResponse,
    RouteSuggestRequest,
)
from lastmile.services.routes.service import RouteService

logger = get_logger(__name__)

router = APIRouter(prefix="/routes", tags=["Routes"])


@router.post(
    "",
    response_model=RouteResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create route",
    description="Bundle orders into a capacity-bounded route; stops follow the given order",
)
async def create_route(
    payload: RouteCreateRequest,
    actor: CurrentActor,
    db: DatabaseSession,
) -> RouteResponse:
    view = await RouteService(db).create_route(
        courier_id=payload.courier_id or actor.id,
        name=payload.name,
        capacity=payload.capacity,
        order_ids=payload.order_ids,
        actor=actor,
        description=payload.description,
    )
    return RouteResponse.from_view(view)


@router.get(
    "",
    response_model=RouteListResponse,
    summary="List routes",
)
async def list_routes(
    actor: ElevatedActor,
    db: DatabaseSession,
    page: Pagination,
    state: Optional[RouteState] = Query(None),
    courier_id: Optional[UUID] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
) -> RouteListResponse:
    views, total = await RouteService(db).list_routes(
        state=state,
        courier_id=courier_id,
        date_from=date_from,
        date_to=date_to,
        limit=page.limit,
        offset=page.offset,
    )
    return RouteListResponse(
        items=[RouteResponse.from_view(view) for view in views],
        pagination=PageMeta.build(total, page.page, page.page_size),
    )


@router.get(
    "/active",
    response_model=Optional[RouteResponse],
    summary="Get active route",
    description="The caller's most recent open route, or null",
)
async def get_active_route(
    actor: CurrentActor,
    db: DatabaseSession,
    courier_id: Optional[UUID] = Query(None),
) -> Optional[RouteResponse]:
    view = await RouteService(db).get_active_route(actor, courier_id=courier_id)
    return RouteResponse.from_view(view) if view is not None else None


@router.post(
    "/suggest",
    response_model=RouteSuggestionResponse,
    summary="Suggest stop order",
    description="Nearest-neighbor visiting order from the origin (or depot)",
)
async def suggest_route(
    payload: RouteSuggestRequest,
    actor: CurrentActor,
    db: DatabaseSession,
    geo: GeoServiceDep,
) -> RouteSuggestionResponse:
    origin = payload.origin.as_tuple() if payload.origin is not None else None
    result = await RouteService(db, geo=geo).suggest_route(payload.order_ids, origin)
    return RouteSuggestionResponse(**result)


@router.get(
    "/{route_id}",
    response_model=RouteResponse,
    summary="Get route",
)
async def get_route(
    route_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> RouteResponse:
    return RouteResponse.from_view(await RouteService(db).get_route(route_id, actor))


@router.post(
    "/{route_id}/alternate",
    response_model=RouteResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Propose alternate stop order",
)
async def propose_alternate_order(
    route_id: UUID,
    payload: AlternateOrderRequest,
    actor: CurrentActor,
    db: DatabaseSession,
) -> RouteResponse:
    view = await RouteService(db).propose_alternate_order(
        route_id, actor, payload.order_ids, reason=payload.reason
    )
    return RouteResponse.from_view(view)


@router.patch(
    "/{route_id}/alternate",
    response_model=RouteResponse,
    summary="Toggle alternate stop order",
)
async def toggle_alternate(
    route_id: UUID,
    payload: AlternateToggleRequest,
    actor: CurrentActor,
    db: DatabaseSession,
) -> RouteResponse:
    view = await RouteService(db).toggle_alternate(route_id, actor, payload.active)
    return RouteResponse.from_view(view)


@router.post(
    "/{route_id}/start",
    response_model=RouteResponse,
    summary="Start route",
)
async def start_route(
    route_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> RouteResponse:
    return RouteResponse.from_view(await RouteService(db).start_route(route_id, actor))


@router.post(
    "/{route_id}/finish",
    response_model=RouteResponse,
    summary="Finish route",
    description="Settles every stop atomically; unlisted open stops count as undelivered",
)
async def finish_route(
    route_id: UUID,
    payload: RouteFinishRequest,
    actor: CurrentActor,
    db: DatabaseSession,
) -> RouteResponse:
    view = await RouteService(db).finish_route(
        route_id,
        actor,
        delivered_order_ids=payload.delivered_order_ids,
        undelivered_order_ids=payload.undelivered_order_ids,
    )
    return RouteResponse.from_view(view)
