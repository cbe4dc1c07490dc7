"""
Courier directory API endpoints (dispatchers only).
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query

from lastmile.api.deps import DatabaseSession, ElevatedActor, Pagination
from lastmile.core.logging import get_logger
from lastmile.database.models import DeliveryState, OrderStatus
from lastmile.schemas.common import PageMeta
from lastmile.schemas.couriers import (
    AvailableCourierResponse,
    CourierListResponse,
    CourierResponse,
    CourierSummary,
    FleetStatisticsResponse,
)
from lastmile.schemas.deliveries import DeliveryDetailResponse, DeliveryListResponse
from lastmile.services.assignment.service import AssignmentService
from lastmile.services.couriers.service import CourierService

logger = get_logger(__name__)

router = APIRouter(prefix="/couriers", tags=["Couriers"])


@router.get(
    "/available",
    response_model=list[AvailableCourierResponse],
    summary="List available couriers",
    description="Active couriers below the in-flight ceiling, nearest first when order_id is given",
)
async def list_available_couriers(
    actor: ElevatedActor,
    db: DatabaseSession,
    order_id: Optional[UUID] = Query(None),
) -> list[AvailableCourierResponse]:
    candidates = await AssignmentService(db).list_available_couriers(order_id)
    return [
        AvailableCourierResponse(
            courier=CourierSummary.model_validate(c["courier"]),
            in_flight=c["in_flight"],
            distance_km=c["distance_km"],
            score=c["score"],
        )
        for c in candidates
    ]


@router.get(
    "/statistics",
    response_model=FleetStatisticsResponse,
    summary="Fleet statistics",
)
async def fleet_statistics(
    actor: ElevatedActor,
    db: DatabaseSession,
) -> FleetStatisticsResponse:
    return FleetStatisticsResponse(**await CourierService(db).fleet_statistics())


@router.get(
    "",
    response_model=CourierListResponse,
    summary="List couriers",
)
async def list_couriers(
    actor: ElevatedActor,
    db: DatabaseSession,
    page: Pagination,
    search: Optional[str] = Query(None, max_length=100),
    is_active: Optional[bool] = Query(None),
    sort_by: str = Query("full_name", pattern="^(full_name|email|created_at)$"),
    sort_order: str = Query("asc", pattern="^(asc|desc)$"),
) -> CourierListResponse:
    items, total = await CourierService(db).list_couriers(
        search=search,
        is_active=is_active,
        sort_by=sort_by,
        descending=sort_order == "desc",
        limit=page.limit,
        offset=page.offset,
    )
    return CourierListResponse(
        items=[CourierResponse.from_entry(item) for item in items],
        pagination=PageMeta.build(total, page.page, page.page_size),
    )


@router.get(
    "/{courier_id}",
    response_model=CourierResponse,
    summary="Get courier",
)
async def get_courier(
    courier_id: UUID,
    actor: ElevatedActor,
    db: DatabaseSession,
) -> CourierResponse:
    return CourierResponse.from_entry(await CourierService(db).get_courier(courier_id))


@router.get(
    "/{courier_id}/deliveries",
    response_model=DeliveryListResponse,
    summary="Courier delivery history",
)
async def courier_delivery_history(
    courier_id: UUID,
    actor: ElevatedActor,
    db: DatabaseSession,
    page: Pagination,
    state: Optional[DeliveryState] = Query(None),
    order_status: Optional[OrderStatus] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
) -> DeliveryListResponse:
    rows, total = await CourierService(db).delivery_history(
        courier_id,
        state=state,
        order_status=order_status,
        date_from=date_from,
        date_to=date_to,
        limit=page.limit,
        offset=page.offset,
    )
    return DeliveryListResponse(
        items=[DeliveryDetailResponse.build(record, order) for record, order in rows],
        pagination=PageMeta.build(total, page.page, page.page_size),
    )
