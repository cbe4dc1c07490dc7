"""
Delivery API endpoints.

Couriers list and act on their own deliveries; dispatchers may act on any.
Cancelling a delivery immediately looks for a replacement courier.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query

from lastmile.api.deps import CurrentActor, DatabaseSession, Pagination
from lastmile.core.logging import get_logger
from lastmile.database.models import DeliveryState, OrderStatus
from lastmile.schemas.common import PageMeta
from lastmile.schemas.couriers import CourierSummary
from lastmile.schemas.deliveries import (
    CancelReassignResponse,
    DeliveryArriveRequest,
    DeliveryCancelRequest,
    DeliveryCompleteRequest,
    DeliveryDetailResponse,
    DeliveryFailRequest,
    DeliveryListResponse,
    DeliveryResponse,
    DeliveryStartRequest,
)
from lastmile.services.assignment.service import AssignmentService
from lastmile.services.deliveries.service import DeliveryService

logger = get_logger(__name__)

router = APIRouter(prefix="/deliveries", tags=["Deliveries"])


@router.get(
    "",
    response_model=DeliveryListResponse,
    summary="List deliveries",
    description="The caller's deliveries; dispatchers may pass courier_id to list another courier's",
)
async def list_deliveries(
    actor: CurrentActor,
    db: DatabaseSession,
    page: Pagination,
    courier_id: Optional[UUID] = Query(None),
    state: Optional[DeliveryState] = Query(None),
    order_status: Optional[OrderStatus] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
) -> DeliveryListResponse:
    rows, total = await DeliveryService(db).list_for_courier(
        actor,
        courier_id=courier_id,
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


@router.get(
    "/{delivery_id}",
    response_model=DeliveryDetailResponse,
    summary="Get delivery",
)
async def get_delivery(
    delivery_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> DeliveryDetailResponse:
    record, order = await DeliveryService(db).get(delivery_id, actor)
    return DeliveryDetailResponse.build(record, order)


@router.post(
    "/{delivery_id}/start",
    response_model=DeliveryResponse,
    summary="Start delivery",
    description="assigned -> in_transit; the order becomes shipped",
)
async def start_delivery(
    delivery_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
    payload: Optional[DeliveryStartRequest] = None,
) -> DeliveryResponse:
    payload = payload or DeliveryStartRequest()
    record = await DeliveryService(db).start(delivery_id, actor, lat=payload.lat, lon=payload.lon)
    return DeliveryResponse.model_validate(record)


@router.post(
    "/{delivery_id}/arrive",
    response_model=DeliveryResponse,
    summary="Report arrival",
    description="in_transit -> arrived; stores the courier's coordinates",
)
async def arrive_delivery(
    delivery_id: UUID,
    payload: DeliveryArriveRequest,
    actor: CurrentActor,
    db: DatabaseSession,
) -> DeliveryResponse:
    record = await DeliveryService(db).arrive(delivery_id, actor, payload.lat, payload.lon)
    return DeliveryResponse.model_validate(record)


@router.post(
    "/{delivery_id}/complete",
    response_model=DeliveryResponse,
    summary="Complete delivery",
    description="in_transit/arrived -> delivered with proof of delivery; the order becomes delivered",
)
async def complete_delivery(
    delivery_id: UUID,
    payload: DeliveryCompleteRequest,
    actor: CurrentActor,
    db: DatabaseSession,
) -> DeliveryResponse:
    record = await DeliveryService(db).complete(
        delivery_id,
        actor,
        signature=payload.signature,
        photo_url=payload.photo_url,
        notes=payload.notes,
        lat=payload.lat,
        lon=payload.lon,
    )
    return DeliveryResponse.model_validate(record)


@router.post(
    "/{delivery_id}/cancel",
    response_model=CancelReassignResponse,
    summary="Cancel delivery",
    description="Cancels the delivery and reassigns the order to the best available courier, if any",
)
async def cancel_delivery(
    delivery_id: UUID,
    payload: DeliveryCancelRequest,
    actor: CurrentActor,
    db: DatabaseSession,
) -> CancelReassignResponse:
    result = await AssignmentService(db).cancel_and_reassign(
        delivery_id, actor, reason=payload.reason, detail=payload.detail
    )
    return CancelReassignResponse(
        cancelled_delivery=DeliveryResponse.model_validate(result["cancelled_delivery"]),
        reassigned=result["reassigned"],
        new_delivery=(
            DeliveryResponse.model_validate(result["new_delivery"])
            if result["new_delivery"] is not None
            else None
        ),
        courier=(
            CourierSummary.model_validate(result["courier"])
            if result["courier"] is not None
            else None
        ),
        message=result["message"],
    )


@router.post(
    "/{delivery_id}/fail",
    response_model=DeliveryResponse,
    summary="Mark delivery as failed",
    description="Any non-terminal state -> failed; the order returns to the pending pool",
)
async def fail_delivery(
    delivery_id: UUID,
    payload: DeliveryFailRequest,
    actor: CurrentActor,
    db: DatabaseSession,
) -> DeliveryResponse:
    record = await DeliveryService(db).fail(
        delivery_id, actor, reason=payload.reason, detail=payload.detail
    )
    return DeliveryResponse.model_validate(record)
