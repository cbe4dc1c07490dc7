"""
Order dispatch API endpoints: assignment, the dispatcher board, loading and
the in-process precondition checks.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query

from lastmile.api.deps import CurrentActor, DatabaseSession, ElevatedActor, Pagination
from lastmile.core.logging import get_logger
from lastmile.database.models import DeliveryState, OrderStatus
from lastmile.schemas.assignment import (
    AssignedOrderItem,
    AssignedOrderListResponse,
    AssignmentResponse,
    AssignOrderRequest,
)
from lastmile.schemas.common import PageMeta
from lastmile.schemas.couriers import CourierSummary
from lastmile.schemas.deliveries import DeliveryResponse
from lastmile.schemas.orders import OrderSummary, PreconditionsResponse
from lastmile.services.assignment.service import AssignmentService
from lastmile.services.orders.synchronizer import OrderSynchronizer

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.get(
    "/assigned",
    response_model=AssignedOrderListResponse,
    summary="Assignment board",
    description="Orders awaiting or under delivery that are not inside an active route",
)
async def list_assigned_orders(
    actor: ElevatedActor,
    db: DatabaseSession,
    page: Pagination,
    state: Optional[DeliveryState] = Query(None, description="Active delivery state"),
    courier_id: Optional[UUID] = Query(None),
    order_status: Optional[OrderStatus] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
) -> AssignedOrderListResponse:
    items, total = await AssignmentService(db).list_assigned_orders(
        state=state,
        courier_id=courier_id,
        order_status=order_status,
        date_from=date_from,
        date_to=date_to,
        limit=page.limit,
        offset=page.offset,
    )
    return AssignedOrderListResponse(
        items=[
            AssignedOrderItem(
                order=OrderSummary.model_validate(item["order"]),
                delivery=(
                    DeliveryResponse.model_validate(item["delivery"])
                    if item["delivery"] is not None
                    else None
                ),
                courier=(
                    CourierSummary.model_validate(item["courier"])
                    if item["courier"] is not None
                    else None
                ),
            )
            for item in items
        ],
        pagination=PageMeta.build(total, page.page, page.page_size),
    )


@router.post(
    "/{order_id}/assign",
    response_model=AssignmentResponse,
    summary="Assign order to courier",
    description=(
        "Idempotent for the courier already holding the order; taking the order "
        "from another courier requires reassignment_reason"
    ),
)
async def assign_order(
    order_id: UUID,
    payload: AssignOrderRequest,
    actor: ElevatedActor,
    db: DatabaseSession,
) -> AssignmentResponse:
    logger.info(
        "Assigning order",
        order_id=str(order_id),
        courier_id=str(payload.courier_id),
    )
    result = await AssignmentService(db).assign(
        order_id,
        payload.courier_id,
        actor,
        reassignment_reason=payload.reassignment_reason,
    )
    return AssignmentResponse(
        delivery=DeliveryResponse.model_validate(result["delivery"]),
        already_assigned=result["already_assigned"],
        reassigned=result["reassigned"],
        previous_delivery_id=result["previous_delivery_id"],
        preconditions=PreconditionsResponse(**result["preconditions"]),
    )


@router.post(
    "/{order_id}/loaded",
    response_model=PreconditionsResponse,
    summary="Mark order as loaded",
    description="Sets the loaded flag and promotes the order to in_process when every precondition holds",
)
async def mark_order_loaded(
    order_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> PreconditionsResponse:
    result = await OrderSynchronizer(db).mark_loaded(order_id)
    return PreconditionsResponse(**result)


@router.get(
    "/{order_id}/preconditions",
    response_model=PreconditionsResponse,
    summary="Check in-process preconditions",
)
async def check_preconditions(
    order_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> PreconditionsResponse:
    result = await OrderSynchronizer(db).check_preconditions(order_id)
    return PreconditionsResponse(**result)


@router.post(
    "/{order_id}/preconditions/verify",
    response_model=PreconditionsResponse,
    summary="Re-check preconditions and promote",
)
async def verify_preconditions(
    order_id: UUID,
    actor: ElevatedActor,
    db: DatabaseSession,
) -> PreconditionsResponse:
    result = await OrderSynchronizer(db).verify_and_promote(order_id)
    return PreconditionsResponse(**result)
