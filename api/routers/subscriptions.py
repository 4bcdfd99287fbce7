"""
Recurring booking endpoints — create, cancel, refund a single occurrence.
"""

import logging
import uuid

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from schemas import (
    BookingResponse,
    RefundRequest,
    RefundResponse,
    SubscriptionCancelRequest,
    SubscriptionCreate,
    SubscriptionCreateResponse,
    SubscriptionResponse,
)
from services.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_subscription_service(request: Request) -> SubscriptionService:
    return request.app.state.subscription_service


@router.post("", response_model=SubscriptionCreateResponse, status_code=201)
async def create_subscription(
    data: SubscriptionCreate,
    db: AsyncSession = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Register a recurring plan and book the first occurrence."""
    created = await service.create_subscription(
        db,
        user_id=data.user_id,
        field_id=data.field_id,
        interval=data.interval.value,
        time_slots=data.time_slots,
        start_date=data.start_date,
        number_of_dogs=data.number_of_dogs,
        payment_method_id=data.payment_method_id,
        single_payment_ref=data.single_payment_ref,
    )
    return SubscriptionCreateResponse(
        subscription=SubscriptionResponse.model_validate(created.subscription),
        bookings=[BookingResponse.model_validate(b) for b in created.bookings],
    )


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: uuid.UUID,
    data: SubscriptionCancelRequest,
    db: AsyncSession = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
):
    subscription = await service.cancel_subscription(
        db, subscription_id, immediate=data.immediate, reason=data.reason
    )
    return SubscriptionResponse.model_validate(subscription)


@router.post("/bookings/{booking_id}/refund", response_model=RefundResponse)
async def refund_occurrence(
    booking_id: uuid.UUID,
    data: RefundRequest,
    db: AsyncSession = Depends(get_db),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Refund one booking of a subscription; the subscription itself is untouched."""
    result = await service.refund_occurrence(db, booking_id, data.reason)
    return RefundResponse(
        booking_id=result.booking_id,
        refund_amount=result.refund_amount,
        payment_ref=result.payment_ref,
        refund_ref=result.refund_ref,
    )
