"""Pydantic schemas for API request/response models."""

from __future__ import annotations
import uuid
import datetime as dt
from enum import Enum
from pydantic import BaseModel, Field


# ── Enums ──────────────────────────────────────────────────

class Interval(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


# ── Booking Schemas ────────────────────────────────────────

class BookingResponse(BaseModel):
    id: uuid.UUID
    booking_number: str
    field_id: uuid.UUID
    user_id: uuid.UUID
    subscription_id: uuid.UUID | None
    date: dt.date
    start_time: str
    end_time: str
    time_slot: str | None
    number_of_dogs: int
    total_price: float
    platform_commission: float
    field_owner_amount: float
    status: str
    payment_status: str

    class Config:
        from_attributes = True


# ── Subscription Schemas ───────────────────────────────────

class SubscriptionCreate(BaseModel):
    user_id: uuid.UUID
    field_id: uuid.UUID
    interval: Interval
    time_slots: list[str] = Field(..., min_length=1)
    start_date: dt.date
    number_of_dogs: int = Field(1, ge=1)
    payment_method_id: str | None = None
    single_payment_ref: str | None = None


class SubscriptionResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    field_id: uuid.UUID
    plan_kind: str
    external_ref: str
    interval: str
    time_slots: list[str]
    number_of_dogs: int
    total_price: float
    anchor_date: dt.date
    status: SubscriptionStatus
    payment_retry_count: int
    next_retry_at: dt.datetime | None
    failure_reason: str | None
    last_booking_date: dt.date | None
    pending_occurrence_date: dt.date | None
    cancel_at_period_end: bool
    canceled_at: dt.datetime | None
    created_at: dt.datetime

    class Config:
        from_attributes = True


class SubscriptionCreateResponse(BaseModel):
    subscription: SubscriptionResponse
    bookings: list[BookingResponse]


class SubscriptionCancelRequest(BaseModel):
    immediate: bool = False
    reason: str | None = None


class RefundRequest(BaseModel):
    reason: str = Field("Cancelled by customer", max_length=500)


class RefundResponse(BaseModel):
    booking_id: uuid.UUID
    refund_amount: float
    payment_ref: str | None
    refund_ref: str | None


# ── Slot Lock Schemas ──────────────────────────────────────

class SlotLockRequest(BaseModel):
    field_id: uuid.UUID
    date: dt.date
    start_time: str = Field(..., examples=["4:30PM"])
    end_time: str | None = None  # defaults to start + the field's session length
    holder_id: uuid.UUID


class SlotLockResponse(BaseModel):
    ok: bool
    expires_at: dt.datetime | None = None


class SlotLockRelease(BaseModel):
    field_id: uuid.UUID
    date: dt.date
    holder_id: uuid.UUID


class SlotLockReleaseResponse(BaseModel):
    released: int


class ActiveLockResponse(BaseModel):
    start_time: str
    end_time: str
    holder_id: uuid.UUID
    expires_at: dt.datetime

    class Config:
        from_attributes = True
