"""
Availability Checker — can this window on this field be booked?

Checks run in order and the first failure wins:
  1. booking  : a booking that is not cancelled overlaps the window
  2. lock     : someone else holds a slot lock on the start time
  3. recurring: another active subscription lands on this date and overlaps
"""

from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.booking import Booking
from models.field import Field
from models.subscription import Subscription
from services import slot_locks
from services.cadence import occurs_on
from services.time_of_day import TimeOfDay, overlaps, slot_window

logger = logging.getLogger(__name__)


@dataclass
class Availability:
    available: bool
    reason: str | None = None
    conflict_type: str | None = None  # booking, lock, recurring


async def is_available(
    db: AsyncSession,
    field_id: uuid.UUID,
    day: date | datetime,
    start: TimeOfDay,
    end: TimeOfDay,
    exclude_booking_id: uuid.UUID | None = None,
    exclude_subscription_id: uuid.UUID | None = None,
    holder_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> Availability:
    day = slot_locks.normalize_date(day)

    # 1. Bookings, completed ones included
    query = select(Booking).where(
        Booking.field_id == field_id,
        Booking.date == day,
        Booking.status != "cancelled",
        Booking.start_minute < end.minutes,
        Booking.end_minute > start.minutes,
    )
    if exclude_booking_id is not None:
        query = query.where(Booking.id != exclude_booking_id)
    clash = (await db.execute(query.limit(1))).scalar_one_or_none()
    if clash is not None:
        return Availability(
            available=False,
            reason=f"Booked {clash.start_time} - {clash.end_time} (#{clash.booking_number})",
            conflict_type="booking",
        )

    # 2. Slot locks held by someone else
    probe = await slot_locks.is_locked_by_other(db, field_id, day, start, holder_id, now=now)
    if probe.locked:
        return Availability(
            available=False,
            reason=f"Slot {start.label} is being booked by another customer",
            conflict_type="lock",
        )

    # 3. Other recurring agreements on this field
    query = select(Subscription).where(
        Subscription.field_id == field_id,
        Subscription.status == "active",
        Subscription.cancel_at_period_end.is_(False),
    )
    if exclude_subscription_id is not None:
        query = query.where(Subscription.id != exclude_subscription_id)
    subscriptions = (await db.execute(query)).scalars().all()

    if not subscriptions:
        return Availability(available=True)

    field = await db.get(Field, field_id)
    session_minutes = field.session_minutes if field else 60

    for subscription in subscriptions:
        if not occurs_on(subscription.interval, subscription.anchor_date, day):
            continue
        for slot_label in subscription.time_slots or []:
            try:
                sub_start, sub_end = slot_window(slot_label, session_minutes)
            except ValueError:
                logger.warning(
                    "Subscription %s has unparseable slot %r", subscription.id, slot_label
                )
                continue
            if overlaps(start.minutes, end.minutes, sub_start.minutes, sub_end.minutes):
                return Availability(
                    available=False,
                    reason=f"Reserved by a {subscription.interval} recurring booking at {slot_label}",
                    conflict_type="recurring",
                )

    return Availability(available=True)
