"""
Booking Generator — materialize one occurrence of a subscription.

For every configured slot:
  1. Start from the slot label, end = start + the field's full session
  2. Check availability (the subscription itself and its own customer's
     locks do not count as conflicts)
  3. Conflict → skip just that slot
  4. Otherwise price it, number it and insert a confirmed, paid booking

Slots are decided independently; there is no rollback across slots.
"""

import logging
import uuid
from datetime import date, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from models.booking import Booking
from models.field import Field
from services.availability import is_available
from services.counters import next_booking_number
from services.errors import NotFoundError
from services.optimistic import load_subscription, update_subscription
from services.pricing import calculate_slot_price
from services.slot_locks import normalize_date
from services.time_of_day import slot_window

logger = logging.getLogger(__name__)


async def generate(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    occurrence_date: date | datetime,
    payment_ref: str | None = None,
    now: datetime | None = None,
) -> list[Booking] | None:
    """
    Create the bookings for ``occurrence_date``.

    Does not commit; the caller owns the unit of work.

    Returns:
        The created bookings, or None when every slot conflicted.
    """
    subscription = await load_subscription(db, subscription_id)
    field = await db.get(Field, subscription.field_id)
    if field is None:
        raise NotFoundError(f"Field {subscription.field_id} not found")

    day = normalize_date(occurrence_date)
    created: list[Booking] = []

    for slot_label in subscription.time_slots or []:
        try:
            start, end = slot_window(slot_label, field.session_minutes)
        except ValueError:
            logger.warning(
                "Subscription %s: unparseable slot %r skipped", subscription.id, slot_label
            )
            continue

        availability = await is_available(
            db,
            field.id,
            day,
            start,
            end,
            exclude_subscription_id=subscription.id,
            holder_id=subscription.user_id,
            now=now,
        )
        if not availability.available:
            logger.info(
                "Subscription %s: slot %s on %s skipped (%s: %s)",
                subscription.id, slot_label, day,
                availability.conflict_type, availability.reason,
            )
            continue

        price = calculate_slot_price(
            field.price_per_unit,
            field.booking_duration,
            start.minutes,
            end.minutes,
            subscription.number_of_dogs,
        )
        booking = Booking(
            booking_number=await next_booking_number(db),
            field_id=field.id,
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            date=day,
            start_minute=start.minutes,
            end_minute=end.minutes,
            time_slot=slot_label,
            number_of_dogs=subscription.number_of_dogs,
            total_price=price.total_price,
            platform_commission=price.platform_commission,
            field_owner_amount=price.field_owner_amount,
            status="confirmed",
            payment_status="paid",
            payment_ref=payment_ref,
        )
        db.add(booking)
        await db.flush()
        created.append(booking)
        logger.info(
            "Booking #%s created for subscription %s: %s %s-%s",
            booking.booking_number, subscription.id, day, start.label, end.label,
        )

    await update_subscription(db, subscription.id, lambda s: {"last_booking_date": day})

    if not created:
        logger.warning(
            "Occurrence %s skipped for subscription %s: every slot is taken",
            day, subscription.id,
        )
        return None
    return created
