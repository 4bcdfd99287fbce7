"""
Slot Lock Store — short-lived holds on a slot while a payment is in flight.

Rules:
  - One lock per (field, date, start time); dates are stored as calendar days
  - A holder may always refresh or replace their own lock
  - A different holder is rejected while a non-expired lock exists
  - A slot already covered by a live booking cannot be locked at all
  - Expired locks are ignored by every check and purged by sweep()

The booking row stays the system of record; a lock only narrows the window
between "customer picked a slot" and "payment confirmed".
"""

from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import Date, DateTime, Integer, Uuid, and_, delete, literal, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db.database import utcnow
from models.booking import Booking
from models.slot_lock import SlotLock
from services.time_of_day import TimeOfDay

logger = logging.getLogger(__name__)


@dataclass
class LockResult:
    ok: bool
    conflict_holder_id: uuid.UUID | None = None
    expires_at: datetime | None = None


@dataclass
class LockProbe:
    locked: bool
    by_whom: uuid.UUID | None = None


@dataclass
class ActiveLock:
    start_time: str
    end_time: str
    holder_id: uuid.UUID
    expires_at: datetime


def normalize_date(value: date | datetime) -> date:
    """Locks are keyed on the calendar day; drop any time component."""
    if isinstance(value, datetime):
        return value.date()
    return value


def _insert_for(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Slot lock upsert not supported on {dialect}")


def _live_booking_overlap(field_id: uuid.UUID, day: date, start: int, end: int):
    return select(Booking.id, Booking.user_id).where(
        Booking.field_id == field_id,
        Booking.date == day,
        Booking.status != "cancelled",
        Booking.start_minute < end,
        Booking.end_minute > start,
    )


async def acquire(
    db: AsyncSession,
    field_id: uuid.UUID,
    day: date | datetime,
    start: TimeOfDay,
    end: TimeOfDay,
    holder_id: uuid.UUID,
    ttl: timedelta | None = None,
    now: datetime | None = None,
) -> LockResult:
    """
    Claim a slot for holder_id with one conditional write.

    INSERT ... SELECT ... WHERE NOT EXISTS (overlapping booking)
    ON CONFLICT (slot) DO UPDATE ... WHERE same holder OR lock expired
    RETURNING id

    No returned row means another holder (or a booking) owns the slot.
    """
    now = now or utcnow()
    ttl = ttl or timedelta(minutes=settings.slot_lock_ttl_minutes)
    day = normalize_date(day)
    expires_at = now + ttl

    insert = _insert_for(db)
    row = select(
        literal(uuid.uuid4(), Uuid()),
        literal(field_id, Uuid()),
        literal(day, Date()),
        literal(start.minutes, Integer()),
        literal(end.minutes, Integer()),
        literal(holder_id, Uuid()),
        literal(expires_at, DateTime()),
        literal(now, DateTime()),
    ).where(~_live_booking_overlap(field_id, day, start.minutes, end.minutes).exists())

    stmt = insert(SlotLock).from_select(
        ["id", "field_id", "date", "start_minute", "end_minute", "holder_id", "expires_at", "created_at"],
        row,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[SlotLock.field_id, SlotLock.date, SlotLock.start_minute],
        set_={
            "end_minute": stmt.excluded.end_minute,
            "holder_id": stmt.excluded.holder_id,
            "expires_at": stmt.excluded.expires_at,
        },
        where=or_(
            SlotLock.holder_id == stmt.excluded.holder_id,
            SlotLock.expires_at <= now,
        ),
    ).returning(SlotLock.id)

    claimed = (await db.execute(stmt)).scalar_one_or_none()
    await db.commit()

    if claimed is not None:
        logger.info(
            "Slot lock acquired: field=%s date=%s start=%s holder=%s until=%s",
            field_id, day, start.label, holder_id, expires_at,
        )
        return LockResult(ok=True, expires_at=expires_at)

    probe = await is_locked_by_other(db, field_id, day, start, holder_id, now=now)
    conflict_holder = probe.by_whom
    if conflict_holder is None:
        booking_row = (
            await db.execute(_live_booking_overlap(field_id, day, start.minutes, end.minutes).limit(1))
        ).first()
        conflict_holder = booking_row.user_id if booking_row else None

    logger.info(
        "Slot lock rejected: field=%s date=%s start=%s holder=%s conflict=%s",
        field_id, day, start.label, holder_id, conflict_holder,
    )
    return LockResult(ok=False, conflict_holder_id=conflict_holder)


async def release(
    db: AsyncSession,
    holder_id: uuid.UUID,
    field_id: uuid.UUID,
    day: date | datetime,
) -> int:
    """Drop every lock this holder has on the field for the day. Idempotent."""
    day = normalize_date(day)
    result = await db.execute(
        delete(SlotLock).where(
            SlotLock.holder_id == holder_id,
            SlotLock.field_id == field_id,
            SlotLock.date == day,
        )
    )
    await db.commit()
    if result.rowcount:
        logger.info(
            "Released %d slot locks for holder %s on field %s (%s)",
            result.rowcount, holder_id, field_id, day,
        )
    return result.rowcount or 0


async def is_locked_by_other(
    db: AsyncSession,
    field_id: uuid.UUID,
    day: date | datetime,
    start: TimeOfDay,
    exclude_holder_id: uuid.UUID | None,
    now: datetime | None = None,
) -> LockProbe:
    """Read-only probe: is there a live lock on this slot held by someone else?"""
    now = now or utcnow()
    conditions = [
        SlotLock.field_id == field_id,
        SlotLock.date == normalize_date(day),
        SlotLock.start_minute == start.minutes,
        SlotLock.expires_at > now,
    ]
    if exclude_holder_id is not None:
        conditions.append(SlotLock.holder_id != exclude_holder_id)

    holder = (
        await db.execute(select(SlotLock.holder_id).where(and_(*conditions)).limit(1))
    ).scalar_one_or_none()
    return LockProbe(locked=holder is not None, by_whom=holder)


async def list_active(
    db: AsyncSession,
    field_id: uuid.UUID,
    day: date | datetime,
    now: datetime | None = None,
) -> list[ActiveLock]:
    now = now or utcnow()
    result = await db.execute(
        select(SlotLock)
        .where(
            SlotLock.field_id == field_id,
            SlotLock.date == normalize_date(day),
            SlotLock.expires_at > now,
        )
        .order_by(SlotLock.start_minute)
    )
    return [
        ActiveLock(
            start_time=TimeOfDay(lock.start_minute).label,
            end_time=TimeOfDay(lock.end_minute).label,
            holder_id=lock.holder_id,
            expires_at=lock.expires_at,
        )
        for lock in result.scalars().all()
    ]


async def sweep(db: AsyncSession, now: datetime | None = None) -> int:
    """Delete locks whose expires_at is already in the past. Safe to rerun."""
    now = now or utcnow()
    result = await db.execute(delete(SlotLock).where(SlotLock.expires_at < now))
    await db.commit()
    count = result.rowcount or 0
    if count:
        logger.info("Swept %d expired slot locks", count)
    return count
