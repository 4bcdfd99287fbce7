"""
Slot lock endpoints — hold a slot while the customer completes payment.
"""

import logging
import uuid
from datetime import date

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from models.field import Field
from schemas import (
    ActiveLockResponse,
    SlotLockRelease,
    SlotLockReleaseResponse,
    SlotLockRequest,
    SlotLockResponse,
)
from services import slot_locks
from services.errors import NotFoundError, SlotConflictError, ValidationError
from services.time_of_day import TimeOfDay, slot_window

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=SlotLockResponse)
async def acquire_lock(data: SlotLockRequest, db: AsyncSession = Depends(get_db)):
    """Lock a slot for ``holder_id``. 409 if someone else holds or booked it."""
    field = await db.get(Field, data.field_id)
    if field is None:
        raise NotFoundError(f"Field {data.field_id} not found")

    try:
        start, end = slot_window(data.start_time, field.session_minutes)
        if data.end_time:
            end = TimeOfDay.parse(data.end_time)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    if end <= start:
        raise ValidationError("end_time must be after start_time")

    result = await slot_locks.acquire(db, field.id, data.date, start, end, data.holder_id)
    if not result.ok:
        raise SlotConflictError(
            f"Slot {start.label} on {data.date} is not available",
            details={"conflict_holder_id": str(result.conflict_holder_id) if result.conflict_holder_id else None},
        )
    return SlotLockResponse(ok=True, expires_at=result.expires_at)


@router.delete("", response_model=SlotLockReleaseResponse)
async def release_locks(data: SlotLockRelease, db: AsyncSession = Depends(get_db)):
    released = await slot_locks.release(db, data.holder_id, data.field_id, data.date)
    return SlotLockReleaseResponse(released=released)


@router.get("/{field_id}/{lock_date}", response_model=list[ActiveLockResponse])
async def list_locks(field_id: uuid.UUID, lock_date: date, db: AsyncSession = Depends(get_db)):
    locks = await slot_locks.list_active(db, field_id, lock_date)
    return [ActiveLockResponse.model_validate(lock) for lock in locks]
