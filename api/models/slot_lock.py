"""SlotLock ORM model — short-lived hold on a slot during checkout."""

import uuid
import datetime as dt
from sqlalchemy import Integer, Date, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column
from db.database import Base, utcnow


class SlotLock(Base):
    __tablename__ = "slot_locks"
    __table_args__ = (
        UniqueConstraint("field_id", "date", "start_minute", name="uq_slot_lock_slot"),
        Index("ix_slot_locks_expires_at", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    field_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("fields.id"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    start_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    end_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    holder_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    expires_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)
