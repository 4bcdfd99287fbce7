"""Booking ORM model — one dated occupation of a field."""

import uuid
import datetime as dt
from sqlalchemy import (
    String, Integer, Numeric, Date, DateTime, ForeignKey, Text, Index,
    Enum as SAEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from db.database import Base, utcnow
from services.time_of_day import TimeOfDay


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_field_date", "field_id", "date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    booking_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    field_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("fields.id"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("subscriptions.id"))

    # When
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    start_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    end_minute: Mapped[int] = mapped_column(Integer, nullable=False)
    time_slot: Mapped[str | None] = mapped_column(String(50))
    number_of_dogs: Mapped[int] = mapped_column(Integer, default=1)

    # Pricing
    total_price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)
    platform_commission: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0.0)
    field_owner_amount: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0.0)

    # Status
    status: Mapped[str] = mapped_column(
        SAEnum("confirmed", "cancelled", "completed", name="booking_status", native_enum=False),
        default="confirmed",
    )
    payment_status: Mapped[str] = mapped_column(
        SAEnum("paid", "refunded", "cancelled", name="booking_payment_status", native_enum=False),
        default="paid",
    )
    payment_ref: Mapped[str | None] = mapped_column(String(255))
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    cancelled_at: Mapped[dt.datetime | None] = mapped_column(DateTime)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    subscription = relationship("Subscription", back_populates="bookings", lazy="selectin")
    field = relationship("Field", lazy="selectin")

    @property
    def start_time(self) -> str:
        return TimeOfDay(self.start_minute).label

    @property
    def end_time(self) -> str:
        return TimeOfDay(self.end_minute).label
