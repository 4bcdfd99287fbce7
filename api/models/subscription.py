"""Subscription ORM model — standing agreement to auto-book a field slot."""

import uuid
from datetime import date, datetime
from sqlalchemy import (
    String, Integer, Numeric, Boolean, Date, DateTime, ForeignKey, Text, JSON,
    Enum as SAEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from db.database import Base, utcnow


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    field_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("fields.id"), nullable=False)

    # Gateway plan reference: a native recurring plan, or a one-off payment
    plan_kind: Mapped[str] = mapped_column(
        SAEnum("recurring", "single_payment", name="plan_kind", native_enum=False),
        default="recurring",
    )
    external_ref: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    gateway_customer_id: Mapped[str | None] = mapped_column(String(255))

    # Schedule
    interval: Mapped[str] = mapped_column(
        SAEnum("daily", "weekly", "monthly", name="subscription_interval", native_enum=False),
        nullable=False,
    )
    time_slots: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    number_of_dogs: Mapped[int] = mapped_column(Integer, default=1)
    total_price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)
    anchor_date: Mapped[date] = mapped_column(Date, nullable=False)
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        SAEnum("active", "past_due", "canceled", name="subscription_status", native_enum=False),
        default="active",
    )
    payment_retry_count: Mapped[int] = mapped_column(Integer, default=0)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_payment_attempt_at: Mapped[datetime | None] = mapped_column(DateTime)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    last_booking_date: Mapped[date | None] = mapped_column(Date)
    pending_occurrence_date: Mapped[date | None] = mapped_column(Date)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime)
    cancellation_reason: Mapped[str | None] = mapped_column(Text)

    # Optimistic concurrency: every write is conditioned on the version it read
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    user = relationship("User", back_populates="subscriptions", lazy="selectin")
    field = relationship("Field", lazy="selectin")
    bookings = relationship("Booking", back_populates="subscription", lazy="raise")
