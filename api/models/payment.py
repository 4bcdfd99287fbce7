"""Payment, Payout and Transaction ORM models — money movement per booking."""

import uuid
from datetime import datetime
from sqlalchemy import String, Numeric, DateTime, ForeignKey, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column
from db.database import Base, utcnow


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("bookings.id"), unique=True, nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    amount: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="gbp")
    status: Mapped[str] = mapped_column(String(20), default="completed")  # completed, refunded
    payment_ref: Mapped[str | None] = mapped_column(String(255))
    refund_ref: Mapped[str | None] = mapped_column(String(255))
    refund_amount: Mapped[float | None] = mapped_column(Numeric(10, 2, asdecimal=False))
    refund_reason: Mapped[str | None] = mapped_column(Text)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Payout(Base):
    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    booking_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    amount: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, paid, canceled
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    booking_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("bookings.id"), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # CHARGE, REFUND
    status: Mapped[str] = mapped_column(String(20), default="COMPLETED")
    amount: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)
    net_amount: Mapped[float | None] = mapped_column(Numeric(10, 2, asdecimal=False))
    platform_fee: Mapped[float | None] = mapped_column(Numeric(10, 2, asdecimal=False))
    commission_rate: Mapped[float | None] = mapped_column(Numeric(5, 2, asdecimal=False))
    payment_ref: Mapped[str | None] = mapped_column(String(255))
    refund_ref: Mapped[str | None] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
