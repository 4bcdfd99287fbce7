"""Field ORM model — the bookable fenced resource."""

import uuid
from datetime import datetime
from sqlalchemy import String, Numeric, Boolean, DateTime, ForeignKey, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship
from db.database import Base, utcnow


class Field(Base):
    __tablename__ = "fields"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID | None] = mapped_column(ForeignKey("users.id"))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price_per_unit: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)
    booking_duration: Mapped[str] = mapped_column(
        SAEnum("30min", "60min", name="booking_duration", native_enum=False),
        default="60min",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    # Relationships
    owner = relationship("User", lazy="selectin")

    @property
    def session_minutes(self) -> int:
        return 30 if self.booking_duration == "30min" else 60
