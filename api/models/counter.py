"""Counter ORM model — named monotonic sequences for human-readable IDs."""

from sqlalchemy import String, Integer
from sqlalchemy.orm import Mapped, mapped_column
from db.database import Base


class Counter(Base):
    __tablename__ = "counters"

    name: Mapped[str] = mapped_column(String(50), primary_key=True)
    value: Mapped[int] = mapped_column(Integer, nullable=False)
