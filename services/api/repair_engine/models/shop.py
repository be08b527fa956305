"""Shop models.

Repair shops with qualification, compliance metrics and the aggregate
reputation score maintained by the shop scorer.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from repair_engine.stores.postgres import Base


class ShopStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class QualificationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Shop(Base):
    """Repair shop."""

    __tablename__ = "shops"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(200), index=True)

    status: Mapped[str] = mapped_column(String(20), default=ShopStatus.ACTIVE.value, index=True)
    qualification_status: Mapped[str] = mapped_column(String(20), default=QualificationStatus.PENDING.value)
    # 1 = top class, 2 = second, 3 = third; None while unaudited.
    qualification_class: Mapped[int | None] = mapped_column(Integer)
    # 4S dealer / OEM certified.
    is_brand_certified: Mapped[bool] = mapped_column(default=False)
    # Declared service categories, e.g. ["钣金", "喷漆"].
    service_categories: Mapped[list[str] | None] = mapped_column(JSON)

    latitude: Mapped[float | None] = mapped_column(Float)
    longitude: Mapped[float | None] = mapped_column(Float)

    # Percentages 0-100; None when no history yet.
    compliance_rate: Mapped[float | None] = mapped_column(Float)
    complaint_rate: Mapped[float | None] = mapped_column(Float)
    deviation_rate: Mapped[float | None] = mapped_column(Float)
    avg_response_minutes: Mapped[float | None] = mapped_column(Float)

    shop_score: Mapped[float | None] = mapped_column(Float)
    rating: Mapped[float | None] = mapped_column(Float)
    total_orders: Mapped[int] = mapped_column(Integer, default=0)

    # Optimistic concurrency for score writes.
    version: Mapped[int] = mapped_column(Integer, default=0, server_default="0")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Shop {self.id} {self.name} score={self.shop_score}>"


class ShopViolation(Base):
    """Recorded rule violation; severity 4 is the most serious."""

    __tablename__ = "shop_violations"

    id: Mapped[int] = mapped_column(primary_key=True)
    shop_id: Mapped[int] = mapped_column(ForeignKey("shops.id"), index=True)
    severity: Mapped[int] = mapped_column(Integer)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
