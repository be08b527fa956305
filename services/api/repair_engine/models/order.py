"""Order model.

Created from an accepted quote. Carries the reward preview snapshot
computed at selection time; the snapshot is never recomputed.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from repair_engine.stores.postgres import Base


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True)
    bidding_id: Mapped[int] = mapped_column(ForeignKey("biddings.id"), index=True)
    quote_id: Mapped[int] = mapped_column(ForeignKey("quotes.id"), unique=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    shop_id: Mapped[int] = mapped_column(ForeignKey("shops.id"), index=True)

    quoted_amount: Mapped[float] = mapped_column(Float)
    actual_amount: Mapped[float | None] = mapped_column(Float)

    complexity_level: Mapped[str] = mapped_column(String(2))
    vehicle_price_tier: Mapped[str] = mapped_column(String(10))
    order_tier: Mapped[int] = mapped_column(Integer)
    commission_rate: Mapped[float] = mapped_column(Float)
    commission_amount: Mapped[float] = mapped_column(Float)
    is_insurance_accident: Mapped[bool] = mapped_column(default=False)
    # Escalated to L4 through the upgrade workflow (disables the low-vehicle amplifier).
    is_upgraded: Mapped[bool] = mapped_column(default=False)
    reward_preview: Mapped[dict[str, Any]] = mapped_column(JSON)

    status: Mapped[str] = mapped_column(String(30), default=OrderStatus.PENDING.value, index=True)
    config_version: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)

    @property
    def settlement_amount(self) -> float:
        """Amount used for commission math (actual if known, else quoted)."""
        return float(self.actual_amount if self.actual_amount is not None else self.quoted_amount)
