"""Bidding, assignment and quote models.

A bidding is a repair-quote request. The distributor writes one assignment
row per eligible shop; shops answer with at most one quote each.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column

from repair_engine.stores.postgres import Base


class BiddingStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class QuoteStatus(str, Enum):
    ACTIVE = "active"
    ACCEPTED = "accepted"
    INVALIDATED = "invalidated"


class Bidding(Base):
    """Repair-quote request created by a vehicle owner."""

    __tablename__ = "biddings"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)

    # Validated VehicleInfo payload; never updated after insert.
    vehicle_info: Mapped[dict[str, Any]] = mapped_column(JSON)
    # Free-text repair line names (from the owner or the damage analysis).
    repair_items: Mapped[list[str]] = mapped_column(JSON, default=list)
    complexity_level: Mapped[str] = mapped_column(String(2), default="L2")
    is_insurance_accident: Mapped[bool] = mapped_column(default=False)

    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    range_km: Mapped[float] = mapped_column(Float, default=5.0)

    status: Mapped[str] = mapped_column(String(20), default=BiddingStatus.OPEN.value, index=True)
    selected_shop_id: Mapped[int | None] = mapped_column(ForeignKey("shops.id"))

    tier1_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    distributed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    config_version: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class BiddingAssignment(Base):
    """Visibility tier of a shop for a bidding."""

    __tablename__ = "bidding_assignments"
    __table_args__ = (UniqueConstraint("bidding_id", "shop_id", name="uq_bidding_assignment"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    bidding_id: Mapped[int] = mapped_column(ForeignKey("biddings.id"), index=True)
    shop_id: Mapped[int] = mapped_column(ForeignKey("shops.id"), index=True)
    tier: Mapped[int] = mapped_column(Integer)
    match_score: Mapped[float] = mapped_column(Float)
    # False outside the per-level notification caps: the shop may quote but is never messaged.
    notify: Mapped[bool] = mapped_column(Boolean, default=True, server_default=true())
    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Quote(Base):
    """A shop's answer to a bidding."""

    __tablename__ = "quotes"
    __table_args__ = (UniqueConstraint("bidding_id", "shop_id", name="uq_quote_bidding_shop"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    bidding_id: Mapped[int] = mapped_column(ForeignKey("biddings.id"), index=True)
    shop_id: Mapped[int] = mapped_column(ForeignKey("shops.id"), index=True)

    amount: Mapped[float] = mapped_column(Float)
    # List of validated QuoteItem payloads.
    items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    duration_days: Mapped[int | None] = mapped_column(Integer)
    warranty_months: Mapped[int | None] = mapped_column(Integer)
    remark: Mapped[str | None] = mapped_column(Text)

    status: Mapped[str] = mapped_column(String(20), default=QuoteStatus.ACTIVE.value, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
