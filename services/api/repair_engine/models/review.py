"""Review, reading-session and like models."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from repair_engine.stores.postgres import Base


class ReviewStatus(str, Enum):
    VISIBLE = "visible"
    HIDDEN = "hidden"


class LikeType(str, Enum):
    NORMAL = "normal"
    POST_VERIFY = "post_verify"


# Content quality levels.
QUALITY_INVALID = 0
QUALITY_VALID = 1
QUALITY_PREMIUM = 2
QUALITY_BENCHMARK = 3
QUALITY_VIRAL = 4


class Review(Base):
    """Post-completion review. One per order."""

    __tablename__ = "reviews"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id"), unique=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    shop_id: Mapped[int] = mapped_column(ForeignKey("shops.id"), index=True)

    rating: Mapped[float] = mapped_column(Float)
    content: Mapped[str] = mapped_column(Text, default="")
    # Validated EvidenceBundle payload.
    evidence: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    is_negative: Mapped[bool] = mapped_column(default=False)
    is_valid: Mapped[bool] = mapped_column(default=True)
    is_premium: Mapped[bool] = mapped_column(default=False)
    content_quality_level: Mapped[int] = mapped_column(Integer, default=QUALITY_VALID)
    status: Mapped[str] = mapped_column(String(20), default=ReviewStatus.VISIBLE.value, index=True)
    # Merchant appeal on "fault resolved" upheld: excluded from scoring entirely.
    fault_appeal_upheld: Mapped[bool] = mapped_column(default=False)

    # Frozen scoring weight (without time decay). Written once.
    weight: Mapped[float | None] = mapped_column(Float)
    weight_frozen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    reward_pre: Mapped[float] = mapped_column(Float, default=0.0)
    reward_paid: Mapped[float] = mapped_column(Float, default=0.0)
    config_version: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)


class ReadingSession(Base):
    """Effective seconds a reader spent on a review in one viewing session."""

    __tablename__ = "reading_sessions"

    id: Mapped[int] = mapped_column(primary_key=True)
    review_id: Mapped[int] = mapped_column(ForeignKey("reviews.id"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    effective_seconds: Mapped[int] = mapped_column(Integer, default=0)
    saw_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)


class ReviewLike(Base):
    """At most one like per (user, review) for the lifetime of the account."""

    __tablename__ = "review_likes"
    __table_args__ = (UniqueConstraint("review_id", "user_id", name="uq_review_like_user"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    review_id: Mapped[int] = mapped_column(ForeignKey("reviews.id"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)

    like_type: Mapped[str] = mapped_column(String(20), default=LikeType.NORMAL.value)
    is_valid_for_bonus: Mapped[bool] = mapped_column(default=False)
    weight_coefficient: Mapped[float] = mapped_column(Float, default=0.0)
    reading_seconds: Mapped[int] = mapped_column(Integer, default=0)
    is_vehicle_match: Mapped[bool] = mapped_column(default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
