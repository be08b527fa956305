"""Settlement queue, transaction ledger and run log."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from repair_engine.stores.postgres import Base


class TransactionType(str, Enum):
    REBATE = "rebate"  # immediate review reward (main stage)
    STAGE_RELEASE = "stage_release"  # 1m / 3m follow-up stage
    UPGRADE_DIFF = "upgrade_diff"
    LIKE_BONUS = "like_bonus"
    CONVERSION_BONUS = "conversion_bonus"
    POST_VERIFY_BONUS = "post_verify_bonus"


# Types counted, before tax, against the per-review cap (share of order commission).
CAPPED_BONUS_TYPES: tuple[str, ...] = (
    TransactionType.REBATE.value,
    TransactionType.STAGE_RELEASE.value,
    TransactionType.UPGRADE_DIFF.value,
    TransactionType.LIKE_BONUS.value,
)


class SettlementPendingEntry(Base):
    """A bonus computed once, paid at most once (settled_at)."""

    __tablename__ = "settlement_pending_entries"

    id: Mapped[int] = mapped_column(primary_key=True)
    # e.g. "upgrade_diff:12:2", "conversion:88:12", "stage:12:1m"
    idempotency_key: Mapped[str] = mapped_column(String(120), unique=True)
    bonus_type: Mapped[str] = mapped_column(String(30), index=True)

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    review_id: Mapped[int | None] = mapped_column(ForeignKey("reviews.id"), index=True)
    order_id: Mapped[int | None] = mapped_column(ForeignKey("orders.id"), index=True)

    amount_before_tax: Mapped[float] = mapped_column(Float)
    tax_deducted: Mapped[float] = mapped_column(Float, default=0.0)
    amount_after_tax: Mapped[float] = mapped_column(Float)
    trigger_month: Mapped[str] = mapped_column(String(7), index=True)
    calc_reason: Mapped[str | None] = mapped_column(Text)
    config_version: Mapped[int] = mapped_column(Integer, default=0)

    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    transaction_id: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TransactionRecord(Base):
    """Append-only ledger of balance-affecting events."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    type: Mapped[str] = mapped_column(String(30), index=True)
    amount: Mapped[float] = mapped_column(Float)
    tax_deducted: Mapped[float] = mapped_column(Float, default=0.0)
    review_id: Mapped[int | None] = mapped_column(ForeignKey("reviews.id"), index=True)
    order_id: Mapped[int | None] = mapped_column(ForeignKey("orders.id"), index=True)
    settlement_month: Mapped[str | None] = mapped_column(String(7), index=True)
    description: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SettlementLog(Base):
    """One row per settlement run."""

    __tablename__ = "settlement_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[str] = mapped_column(String(36), unique=True)
    settlement_month: Mapped[str] = mapped_column(String(7), index=True)
    status: Mapped[str] = mapped_column(String(20))  # completed | partial
    summary: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    errors: Mapped[list[str]] = mapped_column(JSON, default=list)
    config_version: Mapped[int] = mapped_column(Integer, default=0)
    run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
