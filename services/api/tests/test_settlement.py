"""Tests for the ledger and the monthly settlement batch."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from repair_engine.models import (
    LikeType,
    Order,
    OrderStatus,
    ReadingSession,
    Review,
    ReviewLike,
    SettlementPendingEntry,
    TransactionRecord,
    TransactionType,
    User,
)
from repair_engine.services.engine_config import DEFAULT_CONFIG, DEFAULT_SNAPSHOT
from repair_engine.services.errors import ValidationFailed
from repair_engine.services.ledger import withholding_tax
from repair_engine.services.settlement import list_settlement_logs, release_due_stages, settle_month
from repair_engine.stores.postgres import get_session

NOW = datetime(2026, 10, 10, 2, 0, tzinfo=timezone.utc)
AUTHOR, LIKER = 1, 2


def test_withholding_tax():
    rules = DEFAULT_CONFIG.settlement
    assert withholding_tax(1000.0, rules) == (40.0, 960.0)
    assert withholding_tax(800.0, rules) == (0.0, 800.0)
    assert withholding_tax(-5.0, rules) == (0.0, 0.0)


def _pending(
    key: str, bonus_type: TransactionType, amount: float, month: str, order_id: int = 1
) -> SettlementPendingEntry:
    return SettlementPendingEntry(
        idempotency_key=key,
        bonus_type=bonus_type.value,
        user_id=AUTHOR,
        review_id=1,
        order_id=order_id,
        amount_before_tax=amount,
        tax_deducted=0.0,
        amount_after_tax=amount,
        trigger_month=month,
    )


async def _seed_month() -> None:
    async with get_session() as session:
        session.add(User(id=AUTHOR, phone="13800000001"))
        session.add(User(id=LIKER, phone="13800000002"))
        session.add(
            Order(
                id=1,
                bidding_id=1,
                quote_id=1,
                user_id=AUTHOR,
                shop_id=1,
                quoted_amount=3750.0,
                complexity_level="L2",
                vehicle_price_tier="mid",
                order_tier=2,
                commission_rate=0.08,
                commission_amount=300.0,
                reward_preview={},
                status=OrderStatus.COMPLETED.value,
                created_at=datetime(2026, 8, 1, tzinfo=timezone.utc),
                completed_at=datetime(2026, 8, 20, tzinfo=timezone.utc),
            )
        )
        session.add(Review(id=1, order_id=1, user_id=AUTHOR, shop_id=1, rating=5, content="喷漆均匀，没有色差"))
        session.add(
            ReviewLike(
                review_id=1,
                user_id=LIKER,
                is_valid_for_bonus=True,
                weight_coefficient=1.0,
                reading_seconds=60,
                created_at=datetime(2026, 9, 10, tzinfo=timezone.utc),
            )
        )
        session.add(_pending("upgrade_diff:1", TransactionType.UPGRADE_DIFF, 20.0, "2026-09"))


async def _balance(user_id: int) -> float:
    async with get_session() as session:
        user = await session.get(User, user_id)
        return user.balance


@pytest.mark.asyncio
async def test_settle_month_pays_once(db):
    await _seed_month()

    first = await settle_month("2026-09", DEFAULT_SNAPSHOT, now=NOW)
    assert first.status == "completed"
    assert first.upgrade_diff.amount == 20.0
    # 300 commission x 0.5% x weight 1.0
    assert first.like_bonus.amount == 1.5
    assert first.conversion_bonus.count == 0
    assert first.total_paid == 21.5
    assert await _balance(AUTHOR) == 21.5

    second = await settle_month("2026-09", DEFAULT_SNAPSHOT, now=NOW)
    assert second.total_paid == 0.0
    assert await _balance(AUTHOR) == 21.5

    async with get_session() as session:
        txns = (await session.execute(select(TransactionRecord).order_by(TransactionRecord.id))).scalars().all()
        logs = await list_settlement_logs(session)

    assert [(t.type, t.amount, t.settlement_month) for t in txns] == [
        ("upgrade_diff", 20.0, "2026-09"),
        ("like_bonus", 1.5, "2026-09"),
    ]
    assert len(logs) == 2
    assert logs[-1].summary["total_paid"] == 21.5


@pytest.mark.asyncio
async def test_dry_run_leaves_balances_untouched(db):
    await _seed_month()

    preview = await settle_month("2026-09", DEFAULT_SNAPSHOT, dry_run=True, now=NOW)
    assert preview.dry_run is True
    assert preview.total_paid == 21.5
    assert await _balance(AUTHOR) == 0.0

    async with get_session() as session:
        unsettled = (
            await session.execute(select(SettlementPendingEntry).where(SettlementPendingEntry.settled_at.is_(None)))
        ).scalars().all()
        assert len(unsettled) == 1
        assert await list_settlement_logs(session) == []


@pytest.mark.asyncio
async def test_like_bonus_respects_review_cap(db):
    await _seed_month()
    async with get_session() as session:
        # The review cap is 80% of the 300 commission; upgrades use 239 of it.
        session.add(_pending("upgrade_diff:1:extra", TransactionType.UPGRADE_DIFF, 219.0, "2026-09"))

    result = await settle_month("2026-09", DEFAULT_SNAPSHOT, now=NOW)
    assert result.upgrade_diff.amount == 239.0
    assert result.like_bonus.amount == 1.0


async def _raise_commission_and_likes(commission: float, extra_likers: int) -> None:
    async with get_session() as session:
        order = await session.get(Order, 1)
        order.commission_amount = commission
        for user_id in range(10, 10 + extra_likers):
            session.add(User(id=user_id, phone=f"139000000{user_id:02d}"))
            session.add(
                ReviewLike(
                    review_id=1,
                    user_id=user_id,
                    is_valid_for_bonus=True,
                    weight_coefficient=1.0,
                    reading_seconds=60,
                    created_at=datetime(2026, 9, 12, tzinfo=timezone.utc),
                )
            )


def _paid(tx_type: TransactionType, amount: float, tax: float = 0.0) -> TransactionRecord:
    return TransactionRecord(user_id=AUTHOR, type=tx_type.value, amount=amount, tax_deducted=tax, review_id=1, order_id=1)


@pytest.mark.asyncio
async def test_review_cap_counts_stages_and_pre_tax_amounts(db):
    await _seed_month()
    await _raise_commission_and_likes(1000.0, extra_likers=11)
    async with get_session() as session:
        # 500 before tax, 20 withheld.
        session.add(_paid(TransactionType.REBATE, 480.0, tax=20.0))
        # The 3-month follow-up is promised but not yet due.
        session.add(_pending("stage:1:3m", TransactionType.STAGE_RELEASE, 250.0, "2026-12"))

    result = await settle_month("2026-09", DEFAULT_SNAPSHOT, now=NOW)
    # Cap 800 = 20 upgrade + 500 rebate + 250 promised stage + 30 left for likes (raw 60).
    assert result.upgrade_diff.amount == 20.0
    assert result.like_bonus.amount == 30.0


@pytest.mark.asyncio
async def test_no_like_bonus_once_stages_fill_the_cap(db):
    await _seed_month()
    await _raise_commission_and_likes(1000.0, extra_likers=11)
    async with get_session() as session:
        session.add(_paid(TransactionType.REBATE, 400.0))
        session.add(_paid(TransactionType.STAGE_RELEASE, 400.0))

    result = await settle_month("2026-09", DEFAULT_SNAPSHOT, now=NOW)
    assert result.like_bonus.count == 0
    assert result.like_bonus.amount == 0.0


BUYER = 3


def _order(order_id: int, user_id: int, commission: float, created: datetime, completed: datetime) -> Order:
    return Order(
        id=order_id,
        bidding_id=order_id,
        quote_id=order_id,
        user_id=user_id,
        shop_id=1,
        quoted_amount=commission / 0.08,
        complexity_level="L2",
        vehicle_price_tier="mid",
        order_tier=2,
        commission_rate=0.08,
        commission_amount=commission,
        reward_preview={},
        status=OrderStatus.COMPLETED.value,
        created_at=created,
        completed_at=completed,
    )


async def _seed_buyer(like_type: LikeType, like_at: datetime, read_at: datetime) -> None:
    """A second owner who read review 1, then ordered on 2026-09-05 (completed 09-15)."""
    async with get_session() as session:
        session.add(User(id=BUYER, phone="13800000003"))
        session.add(
            _order(
                2,
                BUYER,
                200.0,
                created=datetime(2026, 9, 5, tzinfo=timezone.utc),
                completed=datetime(2026, 9, 15, tzinfo=timezone.utc),
            )
        )
        session.add(ReadingSession(review_id=1, user_id=BUYER, effective_seconds=90, saw_at=read_at))
        session.add(
            ReviewLike(
                review_id=1,
                user_id=BUYER,
                like_type=like_type.value,
                is_valid_for_bonus=True,
                weight_coefficient=1.0,
                reading_seconds=90,
                created_at=like_at,
            )
        )


@pytest.mark.asyncio
async def test_conversion_bonus_pays_the_pool_to_the_liked_review(db):
    await _seed_month()
    await _seed_buyer(
        LikeType.NORMAL,
        like_at=datetime(2026, 9, 4, 12, tzinfo=timezone.utc),
        read_at=datetime(2026, 9, 4, 11, tzinfo=timezone.utc),
    )

    result = await settle_month("2026-09", DEFAULT_SNAPSHOT, now=NOW)
    # Sole candidate takes the whole pool: 200 commission x 0.5.
    assert (result.conversion_bonus.count, result.conversion_bonus.amount) == (1, 100.0)
    assert result.post_verify_bonus.count == 0

    async with get_session() as session:
        entry = (
            await session.execute(
                select(SettlementPendingEntry).where(SettlementPendingEntry.idempotency_key == "conversion:2:1")
            )
        ).scalar_one()
    assert entry.user_id == AUTHOR
    assert entry.settled_at is not None
    # 12h before ordering (4) x 90s read (2) x no vehicle match (1) x quality 1 (0.5)
    assert "4.00" in entry.calc_reason

    again = await settle_month("2026-09", DEFAULT_SNAPSHOT, now=NOW)
    assert again.conversion_bonus.count == 0


@pytest.mark.asyncio
async def test_like_outside_the_lookback_earns_no_conversion(db):
    await _seed_month()
    await _seed_buyer(
        LikeType.NORMAL,
        like_at=datetime(2026, 8, 25, tzinfo=timezone.utc),
        read_at=datetime(2026, 8, 25, tzinfo=timezone.utc),
    )

    result = await settle_month("2026-09", DEFAULT_SNAPSHOT, now=NOW)
    assert result.conversion_bonus.count == 0


@pytest.mark.asyncio
async def test_post_verify_bonus_is_paid_once_per_order(db):
    await _seed_month()
    await _seed_buyer(
        LikeType.POST_VERIFY,
        like_at=datetime(2026, 9, 16, tzinfo=timezone.utc),
        read_at=datetime(2026, 9, 3, tzinfo=timezone.utc),
    )

    first = await settle_month("2026-09", DEFAULT_SNAPSHOT, now=NOW)
    # 200 commission x 0.5
    assert (first.post_verify_bonus.count, first.post_verify_bonus.amount) == (1, 100.0)
    assert first.conversion_bonus.count == 0

    second = await settle_month("2026-09", DEFAULT_SNAPSHOT, now=NOW)
    assert second.post_verify_bonus.count == 0

    async with get_session() as session:
        txns = (
            await session.execute(
                select(TransactionRecord).where(TransactionRecord.type == TransactionType.POST_VERIFY_BONUS.value)
            )
        ).scalars().all()
    assert [(t.user_id, t.order_id, t.amount) for t in txns] == [(AUTHOR, 2, 100.0)]


@pytest.mark.asyncio
async def test_post_verify_needs_reading_before_the_order(db):
    await _seed_month()
    await _seed_buyer(
        LikeType.POST_VERIFY,
        like_at=datetime(2026, 9, 16, tzinfo=timezone.utc),
        # Read after ordering only.
        read_at=datetime(2026, 9, 10, tzinfo=timezone.utc),
    )

    result = await settle_month("2026-09", DEFAULT_SNAPSHOT, now=NOW)
    assert result.post_verify_bonus.count == 0


@pytest.mark.asyncio
async def test_post_verify_is_skipped_for_orders_with_conversion(db):
    await _seed_month()
    await _seed_buyer(
        LikeType.POST_VERIFY,
        like_at=datetime(2026, 9, 16, tzinfo=timezone.utc),
        read_at=datetime(2026, 9, 3, tzinfo=timezone.utc),
    )
    async with get_session() as session:
        session.add(_pending("conversion:2:1", TransactionType.CONVERSION_BONUS, 60.0, "2026-09", order_id=2))

    result = await settle_month("2026-09", DEFAULT_SNAPSHOT, now=NOW)
    assert result.conversion_bonus.amount == 60.0
    assert result.post_verify_bonus.count == 0


@pytest.mark.asyncio
async def test_invalid_month_is_rejected():
    for month in ("2026-13", "202609", "26-09"):
        with pytest.raises(ValidationFailed) as exc:
            await settle_month(month, DEFAULT_SNAPSHOT)
        assert exc.value.code == "INVALID_MONTH"


@pytest.mark.asyncio
async def test_release_due_stages(db):
    async with get_session() as session:
        session.add(User(id=AUTHOR, phone="13800000001"))
        session.add(_pending("stage:1:1m", TransactionType.STAGE_RELEASE, 50.0, "2026-10"))
        session.add(_pending("stage:1:3m", TransactionType.STAGE_RELEASE, 30.0, "2026-12"))

    totals = await release_due_stages(DEFAULT_SNAPSHOT, now=NOW)
    assert (totals.count, totals.amount) == (1, 50.0)
    assert await _balance(AUTHOR) == 50.0

    again = await release_due_stages(DEFAULT_SNAPSHOT, now=NOW)
    assert again.count == 0
