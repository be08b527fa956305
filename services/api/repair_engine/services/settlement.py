"""Monthly settlement batch.

Settles one calendar month (YYYY-MM), normally run on the 10th for the
previous month:

1. upgrade_diff: pay unsettled pending entries whose trigger month matches
2. like_bonus: commission x 0.5% x sum of like weights of the month's valid
   normal likes, capped so a review's rebate + upgrade_diff + like_bonus
   stay within 80% of the order commission
3. conversion_bonus: split 50% of commission of each order completed in the
   month among the reviews that drove it, then pay
4. post_verify_bonus: 50% of commission once per order, skipped when the
   order already produced conversion bonuses

Every payout first exists as a SettlementPendingEntry with a unique
idempotency key and is paid by a guarded claim, so re-running a month pays
nothing twice. Each row is its own unit of work; row errors are collected
and the run is logged as `partial`.
"""

import logging
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from repair_engine.models import (
    LikeType,
    Order,
    OrderStatus,
    ReadingSession,
    Review,
    ReviewLike,
    ReviewStatus,
    SettlementLog,
    SettlementPendingEntry,
    TransactionType,
)
from repair_engine.services.engine_config import ConfigSnapshot
from repair_engine.services.errors import EngineError, ValidationFailed
from repair_engine.services.ledger import (
    find_pending,
    insert_pending,
    pay_pending_entry,
    review_capped_total,
)
from repair_engine.services.locks import entity_lock
from repair_engine.services.review_likes import conversion_candidates, split_conversion_pool
from repair_engine.services.timeutil import month_key, parse_month, utcnow
from repair_engine.stores.postgres import get_session
from repair_engine.stores.redis import TTL_SETTLEMENT_LOCK

logger = logging.getLogger("uvicorn.error")

STATUS_COMPLETED = "completed"
STATUS_PARTIAL = "partial"

_ROW_ERRORS = (EngineError, SQLAlchemyError, ValueError)


@dataclass
class PhaseTotals:
    count: int = 0
    amount: float = 0.0

    def add(self, amount: float) -> None:
        self.count += 1
        self.amount = round(self.amount + amount, 2)


@dataclass
class SettlementResult:
    run_id: str
    month: str
    dry_run: bool = False
    upgrade_diff: PhaseTotals = field(default_factory=PhaseTotals)
    like_bonus: PhaseTotals = field(default_factory=PhaseTotals)
    conversion_bonus: PhaseTotals = field(default_factory=PhaseTotals)
    post_verify_bonus: PhaseTotals = field(default_factory=PhaseTotals)
    errors: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return STATUS_PARTIAL if self.errors else STATUS_COMPLETED

    @property
    def total_paid(self) -> float:
        return round(
            self.upgrade_diff.amount
            + self.like_bonus.amount
            + self.conversion_bonus.amount
            + self.post_verify_bonus.amount,
            2,
        )

    def summary(self) -> dict[str, Any]:
        return {
            "upgrade_diff": asdict(self.upgrade_diff),
            "like_bonus": asdict(self.like_bonus),
            "conversion_bonus": asdict(self.conversion_bonus),
            "post_verify_bonus": asdict(self.post_verify_bonus),
            "total_paid": self.total_paid,
        }


class _Runner:
    """Hands out units of work; a dry run shares one session that is rolled back."""

    def __init__(self, dry_session: AsyncSession | None = None) -> None:
        self._dry = dry_session

    @asynccontextmanager
    async def unit(self) -> AsyncGenerator[AsyncSession, None]:
        if self._dry is not None:
            yield self._dry
            return
        async with get_session() as session:
            yield session


async def _unsettled_ids(runner: _Runner, bonus_type: TransactionType, month: str) -> list[int]:
    async with runner.unit() as session:
        rows = (
            await session.execute(
                select(SettlementPendingEntry.id)
                .where(SettlementPendingEntry.bonus_type == bonus_type.value)
                .where(SettlementPendingEntry.trigger_month == month)
                .where(SettlementPendingEntry.settled_at.is_(None))
                .order_by(SettlementPendingEntry.id)
            )
        ).scalars().all()
    return list(rows)


async def _pay_ids(
    runner: _Runner,
    ids: list[int],
    month: str,
    totals: PhaseTotals,
    errors: list[str],
    now: datetime,
) -> None:
    for entry_id in ids:
        try:
            async with runner.unit() as session:
                txn = await pay_pending_entry(session, entry_id, settlement_month=month, now=now)
        except _ROW_ERRORS as e:
            logger.exception(f"[settlement] pending_id={entry_id} payout failed")
            errors.append(f"pending {entry_id}: {e}")
            continue
        if txn is not None:
            totals.add(txn.amount)


async def _settle_upgrade_diff(runner: _Runner, result: SettlementResult, now: datetime) -> None:
    ids = await _unsettled_ids(runner, TransactionType.UPGRADE_DIFF, result.month)
    await _pay_ids(runner, ids, result.month, result.upgrade_diff, result.errors, now)


async def _settle_like_bonus(
    runner: _Runner,
    result: SettlementResult,
    snapshot: ConfigSnapshot,
    start: datetime,
    end: datetime,
    now: datetime,
) -> None:
    rules = snapshot.config.settlement
    async with runner.unit() as session:
        rows = (
            await session.execute(
                select(ReviewLike.review_id, ReviewLike.weight_coefficient)
                .join(Review, ReviewLike.review_id == Review.id)
                .where(ReviewLike.is_valid_for_bonus.is_(True))
                .where(ReviewLike.like_type == LikeType.NORMAL.value)
                .where(ReviewLike.created_at >= start)
                .where(ReviewLike.created_at < end)
                .where(Review.status == ReviewStatus.VISIBLE.value)
            )
        ).all()

    weights: dict[int, float] = {}
    for review_id, w in rows:
        weights[review_id] = weights.get(review_id, 0.0) + float(w or 0.0)

    for review_id, weight_sum in sorted(weights.items()):
        if weight_sum <= 0:
            continue
        key = f"like_bonus:{review_id}:{result.month}"
        try:
            async with runner.unit() as session:
                entry = await find_pending(session, key)
                if entry is None:
                    review = await session.get(Review, review_id)
                    order = await session.get(Order, review.order_id) if review is not None else None
                    if order is None or order.commission_amount <= 0:
                        continue
                    cap = order.commission_amount * rules.review_bonus_cap_ratio
                    remaining = max(0.0, cap - await review_capped_total(session, review_id))
                    bonus = round(min(order.commission_amount * rules.like_bonus_rate * weight_sum, remaining), 2)
                    if bonus <= 0:
                        continue
                    entry = await insert_pending(
                        session,
                        key=key,
                        bonus_type=TransactionType.LIKE_BONUS,
                        user_id=review.user_id,
                        amount_before_tax=bonus,
                        trigger_month=result.month,
                        rules=rules,
                        review_id=review_id,
                        order_id=order.id,
                        calc_reason=f"Like bonus (weight sum {weight_sum:.2f})",
                        config_version=snapshot.version,
                    )
                if entry is None:
                    continue
                txn = await pay_pending_entry(session, entry.id, settlement_month=result.month, now=now)
        except _ROW_ERRORS as e:
            logger.exception(f"[settlement] like bonus failed review_id={review_id}")
            result.errors.append(f"review {review_id}: {e}")
            continue
        if txn is not None:
            result.like_bonus.add(txn.amount)


async def _completed_order_ids(runner: _Runner, start: datetime, end: datetime) -> list[int]:
    async with runner.unit() as session:
        rows = (
            await session.execute(
                select(Order.id)
                .where(Order.status == OrderStatus.COMPLETED.value)
                .where(Order.completed_at >= start)
                .where(Order.completed_at < end)
                .order_by(Order.id)
            )
        ).scalars().all()
    return list(rows)


async def _has_conversion(session: AsyncSession, order_id: int) -> bool:
    hit = (
        await session.execute(
            select(SettlementPendingEntry.id)
            .where(SettlementPendingEntry.order_id == order_id)
            .where(SettlementPendingEntry.bonus_type == TransactionType.CONVERSION_BONUS.value)
            .limit(1)
        )
    ).scalar_one_or_none()
    return hit is not None


async def _settle_conversion(
    runner: _Runner,
    result: SettlementResult,
    snapshot: ConfigSnapshot,
    order_ids: list[int],
    now: datetime,
) -> None:
    likes_rules = snapshot.config.likes
    for order_id in order_ids:
        try:
            async with runner.unit() as session:
                if await _has_conversion(session, order_id):
                    continue
                order = await session.get(Order, order_id)
                if order is None or order.commission_amount <= 0:
                    continue
                candidates = await conversion_candidates(session, order, likes_rules)
                pool = order.commission_amount * likes_rules.conversion_pool_ratio
                for cand, share in split_conversion_pool(candidates, pool, likes_rules.conversion_top_n):
                    if share <= 0:
                        continue
                    await insert_pending(
                        session,
                        key=f"conversion:{order_id}:{cand.review_id}",
                        bonus_type=TransactionType.CONVERSION_BONUS,
                        user_id=cand.author_id,
                        amount_before_tax=share,
                        trigger_month=result.month,
                        rules=snapshot.config.settlement,
                        review_id=cand.review_id,
                        order_id=order_id,
                        calc_reason=f"Content conversion (decision weight {cand.weight:.2f})",
                        config_version=snapshot.version,
                    )
        except _ROW_ERRORS as e:
            logger.exception(f"[settlement] conversion compute failed order_id={order_id}")
            result.errors.append(f"order {order_id}: {e}")

    ids = await _unsettled_ids(runner, TransactionType.CONVERSION_BONUS, result.month)
    await _pay_ids(runner, ids, result.month, result.conversion_bonus, result.errors, now)


async def _post_verify_like(session: AsyncSession, order: Order, snapshot: ConfigSnapshot) -> ReviewLike | None:
    """First valid post_verify like by the order's owner within the window after completion
    on a review they had read in the week before ordering."""
    rules = snapshot.config.likes
    likes = (
        await session.execute(
            select(ReviewLike)
            .join(Review, ReviewLike.review_id == Review.id)
            .where(ReviewLike.user_id == order.user_id)
            .where(ReviewLike.is_valid_for_bonus.is_(True))
            .where(ReviewLike.like_type == LikeType.POST_VERIFY.value)
            .where(ReviewLike.created_at >= order.completed_at)
            .where(ReviewLike.created_at <= order.completed_at + timedelta(days=rules.post_verify_window_days))
            .where(Review.status == ReviewStatus.VISIBLE.value)
            .order_by(ReviewLike.id)
        )
    ).scalars().all()
    read_from = order.created_at - timedelta(days=rules.post_verify_read_lookback_days)
    for like in likes:
        browsed = (
            await session.execute(
                select(ReadingSession.id)
                .where(ReadingSession.review_id == like.review_id)
                .where(ReadingSession.user_id == order.user_id)
                .where(ReadingSession.saw_at >= read_from)
                .where(ReadingSession.saw_at < order.created_at)
                .limit(1)
            )
        ).scalar_one_or_none()
        if browsed is not None:
            return like
    return None


async def _settle_post_verify(
    runner: _Runner,
    result: SettlementResult,
    snapshot: ConfigSnapshot,
    order_ids: list[int],
    now: datetime,
) -> None:
    rules = snapshot.config.settlement
    for order_id in order_ids:
        key = f"post_verify:{order_id}"
        try:
            async with runner.unit() as session:
                entry = await find_pending(session, key)
                if entry is None:
                    if await _has_conversion(session, order_id):
                        continue
                    order = await session.get(Order, order_id)
                    if order is None or order.commission_amount <= 0:
                        continue
                    like = await _post_verify_like(session, order, snapshot)
                    if like is None:
                        continue
                    review = await session.get(Review, like.review_id)
                    entry = await insert_pending(
                        session,
                        key=key,
                        bonus_type=TransactionType.POST_VERIFY_BONUS,
                        user_id=review.user_id,
                        amount_before_tax=round(order.commission_amount * rules.post_verify_ratio, 2),
                        trigger_month=result.month,
                        rules=rules,
                        review_id=review.id,
                        order_id=order_id,
                        calc_reason="Post-purchase verification",
                        config_version=snapshot.version,
                    )
                if entry is None:
                    continue
                txn = await pay_pending_entry(session, entry.id, settlement_month=result.month, now=now)
        except _ROW_ERRORS as e:
            logger.exception(f"[settlement] post-verify failed order_id={order_id}")
            result.errors.append(f"order {order_id}: {e}")
            continue
        if txn is not None:
            result.post_verify_bonus.add(txn.amount)


async def _run_phases(
    runner: _Runner,
    result: SettlementResult,
    snapshot: ConfigSnapshot,
    now: datetime,
) -> None:
    start, end = parse_month(result.month)
    await _settle_upgrade_diff(runner, result, now)
    await _settle_like_bonus(runner, result, snapshot, start, end, now)
    order_ids = await _completed_order_ids(runner, start, end)
    await _settle_conversion(runner, result, snapshot, order_ids, now)
    await _settle_post_verify(runner, result, snapshot, order_ids, now)


async def settle_month(
    month: str,
    snapshot: ConfigSnapshot,
    *,
    dry_run: bool = False,
    now: datetime | None = None,
) -> SettlementResult:
    """Settle one month. Safe to re-run: already-paid entries are skipped.

    A dry run computes the same totals inside one session and rolls it back.

    Raises:
        ValidationFailed: INVALID_MONTH.
        Conflict: LOCK_TIMEOUT when another run for the month holds the lock.
    """
    try:
        parse_month(month)
    except ValueError as e:
        raise ValidationFailed("INVALID_MONTH", str(e), {"month": month}) from e

    now = now or utcnow()
    result = SettlementResult(run_id=str(uuid.uuid4()), month=month, dry_run=dry_run)
    logger.info(f"[settlement] run_id={result.run_id} month={month} dry_run={dry_run} config_v={snapshot.version}")

    async with entity_lock("settlement", month, ttl=TTL_SETTLEMENT_LOCK, wait_s=0):
        if dry_run:
            async with get_session() as session:
                await _run_phases(_Runner(session), result, snapshot, now)
                await session.rollback()
        else:
            await _run_phases(_Runner(), result, snapshot, now)
            async with get_session() as session:
                session.add(
                    SettlementLog(
                        run_id=result.run_id,
                        settlement_month=month,
                        status=result.status,
                        summary=result.summary(),
                        errors=result.errors,
                        config_version=snapshot.version,
                        run_at=now,
                    )
                )

    logger.info(
        f"[settlement] run_id={result.run_id} status={result.status} paid={result.total_paid} "
        f"errors={len(result.errors)}"
    )
    return result


async def release_due_stages(snapshot: ConfigSnapshot, now: datetime | None = None) -> PhaseTotals:
    """Pay staged follow-up rewards (1m / 3m) whose trigger month has arrived."""
    now = now or utcnow()
    current = month_key(now)
    async with get_session() as session:
        ids = (
            await session.execute(
                select(SettlementPendingEntry.id)
                .where(SettlementPendingEntry.bonus_type == TransactionType.STAGE_RELEASE.value)
                .where(SettlementPendingEntry.trigger_month <= current)
                .where(SettlementPendingEntry.settled_at.is_(None))
                .order_by(SettlementPendingEntry.id)
            )
        ).scalars().all()

    totals = PhaseTotals()
    errors: list[str] = []
    await _pay_ids(_Runner(), list(ids), current, totals, errors, now)
    logger.info(
        f"[settlement] stage release month={current} paid={totals.count} amount={totals.amount} "
        f"errors={len(errors)} config_v={snapshot.version}"
    )
    return totals


async def list_settlement_logs(session: AsyncSession, limit: int = 20) -> list[SettlementLog]:
    rows = (
        await session.execute(select(SettlementLog).order_by(SettlementLog.id.desc()).limit(limit))
    ).scalars().all()
    return list(rows)
