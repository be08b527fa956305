"""Review submission and content-quality upgrades.

Gate chain on submission, first failure wins:
1. trust tier (high_risk may not review)
2. order exists, belongs to the reviewer and is completed
3. one review per order
4. blacklist (user id / phone / IP)
5. evidence and text validation
6. content similarity against recent reviews

Then the reward: the order's frozen preview, plus the premium float for
premium content, capped by the quality level's share of commission. The
main stage is credited immediately (trust multiplier, new-user monthly cap
and withholding tax applied); later stages become pending entries released
by the stage job.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from repair_engine.models import (
    Order,
    OrderStatus,
    Review,
    ReviewStatus,
    SettlementPendingEntry,
    Shop,
    TransactionType,
    User,
)
from repair_engine.models.review import QUALITY_BENCHMARK, QUALITY_PREMIUM, QUALITY_VALID, QUALITY_VIRAL
from repair_engine.schemas.evidence import EvidenceBundle
from repair_engine.services.complexity import parse_level
from repair_engine.services.engine_config import ConfigSnapshot
from repair_engine.services.errors import Conflict, EngineError, NotFound, PolicyRejected, ValidationFailed
from repair_engine.services.ledger import credit_user, insert_pending, withholding_tax
from repair_engine.services.notifications import MSG_APPEAL, send_merchant_message
from repair_engine.services.review_validator import validate_review
from repair_engine.services.reward_calculator import STAGE_MAIN, premium_float, premium_total_cap, release_stages
from repair_engine.services.shop_score import ShopScoreResult, freeze_review_weight, recompute_shop_score
from repair_engine.services.timeutil import add_months, month_key, utcnow
from repair_engine.services.trust_gate import (
    TrustTier,
    check_blacklist,
    check_content_similarity,
    get_trust_assessment,
    load_recent_review_texts,
    reward_eligibility,
    rewards_paid_this_month,
)
from repair_engine.stores.postgres import get_session

logger = logging.getLogger("uvicorn.error")

_STAGE_MONTHS = {"1m": 1, "3m": 3}


@dataclass
class ReviewOutcome:
    review: Review
    quality_level: int
    reward_total: float
    immediate_amount: float = 0.0
    immediate_tax: float = 0.0
    pending_keys: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)


def quality_level_for(premium: bool) -> int:
    return QUALITY_PREMIUM if premium else QUALITY_VALID


def entitled_total(base: float, commission: float, quality_level: int, snapshot: ConfigSnapshot) -> float:
    """Total review reward for a quality level: base + float, within the level cap
    and the per-review share of commission."""
    rules = snapshot.config.reward
    extra = premium_float(
        base,
        is_premium=quality_level >= QUALITY_PREMIUM,
        is_viral=quality_level >= QUALITY_BENCHMARK,
        rules=rules,
    )
    cap = min(
        premium_total_cap(commission, quality_level, rules),
        commission * snapshot.config.settlement.review_bonus_cap_ratio,
    )
    return round(max(0.0, min(base + extra, cap)), 2)


async def submit_review(
    session: AsyncSession,
    *,
    user_id: int,
    order_id: int,
    rating: float,
    content: str,
    evidence: EvidenceBundle,
    snapshot: ConfigSnapshot,
    ip: str | None = None,
    now: datetime | None = None,
) -> ReviewOutcome:
    """Validate, store and reward a review.

    Raises:
        PolicyRejected: TRUST_TOO_LOW or BLACKLISTED.
        NotFound: ORDER_NOT_FOUND.
        Conflict: ORDER_NOT_COMPLETED or REVIEW_EXISTS.
        ValidationFailed: INSUFFICIENT_EVIDENCE, TEXT_TOO_SHORT, FILLER_CONTENT or DUPLICATE_CONTENT.
    """
    now = now or utcnow()
    cfg = snapshot.config

    trust = await get_trust_assessment(session, user_id, cfg.trust, now)
    if trust.tier == TrustTier.HIGH_RISK:
        raise PolicyRejected("TRUST_TOO_LOW", "Your account level does not allow reviews", {"tier": trust.tier.key})

    order = await session.get(Order, order_id)
    if order is None or order.user_id != user_id:
        raise NotFound("ORDER_NOT_FOUND", f"Order {order_id} not found", {"order_id": order_id})
    if order.status != OrderStatus.COMPLETED.value:
        raise Conflict("ORDER_NOT_COMPLETED", "Only completed orders can be reviewed", {"status": order.status})

    existing = (await session.execute(select(Review.id).where(Review.order_id == order_id))).scalar_one_or_none()
    if existing is not None:
        raise Conflict("REVIEW_EXISTS", "This order has already been reviewed", {"review_id": existing})

    user = await session.get(User, user_id)
    blocked = await check_blacklist(session, user_id, user.phone if user else None, ip)
    if blocked.blocked:
        raise PolicyRejected("BLACKLISTED", "Account is restricted", {"reason": blocked.reason})

    level = parse_level(order.complexity_level)
    is_negative = rating <= cfg.scoring.negative_rating_max
    text = (content or "").strip()
    validation = validate_review(level, is_negative, evidence, text, cfg.review)
    if not validation.valid:
        raise ValidationFailed(validation.reason_code or "INVALID_REVIEW", validation.message or "Invalid review", None)

    recent = await load_recent_review_texts(session, cfg.antifraud.similarity_sample_size)
    passes, similarity = check_content_similarity(text, recent, cfg.antifraud.similarity_threshold)
    if not passes:
        raise ValidationFailed(
            "DUPLICATE_CONTENT",
            "Review text is too similar to an existing review",
            {"similarity": round(similarity, 3)},
        )

    quality = quality_level_for(validation.premium)
    base = float((order.reward_preview or {}).get("preview", 0.0))
    total = entitled_total(base, order.commission_amount, quality, snapshot)

    eligibility = reward_eligibility(trust.tier, cfg.trust)
    stages = release_stages(order.order_tier, total, cfg.reward)

    review = Review(
        order_id=order.id,
        user_id=user_id,
        shop_id=order.shop_id,
        rating=rating,
        content=text,
        evidence=evidence.model_dump(mode="json"),
        is_negative=is_negative,
        is_valid=True,
        is_premium=validation.premium,
        content_quality_level=quality,
        status=ReviewStatus.VISIBLE.value,
        config_version=snapshot.version,
        created_at=now,
    )
    session.add(review)
    await session.flush()

    outcome = ReviewOutcome(review=review, quality_level=quality, reward_total=total)
    committed = 0.0
    for stage in stages:
        amount = round(stage.amount * eligibility.multiplier, 2)
        if stage.stage == STAGE_MAIN:
            if eligibility.monthly_cap is not None:
                used = await rewards_paid_this_month(session, user_id, now)
                room = max(0.0, eligibility.monthly_cap - used)
                if amount > room:
                    amount = round(room, 2)
                    outcome.reasons.append("MONTHLY_CAP")
            if amount <= 0:
                continue
            tax, after_tax = withholding_tax(amount, cfg.settlement)
            await credit_user(
                session,
                user_id=user_id,
                amount=after_tax,
                tx_type=TransactionType.REBATE,
                tax_deducted=tax,
                review_id=review.id,
                order_id=order.id,
                settlement_month=month_key(now),
                description=f"Review reward ({stage.percent:g}% immediate)",
                now=now,
            )
            outcome.immediate_amount = after_tax
            outcome.immediate_tax = tax
            review.reward_paid = after_tax
            committed += amount
            continue

        if amount <= 0:
            continue
        key = f"stage:{review.id}:{stage.stage}"
        entry = await insert_pending(
            session,
            key=key,
            bonus_type=TransactionType.STAGE_RELEASE,
            user_id=user_id,
            amount_before_tax=amount,
            trigger_month=month_key(add_months(now, _STAGE_MONTHS.get(stage.stage, 1))),
            rules=cfg.settlement,
            review_id=review.id,
            order_id=order.id,
            calc_reason=f"Review reward stage {stage.stage} ({stage.percent:g}%)",
            config_version=snapshot.version,
        )
        if entry is not None:
            outcome.pending_keys.append(key)
            committed += amount

    if eligibility.multiplier < 1:
        outcome.reasons.append(f"TRUST_MULTIPLIER_{eligibility.multiplier:g}")
    review.reward_pre = round(committed, 2)

    shop = await session.get(Shop, order.shop_id)
    if shop is not None:
        await freeze_review_weight(session, review, order, shop, snapshot, now)
    await session.flush()

    logger.info(
        f"[reviews] review_id={review.id} order_id={order.id} quality={quality} total={total} "
        f"immediate={outcome.immediate_amount} pending={len(outcome.pending_keys)} trust={trust.tier.key}"
    )
    return outcome


async def refresh_shop_score(
    shop_id: int,
    snapshot: ConfigSnapshot,
    now: datetime | None = None,
) -> ShopScoreResult | None:
    """Recompute a shop's score in its own unit of work; failures are logged, not raised."""
    try:
        async with get_session() as session:
            return await recompute_shop_score(session, shop_id, snapshot, now)
    except (EngineError, SQLAlchemyError):
        logger.exception(f"[reviews] shop score recompute failed shop_id={shop_id}")
        return None


async def _committed_reward(session: AsyncSession, review: Review) -> float:
    """Gross amount already promised to a review: submission stages plus earlier upgrades."""
    upgrades = (
        await session.execute(
            select(func.coalesce(func.sum(SettlementPendingEntry.amount_before_tax), 0.0))
            .where(SettlementPendingEntry.review_id == review.id)
            .where(SettlementPendingEntry.bonus_type == TransactionType.UPGRADE_DIFF.value)
        )
    ).scalar_one()
    return float(review.reward_pre or 0.0) + float(upgrades or 0.0)


async def upgrade_content_quality(
    session: AsyncSession,
    review_id: int,
    new_level: int,
    snapshot: ConfigSnapshot,
    now: datetime | None = None,
) -> SettlementPendingEntry | None:
    """Raise a review's content quality level and queue the reward difference.

    The difference is paid by the monthly settlement of the current month.
    Returns the pending entry, or None when nothing is owed.

    Raises:
        ValidationFailed: INVALID_QUALITY_LEVEL.
        NotFound: REVIEW_NOT_FOUND.
    """
    now = now or utcnow()
    if not QUALITY_VALID <= new_level <= QUALITY_VIRAL:
        raise ValidationFailed("INVALID_QUALITY_LEVEL", f"Quality level must be 1-4, got {new_level}", None)

    review = await session.get(Review, review_id)
    if review is None:
        raise NotFound("REVIEW_NOT_FOUND", f"Review {review_id} not found", {"review_id": review_id})
    old_level = review.content_quality_level
    if new_level <= old_level:
        return None

    review.content_quality_level = new_level
    review.is_premium = new_level >= QUALITY_PREMIUM

    order = await session.get(Order, review.order_id)
    base = float((order.reward_preview or {}).get("preview", 0.0))
    should = entitled_total(base, order.commission_amount, new_level, snapshot)
    diff = round(should - await _committed_reward(session, review), 2)
    if diff <= 0:
        await session.flush()
        logger.info(f"[reviews] upgrade review_id={review_id} {old_level}->{new_level} nothing owed")
        return None

    entry = await insert_pending(
        session,
        key=f"upgrade_diff:{review_id}:{new_level}",
        bonus_type=TransactionType.UPGRADE_DIFF,
        user_id=review.user_id,
        amount_before_tax=diff,
        trigger_month=month_key(now),
        rules=snapshot.config.settlement,
        review_id=review_id,
        order_id=order.id,
        calc_reason=f"Quality level {old_level} -> {new_level}, difference {diff:.2f}",
        config_version=snapshot.version,
    )
    logger.info(f"[reviews] upgrade review_id={review_id} {old_level}->{new_level} diff={diff}")
    return entry


async def decide_fault_appeal(
    session: AsyncSession,
    review_id: int,
    upheld: bool,
    snapshot: ConfigSnapshot,
    *,
    note: str | None = None,
    now: datetime | None = None,
) -> ShopScoreResult | None:
    """Record the decision on a shop's "fault resolved" appeal.

    An upheld appeal excludes the review from scoring, so the shop score is
    recomputed in the same unit of work.
    """
    now = now or utcnow()
    review = await session.get(Review, review_id)
    if review is None:
        raise NotFound("REVIEW_NOT_FOUND", f"Review {review_id} not found", {"review_id": review_id})

    review.fault_appeal_upheld = upheld
    await session.flush()
    await send_merchant_message(
        session,
        review.shop_id,
        MSG_APPEAL,
        "Appeal upheld" if upheld else "Appeal rejected",
        note or ("The review no longer counts toward your score." if upheld else "The review stays as submitted."),
        related_id=review_id,
        now=now,
    )
    logger.info(f"[reviews] appeal review_id={review_id} upheld={upheld}")
    return await recompute_shop_score(session, review.shop_id, snapshot, now)

