"""Shop reputation score (0-100).

Score = weighted average rating x 20 + hard bonus, clamped to 0-100.

Per-review weight:
    orderWeight(level) x contentWeight x trustWeight x complianceCoefficient
- orderWeight: L1 0.2 / L2 1.0 / L3 3.0 / L4 6.0, doubled for insurance claims
- contentWeight: 3.0 premium else 1.0; negative reviews (rating <= 2) are
  amplified x1.5 (L1/L2) or x2.0 (L3/L4)
- trustWeight: author's trust tier weight
- complianceCoefficient: 1.2 if shop compliance >= 95 else 1.0

The weight is frozen onto the review row the first time it is computed and
reused as-is afterwards; only the time decay is applied at read time.
Reviews with an upheld fault appeal are excluded entirely.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from repair_engine.models import Order, Review, ReviewStatus, Shop
from repair_engine.services.complexity import ComplexityLevel, parse_level
from repair_engine.services.engine_config import ConfigSnapshot, ScoringRules
from repair_engine.services.locks import entity_lock
from repair_engine.services.timeutil import as_utc, utcnow
from repair_engine.services.trust_gate import get_trust_assessment

logger = logging.getLogger("uvicorn.error")

_CAS_RETRIES = 3


@dataclass
class ReviewWeightFactors:
    """Inputs to a single review's weight."""

    complexity_level: ComplexityLevel
    is_insurance_accident: bool
    is_premium: bool
    is_negative: bool
    trust_weight: float
    shop_compliance_rate: float | None


@dataclass
class WeightedRating:
    rating: float
    weight: float  # frozen, before decay
    created_at: datetime


@dataclass
class ShopFacts:
    qualification_class: int | None
    compliance_rate: float | None
    deviation_rate: float | None


@dataclass
class ShopScoreResult:
    score: float
    rating: float
    base_score: float
    bonus: float
    counted: int
    reasons: list[str] = field(default_factory=list)


def review_weight(f: ReviewWeightFactors, rules: ScoringRules) -> float:
    order_weight = rules.order_weights.get(f.complexity_level.value, rules.order_weights["L2"])
    if f.is_insurance_accident:
        order_weight *= rules.insurance_multiplier

    content_weight = rules.premium_content_weight if f.is_premium else 1.0
    if f.is_negative:
        content_weight *= rules.negative_multiplier_high if f.complexity_level.is_high else rules.negative_multiplier_low

    compliance_coeff = (
        rules.compliance_coefficient
        if f.shop_compliance_rate is not None and f.shop_compliance_rate >= rules.compliance_coefficient_min
        else 1.0
    )
    return order_weight * content_weight * f.trust_weight * compliance_coeff


def time_decay(created_at: datetime, now: datetime, rules: ScoringRules) -> float:
    """Decay factor by review age in 30-day months. Non-increasing; 0 at >= 12 months."""
    age_days = max(0.0, (as_utc(now) - as_utc(created_at)).total_seconds() / 86400)
    months = age_days / rules.days_per_month
    for limit, factor in rules.decay_buckets:
        if months < limit:
            return factor
    return 0.0


def hard_bonus_with_reasons(facts: ShopFacts, rules: ScoringRules) -> tuple[float, list[str]]:
    bonus = 0.0
    reasons: list[str] = []

    if facts.qualification_class is not None:
        q = rules.qualification_bonus.get(str(facts.qualification_class))
        if q:
            bonus += q
            reasons.append(f"QUALIFICATION_CLASS_{facts.qualification_class}")

    if facts.compliance_rate is not None:
        if facts.compliance_rate >= rules.compliance_bonus_min:
            bonus += rules.compliance_bonus
            reasons.append("COMPLIANCE_HIGH")
        elif facts.compliance_rate < rules.compliance_penalty_below:
            bonus += rules.compliance_penalty
            reasons.append("COMPLIANCE_LOW")

    if facts.deviation_rate is not None:
        if facts.deviation_rate <= rules.deviation_bonus_max:
            bonus += rules.deviation_bonus
            reasons.append("DEVIATION_LOW")
        elif facts.deviation_rate > rules.deviation_penalty_above:
            bonus += rules.deviation_penalty
            reasons.append("DEVIATION_HIGH")

    return bonus, reasons


def calculate_shop_score_with_reasons(
    entries: list[WeightedRating],
    facts: ShopFacts,
    now: datetime,
    rules: ScoringRules,
) -> ShopScoreResult:
    """Aggregate frozen review weights into a 0-100 score with reason codes."""
    bonus, reasons = hard_bonus_with_reasons(facts, rules)

    sum_weighted = 0.0
    sum_weight = 0.0
    counted = 0
    for e in entries:
        decay = time_decay(e.created_at, now, rules)
        w = e.weight * decay
        if w <= 0:
            continue
        sum_weighted += e.rating * w
        sum_weight += w
        counted += 1

    if sum_weight <= 0:
        reasons.append("NO_WEIGHTED_REVIEWS")
        score = max(0.0, bonus)
        return ShopScoreResult(
            score=round(score, 1),
            rating=round(min(5.0, score / 20), 2),
            base_score=0.0,
            bonus=bonus,
            counted=0,
            reasons=reasons,
        )

    base = sum_weighted / sum_weight * 20
    raw = round(base + bonus, 1)
    score = max(0.0, min(100.0, raw))
    if score != raw:
        reasons.append("CLAMPED")
    return ShopScoreResult(
        score=score,
        rating=round(score / 20, 2),
        base_score=round(base, 2),
        bonus=bonus,
        counted=counted,
        reasons=reasons,
    )


async def freeze_review_weight(
    session: AsyncSession,
    review: Review,
    order: Order,
    shop: Shop,
    snapshot: ConfigSnapshot,
    now: datetime | None = None,
) -> float:
    """Compute and persist a review's weight if it has none yet; return the stored weight."""
    if review.weight is not None:
        return review.weight

    trust = await get_trust_assessment(session, review.user_id, snapshot.config.trust, now)
    weight = review_weight(
        ReviewWeightFactors(
            complexity_level=parse_level(order.complexity_level),
            is_insurance_accident=bool(order.is_insurance_accident),
            is_premium=bool(review.is_premium),
            is_negative=bool(review.is_negative),
            trust_weight=trust.weight,
            shop_compliance_rate=shop.compliance_rate,
        ),
        snapshot.config.scoring,
    )
    review.weight = round(weight, 6)
    review.weight_frozen_at = now or utcnow()
    return review.weight


async def recompute_shop_score(
    session: AsyncSession,
    shop_id: int,
    snapshot: ConfigSnapshot,
    now: datetime | None = None,
) -> ShopScoreResult | None:
    """Recompute and store a shop's score; None if the shop does not exist.

    Serialized per shop and written with a version check, so concurrent
    recomputations cannot overwrite each other with stale results.
    """
    now = now or utcnow()
    async with entity_lock("shop", shop_id):
        for attempt in range(1, _CAS_RETRIES + 1):
            shop = (
                await session.execute(
                    select(Shop).where(Shop.id == shop_id).execution_options(populate_existing=True)
                )
            ).scalar_one_or_none()
            if shop is None:
                return None

            rows = (
                await session.execute(
                    select(Review, Order)
                    .join(Order, Review.order_id == Order.id)
                    .where(Review.shop_id == shop_id)
                    .where(Review.status == ReviewStatus.VISIBLE.value)
                    .where(Review.is_valid.is_(True))
                    .where(Review.fault_appeal_upheld.is_(False))
                )
            ).all()

            entries: list[WeightedRating] = []
            for review, order in rows:
                weight = await freeze_review_weight(session, review, order, shop, snapshot, now)
                entries.append(WeightedRating(rating=float(review.rating), weight=weight, created_at=review.created_at))

            result = calculate_shop_score_with_reasons(
                entries,
                ShopFacts(
                    qualification_class=shop.qualification_class,
                    compliance_rate=shop.compliance_rate,
                    deviation_rate=shop.deviation_rate,
                ),
                now,
                snapshot.config.scoring,
            )

            res = await session.execute(
                update(Shop)
                .where(Shop.id == shop_id)
                .where(Shop.version == shop.version)
                .values(shop_score=result.score, rating=result.rating, version=Shop.version + 1)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                logger.info(
                    f"[shop_score] shop_id={shop_id} score={result.score} base={result.base_score} "
                    f"bonus={result.bonus} counted={result.counted} reasons={result.reasons}"
                )
                return result
            logger.warning(f"[shop_score] version conflict shop_id={shop_id} attempt={attempt}/{_CAS_RETRIES}")

    logger.warning(f"[shop_score] giving up after {_CAS_RETRIES} conflicts shop_id={shop_id}")
    return None
