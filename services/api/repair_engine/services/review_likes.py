"""Reading sessions, likes and decision weights.

Reading time is reported per viewing session and capped (180 s per session,
300 s lifetime per reader and review). A like counts toward the monthly
like bonus when the reader spent at least 30 s on the review and has a
non-zero trust weight.

Like weight = trust weight x vehicle match (2.0 same plate, 0.5 otherwise).

A like is classified `post_verify` when the liker completed a different
order within the last 30 days, had read the review in the 7 days before
that order was created, and the brands do not conflict.

Decision weight (content conversion) = time x dwell x match x value.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from repair_engine.models import (
    Bidding,
    LikeType,
    Order,
    OrderStatus,
    ReadingSession,
    Review,
    ReviewLike,
    ReviewStatus,
    UserVehicle,
)
from repair_engine.schemas.evidence import VehicleInfo, load_vehicle_info
from repair_engine.services.engine_config import ConfigSnapshot, LikeRules
from repair_engine.services.errors import Conflict, NotFound, PolicyRejected
from repair_engine.services.timeutil import as_utc, utcnow
from repair_engine.services.trust_gate import get_trust_assessment

logger = logging.getLogger("uvicorn.error")

OWNER_VERIFY_BADGE_MIN = 10


@dataclass
class ReadingResult:
    added: int
    total: int
    capped: bool = False


@dataclass
class LikeStats:
    like_count: int = 0
    post_verify_count: int = 0
    valid_bonus_count: int = 0

    @property
    def has_owner_verify_badge(self) -> bool:
        return self.post_verify_count >= OWNER_VERIFY_BADGE_MIN


@dataclass
class ConversionCandidate:
    review_id: int
    author_id: int
    weight: float
    breakdown: dict[str, float] = field(default_factory=dict)


def plates_match(a: str | None, b: str | None) -> bool:
    pa = "".join((a or "").split()).upper()
    pb = "".join((b or "").split()).upper()
    return bool(pa) and pa == pb


def brands_conflict(a: str | None, b: str | None) -> bool:
    """True only when both brands are known and differ."""
    ba, bb = (a or "").strip(), (b or "").strip()
    return bool(ba) and bool(bb) and ba != bb


def capped_reading_seconds(seconds: float, current_total: int, rules: LikeRules) -> int:
    """Seconds to add for one session given the reader's current lifetime total."""
    sec = min(max(0, int(seconds)), rules.session_cap_seconds)
    remaining = max(0, rules.lifetime_cap_seconds - current_total)
    return min(sec, remaining)


def like_weight(trust_weight: float, plate_match: bool, rules: LikeRules) -> float:
    multiplier = rules.plate_match_multiplier if plate_match else rules.plate_mismatch_multiplier
    return round(trust_weight * multiplier, 4)


def is_like_valid_for_bonus(reading_seconds: int, trust_weight: float, rules: LikeRules) -> bool:
    return reading_seconds >= rules.min_reading_seconds and trust_weight > 0


# ============================================================
# Decision weight (content conversion)
# ============================================================


def decision_time_weight(like_at: datetime, order_created_at: datetime, rules: LikeRules) -> float:
    hours = (as_utc(order_created_at) - as_utc(like_at)).total_seconds() / 3600
    for max_hours, weight in rules.decision_time_steps:
        if hours <= max_hours:
            return weight
    return 0.0


def dwell_weight(reading_seconds: int, rules: LikeRules) -> float:
    for min_seconds, weight in rules.dwell_steps:
        if reading_seconds >= min_seconds:
            return weight
    return 0.0


def match_weight(order_vehicle: VehicleInfo, review_vehicle: VehicleInfo, rules: LikeRules) -> float:
    if plates_match(order_vehicle.plate_number, review_vehicle.plate_number):
        return rules.match_plate_weight
    if order_vehicle.brand and review_vehicle.brand and order_vehicle.brand == review_vehicle.brand:
        return rules.match_brand_weight
    return rules.match_none_weight


def content_value_weight(quality_level: int, rules: LikeRules) -> float:
    return rules.content_value_weights.get(str(quality_level), 0.0)


def decision_weight(
    *,
    like_at: datetime,
    order_created_at: datetime,
    reading_seconds: int,
    order_vehicle: VehicleInfo,
    review_vehicle: VehicleInfo,
    quality_level: int,
    rules: LikeRules,
) -> tuple[float, dict[str, float]]:
    """Return (weight, breakdown) for one like against one later order."""
    breakdown = {
        "decision_time": decision_time_weight(like_at, order_created_at, rules),
        "content_stay": dwell_weight(reading_seconds, rules),
        "content_match": match_weight(order_vehicle, review_vehicle, rules),
        "content_value": content_value_weight(quality_level, rules),
    }
    weight = 1.0
    for v in breakdown.values():
        weight *= v
    return weight, breakdown


def split_conversion_pool(
    candidates: list[ConversionCandidate],
    pool: float,
    top_n: int = 10,
) -> list[tuple[ConversionCandidate, float]]:
    """Split the pool proportionally among the top-N candidates by weight."""
    ranked = sorted((c for c in candidates if c.weight > 0), key=lambda c: c.weight, reverse=True)[:top_n]
    total = sum(c.weight for c in ranked)
    if total <= 0 or pool <= 0:
        return []
    return [(c, round(c.weight / total * pool, 2)) for c in ranked]


# ============================================================
# DB-backed operations
# ============================================================


async def total_reading_seconds(session: AsyncSession, user_id: int, review_id: int) -> int:
    total = (
        await session.execute(
            select(func.coalesce(func.sum(ReadingSession.effective_seconds), 0))
            .where(ReadingSession.review_id == review_id)
            .where(ReadingSession.user_id == user_id)
        )
    ).scalar_one()
    return int(total or 0)


async def record_reading(
    session: AsyncSession,
    user_id: int,
    review_id: int,
    seconds: float,
    rules: LikeRules,
    saw_at: datetime | None = None,
) -> ReadingResult:
    """Record one reading session, applying the per-session and lifetime caps."""
    if await session.get(Review, review_id) is None:
        raise NotFound("REVIEW_NOT_FOUND", f"Review {review_id} not found", {"review_id": review_id})

    current = await total_reading_seconds(session, user_id, review_id)
    to_add = capped_reading_seconds(seconds, current, rules)
    if to_add <= 0:
        return ReadingResult(added=0, total=current, capped=int(seconds) > 0)

    session.add(
        ReadingSession(
            review_id=review_id,
            user_id=user_id,
            effective_seconds=to_add,
            saw_at=saw_at or utcnow(),
        )
    )
    await session.flush()
    return ReadingResult(added=to_add, total=current + to_add, capped=to_add < int(seconds))


async def vehicle_for_order(session: AsyncSession, order_id: int) -> VehicleInfo:
    raw = (
        await session.execute(
            select(Bidding.vehicle_info).join(Order, Order.bidding_id == Bidding.id).where(Order.id == order_id)
        )
    ).scalar_one_or_none()
    return load_vehicle_info(raw)


async def _liker_plate(session: AsyncSession, user_id: int) -> str | None:
    """The liker's own plate: registered vehicle first, then the latest completed order."""
    plate = (
        await session.execute(
            select(UserVehicle.plate_number)
            .where(UserVehicle.user_id == user_id)
            .where(UserVehicle.plate_number.is_not(None))
            .order_by(UserVehicle.is_default.desc(), UserVehicle.id.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if plate:
        return plate

    raw = (
        await session.execute(
            select(Bidding.vehicle_info)
            .join(Order, Order.bidding_id == Bidding.id)
            .where(Order.user_id == user_id)
            .where(Order.status == OrderStatus.COMPLETED.value)
            .order_by(Order.completed_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    return load_vehicle_info(raw).plate_number


async def is_post_verify(
    session: AsyncSession,
    user_id: int,
    review: Review,
    review_vehicle: VehicleInfo,
    now: datetime,
    rules: LikeRules,
) -> bool:
    since = now - timedelta(days=rules.post_verify_window_days)
    orders = (
        await session.execute(
            select(Order, Bidding.vehicle_info)
            .join(Bidding, Order.bidding_id == Bidding.id)
            .where(Order.user_id == user_id)
            .where(Order.status == OrderStatus.COMPLETED.value)
            .where(Order.completed_at >= since)
            .where(Order.completed_at <= now)
            .where(Order.id != review.order_id)
        )
    ).all()

    for order, raw_vehicle in orders:
        read_from = order.created_at - timedelta(days=rules.post_verify_read_lookback_days)
        browsed = (
            await session.execute(
                select(ReadingSession.id)
                .where(ReadingSession.review_id == review.id)
                .where(ReadingSession.user_id == user_id)
                .where(ReadingSession.saw_at >= read_from)
                .where(ReadingSession.saw_at < order.created_at)
                .limit(1)
            )
        ).scalar_one_or_none()
        if browsed is None:
            continue
        if brands_conflict(review_vehicle.brand, load_vehicle_info(raw_vehicle).brand):
            continue
        return True
    return False


async def like_review(
    session: AsyncSession,
    user_id: int,
    review_id: int,
    snapshot: ConfigSnapshot,
    now: datetime | None = None,
) -> ReviewLike:
    """Like a review once per lifetime.

    Raises:
        NotFound: REVIEW_NOT_FOUND.
        PolicyRejected: REVIEW_HIDDEN or SELF_LIKE.
        Conflict: ALREADY_LIKED.
    """
    now = now or utcnow()
    rules = snapshot.config.likes

    review = await session.get(Review, review_id)
    if review is None:
        raise NotFound("REVIEW_NOT_FOUND", f"Review {review_id} not found", {"review_id": review_id})
    if review.status != ReviewStatus.VISIBLE.value:
        raise PolicyRejected("REVIEW_HIDDEN", "Review is hidden", {"review_id": review_id})
    if review.user_id == user_id:
        raise PolicyRejected("SELF_LIKE", "You cannot like your own review", {"review_id": review_id})

    existing = (
        await session.execute(
            select(ReviewLike.id).where(ReviewLike.review_id == review_id).where(ReviewLike.user_id == user_id)
        )
    ).scalar_one_or_none()
    if existing is not None:
        raise Conflict("ALREADY_LIKED", "You already liked this review", {"review_id": review_id})

    reading = await total_reading_seconds(session, user_id, review_id)
    trust = await get_trust_assessment(session, user_id, snapshot.config.trust, now)

    review_vehicle = await vehicle_for_order(session, review.order_id)
    plate_match = plates_match(await _liker_plate(session, user_id), review_vehicle.plate_number)
    valid = is_like_valid_for_bonus(reading, trust.weight, rules)

    like_type = LikeType.NORMAL
    if valid and await is_post_verify(session, user_id, review, review_vehicle, now, rules):
        like_type = LikeType.POST_VERIFY

    like = ReviewLike(
        review_id=review_id,
        user_id=user_id,
        like_type=like_type.value,
        is_valid_for_bonus=valid,
        weight_coefficient=like_weight(trust.weight, plate_match, rules),
        reading_seconds=reading,
        is_vehicle_match=plate_match,
        created_at=now,
    )
    session.add(like)
    try:
        await session.flush()
    except IntegrityError as e:
        raise Conflict("ALREADY_LIKED", "You already liked this review", {"review_id": review_id}) from e

    logger.info(
        f"[likes] review_id={review_id} user_id={user_id} type={like_type.value} valid={valid} "
        f"reading={reading}s trust={trust.tier.key} weight={like.weight_coefficient}"
    )
    return like


async def get_like_stats(session: AsyncSession, review_ids: list[int]) -> dict[int, LikeStats]:
    if not review_ids:
        return {}
    rows = (
        await session.execute(
            select(ReviewLike.review_id, ReviewLike.like_type, ReviewLike.is_valid_for_bonus).where(
                ReviewLike.review_id.in_(review_ids)
            )
        )
    ).all()
    out: dict[int, LikeStats] = {}
    for review_id, like_type, valid in rows:
        s = out.setdefault(review_id, LikeStats())
        s.like_count += 1
        if like_type == LikeType.POST_VERIFY.value:
            s.post_verify_count += 1
        if valid:
            s.valid_bonus_count += 1
    return out


async def conversion_candidates(
    session: AsyncSession,
    order: Order,
    rules: LikeRules,
) -> list[ConversionCandidate]:
    """Reviews the order's owner liked (validly, normal type) in the week before ordering."""
    since = order.created_at - timedelta(days=rules.conversion_lookback_days)
    likes = (
        await session.execute(
            select(ReviewLike, Review)
            .join(Review, ReviewLike.review_id == Review.id)
            .where(ReviewLike.user_id == order.user_id)
            .where(ReviewLike.is_valid_for_bonus.is_(True))
            .where(ReviewLike.like_type == LikeType.NORMAL.value)
            .where(ReviewLike.created_at >= since)
            .where(ReviewLike.created_at < order.created_at)
            .where(Review.status == ReviewStatus.VISIBLE.value)
        )
    ).all()
    if not likes:
        return []

    order_vehicle = await vehicle_for_order(session, order.id)
    out: list[ConversionCandidate] = []
    for like, review in likes:
        reading = await total_reading_seconds(session, order.user_id, review.id)
        if reading < rules.min_reading_seconds:
            continue
        weight, breakdown = decision_weight(
            like_at=like.created_at,
            order_created_at=order.created_at,
            reading_seconds=reading,
            order_vehicle=order_vehicle,
            review_vehicle=await vehicle_for_order(session, review.order_id),
            quality_level=review.content_quality_level,
            rules=rules,
        )
        if weight > 0:
            out.append(ConversionCandidate(review.id, review.user_id, weight, breakdown))
    return out
