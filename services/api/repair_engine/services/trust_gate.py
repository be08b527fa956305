"""Account trust and antifraud gate.

Trust tier is a composite of:
- Account age
- Completed orders
- Valid reviews written
- Blacklist membership (forces high_risk)

Tiers and their weights (used to weight reviews and likes):
- high_risk (0): weight 0, no rewards
- new_user (1): weight 0.3, halved and capped rewards
- normal_active (2): weight 1.0
- core_trusted (3): weight 2.0

Lookups fail open by default (not blocked / new_user) so an infrastructure
fault does not block the marketplace; see Settings.trust_fail_open.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import IntEnum

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from repair_engine.models import (
    BlacklistEntry,
    BlacklistType,
    Order,
    OrderStatus,
    Review,
    ReviewStatus,
    TransactionRecord,
    TransactionType,
    User,
)
from repair_engine.services.engine_config import AntifraudRules, TrustRules
from repair_engine.services.errors import PolicyRejected
from repair_engine.services.timeutil import as_utc, month_key, parse_month, utcnow
from repair_engine.settings import get_settings

logger = logging.getLogger("uvicorn.error")


class TrustTier(IntEnum):
    HIGH_RISK = 0
    NEW_USER = 1
    NORMAL_ACTIVE = 2
    CORE_TRUSTED = 3

    @property
    def key(self) -> str:
        return self.name.lower()


@dataclass
class BlacklistResult:
    blocked: bool
    reason: str | None = None


@dataclass
class AccountStats:
    """Inputs to the trust tier rule."""

    account_age_days: float
    completed_orders: int
    valid_reviews: int
    blacklisted: bool = False


@dataclass
class TrustAssessment:
    tier: TrustTier
    weight: float
    reasons: list[str] = field(default_factory=list)


@dataclass
class RewardEligibility:
    eligible: bool
    multiplier: float
    monthly_cap: float | None = None


def compute_trust_tier(stats: AccountStats, rules: TrustRules) -> TrustAssessment:
    """Map account stats to a trust tier with compact reason codes."""
    weights = rules.weights
    if stats.blacklisted:
        return TrustAssessment(TrustTier.HIGH_RISK, weights["high_risk"], ["BLACKLISTED"])

    reasons = [f"ORDERS_{stats.completed_orders}", f"REVIEWS_{stats.valid_reviews}"]

    if (
        stats.account_age_days <= rules.new_user_days
        and stats.completed_orders <= rules.new_user_max_orders
        and stats.valid_reviews == 0
    ):
        reasons.append("NEW_ACCOUNT")
        return TrustAssessment(TrustTier.NEW_USER, weights["new_user"], reasons)

    if stats.completed_orders >= rules.core_min_orders and stats.valid_reviews >= rules.core_min_reviews:
        return TrustAssessment(TrustTier.CORE_TRUSTED, weights["core_trusted"], reasons)

    if stats.completed_orders >= rules.active_min_orders and stats.valid_reviews >= rules.active_min_reviews:
        return TrustAssessment(TrustTier.NORMAL_ACTIVE, weights["normal_active"], reasons)

    reasons.append("LOW_HISTORY")
    return TrustAssessment(TrustTier.NEW_USER, weights["new_user"], reasons)


def fallback_assessment(rules: TrustRules) -> TrustAssessment:
    """Conservative default substituted when the lookup itself fails."""
    return TrustAssessment(TrustTier.NEW_USER, rules.weights["new_user"], ["LOOKUP_FAILED"])


def reward_eligibility(tier: TrustTier, rules: TrustRules) -> RewardEligibility:
    if tier == TrustTier.HIGH_RISK:
        return RewardEligibility(eligible=False, multiplier=0.0)
    if tier == TrustTier.NEW_USER:
        return RewardEligibility(
            eligible=True,
            multiplier=rules.new_user_reward_multiplier,
            monthly_cap=rules.new_user_monthly_reward_cap,
        )
    return RewardEligibility(eligible=True, multiplier=1.0)


async def _find_blacklist_hit(
    session: AsyncSession,
    user_id: int | None,
    phone: str | None,
    ip: str | None,
) -> BlacklistResult:
    # Checked in order: user id, phone, IP.
    probes: list[tuple[str, str]] = []
    if user_id is not None:
        probes.append((BlacklistType.USER_ID.value, str(user_id)))
    if phone:
        probes.append((BlacklistType.PHONE.value, phone.strip()))
    if ip:
        probes.append((BlacklistType.IP.value, ip.strip()))

    for value_type, value in probes:
        hit = (
            await session.execute(
                select(BlacklistEntry.reason)
                .where(BlacklistEntry.value_type == value_type)
                .where(BlacklistEntry.value == value)
                .limit(1)
            )
        ).first()
        if hit is not None:
            return BlacklistResult(blocked=True, reason=hit[0] or f"{value_type} blacklisted")
    return BlacklistResult(blocked=False)


async def check_blacklist(
    session: AsyncSession,
    user_id: int | None,
    phone: str | None = None,
    ip: str | None = None,
) -> BlacklistResult:
    """Blacklist lookup across user id / phone / IP."""
    try:
        return await _find_blacklist_hit(session, user_id, phone, ip)
    except SQLAlchemyError:
        if not get_settings().trust_fail_open:
            raise
        logger.exception(f"[trust_gate] blacklist lookup failed user_id={user_id}; failing open")
        return BlacklistResult(blocked=False)


async def load_account_stats(session: AsyncSession, user_id: int, now: datetime | None = None) -> AccountStats:
    now = now or utcnow()
    user = await session.get(User, user_id)
    if user is None:
        return AccountStats(account_age_days=0, completed_orders=0, valid_reviews=0)

    completed = (
        await session.execute(
            select(func.count(Order.id))
            .where(Order.user_id == user_id)
            .where(Order.status == OrderStatus.COMPLETED.value)
        )
    ).scalar_one()
    reviews = (
        await session.execute(
            select(func.count(Review.id))
            .where(Review.user_id == user_id)
            .where(Review.is_valid.is_(True))
            .where(Review.status == ReviewStatus.VISIBLE.value)
        )
    ).scalar_one()
    blocked = await _find_blacklist_hit(session, user_id, user.phone, None)

    age_days = (now - as_utc(user.created_at)).total_seconds() / 86400 if user.created_at else 0.0
    return AccountStats(
        account_age_days=age_days,
        completed_orders=int(completed or 0),
        valid_reviews=int(reviews or 0),
        blacklisted=blocked.blocked,
    )


async def get_trust_assessment(
    session: AsyncSession,
    user_id: int,
    rules: TrustRules,
    now: datetime | None = None,
) -> TrustAssessment:
    """Trust tier for a user; fails open to new_user unless configured otherwise."""
    try:
        stats = await load_account_stats(session, user_id, now)
    except SQLAlchemyError:
        if not get_settings().trust_fail_open:
            raise
        logger.exception(f"[trust_gate] trust lookup failed user_id={user_id}; failing open")
        return fallback_assessment(rules)
    return compute_trust_tier(stats, rules)


async def check_order_rate_limits(
    session: AsyncSession,
    user_id: int,
    shop_id: int,
    rules: AntifraudRules,
    now: datetime | None = None,
) -> None:
    """Reject order creation that exceeds same-shop or new-account limits.

    Raises:
        PolicyRejected: SAME_SHOP_LIMIT or NEW_ACCOUNT_ORDER_LIMIT.
    """
    now = now or utcnow()
    since = now - timedelta(days=rules.same_shop_window_days)
    same_shop = (
        await session.execute(
            select(func.count(Order.id))
            .where(Order.user_id == user_id)
            .where(Order.shop_id == shop_id)
            .where(Order.status != OrderStatus.CANCELLED.value)
            .where(Order.created_at >= since)
        )
    ).scalar_one()
    if int(same_shop or 0) >= rules.same_shop_max_orders:
        raise PolicyRejected(
            "SAME_SHOP_LIMIT",
            f"At most {rules.same_shop_max_orders} orders with the same shop within {rules.same_shop_window_days} days",
            {"shop_id": shop_id},
        )

    user = await session.get(User, user_id)
    if user is not None and user.created_at is not None:
        age_days = (now - as_utc(user.created_at)).total_seconds() / 86400
        if age_days <= rules.new_account_days:
            total = (
                await session.execute(
                    select(func.count(Order.id))
                    .where(Order.user_id == user_id)
                    .where(Order.status != OrderStatus.CANCELLED.value)
                )
            ).scalar_one()
            if int(total or 0) >= rules.new_account_max_orders:
                raise PolicyRejected(
                    "NEW_ACCOUNT_ORDER_LIMIT",
                    f"New accounts may place at most {rules.new_account_max_orders} orders",
                    None,
                )


async def rewards_paid_this_month(session: AsyncSession, user_id: int, now: datetime | None = None) -> float:
    """Sum of immediate review rewards credited to a user in the current month."""
    start, end = parse_month(month_key(now or utcnow()))
    total = (
        await session.execute(
            select(func.coalesce(func.sum(TransactionRecord.amount), 0.0))
            .where(TransactionRecord.user_id == user_id)
            .where(TransactionRecord.type == TransactionType.REBATE.value)
            .where(TransactionRecord.created_at >= start)
            .where(TransactionRecord.created_at < end)
        )
    ).scalar_one()
    return float(total or 0.0)


_SIMILARITY_MIN_LEN = 10


def _char_set(text: str) -> set[str]:
    return {ch for ch in text if not ch.isspace()}


def text_similarity(a: str, b: str) -> float:
    """Dice coefficient over distinct non-space characters (0..1)."""
    sa, sb = _char_set(a), _char_set(b)
    if not sa or not sb:
        return 0.0
    return 2 * len(sa & sb) / (len(sa) + len(sb))


def check_content_similarity(text: str, recent_texts: list[str], threshold: float) -> tuple[bool, float]:
    """Return (passes, max_similarity) against recent review texts.

    Texts shorter than the similarity floor always pass; length rules belong
    to the review validator.
    """
    if len(text.strip()) < _SIMILARITY_MIN_LEN:
        return True, 0.0
    best = 0.0
    for other in recent_texts:
        sim = text_similarity(text, other)
        if sim > best:
            best = sim
        if best >= threshold:
            return False, best
    return True, best


async def load_recent_review_texts(session: AsyncSession, limit: int, exclude_user_id: int | None = None) -> list[str]:
    q = select(Review.content).where(Review.content != "").order_by(Review.id.desc()).limit(limit)
    if exclude_user_id is not None:
        q = q.where(Review.user_id != exclude_user_id)
    rows = (await session.execute(q)).scalars().all()
    return [r for r in rows if r]


# ============================================================
# Blacklist maintenance (operators)
# ============================================================


async def list_blacklist(session: AsyncSession, *, limit: int = 200) -> list[BlacklistEntry]:
    rows = (
        await session.execute(select(BlacklistEntry).order_by(BlacklistEntry.id.desc()).limit(limit))
    ).scalars().all()
    return list(rows)


async def add_blacklist_entry(
    session: AsyncSession,
    value_type: BlacklistType,
    value: str,
    reason: str | None = None,
) -> BlacklistEntry:
    """Insert an entry, or return the existing one for the same (type, value)."""
    value = value.strip()
    existing = (
        await session.execute(
            select(BlacklistEntry)
            .where(BlacklistEntry.value_type == value_type.value)
            .where(BlacklistEntry.value == value)
        )
    ).scalar_one_or_none()
    if existing is not None:
        return existing
    entry = BlacklistEntry(value_type=value_type.value, value=value, reason=reason)
    session.add(entry)
    await session.flush()
    logger.info(f"[trust_gate] blacklisted {value_type.value}={value!r}")
    return entry


async def remove_blacklist_entry(session: AsyncSession, entry_id: int) -> bool:
    entry = await session.get(BlacklistEntry, entry_id)
    if entry is None:
        return False
    await session.delete(entry)
    await session.flush()
    logger.info(f"[trust_gate] removed blacklist entry_id={entry_id}")
    return True
