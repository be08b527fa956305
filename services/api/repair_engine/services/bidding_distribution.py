"""Bidding distribution.

Decides which shops may see and quote a bidding, and when.

Pipeline (filter, then tier, then sort):
1. Geo filter by the bidding radius; the radius grows x1.2 per step (rounded
   to 0.1 km, ceiling 200 km) until at least 3 shops pass every gate.
2. Hard gates: active + approved, no severity-4 violation in the lookback
   window, compliance >= floor (new shops exempt), qualification matrix,
   same-project completion in the last 90 days (new shops exempt).
3. Match score = shopScore x sceneWeight + deviation term + same-project
   bonus + response readiness.
4. Tiers: tier 1 sees the bidding immediately and exclusively until the
   tier-1 deadline; tier 2 from the deadline; tier 3 from the deadline while
   fewer than 3 active quotes exist.

Every eligible shop gets an assignment and may quote once its tier is visible.
Messages are capped per level (10 for L1/L2, 15 for L3/L4, tier 3 at 2).
Tier-1 shops are messaged at distribution time. Tier-2/3 shops are messaged
lazily, when they pull their bidding list or from the periodic sweep.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from repair_engine.models import (
    Bidding,
    BiddingAssignment,
    BiddingStatus,
    Order,
    OrderStatus,
    QualificationStatus,
    Quote,
    QuoteStatus,
    Shop,
    ShopStatus,
    ShopViolation,
)
from repair_engine.services.complexity import (
    ComplexityLevel,
    load_keyword_table,
    normalize_repair_items,
    resolve_complexity,
)
from repair_engine.services.engine_config import DEFAULT_CONFIG, ConfigSnapshot, DistributionRules
from repair_engine.services.notifications import MSG_BIDDING, send_merchant_message
from repair_engine.services.timeutil import as_utc, utcnow

logger = logging.getLogger("uvicorn.error")

_EARTH_RADIUS_KM = 6371.0
_UNKNOWN_SHOP_SCORE = 50.0

TIER_TITLES = {
    1: "New bidding to quote (tier 1)",
    2: "New bidding to quote (tier 2)",
    3: "New bidding to quote (tier 3)",
}


@dataclass
class ShopCandidate:
    """Shop facts needed by the distribution gates (DB-free)."""

    shop_id: int
    distance_km: float
    qualification_class: int | None
    service_categories: list[str] = field(default_factory=list)
    compliance_rate: float | None = None
    deviation_rate: float | None = None
    shop_score: float | None = None
    rating: float | None = None
    created_at: datetime | None = None
    has_severe_violation: bool = False
    # Repair line texts of orders completed within the history window.
    completed_item_texts: list[str] = field(default_factory=list)


@dataclass
class Eligibility:
    eligible: bool
    reason: str | None = None
    is_new_shop: bool = False
    priority_match: bool = False


@dataclass
class ScoredShop:
    candidate: ShopCandidate
    match_score: float
    tier: int
    is_new_shop: bool


@dataclass
class DistributionResult:
    """Notified shops per tier; `assigned` counts every shop allowed to quote."""

    bidding_id: int
    radius_km: float
    assigned: int = 0
    tier1: list[int] = field(default_factory=list)
    tier2: list[int] = field(default_factory=list)
    tier3: list[int] = field(default_factory=list)
    rejected: dict[str, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.tier1) + len(self.tier2) + len(self.tier3)


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp = p2 - p1
    dl = math.radians(lng2 - lng1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * _EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def expand_radius(radius_km: float, rules: DistributionRules) -> float:
    """Next search radius; always at least 0.1 km larger until the ceiling."""
    grown = max(round(radius_km + 0.1, 1), round(radius_km * (1 + rules.radius_growth_rate), 1))
    return min(rules.radius_ceiling_km, grown)


def is_new_shop(created_at: datetime | None, now: datetime, rules: DistributionRules) -> bool:
    if created_at is None:
        return False
    return (as_utc(now) - as_utc(created_at)).total_seconds() / 86400 <= rules.new_shop_days


def _norm(s: str) -> str:
    return " ".join(s.lower().split())


def categories_match(categories: Iterable[str], items: Iterable[str]) -> bool:
    """True when any declared category and any repair line contain one another."""
    cats = [_norm(c) for c in categories if c and c.strip()]
    lines = [_norm(i) for i in items if i and i.strip()]
    return any(c in line or line in c for c in cats for line in lines)


def qualification_allows(
    level: ComplexityLevel,
    qualification_class: int | None,
    categories: Iterable[str],
    items: Iterable[str],
) -> bool:
    """Qualification matrix: L4 needs class 1; L3 excludes class 3; L1/L2 admit
    class 3 only when its declared categories match the repair lines."""
    if qualification_class is None:
        return False
    if level == ComplexityLevel.L4:
        return qualification_class == 1
    if level == ComplexityLevel.L3:
        return qualification_class in (1, 2)
    if qualification_class in (1, 2):
        return True
    return qualification_class == 3 and categories_match(categories, items)


def same_project_match(
    items: list[str],
    top_items: list[str],
    completed_texts: list[str],
) -> tuple[bool, bool]:
    """(passed, priority): priority when a highest-level line was completed before."""
    if not items:
        return True, False
    history = " ".join(_norm(t) for t in completed_texts)
    if not history:
        return False, False
    for it in top_items:
        if _norm(it) and _norm(it) in history:
            return True, True
    for it in items:
        if _norm(it) and _norm(it) in history:
            return True, False
    return False, False


def evaluate_candidate(
    c: ShopCandidate,
    level: ComplexityLevel,
    items: list[str],
    top_items: list[str],
    now: datetime,
    rules: DistributionRules,
) -> Eligibility:
    new = is_new_shop(c.created_at, now, rules)
    if c.has_severe_violation:
        return Eligibility(False, "SEVERE_VIOLATION", new)
    if not new and c.compliance_rate is not None and c.compliance_rate < rules.compliance_floor:
        return Eligibility(False, "LOW_COMPLIANCE", new)
    if not qualification_allows(level, c.qualification_class, c.service_categories, items):
        return Eligibility(False, "QUALIFICATION", new)
    if new:
        return Eligibility(True, None, True, False)
    passed, priority = same_project_match(items, top_items, c.completed_item_texts)
    if not passed:
        return Eligibility(False, "NO_SAME_PROJECT", new)
    return Eligibility(True, None, False, priority)


def deviation_term(deviation_rate: float | None, rules: DistributionRules) -> float:
    d = deviation_rate if deviation_rate is not None else 0.0
    if d <= rules.deviation_full_max:
        return rules.deviation_term_max
    if d <= rules.deviation_zero_above:
        return max(0.0, rules.deviation_term_max - (d - rules.deviation_full_max))
    return 0.0


def effective_shop_score(c: ShopCandidate, new_shop: bool, rules: DistributionRules) -> float:
    if new_shop:
        return rules.new_shop_base_score
    if c.shop_score is not None:
        return min(100.0, max(0.0, c.shop_score))
    if c.rating is not None:
        return min(100.0, max(0.0, c.rating * 20))
    return _UNKNOWN_SHOP_SCORE


def compute_match_score(
    c: ShopCandidate,
    level: ComplexityLevel,
    *,
    new_shop: bool,
    priority_match: bool,
    rules: DistributionRules,
) -> float:
    scene_weight = rules.scene_weight_high if level.is_high else rules.scene_weight_low
    base = effective_shop_score(c, new_shop, rules) * scene_weight
    same_project = rules.same_project_priority_bonus if priority_match else rules.same_project_fallback_bonus
    total = base + deviation_term(c.deviation_rate, rules) + same_project + rules.response_readiness_bonus
    return round(total, 1)


def classify_tier(match_score: float, compliance_rate: float | None, new_shop: bool, rules: DistributionRules) -> int:
    compliance = 100.0 if new_shop else (compliance_rate or 0.0)
    if match_score >= rules.tier1_min_score and compliance >= rules.tier1_min_compliance:
        return 1
    if rules.tier2_min_score <= match_score < rules.tier1_min_score and compliance >= rules.tier2_min_compliance:
        return 2
    return 3


def assign_tiers(
    candidates: list[ShopCandidate],
    level: ComplexityLevel,
    items: list[str],
    top_items: list[str],
    now: datetime,
    rules: DistributionRules,
) -> tuple[list[ScoredShop], dict[str, int]]:
    """Gate, score and tier candidates; returns (eligible, rejection counts).

    Every eligible shop is returned, ordered by tier and then by match score
    descending. Notification caps are applied separately by `select_notified`.
    """
    rejected: dict[str, int] = {}
    scored: list[ScoredShop] = []
    for c in candidates:
        el = evaluate_candidate(c, level, items, top_items, now, rules)
        if not el.eligible:
            rejected[el.reason or "UNKNOWN"] = rejected.get(el.reason or "UNKNOWN", 0) + 1
            continue
        score = compute_match_score(c, level, new_shop=el.is_new_shop, priority_match=el.priority_match, rules=rules)
        scored.append(
            ScoredShop(
                candidate=c,
                match_score=score,
                tier=classify_tier(score, c.compliance_rate, el.is_new_shop, rules),
                is_new_shop=el.is_new_shop,
            )
        )

    scored.sort(key=lambda s: (s.tier, -s.match_score, s.candidate.distance_km))
    return scored, rejected


def select_notified(scored: list[ScoredShop], level: ComplexityLevel, rules: DistributionRules) -> list[ScoredShop]:
    """Shops that get a bidding message.

    Tier 1 and tier 2 share the level's cap (tier 1 first); tier 3 is capped
    at `tier3_max_shops` on its own. Input must be ordered as `assign_tiers` returns it.
    """
    cap = rules.max_notified_high if level.is_high else rules.max_notified_low
    tier1 = [s for s in scored if s.tier == 1][:cap]
    tier2 = [s for s in scored if s.tier == 2][: max(0, cap - len(tier1))]
    tier3 = [s for s in scored if s.tier == 3][: rules.tier3_max_shops]
    return tier1 + tier2 + tier3


def is_visible(
    assignment: Any,
    bidding: Any,
    active_quotes: int,
    now: datetime,
    rules: DistributionRules = DEFAULT_CONFIG.distribution,
) -> bool:
    """Whether an assigned shop may currently see (and quote) the bidding.

    Tier 2 opens exactly at the tier-1 deadline; tier 3 additionally needs
    fewer than `tier3_open_below_quotes` active quotes.
    """
    if bidding.status != BiddingStatus.OPEN.value:
        return False
    if bidding.expires_at is not None and as_utc(now) >= as_utc(bidding.expires_at):
        return False
    if assignment.tier == 1:
        return True
    window_open = bidding.tier1_deadline is None or as_utc(now) >= as_utc(bidding.tier1_deadline)
    if assignment.tier == 2:
        return window_open
    if assignment.tier == 3:
        return window_open and active_quotes < rules.tier3_open_below_quotes
    return False


# ============================================================
# DB-backed operations
# ============================================================


async def _load_candidates(
    session: AsyncSession,
    bidding: Bidding,
    radius_km: float,
    now: datetime,
    rules: DistributionRules,
) -> list[ShopCandidate]:
    shops = (
        await session.execute(
            select(Shop)
            .where(Shop.status == ShopStatus.ACTIVE.value)
            .where(Shop.qualification_status == QualificationStatus.APPROVED.value)
            .where(Shop.latitude.is_not(None))
            .where(Shop.longitude.is_not(None))
        )
    ).scalars().all()

    in_range: list[tuple[Shop, float]] = []
    for s in shops:
        d = haversine_km(bidding.latitude, bidding.longitude, s.latitude, s.longitude)
        if d <= radius_km:
            in_range.append((s, d))
    if not in_range:
        return []

    shop_ids = [s.id for s, _ in in_range]
    since_violation = now - timedelta(days=rules.violation_lookback_days)
    severe = set(
        (
            await session.execute(
                select(ShopViolation.shop_id)
                .where(ShopViolation.shop_id.in_(shop_ids))
                .where(ShopViolation.severity >= rules.violation_severity)
                .where(ShopViolation.created_at >= since_violation)
            )
        ).scalars().all()
    )

    history = await _completed_item_texts(session, shop_ids, now - timedelta(days=rules.history_days))

    return [
        ShopCandidate(
            shop_id=s.id,
            distance_km=d,
            qualification_class=s.qualification_class,
            service_categories=list(s.service_categories or []),
            compliance_rate=s.compliance_rate,
            deviation_rate=s.deviation_rate,
            shop_score=s.shop_score,
            rating=s.rating,
            created_at=s.created_at,
            has_severe_violation=s.id in severe,
            completed_item_texts=history.get(s.id, []),
        )
        for s, d in in_range
    ]


async def _completed_item_texts(
    session: AsyncSession,
    shop_ids: list[int],
    since: datetime,
) -> dict[int, list[str]]:
    rows = (
        await session.execute(
            select(Order.shop_id, Quote.items)
            .join(Quote, Order.quote_id == Quote.id)
            .where(Order.shop_id.in_(shop_ids))
            .where(Order.status == OrderStatus.COMPLETED.value)
            .where(Order.completed_at >= since)
        )
    ).all()
    out: dict[int, list[str]] = {}
    for shop_id, items in rows:
        out.setdefault(shop_id, []).extend(normalize_repair_items(items or []))
    return out


async def count_active_quotes(session: AsyncSession, bidding_id: int) -> int:
    n = (
        await session.execute(
            select(func.count(Quote.id))
            .where(Quote.bidding_id == bidding_id)
            .where(Quote.status == QuoteStatus.ACTIVE.value)
        )
    ).scalar_one()
    return int(n or 0)


async def distribute_bidding(
    session: AsyncSession,
    bidding: Bidding,
    snapshot: ConfigSnapshot,
    now: datetime | None = None,
) -> DistributionResult:
    """Compute and persist assignments for a bidding, replacing earlier ones.

    Tier-1 shops are messaged immediately.
    """
    now = now or utcnow()
    rules = snapshot.config.distribution
    level = ComplexityLevel(bidding.complexity_level)
    items = list(bidding.repair_items or [])
    table = await load_keyword_table(session)
    top_items = resolve_complexity(items, table).top_items

    radius = min(float(bidding.range_km or 0) or 1.0, rules.radius_ceiling_km)
    # Shops and their history are loaded once for the widest radius.
    reachable = await _load_candidates(session, bidding, rules.radius_ceiling_km, now, rules)
    while True:
        candidates = [c for c in reachable if c.distance_km <= radius]
        scored, rejected = assign_tiers(candidates, level, items, top_items, now, rules)
        if len(scored) >= rules.min_shop_count or radius >= rules.radius_ceiling_km:
            break
        radius = expand_radius(radius, rules)
        logger.info(f"[distribution] bidding_id={bidding.id} expanding radius to {radius}km (found {len(scored)})")

    await session.execute(delete(BiddingAssignment).where(BiddingAssignment.bidding_id == bidding.id))

    notified = {s.candidate.shop_id for s in select_notified(scored, level, rules)}
    result = DistributionResult(bidding_id=bidding.id, radius_km=radius, assigned=len(scored), rejected=rejected)
    for s in scored:
        notify = s.candidate.shop_id in notified
        session.add(
            BiddingAssignment(
                bidding_id=bidding.id,
                shop_id=s.candidate.shop_id,
                tier=s.tier,
                match_score=s.match_score,
                notify=notify,
                notified_at=now if notify and s.tier == 1 else None,
                created_at=now,
            )
        )
        if notify:
            getattr(result, f"tier{s.tier}").append(s.candidate.shop_id)

    if bidding.tier1_deadline is None:
        bidding.tier1_deadline = now + timedelta(minutes=rules.tier1_exclusive_minutes)
    bidding.distributed_at = now
    bidding.range_km = radius
    await session.flush()

    for shop_id in result.tier1:
        await send_merchant_message(
            session,
            shop_id,
            MSG_BIDDING,
            TIER_TITLES[1],
            "A new repair bidding is waiting for your quote.",
            related_id=bidding.id,
            now=now,
        )

    logger.info(
        f"[distribution] bidding_id={bidding.id} level={level.value} radius={radius}km "
        f"tier1={len(result.tier1)} tier2={len(result.tier2)} tier3={len(result.tier3)} assigned={result.assigned} rejected={rejected}"
    )
    return result


async def _notify_due(
    session: AsyncSession,
    rows: list[tuple[BiddingAssignment, Bidding]],
    now: datetime,
    rules: DistributionRules,
) -> int:
    sent = 0
    quote_counts: dict[int, int] = {}
    for assignment, bidding in rows:
        if bidding.id not in quote_counts:
            quote_counts[bidding.id] = await count_active_quotes(session, bidding.id)
        if not is_visible(assignment, bidding, quote_counts[bidding.id], now, rules):
            continue
        claimed = await session.execute(
            update(BiddingAssignment)
            .where(BiddingAssignment.id == assignment.id)
            .where(BiddingAssignment.notified_at.is_(None))
            .values(notified_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            continue
        await send_merchant_message(
            session,
            assignment.shop_id,
            MSG_BIDDING,
            TIER_TITLES.get(assignment.tier, TIER_TITLES[3]),
            "A repair bidding is now open for your quote.",
            related_id=bidding.id,
            now=now,
        )
        sent += 1
    return sent


def _pending_notifications_query(now: datetime):
    return (
        select(BiddingAssignment, Bidding)
        .join(Bidding, BiddingAssignment.bidding_id == Bidding.id)
        .where(BiddingAssignment.notified_at.is_(None))
        .where(BiddingAssignment.notify.is_(True))
        .where(BiddingAssignment.tier.in_((2, 3)))
        .where(Bidding.status == BiddingStatus.OPEN.value)
        .where(Bidding.tier1_deadline <= now)
    )


async def notify_if_window_open(
    session: AsyncSession,
    shop_id: int,
    snapshot: ConfigSnapshot,
    now: datetime | None = None,
) -> int:
    """Message a shop about tier-2/3 biddings whose window has opened. Returns messages sent."""
    now = now or utcnow()
    rows = (
        await session.execute(_pending_notifications_query(now).where(BiddingAssignment.shop_id == shop_id))
    ).all()
    sent = await _notify_due(session, [(a, b) for a, b in rows], now, snapshot.config.distribution)
    if sent:
        logger.info(f"[distribution] lazy notify shop_id={shop_id} sent={sent}")
    return sent


async def sweep_pending_notifications(
    session: AsyncSession,
    snapshot: ConfigSnapshot,
    now: datetime | None = None,
) -> int:
    """Message every shop whose tier-2/3 window has opened (cron)."""
    now = now or utcnow()
    rows = (await session.execute(_pending_notifications_query(now))).all()
    sent = await _notify_due(session, [(a, b) for a, b in rows], now, snapshot.config.distribution)
    logger.info(f"[distribution] sweep sent={sent} checked={len(rows)}")
    return sent


async def get_assignment(session: AsyncSession, bidding_id: int, shop_id: int) -> BiddingAssignment | None:
    return (
        await session.execute(
            select(BiddingAssignment)
            .where(BiddingAssignment.bidding_id == bidding_id)
            .where(BiddingAssignment.shop_id == shop_id)
        )
    ).scalar_one_or_none()


async def list_visible_biddings_for_shop(
    session: AsyncSession,
    shop_id: int,
    snapshot: ConfigSnapshot,
    now: datetime | None = None,
) -> list[tuple[Bidding, BiddingAssignment]]:
    """Open biddings the shop can currently see, newest first.

    Pulling the list also delivers any tier-2/3 messages that are now due.
    """
    now = now or utcnow()
    await notify_if_window_open(session, shop_id, snapshot, now)

    rows = (
        await session.execute(
            select(Bidding, BiddingAssignment)
            .join(BiddingAssignment, BiddingAssignment.bidding_id == Bidding.id)
            .where(BiddingAssignment.shop_id == shop_id)
            .where(Bidding.status == BiddingStatus.OPEN.value)
            .order_by(Bidding.id.desc())
        )
    ).all()

    out: list[tuple[Bidding, BiddingAssignment]] = []
    for bidding, assignment in rows:
        active = await count_active_quotes(session, bidding.id)
        if is_visible(assignment, bidding, active, now, snapshot.config.distribution):
            out.append((bidding, assignment))
    return out
