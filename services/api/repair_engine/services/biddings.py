"""Bidding and order lifecycle.

Bidding: open -> closed (shop selected, ended by the owner, or expired).
Quote: active -> accepted | invalidated.
Order: pending -> accepted -> awaiting_confirmation -> completed, or
cancelled while pending / shortly after acceptance.

Selecting a quote creates the order with its reward preview frozen at that
moment; the preview is never recomputed afterwards.
"""

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from repair_engine.models import (
    Bidding,
    BiddingStatus,
    Order,
    OrderStatus,
    Quote,
    QuoteStatus,
    Shop,
    ShopViolation,
)
from repair_engine.schemas.evidence import QuoteItem, VehicleInfo, load_vehicle_info
from repair_engine.services.bidding_distribution import (
    DistributionResult,
    count_active_quotes,
    distribute_bidding,
    get_assignment,
    haversine_km,
    is_visible,
)
from repair_engine.services.complexity import (
    ComplexityLevel,
    load_keyword_table,
    normalize_repair_items,
    resolve_complexity,
)
from repair_engine.services.engine_config import ConfigSnapshot
from repair_engine.services.errors import Conflict, NotFound, PolicyRejected, ValidationFailed
from repair_engine.services.locks import entity_lock
from repair_engine.services.notifications import MSG_ORDER, send_merchant_message
from repair_engine.services.reward_calculator import RewardInput, calculate_reward
from repair_engine.services.shop_ranking import (
    RankCandidate,
    RankedShop,
    price_deviation_from_median,
    rank_shops,
    scenario_for,
)
from repair_engine.services.timeutil import as_utc, utcnow
from repair_engine.services.trust_gate import TrustTier, check_blacklist, check_order_rate_limits, get_trust_assessment

logger = logging.getLogger("uvicorn.error")

# Owners may cancel an accepted order directly within this window.
CANCEL_WINDOW = timedelta(minutes=30)

# (from, to) transitions allowed for shops.
_SHOP_TRANSITIONS = {
    (OrderStatus.PENDING.value, OrderStatus.ACCEPTED.value),
    (OrderStatus.ACCEPTED.value, OrderStatus.AWAITING_CONFIRMATION.value),
}


# ============================================================
# Biddings
# ============================================================


async def create_bidding(
    session: AsyncSession,
    *,
    user_id: int,
    vehicle: VehicleInfo,
    repair_items: list[str],
    latitude: float,
    longitude: float,
    range_km: float,
    snapshot: ConfigSnapshot,
    is_insurance_accident: bool = False,
    analysis: dict[str, Any] | None = None,
    phone: str | None = None,
    ip: str | None = None,
    now: datetime | None = None,
) -> tuple[Bidding, DistributionResult]:
    """Create a bidding, resolve its complexity and distribute it.

    Raises:
        PolicyRejected: BLACKLISTED or HIGH_RISK_ACCOUNT.
        ValidationFailed: NO_REPAIR_ITEMS.
    """
    now = now or utcnow()
    blocked = await check_blacklist(session, user_id, phone, ip)
    if blocked.blocked:
        raise PolicyRejected("BLACKLISTED", "Account is restricted", {"reason": blocked.reason})

    trust = await get_trust_assessment(session, user_id, snapshot.config.trust, now)
    if trust.tier == TrustTier.HIGH_RISK:
        raise PolicyRejected("HIGH_RISK_ACCOUNT", "Account is not allowed to create biddings", None)

    items = [s.strip() for s in repair_items if s and s.strip()]
    items.extend(normalize_repair_items(None, analysis))
    if not items:
        raise ValidationFailed("NO_REPAIR_ITEMS", "At least one repair item is required", None)

    table = await load_keyword_table(session)
    complexity = resolve_complexity(items, table)

    bidding = Bidding(
        user_id=user_id,
        vehicle_info=vehicle.model_dump(mode="json"),
        repair_items=items,
        complexity_level=complexity.level.value,
        is_insurance_accident=is_insurance_accident,
        latitude=latitude,
        longitude=longitude,
        range_km=range_km,
        status=BiddingStatus.OPEN.value,
        expires_at=now + timedelta(hours=snapshot.config.distribution.bidding_ttl_hours),
        config_version=snapshot.version,
        created_at=now,
    )
    session.add(bidding)
    await session.flush()

    distribution = await distribute_bidding(session, bidding, snapshot, now)
    logger.info(
        f"[biddings] created bidding_id={bidding.id} user_id={user_id} level={complexity.level.value} "
        f"default_level={complexity.is_default} notified={distribution.total} assigned={distribution.assigned}"
    )
    return bidding, distribution


async def get_owned_bidding(session: AsyncSession, bidding_id: int, user_id: int) -> Bidding:
    bidding = await session.get(Bidding, bidding_id)
    if bidding is None or bidding.user_id != user_id:
        raise NotFound("BIDDING_NOT_FOUND", f"Bidding {bidding_id} not found", {"bidding_id": bidding_id})
    return bidding


def _is_open(bidding: Bidding, now: datetime) -> bool:
    if bidding.status != BiddingStatus.OPEN.value:
        return False
    return bidding.expires_at is None or as_utc(now) < as_utc(bidding.expires_at)


async def submit_quote(
    session: AsyncSession,
    *,
    shop_id: int,
    bidding_id: int,
    amount: float,
    items: list[QuoteItem],
    snapshot: ConfigSnapshot,
    duration_days: int | None = None,
    warranty_months: int | None = None,
    remark: str | None = None,
    now: datetime | None = None,
) -> Quote:
    """Submit a shop's quote; only shops that can currently see the bidding may quote.

    Raises:
        NotFound: BIDDING_NOT_FOUND.
        Conflict: BIDDING_CLOSED or QUOTE_EXISTS.
        PolicyRejected: NOT_INVITED or NOT_YET_VISIBLE.
    """
    now = now or utcnow()
    if amount <= 0:
        raise ValidationFailed("INVALID_AMOUNT", "Quote amount must be positive", {"amount": amount})

    bidding = await session.get(Bidding, bidding_id)
    if bidding is None:
        raise NotFound("BIDDING_NOT_FOUND", f"Bidding {bidding_id} not found", {"bidding_id": bidding_id})
    if not _is_open(bidding, now):
        raise Conflict("BIDDING_CLOSED", "Bidding is closed", {"bidding_id": bidding_id})

    assignment = await get_assignment(session, bidding_id, shop_id)
    if assignment is None:
        raise PolicyRejected("NOT_INVITED", "This bidding was not distributed to your shop", {"bidding_id": bidding_id})
    active = await count_active_quotes(session, bidding_id)
    if not is_visible(assignment, bidding, active, now, snapshot.config.distribution):
        raise PolicyRejected(
            "NOT_YET_VISIBLE",
            "Your quoting window for this bidding is not open",
            {"bidding_id": bidding_id, "tier": assignment.tier},
        )

    existing = (
        await session.execute(select(Quote.id).where(Quote.bidding_id == bidding_id).where(Quote.shop_id == shop_id))
    ).scalar_one_or_none()
    if existing is not None:
        raise Conflict("QUOTE_EXISTS", "You already quoted this bidding", {"quote_id": existing})

    quote = Quote(
        bidding_id=bidding_id,
        shop_id=shop_id,
        amount=round(amount, 2),
        items=[i.model_dump(mode="json") for i in items],
        duration_days=duration_days,
        warranty_months=warranty_months,
        remark=remark,
        status=QuoteStatus.ACTIVE.value,
        created_at=now,
    )
    session.add(quote)
    try:
        await session.flush()
    except IntegrityError as e:
        raise Conflict("QUOTE_EXISTS", "You already quoted this bidding", {"bidding_id": bidding_id}) from e

    logger.info(f"[biddings] quote quote_id={quote.id} bidding_id={bidding_id} shop_id={shop_id} amount={quote.amount}")
    return quote


async def rank_quotes(
    session: AsyncSession,
    bidding_id: int,
    user_id: int,
    snapshot: ConfigSnapshot,
    *,
    prefer_brand: bool = False,
    now: datetime | None = None,
) -> list[RankedShop]:
    """Active quotes of an owned bidding, ordered by the ranking blend."""
    bidding = await get_owned_bidding(session, bidding_id, user_id)
    rows = (
        await session.execute(
            select(Quote, Shop)
            .join(Shop, Quote.shop_id == Shop.id)
            .where(Quote.bidding_id == bidding_id)
            .where(Quote.status == QuoteStatus.ACTIVE.value)
        )
    ).all()
    amounts = [q.amount for q, _ in rows]

    candidates: list[RankCandidate] = []
    for quote, shop in rows:
        distance = None
        if shop.latitude is not None and shop.longitude is not None:
            distance = round(haversine_km(bidding.latitude, bidding.longitude, shop.latitude, shop.longitude), 1)
        candidates.append(
            RankCandidate(
                shop_id=shop.id,
                shop_score=shop.shop_score,
                rating=shop.rating,
                distance_km=distance,
                price_deviation_pct=price_deviation_from_median(quote.amount, amounts),
                avg_response_minutes=shop.avg_response_minutes,
                compliance_rate=shop.compliance_rate,
                qualification_class=shop.qualification_class,
                is_brand_certified=bool(shop.is_brand_certified),
                created_at=shop.created_at,
                payload={
                    "quote_id": quote.id,
                    "shop_name": shop.name,
                    "amount": quote.amount,
                    "items": quote.items or [],
                    "duration_days": quote.duration_days,
                    "warranty_months": quote.warranty_months,
                    "remark": quote.remark,
                },
            )
        )

    scenario = scenario_for(ComplexityLevel(bidding.complexity_level), prefer_brand)
    return rank_shops(candidates, scenario, snapshot.config.ranking, max_km=bidding.range_km, now=now)


async def _has_recent_violation(session: AsyncSession, shop_id: int, since: datetime) -> bool:
    n = (
        await session.execute(
            select(func.count(ShopViolation.id))
            .where(ShopViolation.shop_id == shop_id)
            .where(ShopViolation.created_at >= since)
        )
    ).scalar_one()
    return int(n or 0) > 0


async def select_quote(
    session: AsyncSession,
    *,
    bidding_id: int,
    user_id: int,
    quote_id: int,
    snapshot: ConfigSnapshot,
    now: datetime | None = None,
) -> Order:
    """Accept a quote: create the order, invalidate other quotes, close the bidding.

    Raises:
        NotFound: BIDDING_NOT_FOUND or QUOTE_NOT_FOUND.
        Conflict: BIDDING_CLOSED or QUOTE_NOT_ACTIVE.
        PolicyRejected: SAME_SHOP_LIMIT or NEW_ACCOUNT_ORDER_LIMIT.
    """
    now = now or utcnow()
    async with entity_lock("bidding", bidding_id):
        bidding = await get_owned_bidding(session, bidding_id, user_id)
        await session.refresh(bidding)
        if not _is_open(bidding, now):
            raise Conflict("BIDDING_CLOSED", "Bidding is closed", {"bidding_id": bidding_id})

        quote = await session.get(Quote, quote_id)
        if quote is None or quote.bidding_id != bidding_id:
            raise NotFound("QUOTE_NOT_FOUND", f"Quote {quote_id} not found", {"quote_id": quote_id})
        if quote.status != QuoteStatus.ACTIVE.value:
            raise Conflict("QUOTE_NOT_ACTIVE", "Quote is no longer active", {"quote_id": quote_id})

        await check_order_rate_limits(session, user_id, quote.shop_id, snapshot.config.antifraud, now)

        shop = await session.get(Shop, quote.shop_id)
        if shop is None:
            raise NotFound("SHOP_NOT_FOUND", f"Shop {quote.shop_id} not found", {"shop_id": quote.shop_id})

        vehicle = load_vehicle_info(bidding.vehicle_info)
        since = now - timedelta(days=snapshot.config.distribution.violation_lookback_days)
        preview = calculate_reward(
            RewardInput(
                amount=quote.amount,
                complexity_level=ComplexityLevel(bidding.complexity_level),
                vehicle_price=vehicle.vehicle_price,
                compliance_rate=shop.compliance_rate,
                complaint_rate=shop.complaint_rate,
                has_violation=await _has_recent_violation(session, shop.id, since),
            ),
            snapshot.config.reward,
        )

        order = Order(
            bidding_id=bidding.id,
            quote_id=quote.id,
            user_id=user_id,
            shop_id=shop.id,
            quoted_amount=quote.amount,
            complexity_level=bidding.complexity_level,
            vehicle_price_tier=preview.vehicle_tier,
            order_tier=preview.order_tier,
            commission_rate=preview.commission_rate,
            commission_amount=preview.commission_amount,
            is_insurance_accident=bool(bidding.is_insurance_accident),
            reward_preview=preview.to_dict(),
            status=OrderStatus.PENDING.value,
            config_version=snapshot.version,
            created_at=now,
        )
        session.add(order)

        quote.status = QuoteStatus.ACCEPTED.value
        await session.execute(
            update(Quote)
            .where(Quote.bidding_id == bidding.id)
            .where(Quote.id != quote.id)
            .where(Quote.status == QuoteStatus.ACTIVE.value)
            .values(status=QuoteStatus.INVALIDATED.value)
            .execution_options(synchronize_session=False)
        )
        bidding.status = BiddingStatus.CLOSED.value
        bidding.selected_shop_id = shop.id
        await session.flush()

    await send_merchant_message(
        session,
        shop.id,
        MSG_ORDER,
        "Your quote was selected",
        f"The owner selected your quote of {quote.amount:.2f}. Please accept the order.",
        related_id=order.id,
        now=now,
    )
    logger.info(
        f"[biddings] selected bidding_id={bidding.id} quote_id={quote.id} order_id={order.id} "
        f"preview={preview.preview} tier={preview.order_tier} caps={preview.caps_applied}"
    )
    return order


async def end_bidding(
    session: AsyncSession,
    bidding_id: int,
    user_id: int,
    now: datetime | None = None,
) -> int:
    """Close a bidding without selecting a shop; returns quotes invalidated."""
    bidding = await get_owned_bidding(session, bidding_id, user_id)
    if bidding.status != BiddingStatus.OPEN.value:
        raise Conflict("BIDDING_CLOSED", "Bidding is already closed", {"bidding_id": bidding_id})

    res = await session.execute(
        update(Quote)
        .where(Quote.bidding_id == bidding_id)
        .where(Quote.status == QuoteStatus.ACTIVE.value)
        .values(status=QuoteStatus.INVALIDATED.value)
        .execution_options(synchronize_session=False)
    )
    bidding.status = BiddingStatus.CLOSED.value
    bidding.updated_at = now or utcnow()
    await session.flush()
    invalidated = int(res.rowcount or 0)
    logger.info(f"[biddings] ended bidding_id={bidding_id} quotes_invalidated={invalidated}")
    return invalidated


async def close_expired_biddings(session: AsyncSession, now: datetime | None = None) -> int:
    now = now or utcnow()
    res = await session.execute(
        update(Bidding)
        .where(Bidding.status == BiddingStatus.OPEN.value)
        .where(Bidding.expires_at < now)
        .values(status=BiddingStatus.CLOSED.value)
        .execution_options(synchronize_session=False)
    )
    closed = int(res.rowcount or 0)
    if closed:
        logger.info(f"[biddings] closed {closed} expired biddings")
    return closed


# ============================================================
# Orders
# ============================================================


async def _get_order(session: AsyncSession, order_id: int) -> Order:
    order = await session.get(Order, order_id)
    if order is None:
        raise NotFound("ORDER_NOT_FOUND", f"Order {order_id} not found", {"order_id": order_id})
    return order


async def get_order_for_user(session: AsyncSession, order_id: int, user_id: int) -> Order:
    order = await _get_order(session, order_id)
    if order.user_id != user_id:
        raise NotFound("ORDER_NOT_FOUND", f"Order {order_id} not found", {"order_id": order_id})
    return order


async def get_order_for_shop(session: AsyncSession, order_id: int, shop_id: int) -> Order:
    order = await _get_order(session, order_id)
    if order.shop_id != shop_id:
        raise NotFound("ORDER_NOT_FOUND", f"Order {order_id} not found", {"order_id": order_id})
    return order


async def advance_order(
    session: AsyncSession,
    order_id: int,
    shop_id: int,
    target: OrderStatus,
    *,
    actual_amount: float | None = None,
    now: datetime | None = None,
) -> Order:
    """Shop-side transition: pending -> accepted -> awaiting_confirmation.

    Raises:
        Conflict: INVALID_TRANSITION.
    """
    now = now or utcnow()
    order = await get_order_for_shop(session, order_id, shop_id)
    if (order.status, target.value) not in _SHOP_TRANSITIONS:
        raise Conflict(
            "INVALID_TRANSITION",
            f"Cannot move order from {order.status} to {target.value}",
            {"order_id": order_id, "status": order.status},
        )
    order.status = target.value
    if target == OrderStatus.ACCEPTED:
        order.accepted_at = now
    if actual_amount is not None:
        if actual_amount <= 0:
            raise ValidationFailed("INVALID_AMOUNT", "Actual amount must be positive", {"actual_amount": actual_amount})
        order.actual_amount = round(actual_amount, 2)
    await session.flush()
    logger.info(f"[orders] order_id={order_id} shop_id={shop_id} -> {target.value}")
    return order


async def confirm_completion(
    session: AsyncSession,
    order_id: int,
    user_id: int,
    now: datetime | None = None,
) -> Order:
    """Owner confirms the repair is done: awaiting_confirmation -> completed."""
    now = now or utcnow()
    order = await get_order_for_user(session, order_id, user_id)
    if order.status != OrderStatus.AWAITING_CONFIRMATION.value:
        raise Conflict(
            "INVALID_TRANSITION",
            "Order is not awaiting confirmation",
            {"order_id": order_id, "status": order.status},
        )
    order.status = OrderStatus.COMPLETED.value
    order.completed_at = now
    await session.execute(
        update(Shop)
        .where(Shop.id == order.shop_id)
        .values(total_orders=Shop.total_orders + 1)
        .execution_options(synchronize_session=False)
    )
    await session.flush()
    logger.info(f"[orders] order_id={order_id} completed")
    return order


async def cancel_order(
    session: AsyncSession,
    order_id: int,
    user_id: int,
    now: datetime | None = None,
) -> Order:
    """Owner cancels a pending order, or an accepted one within the cancel window.

    The bidding reopens so the owner can pick another quote.
    """
    now = now or utcnow()
    order = await get_order_for_user(session, order_id, user_id)
    if order.status == OrderStatus.PENDING.value:
        pass
    elif order.status == OrderStatus.ACCEPTED.value and order.accepted_at is not None:
        if as_utc(now) - as_utc(order.accepted_at) > CANCEL_WINDOW:
            raise Conflict(
                "CANCEL_WINDOW_PASSED",
                "The order was accepted more than 30 minutes ago; contact support to cancel",
                {"order_id": order_id},
            )
    else:
        raise Conflict("INVALID_TRANSITION", f"Cannot cancel an order in status {order.status}", {"order_id": order_id})

    order.status = OrderStatus.CANCELLED.value
    bidding = await session.get(Bidding, order.bidding_id)
    if bidding is not None:
        bidding.status = BiddingStatus.OPEN.value
        bidding.selected_shop_id = None
        # The cancelled quote drops out; the others compete again.
        await session.execute(
            update(Quote)
            .where(Quote.bidding_id == bidding.id)
            .where(Quote.status == QuoteStatus.INVALIDATED.value)
            .values(status=QuoteStatus.ACTIVE.value)
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            update(Quote)
            .where(Quote.id == order.quote_id)
            .values(status=QuoteStatus.INVALIDATED.value)
            .execution_options(synchronize_session=False)
        )
    await session.flush()

    await send_merchant_message(
        session,
        order.shop_id,
        MSG_ORDER,
        "Order cancelled",
        "The owner cancelled the order.",
        related_id=order.id,
        now=now,
    )
    logger.info(f"[orders] order_id={order_id} cancelled by user_id={user_id}")
    return order
