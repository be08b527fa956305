from datetime import timedelta

import pytest

from repair_engine.models import Bidding, Order, OrderStatus, ReadingSession, Review, User, UserVehicle
from repair_engine.schemas.evidence import VehicleInfo
from repair_engine.services.engine_config import DEFAULT_CONFIG, DEFAULT_SNAPSHOT
from repair_engine.services.errors import Conflict, PolicyRejected
from repair_engine.services.review_likes import (
    ConversionCandidate,
    LikeStats,
    brands_conflict,
    capped_reading_seconds,
    decision_time_weight,
    decision_weight,
    dwell_weight,
    get_like_stats,
    is_like_valid_for_bonus,
    like_review,
    like_weight,
    match_weight,
    plates_match,
    record_reading,
    split_conversion_pool,
)
from repair_engine.services.timeutil import utcnow
from repair_engine.stores.postgres import get_session

RULES = DEFAULT_CONFIG.likes
NOW = utcnow()


def test_reading_caps() -> None:
    assert capped_reading_seconds(500, 0, RULES) == 180
    assert capped_reading_seconds(100, 250, RULES) == 50
    assert capped_reading_seconds(-5, 0, RULES) == 0


def test_like_validity_and_weight() -> None:
    assert is_like_valid_for_bonus(45, 0.3, RULES) is True
    assert is_like_valid_for_bonus(10, 0.3, RULES) is False
    assert is_like_valid_for_bonus(60, 0.0, RULES) is False

    assert like_weight(1.0, True, RULES) == 2.0
    assert like_weight(0.3, False, RULES) == 0.15


def test_plate_and_brand_helpers() -> None:
    assert plates_match("沪a 12345", "沪A12345")
    assert not plates_match(None, None)
    assert brands_conflict("Toyota", "BYD")
    assert not brands_conflict("Toyota", None)


def test_decision_weight_factors() -> None:
    order_at = NOW
    assert decision_time_weight(order_at - timedelta(hours=10), order_at, RULES) == 4.0
    assert decision_time_weight(order_at - timedelta(hours=48), order_at, RULES) == 2.0
    assert decision_time_weight(order_at - timedelta(hours=100), order_at, RULES) == 1.0
    assert decision_time_weight(order_at - timedelta(hours=200), order_at, RULES) == 0.0

    assert dwell_weight(200, RULES) == 3.0
    assert dwell_weight(90, RULES) == 2.0
    assert dwell_weight(30, RULES) == 1.0
    assert dwell_weight(29, RULES) == 0.0

    toyota = VehicleInfo(brand="Toyota", plate_number="沪A12345")
    assert match_weight(toyota, VehicleInfo(brand="Toyota", plate_number="沪A12345"), RULES) == 3.0
    assert match_weight(toyota, VehicleInfo(brand="Toyota"), RULES) == 2.0
    assert match_weight(toyota, VehicleInfo(brand="BYD"), RULES) == 1.0

    weight, breakdown = decision_weight(
        like_at=order_at - timedelta(hours=10),
        order_created_at=order_at,
        reading_seconds=200,
        order_vehicle=toyota,
        review_vehicle=toyota,
        quality_level=2,
        rules=RULES,
    )
    assert breakdown == {"decision_time": 4.0, "content_stay": 3.0, "content_match": 3.0, "content_value": 1.0}
    assert weight == 36.0


def test_conversion_pool_split() -> None:
    a = ConversionCandidate(review_id=1, author_id=10, weight=3.0)
    b = ConversionCandidate(review_id=2, author_id=11, weight=1.0)
    zero = ConversionCandidate(review_id=3, author_id=12, weight=0.0)

    assert split_conversion_pool([b, zero, a], 100.0) == [(a, 75.0), (b, 25.0)]
    assert split_conversion_pool([a, b], 100.0, top_n=1) == [(a, 100.0)]
    assert split_conversion_pool([a, b], 0.0) == []


def test_owner_verify_badge_threshold() -> None:
    assert LikeStats(post_verify_count=10).has_owner_verify_badge
    assert not LikeStats(post_verify_count=9).has_owner_verify_badge


async def _seed_review(session) -> None:
    session.add(User(id=1, phone="13800000001", created_at=NOW - timedelta(days=400)))
    session.add(User(id=2, phone="13800000002", created_at=NOW - timedelta(days=400)))
    session.add(UserVehicle(user_id=2, plate_number="沪A12345", brand="Toyota", is_default=True))
    session.add(
        Bidding(
            id=1,
            user_id=1,
            vehicle_info={"plate_number": "沪A12345", "brand": "Toyota"},
            repair_items=["前保险杠喷漆"],
            latitude=31.23,
            longitude=121.47,
        )
    )
    session.add(
        Order(
            id=1,
            bidding_id=1,
            quote_id=1,
            user_id=1,
            shop_id=1,
            quoted_amount=2000.0,
            complexity_level="L2",
            vehicle_price_tier="mid",
            order_tier=2,
            commission_rate=0.08,
            commission_amount=160.0,
            reward_preview={},
            status=OrderStatus.COMPLETED.value,
            created_at=NOW - timedelta(days=5),
            completed_at=NOW - timedelta(days=2),
        )
    )
    session.add(Review(id=1, order_id=1, user_id=1, shop_id=1, rating=5, content="保险杠喷漆平整，颜色一致"))


@pytest.mark.asyncio
async def test_reading_sessions_respect_lifetime_cap(db) -> None:
    async with get_session() as session:
        await _seed_review(session)

    async with get_session() as session:
        first = await record_reading(session, 2, 1, 200, RULES)
        second = await record_reading(session, 2, 1, 200, RULES)
        third = await record_reading(session, 2, 1, 50, RULES)

    assert (first.added, first.total, first.capped) == (180, 180, True)
    assert (second.added, second.total) == (120, 300)
    assert (third.added, third.total, third.capped) == (0, 300, True)


@pytest.mark.asyncio
async def test_like_after_reading_with_matching_plate(db) -> None:
    async with get_session() as session:
        await _seed_review(session)

    async with get_session() as session:
        await record_reading(session, 2, 1, 45, RULES)
        like = await like_review(session, 2, 1, DEFAULT_SNAPSHOT, NOW)

    assert like.like_type == "normal"
    assert like.is_valid_for_bonus is True
    assert like.is_vehicle_match is True
    # new_user trust 0.3 x same-plate 2.0
    assert like.weight_coefficient == 0.6
    assert like.reading_seconds == 45

    with pytest.raises(Conflict) as exc:
        async with get_session() as session:
            await like_review(session, 2, 1, DEFAULT_SNAPSHOT, NOW)
    assert exc.value.code == "ALREADY_LIKED"

    with pytest.raises(PolicyRejected) as exc:
        async with get_session() as session:
            await like_review(session, 1, 1, DEFAULT_SNAPSHOT, NOW)
    assert exc.value.code == "SELF_LIKE"

    async with get_session() as session:
        stats = await get_like_stats(session, [1])
    assert stats[1].like_count == 1
    assert stats[1].valid_bonus_count == 1


@pytest.mark.asyncio
async def test_like_without_reading_is_not_bonus_eligible(db) -> None:
    async with get_session() as session:
        await _seed_review(session)

    async with get_session() as session:
        await record_reading(session, 2, 1, 10, RULES)
        like = await like_review(session, 2, 1, DEFAULT_SNAPSHOT, NOW)

    assert like.is_valid_for_bonus is False
    assert like.like_type == "normal"


async def _seed_liker_order(session, brand: str, read_at) -> None:
    """User 2 completed a repair of their own three days ago, after reading review 1."""
    session.add(
        Bidding(
            id=2,
            user_id=2,
            vehicle_info={"plate_number": "沪A12345", "brand": brand},
            repair_items=["后保险杠喷漆"],
            latitude=31.23,
            longitude=121.47,
        )
    )
    session.add(
        Order(
            id=2,
            bidding_id=2,
            quote_id=2,
            user_id=2,
            shop_id=1,
            quoted_amount=1500.0,
            complexity_level="L2",
            vehicle_price_tier="mid",
            order_tier=2,
            commission_rate=0.08,
            commission_amount=120.0,
            reward_preview={},
            status=OrderStatus.COMPLETED.value,
            created_at=NOW - timedelta(days=10),
            completed_at=NOW - timedelta(days=3),
        )
    )
    session.add(ReadingSession(review_id=1, user_id=2, effective_seconds=60, saw_at=read_at))


@pytest.mark.asyncio
async def test_like_after_own_repair_is_post_verify(db) -> None:
    async with get_session() as session:
        await _seed_review(session)
        await _seed_liker_order(session, "Toyota", read_at=NOW - timedelta(days=12))

    async with get_session() as session:
        like = await like_review(session, 2, 1, DEFAULT_SNAPSHOT, NOW)
        stats = await get_like_stats(session, [1])

    assert like.is_valid_for_bonus is True
    assert like.like_type == "post_verify"
    assert stats[1].post_verify_count == 1


@pytest.mark.asyncio
async def test_post_verify_rejects_conflicting_brand(db) -> None:
    async with get_session() as session:
        await _seed_review(session)
        await _seed_liker_order(session, "BYD", read_at=NOW - timedelta(days=12))

    async with get_session() as session:
        like = await like_review(session, 2, 1, DEFAULT_SNAPSHOT, NOW)

    assert like.is_valid_for_bonus is True
    assert like.like_type == "normal"


@pytest.mark.asyncio
async def test_post_verify_needs_reading_before_ordering(db) -> None:
    async with get_session() as session:
        await _seed_review(session)
        # Read only after the order was placed.
        await _seed_liker_order(session, "Toyota", read_at=NOW - timedelta(days=5))

    async with get_session() as session:
        like = await like_review(session, 2, 1, DEFAULT_SNAPSHOT, NOW)

    assert like.is_valid_for_bonus is True
    assert like.like_type == "normal"
