"""Quote -> order -> completion -> review, against the service layer."""

from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from repair_engine.models import (
    Bidding,
    BiddingAssignment,
    MerchantMessage,
    OrderStatus,
    Quote,
    QuoteStatus,
    Shop,
    TransactionRecord,
    User,
)
from repair_engine.schemas.evidence import EvidenceBundle, QuoteItem
from repair_engine.services.biddings import (
    advance_order,
    cancel_order,
    confirm_completion,
    end_bidding,
    rank_quotes,
    select_quote,
    submit_quote,
)
from repair_engine.services.engine_config import DEFAULT_SNAPSHOT
from repair_engine.services.errors import Conflict, PolicyRejected, ValidationFailed
from repair_engine.services.review_submission import submit_review, upgrade_content_quality
from repair_engine.services.timeutil import utcnow
from repair_engine.stores.postgres import get_session

NOW = utcnow()
OWNER = 1
REVIEW_TEXT = "前保险杠喷漆很均匀，颜色和原车一致"


async def _seed(session) -> None:
    session.add(User(id=OWNER, phone="13800000001", created_at=NOW - timedelta(days=400)))
    session.add(Shop(id=1, name="north garage", qualification_class=2, latitude=31.24, longitude=121.47))
    session.add(Shop(id=2, name="south garage", qualification_class=2, latitude=31.22, longitude=121.47))
    session.add(
        Bidding(
            id=1,
            user_id=OWNER,
            vehicle_info={"brand": "Toyota"},
            repair_items=["前保险杠喷漆"],
            complexity_level="L2",
            latitude=31.23,
            longitude=121.47,
            range_km=5.0,
            status="open",
            expires_at=NOW + timedelta(hours=72),
        )
    )
    session.add(BiddingAssignment(bidding_id=1, shop_id=1, tier=1, match_score=80.0))


async def _quote(shop_id: int, amount: float) -> Quote:
    async with get_session() as session:
        return await submit_quote(
            session,
            shop_id=shop_id,
            bidding_id=1,
            amount=amount,
            items=[QuoteItem(name="前保险杠喷漆", price=amount)],
            snapshot=DEFAULT_SNAPSHOT,
            warranty_months=12,
            now=NOW,
        )


@pytest.mark.asyncio
async def test_quote_gates(db):
    async with get_session() as session:
        await _seed(session)

    await _quote(1, 4000.0)

    with pytest.raises(Conflict) as exc:
        await _quote(1, 3900.0)
    assert exc.value.code == "QUOTE_EXISTS"

    with pytest.raises(PolicyRejected) as exc:
        await _quote(2, 3500.0)
    assert exc.value.code == "NOT_INVITED"

    with pytest.raises(ValidationFailed):
        await _quote(1, 0.0)

    async with get_session() as session:
        assert await end_bidding(session, 1, OWNER, NOW) == 1

    with pytest.raises(Conflict) as exc:
        await _quote(1, 3800.0)
    assert exc.value.code == "BIDDING_CLOSED"


@pytest.mark.asyncio
async def test_full_order_lifecycle(db, client: AsyncClient):
    async with get_session() as session:
        await _seed(session)
    quote = await _quote(1, 4000.0)

    async with get_session() as session:
        ranked = await rank_quotes(session, 1, OWNER, DEFAULT_SNAPSHOT, now=NOW)
    assert [r.candidate.payload["quote_id"] for r in ranked] == [quote.id]

    async with get_session() as session:
        order = await select_quote(session, bidding_id=1, user_id=OWNER, quote_id=quote.id, snapshot=DEFAULT_SNAPSHOT, now=NOW)
        order_id = order.id
    # 4000 at L2, mid vehicle: 30 + 40, commission 8%
    assert order.reward_preview["preview"] == 70.0
    assert order.order_tier == 2
    assert order.commission_amount == 320.0
    assert order.status == OrderStatus.PENDING.value

    async with get_session() as session:
        bidding = await session.get(Bidding, 1)
        accepted = await session.get(Quote, quote.id)
        messages = (await session.execute(select(func.count(MerchantMessage.id)))).scalar_one()
    assert bidding.status == "closed"
    assert bidding.selected_shop_id == 1
    assert accepted.status == QuoteStatus.ACCEPTED.value
    assert messages == 1

    with pytest.raises(Conflict) as exc:
        async with get_session() as session:
            await select_quote(session, bidding_id=1, user_id=OWNER, quote_id=quote.id, snapshot=DEFAULT_SNAPSHOT, now=NOW)
    assert exc.value.code == "BIDDING_CLOSED"

    with pytest.raises(Conflict) as exc:
        async with get_session() as session:
            await advance_order(session, order_id, 1, OrderStatus.AWAITING_CONFIRMATION, now=NOW)
    assert exc.value.code == "INVALID_TRANSITION"

    async with get_session() as session:
        await advance_order(session, order_id, 1, OrderStatus.ACCEPTED, now=NOW)
        await advance_order(session, order_id, 1, OrderStatus.AWAITING_CONFIRMATION, actual_amount=4100.0, now=NOW)
        done = await confirm_completion(session, order_id, OWNER, now=NOW)
    assert done.status == OrderStatus.COMPLETED.value

    response = await client.get(f"/v1/orders/{order_id}", headers={"X-User-Id": str(OWNER)})
    assert response.status_code == 200
    response = await client.get(f"/v1/orders/{order_id}", headers={"X-User-Id": "99"})
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "ORDER_NOT_FOUND"

    evidence = EvidenceBundle(completion_photos=["https://img/after.jpg"])
    async with get_session() as session:
        outcome = await submit_review(
            session,
            user_id=OWNER,
            order_id=order_id,
            rating=5,
            content=REVIEW_TEXT,
            evidence=evidence,
            snapshot=DEFAULT_SNAPSHOT,
            now=NOW,
        )
        review_id = outcome.review.id
    # Low-history account: half of the 70 preview, paid at once (tier 2 has a single stage).
    assert outcome.quality_level == 1
    assert outcome.reward_total == 70.0
    assert outcome.immediate_amount == 35.0
    assert outcome.pending_keys == []
    assert "TRUST_MULTIPLIER_0.5" in outcome.reasons
    assert outcome.review.weight == pytest.approx(0.3)

    async with get_session() as session:
        owner = await session.get(User, OWNER)
        rebates = (await session.execute(select(TransactionRecord))).scalars().all()
    assert owner.balance == 35.0
    assert [(t.type, t.amount) for t in rebates] == [("rebate", 35.0)]

    with pytest.raises(Conflict) as exc:
        async with get_session() as session:
            await submit_review(
                session,
                user_id=OWNER,
                order_id=order_id,
                rating=5,
                content=REVIEW_TEXT,
                evidence=evidence,
                snapshot=DEFAULT_SNAPSHOT,
                now=NOW,
            )
    assert exc.value.code == "REVIEW_EXISTS"

    async with get_session() as session:
        entry = await upgrade_content_quality(session, review_id, 2, DEFAULT_SNAPSHOT, now=NOW)
        # Same level again owes nothing.
        assert await upgrade_content_quality(session, review_id, 2, DEFAULT_SNAPSHOT, now=NOW) is None
    # premium total 70 + 35 float, minus the 35 already committed
    assert entry.amount_before_tax == 70.0
    assert entry.bonus_type == "upgrade_diff"
    assert entry.settled_at is None


@pytest.mark.asyncio
async def test_review_requires_completed_order(db):
    async with get_session() as session:
        await _seed(session)
    quote = await _quote(1, 4000.0)
    async with get_session() as session:
        order = await select_quote(session, bidding_id=1, user_id=OWNER, quote_id=quote.id, snapshot=DEFAULT_SNAPSHOT, now=NOW)
        order_id = order.id

    with pytest.raises(Conflict) as exc:
        async with get_session() as session:
            await submit_review(
                session,
                user_id=OWNER,
                order_id=order_id,
                rating=5,
                content=REVIEW_TEXT,
                evidence=EvidenceBundle(completion_photos=["p"]),
                snapshot=DEFAULT_SNAPSHOT,
                now=NOW,
            )
    assert exc.value.code == "ORDER_NOT_COMPLETED"


@pytest.mark.asyncio
async def test_cancel_reopens_bidding(db):
    async with get_session() as session:
        await _seed(session)
    quote = await _quote(1, 4000.0)
    async with get_session() as session:
        order = await select_quote(session, bidding_id=1, user_id=OWNER, quote_id=quote.id, snapshot=DEFAULT_SNAPSHOT, now=NOW)
        order_id = order.id
        await advance_order(session, order_id, 1, OrderStatus.ACCEPTED, now=NOW)

    with pytest.raises(Conflict) as exc:
        async with get_session() as session:
            await cancel_order(session, order_id, OWNER, now=NOW + timedelta(minutes=31))
    assert exc.value.code == "CANCEL_WINDOW_PASSED"

    async with get_session() as session:
        cancelled = await cancel_order(session, order_id, OWNER, now=NOW + timedelta(minutes=10))
    assert cancelled.status == OrderStatus.CANCELLED.value

    async with get_session() as session:
        bidding = await session.get(Bidding, 1)
        dropped = await session.get(Quote, quote.id)
    assert bidding.status == "open"
    assert bidding.selected_shop_id is None
    assert dropped.status == QuoteStatus.INVALIDATED.value
