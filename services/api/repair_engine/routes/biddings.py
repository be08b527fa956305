"""Owner-facing bidding endpoints.

POST /v1/biddings                           - create and distribute
GET  /v1/biddings/{id}                      - bidding detail
GET  /v1/biddings/{id}/quotes               - ranked quotes
POST /v1/biddings/{id}/select               - accept a quote (creates the order)
POST /v1/biddings/{id}/end                  - close without selecting

Routers are thin: call services for business logic.
"""

from fastapi import APIRouter, Depends, Query, Request

from repair_engine.models import Bidding, Order
from repair_engine.schemas import (
    BiddingCreateRequest,
    BiddingCreateResponse,
    BiddingOut,
    DistributionSummary,
    EndBiddingResponse,
    OrderOut,
    RankedQuote,
    RankedQuotesResponse,
    SelectQuoteRequest,
)
from repair_engine.routes.deps import client_ip, current_user_id, raise_http
from repair_engine.services.biddings import (
    create_bidding,
    end_bidding,
    get_owned_bidding,
    rank_quotes,
    select_quote,
)
from repair_engine.services.engine_config import load_config_snapshot
from repair_engine.services.errors import EngineError
from repair_engine.stores.postgres import get_session

router = APIRouter()


def bidding_out(b: Bidding) -> BiddingOut:
    return BiddingOut(
        id=b.id,
        status=b.status,
        complexity_level=b.complexity_level,
        vehicle=b.vehicle_info or {},
        repair_items=list(b.repair_items or []),
        range_km=b.range_km,
        selected_shop_id=b.selected_shop_id,
        tier1_deadline=b.tier1_deadline,
        expires_at=b.expires_at,
        created_at=b.created_at,
        config_version=b.config_version,
    )


def order_out(o: Order) -> OrderOut:
    return OrderOut(
        id=o.id,
        bidding_id=o.bidding_id,
        quote_id=o.quote_id,
        user_id=o.user_id,
        shop_id=o.shop_id,
        status=o.status,
        quoted_amount=o.quoted_amount,
        actual_amount=o.actual_amount,
        complexity_level=o.complexity_level,
        order_tier=o.order_tier,
        commission_rate=o.commission_rate,
        commission_amount=o.commission_amount,
        reward_preview=o.reward_preview or {},
        created_at=o.created_at,
        accepted_at=o.accepted_at,
        completed_at=o.completed_at,
    )


@router.post("", response_model=BiddingCreateResponse, status_code=201)
async def post_bidding(
    body: BiddingCreateRequest,
    request: Request,
    user_id: int = Depends(current_user_id),
) -> BiddingCreateResponse:
    """Create a bidding; complexity is resolved and tier-1 shops are notified immediately."""
    try:
        async with get_session() as session:
            snapshot = await load_config_snapshot(session)
            bidding, distribution = await create_bidding(
                session,
                user_id=user_id,
                vehicle=body.vehicle,
                repair_items=body.repair_items,
                latitude=body.latitude,
                longitude=body.longitude,
                range_km=body.range_km,
                snapshot=snapshot,
                is_insurance_accident=body.is_insurance_accident,
                analysis=body.analysis,
                phone=body.phone,
                ip=client_ip(request),
            )
            out = bidding_out(bidding)
    except EngineError as e:
        raise_http(e)

    return BiddingCreateResponse(
        bidding=out,
        distribution=DistributionSummary(
            radius_km=distribution.radius_km,
            assigned=distribution.assigned,
            tier1=distribution.tier1,
            tier2=distribution.tier2,
            tier3=distribution.tier3,
            rejected=distribution.rejected,
        ),
    )


@router.get("/{bidding_id}", response_model=BiddingOut)
async def get_bidding(bidding_id: int, user_id: int = Depends(current_user_id)) -> BiddingOut:
    try:
        async with get_session() as session:
            bidding = await get_owned_bidding(session, bidding_id, user_id)
    except EngineError as e:
        raise_http(e)
    return bidding_out(bidding)


@router.get("/{bidding_id}/quotes", response_model=RankedQuotesResponse)
async def get_ranked_quotes(
    bidding_id: int,
    prefer_brand: bool = Query(default=False, alias="preferBrand", description="Rank with the brand-shop preset"),
    user_id: int = Depends(current_user_id),
) -> RankedQuotesResponse:
    """Active quotes ordered by the ranking blend (score, distance, price, response)."""
    try:
        async with get_session() as session:
            snapshot = await load_config_snapshot(session)
            ranked = await rank_quotes(session, bidding_id, user_id, snapshot, prefer_brand=prefer_brand)
    except EngineError as e:
        raise_http(e)

    quotes = []
    for i, r in enumerate(ranked, start=1):
        p = r.candidate.payload
        quotes.append(
            RankedQuote(
                rank=i,
                quote_id=p["quote_id"],
                shop_id=r.candidate.shop_id,
                shop_name=p.get("shop_name"),
                amount=p["amount"],
                items=p.get("items") or [],
                duration_days=p.get("duration_days"),
                warranty_months=p.get("warranty_months"),
                remark=p.get("remark"),
                score=r.score,
                components=r.components,
                boosts=r.boosts,
            )
        )
    return RankedQuotesResponse(bidding_id=bidding_id, quotes=quotes)


@router.post("/{bidding_id}/select", response_model=OrderOut, status_code=201)
async def post_select_quote(
    bidding_id: int,
    body: SelectQuoteRequest,
    user_id: int = Depends(current_user_id),
) -> OrderOut:
    try:
        async with get_session() as session:
            snapshot = await load_config_snapshot(session)
            order = await select_quote(
                session,
                bidding_id=bidding_id,
                user_id=user_id,
                quote_id=body.quote_id,
                snapshot=snapshot,
            )
    except EngineError as e:
        raise_http(e)
    return order_out(order)


@router.post("/{bidding_id}/end", response_model=EndBiddingResponse)
async def post_end_bidding(bidding_id: int, user_id: int = Depends(current_user_id)) -> EndBiddingResponse:
    try:
        async with get_session() as session:
            invalidated = await end_bidding(session, bidding_id, user_id)
    except EngineError as e:
        raise_http(e)
    return EndBiddingResponse(bidding_id=bidding_id, quotes_invalidated=invalidated)
