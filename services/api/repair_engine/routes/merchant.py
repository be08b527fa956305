"""Shop-facing endpoints (identity via X-Shop-Id).

GET  /v1/merchant/biddings                 - biddings visible right now (delivers due notifications)
POST /v1/merchant/biddings/{id}/quotes     - submit a quote
GET  /v1/merchant/messages                 - inbox
POST /v1/merchant/messages/read            - mark messages read
"""

from fastapi import APIRouter, Depends, Query

from repair_engine.routes.deps import current_shop_id, raise_http
from repair_engine.schemas import (
    InboxResponse,
    MarkReadRequest,
    MarkReadResponse,
    MessageOut,
    QuoteOut,
    QuoteRequest,
    VisibleBidding,
    VisibleBiddingsResponse,
)
from repair_engine.schemas.evidence import load_vehicle_info
from repair_engine.services.bidding_distribution import list_visible_biddings_for_shop
from repair_engine.services.biddings import submit_quote
from repair_engine.services.engine_config import load_config_snapshot
from repair_engine.services.errors import EngineError
from repair_engine.services.notifications import list_messages, mark_read
from repair_engine.stores.postgres import get_session

router = APIRouter()


@router.get("/biddings", response_model=VisibleBiddingsResponse)
async def get_visible_biddings(shop_id: int = Depends(current_shop_id)) -> VisibleBiddingsResponse:
    async with get_session() as session:
        snapshot = await load_config_snapshot(session)
        rows = await list_visible_biddings_for_shop(session, shop_id, snapshot)

    out = []
    for bidding, assignment in rows:
        vehicle = load_vehicle_info(bidding.vehicle_info)
        out.append(
            VisibleBidding(
                id=bidding.id,
                tier=assignment.tier,
                match_score=assignment.match_score,
                complexity_level=bidding.complexity_level,
                brand=vehicle.brand,
                model=vehicle.model,
                repair_items=list(bidding.repair_items or []),
                is_insurance_accident=bool(bidding.is_insurance_accident),
                created_at=bidding.created_at,
                expires_at=bidding.expires_at,
            )
        )
    return VisibleBiddingsResponse(biddings=out)


@router.post("/biddings/{bidding_id}/quotes", response_model=QuoteOut, status_code=201)
async def post_quote(
    bidding_id: int,
    body: QuoteRequest,
    shop_id: int = Depends(current_shop_id),
) -> QuoteOut:
    try:
        async with get_session() as session:
            snapshot = await load_config_snapshot(session)
            quote = await submit_quote(
                session,
                shop_id=shop_id,
                bidding_id=bidding_id,
                amount=body.amount,
                items=body.items,
                snapshot=snapshot,
                duration_days=body.duration_days,
                warranty_months=body.warranty_months,
                remark=body.remark,
            )
    except EngineError as e:
        raise_http(e)
    return QuoteOut(
        id=quote.id,
        bidding_id=quote.bidding_id,
        shop_id=quote.shop_id,
        amount=quote.amount,
        status=quote.status,
        created_at=quote.created_at,
    )


@router.get("/messages", response_model=InboxResponse)
async def get_messages(
    unread_only: bool = Query(default=False, alias="unreadOnly"),
    limit: int = Query(default=50, ge=1, le=200),
    shop_id: int = Depends(current_shop_id),
) -> InboxResponse:
    async with get_session() as session:
        rows = await list_messages(session, shop_id, unread_only=unread_only, limit=limit)
    return InboxResponse(
        messages=[
            MessageOut(
                id=m.id,
                type=m.type,
                title=m.title,
                content=m.content,
                related_id=m.related_id,
                is_read=bool(m.is_read),
                created_at=m.created_at,
            )
            for m in rows
        ],
        unread_only=unread_only,
    )


@router.post("/messages/read", response_model=MarkReadResponse)
async def post_mark_read(body: MarkReadRequest, shop_id: int = Depends(current_shop_id)) -> MarkReadResponse:
    async with get_session() as session:
        updated = await mark_read(session, shop_id, body.ids)
    return MarkReadResponse(updated=updated)
