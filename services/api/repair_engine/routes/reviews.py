"""Review endpoints (identity via X-User-Id).

POST /v1/reviews                     - submit a review for a completed order
POST /v1/reviews/{id}/reading        - report effective reading seconds
POST /v1/reviews/{id}/like           - like a review
GET  /v1/reviews/{id}/stats          - like counters and owner-verify badge
"""

from fastapi import APIRouter, Depends, Request

from repair_engine.routes.deps import client_ip, current_user_id, raise_http
from repair_engine.schemas import (
    LikeResponse,
    LikeStatsResponse,
    ReadingRequest,
    ReadingResponse,
    ReviewCreateRequest,
    ReviewSubmitResponse,
)
from repair_engine.services.engine_config import load_config_snapshot
from repair_engine.services.errors import EngineError
from repair_engine.services.review_likes import LikeStats, get_like_stats, like_review, record_reading
from repair_engine.services.review_submission import refresh_shop_score, submit_review
from repair_engine.stores.postgres import get_session

router = APIRouter()


@router.post("", response_model=ReviewSubmitResponse, status_code=201)
async def post_review(
    body: ReviewCreateRequest,
    request: Request,
    user_id: int = Depends(current_user_id),
) -> ReviewSubmitResponse:
    """Store the review and pay the immediate reward share.

    The shop score is recomputed after the review is committed; a failure
    there is logged and does not fail the request.
    """
    try:
        async with get_session() as session:
            snapshot = await load_config_snapshot(session)
            outcome = await submit_review(
                session,
                user_id=user_id,
                order_id=body.order_id,
                rating=body.rating,
                content=body.content,
                evidence=body.evidence,
                snapshot=snapshot,
                ip=client_ip(request),
            )
    except EngineError as e:
        raise_http(e)

    await refresh_shop_score(outcome.review.shop_id, snapshot)

    return ReviewSubmitResponse(
        review_id=outcome.review.id,
        quality_level=outcome.quality_level,
        reward_total=outcome.reward_total,
        immediate_amount=outcome.immediate_amount,
        immediate_tax=outcome.immediate_tax,
        pending_keys=outcome.pending_keys,
        reasons=outcome.reasons,
    )


@router.post("/{review_id}/reading", response_model=ReadingResponse)
async def post_reading(
    review_id: int,
    body: ReadingRequest,
    user_id: int = Depends(current_user_id),
) -> ReadingResponse:
    try:
        async with get_session() as session:
            snapshot = await load_config_snapshot(session)
            result = await record_reading(session, user_id, review_id, body.seconds, snapshot.config.likes)
    except EngineError as e:
        raise_http(e)
    return ReadingResponse(added=result.added, total=result.total, capped=result.capped)


@router.post("/{review_id}/like", response_model=LikeResponse, status_code=201)
async def post_like(review_id: int, user_id: int = Depends(current_user_id)) -> LikeResponse:
    try:
        async with get_session() as session:
            snapshot = await load_config_snapshot(session)
            like = await like_review(session, user_id, review_id, snapshot)
    except EngineError as e:
        raise_http(e)
    return LikeResponse(
        like_id=like.id,
        like_type=like.like_type,
        is_valid_for_bonus=bool(like.is_valid_for_bonus),
        weight=like.weight_coefficient,
        is_vehicle_match=bool(like.is_vehicle_match),
    )


@router.get("/{review_id}/stats", response_model=LikeStatsResponse)
async def get_stats(review_id: int) -> LikeStatsResponse:
    async with get_session() as session:
        stats = (await get_like_stats(session, [review_id])).get(review_id) or LikeStats()
    return LikeStatsResponse(
        review_id=review_id,
        like_count=stats.like_count,
        post_verify_count=stats.post_verify_count,
        valid_bonus_count=stats.valid_bonus_count,
        has_owner_verify_badge=stats.has_owner_verify_badge,
    )
