"""Operator endpoints: configuration, antifraud lists, batch jobs, AI tasks.

These endpoints are intended for operators and cron callers.
In production, put them behind the admin gateway (they trust the caller).
"""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field, ValidationError

from repair_engine.models import AiTask, BlacklistType
from repair_engine.routes.deps import raise_http
from repair_engine.schemas.common import error_body
from repair_engine.services.biddings import close_expired_biddings
from repair_engine.services.bidding_distribution import sweep_pending_notifications
from repair_engine.services.complexity import add_keywords, list_keywords, set_keyword_enabled
from repair_engine.services.engine_config import (
    forget_cached_snapshot,
    load_config_snapshot,
    load_config_version,
    publish_config,
)
from repair_engine.services.errors import EngineError
from repair_engine.services.review_submission import decide_fault_appeal, upgrade_content_quality
from repair_engine.services.settlement import list_settlement_logs, release_due_stages, settle_month
from repair_engine.services.shop_score import recompute_shop_score
from repair_engine.services.trust_gate import add_blacklist_entry, list_blacklist, remove_blacklist_entry
from repair_engine.services.vision_tasks import cancel_task, enqueue_task, get_task, list_tasks, retry_task
from repair_engine.stores.postgres import get_session

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


# ============================================================
# Engine config
# ============================================================


class ConfigPublishRequest(BaseModel):
    """Partial overrides merged onto the active config."""

    overrides: dict[str, Any]
    note: str | None = None
    created_by: str | None = None


class ConfigResponse(BaseModel):
    version: int
    config: dict[str, Any]


@router.get("/config", response_model=ConfigResponse)
async def get_active_config() -> ConfigResponse:
    async with get_session() as session:
        snapshot = await load_config_snapshot(session)
    return ConfigResponse(version=snapshot.version, config=snapshot.config.model_dump(mode="json"))


@router.get("/config/{version}", response_model=ConfigResponse)
async def get_config_version(version: int) -> ConfigResponse:
    async with get_session() as session:
        snapshot = await load_config_version(session, version)
    if snapshot is None:
        raise HTTPException(
            status_code=404,
            detail=error_body("CONFIG_VERSION_NOT_FOUND", f"Config version {version} not found"),
        )
    return ConfigResponse(version=snapshot.version, config=snapshot.config.model_dump(mode="json"))


@router.post("/config", response_model=ConfigResponse, status_code=201)
async def post_config(request: ConfigPublishRequest) -> ConfigResponse:
    """Publish a new config version. Unknown keys or bad values are rejected."""
    try:
        async with get_session() as session:
            snapshot = await publish_config(
                session,
                request.overrides,
                note=request.note,
                created_by=request.created_by,
            )
        # Invalidate only once the new row is committed.
        await forget_cached_snapshot()
    except ValidationError as e:
        raise HTTPException(
            status_code=400,
            detail=error_body(
                "INVALID_CONFIG",
                "Config overrides failed validation",
                {"errors": e.errors(include_url=False, include_context=False)},
            ),
        )
    return ConfigResponse(version=snapshot.version, config=snapshot.config.model_dump(mode="json"))


# ============================================================
# Complexity keywords
# ============================================================


class KeywordRequest(BaseModel):
    level: str = Field(description="L1..L4")
    keywords: str = Field(description='Keywords separated by "|" or ","')
    notes: str | None = None


class KeywordToggleRequest(BaseModel):
    enabled: bool


def _keyword_dict(row) -> dict[str, Any]:
    return {"id": row.id, "level": row.level, "keywords": row.keywords, "enabled": row.enabled, "notes": row.notes}


@router.get("/keywords")
async def get_keywords(include_disabled: bool = Query(default=False)) -> dict:
    async with get_session() as session:
        rows = await list_keywords(session, include_disabled=include_disabled)
    return {"keywords": [_keyword_dict(r) for r in rows]}


@router.post("/keywords", status_code=201)
async def post_keyword(request: KeywordRequest) -> dict:
    try:
        async with get_session() as session:
            row = await add_keywords(session, request.level, request.keywords, request.notes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=error_body("INVALID_KEYWORD", str(e)))
    return _keyword_dict(row)


@router.post("/keywords/{keyword_id}/enabled")
async def post_keyword_enabled(keyword_id: int, request: KeywordToggleRequest) -> dict:
    async with get_session() as session:
        row = await set_keyword_enabled(session, keyword_id, request.enabled)
    if row is None:
        raise HTTPException(status_code=404, detail=error_body("KEYWORD_NOT_FOUND", f"Keyword {keyword_id} not found"))
    return _keyword_dict(row)


# ============================================================
# Blacklist
# ============================================================


class BlacklistRequest(BaseModel):
    value_type: BlacklistType
    value: str = Field(min_length=1, max_length=100)
    reason: str | None = None


@router.get("/blacklist")
async def get_blacklist(limit: int = Query(default=200, ge=1, le=1000)) -> dict:
    async with get_session() as session:
        rows = await list_blacklist(session, limit=limit)
    return {
        "entries": [
            {"id": r.id, "value_type": r.value_type, "value": r.value, "reason": r.reason, "created_at": r.created_at}
            for r in rows
        ]
    }


@router.post("/blacklist", status_code=201)
async def post_blacklist(request: BlacklistRequest) -> dict:
    async with get_session() as session:
        entry = await add_blacklist_entry(session, request.value_type, request.value, request.reason)
    return {"id": entry.id, "value_type": entry.value_type, "value": entry.value, "reason": entry.reason}


@router.delete("/blacklist/{entry_id}")
async def delete_blacklist(entry_id: int) -> dict:
    async with get_session() as session:
        removed = await remove_blacklist_entry(session, entry_id)
    if not removed:
        raise HTTPException(status_code=404, detail=error_body("ENTRY_NOT_FOUND", f"Entry {entry_id} not found"))
    return {"removed": True}


# ============================================================
# Batch jobs
# ============================================================


class SettlementRunRequest(BaseModel):
    month: str = Field(description="YYYY-MM", examples=["2026-09"])
    dry_run: bool = False


@router.post("/settlement/run")
async def run_settlement(request: SettlementRunRequest) -> dict:
    """Run (or dry-run) the monthly settlement. Re-running a month pays nothing twice."""
    async with get_session() as session:
        snapshot = await load_config_snapshot(session)
    try:
        result = await settle_month(request.month, snapshot, dry_run=request.dry_run)
    except EngineError as e:
        raise_http(e)
    return {
        "run_id": result.run_id,
        "month": result.month,
        "dry_run": result.dry_run,
        "status": result.status,
        "summary": result.summary(),
        "errors": result.errors,
        "config_version": snapshot.version,
    }


@router.get("/settlement/logs")
async def get_settlement_logs(limit: int = Query(default=20, ge=1, le=200)) -> dict:
    async with get_session() as session:
        rows = await list_settlement_logs(session, limit=limit)
    return {
        "logs": [
            {
                "run_id": r.run_id,
                "month": r.settlement_month,
                "status": r.status,
                "summary": r.summary,
                "errors": r.errors,
                "config_version": r.config_version,
                "run_at": r.run_at,
            }
            for r in rows
        ]
    }


@router.post("/settlement/release-stages")
async def post_release_stages() -> dict:
    """Pay staged follow-up rewards (1m / 3m) that have come due."""
    async with get_session() as session:
        snapshot = await load_config_snapshot(session)
    totals = await release_due_stages(snapshot)
    return {"released": totals.count, "amount": totals.amount}


@router.post("/notifications/sweep")
async def post_notification_sweep() -> dict:
    """Deliver tier-2/3 notifications whose window has opened."""
    async with get_session() as session:
        snapshot = await load_config_snapshot(session)
        sent = await sweep_pending_notifications(session, snapshot)
    return {"sent": sent}


@router.post("/biddings/close-expired")
async def post_close_expired() -> dict:
    async with get_session() as session:
        closed = await close_expired_biddings(session)
    return {"closed": closed}


# ============================================================
# Scores, appeals, content quality
# ============================================================


class AppealDecisionRequest(BaseModel):
    upheld: bool
    note: str | None = None


class QualityUpgradeRequest(BaseModel):
    level: int = Field(ge=1, le=4)


@router.post("/shops/{shop_id}/score/recompute")
async def post_recompute_score(shop_id: int) -> dict:
    async with get_session() as session:
        snapshot = await load_config_snapshot(session)
        result = await recompute_shop_score(session, shop_id, snapshot)
    if result is None:
        raise HTTPException(status_code=404, detail=error_body("SHOP_NOT_FOUND", f"Shop {shop_id} not found"))
    return {
        "shop_id": shop_id,
        "score": result.score,
        "rating": result.rating,
        "base_score": result.base_score,
        "bonus": result.bonus,
        "counted": result.counted,
        "reasons": result.reasons,
    }


@router.post("/reviews/{review_id}/appeal")
async def post_appeal_decision(review_id: int, request: AppealDecisionRequest) -> dict:
    """Decide a shop's "fault resolved" appeal; upheld reviews stop counting toward the score."""
    try:
        async with get_session() as session:
            snapshot = await load_config_snapshot(session)
            result = await decide_fault_appeal(session, review_id, request.upheld, snapshot, note=request.note)
    except EngineError as e:
        raise_http(e)
    return {"review_id": review_id, "upheld": request.upheld, "shop_score": result.score if result else None}


@router.post("/reviews/{review_id}/quality")
async def post_quality_upgrade(review_id: int, request: QualityUpgradeRequest) -> dict:
    """Raise a review's content quality level; the reward difference is paid by settlement."""
    try:
        async with get_session() as session:
            snapshot = await load_config_snapshot(session)
            entry = await upgrade_content_quality(session, review_id, request.level, snapshot)
    except EngineError as e:
        raise_http(e)
    if entry is None:
        return {"review_id": review_id, "level": request.level, "pending": None}
    return {
        "review_id": review_id,
        "level": request.level,
        "pending": {
            "key": entry.idempotency_key,
            "amount": entry.amount_before_tax,
            "trigger_month": entry.trigger_month,
        },
    }


# ============================================================
# AI tasks
# ============================================================


class AiTaskRequest(BaseModel):
    kind: str = Field(examples=["damage_analysis", "appeal_review"])
    payload: dict[str, Any] = Field(description='Must contain "images": [url, ...]')
    related_id: int | None = None
    max_attempts: int | None = Field(default=None, ge=1, le=10)


def _task_dict(t: AiTask) -> dict[str, Any]:
    return {
        "id": t.id,
        "kind": t.kind,
        "status": t.status,
        "related_id": t.related_id,
        "attempts": t.attempts,
        "max_attempts": t.max_attempts,
        "last_error": t.last_error,
        "result": t.result,
        "created_at": t.created_at,
        "started_at": t.started_at,
        "finished_at": t.finished_at,
    }


@router.post("/ai-tasks", status_code=201)
async def post_ai_task(request: AiTaskRequest) -> dict:
    try:
        async with get_session() as session:
            task = await enqueue_task(
                session,
                request.kind,
                request.payload,
                related_id=request.related_id,
                max_attempts=request.max_attempts,
            )
    except EngineError as e:
        raise_http(e)
    return _task_dict(task)


@router.get("/ai-tasks")
async def get_ai_tasks(
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
) -> dict:
    async with get_session() as session:
        rows = await list_tasks(session, status=status, limit=limit)
    return {"tasks": [_task_dict(t) for t in rows]}


@router.get("/ai-tasks/{task_id}")
async def get_ai_task(task_id: int) -> dict:
    try:
        async with get_session() as session:
            task = await get_task(session, task_id)
    except EngineError as e:
        raise_http(e)
    return _task_dict(task)


@router.post("/ai-tasks/{task_id}/cancel")
async def post_cancel_ai_task(task_id: int) -> dict:
    try:
        async with get_session() as session:
            task = await cancel_task(session, task_id)
    except EngineError as e:
        raise_http(e)
    return _task_dict(task)


@router.post("/ai-tasks/{task_id}/retry")
async def post_retry_ai_task(task_id: int) -> dict:
    try:
        async with get_session() as session:
            task = await retry_task(session, task_id)
    except EngineError as e:
        raise_http(e)
    return _task_dict(task)
