"""AI vision oracle and its durable task queue.

The oracle is an OpenAI-compatible chat-completions endpoint that accepts
image inputs. It is only ever reached through `AiTask` rows:

- enqueue_task() writes a pending row
- the worker pool claims rows (pending -> processing, attempts + 1),
  calls the oracle outside any DB transaction and applies the verdict
- a failed attempt returns to pending until max_attempts, then failed
- cancel_task() wins over an in-flight call: the verdict is discarded
- reset_stale_tasks() puts rows stuck in processing back to pending
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime, timedelta
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from repair_engine.models import AiTask, AiTaskKind, AiTaskStatus
from repair_engine.services.engine_config import load_config_snapshot
from repair_engine.services.errors import Conflict, EngineError, NotFound, ValidationFailed
from repair_engine.services.review_submission import decide_fault_appeal
from repair_engine.services.timeutil import utcnow
from repair_engine.settings import get_settings
from repair_engine.stores.postgres import get_session

logger = logging.getLogger("uvicorn.error")

# Delay before each HTTP attempt (seconds); first attempt goes out immediately.
RETRY_DELAYS_S = (0, 1, 2, 4)
RETRYABLE_STATUS = {429, 500, 502, 503, 504}
MAX_IMAGES = 8


class OracleError(Exception):
    """The oracle could not produce a usable verdict."""


class OracleDisabled(OracleError):
    pass


class DamageItem(BaseModel):
    name: str
    severity: str | None = None
    suggestion: str | None = None


class DamageVerdict(BaseModel):
    repair_suggestions: list[DamageItem] = Field(default_factory=list)
    total_estimate: list[float] = Field(default_factory=list, description="[low, high] in CNY")
    summary: str | None = None


class AppealVerdict(BaseModel):
    upheld: bool
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reason: str | None = None


VERDICT_MODELS: dict[str, type[BaseModel]] = {
    AiTaskKind.DAMAGE_ANALYSIS.value: DamageVerdict,
    AiTaskKind.APPEAL_REVIEW.value: AppealVerdict,
}


def extract_first_json_object(text: str) -> dict[str, Any] | None:
    """Best-effort extraction of the first JSON object from model output."""
    text = text.strip()
    if not text:
        return None
    if text.startswith("{") and text.endswith("}"):
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass
    # Fenced or chatty output: take the outermost {...}
    m = re.search(r"\{[\s\S]*\}", text)
    if not m:
        return None
    try:
        parsed = json.loads(m.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_verdict(kind: str, content: str) -> BaseModel:
    """Validate oracle output for a task kind.

    Raises:
        OracleError: no JSON object or it does not match the verdict model.
    """
    model = VERDICT_MODELS.get(kind)
    if model is None:
        raise OracleError(f"unknown task kind {kind!r}")
    payload = extract_first_json_object(content)
    if payload is None:
        raise OracleError("oracle returned no JSON object")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise OracleError(f"invalid verdict: {e.error_count()} error(s)") from e


def _message_text(data: Any) -> str:
    # choices[0].message.content; some providers return a list of parts
    if not isinstance(data, dict) or not isinstance(data.get("choices"), list):
        return ""
    for choice in data["choices"]:
        if not isinstance(choice, dict):
            continue
        msg = choice.get("message")
        if not isinstance(msg, dict):
            continue
        content = msg.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return "".join(
                part.get("text", "") for part in content if isinstance(part, dict) and part.get("type") == "text"
            )
    return ""


class VisionOracle:
    """Client for the OpenAI-compatible vision endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout_s: float | None = None,
    ):
        settings = get_settings()
        # An explicit key (tests, scripts) bypasses the VISION_ENABLED switch.
        self._switch = True if api_key is not None else settings.vision_enabled
        self.api_key = api_key if api_key is not None else settings.vision_api_key
        self.base_url = (base_url or settings.vision_base_url).rstrip("/")
        self.model = model or settings.vision_model
        self.timeout_s = timeout_s or settings.vision_timeout_s
        self._http_client: httpx.AsyncClient | None = None

    @property
    def enabled(self) -> bool:
        return self._switch and bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_s)
        return self._http_client

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _body(self, images: list[str], prompt: str, system_prompt: str) -> dict[str, Any]:
        content: list[dict[str, Any]] = [{"type": "image_url", "image_url": {"url": url}} for url in images[:MAX_IMAGES]]
        content.append({"type": "text", "text": prompt})
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": content},
            ],
            "temperature": 0.0,
        }

    async def analyze(self, images: list[str], prompt: str, *, system_prompt: str = "") -> str:
        """Send images plus prompt; return the raw text of the first choice.

        Retries 429/5xx and transport errors with a short backoff.

        Raises:
            OracleDisabled: no API key configured.
            OracleError: non-retryable HTTP error or retries exhausted.
        """
        if not self.enabled:
            raise OracleDisabled("vision oracle is not configured")

        url = f"{self.base_url}/chat/completions"
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        body = self._body(images, prompt, system_prompt)
        client = await self._get_client()

        last_error = "no attempt made"
        for delay in RETRY_DELAYS_S:
            if delay:
                await asyncio.sleep(delay)
            try:
                r = await client.post(url, headers=headers, json=body)
            except httpx.TransportError as e:
                last_error = f"transport: {type(e).__name__}"
                logger.warning(f"[vision] {last_error}, retrying")
                continue
            if r.status_code in RETRYABLE_STATUS:
                last_error = f"http {r.status_code}"
                logger.warning(f"[vision] {last_error}, retrying")
                continue
            if r.status_code >= 400:
                raise OracleError(f"http {r.status_code}: {r.text[:200]}")
            return _message_text(r.json())

        raise OracleError(f"retries exhausted ({last_error})")


DAMAGE_SYSTEM_PROMPT = (
    "You are a vehicle damage assessor.\n"
    "Look at the photos and return ONLY valid JSON matching this shape:\n"
    '{ "repair_suggestions": [ { "name": string, "severity": "light"|"medium"|"severe", '
    '"suggestion": string } ], "total_estimate": [low, high], "summary": string }\n'
    "total_estimate is the repair cost range in CNY."
)

APPEAL_SYSTEM_PROMPT = (
    "You arbitrate repair-shop appeals against negative reviews.\n"
    "The shop claims the fault described in the review has been resolved.\n"
    "Compare the review with the shop's evidence photos and return ONLY valid JSON:\n"
    '{ "upheld": bool, "confidence": number, "reason": string }\n'
    "upheld is true only when the photos clearly show the fault fixed."
)


def build_prompt(kind: str, payload: dict[str, Any]) -> tuple[str, str]:
    """Return (system_prompt, user_prompt) for a task."""
    if kind == AiTaskKind.DAMAGE_ANALYSIS.value:
        lines = [f"description: {payload.get('description') or ''}"]
        vehicle = payload.get("vehicle") or {}
        if vehicle:
            lines.append(f"vehicle: {vehicle.get('brand', '')} {vehicle.get('model', '')}".rstrip())
        return DAMAGE_SYSTEM_PROMPT, "\n".join(lines)
    if kind == AiTaskKind.APPEAL_REVIEW.value:
        return APPEAL_SYSTEM_PROMPT, (
            f"review: {payload.get('review_text') or ''}\n"
            f"appeal: {payload.get('appeal_reason') or ''}"
        )
    raise ValidationFailed("INVALID_TASK_KIND", f"Unknown task kind {kind!r}", {"kind": kind})


# --- queue operations ---


async def enqueue_task(
    session: AsyncSession,
    kind: str,
    payload: dict[str, Any],
    *,
    related_id: int | None = None,
    max_attempts: int | None = None,
) -> AiTask:
    if kind not in VERDICT_MODELS:
        raise ValidationFailed("INVALID_TASK_KIND", f"Unknown task kind {kind!r}", {"kind": kind})
    images = payload.get("images")
    if not isinstance(images, list) or not images:
        raise ValidationFailed("NO_IMAGES", "At least one image URL is required")
    if kind == AiTaskKind.APPEAL_REVIEW.value and related_id is None:
        raise ValidationFailed("MISSING_REVIEW", "appeal_review tasks need the review id as related_id")

    task = AiTask(
        kind=kind,
        status=AiTaskStatus.PENDING.value,
        payload=payload,
        related_id=related_id,
        attempts=0,
        max_attempts=max_attempts or get_settings().ai_task_max_attempts,
    )
    session.add(task)
    await session.flush()
    logger.info(f"[vision] enqueued task_id={task.id} kind={kind} related_id={related_id}")
    return task


async def get_task(session: AsyncSession, task_id: int) -> AiTask:
    task = await session.get(AiTask, task_id)
    if task is None:
        raise NotFound("TASK_NOT_FOUND", f"AI task {task_id} not found", {"task_id": task_id})
    return task


async def list_tasks(session: AsyncSession, *, status: str | None = None, limit: int = 50) -> list[AiTask]:
    stmt = select(AiTask).order_by(AiTask.id.desc()).limit(limit)
    if status:
        stmt = stmt.where(AiTask.status == status)
    return list((await session.execute(stmt)).scalars().all())


async def claim_next_task(session: AsyncSession, now: datetime | None = None) -> AiTask | None:
    """Move the oldest pending task to processing; None when the queue is empty.

    The status guard in the UPDATE makes concurrent claimers race safely.
    """
    now = now or utcnow()
    candidates = (
        await session.execute(
            select(AiTask.id)
            .where(AiTask.status == AiTaskStatus.PENDING.value)
            .order_by(AiTask.id)
            .limit(5)
        )
    ).scalars().all()
    for task_id in candidates:
        res = await session.execute(
            update(AiTask)
            .where(AiTask.id == task_id, AiTask.status == AiTaskStatus.PENDING.value)
            .values(
                status=AiTaskStatus.PROCESSING.value,
                attempts=AiTask.attempts + 1,
                started_at=now,
                updated_at=now,
            )
        )
        if res.rowcount == 1:
            task = await session.get(AiTask, task_id)
            await session.refresh(task)
            return task
    return None


async def cancel_task(session: AsyncSession, task_id: int, now: datetime | None = None) -> AiTask:
    now = now or utcnow()
    task = await get_task(session, task_id)
    if task.status in (AiTaskStatus.DONE.value, AiTaskStatus.CANCELLED.value):
        raise Conflict(
            "TASK_NOT_CANCELLABLE",
            f"Task is already {task.status}",
            {"task_id": task_id, "status": task.status},
        )
    task.status = AiTaskStatus.CANCELLED.value
    task.finished_at = now
    task.updated_at = now
    await session.flush()
    logger.info(f"[vision] cancelled task_id={task_id}")
    return task


async def retry_task(session: AsyncSession, task_id: int, now: datetime | None = None) -> AiTask:
    """Give a failed or cancelled task its attempts back."""
    now = now or utcnow()
    task = await get_task(session, task_id)
    if task.status not in (AiTaskStatus.FAILED.value, AiTaskStatus.CANCELLED.value):
        raise Conflict(
            "TASK_NOT_RETRYABLE",
            f"Only failed or cancelled tasks can be retried (status={task.status})",
            {"task_id": task_id, "status": task.status},
        )
    task.status = AiTaskStatus.PENDING.value
    task.attempts = 0
    task.last_error = None
    task.finished_at = None
    task.updated_at = now
    await session.flush()
    logger.info(f"[vision] retry task_id={task_id}")
    return task


async def reset_stale_tasks(
    session: AsyncSession,
    now: datetime | None = None,
    stale_after_s: int | None = None,
) -> int:
    """Return processing rows older than the stale window to pending."""
    now = now or utcnow()
    stale_after_s = stale_after_s or get_settings().ai_task_stale_after_s
    cutoff = now - timedelta(seconds=stale_after_s)
    res = await session.execute(
        update(AiTask)
        .where(AiTask.status == AiTaskStatus.PROCESSING.value, AiTask.started_at < cutoff)
        .values(status=AiTaskStatus.PENDING.value, started_at=None, updated_at=now)
    )
    count = res.rowcount or 0
    if count:
        logger.warning(f"[vision] reset {count} stale task(s) to pending")
    return count


async def record_failure(session: AsyncSession, task: AiTask, error: str, now: datetime | None = None) -> AiTask:
    now = now or utcnow()
    task.last_error = error[:1000]
    task.updated_at = now
    if task.attempts >= task.max_attempts:
        task.status = AiTaskStatus.FAILED.value
        task.finished_at = now
        logger.error(f"[vision] task_id={task.id} failed after {task.attempts} attempt(s): {error}")
    else:
        task.status = AiTaskStatus.PENDING.value
        task.started_at = None
        logger.warning(f"[vision] task_id={task.id} attempt {task.attempts} failed: {error}")
    await session.flush()
    return task


async def apply_result(session: AsyncSession, task: AiTask, verdict: BaseModel, now: datetime | None = None) -> AiTask:
    """Store the verdict and run its side effects."""
    now = now or utcnow()
    if isinstance(verdict, AppealVerdict) and task.related_id is not None:
        snapshot = await load_config_snapshot(session)
        await decide_fault_appeal(
            session,
            task.related_id,
            verdict.upheld,
            snapshot,
            note=verdict.reason,
            now=now,
        )
    task.result = verdict.model_dump(mode="json")
    task.status = AiTaskStatus.DONE.value
    task.last_error = None
    task.finished_at = now
    task.updated_at = now
    await session.flush()
    logger.info(f"[vision] task_id={task.id} kind={task.kind} done")
    return task


async def process_task(task_id: int, oracle: VisionOracle) -> str:
    """Run one claimed task end to end; return its final status.

    The oracle call happens between two short units of work so no DB
    connection is held while waiting on HTTP.
    """
    async with get_session() as session:
        task = await session.get(AiTask, task_id)
        if task is None or task.status != AiTaskStatus.PROCESSING.value:
            return task.status if task else "missing"
        kind = task.kind
        payload = dict(task.payload or {})

    error: str | None = None
    verdict: BaseModel | None = None
    try:
        system_prompt, prompt = build_prompt(kind, payload)
        content = await oracle.analyze(list(payload.get("images") or []), prompt, system_prompt=system_prompt)
        verdict = parse_verdict(kind, content)
    except (OracleError, ValidationFailed) as e:
        error = str(e) or type(e).__name__
    except (httpx.HTTPError, ValueError) as e:
        error = f"{type(e).__name__}: {e}"

    async with get_session() as session:
        task = await session.get(AiTask, task_id)
        if task is None:
            return "missing"
        if task.status != AiTaskStatus.PROCESSING.value:
            # Cancelled (or reset) while the oracle was working
            logger.info(f"[vision] task_id={task_id} is {task.status}, discarding verdict")
            return task.status
        if verdict is None:
            await record_failure(session, task, error or "unknown error")
            return task.status
        try:
            await apply_result(session, task, verdict)
        except EngineError as e:
            await record_failure(session, task, f"{e.code}: {e.message}")
        return task.status


class VisionWorker:
    """Poll loop that feeds claimed tasks into a bounded pool."""

    def __init__(
        self,
        oracle: VisionOracle | None = None,
        *,
        concurrency: int | None = None,
        poll_interval_s: float | None = None,
    ):
        settings = get_settings()
        self.oracle = oracle or VisionOracle()
        self.concurrency = concurrency or settings.ai_task_concurrency
        self.poll_interval_s = poll_interval_s or settings.ai_task_poll_interval_s
        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._inflight: set[asyncio.Task[str]] = set()
        self._loop_task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    async def _run_one(self, task_id: int) -> str:
        try:
            return await process_task(task_id, self.oracle)
        except Exception:
            logger.exception(f"[vision] task_id={task_id} crashed; the stale sweep will pick it up")
            return "error"
        finally:
            self._semaphore.release()

    async def run_once(self) -> int:
        """Reset stale rows, then claim as many tasks as there are free slots."""
        async with get_session() as session:
            await reset_stale_tasks(session)
        if not self.oracle.enabled:
            return 0

        started = 0
        while not self._stopping.is_set():
            # Only claim what the pool can run right now.
            if self._semaphore.locked():
                break
            await self._semaphore.acquire()
            async with get_session() as session:
                task = await claim_next_task(session)
                task_id = task.id if task else None
            if task_id is None:
                self._semaphore.release()
                break
            job = asyncio.create_task(self._run_one(task_id))
            self._inflight.add(job)
            job.add_done_callback(self._inflight.discard)
            started += 1
        return started

    async def _loop(self) -> None:
        logger.info(f"[vision] worker started concurrency={self.concurrency}")
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("[vision] worker iteration failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval_s)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._loop_task is None:
            self._stopping.clear()
            self._loop_task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._stopping.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        await self.oracle.close()
        logger.info("[vision] worker stopped")
