"""Tests for the vision oracle task queue."""

from datetime import timedelta

import pytest

from repair_engine.models import AiTaskKind, AiTaskStatus
from repair_engine.services.errors import Conflict, ValidationFailed
from repair_engine.services.timeutil import utcnow
from repair_engine.services.vision_tasks import (
    AppealVerdict,
    DamageVerdict,
    OracleError,
    VisionWorker,
    build_prompt,
    cancel_task,
    claim_next_task,
    enqueue_task,
    extract_first_json_object,
    get_task,
    parse_verdict,
    process_task,
    reset_stale_tasks,
    retry_task,
)
from repair_engine.stores.postgres import get_session

DAMAGE = AiTaskKind.DAMAGE_ANALYSIS.value
APPEAL = AiTaskKind.APPEAL_REVIEW.value
GOOD_REPLY = '{"repair_suggestions": [{"name": "前保险杠", "severity": "light"}], "total_estimate": [800, 1200]}'


class FakeOracle:
    """Returns a canned reply; optionally runs a hook before replying."""

    def __init__(self, reply: str = GOOD_REPLY, *, enabled: bool = True, before_reply=None):
        self.reply = reply
        self.enabled = enabled
        self.before_reply = before_reply
        self.calls: list[tuple[list[str], str, str]] = []
        self.closed = False

    async def analyze(self, images: list[str], prompt: str, *, system_prompt: str = "") -> str:
        self.calls.append((images, prompt, system_prompt))
        if self.before_reply is not None:
            await self.before_reply()
        return self.reply

    async def close(self) -> None:
        self.closed = True


def test_extract_first_json_object():
    assert extract_first_json_object('{"upheld": true}') == {"upheld": True}
    fenced = 'Here you go:\n```json\n{"upheld": false, "reason": "still leaking"}\n```'
    assert extract_first_json_object(fenced) == {"upheld": False, "reason": "still leaking"}
    assert extract_first_json_object("no json here") is None
    assert extract_first_json_object("") is None
    assert extract_first_json_object("{not: json}") is None


def test_parse_verdict():
    verdict = parse_verdict(DAMAGE, GOOD_REPLY)
    assert isinstance(verdict, DamageVerdict)
    assert verdict.repair_suggestions[0].name == "前保险杠"
    assert verdict.total_estimate == [800, 1200]

    appeal = parse_verdict(APPEAL, '{"upheld": true, "confidence": 0.9}')
    assert isinstance(appeal, AppealVerdict)
    assert appeal.upheld is True

    with pytest.raises(OracleError):
        parse_verdict(APPEAL, '{"confidence": 2.0}')
    with pytest.raises(OracleError):
        parse_verdict(DAMAGE, "sorry, I cannot see the image")
    with pytest.raises(OracleError):
        parse_verdict("ocr", GOOD_REPLY)


def test_build_prompt():
    system, prompt = build_prompt(DAMAGE, {"description": "左前门凹陷", "vehicle": {"brand": "Toyota", "model": "Camry"}})
    assert "damage assessor" in system
    assert prompt == "description: 左前门凹陷\nvehicle: Toyota Camry"

    system, prompt = build_prompt(APPEAL, {"review_text": "漏水", "appeal_reason": "已更换密封条"})
    assert "appeals" in system
    assert prompt == "review: 漏水\nappeal: 已更换密封条"

    with pytest.raises(ValidationFailed):
        build_prompt("ocr", {})


@pytest.mark.asyncio
async def test_enqueue_validation(db):
    async with get_session() as session:
        with pytest.raises(ValidationFailed) as exc:
            await enqueue_task(session, DAMAGE, {"images": []})
        assert exc.value.code == "NO_IMAGES"

        with pytest.raises(ValidationFailed) as exc:
            await enqueue_task(session, "ocr", {"images": ["https://img/1.jpg"]})
        assert exc.value.code == "INVALID_TASK_KIND"

        with pytest.raises(ValidationFailed) as exc:
            await enqueue_task(session, APPEAL, {"images": ["https://img/1.jpg"]})
        assert exc.value.code == "MISSING_REVIEW"


@pytest.mark.asyncio
async def test_claim_and_process_success(db):
    async with get_session() as session:
        task = await enqueue_task(session, DAMAGE, {"images": ["https://img/1.jpg"], "description": "刮擦"})
        task_id = task.id

    async with get_session() as session:
        claimed = await claim_next_task(session)
        assert claimed.id == task_id
        assert claimed.status == AiTaskStatus.PROCESSING.value
        assert claimed.attempts == 1
        assert await claim_next_task(session) is None

    oracle = FakeOracle()
    assert await process_task(task_id, oracle) == AiTaskStatus.DONE.value
    assert oracle.calls[0][0] == ["https://img/1.jpg"]

    async with get_session() as session:
        done = await get_task(session, task_id)
        assert done.result["total_estimate"] == [800.0, 1200.0]
        assert done.finished_at is not None

        with pytest.raises(Conflict) as exc:
            await cancel_task(session, task_id)
        assert exc.value.code == "TASK_NOT_CANCELLABLE"


@pytest.mark.asyncio
async def test_bad_reply_retries_then_fails(db):
    async with get_session() as session:
        task_id = (await enqueue_task(session, DAMAGE, {"images": ["https://img/1.jpg"]}, max_attempts=2)).id

    oracle = FakeOracle("I think the bumper is scratched.")
    for expected in (AiTaskStatus.PENDING.value, AiTaskStatus.FAILED.value):
        async with get_session() as session:
            await claim_next_task(session)
        assert await process_task(task_id, oracle) == expected

    async with get_session() as session:
        failed = await get_task(session, task_id)
        assert failed.attempts == 2
        assert "no JSON" in failed.last_error

        retried = await retry_task(session, task_id)
        assert retried.status == AiTaskStatus.PENDING.value
        assert retried.attempts == 0
        assert retried.last_error is None


@pytest.mark.asyncio
async def test_appeal_for_missing_review_is_recorded_as_failure(db):
    async with get_session() as session:
        task_id = (
            await enqueue_task(session, APPEAL, {"images": ["https://img/1.jpg"]}, related_id=404, max_attempts=1)
        ).id
        await claim_next_task(session)

    assert await process_task(task_id, FakeOracle('{"upheld": true}')) == AiTaskStatus.FAILED.value

    async with get_session() as session:
        task = await get_task(session, task_id)
        assert task.last_error.startswith("REVIEW_NOT_FOUND")
        assert task.result is None


@pytest.mark.asyncio
async def test_cancel_during_oracle_call_discards_verdict(db):
    async with get_session() as session:
        task_id = (await enqueue_task(session, DAMAGE, {"images": ["https://img/1.jpg"]})).id
        await claim_next_task(session)

    async def cancel_meanwhile() -> None:
        async with get_session() as session:
            await cancel_task(session, task_id)

    assert await process_task(task_id, FakeOracle(before_reply=cancel_meanwhile)) == AiTaskStatus.CANCELLED.value

    async with get_session() as session:
        task = await get_task(session, task_id)
        assert task.status == AiTaskStatus.CANCELLED.value
        assert task.result is None


@pytest.mark.asyncio
async def test_retry_rejects_pending_task(db):
    async with get_session() as session:
        task_id = (await enqueue_task(session, DAMAGE, {"images": ["https://img/1.jpg"]})).id
        with pytest.raises(Conflict) as exc:
            await retry_task(session, task_id)
        assert exc.value.code == "TASK_NOT_RETRYABLE"


@pytest.mark.asyncio
async def test_reset_stale_tasks(db):
    now = utcnow()
    async with get_session() as session:
        task_id = (await enqueue_task(session, DAMAGE, {"images": ["https://img/1.jpg"]})).id
        await claim_next_task(session, now=now - timedelta(hours=1))

    async with get_session() as session:
        assert await reset_stale_tasks(session, now=now, stale_after_s=600) == 1
        assert await reset_stale_tasks(session, now=now, stale_after_s=600) == 0

    async with get_session() as session:
        task = await get_task(session, task_id)
        assert task.status == AiTaskStatus.PENDING.value
        assert task.attempts == 1


@pytest.mark.asyncio
async def test_worker_does_not_claim_when_oracle_disabled(db):
    async with get_session() as session:
        task_id = (await enqueue_task(session, DAMAGE, {"images": ["https://img/1.jpg"]})).id

    worker = VisionWorker(FakeOracle(enabled=False), concurrency=1)
    assert await worker.run_once() == 0

    async with get_session() as session:
        assert (await get_task(session, task_id)).status == AiTaskStatus.PENDING.value


@pytest.mark.asyncio
async def test_worker_runs_claimed_task(db):
    async with get_session() as session:
        task_id = (await enqueue_task(session, DAMAGE, {"images": ["https://img/1.jpg"]})).id

    oracle = FakeOracle()
    worker = VisionWorker(oracle, concurrency=1)
    assert await worker.run_once() == 1
    await worker.stop()

    assert oracle.closed is True
    async with get_session() as session:
        assert (await get_task(session, task_id)).status == AiTaskStatus.DONE.value
