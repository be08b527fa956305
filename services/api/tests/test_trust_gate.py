from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from repair_engine.models import BlacklistType, User
from repair_engine.services import trust_gate
from repair_engine.services.engine_config import DEFAULT_CONFIG
from repair_engine.services.trust_gate import (
    AccountStats,
    TrustTier,
    add_blacklist_entry,
    check_blacklist,
    check_content_similarity,
    compute_trust_tier,
    fallback_assessment,
    get_trust_assessment,
    remove_blacklist_entry,
    reward_eligibility,
    text_similarity,
)
from repair_engine.services.timeutil import utcnow
from repair_engine.stores.postgres import get_session

RULES = DEFAULT_CONFIG.trust


def test_core_trusted_needs_orders_and_reviews() -> None:
    a = compute_trust_tier(AccountStats(account_age_days=400, completed_orders=12, valid_reviews=4), RULES)
    assert a.tier == TrustTier.CORE_TRUSTED
    assert a.weight == 2.0
    assert a.reasons == ["ORDERS_12", "REVIEWS_4"]


def test_normal_active_threshold() -> None:
    a = compute_trust_tier(AccountStats(account_age_days=400, completed_orders=3, valid_reviews=2), RULES)
    assert a.tier == TrustTier.NORMAL_ACTIVE
    assert a.weight == 1.0


def test_fresh_account_is_new_user() -> None:
    a = compute_trust_tier(AccountStats(account_age_days=2, completed_orders=0, valid_reviews=0), RULES)
    assert a.tier == TrustTier.NEW_USER
    assert a.weight == 0.3
    assert "NEW_ACCOUNT" in a.reasons


def test_old_account_with_little_history_stays_new_user() -> None:
    a = compute_trust_tier(AccountStats(account_age_days=400, completed_orders=1, valid_reviews=0), RULES)
    assert a.tier == TrustTier.NEW_USER
    assert "LOW_HISTORY" in a.reasons


def test_blacklisted_account_is_high_risk() -> None:
    a = compute_trust_tier(
        AccountStats(account_age_days=900, completed_orders=50, valid_reviews=20, blacklisted=True),
        RULES,
    )
    assert a.tier == TrustTier.HIGH_RISK
    assert a.weight == 0.0
    assert a.reasons == ["BLACKLISTED"]


def test_reward_eligibility_by_tier() -> None:
    assert reward_eligibility(TrustTier.HIGH_RISK, RULES).eligible is False

    new_user = reward_eligibility(TrustTier.NEW_USER, RULES)
    assert new_user.eligible is True
    assert new_user.multiplier == 0.5
    assert new_user.monthly_cap == 100.0

    core = reward_eligibility(TrustTier.CORE_TRUSTED, RULES)
    assert core.multiplier == 1.0
    assert core.monthly_cap is None


def test_text_similarity_is_dice_over_characters() -> None:
    assert text_similarity("abc", "abd") == pytest.approx(2 / 3)
    assert text_similarity("", "abc") == 0.0


def test_short_texts_skip_similarity_check() -> None:
    passes, score = check_content_similarity("很好很好", ["很好很好"], threshold=0.6)
    assert passes is True
    assert score == 0.0


def test_near_duplicate_review_is_rejected() -> None:
    text = "这家店钣金喷漆做得非常细致，价格透明"
    passes, score = check_content_similarity(text, ["完全无关的内容描述", text], threshold=0.6)
    assert passes is False
    assert score == 1.0


@pytest.mark.asyncio
async def test_blacklist_lookup_by_phone_and_removal(db) -> None:
    async with get_session() as session:
        entry = await add_blacklist_entry(session, BlacklistType.PHONE, " 13900000000 ", reason="fake accounts")
        again = await add_blacklist_entry(session, BlacklistType.PHONE, "13900000000")
        assert again.id == entry.id

    async with get_session() as session:
        hit = await check_blacklist(session, user_id=5, phone="13900000000")
        assert hit.blocked is True
        assert hit.reason == "fake accounts"
        assert (await check_blacklist(session, user_id=5, phone="13900000001")).blocked is False

    async with get_session() as session:
        assert await remove_blacklist_entry(session, entry.id) is True
        assert await remove_blacklist_entry(session, entry.id) is False

    async with get_session() as session:
        assert (await check_blacklist(session, user_id=5, phone="13900000000")).blocked is False


@pytest.mark.asyncio
async def test_blacklisted_user_id_makes_account_high_risk(db) -> None:
    async with get_session() as session:
        user = User(phone="13800000009", created_at=utcnow())
        session.add(user)
        await session.flush()
        await add_blacklist_entry(session, BlacklistType.USER_ID, str(user.id), reason="refund abuse")
        user_id = user.id

    async with get_session() as session:
        assessment = await get_trust_assessment(session, user_id, RULES)
    assert assessment.tier == TrustTier.HIGH_RISK


async def _lookup_down(*args, **kwargs):
    raise OperationalError("SELECT blacklist", {}, ConnectionError("database unavailable"))


@pytest.mark.asyncio
async def test_lookup_failure_fails_open_by_default(db, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(trust_gate, "_find_blacklist_hit", _lookup_down)
    async with get_session() as session:
        session.add(User(id=7, phone="13800000007", created_at=utcnow()))

    async with get_session() as session:
        blacklist = await check_blacklist(session, user_id=7, phone="13800000007")
        assessment = await get_trust_assessment(session, 7, RULES)

    assert blacklist.blocked is False
    assert assessment == fallback_assessment(RULES)
    assert assessment.tier == TrustTier.NEW_USER
    assert assessment.reasons == ["LOOKUP_FAILED"]


@pytest.mark.asyncio
async def test_lookup_failure_propagates_when_fail_open_is_off(db, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(trust_gate, "_find_blacklist_hit", _lookup_down)
    monkeypatch.setattr(trust_gate, "get_settings", lambda: SimpleNamespace(trust_fail_open=False))
    async with get_session() as session:
        session.add(User(id=7, phone="13800000007", created_at=utcnow()))

    with pytest.raises(OperationalError):
        async with get_session() as session:
            await check_blacklist(session, user_id=7, phone="13800000007")
    with pytest.raises(OperationalError):
        async with get_session() as session:
            await get_trust_assessment(session, 7, RULES)
