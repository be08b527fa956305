"""Tests for versioned engine configuration."""

from contextlib import asynccontextmanager

import pytest
from httpx import AsyncClient
from pydantic import ValidationError

from repair_engine.routes import admin as admin_routes
from repair_engine.services import engine_config
from repair_engine.services.engine_config import (
    DEFAULT_CONFIG,
    DEFAULT_SNAPSHOT,
    build_config,
    forget_cached_snapshot,
    load_config_snapshot,
    load_config_version,
    publish_config,
)
from repair_engine.stores.postgres import get_session


def test_build_config_merges_nested_overrides():
    config = build_config({"reward": {"compliance_red_line": 0.6}, "likes": {"min_reading_seconds": 20}})
    assert config.reward.compliance_red_line == 0.6
    assert config.likes.min_reading_seconds == 20
    # Untouched siblings keep their defaults.
    assert config.reward.order_tier_caps == DEFAULT_CONFIG.reward.order_tier_caps
    assert config.likes.session_cap_seconds == 180


def test_build_config_without_overrides_is_default():
    assert build_config(None) is DEFAULT_CONFIG
    assert build_config({}) is DEFAULT_CONFIG


def test_unknown_keys_are_rejected():
    with pytest.raises(ValidationError):
        build_config({"reward": {"no_such_knob": 1}})
    with pytest.raises(ValidationError):
        build_config({"unknown_section": {}})


def test_config_is_immutable():
    with pytest.raises(ValidationError):
        DEFAULT_CONFIG.likes.min_reading_seconds = 5


@pytest.mark.asyncio
async def test_publish_then_load(db):
    async with get_session() as session:
        assert await load_config_snapshot(session) == DEFAULT_SNAPSHOT

    async with get_session() as session:
        published = await publish_config(session, {"distribution": {"min_shop_count": 5}}, note="widen")
    assert published.version == 1

    async with get_session() as session:
        second = await publish_config(session, {"likes": {"min_reading_seconds": 40}})
    assert second.version == 2
    # Each version carries the earlier overrides forward.
    assert second.config.distribution.min_shop_count == 5
    assert second.config.likes.min_reading_seconds == 40

    async with get_session() as session:
        active = await load_config_snapshot(session)
        first = await load_config_version(session, 1)
        default = await load_config_version(session, 0)
        missing = await load_config_version(session, 99)

    assert active.version == 2
    assert first.config.likes.min_reading_seconds == 30
    assert default is DEFAULT_SNAPSHOT
    assert missing is None


@pytest.mark.asyncio
async def test_admin_config_endpoints(db, client: AsyncClient):
    response = await client.post(
        "/v1/admin/config",
        json={"overrides": {"review": {"min_text_low": 8}}, "note": "stricter", "created_by": "ops"},
    )
    assert response.status_code == 201
    assert response.json()["version"] == 1

    response = await client.get("/v1/admin/config")
    assert response.status_code == 200
    assert response.json()["config"]["review"]["min_text_low"] == 8

    response = await client.get("/v1/admin/config/7")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "CONFIG_VERSION_NOT_FOUND"


@pytest.mark.asyncio
async def test_admin_rejects_invalid_overrides(db, client: AsyncClient):
    response = await client.post("/v1/admin/config", json={"overrides": {"review": {"bogus": True}}})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_CONFIG"


@pytest.mark.asyncio
async def test_cached_snapshot_is_dropped_after_commit(db, client: AsyncClient, monkeypatch: pytest.MonkeyPatch):
    events: list[str] = []

    @asynccontextmanager
    async def tracked_session():
        async with get_session() as session:
            yield session
        events.append("committed")

    async def fake_invalidate() -> None:
        events.append("invalidated")

    monkeypatch.setattr(admin_routes, "get_session", tracked_session)
    monkeypatch.setattr(engine_config, "invalidate_active_config_cache", fake_invalidate)

    response = await client.post("/v1/admin/config", json={"overrides": {"review": {"min_text_low": 8}}})
    assert response.status_code == 201
    assert events == ["committed", "invalidated"]


@pytest.mark.asyncio
async def test_publish_leaves_the_cache_to_the_caller(db, monkeypatch: pytest.MonkeyPatch):
    calls: list[str] = []

    async def fake_invalidate() -> None:
        calls.append("invalidated")

    monkeypatch.setattr(engine_config, "invalidate_active_config_cache", fake_invalidate)
    async with get_session() as session:
        await publish_config(session, {"likes": {"min_reading_seconds": 40}})
    assert calls == []

    await forget_cached_snapshot()
    assert calls == ["invalidated"]
