"""Versioned engine configuration.

Every business tunable (caps, thresholds, calibration tables, radius and
notification limits) lives in `EngineConfig`. Operators publish a new
snapshot version; computations receive a `ConfigSnapshot` explicitly and
record its version on the rows they write, so a historical calculation can
be replayed with the exact rules that produced it.

Snapshots are stored as partial overrides merged on top of the defaults
below; unknown keys are rejected at publish time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from repair_engine.models.engine_config import EngineConfigVersion
from repair_engine.stores.redis import (
    get_active_config_cache,
    invalidate_active_config_cache,
    set_active_config_cache,
)

logger = logging.getLogger("uvicorn.error")


class _Rules(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class TrustRules(_Rules):
    new_user_days: int = 7
    new_user_max_orders: int = 2
    core_min_orders: int = 10
    core_min_reviews: int = 3
    active_min_orders: int = 3
    active_min_reviews: int = 2
    weights: dict[str, float] = Field(
        default_factory=lambda: {
            "high_risk": 0.0,
            "new_user": 0.3,
            "normal_active": 1.0,
            "core_trusted": 2.0,
        }
    )
    # Reward eligibility per tier: high_risk gets nothing, new_user is halved and capped.
    new_user_reward_multiplier: float = 0.5
    new_user_monthly_reward_cap: float = 100.0


class AntifraudRules(_Rules):
    same_shop_window_days: int = 30
    same_shop_max_orders: int = 3
    new_account_days: int = 7
    new_account_max_orders: int = 5
    similarity_threshold: float = 0.6
    similarity_sample_size: int = 500


class DistributionRules(_Rules):
    compliance_floor: float = 80.0
    violation_lookback_days: int = 30
    violation_severity: int = 4
    new_shop_days: int = 90
    new_shop_base_score: float = 60.0
    history_days: int = 90

    radius_growth_rate: float = 0.2
    radius_ceiling_km: float = 200.0
    min_shop_count: int = 3

    scene_weight_low: float = 0.35
    scene_weight_high: float = 0.6
    deviation_full_max: float = 10.0
    deviation_zero_above: float = 30.0
    deviation_term_max: float = 20.0
    same_project_priority_bonus: float = 15.0
    same_project_fallback_bonus: float = 5.0
    response_readiness_bonus: float = 5.0

    tier1_min_score: float = 80.0
    tier1_min_compliance: float = 95.0
    tier2_min_score: float = 60.0
    tier2_min_compliance: float = 85.0
    tier3_max_shops: int = 2
    max_notified_low: int = 10
    max_notified_high: int = 15
    tier1_exclusive_minutes: int = 15
    # Tier 3 opens only while active quotes stay below this count.
    tier3_open_below_quotes: int = 3
    bidding_ttl_hours: int = 72


class ScoringRules(_Rules):
    order_weights: dict[str, float] = Field(
        default_factory=lambda: {"L1": 0.2, "L2": 1.0, "L3": 3.0, "L4": 6.0}
    )
    insurance_multiplier: float = 2.0
    premium_content_weight: float = 3.0
    negative_rating_max: float = 2.0
    negative_multiplier_low: float = 1.5
    negative_multiplier_high: float = 2.0
    compliance_coefficient_min: float = 95.0
    compliance_coefficient: float = 1.2
    # [months_below, factor] buckets; anything older decays to 0.
    decay_buckets: list[tuple[int, float]] = Field(
        default_factory=lambda: [(3, 1.0), (6, 0.5), (12, 0.2)]
    )
    days_per_month: int = 30
    qualification_bonus: dict[str, float] = Field(default_factory=lambda: {"1": 10.0, "2": 5.0})
    compliance_bonus_min: float = 95.0
    compliance_bonus: float = 10.0
    compliance_penalty_below: float = 80.0
    compliance_penalty: float = -20.0
    deviation_bonus_max: float = 10.0
    deviation_bonus: float = 5.0
    deviation_penalty_above: float = 30.0
    deviation_penalty: float = -20.0


class RankingRules(_Rules):
    # scenario -> {shop, distance, price, response}
    scene_weights: dict[str, dict[str, float]] = Field(
        default_factory=lambda: {
            "L1L2": {"shop": 0.35, "distance": 0.30, "price": 0.25, "response": 0.10},
            "L3L4": {"shop": 0.60, "distance": 0.05, "price": 0.20, "response": 0.15},
            "brand": {"shop": 0.50, "distance": 0.10, "price": 0.20, "response": 0.20},
        }
    )
    compliance_boost_min: float = 95.0
    compliance_boost: float = 1.1
    brand_boost: float = 1.05
    new_shop_days: int = 30
    new_shop_boost: float = 1.05
    price_full_max: float = 10.0
    price_zero_min: float = 30.0
    response_full_max_minutes: float = 5.0
    response_zero_min_minutes: float = 60.0
    response_unknown_score: float = 50.0
    default_shop_score: float = 50.0


class RewardRules(_Rules):
    fixed_reward: dict[str, float] = Field(
        default_factory=lambda: {"L1": 10.0, "L2": 30.0, "L3": 100.0, "L4": 300.0}
    )
    base_float_ratio: dict[str, float] = Field(
        default_factory=lambda: {"L1": 0.005, "L2": 0.01, "L3": 0.015, "L4": 0.02}
    )
    # vehicle tier -> level -> delta added to the float ratio
    calibration_delta: dict[str, dict[str, float]] = Field(
        default_factory=lambda: {
            "low": {"L1": -0.002, "L2": -0.003, "L3": -0.005, "L4": -0.005},
            "mid": {"L1": 0.0, "L2": 0.0, "L3": 0.0, "L4": 0.0},
            "high": {"L1": 0.002, "L2": 0.004, "L3": 0.005, "L4": 0.01},
        }
    )
    item_cap: dict[str, float] = Field(
        default_factory=lambda: {"L1": 50.0, "L2": 200.0, "L3": 800.0, "L4": 2000.0}
    )
    low_vehicle_cap_uplift: float = 1.2
    low_vehicle_l4_amplifier: float = 2.5

    order_tier_thresholds: list[float] = Field(default_factory=lambda: [1000.0, 5000.0, 20000.0])
    order_tier_caps: dict[str, float] = Field(
        default_factory=lambda: {"1": 30.0, "2": 150.0, "3": 800.0, "4": 2000.0}
    )

    commission_tier_thresholds: list[float] = Field(default_factory=lambda: [5000.0, 20000.0])
    commission_rates: list[float] = Field(default_factory=lambda: [0.08, 0.10, 0.12])
    commission_up_pct: float = 0.02
    commission_up_max_ratio: float = 1.2
    commission_down_pct: float = 0.01
    commission_down_min_ratio: float = 0.5
    commission_bad_compliance_below: float = 80.0
    commission_good_compliance_min: float = 95.0
    commission_good_complaint_max: float = 1.0
    compliance_red_line: float = 0.70

    vehicle_low_max: float = 100_000.0
    vehicle_mid_max: float = 300_000.0

    premium_float_ratio: float = 0.5
    viral_float_ratio: float = 1.0
    # content quality level -> max total reward as a share of commission
    premium_cap_ratio: dict[str, float] = Field(
        default_factory=lambda: {"1": 0.7, "2": 0.8, "3": 0.9, "4": 1.0}
    )

    # order tier -> [[stage, share], ...]; tiers above the last key use the last entry
    stage_splits: dict[str, list[tuple[str, float]]] = Field(
        default_factory=lambda: {
            "1": [("main", 1.0)],
            "2": [("main", 1.0)],
            "3": [("main", 0.5), ("1m", 0.5)],
            "4": [("main", 0.5), ("1m", 0.3), ("3m", 0.2)],
        }
    )


class ReviewRules(_Rules):
    min_text_low: int = 5
    min_text_high: int = 15
    filler_words: list[str] = Field(
        default_factory=lambda: ["好", "不错", "很好", "划算", "可以", "满意", "还行", "good", "ok", "nice"]
    )
    negative_low_problem_photos: int = 1
    negative_high_problem_photos: int = 2
    positive_low_photos: int = 1
    positive_high_core_photos: int = 2

    premium_photos_low: int = 3
    premium_photos_high: int = 5
    premium_text_min: int = 30
    premium_long_text_min: int = 80
    price_words: list[str] = Field(
        default_factory=lambda: ["价格", "避坑", "对比", "明细", "花费", "费用", "price", "cost", "invoice"]
    )
    process_words: list[str] = Field(
        default_factory=lambda: ["过程", "细节", "步骤", "师傅", "技师", "服务", "维修", "process", "technician"]
    )
    project_words: list[str] = Field(
        default_factory=lambda: ["项目", "维修", "配件", "故障", "问题", "repair", "parts"]
    )


class LikeRules(_Rules):
    session_cap_seconds: int = 180
    lifetime_cap_seconds: int = 300
    min_reading_seconds: int = 30
    plate_match_multiplier: float = 2.0
    plate_mismatch_multiplier: float = 0.5
    post_verify_window_days: int = 30
    post_verify_read_lookback_days: int = 7

    # [max_hours, weight] ascending
    decision_time_steps: list[tuple[float, float]] = Field(
        default_factory=lambda: [(24, 4.0), (72, 2.0), (168, 1.0)]
    )
    # [min_seconds, weight] descending
    dwell_steps: list[tuple[int, float]] = Field(
        default_factory=lambda: [(180, 3.0), (60, 2.0), (30, 1.0)]
    )
    match_plate_weight: float = 3.0
    match_brand_weight: float = 2.0
    match_none_weight: float = 1.0
    content_value_weights: dict[str, float] = Field(
        default_factory=lambda: {"4": 3.0, "3": 2.0, "2": 1.0, "1": 0.5}
    )
    conversion_pool_ratio: float = 0.5
    conversion_top_n: int = 10
    conversion_lookback_days: int = 7


class SettlementRules(_Rules):
    like_bonus_rate: float = 0.005
    review_bonus_cap_ratio: float = 0.8
    post_verify_ratio: float = 0.5
    tax_free_threshold: float = 800.0
    tax_rate: float = 0.2


class EngineConfig(_Rules):
    """All business tunables. Immutable; publish a new version to change."""

    trust: TrustRules = Field(default_factory=TrustRules)
    antifraud: AntifraudRules = Field(default_factory=AntifraudRules)
    distribution: DistributionRules = Field(default_factory=DistributionRules)
    scoring: ScoringRules = Field(default_factory=ScoringRules)
    ranking: RankingRules = Field(default_factory=RankingRules)
    reward: RewardRules = Field(default_factory=RewardRules)
    review: ReviewRules = Field(default_factory=ReviewRules)
    likes: LikeRules = Field(default_factory=LikeRules)
    settlement: SettlementRules = Field(default_factory=SettlementRules)


DEFAULT_CONFIG = EngineConfig()


@dataclass(frozen=True)
class ConfigSnapshot:
    """A config paired with the version it was loaded from (0 = built-in defaults)."""

    version: int
    config: EngineConfig

    def to_cache(self) -> dict[str, Any]:
        return {"version": self.version, "config": self.config.model_dump(mode="json")}


DEFAULT_SNAPSHOT = ConfigSnapshot(version=0, config=DEFAULT_CONFIG)


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def build_config(overrides: dict[str, Any] | None) -> EngineConfig:
    """Merge partial overrides onto the defaults and validate.

    Raises:
        pydantic.ValidationError: on unknown keys or bad types.
    """
    if not overrides:
        return DEFAULT_CONFIG
    merged = _deep_merge(DEFAULT_CONFIG.model_dump(mode="json"), overrides)
    return EngineConfig.model_validate(merged)


async def _get_cached_snapshot() -> ConfigSnapshot | None:
    try:
        payload = await get_active_config_cache()
    except (RuntimeError, RedisError):
        return None
    if not payload:
        return None
    return ConfigSnapshot(version=int(payload["version"]), config=EngineConfig.model_validate(payload["config"]))


async def load_config_snapshot(session: AsyncSession) -> ConfigSnapshot:
    """Return the active snapshot (latest version), falling back to defaults."""
    cached = await _get_cached_snapshot()
    if cached is not None:
        return cached

    row = (
        await session.execute(select(EngineConfigVersion).order_by(EngineConfigVersion.id.desc()).limit(1))
    ).scalar_one_or_none()
    if row is None:
        snapshot = DEFAULT_SNAPSHOT
    else:
        snapshot = ConfigSnapshot(version=row.id, config=build_config(row.config))

    try:
        await set_active_config_cache(snapshot.to_cache())
    except (RuntimeError, RedisError):
        pass
    return snapshot


async def load_config_version(session: AsyncSession, version: int) -> ConfigSnapshot | None:
    """Load a historical snapshot by version (for replaying old computations)."""
    if version == 0:
        return DEFAULT_SNAPSHOT
    row = await session.get(EngineConfigVersion, version)
    if row is None:
        return None
    return ConfigSnapshot(version=row.id, config=build_config(row.config))


async def publish_config(
    session: AsyncSession,
    overrides: dict[str, Any],
    *,
    note: str | None = None,
    created_by: str | None = None,
) -> ConfigSnapshot:
    """Publish a new snapshot: current overrides + the given ones.

    The stored row keeps the full merged config so older versions stay
    reproducible even if the defaults in code change later. Callers drop
    the cached snapshot with `forget_cached_snapshot` after committing.
    """
    current = await load_config_snapshot(session)
    merged = _deep_merge(current.config.model_dump(mode="json"), overrides)
    config = EngineConfig.model_validate(merged)

    row = EngineConfigVersion(config=config.model_dump(mode="json"), note=note, created_by=created_by)
    session.add(row)
    await session.flush()

    logger.info(f"[engine_config] published version={row.id} note={note!r} by={created_by!r}")
    return ConfigSnapshot(version=row.id, config=config)


async def forget_cached_snapshot() -> None:
    """Drop the cached active snapshot so the next read sees the committed latest row."""
    try:
        await invalidate_active_config_cache()
    except (RuntimeError, RedisError):
        logger.warning("[engine_config] cache invalidation skipped (redis unavailable)")
