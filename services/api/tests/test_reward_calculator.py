import pytest

from repair_engine.services.complexity import ComplexityLevel
from repair_engine.services.engine_config import DEFAULT_CONFIG
from repair_engine.services.reward_calculator import (
    RewardInput,
    calculate_reward,
    commission_rate,
    order_tier,
    premium_float,
    premium_total_cap,
    release_stages,
    vehicle_tier,
)

RULES = DEFAULT_CONFIG.reward


def test_mid_vehicle_l2_order_pays_everything_immediately() -> None:
    preview = calculate_reward(
        RewardInput(amount=4000, complexity_level=ComplexityLevel.L2, vehicle_price=200_000),
        RULES,
    )
    # 30 + 4000 x 1%
    assert preview.preview == 70.0
    assert preview.order_tier == 2
    assert preview.vehicle_tier == "mid"
    assert preview.commission_rate == 0.08
    assert preview.commission_amount == 320.0
    assert preview.caps_applied == []
    assert [(s.stage, s.percent, s.amount) for s in preview.stages] == [("main", 100.0, 70.0)]


def test_l4_low_vehicle_amplifier_and_stage_split() -> None:
    inp = RewardInput(amount=30_000, complexity_level=ComplexityLevel.L4, vehicle_price=80_000)
    preview = calculate_reward(inp, RULES)
    # (300 + 30000 x 1.5%) x 2.5
    assert preview.preview == 1875.0
    assert preview.order_tier == 4
    assert [(s.stage, s.amount) for s in preview.stages] == [("main", 937.5), ("1m", 562.5), ("3m", 375.0)]

    inp.is_upgraded = True
    assert calculate_reward(inp, RULES).preview == 750.0


def test_order_tier_cap() -> None:
    preview = calculate_reward(
        RewardInput(amount=4000, complexity_level=ComplexityLevel.L3, vehicle_price=500_000),
        RULES,
    )
    # 100 + 4000 x 2% = 180, tier-2 cap 150
    assert preview.preview == 150.0
    assert preview.caps_applied == ["ORDER_TIER_CAP"]


def test_commission_red_line_is_last_clamp() -> None:
    preview = calculate_reward(RewardInput(amount=100, complexity_level=ComplexityLevel.L1), RULES)
    assert preview.commission_amount == 8.0
    assert preview.preview == 5.6
    assert preview.caps_applied == ["COMMISSION_RED_LINE"]
    assert preview.preview <= preview.commission_amount * RULES.compliance_red_line


def test_commission_rate_adjustments() -> None:
    assert commission_rate(4000, RULES) == 0.08
    assert commission_rate(10_000, RULES) == 0.10
    assert commission_rate(50_000, RULES) == 0.12
    assert commission_rate(4000, RULES, has_violation=True) == 0.0816
    assert commission_rate(4000, RULES, compliance_rate=50.0) == 0.0816
    assert commission_rate(4000, RULES, compliance_rate=96.0, complaint_rate=0.5) == 0.0792
    # Good compliance without a known complaint rate keeps the base rate.
    assert commission_rate(4000, RULES, compliance_rate=96.0) == 0.08


def test_tier_boundaries() -> None:
    assert order_tier(1000, RULES) == 1
    assert order_tier(1000.01, RULES) == 2
    assert order_tier(20_000, RULES) == 3
    assert order_tier(20_001, RULES) == 4

    assert vehicle_tier(None, RULES) == "mid"
    assert vehicle_tier(99_999, RULES) == "low"
    assert vehicle_tier(100_000, RULES) == "mid"
    assert vehicle_tier(300_000, RULES) == "high"


def test_stage_amounts_sum_to_total() -> None:
    stages = release_stages(3, 10.01, RULES)
    assert [s.stage for s in stages] == ["main", "1m"]
    assert sum(s.amount for s in stages) == pytest.approx(10.01)


def test_premium_float_and_cap() -> None:
    assert premium_float(100.0, is_premium=True, is_viral=False, rules=RULES) == 50.0
    assert premium_float(100.0, is_premium=True, is_viral=True, rules=RULES) == 100.0
    assert premium_float(100.0, is_premium=False, is_viral=False, rules=RULES) == 0.0

    assert premium_total_cap(320.0, 2, RULES) == 256.0
    assert premium_total_cap(320.0, 0, RULES) == 224.0
