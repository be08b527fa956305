"""Review reward calculator.

Reward preview for an order:

    item reward = fixed[L] + amount x (baseFloatRatio[L] + calibrationDelta[vehicleTier][L])

then, in order:
1. x2.5 for L4 repairs on low-tier vehicles that were not escalated by upgrade
2. clamp to the per-level item cap (x1.2 for low-tier vehicles)
3. clamp to the order-tier cap (x1.2 for low-tier vehicles)
4. clamp to commission x compliance red line (70%)

The preview is frozen onto the order at selection time and never recomputed.
"""

import math
from dataclasses import asdict, dataclass, field
from typing import Any

from repair_engine.services.complexity import ComplexityLevel
from repair_engine.services.engine_config import RewardRules

VEHICLE_LOW = "low"
VEHICLE_MID = "mid"
VEHICLE_HIGH = "high"

STAGE_MAIN = "main"


@dataclass
class RewardInput:
    amount: float
    complexity_level: ComplexityLevel
    vehicle_price: float | None = None
    compliance_rate: float | None = None
    complaint_rate: float | None = None
    has_violation: bool = False
    is_upgraded: bool = False


@dataclass
class RewardStage:
    stage: str  # main | 1m | 3m
    percent: float
    amount: float


@dataclass
class RewardPreview:
    preview: float
    order_tier: int
    complexity_level: str
    vehicle_tier: str
    commission_rate: float
    commission_amount: float
    stages: list[RewardStage] = field(default_factory=list)
    caps_applied: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _r2(x: float) -> float:
    return round(x + 0.0, 2)


def order_tier(amount: float, rules: RewardRules) -> int:
    """1-4 by amount; thresholds are inclusive upper bounds."""
    for i, threshold in enumerate(rules.order_tier_thresholds, start=1):
        if amount <= threshold:
            return i
    return len(rules.order_tier_thresholds) + 1


def vehicle_tier(vehicle_price: float | None, rules: RewardRules) -> str:
    if vehicle_price is None or vehicle_price <= 0:
        return VEHICLE_MID
    if vehicle_price < rules.vehicle_low_max:
        return VEHICLE_LOW
    if vehicle_price < rules.vehicle_mid_max:
        return VEHICLE_MID
    return VEHICLE_HIGH


def commission_rate(
    amount: float,
    rules: RewardRules,
    *,
    compliance_rate: float | None = None,
    complaint_rate: float | None = None,
    has_violation: bool = False,
) -> float:
    """Platform commission rate after the compliance adjustment."""
    rate = rules.commission_rates[-1]
    for threshold, r in zip(rules.commission_tier_thresholds, rules.commission_rates):
        if amount <= threshold:
            rate = r
            break

    if has_violation or (compliance_rate is not None and compliance_rate < rules.commission_bad_compliance_below):
        rate = min(rate * (1 + rules.commission_up_pct), rate * rules.commission_up_max_ratio)
    elif (
        compliance_rate is not None
        and compliance_rate >= rules.commission_good_compliance_min
        and complaint_rate is not None
        and complaint_rate <= rules.commission_good_complaint_max
    ):
        rate = max(rate * (1 - rules.commission_down_pct), rate * rules.commission_down_min_ratio)
    return round(rate, 6)


def release_stages(tier: int, total: float, rules: RewardRules) -> list[RewardStage]:
    """Split a reward into its release stages by order tier."""
    keys = sorted(rules.stage_splits, key=int)
    key = str(tier) if str(tier) in rules.stage_splits else keys[-1]
    splits = rules.stage_splits[key]

    stages: list[RewardStage] = []
    remaining = _r2(total)
    for i, (name, share) in enumerate(splits):
        # Last stage takes the rounding remainder so stages sum to the total.
        amount = remaining if i == len(splits) - 1 else _r2(total * share)
        remaining = _r2(remaining - amount)
        stages.append(RewardStage(stage=name, percent=round(share * 100, 2), amount=amount))
    return stages


def calculate_reward(inp: RewardInput, rules: RewardRules) -> RewardPreview:
    """Compute the capped reward preview for an order."""
    level = inp.complexity_level.value
    amount = max(0.0, float(inp.amount))
    v_tier = vehicle_tier(inp.vehicle_price, rules)
    tier = order_tier(amount, rules)
    uplift = rules.low_vehicle_cap_uplift if v_tier == VEHICLE_LOW else 1.0
    caps: list[str] = []

    ratio = rules.base_float_ratio.get(level, 0.0) + rules.calibration_delta.get(v_tier, {}).get(level, 0.0)
    reward = rules.fixed_reward.get(level, 0.0) + amount * max(0.0, ratio)

    if inp.complexity_level == ComplexityLevel.L4 and v_tier == VEHICLE_LOW and not inp.is_upgraded:
        reward *= rules.low_vehicle_l4_amplifier

    item_cap = rules.item_cap.get(level, rules.item_cap["L2"]) * uplift
    if reward > item_cap:
        reward = item_cap
        caps.append("ITEM_CAP")

    tier_caps = rules.order_tier_caps
    tier_cap = tier_caps.get(str(tier), tier_caps[max(tier_caps, key=int)]) * uplift
    if reward > tier_cap:
        reward = tier_cap
        caps.append("ORDER_TIER_CAP")

    rate = commission_rate(
        amount,
        rules,
        compliance_rate=inp.compliance_rate,
        complaint_rate=inp.complaint_rate,
        has_violation=inp.has_violation,
    )
    commission = _r2(amount * rate)
    red_line = commission * rules.compliance_red_line
    if reward > red_line:
        reward = red_line
        caps.append("COMMISSION_RED_LINE")

    # Floored to cents: rounding must not lift the preview above a cap.
    preview = max(0.0, math.floor(round(reward * 100, 6)) / 100)
    return RewardPreview(
        preview=preview,
        order_tier=tier,
        complexity_level=level,
        vehicle_tier=v_tier,
        commission_rate=rate,
        commission_amount=commission,
        stages=release_stages(tier, preview, rules),
        caps_applied=caps,
    )


def premium_float(base: float, is_premium: bool, is_viral: bool, rules: RewardRules) -> float:
    """Extra reward for premium (50% of base) or viral (100%) content."""
    if is_viral:
        return _r2(base * rules.viral_float_ratio)
    if is_premium:
        return _r2(base * rules.premium_float_ratio)
    return 0.0


def premium_total_cap(commission_amount: float, quality_level: int, rules: RewardRules) -> float:
    """Max total review reward (base + float) for a content quality level."""
    ratio = rules.premium_cap_ratio.get(str(quality_level))
    if ratio is None:
        ratio = rules.compliance_red_line
    return _r2(commission_amount * ratio)
