"""Shop ranking for quote lists and shop search.

Sort score = shop score x w_shop + distance x w_distance
           + price reasonableness x w_price + response speed x w_response

then multiplied by boosts (compliance, top-class/brand certification, new
shop). All sub-scores are on a 0-100 scale.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from repair_engine.services.complexity import ComplexityLevel
from repair_engine.services.engine_config import RankingRules
from repair_engine.services.timeutil import as_utc, utcnow

SCENARIO_LOW = "L1L2"
SCENARIO_HIGH = "L3L4"
SCENARIO_BRAND = "brand"


@dataclass
class RankCandidate:
    """One rankable shop (optionally carrying the quote it answered with)."""

    shop_id: int
    shop_score: float | None = None
    rating: float | None = None
    distance_km: float | None = None
    # Percent deviation of the offered price from the fair reference.
    price_deviation_pct: float | None = None
    avg_response_minutes: float | None = None
    compliance_rate: float | None = None
    qualification_class: int | None = None
    is_brand_certified: bool = False
    created_at: datetime | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class RankedShop:
    candidate: RankCandidate
    score: float
    components: dict[str, float]
    boosts: list[str]


def scenario_for(level: ComplexityLevel, prefer_brand: bool = False) -> str:
    if prefer_brand:
        return SCENARIO_BRAND
    return SCENARIO_HIGH if level.is_high else SCENARIO_LOW


def distance_score(distance_km: float | None, max_km: float | None) -> float:
    """(max - d) / max x 100, floored at 0; 100 when no radius is set."""
    if max_km is None or max_km <= 0:
        return 100.0
    if distance_km is None or distance_km < 0 or distance_km >= max_km:
        return 0.0
    return round((max_km - distance_km) / max_km * 100, 1)


def price_score(deviation_pct: float | None, rules: RankingRules) -> float:
    if deviation_pct is None:
        return 100.0
    d = abs(deviation_pct)
    if d <= rules.price_full_max:
        return 100.0
    if d >= rules.price_zero_min:
        return 0.0
    span = rules.price_zero_min - rules.price_full_max
    return round((1 - (d - rules.price_full_max) / span) * 100, 1)


def response_score(avg_minutes: float | None, rules: RankingRules) -> float:
    if avg_minutes is None:
        return rules.response_unknown_score
    if avg_minutes <= rules.response_full_max_minutes:
        return 100.0
    if avg_minutes >= rules.response_zero_min_minutes:
        return 0.0
    span = rules.response_zero_min_minutes - rules.response_full_max_minutes
    return round((1 - (avg_minutes - rules.response_full_max_minutes) / span) * 100, 1)


def normalized_shop_score(shop_score: float | None, rating: float | None, rules: RankingRules) -> float:
    if shop_score is not None:
        return min(100.0, max(0.0, float(shop_score)))
    if rating is not None:
        return min(100.0, max(0.0, float(rating) * 20))
    return rules.default_shop_score


def score_candidate(
    c: RankCandidate,
    scenario: str,
    rules: RankingRules,
    *,
    max_km: float | None,
    now: datetime,
) -> RankedShop:
    weights = rules.scene_weights.get(scenario) or rules.scene_weights[SCENARIO_LOW]
    components = {
        "shop": normalized_shop_score(c.shop_score, c.rating, rules),
        "distance": distance_score(c.distance_km, max_km),
        "price": price_score(c.price_deviation_pct, rules),
        "response": response_score(c.avg_response_minutes, rules),
    }
    score = sum(components[k] * weights.get(k, 0.0) for k in components)

    boosts: list[str] = []
    if c.compliance_rate is not None and c.compliance_rate >= rules.compliance_boost_min:
        score *= rules.compliance_boost
        boosts.append("COMPLIANCE")
    if c.qualification_class == 1 or c.is_brand_certified:
        score *= rules.brand_boost
        boosts.append("CERTIFIED")
    if c.created_at is not None:
        age_days = (as_utc(now) - as_utc(c.created_at)).total_seconds() / 86400
        if age_days <= rules.new_shop_days:
            score *= rules.new_shop_boost
            boosts.append("NEW_SHOP")

    return RankedShop(candidate=c, score=round(score, 2), components=components, boosts=boosts)


def rank_shops(
    candidates: list[RankCandidate],
    scenario: str,
    rules: RankingRules,
    *,
    max_km: float | None = None,
    now: datetime | None = None,
) -> list[RankedShop]:
    """Score and sort candidates by descending sort score (stable for ties)."""
    now = now or utcnow()
    ranked = [score_candidate(c, scenario, rules, max_km=max_km, now=now) for c in candidates]
    ranked.sort(key=lambda r: r.score, reverse=True)
    return ranked


def price_deviation_from_median(amount: float, amounts: list[float]) -> float | None:
    """Percent deviation of one quote from the median of all quotes on the bidding."""
    values = sorted(a for a in amounts if a and a > 0)
    if not values or amount <= 0:
        return None
    mid = len(values) // 2
    median = values[mid] if len(values) % 2 else (values[mid - 1] + values[mid]) / 2
    return (amount - median) / median * 100
