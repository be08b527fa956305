from datetime import timedelta

import pytest

from repair_engine.services.complexity import ComplexityLevel
from repair_engine.services.engine_config import DEFAULT_CONFIG
from repair_engine.services.shop_ranking import (
    SCENARIO_BRAND,
    SCENARIO_HIGH,
    SCENARIO_LOW,
    RankCandidate,
    distance_score,
    normalized_shop_score,
    price_deviation_from_median,
    price_score,
    rank_shops,
    response_score,
    scenario_for,
    score_candidate,
)
from repair_engine.services.timeutil import utcnow

RULES = DEFAULT_CONFIG.ranking
NOW = utcnow()


def test_scenario_selection() -> None:
    assert scenario_for(ComplexityLevel.L1) == SCENARIO_LOW
    assert scenario_for(ComplexityLevel.L4) == SCENARIO_HIGH
    assert scenario_for(ComplexityLevel.L2, prefer_brand=True) == SCENARIO_BRAND


def test_sub_scores() -> None:
    assert distance_score(2.0, 10.0) == 80.0
    assert distance_score(10.0, 10.0) == 0.0
    assert distance_score(None, None) == 100.0

    assert price_score(None, RULES) == 100.0
    assert price_score(5.0, RULES) == 100.0
    assert price_score(20.0, RULES) == 50.0
    assert price_score(-20.0, RULES) == 50.0
    assert price_score(30.0, RULES) == 0.0

    assert response_score(None, RULES) == 50.0
    assert response_score(5.0, RULES) == 100.0
    assert response_score(32.5, RULES) == 50.0
    assert response_score(90.0, RULES) == 0.0

    assert normalized_shop_score(None, 4.5, RULES) == 90.0
    assert normalized_shop_score(None, None, RULES) == 50.0
    assert normalized_shop_score(130.0, None, RULES) == 100.0


def test_boosts_are_multiplicative() -> None:
    c = RankCandidate(
        shop_id=1,
        shop_score=80.0,
        distance_km=2.0,
        price_deviation_pct=5.0,
        avg_response_minutes=5.0,
        compliance_rate=96.0,
        qualification_class=1,
        created_at=NOW - timedelta(days=365),
    )
    ranked = score_candidate(c, SCENARIO_LOW, RULES, max_km=10.0, now=NOW)
    # 80 x .35 + 80 x .30 + 100 x .25 + 100 x .10 = 87
    assert ranked.components == {"shop": 80.0, "distance": 80.0, "price": 100.0, "response": 100.0}
    assert ranked.score == pytest.approx(87 * 1.1 * 1.05, abs=0.01)
    assert ranked.boosts == ["COMPLIANCE", "CERTIFIED"]


def test_new_shop_boost() -> None:
    c = RankCandidate(shop_id=1, shop_score=60.0, created_at=NOW - timedelta(days=10))
    ranked = score_candidate(c, SCENARIO_HIGH, RULES, max_km=None, now=NOW)
    assert ranked.boosts == ["NEW_SHOP"]


def test_rank_shops_orders_by_score() -> None:
    strong = RankCandidate(shop_id=1, shop_score=95.0, distance_km=1.0, price_deviation_pct=0.0)
    weak = RankCandidate(shop_id=2, shop_score=40.0, distance_km=9.0, price_deviation_pct=40.0)
    ranked = rank_shops([weak, strong], SCENARIO_HIGH, RULES, max_km=10.0, now=NOW)
    assert [r.candidate.shop_id for r in ranked] == [1, 2]


def test_price_deviation_from_median() -> None:
    assert price_deviation_from_median(110.0, [90.0, 100.0, 110.0]) == pytest.approx(10.0)
    assert price_deviation_from_median(150.0, [100.0, 200.0]) == 0.0
    assert price_deviation_from_median(100.0, []) is None
