import math

import numpy as np
import pytest

from offer_scout.data_models import Order, Recommendation, ScoreScale
from offer_scout.scoring import (
    ScoringEngine,
    default_base,
    drift_penalty,
    normalise,
    quick_band,
    recommend,
    recommend_quick,
    round_half,
)
from offer_scout.weights import WeightStore


def test_downtown_scenario_hand_computed(make_order):
    """
    $20, 40 min, 5 mi, 1 stop, Downtown:
    (30*1.2*0.5 + 4*0.3 + 0.1*0.2) * 1.2 * (1 - 0.25) = 17.298 -> 5.766 -> 6.0
    """
    order = make_order()

    assert drift_penalty(order) == pytest.approx(0.25)
    assert default_base(order) == pytest.approx(17.298)

    engine = ScoringEngine()
    assert engine.algorithm() == "default"
    assert engine.score(order) == 6.0
    assert recommend(engine.score(order)) == Recommendation.DECLINE

    assert engine.quick_score(order) == 2
    assert recommend_quick(engine.quick_score(order)) == Recommendation.DECLINE


def test_zone_multiplier_only_for_downtown(make_order):
    downtown = default_base(make_order(pickup_zone="  downtown "))
    midtown = default_base(make_order(pickup_zone="Midtown"))
    assert downtown == pytest.approx(midtown * 1.2)


@pytest.mark.parametrize(
    "minutes, stops, expected",
    [(20, 1, 0.0), (28, 1, 0.2), (40, 1, 0.25), (90, 1, 0.25), (60, 3, 0.0)],
)
def test_drift_penalty(make_order, minutes, stops, expected):
    order = make_order(estimated_time=minutes, number_of_stops=stops)
    assert drift_penalty(order) == pytest.approx(expected)


def test_full_scale_threshold():
    assert recommend(7.5) == Recommendation.TAKE
    assert recommend(10.0) == Recommendation.TAKE
    assert recommend(7.0) == Recommendation.DECLINE


def test_quick_scale_threshold():
    assert recommend_quick(1) == Recommendation.DECLINE
    assert recommend_quick(2) == Recommendation.DECLINE
    assert recommend_quick(3) == Recommendation.TAKE
    assert recommend_quick(4) == Recommendation.TAKE


@pytest.mark.parametrize(
    "base, band", [(0.0, 1), (14.99, 1), (15.0, 2), (19.9, 2), (20.0, 3), (24.9, 3), (25.0, 4)]
)
def test_quick_bands(base, band):
    assert quick_band(base) == band


def test_rounding_is_half_up_to_half_steps():
    assert round_half(5.75) == 6.0
    assert round_half(5.25) == 5.5
    assert round_half(5.2) == 5.0
    assert normalise(float("nan")) == 1.0
    assert normalise(float("inf")) == 1.0
    assert normalise(-50.0) == 1.0
    assert normalise(1000.0) == 10.0


@pytest.mark.parametrize(
    "overrides",
    [
        dict(shown_payout=None),
        dict(shown_payout="abc"),
        dict(shown_payout=-5.0),
        dict(shown_payout=float("nan")),
        dict(shown_payout=float("inf")),
        dict(miles=0),
        dict(miles=-3),
        dict(estimated_time=0),
        dict(estimated_time=None),
        dict(number_of_stops=0),
        dict(number_of_stops="two"),
        dict(pickup_zone=None),
    ],
)
def test_scoring_never_raises_on_bad_fields(make_order, overrides):
    engine = ScoringEngine()
    order = make_order(**overrides)

    score = engine.score(order)
    assert math.isfinite(score)
    assert 1.0 <= score <= 10.0
    assert (score * 2).is_integer()
    assert engine.quick_score(order) in (1, 2, 3, 4)


def test_scoring_non_order_falls_back_to_worst_score():
    engine = ScoringEngine()
    assert engine.score(object()) == 1.0
    assert engine.quick_score(object()) == 1


def test_default_scores_in_range_and_half_steps():
    rng = np.random.default_rng(seed=0)
    engine = ScoringEngine()
    for i in range(200):
        order = Order(
            id=f"o{i}",
            user_id="u",
            number_of_stops=int(rng.integers(1, 5)),
            shown_payout=float(rng.uniform(0, 120)),
            miles=float(rng.uniform(0.1, 30)),
            estimated_time=float(rng.uniform(1, 180)),
            pickup_zone=str(rng.choice(["Downtown", "Suburbs", ""])),
        )
        score = engine.score(order)
        assert 1.0 <= score <= 10.0
        assert (score * 2).is_integer()


def test_weighted_model_used_once_trained(store, clock, make_order):
    weight_store = WeightStore(store, method="prior", clock=clock)
    engine = ScoringEngine(weight_store, clock=clock)
    assert engine.algorithm() == "default"

    scored = make_order(score=engine.score_order(make_order()))
    weight_store.train([scored])

    assert engine.algorithm() == "weighted"
    score = engine.score(make_order())
    assert 1.0 <= score <= 10.0
    assert (score * 2).is_integer()


def test_score_order_marks_scale(make_order, clock):
    engine = ScoringEngine(clock=clock)

    quick = engine.score_order(make_order(), quick=True)
    assert quick.scale == ScoreScale.QUICK
    assert quick.score == 2
    assert quick.timestamp == clock()

    full = engine.score_order(make_order(shown_payout=90.0, estimated_time=30.0, miles=3.0))
    assert full.scale == ScoreScale.FULL
    assert full.recommendation == Recommendation.TAKE
