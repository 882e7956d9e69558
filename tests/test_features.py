from datetime import datetime

import numpy as np
import pytest

from offer_scout.data_models import OrderScore, Recommendation, ScoreScale
from offer_scout.feature_engineering import (
    FEATURE_NAMES,
    as_number,
    day_of_week_score,
    extract_features,
    feature_frame,
    full_scale_label,
    orders_frame,
    pickup_zone_score,
    time_of_day_score,
    weather_score,
)


@pytest.mark.parametrize(
    "value, expected",
    [(None, 0.0), (True, 0.0), ("12.5", 12.5), ("n/a", 0.0), (float("nan"), 0.0), (7, 7.0)],
)
def test_as_number(value, expected):
    assert as_number(value) == expected


@pytest.mark.parametrize(
    "label, expected",
    [("12:30", 1.2), ("18:05", 1.2), ("10:00", 1.0), ("21:45", 1.0), ("08:15", 0.8), ("", 0.8), ("late", 0.8)],
)
def test_time_of_day_score(label, expected):
    assert time_of_day_score(label) == expected


def test_lookup_scores():
    assert day_of_week_score("Saturday") == 1.15
    assert day_of_week_score("Friday") == 1.05
    assert day_of_week_score("Tuesday") == 1.0
    assert pickup_zone_score("Downtown East") == 1.15
    assert pickup_zone_score("Suburbs") == 1.0
    assert weather_score("Rainy") == 0.75
    assert weather_score(None) == 1.0


def test_extract_features_normalises_and_clamps(make_order):
    features = extract_features(make_order())
    assert features.hourly_rate == pytest.approx(30 / 50)
    assert features.miles_efficiency == pytest.approx(4 / 5)
    assert features.stops_bonus == pytest.approx(0.1)

    rich = extract_features(make_order(shown_payout=200.0, miles=1.0, estimated_time=10.0))
    assert rich.hourly_rate == 1.0
    assert rich.miles_efficiency == 1.0

    broke = extract_features(make_order(shown_payout=-10.0))
    assert broke.hourly_rate == 0.0


def test_missing_ratings_fall_back_to_midpoints(make_order):
    features = extract_features(make_order())
    assert features.parking_difficulty == 2.0
    assert features.end_zone_quality == 2.0
    assert features.route_cohesion == 3.0

    rated = extract_features(make_order(parking_difficulty=1, dropoff_difficulty=3))
    assert rated.parking_difficulty == 3.0
    assert rated.dropoff_difficulty == 1.0


def test_feature_vector_shape(make_order):
    features = extract_features(make_order())
    assert features.as_array().shape == (len(FEATURE_NAMES),)
    assert list(features.as_dict()) == list(FEATURE_NAMES)


def test_full_scale_label_maps_quick_scores():
    ts = datetime(2025, 1, 1)
    assert full_scale_label(OrderScore(1, Recommendation.DECLINE, ts, ScoreScale.QUICK)) == 1.0
    assert full_scale_label(OrderScore(4, Recommendation.TAKE, ts, ScoreScale.QUICK)) == 10.0
    assert full_scale_label(OrderScore(6.5, Recommendation.DECLINE, ts)) == 6.5


def test_frames(make_order):
    ts = datetime(2025, 1, 1)
    orders = [
        make_order(id="a", score=OrderScore(8.0, Recommendation.TAKE, ts)),
        make_order(id="b", actual_pay=25.0, actual_total_time=30.0),
    ]

    features = feature_frame(orders)
    assert list(features.index) == ["a", "b"]
    assert features.loc["a", "label"] == 8.0
    assert np.isnan(features.loc["b", "label"])

    table = orders_frame(orders)
    assert table.loc[1, "earnings"] == 25.0
    assert table.loc[1, "realized_hourly"] == pytest.approx(50.0)
    assert table.loc[0, "realized_hourly"] == pytest.approx(30.0)
