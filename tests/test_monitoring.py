from datetime import datetime

import math

import pytest

from offer_scout.data_models import OrderScore, Recommendation, ScoreScale, Session
from offer_scout.events import EventLogger
from offer_scout.monitoring import history_metrics, recommendation_metrics, score_calibration


def _score(value, scale=ScoreScale.FULL):
    rec = Recommendation.TAKE if value >= 7.5 else Recommendation.DECLINE
    return OrderScore(value, rec, datetime(2025, 1, 1), scale)


def test_history_metrics(make_order, clock):
    sessions = [
        Session(id="s1", user_id="u", start_time=clock(), total_hours=1.5),
        Session(id="s2", user_id="u", start_time=clock(), total_hours=0.5),
    ]
    orders = [
        make_order(id="a", shown_payout=10.0, score=_score(4.0), delayed_data_collected_at=clock()),
        make_order(id="b", shown_payout=20.0, actual_pay=30.0, score=_score(8.0)),
    ]

    metrics = history_metrics(sessions, orders)

    assert metrics["sessions"] == 2
    assert metrics["orders"] == 2
    assert metrics["earnings"] == pytest.approx(40.0)
    assert metrics["avg_earnings_per_hour"] == pytest.approx(20.0)
    assert metrics["avg_orders_per_session"] == pytest.approx(1.0)
    assert metrics["avg_score"] == pytest.approx(6.0)
    assert metrics["data_quality_score"] == pytest.approx(50.0)


def test_history_metrics_empty():
    metrics = history_metrics([], [])
    assert metrics["orders"] == 0
    assert metrics["data_quality_score"] == 0.0
    assert metrics["avg_score"] == 0.0


def test_score_calibration_ranks(make_order):
    orders = [
        make_order(id=str(i), shown_payout=pay, estimated_time=60.0, score=_score(score))
        for i, (pay, score) in enumerate([(10, 2.0), (20, 4.0), (30, 6.0), (40, 8.0)])
    ]
    result = score_calibration(orders)
    assert result["n"] == 4
    assert result["spearman_rho"] == pytest.approx(1.0)


def test_score_calibration_needs_full_scale_scores(make_order):
    orders = [make_order(id=str(i), score=_score(2, ScoreScale.QUICK)) for i in range(5)]
    result = score_calibration(orders)
    assert result["n"] == 0
    assert math.isnan(result["spearman_rho"])


def test_recommendation_metrics():
    logger = EventLogger()
    logger.log_score("a", 2, "quick", "decline", "quick")
    logger.log_score("b", 4, "quick", "take", "quick")
    logger.log_score("c", 8.0, "full", "take", "default")
    logger.log_transition("a", None, "offered", "recommendation")

    summary = recommendation_metrics(logger.to_dataframe())

    assert summary.loc["quick", "offers"] == 2
    assert summary.loc["quick", "take_rate"] == pytest.approx(0.5)
    assert summary.loc["full", "takes"] == 1


def test_recommendation_metrics_no_scores():
    assert recommendation_metrics(EventLogger().to_dataframe()).empty
