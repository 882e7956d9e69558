import json

from offer_scout.data_models import Order, OrderScore, Recommendation, ScoreScale, Session, WeightSet


def test_order_dict_uses_camel_case(make_order, clock):
    order = make_order(accepted_at=clock(), score=OrderScore(3, Recommendation.TAKE, clock(), ScoreScale.QUICK))
    data = order.to_dict()

    assert data["shownPayout"] == 20.0
    assert data["numberOfStops"] == 1
    assert data["acceptedAt"] == clock().isoformat()
    assert data["score"] == {
        "score": 3,
        "recommendation": "take",
        "timestamp": clock().isoformat(),
        "scale": "quick",
    }
    assert Order.from_dict(json.loads(json.dumps(data))) == order


def test_earnings_and_minutes_prefer_actuals(make_order):
    order = make_order()
    assert (order.earnings, order.minutes) == (20.0, 40.0)
    order = make_order(actual_pay=26.0, actual_total_time=35.0)
    assert (order.earnings, order.minutes) == (26.0, 35.0)


def test_session_round_trip(clock):
    session = Session(id="s1", user_id="u", start_time=clock(), order_ids=["a"], total_orders=1)
    assert Session.from_dict(json.loads(json.dumps(session.to_dict()))) == session


def test_weight_set_missing_feature_is_zero():
    weights = WeightSet(weights={"hourlyRate": 1.0})
    assert weights["hourlyRate"] == 1.0
    assert weights["weatherScore"] == 0.0
    assert WeightSet.from_dict(weights.to_dict()) == weights
