import json

import pytest

from offer_scout.data_models import Recommendation, ScoreScale, TripPhase
from offer_scout.reminders import ORDER_REMINDER
from offer_scout.sessions import SessionManager
from offer_scout.state_machine import (
    LifecycleError,
    OrderStep,
    OrderWorkflow,
)
from offer_scout.storage import ACTIVE_ORDER_KEY, ALL_ORDERS_KEY, SURVEY_QUEUE_KEY


def _deliver(services, order):
    """Take an order from offer to the immediate survey."""
    wf = services.workflow
    wf.submit_offer(order)
    wf.accept()
    for _ in range(order.number_of_stops):
        services.clock.advance(minutes=5)
        wf.confirm_pickup()
    services.clock.advance(minutes=15)
    return wf.confirm_dropoff()


def test_offer_is_quick_scored_and_logged(services, make_order):
    services.sessions.start_session("driver_1")
    transition = services.workflow.submit_offer(make_order())

    assert transition.step == OrderStep.OFFERED
    assert transition.route == "recommendation"
    assert transition.order.score.scale == ScoreScale.QUICK
    assert transition.order.score.recommendation == Recommendation.DECLINE
    assert transition.order.offered_at == services.clock()
    assert transition.order.session_id == services.sessions.session.id

    events = services.events.to_dataframe()
    assert list(events["event_type"]) == ["score", "transition"]


def test_three_stop_order_reaches_dropoff_after_third_pickup(services, make_order):
    wf = services.workflow
    services.sessions.start_session("driver_1")
    wf.submit_offer(make_order(number_of_stops=3, estimated_time=60.0))
    assert wf.accept().route == "pickup"
    assert services.sessions.session.trip_phase == TripPhase.COLLECTING

    routes = [wf.confirm_pickup().route for _ in range(3)]

    assert routes == ["pickup", "pickup", "dropoff"]
    assert wf.order.picked_up_count == 3
    assert wf.step == OrderStep.DELIVERING
    assert services.sessions.session.trip_phase == TripPhase.DELIVERING
    with pytest.raises(LifecycleError):
        wf.confirm_pickup()


def test_wait_counts_as_pickup(services, make_order):
    wf = services.workflow
    wf.submit_offer(make_order(number_of_stops=2))
    wf.accept()

    assert wf.start_wait().route == "wait"
    services.clock.advance(minutes=7, seconds=40)
    transition = wf.end_wait()

    assert transition.route == "pickup"
    assert transition.order.wait_time_at_restaurant == 8
    assert transition.order.picked_up_count == 1

    wf.start_wait()
    services.clock.advance(minutes=2)
    transition = wf.end_wait()
    assert transition.route == "dropoff"
    assert transition.order.wait_time_at_restaurant == 10


def test_decline_discards_without_history(services, make_order):
    wf = services.workflow
    services.sessions.start_session("driver_1")
    wf.submit_offer(make_order())
    transition = wf.decline()

    assert transition.step == OrderStep.DISCARDED
    assert transition.route == "home"
    assert wf.order is None
    assert services.sessions.orders == []
    wf.close()
    assert services.store.get(ACTIVE_ORDER_KEY) is None
    assert services.store.get(ALL_ORDERS_KEY) is None


def test_decline_only_before_pickup(services, make_order):
    wf = services.workflow
    wf.submit_offer(make_order(number_of_stops=2))
    wf.accept()
    wf.confirm_pickup()
    with pytest.raises(LifecycleError):
        wf.decline()


def test_invalid_transitions_raise(services, make_order):
    wf = services.workflow
    with pytest.raises(LifecycleError):
        wf.accept()
    wf.submit_offer(make_order())
    with pytest.raises(LifecycleError):
        wf.confirm_dropoff()
    with pytest.raises(LifecycleError):
        wf.submit_offer(make_order(id="order_2"))


def test_dropoff_records_times_and_frees_slot(services, make_order):
    services.sessions.start_session("driver_1")
    accepted_at = services.clock()
    transition = _deliver(services, make_order())

    assert transition.route == "survey-immediate"
    assert transition.step == OrderStep.IMMEDIATE_SURVEY_PENDING
    order = transition.order
    assert order.actual_end_time == services.clock()
    assert order.actual_total_time == round((services.clock() - accepted_at).total_seconds() / 60)
    assert services.workflow.order is None
    assert services.sessions.session.total_orders == 1
    assert services.store.get(SURVEY_QUEUE_KEY)[0]["id"] == order.id
    assert services.store.get(ACTIVE_ORDER_KEY) is None


def test_dropoff_replayed_after_crash_is_not_duplicated(services, make_order, store, clock):
    services.sessions.start_session("driver_1")
    wf = services.workflow
    wf.submit_offer(make_order())
    wf.accept()
    clock.advance(minutes=5)
    wf.confirm_pickup()
    wf.close()
    saved = store.get(ACTIVE_ORDER_KEY)
    clock.advance(minutes=15)
    wf.confirm_dropoff()

    # process died after the dropoff but the old active slot came back
    store.set(ACTIVE_ORDER_KEY, saved)
    sessions = SessionManager(store, services.scheduler, scoring=services.scoring, clock=clock)
    restarted = OrderWorkflow(
        store, services.scoring, services.scheduler, sessions=sessions,
        clock=clock, monotonic=clock.monotonic,
    )
    assert restarted.resume().step == OrderStep.DELIVERING
    restarted.confirm_dropoff()

    assert [o.id for o in restarted.survey_queue()] == ["order_1"]
    assert sessions.session.total_orders == 1
    assert sessions.session.order_ids == ["order_1"]


def test_active_state_round_trips(services, make_order, store, clock):
    wf = services.workflow
    wf.submit_offer(make_order(number_of_stops=2, weather="rainy"))
    wf.accept()
    wf.confirm_pickup()
    before = json.dumps(wf.order.to_dict(), sort_keys=True)
    wf.close()

    restored = OrderWorkflow(store, services.scoring, services.scheduler, clock=clock)
    transition = restored.resume(expected=True)

    assert transition.step == OrderStep.PICKED_UP
    assert transition.route == "pickup"
    assert json.dumps(transition.order.to_dict(), sort_keys=True) == before
    assert restored.confirm_pickup().route == "dropoff"


def test_active_writes_are_coalesced(services, make_order, store):
    wf = services.workflow
    wf.submit_offer(make_order(number_of_stops=3))
    wf.accept()
    assert store.get(ACTIVE_ORDER_KEY) is None

    services.clock.advance(seconds=1)
    wf.tick()
    assert store.get(ACTIVE_ORDER_KEY)["step"] == "accepted"


def test_workflow_context_flushes_on_error(services, make_order, store):
    with pytest.raises(RuntimeError):
        with services.workflow as wf:
            wf.submit_offer(make_order())
            raise RuntimeError("boom")
    assert store.get(ACTIVE_ORDER_KEY)["step"] == "offered"


def test_resume_missing_order_routes_to_restart(services):
    transition = services.workflow.resume(expected=True)

    assert transition.route == "session-start"
    assert transition.order is None
    notes = services.notifier.drain()
    assert [n.level for n in notes] == ["error"]


def test_resume_without_expectation_goes_home(services):
    transition = services.workflow.resume()
    assert transition.route == "home"
    assert services.notifier.drain() == []


def test_surveys_are_served_oldest_first(services, make_order):
    services.sessions.start_session("driver_1")
    _deliver(services, make_order(id="first"))
    services.clock.advance(minutes=5)
    transition = _deliver(services, make_order(id="second"))

    assert transition.order.id == "first"
    assert services.workflow.next_survey().id == "first"

    after = services.workflow.submit_immediate_survey(
        "first", parking_difficulty=2, dropoff_difficulty=2, end_zone_quality=3
    )
    assert after.route == "survey-immediate"
    assert services.workflow.next_survey().id == "second"

    last = services.workflow.submit_immediate_survey(
        "second", parking_difficulty=1, dropoff_difficulty=1, end_zone_quality=1
    )
    assert last.route == "home"
    assert services.workflow.next_survey() is None


def test_resume_routes_to_pending_survey(services, make_order):
    _deliver(services, make_order())
    transition = services.workflow.resume()
    assert transition.route == "survey-immediate"
    assert transition.order.id == "order_1"


@pytest.mark.parametrize("stops", [1, 2, 4])
def test_multi_stop_ratings_only_on_multi_stop_orders(services, make_order, stops):
    _deliver(services, make_order(number_of_stops=stops))
    transition = services.workflow.submit_immediate_survey(
        "order_1",
        parking_difficulty=2,
        dropoff_difficulty=3,
        end_zone_quality=1,
        route_cohesion=4,
        dropoff_compression=5,
        next_order_momentum=3,
    )
    order = transition.order
    multi = (order.route_cohesion, order.dropoff_compression, order.next_order_momentum)
    if stops > 1:
        assert multi == (4, 5, 3)
    else:
        assert multi == (None, None, None)
    assert order.parking_difficulty == 2


def test_skipped_ratings_take_scale_midpoints(services, make_order):
    _deliver(services, make_order(number_of_stops=3))
    order = services.workflow.submit_immediate_survey("order_1", parking_difficulty=1).order

    assert order.parking_difficulty == 1
    assert (order.dropoff_difficulty, order.end_zone_quality) == (2, 2)
    assert (order.route_cohesion, order.dropoff_compression, order.next_order_momentum) == (3, 3, 3)


def test_survey_rating_out_of_range(services, make_order):
    _deliver(services, make_order())
    with pytest.raises(ValueError):
        services.workflow.submit_immediate_survey("order_1", parking_difficulty=4)


def test_unknown_survey_order(services):
    with pytest.raises(LifecycleError):
        services.workflow.submit_immediate_survey("nope", parking_difficulty=1)
    with pytest.raises(LifecycleError):
        services.workflow.submit_delayed_survey("nope", actual_pay=10.0)


def test_immediate_survey_schedules_delayed_reminder(services, make_order):
    services.sessions.start_session("driver_1")
    _deliver(services, make_order())
    transition = services.workflow.submit_immediate_survey(
        "order_1", parking_difficulty=1, dropoff_difficulty=1, end_zone_quality=2
    )

    assert transition.step == OrderStep.DELAYED_SURVEY_PENDING
    assert transition.order.immediate_data_collected_at == services.clock()
    entry = services.scheduler.get("order_1", ORDER_REMINDER)
    assert entry.due_at == services.clock() + services.settings.delayed_survey_delay
    assert services.sessions.orders[0].parking_difficulty == 1

    steps = services.events.to_dataframe()["to_step"].dropna().tolist()
    assert steps[-3:] == ["immediate-survey-pending", "immediate-survey-done", "delayed-survey-pending"]


def test_delayed_survey_completes_order(services, make_order):
    services.sessions.start_session("driver_1")
    _deliver(services, make_order())
    services.workflow.submit_immediate_survey(
        "order_1", parking_difficulty=1, dropoff_difficulty=1, end_zone_quality=2
    )
    services.sessions.end_session()

    services.clock.advance(hours=2)
    assert [o.id for o in services.workflow.due_delayed_surveys()] == ["order_1"]
    assert services.workflow.resume().route == "survey-delayed"

    transition = services.workflow.submit_delayed_survey(
        "order_1", actual_pay=23.5, pickup_site_name="Taco Spot", pickup_site_address="1 Main St"
    )

    assert transition.step == OrderStep.COMPLETE
    assert transition.route == "home"
    assert services.scheduler.get("order_1", ORDER_REMINDER) is None
    archived = services.sessions.history.get_order("order_1")
    assert archived.actual_pay == 23.5
    assert archived.pickup_site_name == "Taco Spot"
    assert archived.delayed_data_collected_at == services.clock()
    assert services.sessions.session.total_earnings == 23.5


def test_order_outside_session_is_archived(services, make_order):
    _deliver(services, make_order())
    assert services.sessions.history.get_order("order_1") is not None

    services.workflow.submit_immediate_survey("order_1", parking_difficulty=2)
    services.clock.advance(hours=2)
    services.workflow.submit_delayed_survey("order_1", actual_pay=21.0)

    archived = services.sessions.history.get_order("order_1")
    assert archived.actual_pay == 21.0
    assert archived.session_id is None


def test_delayed_survey_validates_pay(services, make_order):
    _deliver(services, make_order())
    services.workflow.submit_immediate_survey("order_1", parking_difficulty=1)
    with pytest.raises(ValueError, match="actualPay"):
        services.workflow.submit_delayed_survey("order_1", actual_pay=0.0)


def test_overdue_delayed_survey_expires(services, make_order):
    _deliver(services, make_order())
    services.workflow.submit_immediate_survey("order_1", parking_difficulty=1)

    services.clock.advance(hours=3)
    assert services.workflow.expire_overdue() == []

    services.clock.advance(hours=1)
    expired = services.workflow.expire_overdue()
    assert [o.id for o in expired] == ["order_1"]
    assert expired[0].delayed_data_collected_at is None
    assert services.scheduler.get("order_1", ORDER_REMINDER) is None


def test_tick_posts_reminder_once(services, make_order):
    _deliver(services, make_order())
    services.workflow.submit_immediate_survey("order_1", parking_difficulty=1)
    services.notifier.drain()

    services.clock.advance(hours=2)
    assert len(services.workflow.tick()) == 1
    assert services.workflow.tick() == []
    notes = services.notifier.drain()
    assert [n.title for n in notes] == ["Time for final order details"]
