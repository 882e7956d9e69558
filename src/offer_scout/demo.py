"""
End-to-end demo: a synthetic driving shift wired through the offer_scout
components, with event logging, weight training and monitoring.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta

import numpy as np

from . import config, monitoring
from .data_models import Order, Recommendation
from .events import EventLogger
from .notifications import Notifier
from .reminders import ReminderScheduler
from .scoring import ScoringEngine
from .sessions import SessionManager
from .state_machine import OrderStep, OrderWorkflow
from .storage import open_store
from .weights import WeightStore

ZONES = ["Downtown", "Midtown", "Suburbs", "Marina", "Airport"]
WEATHER = ["sunny", "cloudy", "rainy"]


class SimulatedClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, minutes: float) -> None:
        self.current += timedelta(minutes=minutes)

    def monotonic(self) -> float:
        return self.current.timestamp()


def synthetic_offers(rng: np.random.Generator, clock: SimulatedClock, n: int = 12):
    """
    Random offers in the ranges a driver typically sees.
    """
    offers = []
    for i in range(n):
        stops = int(rng.choice([1, 1, 1, 2, 3]))
        minutes = float(rng.integers(15, 25) * stops)
        offers.append(
            Order(
                id=f"order_{i}",
                user_id="demo_driver",
                number_of_stops=stops,
                shown_payout=round(float(rng.normal(9.0, 3.0)) * stops + 2.0, 2),
                miles=round(float(rng.uniform(1.5, 6.0)) * stops, 1),
                estimated_time=minutes,
                pickup_zone=str(rng.choice(ZONES)),
                day_of_week=clock().strftime("%A"),
                time_of_day=clock().strftime("%H:%M"),
                weather=str(rng.choice(WEATHER)),
            )
        )
    return offers


def run_shift(
    workflow: OrderWorkflow,
    sessions: SessionManager,
    clock: SimulatedClock,
    rng: np.random.Generator,
) -> None:
    """
    Drive every offer through the lifecycle the way the app would.
    """
    sessions.start_session("demo_driver")

    for offer in synthetic_offers(rng, clock):
        transition = workflow.submit_offer(offer)
        clock.advance(1)
        if transition.order.score.recommendation == Recommendation.DECLINE:
            workflow.decline()
            continue

        workflow.accept()
        while workflow.step != OrderStep.DELIVERING:
            clock.advance(float(rng.integers(4, 9)))
            if rng.random() < 0.3:
                workflow.start_wait()
                clock.advance(float(rng.integers(2, 12)))
                workflow.end_wait()
            else:
                workflow.confirm_pickup()

        clock.advance(float(rng.integers(8, 20)))
        transition = workflow.confirm_dropoff()
        workflow.submit_immediate_survey(
            transition.order.id,
            parking_difficulty=int(rng.integers(1, 4)),
            dropoff_difficulty=int(rng.integers(1, 4)),
            end_zone_quality=int(rng.integers(1, 4)),
            route_cohesion=int(rng.integers(1, 6)),
            dropoff_compression=int(rng.integers(1, 6)),
            next_order_momentum=int(rng.integers(1, 6)),
        )
        workflow.tick()

    session = sessions.end_session()
    print(
        f"[run_shift] Session {session.id}: {session.total_orders} orders, "
        f"${session.total_earnings:.2f} over {session.total_hours:.2f}h, "
        f"average score {session.average_score:.2f}"
    )


def collect_delayed_data(
    workflow: OrderWorkflow,
    sessions: SessionManager,
    clock: SimulatedClock,
    rng: np.random.Generator,
) -> None:
    """
    Two hours later: the reminders fire and the driver fills in actual pay.
    """
    clock.advance(workflow.settings.delayed_survey_hours * 60)
    fired = workflow.tick()
    print(f"[collect_delayed_data] {len(fired)} reminders fired")

    for order in workflow.due_delayed_surveys():
        tip = float(rng.uniform(0.0, 4.0))
        workflow.submit_delayed_survey(
            order.id,
            actual_pay=round(float(order.shown_payout) + tip, 2),
            pickup_site_name=f"{order.pickup_zone} Kitchen",
        )
    sessions.mark_delayed_data_collected(sessions.session.id)


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    rng = np.random.default_rng(seed=7)
    clock = SimulatedClock(datetime(2025, 3, 14, 17, 0))

    settings = config.load_settings()
    notifier = Notifier()
    store = open_store(settings.storage_dir, notifier)
    weight_store = WeightStore(
        store,
        method=settings.weight_training,
        min_regression_points=settings.min_regression_points,
        clock=clock,
    )
    weight_store.load()
    scoring = ScoringEngine(weight_store, clock=clock)
    scheduler = ReminderScheduler(store, clock=clock)
    sessions = SessionManager(
        store, scheduler, scoring=scoring, notifier=notifier, settings=settings, clock=clock
    )
    logger = EventLogger()

    with OrderWorkflow(
        store,
        scoring,
        scheduler,
        sessions=sessions,
        events=logger,
        notifier=notifier,
        settings=settings,
        clock=clock,
        monotonic=clock.monotonic,
    ) as workflow:
        run_shift(workflow, sessions, clock, rng)
        collect_delayed_data(workflow, sessions, clock, rng)

    history = sessions.history
    orders = history.all_orders()
    print("[main] History metrics:", monitoring.history_metrics(history.all_sessions(), orders))

    events_df = logger.to_dataframe()
    print(f"[main] Logged {len(events_df)} events.")
    print(monitoring.recommendation_metrics(events_df))

    if not orders:
        print("[main] Every offer was declined; nothing to train on.")
        return

    result = weight_store.train(orders)
    print(f"[main] Weight set v{result.weights.version} ({result.weights.method}), "
          f"accuracy {result.accuracy:.1f}")
    for name, weight in result.weights.weights.items():
        print(f"    {name:<16} {weight:.3f}")

    rescored = [replace(o, score=scoring.score_order(o)) for o in orders]
    print("[main] Score calibration:", monitoring.score_calibration(rescored))

    for note in notifier.drain():
        print(f"[main] {note.level}: {note.title}: {note.message}")


if __name__ == "__main__":
    main()
