from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from offer_scout.config import Settings
from offer_scout.data_models import Order
from offer_scout.events import EventLogger
from offer_scout.notifications import Notifier
from offer_scout.reminders import ReminderScheduler
from offer_scout.scoring import ScoringEngine
from offer_scout.sessions import SessionManager
from offer_scout.state_machine import OrderWorkflow
from offer_scout.storage import MemoryStore


class FakeClock:
    """Wall clock that only moves when a test advances it."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)

    def monotonic(self) -> float:
        return self.now.timestamp()


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 14, 18, 0))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def make_order():
    """Factory for orders; defaults match the $20 / 40 min / 5 mi Downtown offer."""

    def _make(**overrides) -> Order:
        fields = dict(
            id="order_1",
            user_id="driver_1",
            number_of_stops=1,
            shown_payout=20.0,
            miles=5.0,
            estimated_time=40.0,
            pickup_zone="Downtown",
        )
        fields.update(overrides)
        return Order(**fields)

    return _make


@pytest.fixture
def services(store, clock):
    """
    Fully wired workflow over one in-memory store, sharing the fake clock.
    """
    settings = Settings()
    notifier = Notifier()
    scheduler = ReminderScheduler(store, clock=clock)
    scoring = ScoringEngine(clock=clock)
    sessions = SessionManager(
        store, scheduler, scoring=scoring, notifier=notifier, settings=settings, clock=clock
    )
    events = EventLogger()
    workflow = OrderWorkflow(
        store,
        scoring,
        scheduler,
        sessions=sessions,
        events=events,
        notifier=notifier,
        settings=settings,
        clock=clock,
        monotonic=clock.monotonic,
    )
    return SimpleNamespace(
        store=store,
        clock=clock,
        settings=settings,
        notifier=notifier,
        scheduler=scheduler,
        scoring=scoring,
        sessions=sessions,
        events=events,
        workflow=workflow,
    )
