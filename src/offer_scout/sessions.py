"""
Session aggregation and order history.

The fold functions (`add_order`, `recalculate`) are pure and return a new
:class:`Session`. :class:`SessionManager` owns the current shift, persists it
and hands finished shifts to :class:`OrderHistory`.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .config import Settings
from .data_models import Order, Session, SessionStatus, TripPhase
from .feature_engineering import as_number
from .notifications import Notifier
from .reminders import SESSION_REMINDER, ReminderScheduler
from .scoring import ScoringEngine
from .storage import (
    ALL_ORDERS_KEY,
    ALL_SESSIONS_KEY,
    SESSION_KEY,
    SESSION_ORDERS_KEY,
    KeyValueStore,
    RecordSink,
    publish_record,
)

log = logging.getLogger(__name__)


class SessionError(Exception):
    """Raised when a session operation needs a session in another state."""


# ---------------------------------------------------------------------------
# Pure folds
# ---------------------------------------------------------------------------


def session_totals(orders: Iterable[Order]) -> Tuple[float, float]:
    """
    Earnings (actual pay or shown payout) and hours (actual or estimated
    minutes / 60) over ``orders``.
    """
    earnings = 0.0
    minutes = 0.0
    for order in orders:
        earnings += as_number(order.earnings)
        minutes += as_number(order.minutes)
    return earnings, minutes / 60


def average_score(orders: Iterable[Order]) -> float:
    scores = [as_number(o.score.score) for o in orders if o.score is not None]
    return float(np.mean(scores)) if scores else 0.0


def add_order(session: Session, orders: Sequence[Order], new_order: Order) -> Session:
    """
    Fold a new order into the session totals.

    ``average_score`` is left as is; it only moves on :func:`recalculate`.
    """
    earnings, hours = session_totals([*orders, new_order])
    return replace(
        session,
        order_ids=[*session.order_ids, new_order.id],
        total_orders=session.total_orders + 1,
        total_earnings=earnings,
        total_hours=hours,
    )


def recalculate(session: Session, orders: Sequence[Order]) -> Session:
    """Recompute every total, including the average score, from ``orders``."""
    earnings, hours = session_totals(orders)
    return replace(
        session,
        order_ids=[o.id for o in orders],
        total_orders=len(orders),
        total_earnings=earnings,
        total_hours=hours,
        average_score=average_score(orders),
    )


def replace_order(orders: Sequence[Order], updated: Order) -> Tuple[List[Order], bool]:
    found = False
    result = []
    for order in orders:
        if order.id == updated.id:
            result.append(updated)
            found = True
        else:
            result.append(order)
    return result, found


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class OrderHistory:
    """
    Accumulated sessions and orders across shifts.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def all_orders(self) -> List[Order]:
        return [Order.from_dict(d) for d in self.store.get(ALL_ORDERS_KEY) or []]

    def all_sessions(self) -> List[Session]:
        return [Session.from_dict(d) for d in self.store.get(ALL_SESSIONS_KEY) or []]

    def orders_for_session(self, session_id: str) -> List[Order]:
        return [o for o in self.all_orders() if o.session_id == session_id]

    def get_order(self, order_id: str) -> Optional[Order]:
        for order in self.all_orders():
            if order.id == order_id:
                return order
        return None

    def save_session_orders(self, session: Session, orders: Sequence[Order]) -> None:
        """Archive a session and its orders; existing records with the same id are replaced."""
        stored = self.all_orders()
        for order in orders:
            stored, found = replace_order(stored, order)
            if not found:
                stored.append(order)
        self.store.set(ALL_ORDERS_KEY, [o.to_dict() for o in stored])

        sessions = [s for s in self.all_sessions() if s.id != session.id]
        sessions.append(session)
        self.store.set(ALL_SESSIONS_KEY, [s.to_dict() for s in sessions])

    def save_order(self, order: Order) -> None:
        """Archive one order that belongs to no session."""
        stored, found = replace_order(self.all_orders(), order)
        if not found:
            stored.append(order)
        self.store.set(ALL_ORDERS_KEY, [o.to_dict() for o in stored])

    def replace_order(self, order: Order) -> bool:
        stored, found = replace_order(self.all_orders(), order)
        if found:
            self.store.set(ALL_ORDERS_KEY, [o.to_dict() for o in stored])
        return found

    def clear(self) -> None:
        self.store.delete(ALL_ORDERS_KEY)
        self.store.delete(ALL_SESSIONS_KEY)


# ---------------------------------------------------------------------------
# Current shift
# ---------------------------------------------------------------------------


class SessionManager:
    """
    Owns the current driving session and its orders.
    """

    def __init__(
        self,
        store: KeyValueStore,
        scheduler: ReminderScheduler,
        history: Optional[OrderHistory] = None,
        scoring: Optional[ScoringEngine] = None,
        notifier: Optional[Notifier] = None,
        sink: Optional[RecordSink] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.history = history or OrderHistory(store)
        self.scoring = scoring or ScoringEngine(clock=clock)
        self.notifier = notifier or Notifier()
        self.sink = sink
        self.settings = settings or Settings()
        self.clock = clock
        self.session: Optional[Session] = None
        self.orders: List[Order] = []
        self._restore()

    def _restore(self) -> None:
        data = self.store.get(SESSION_KEY)
        if data:
            try:
                self.session = Session.from_dict(data)
            except (KeyError, TypeError, ValueError) as exc:
                log.warning("Failed to parse saved session: %s", exc)
                self.store.delete(SESSION_KEY)
        try:
            self.orders = [Order.from_dict(d) for d in self.store.get(SESSION_ORDERS_KEY) or []]
        except (KeyError, TypeError, ValueError) as exc:
            log.warning("Failed to parse saved session orders: %s", exc)
            self.store.delete(SESSION_ORDERS_KEY)
            self.orders = []

    def _persist(self) -> None:
        if self.session is None:
            return
        self.store.set(SESSION_KEY, self.session.to_dict())
        self.store.set(SESSION_ORDERS_KEY, [o.to_dict() for o in self.orders])

    @property
    def is_active(self) -> bool:
        return self.session is not None and self.session.is_active

    def _require_active(self) -> Session:
        if not self.is_active:
            raise SessionError("No active session")
        return self.session

    def start_session(self, user_id: str) -> Session:
        if not user_id:
            raise ValueError("User ID is required to start a session")
        if self.is_active:
            raise SessionError(f"Session {self.session.id} is still active")

        now = self.clock()
        self.session = Session(
            id=f"session_{int(now.timestamp() * 1000)}",
            user_id=user_id,
            start_time=now,
        )
        self.orders = []
        self._persist()
        log.info("Started session %s for %s", self.session.id, user_id)
        publish_record(self.sink, "session", self.session.to_dict(), self.notifier)
        return self.session

    def add_order(self, order: Order) -> Session:
        session = self._require_active()
        order = replace(order, session_id=session.id)
        if order.id in session.order_ids:
            self.update_order(order)
            return self.session
        self.session = add_order(session, self.orders, order)
        self.orders.append(order)
        self._persist()
        return self.session

    def update_order(self, order: Order) -> bool:
        """
        Replace a session order with a newer copy (survey data, actual pay).
        Earnings and hours follow; the average score waits for `recalculate`.
        """
        self.orders, found = replace_order(self.orders, order)
        if found and self.session is not None:
            earnings, hours = session_totals(self.orders)
            self.session = replace(self.session, total_earnings=earnings, total_hours=hours)
            self._persist()
        return found

    def recalculate(self) -> Session:
        if self.session is None:
            raise SessionError("No session to recalculate")
        self.session = recalculate(self.session, self.orders)
        self._persist()
        return self.session

    def set_trip_phase(self, phase: TripPhase) -> None:
        if self.is_active and self.session.trip_phase != phase:
            self.session = replace(self.session, trip_phase=phase)
            self._persist()

    def end_session(self) -> Session:
        """
        Close the shift: final totals, end stamp, a delayed-data reminder due
        ``settings.delayed_survey_delay`` after the end, and archive to history.
        """
        session = self._require_active()
        now = self.clock()
        session = recalculate(session, self.orders)
        self.session = replace(
            session,
            end_time=now,
            status=SessionStatus.ENDED,
            delayed_data_due_at=now + self.settings.delayed_survey_delay,
        )
        self._persist()
        self.scheduler.add(
            self.session.id,
            kind=SESSION_REMINDER,
            due_at=self.session.delayed_data_due_at,
        )
        self.history.save_session_orders(self.session, self.orders)
        log.info(
            "Ended session %s: %d orders, $%.2f over %.2fh",
            self.session.id, self.session.total_orders,
            self.session.total_earnings, self.session.total_hours,
        )
        publish_record(self.sink, "session", self.session.to_dict(), self.notifier)
        return self.session

    def mark_delayed_data_collected(self, session_id: str) -> None:
        if self.session is not None and self.session.id == session_id:
            self.session = replace(self.session, delayed_data_collected=True)
            self._persist()
        for archived in self.history.all_sessions():
            if archived.id == session_id:
                archived.delayed_data_collected = True
                self.history.save_session_orders(archived, [])
        self.scheduler.complete(session_id, SESSION_REMINDER)

    def create_manual_session(
        self,
        user_id: str,
        start_time: datetime,
        end_time: datetime,
        orders: Sequence[Order],
    ) -> Session:
        """
        Record a past shift entered by hand. Unscored orders get a full-scale
        score, so their recommendation uses the 7.5 take threshold.
        """
        if not user_id:
            raise ValueError("User ID is required to create a session")
        if end_time <= start_time:
            raise ValueError("Session end must be after its start")

        session = Session(
            id=f"session_{int(start_time.timestamp() * 1000)}",
            user_id=user_id,
            start_time=start_time,
            end_time=end_time,
            status=SessionStatus.ENDED,
            delayed_data_collected=True,
        )
        scored = [
            replace(
                order,
                session_id=session.id,
                score=order.score or self.scoring.score_order(order),
            )
            for order in orders
        ]
        session = recalculate(session, scored)
        self.history.save_session_orders(session, scored)
        publish_record(self.sink, "session", session.to_dict(), self.notifier)
        for order in scored:
            publish_record(self.sink, "order", order.to_dict(), self.notifier)
        return session
