"""
Order lifecycle state machine.

Drives a single in-flight order through the driver's button presses:

    offered -> accepted -> picked-up (per stop) [-> waiting] -> delivering
            -> dropped-off -> immediate-survey-pending -> immediate-survey-done
            -> delayed-survey-pending -> complete

Every transition stamps the order, is logged, persists the active step and
order so an app restart resumes on the right screen, and returns a
:class:`Transition` carrying the route of the next screen.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .config import Settings
from .data_models import Order, ReminderEntry, TripPhase
from .events import EventLogger
from .notifications import Notifier
from .reminders import ORDER_REMINDER, SESSION_REMINDER, ReminderScheduler
from .scoring import ScoringEngine
from .sessions import SessionManager
from .storage import (
    ACTIVE_ORDER_KEY,
    SURVEY_QUEUE_KEY,
    KeyValueStore,
    RecordSink,
    WriteCoalescer,
    publish_record,
)
from .validation import validate_metric, validation_message

log = logging.getLogger(__name__)


class OrderStep(str, Enum):
    OFFERED = "offered"
    ACCEPTED = "accepted"
    PICKED_UP = "picked-up"
    WAITING = "waiting"
    DELIVERING = "delivering"
    DROPPED_OFF = "dropped-off"
    IMMEDIATE_SURVEY_PENDING = "immediate-survey-pending"
    IMMEDIATE_SURVEY_DONE = "immediate-survey-done"
    DELAYED_SURVEY_PENDING = "delayed-survey-pending"
    COMPLETE = "complete"
    DISCARDED = "discarded"


ROUTES: Dict[OrderStep, str] = {
    OrderStep.OFFERED: "recommendation",
    OrderStep.ACCEPTED: "pickup",
    OrderStep.PICKED_UP: "pickup",
    OrderStep.WAITING: "wait",
    OrderStep.DELIVERING: "dropoff",
    OrderStep.DROPPED_OFF: "survey-immediate",
    OrderStep.IMMEDIATE_SURVEY_PENDING: "survey-immediate",
    OrderStep.IMMEDIATE_SURVEY_DONE: "home",
    OrderStep.DELAYED_SURVEY_PENDING: "home",
    OrderStep.COMPLETE: "home",
    OrderStep.DISCARDED: "home",
}

HOME_ROUTE = "home"
RESTART_ROUTE = "session-start"
DELAYED_SURVEY_ROUTE = "survey-delayed"

# steps that occupy the single active-order slot
IN_FLIGHT = frozenset(
    {
        OrderStep.OFFERED,
        OrderStep.ACCEPTED,
        OrderStep.PICKED_UP,
        OrderStep.WAITING,
        OrderStep.DELIVERING,
    }
)

SURVEY_RATING_RANGES = {
    "parking_difficulty": (1, 3),
    "dropoff_difficulty": (1, 3),
    "end_zone_quality": (1, 3),
    "route_cohesion": (1, 5),
    "dropoff_compression": (1, 5),
    "next_order_momentum": (1, 5),
}

# a rating the driver skipped keeps the form's starting value
SURVEY_RATING_DEFAULTS = {
    name: (low + high) // 2 for name, (low, high) in SURVEY_RATING_RANGES.items()
}


class LifecycleError(Exception):
    """Raised when an invalid state transition is attempted."""


@dataclass
class Transition:
    """Result of a driver action: the order as updated, its step and the next screen."""

    order: Optional[Order]
    step: Optional[OrderStep]
    route: str


def _minutes_between(start: Optional[datetime], end: datetime) -> int:
    if start is None:
        return 0
    return max(0, round((end - start).total_seconds() / 60))


class OrderWorkflow:
    """
    Lifecycle of the driver's active order, plus the queues that follow it
    (immediate surveys oldest-first, delayed surveys by due time).

    Collaborators are passed in; nothing here is a module-level singleton.
    Use as a context manager (or call :meth:`close`) so coalesced writes are
    flushed on every exit path.
    """

    def __init__(
        self,
        store: KeyValueStore,
        scoring: ScoringEngine,
        scheduler: ReminderScheduler,
        sessions: Optional[SessionManager] = None,
        events: Optional[EventLogger] = None,
        notifier: Optional[Notifier] = None,
        sink: Optional[RecordSink] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.scoring = scoring
        self.scheduler = scheduler
        self.sessions = sessions
        self.events = events or EventLogger()
        self.notifier = notifier or Notifier()
        self.sink = sink
        self.settings = settings or Settings()
        self.clock = clock
        self.writer = WriteCoalescer(store, delay=self.settings.debounce_seconds, clock=monotonic)
        self.order: Optional[Order] = None
        self.step: Optional[OrderStep] = None

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def __enter__(self) -> OrderWorkflow:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.writer.flush()

    def _save_active(self) -> None:
        self.writer.put(
            ACTIVE_ORDER_KEY,
            {"step": self.step.value, "orderData": self.order.to_dict()},
        )

    def _clear_active(self) -> None:
        self.order = None
        self.step = None
        self.writer.remove(ACTIVE_ORDER_KEY)

    def load_active_state(self) -> Optional[Tuple[OrderStep, Order]]:
        data = self.writer.get(ACTIVE_ORDER_KEY)
        if not data:
            return None
        try:
            return OrderStep(data["step"]), Order.from_dict(data["orderData"])
        except (KeyError, TypeError, ValueError) as exc:
            log.warning("Discarding unreadable active order state: %s", exc)
            self.writer.remove(ACTIVE_ORDER_KEY)
            return None

    def survey_queue(self) -> List[Order]:
        """Orders waiting for their immediate survey, oldest drop-off first."""
        queue = [Order.from_dict(d) for d in self.store.get(SURVEY_QUEUE_KEY) or []]
        return sorted(queue, key=lambda o: o.actual_end_time or datetime.min)

    def _save_queue(self, queue: List[Order]) -> None:
        self.store.set(SURVEY_QUEUE_KEY, [o.to_dict() for o in queue], critical=True)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _session_id(self) -> Optional[str]:
        if self.sessions is not None and self.sessions.is_active:
            return self.sessions.session.id
        return None

    def _log(self, order: Order, from_step: Optional[OrderStep], to_step: OrderStep,
             route: Optional[str] = None) -> None:
        route = route or ROUTES[to_step]
        self.events.log_transition(
            order_id=order.id,
            from_step=from_step.value if from_step else None,
            to_step=to_step.value,
            route=route,
            session_id=order.session_id,
            ts=self.clock(),
        )
        log.debug("Order %s: %s -> %s", order.id, from_step, to_step.value)

    def _require(self, *allowed: OrderStep) -> Order:
        if self.order is None or self.step not in allowed:
            current = self.step.value if self.step else "no active order"
            wanted = ", ".join(s.value for s in allowed)
            raise LifecycleError(f"Expected step in ({wanted}), current: {current}")
        return self.order

    def _move(self, order: Order, to_step: OrderStep) -> Transition:
        self._log(order, self.step, to_step)
        self.order = order
        self.step = to_step
        self._save_active()
        return Transition(order, to_step, ROUTES[to_step])

    def _set_phase(self, phase: TripPhase) -> None:
        if self.sessions is not None:
            self.sessions.set_trip_phase(phase)

    # ------------------------------------------------------------------
    # offer and pickup
    # ------------------------------------------------------------------

    def submit_offer(self, order: Order, quick: bool = True) -> Transition:
        """
        Score a new offer and make it the active order.

        The live offer screen uses the quick 1-4 scale; pass ``quick=False``
        for the full 1-10 scale.
        """
        if self.order is not None and self.step in IN_FLIGHT:
            raise LifecycleError(f"Order {self.order.id} is still in progress")

        scored = self.scoring.score_order(order, quick=quick)
        order = replace(
            order,
            score=scored,
            offered_at=order.offered_at or self.clock(),
            session_id=order.session_id or self._session_id(),
        )
        self.events.log_score(
            order_id=order.id,
            score=scored.score,
            scale=scored.scale.value,
            recommendation=scored.recommendation.value,
            algorithm="quick" if quick else self.scoring.algorithm(),
            session_id=order.session_id,
            ts=self.clock(),
        )
        self.step = None
        return self._move(order, OrderStep.OFFERED)

    def accept(self) -> Transition:
        order = self._require(OrderStep.OFFERED)
        self._set_phase(TripPhase.COLLECTING)
        return self._move(replace(order, accepted_at=self.clock()), OrderStep.ACCEPTED)

    def decline(self) -> Transition:
        """Drop the offer; nothing reaches the session or history."""
        order = self._require(OrderStep.OFFERED, OrderStep.ACCEPTED)
        self._log(order, self.step, OrderStep.DISCARDED)
        self._clear_active()
        log.info("Order %s declined", order.id)
        return Transition(order, OrderStep.DISCARDED, ROUTES[OrderStep.DISCARDED])

    def _record_pickup(self, order: Order) -> Transition:
        now = self.clock()
        order = replace(
            order,
            picked_up_count=order.picked_up_count + 1,
            actual_start_time=order.actual_start_time or now,
        )
        stops = max(int(order.number_of_stops or 0), 1)
        if order.picked_up_count < stops:
            return self._move(order, OrderStep.PICKED_UP)
        self._set_phase(TripPhase.DELIVERING)
        return self._move(order, OrderStep.DELIVERING)

    def confirm_pickup(self) -> Transition:
        """
        One pickup confirmed. Multi-stop orders stay on the pickup screen
        until every stop has been collected.
        """
        order = self._require(OrderStep.ACCEPTED, OrderStep.PICKED_UP)
        return self._record_pickup(order)

    def start_wait(self) -> Transition:
        order = self._require(OrderStep.ACCEPTED, OrderStep.PICKED_UP)
        return self._move(replace(order, wait_start_time=self.clock()), OrderStep.WAITING)

    def end_wait(self) -> Transition:
        """Stop the wait stopwatch; the wait ends with the pickup."""
        order = self._require(OrderStep.WAITING)
        now = self.clock()
        waited = _minutes_between(order.wait_start_time, now)
        order = replace(
            order,
            wait_end_time=now,
            wait_time_at_restaurant=(order.wait_time_at_restaurant or 0) + waited,
        )
        return self._record_pickup(order)

    # ------------------------------------------------------------------
    # dropoff and surveys
    # ------------------------------------------------------------------

    def confirm_dropoff(self) -> Transition:
        """
        Finish the delivery and queue its immediate survey. Frees the active
        slot; the returned transition carries the oldest queued survey.
        """
        order = self._require(OrderStep.DELIVERING)
        now = self.clock()
        order = replace(
            order,
            actual_end_time=now,
            actual_total_time=_minutes_between(order.accepted_at or now, now),
        )
        self._log(order, self.step, OrderStep.DROPPED_OFF)
        # the slot must be empty on disk before the order shows up anywhere else
        self._clear_active()
        self.writer.flush()

        if self.sessions is not None and self.sessions.is_active:
            order = replace(order, session_id=self.sessions.session.id)
            self.sessions.add_order(order)
            self._set_phase(TripPhase.COLLECTING)
        else:
            log.warning("Order %s dropped off outside an active session", order.id)
            if self.sessions is not None:
                self.sessions.history.save_order(order)

        queue = [o for o in self.survey_queue() if o.id != order.id]
        queue.append(order)
        self._save_queue(queue)
        self._log(order, OrderStep.DROPPED_OFF, OrderStep.IMMEDIATE_SURVEY_PENDING)
        publish_record(self.sink, "order", order.to_dict(), self.notifier)

        oldest = self.survey_queue()[0]
        return Transition(oldest, OrderStep.IMMEDIATE_SURVEY_PENDING,
                          ROUTES[OrderStep.IMMEDIATE_SURVEY_PENDING])

    def next_survey(self) -> Optional[Order]:
        queue = self.survey_queue()
        return queue[0] if queue else None

    def submit_immediate_survey(
        self,
        order_id: str,
        parking_difficulty: Optional[int] = None,
        dropoff_difficulty: Optional[int] = None,
        end_zone_quality: Optional[int] = None,
        route_cohesion: Optional[int] = None,
        dropoff_compression: Optional[int] = None,
        next_order_momentum: Optional[int] = None,
        dropoff_zone: Optional[str] = None,
    ) -> Transition:
        """
        Record the quick post-dropoff ratings and schedule the delayed survey.
        Skipped ratings take their scale midpoint; multi-stop-only ratings are
        dropped for single-stop orders.
        """
        queue = self.survey_queue()
        order = next((o for o in queue if o.id == order_id), None)
        if order is None:
            raise LifecycleError(f"Order {order_id} is not waiting for an immediate survey")

        ratings = {
            "parking_difficulty": parking_difficulty,
            "dropoff_difficulty": dropoff_difficulty,
            "end_zone_quality": end_zone_quality,
            "route_cohesion": route_cohesion,
            "dropoff_compression": dropoff_compression,
            "next_order_momentum": next_order_momentum,
        }
        for name, value in ratings.items():
            low, high = SURVEY_RATING_RANGES[name]
            if value is not None and not low <= value <= high:
                raise ValueError(f"{name} must be between {low} and {high}, got {value}")
        ratings = {
            name: SURVEY_RATING_DEFAULTS[name] if value is None else value
            for name, value in ratings.items()
        }

        now = self.clock()
        order = order.with_ratings(**ratings)
        order = replace(
            order,
            dropoff_zone=dropoff_zone or order.dropoff_zone,
            immediate_data_collected_at=now,
        )
        self._save_queue([o for o in queue if o.id != order_id])
        self._log(order, OrderStep.IMMEDIATE_SURVEY_PENDING, OrderStep.IMMEDIATE_SURVEY_DONE)

        self.scheduler.add(
            order.id,
            kind=ORDER_REMINDER,
            delay=self.settings.delayed_survey_delay,
            payload=order.to_dict(),
        )
        self._log(order, OrderStep.IMMEDIATE_SURVEY_DONE, OrderStep.DELAYED_SURVEY_PENDING)

        if self.sessions is not None:
            self.sessions.update_order(order)
        publish_record(self.sink, "order", order.to_dict(), self.notifier)

        route = ROUTES[OrderStep.IMMEDIATE_SURVEY_PENDING] if self.next_survey() else HOME_ROUTE
        return Transition(order, OrderStep.DELAYED_SURVEY_PENDING, route)

    def due_delayed_surveys(self, now: Optional[datetime] = None) -> List[Order]:
        """Orders whose delayed survey is due, earliest first."""
        return [
            Order.from_dict(entry.payload)
            for entry in self.scheduler.due(now)
            if entry.kind == ORDER_REMINDER and entry.payload
        ]

    def _finish(self, order: Order) -> Transition:
        self.scheduler.complete(order.id, ORDER_REMINDER)
        if self.sessions is not None:
            in_session = self.sessions.update_order(order)
            archived = self.sessions.history.replace_order(order)
            if not (in_session or archived):
                log.warning("Order %s completed but is not in the session or history", order.id)
        self._log(order, OrderStep.DELAYED_SURVEY_PENDING, OrderStep.COMPLETE)
        return Transition(order, OrderStep.COMPLETE, ROUTES[OrderStep.COMPLETE])

    def _pending_delayed(self, order_id: str) -> Order:
        entry = self.scheduler.get(order_id, ORDER_REMINDER)
        if entry is None or not entry.payload:
            raise LifecycleError(f"Order {order_id} is not waiting for a delayed survey")
        return Order.from_dict(entry.payload)

    def submit_delayed_survey(
        self,
        order_id: str,
        actual_pay: float,
        pickup_site_name: Optional[str] = None,
        pickup_site_address: Optional[str] = None,
    ) -> Transition:
        """Record final payout and pickup site; the order is complete."""
        issue = validate_metric("actualPay", actual_pay)
        if issue:
            raise ValueError(validation_message([issue]))

        order = replace(
            self._pending_delayed(order_id),
            actual_pay=actual_pay,
            pickup_site_name=pickup_site_name,
            pickup_site_address=pickup_site_address,
            delayed_data_collected_at=self.clock(),
        )
        transition = self._finish(order)
        publish_record(self.sink, "order", order.to_dict(), self.notifier)
        log.info("Order %s complete with actual pay $%.2f", order.id, actual_pay)
        return transition

    def dismiss_delayed_survey(self, order_id: str) -> Transition:
        """Close the order without delayed data; it stays valid."""
        return self._finish(self._pending_delayed(order_id))

    def expire_overdue(self, now: Optional[datetime] = None) -> List[Order]:
        """
        Complete orders whose delayed survey is still open past the grace
        window. Session reminders past the window are dropped as well.
        """
        expired = []
        for entry in self.scheduler.overdue(self.settings.delayed_survey_grace, now):
            if entry.kind == ORDER_REMINDER and entry.payload:
                order = Order.from_dict(entry.payload)
                self._finish(order)
                expired.append(order)
            else:
                self.scheduler.complete(entry.ref_id, entry.kind)
        if expired:
            log.info("Closed %d orders without delayed data", len(expired))
        return expired

    # ------------------------------------------------------------------
    # restart handling
    # ------------------------------------------------------------------

    def _remind(self, entry: ReminderEntry) -> None:
        if entry.kind == ORDER_REMINDER:
            self.notifier.post(
                "Time for final order details",
                f"Order {entry.ref_id}: please add pickup location and actual payout info.",
            )
        elif entry.kind == SESSION_REMINDER:
            self.notifier.post(
                "Time for final session details",
                f"Session {entry.ref_id}: please confirm your final earnings.",
            )

    def tick(self, now: Optional[datetime] = None) -> List[ReminderEntry]:
        """
        Periodic housekeeping: debounced writes, due reminders, expiry.
        Safe to call as often as the host likes.
        """
        self.writer.poll()
        fired = self.scheduler.check(self._remind, now)
        self.expire_overdue(now)
        return fired

    def resume(self, expected: bool = False) -> Transition:
        """
        Restore the active order after a reload and say where to go.

        ``expected`` means the caller believed an order was in flight; if
        none is found the driver is sent to a safe restart screen.
        """
        self.tick()
        state = self.load_active_state()
        if state is not None:
            self.step, self.order = state
            log.info("Resumed order %s at %s", self.order.id, self.step.value)
            return Transition(self.order, self.step, ROUTES[self.step])

        self.order = None
        self.step = None
        if expected:
            self.notifier.error("Session Lost", "Order data was lost. Starting fresh.")
            return Transition(None, None, RESTART_ROUTE)

        pending = self.next_survey()
        if pending is not None:
            return Transition(pending, OrderStep.IMMEDIATE_SURVEY_PENDING,
                              ROUTES[OrderStep.IMMEDIATE_SURVEY_PENDING])
        due = self.due_delayed_surveys()
        if due:
            return Transition(due[0], OrderStep.DELAYED_SURVEY_PENDING, DELAYED_SURVEY_ROUTE)
        return Transition(None, None, HOME_ROUTE)
