"""
Delayed-data reminders.

One scheduler serves both per-order reminders (final payout two hours after
the immediate survey) and per-session reminders (two hours after a shift
ends). Entries are persisted and compared against the clock whenever they
are read, so nothing depends on an in-process timer surviving an app restart.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .data_models import ReminderEntry
from .storage import REMINDERS_KEY, KeyValueStore

log = logging.getLogger(__name__)

ORDER_REMINDER = "order"
SESSION_REMINDER = "session"


class ReminderScheduler:
    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.store = store
        self.clock = clock

    def _load(self) -> List[ReminderEntry]:
        raw = self.store.get(REMINDERS_KEY) or []
        entries = []
        for item in raw:
            try:
                entries.append(ReminderEntry.from_dict(item))
            except (KeyError, TypeError, ValueError) as exc:
                log.warning("Dropping unreadable reminder entry %r: %s", item, exc)
        return entries

    def _save(self, entries: List[ReminderEntry]) -> None:
        entries.sort(key=lambda e: e.due_at)
        self.store.set(REMINDERS_KEY, [e.to_dict() for e in entries])

    def add(
        self,
        ref_id: str,
        kind: str = ORDER_REMINDER,
        due_at: Optional[datetime] = None,
        delay: timedelta = timedelta(hours=2),
        payload: Optional[Dict[str, Any]] = None,
    ) -> ReminderEntry:
        """
        Schedule a reminder; ``due_at`` defaults to now + ``delay``.
        An existing entry for the same reference and kind is replaced.
        """
        entry = ReminderEntry(
            ref_id=ref_id,
            kind=kind,
            due_at=due_at or self.clock() + delay,
            payload=payload or {},
        )
        entries = [e for e in self._load() if (e.ref_id, e.kind) != (ref_id, kind)]
        entries.append(entry)
        self._save(entries)
        log.info("Scheduled %s reminder for %s at %s", kind, ref_id, entry.due_at.isoformat())
        return entry

    def pending(self, kind: Optional[str] = None) -> List[ReminderEntry]:
        """All open entries, earliest due first."""
        entries = sorted(self._load(), key=lambda e: e.due_at)
        if kind is not None:
            entries = [e for e in entries if e.kind == kind]
        return entries

    def get(self, ref_id: str, kind: str = ORDER_REMINDER) -> Optional[ReminderEntry]:
        for entry in self._load():
            if entry.ref_id == ref_id and entry.kind == kind:
                return entry
        return None

    def due(self, now: Optional[datetime] = None) -> List[ReminderEntry]:
        now = now or self.clock()
        return [e for e in self.pending() if e.is_due(now)]

    def check(
        self,
        callback: Optional[Callable[[ReminderEntry], None]] = None,
        now: Optional[datetime] = None,
    ) -> List[ReminderEntry]:
        """
        Fire due reminders that have not fired yet and mark them reminded.

        Call on startup and periodically; entries that came due while the app
        was closed fire on the first call.
        """
        now = now or self.clock()
        entries = self._load()
        fired = []
        for entry in entries:
            if entry.is_due(now) and entry.reminded_at is None:
                entry.reminded_at = now
                fired.append(entry)
        if fired:
            self._save(entries)
            for entry in fired:
                if callback is not None:
                    callback(entry)
        return fired

    def overdue(self, grace: timedelta, now: Optional[datetime] = None) -> List[ReminderEntry]:
        """Entries still open ``grace`` after they came due."""
        now = now or self.clock()
        return [e for e in self.pending() if now >= e.due_at + grace]

    def complete(self, ref_id: str, kind: str = ORDER_REMINDER) -> bool:
        """Remove an entry. Returns False if there was none."""
        entries = self._load()
        remaining = [e for e in entries if (e.ref_id, e.kind) != (ref_id, kind)]
        if len(remaining) == len(entries):
            return False
        self._save(remaining)
        return True

    def dismiss(self, ref_id: str, kind: str = ORDER_REMINDER) -> bool:
        removed = self.complete(ref_id, kind)
        if removed:
            log.info("Dismissed %s reminder for %s", kind, ref_id)
        return removed
