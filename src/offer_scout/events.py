"""
Event logging for the order workflow.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd

EVENT_COLUMNS = [
    "event_type",
    "event_ts",
    "order_id",
    "session_id",
    "from_step",
    "to_step",
    "route",
    "score",
    "scale",
    "recommendation",
    "algorithm",
]


@dataclass
class EventLogger:
    """
    Collects scoring and transition events into a single DataFrame.

    Each record is a flat dict; use `to_dataframe()` at the end of a shift.
    """

    records: List[Dict[str, Any]] = field(default_factory=list)

    def log_score(
        self,
        order_id: str,
        score: float,
        scale: str,
        recommendation: str,
        algorithm: str,
        session_id: Optional[str] = None,
        ts: Optional[datetime] = None,
    ) -> None:
        """
        Log the recommendation shown for an offer.
        """
        self.records.append(
            {
                "event_type": "score",
                "event_ts": ts or datetime.now(),
                "order_id": order_id,
                "session_id": session_id,
                # transition fields left blank for score rows
                "from_step": None,
                "to_step": None,
                "route": None,
                "score": float(score),
                "scale": scale,
                "recommendation": recommendation,
                "algorithm": algorithm,
            }
        )

    def log_transition(
        self,
        order_id: str,
        from_step: Optional[str],
        to_step: str,
        route: str,
        session_id: Optional[str] = None,
        ts: Optional[datetime] = None,
    ) -> None:
        """
        Log a driver-initiated lifecycle transition.
        """
        self.records.append(
            {
                "event_type": "transition",
                "event_ts": ts or datetime.now(),
                "order_id": order_id,
                "session_id": session_id,
                "from_step": from_step,
                "to_step": to_step,
                "route": route,
                "score": None,
                "scale": None,
                "recommendation": None,
                "algorithm": None,
            }
        )

    def to_dataframe(self) -> pd.DataFrame:
        """
        Convert all logged events into a single DataFrame.
        """
        if not self.records:
            return pd.DataFrame(columns=EVENT_COLUMNS)
        return pd.DataFrame(self.records, columns=EVENT_COLUMNS)
