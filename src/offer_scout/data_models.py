"""
Core data models used across the offer_scout package.

Records are stored as JSON blobs with camelCase keys so the same payloads can
be handed to the remote store unchanged. ``to_dict``/``from_dict`` round-trip
exactly.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

MULTI_STOP_RATINGS = ("route_cohesion", "dropoff_compression", "next_order_momentum")


class Recommendation(str, Enum):
    TAKE = "take"
    DECLINE = "decline"


class ScoreScale(str, Enum):
    """Which scale a score lives on; each has its own take/decline threshold."""

    FULL = "full"  # 1-10, take at >= 7.5
    QUICK = "quick"  # 1-4, decline at <= 2


class SessionStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


class TripPhase(str, Enum):
    COLLECTING = "collecting"
    DELIVERING = "delivering"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _dump(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, OrderScore):
        return value.to_dict()
    if isinstance(value, list):
        return list(value)
    return value


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class OrderScore:
    """
    Desirability score attached to every order.
    """

    score: float
    recommendation: Recommendation
    timestamp: datetime
    scale: ScoreScale = ScoreScale.FULL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "recommendation": self.recommendation.value,
            "timestamp": self.timestamp.isoformat(),
            "scale": self.scale.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> OrderScore:
        return cls(
            score=data["score"],
            recommendation=Recommendation(data["recommendation"]),
            timestamp=_parse_ts(data["timestamp"]),
            scale=ScoreScale(data.get("scale", ScoreScale.FULL.value)),
        )


@dataclass
class Order:
    """
    One delivery offer/trip, from the offer screen through the delayed survey.

    ``score`` is filled in when the offer is submitted to the workflow; the
    multi-stop-only ratings stay None unless ``number_of_stops > 1``.
    """

    id: str
    user_id: str
    number_of_stops: int
    shown_payout: float
    miles: float
    estimated_time: float
    pickup_zone: str
    session_id: Optional[str] = None
    dropoff_zone: Optional[str] = None
    score: Optional[OrderScore] = None

    day_of_week: str = ""
    time_of_day: str = ""
    weather: Optional[str] = None

    offered_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    actual_start_time: Optional[datetime] = None
    wait_start_time: Optional[datetime] = None
    wait_end_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    immediate_data_collected_at: Optional[datetime] = None
    delayed_data_collected_at: Optional[datetime] = None

    picked_up_count: int = 0
    wait_time_at_restaurant: Optional[int] = None
    actual_total_time: Optional[float] = None

    parking_difficulty: Optional[int] = None
    dropoff_difficulty: Optional[int] = None
    end_zone_quality: Optional[int] = None
    route_cohesion: Optional[int] = None
    dropoff_compression: Optional[int] = None
    next_order_momentum: Optional[int] = None

    actual_pay: Optional[float] = None
    pickup_site_name: Optional[str] = None
    pickup_site_address: Optional[str] = None

    @property
    def is_multi_stop(self) -> bool:
        return (self.number_of_stops or 0) > 1

    @property
    def earnings(self) -> float:
        """Actual pay once known, otherwise the payout shown on the offer."""
        return self.actual_pay if self.actual_pay else self.shown_payout

    @property
    def minutes(self) -> float:
        """Actual total minutes once known, otherwise the estimate."""
        return self.actual_total_time if self.actual_total_time else self.estimated_time

    def with_ratings(self, **ratings: Optional[int]) -> Order:
        """
        Return a copy carrying the given survey ratings.

        Multi-stop-only ratings are forced to None on single-stop orders.
        """
        if not self.is_multi_stop:
            ratings = {
                key: (None if key in MULTI_STOP_RATINGS else value)
                for key, value in ratings.items()
            }
        return replace(self, **ratings)

    def to_dict(self) -> Dict[str, Any]:
        return {_camel(f.name): _dump(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Order:
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key not in data:
                continue
            value = data[key]
            if f.name == "score":
                value = OrderScore.from_dict(value) if value is not None else None
            elif f.name in _ORDER_TIMESTAMPS:
                value = _parse_ts(value)
            kwargs[f.name] = value
        return cls(**kwargs)


_ORDER_TIMESTAMPS = frozenset(
    {
        "offered_at",
        "accepted_at",
        "actual_start_time",
        "wait_start_time",
        "wait_end_time",
        "actual_end_time",
        "immediate_data_collected_at",
        "delayed_data_collected_at",
    }
)


@dataclass
class Session:
    """
    One driving shift. Totals are a fold over the session's orders.
    """

    id: str
    user_id: str
    start_time: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    end_time: Optional[datetime] = None
    order_ids: List[str] = field(default_factory=list)
    total_orders: int = 0
    total_earnings: float = 0.0
    total_hours: float = 0.0
    average_score: float = 0.0
    trip_phase: TripPhase = TripPhase.COLLECTING
    delayed_data_due_at: Optional[datetime] = None
    delayed_data_collected: bool = False

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {_camel(f.name): _dump(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Session:
        return cls(
            id=data["id"],
            user_id=data["userId"],
            start_time=_parse_ts(data["startTime"]),
            status=SessionStatus(data.get("status", SessionStatus.ACTIVE.value)),
            end_time=_parse_ts(data.get("endTime")),
            order_ids=list(data.get("orderIds", [])),
            total_orders=data.get("totalOrders", 0),
            total_earnings=data.get("totalEarnings", 0.0),
            total_hours=data.get("totalHours", 0.0),
            average_score=data.get("averageScore", 0.0),
            trip_phase=TripPhase(data.get("tripPhase", TripPhase.COLLECTING.value)),
            delayed_data_due_at=_parse_ts(data.get("delayedDataDueAt")),
            delayed_data_collected=data.get("delayedDataCollected", False),
        )


@dataclass
class WeightSet:
    """
    Named feature weights used by the weighted scoring model.
    """

    weights: Dict[str, float]
    version: int = 1
    trained_at: Optional[datetime] = None
    data_points: int = 0
    accuracy: float = 0.0
    method: str = "prior"

    def __getitem__(self, name: str) -> float:
        return self.weights.get(name, 0.0)

    @property
    def total(self) -> float:
        return float(sum(self.weights.values()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "trainedAt": self.trained_at.isoformat() if self.trained_at else None,
            "dataPoints": self.data_points,
            "accuracy": self.accuracy,
            "method": self.method,
            "featureWeights": dict(self.weights),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> WeightSet:
        return cls(
            weights={k: float(v) for k, v in data["featureWeights"].items()},
            version=int(data.get("version", 1)),
            trained_at=_parse_ts(data.get("trainedAt")),
            data_points=int(data.get("dataPoints", 0)),
            accuracy=float(data.get("accuracy", 0.0)),
            method=data.get("method", "prior"),
        )


@dataclass
class ReminderEntry:
    """
    A delayed-data reminder: per order after its immediate survey, or per
    session after it ends.
    """

    ref_id: str
    kind: str  # "order" or "session"
    due_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)
    reminded_at: Optional[datetime] = None

    def is_due(self, now: datetime) -> bool:
        return now >= self.due_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "refId": self.ref_id,
            "kind": self.kind,
            "dueAt": self.due_at.isoformat(),
            "payload": self.payload,
            "remindedAt": self.reminded_at.isoformat() if self.reminded_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ReminderEntry:
        return cls(
            ref_id=data["refId"],
            kind=data["kind"],
            due_at=_parse_ts(data["dueAt"]),
            payload=data.get("payload") or {},
            reminded_at=_parse_ts(data.get("remindedAt")),
        )
