"""
Feature extraction for offer scoring.

Turns the raw facts of an order (payout, miles, minutes, stops, zone,
day/time, weather, survey ratings) into a fixed-shape feature vector, and
builds pandas tables over order batches for training and monitoring.
"""

from __future__ import annotations

import math
import re
from dataclasses import astuple, dataclass
from typing import Any, Iterable, Optional

import numpy as np
import pandas as pd

from . import config
from .data_models import Order, OrderScore, ScoreScale

FEATURE_NAMES = (
    "hourlyRate",
    "milesEfficiency",
    "stopsBonus",
    "timeOfDay",
    "dayOfWeek",
    "pickupZoneScore",
    "weatherScore",
    "parkingDifficulty",
    "dropoffDifficulty",
    "endZoneQuality",
    "routeCohesion",
    "dropoffCompression",
    "nextOrderMomentum",
)

SCORING_FEATURES = FEATURE_NAMES[:6]
"""Features that carry a weight in a :class:`~offer_scout.data_models.WeightSet`."""

_LEADING_HOUR = re.compile(r"^\s*(\d{1,2})")


@dataclass(frozen=True)
class FeatureVector:
    """
    Extracted features, in ``FEATURE_NAMES`` order.
    """

    hourly_rate: float
    miles_efficiency: float
    stops_bonus: float
    time_of_day: float
    day_of_week: float
    pickup_zone_score: float
    weather_score: float
    parking_difficulty: float
    dropoff_difficulty: float
    end_zone_quality: float
    route_cohesion: float
    dropoff_compression: float
    next_order_momentum: float

    def as_array(self) -> np.ndarray:
        return np.array(astuple(self), dtype=float)

    def as_dict(self):
        return dict(zip(FEATURE_NAMES, astuple(self)))


def as_number(value: Any) -> float:
    """
    Read a numeric field, treating missing, malformed or non-finite values as 0.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def safe_minutes(order: Order) -> float:
    return max(as_number(order.estimated_time), config.MIN_MINUTES)


def safe_miles(order: Order) -> float:
    return max(as_number(order.miles), config.MIN_MILES)


def safe_stops(order: Order) -> float:
    return max(as_number(order.number_of_stops), config.MIN_STOPS)


def hourly_rate(order: Order) -> float:
    """Shown payout per hour of estimated time, in dollars."""
    return as_number(order.shown_payout) / (safe_minutes(order) / 60)


def miles_efficiency(order: Order) -> float:
    """Shown payout per mile, in dollars."""
    return as_number(order.shown_payout) / safe_miles(order)


def time_of_day_score(time_of_day: Optional[str]) -> float:
    match = _LEADING_HOUR.match(time_of_day or "")
    if not match:
        return config.OFF_PEAK_SCORE
    hour = int(match.group(1))

    if any(start <= hour <= end for start, end in config.PEAK_HOURS):
        return config.PEAK_SCORE
    if any(start <= hour <= end for start, end in config.SHOULDER_HOURS):
        return config.SHOULDER_SCORE
    return config.OFF_PEAK_SCORE


def day_of_week_score(day_of_week: Optional[str]) -> float:
    return config.DAY_SCORES.get((day_of_week or "").strip().lower(), 1.0)


def pickup_zone_score(pickup_zone: Optional[str]) -> float:
    zone = (pickup_zone or "").lower()
    if any(popular in zone for popular in config.POPULAR_ZONES):
        return config.POPULAR_ZONE_SCORE
    return 1.0


def weather_score(weather: Optional[str]) -> float:
    return config.WEATHER_SCORES.get((weather or "").strip().lower(), 1.0)


def _inverted(rating: Optional[int], neutral: float = 2.0) -> float:
    # 1 (hard) contributes 3, 3 (easy) contributes 1
    value = as_number(rating)
    return 4 - value if value else neutral


def _rating(rating: Optional[int], neutral: float) -> float:
    value = as_number(rating)
    return value if value else neutral


def extract_features(order: Order) -> FeatureVector:
    """
    Compute the feature vector for one order.

    Rates are normalised against ``config.HOURLY_RATE_CEILING`` and
    ``config.MILES_EFFICIENCY_CEILING`` and clamped to [0, 1]. Absent survey
    ratings fall back to the scale midpoint.
    """
    return FeatureVector(
        hourly_rate=float(np.clip(hourly_rate(order) / config.HOURLY_RATE_CEILING, 0.0, 1.0)),
        miles_efficiency=float(
            np.clip(miles_efficiency(order) / config.MILES_EFFICIENCY_CEILING, 0.0, 1.0)
        ),
        stops_bonus=min(max(as_number(order.number_of_stops), 0.0) * 0.1, 1.0),
        time_of_day=time_of_day_score(order.time_of_day),
        day_of_week=day_of_week_score(order.day_of_week),
        pickup_zone_score=pickup_zone_score(order.pickup_zone),
        weather_score=weather_score(order.weather),
        parking_difficulty=_inverted(order.parking_difficulty),
        dropoff_difficulty=_inverted(order.dropoff_difficulty),
        end_zone_quality=_rating(order.end_zone_quality, 2.0),
        route_cohesion=_rating(order.route_cohesion, 3.0),
        dropoff_compression=_rating(order.dropoff_compression, 3.0),
        next_order_momentum=_rating(order.next_order_momentum, 3.0),
    )


def full_scale_label(score: OrderScore) -> float:
    """Express a score on the 1-10 scale; quick scores map 1->1 ... 4->10."""
    value = as_number(score.score)
    if score.scale == ScoreScale.QUICK:
        return 1.0 + (value - 1.0) * 3.0
    return value


def feature_frame(orders: Iterable[Order]) -> pd.DataFrame:
    """
    One row per order with ``FEATURE_NAMES`` columns and a ``label`` column
    holding the order's score on the 1-10 scale (NaN when unscored). Indexed
    by order id.
    """
    rows = []
    index = []
    for order in orders:
        row = extract_features(order).as_dict()
        row["label"] = full_scale_label(order.score) if order.score else np.nan
        rows.append(row)
        index.append(order.id)
    return pd.DataFrame(rows, index=pd.Index(index, name="order_id"),
                        columns=[*FEATURE_NAMES, "label"])


def orders_frame(orders: Iterable[Order]) -> pd.DataFrame:
    """
    Flat table of order facts, scores and realised outcomes.
    """
    records = []
    for order in orders:
        minutes = as_number(order.minutes)
        earnings = as_number(order.earnings)
        records.append(
            {
                "order_id": order.id,
                "session_id": order.session_id,
                "stops": as_number(order.number_of_stops),
                "shown_payout": as_number(order.shown_payout),
                "miles": as_number(order.miles),
                "estimated_time": as_number(order.estimated_time),
                "pickup_zone": order.pickup_zone,
                "score": order.score.score if order.score else np.nan,
                "recommendation": order.score.recommendation.value if order.score else None,
                "scale": order.score.scale.value if order.score else None,
                "earnings": earnings,
                "minutes": minutes,
                "realized_hourly": earnings / (minutes / 60) if minutes > 0 else np.nan,
                "has_delayed_data": order.delayed_data_collected_at is not None,
            }
        )
    columns = [
        "order_id", "session_id", "stops", "shown_payout", "miles",
        "estimated_time", "pickup_zone", "score", "recommendation", "scale",
        "earnings", "minutes", "realized_hourly", "has_delayed_data",
    ]
    return pd.DataFrame(records, columns=columns)
