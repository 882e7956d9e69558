"""
Offer scoring: turns an order into a desirability score and a recommendation.

Two algorithms share the 1-10 scale:

* the default heuristic, used until a weight set has been trained, and
* the weighted model, driven by a :class:`~offer_scout.data_models.WeightSet`.

The live offer screen uses a coarser 1-4 quick score derived from the same
heuristic. The two scales keep separate thresholds: a full score of 7.5 or
more is a take, a quick score of 2 or less is a decline.

Scoring never raises. Missing or malformed fields read as zero, and any
non-finite result collapses to the worst score.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional

from . import config
from .data_models import Order, OrderScore, Recommendation, ScoreScale, WeightSet
from .feature_engineering import (
    FeatureVector,
    as_number,
    extract_features,
    hourly_rate,
    miles_efficiency,
    safe_minutes,
    safe_stops,
)

if TYPE_CHECKING:
    from .weights import WeightStore

log = logging.getLogger(__name__)

_SCORING_ERRORS = (TypeError, ValueError, AttributeError, ArithmeticError)


def round_half(value: float) -> float:
    """Round to the nearest 0.5, halves rounding up."""
    return math.floor(value * 2 + 0.5) / 2


def normalise(raw: float) -> float:
    """
    Map a raw score onto the 1-10 scale in 0.5 steps.
    """
    if not math.isfinite(raw):
        return config.MIN_SCORE
    scaled = min(max(raw / config.SCORE_DIVISOR, config.MIN_SCORE), config.MAX_SCORE)
    return round_half(scaled)


def drift_penalty(order: Order) -> float:
    """
    Penalty for orders with long per-stop times, which tend to end far from
    the zone they started in.
    """
    time_per_stop = safe_minutes(order) / safe_stops(order)
    if time_per_stop <= config.DRIFT_MINUTES_PER_STOP:
        return 0.0
    return min(
        (time_per_stop - config.DRIFT_MINUTES_PER_STOP) / config.DRIFT_SPAN_MINUTES,
        config.DRIFT_PENALTY_CAP,
    )


def default_base(order: Order) -> float:
    """
    Raw heuristic value before normalisation. The Downtown match ignores case
    and surrounding whitespace.
    """
    boosted_hourly = hourly_rate(order) * config.HOURLY_RATE_BOOST
    stops_bonus = min(as_number(order.number_of_stops) * 0.1, config.STOPS_BONUS_CAP)
    zone = (order.pickup_zone or "").strip().lower()
    zone_multiplier = config.DOWNTOWN_MULTIPLIER if zone == "downtown" else 1.0

    base = (
        boosted_hourly * 0.5 + miles_efficiency(order) * 0.3 + stops_bonus * 0.2
    ) * zone_multiplier
    return base * (1 - drift_penalty(order))


def weighted_raw(features: FeatureVector, weights: WeightSet) -> float:
    """
    Raw weighted-model value. Rates enter in dollars, capped at their ceilings.
    """
    hourly = features.hourly_rate * config.HOURLY_RATE_CEILING
    per_mile = features.miles_efficiency * config.MILES_EFFICIENCY_CEILING
    return (
        hourly * weights["hourlyRate"] * 0.5
        + per_mile * weights["milesEfficiency"] * 0.3
        + features.stops_bonus * weights["stopsBonus"] * 0.1
        + features.time_of_day * weights["timeOfDay"] * 0.1
    ) * weights["pickupZoneScore"]


def weighted_score(features: FeatureVector, weights: WeightSet) -> float:
    return normalise(weighted_raw(features, weights))


def default_score(order: Order) -> float:
    return normalise(default_base(order))


def quick_band(base: float) -> int:
    """Bucket a raw heuristic value into the 1-4 quick scale."""
    if not math.isfinite(base):
        return 1
    for band, upper in enumerate(config.QUICK_SCORE_BANDS, start=1):
        if base < upper:
            return band
    return len(config.QUICK_SCORE_BANDS) + 1


def recommend(score: float) -> Recommendation:
    """Full-scale (1-10) recommendation used by manual sessions and admin tools."""
    return Recommendation.TAKE if score >= config.TAKE_THRESHOLD else Recommendation.DECLINE


def recommend_quick(quick_score: int) -> Recommendation:
    """Quick-scale (1-4) recommendation used by the live offer screen."""
    if quick_score <= config.QUICK_DECLINE_MAX:
        return Recommendation.DECLINE
    return Recommendation.TAKE


class ScoringEngine:
    """
    Scores orders with the active weight set when one is loaded, otherwise
    with the default heuristic.
    """

    def __init__(
        self,
        weight_store: Optional["WeightStore"] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.weight_store = weight_store
        self.clock = clock

    def _weights(self, weights: Optional[WeightSet]) -> Optional[WeightSet]:
        if weights is not None:
            return weights
        if self.weight_store is not None:
            return self.weight_store.active
        return None

    def algorithm(self, weights: Optional[WeightSet] = None) -> str:
        return "weighted" if self._weights(weights) is not None else "default"

    def score(self, order: Order, weights: Optional[WeightSet] = None) -> float:
        active = self._weights(weights)
        try:
            if active is not None:
                return weighted_score(extract_features(order), active)
            return default_score(order)
        except _SCORING_ERRORS as exc:
            log.warning("Scoring order %s failed, using worst score: %s",
                        getattr(order, "id", "?"), exc)
            return config.MIN_SCORE

    def quick_score(self, order: Order) -> int:
        """Band the full default base, drift penalty included, onto the 1-4 scale."""
        try:
            return quick_band(default_base(order))
        except _SCORING_ERRORS as exc:
            log.warning("Quick scoring order %s failed: %s", getattr(order, "id", "?"), exc)
            return 1

    def score_order(self, order: Order, quick: bool = False) -> OrderScore:
        """
        Build the :class:`OrderScore` stored on the order.

        ``quick=True`` is the live offer path (1-4 scale); otherwise the full
        1-10 scale is used.
        """
        if quick:
            value = self.quick_score(order)
            return OrderScore(
                score=value,
                recommendation=recommend_quick(value),
                timestamp=self.clock(),
                scale=ScoreScale.QUICK,
            )
        value = self.score(order)
        return OrderScore(
            score=value,
            recommendation=recommend(value),
            timestamp=self.clock(),
            scale=ScoreScale.FULL,
        )
