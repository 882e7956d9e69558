"""
Configuration for offer scoring and the order workflow.

Module-level constants hold the tunable scoring parameters. Runtime settings
(storage location, timing windows, training method) are read from the
environment by :func:`load_settings`, optionally from a ``.env`` file.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Final, Optional, Tuple

from dotenv import load_dotenv

# =============================================================================
# FEATURE EXTRACTION
# =============================================================================

HOURLY_RATE_CEILING: Final[float] = 50.0
"""Dollars per hour that maps to a normalised hourlyRate of 1.0."""

MILES_EFFICIENCY_CEILING: Final[float] = 5.0
"""Dollars per mile that maps to a normalised milesEfficiency of 1.0."""

MIN_MINUTES: Final[float] = 1.0
MIN_MILES: Final[float] = 0.1
MIN_STOPS: Final[int] = 1

PEAK_HOURS: Final[Tuple[Tuple[int, int], ...]] = ((11, 14), (17, 20))
"""Lunch and dinner peaks, inclusive hour ranges."""

SHOULDER_HOURS: Final[Tuple[Tuple[int, int], ...]] = ((10, 15), (16, 21))

PEAK_SCORE: Final[float] = 1.2
SHOULDER_SCORE: Final[float] = 1.0
OFF_PEAK_SCORE: Final[float] = 0.8

DAY_SCORES: Final[Dict[str, float]] = {
    "saturday": 1.15,
    "sunday": 1.15,
    "friday": 1.05,
}

POPULAR_ZONES: Final[Tuple[str, ...]] = (
    "downtown",
    "midtown",
    "theater district",
    "marina",
    "financial district",
)
POPULAR_ZONE_SCORE: Final[float] = 1.15

WEATHER_SCORES: Final[Dict[str, float]] = {
    "sunny": 1.0,
    "cloudy": 0.9,
    "rainy": 0.75,
    "snowy": 0.6,
}

# =============================================================================
# SCORING
# =============================================================================

HOURLY_RATE_BOOST: Final[float] = 1.2
STOPS_BONUS_CAP: Final[float] = 0.5
DOWNTOWN_MULTIPLIER: Final[float] = 1.2

DRIFT_MINUTES_PER_STOP: Final[float] = 20.0
"""Per-stop minutes above which an order likely ends far from its start zone."""

DRIFT_SPAN_MINUTES: Final[float] = 40.0
DRIFT_PENALTY_CAP: Final[float] = 0.25

SCORE_DIVISOR: Final[float] = 3.0
MIN_SCORE: Final[float] = 1.0
MAX_SCORE: Final[float] = 10.0

TAKE_THRESHOLD: Final[float] = 7.5
"""Manual-session and admin paths: a 1-10 score at or above this is a take."""

QUICK_SCORE_BANDS: Final[Tuple[float, ...]] = (15.0, 20.0, 25.0)
"""Upper bounds of quick-score bands 1, 2 and 3; anything above is a 4."""

QUICK_DECLINE_MAX: Final[int] = 2
"""Live path: a 1-4 quick score at or below this is a decline."""

# =============================================================================
# WEIGHTS
# =============================================================================

PRIOR_WEIGHTS: Final[Dict[str, float]] = {
    "hourlyRate": 0.3,
    "milesEfficiency": 0.25,
    "stopsBonus": 0.15,
    "timeOfDay": 0.1,
    "dayOfWeek": 0.1,
    "pickupZoneScore": 0.1,
}

# =============================================================================
# VALIDATION BOUNDARIES
# =============================================================================

ORDER_BOUNDARIES: Final[Dict[str, Tuple[float, float]]] = {
    "payout": (1, 2500),
    "miles": (0.1, 500),
    "estimatedTime": (1, 480),
    "numberOfStops": (1, 100),
    "actualTotalTime": (1, 480),
    "actualPay": (1, 2500),
}

# =============================================================================
# RUNTIME SETTINGS
# =============================================================================

ENV_PREFIX = "OFFER_SCOUT_"


@dataclass(frozen=True)
class Settings:
    """
    Runtime knobs for the workflow services.

    Attributes:
        storage_dir: directory for the JSON key-value store; None keeps
            everything in memory.
        debounce_seconds: coalescing window for active-order writes.
        delayed_survey_hours: delay before the delayed-survey reminder is due.
        delayed_survey_grace_hours: how long a due reminder stays open before
            the order is finalised without delayed data.
        weight_training: "regression" or "prior".
        min_regression_points: orders needed before regression is attempted.
    """

    storage_dir: Optional[str] = None
    debounce_seconds: float = 0.5
    delayed_survey_hours: float = 2.0
    delayed_survey_grace_hours: float = 2.0
    weight_training: str = "regression"
    min_regression_points: int = 10

    @property
    def delayed_survey_delay(self) -> timedelta:
        return timedelta(hours=self.delayed_survey_hours)

    @property
    def delayed_survey_grace(self) -> timedelta:
        return timedelta(hours=self.delayed_survey_grace_hours)


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    Build :class:`Settings` from ``OFFER_SCOUT_*`` environment variables.
    """
    load_dotenv(env_file)
    defaults = Settings()

    def env(name: str) -> Optional[str]:
        return os.getenv(ENV_PREFIX + name)

    training = (env("WEIGHT_TRAINING") or defaults.weight_training).lower()
    if training not in ("regression", "prior"):
        raise ValueError(f"Unknown weight training method: {training}")

    return Settings(
        storage_dir=env("STORAGE_DIR") or defaults.storage_dir,
        debounce_seconds=float(env("DEBOUNCE_SECONDS") or defaults.debounce_seconds),
        delayed_survey_hours=float(
            env("DELAYED_SURVEY_HOURS") or defaults.delayed_survey_hours
        ),
        delayed_survey_grace_hours=float(
            env("DELAYED_SURVEY_GRACE_HOURS") or defaults.delayed_survey_grace_hours
        ),
        weight_training=training,
        min_regression_points=int(
            env("MIN_REGRESSION_POINTS") or defaults.min_regression_points
        ),
    )
