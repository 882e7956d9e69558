"""
Weight store for the weighted scoring model.

A weight set is either the fixed prior profile or learned from the scored
order history with a non-negative linear regression of the score on the six
scoring features. Either way the weights are normalised to sum to 1 and
persisted as the single active set, with an incrementing version.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

import numpy as np
from sklearn.linear_model import LinearRegression
from sklearn.metrics import mean_absolute_error

from . import config
from .data_models import Order, WeightSet
from .feature_engineering import SCORING_FEATURES, extract_features, feature_frame
from .scoring import weighted_score
from .storage import WEIGHT_SET_KEY, KeyValueStore
from .validation import is_valid_order

log = logging.getLogger(__name__)

TRAINING_METHODS = ("regression", "prior")


class TrainingDataError(ValueError):
    """Raised when no usable orders remain for training."""


@dataclass
class TrainingResult:
    weights: WeightSet
    accuracy: float


def normalised(weights: Dict[str, float]) -> Dict[str, float]:
    total = sum(weights.values())
    if total <= 0 or not np.isfinite(total):
        raise ValueError("Weights must have a positive, finite sum")
    return {name: value / total for name, value in weights.items()}


def prior_weights() -> Dict[str, float]:
    return normalised(dict(config.PRIOR_WEIGHTS))


def regression_weights(orders: List[Order]) -> Optional[Dict[str, float]]:
    """
    Fit score ~ scoring features with non-negative coefficients.

    Returns None when the fit carries no signal (all coefficients zero).
    """
    frame = feature_frame(orders)
    X = frame[list(SCORING_FEATURES)].to_numpy()
    y = frame["label"].to_numpy()

    model = LinearRegression(positive=True)
    model.fit(X, y)
    coefs = np.clip(model.coef_, 0.0, None)
    if not np.isfinite(coefs).all() or coefs.sum() <= 0:
        return None
    return normalised(dict(zip(SCORING_FEATURES, coefs.tolist())))


def model_accuracy(orders: List[Order], weights: WeightSet) -> float:
    """
    100 minus ten times the mean absolute error against the stored labels,
    floored at 0.
    """
    frame = feature_frame(orders)
    predicted = [weighted_score(extract_features(order), weights) for order in orders]
    error = mean_absolute_error(frame["label"].to_numpy(), predicted)
    return float(max(0.0, 100.0 - error * 10.0))


class WeightStore:
    """
    Holds the active weight set and persists it in a key-value store.
    """

    def __init__(
        self,
        store: KeyValueStore,
        method: str = "regression",
        min_regression_points: int = 10,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        if method not in TRAINING_METHODS:
            raise ValueError(f"Unknown training method: {method}")
        self.store = store
        self.method = method
        self.min_regression_points = min_regression_points
        self.clock = clock
        self._active: Optional[WeightSet] = None

    @property
    def active(self) -> Optional[WeightSet]:
        return self._active

    def load(self) -> Optional[WeightSet]:
        """
        Load the persisted set, making it active. Returns None if there is
        none or it cannot be parsed.
        """
        data = self.store.get(WEIGHT_SET_KEY)
        if not data:
            return None
        try:
            self._active = WeightSet.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            log.warning("Failed to load saved weight set: %s", exc)
            return None
        return self._active

    def train(self, orders: Iterable[Order]) -> TrainingResult:
        """
        Derive a new weight set from scored historical orders and persist it.
        """
        usable = [o for o in orders if o.score is not None and is_valid_order(o)]
        if not usable:
            raise TrainingDataError("Need at least one order to train model")

        weights: Optional[Dict[str, float]] = None
        method = "prior"
        if self.method == "regression" and len(usable) >= self.min_regression_points:
            weights = regression_weights(usable)
            if weights is not None:
                method = "regression"
            else:
                log.info("Regression found no signal in %d orders, using prior", len(usable))
        if weights is None:
            weights = prior_weights()

        previous = self._active or self.load()
        weight_set = WeightSet(
            weights=weights,
            version=(previous.version + 1) if previous else 1,
            trained_at=self.clock(),
            data_points=len(usable),
            method=method,
        )
        weight_set.accuracy = model_accuracy(usable, weight_set)

        self._active = weight_set
        self.store.set(WEIGHT_SET_KEY, weight_set.to_dict())
        log.info(
            "Trained weight set v%d (%s) on %d orders, accuracy %.1f",
            weight_set.version, method, len(usable), weight_set.accuracy,
        )
        return TrainingResult(weights=weight_set, accuracy=weight_set.accuracy)

    def reset(self) -> None:
        self._active = None
        self.store.delete(WEIGHT_SET_KEY)
