"""
offer_scout
===========

Decision support for gig-delivery drivers: score incoming offers, walk each
accepted order through pickup, dropoff and follow-up surveys, and roll the
results up into driving sessions that feed back into the scoring weights.

The package groups together data structures, feature engineering, the
scoring engine and weight training, the order lifecycle state machine,
session aggregation, reminders, persistence and monitoring utilities.
"""

from . import (
    config,
    feature_engineering,
    monitoring,
    reminders,
    scoring,
    sessions,
    state_machine,
    storage,
    validation,
    weights,
)

__all__ = [
    "config",
    "feature_engineering",
    "monitoring",
    "reminders",
    "scoring",
    "sessions",
    "state_machine",
    "storage",
    "validation",
    "weights",
]
