"""
Monitoring utilities for scoring quality and data collection.
"""

from __future__ import annotations

from typing import Dict, Iterable

import numpy as np
import pandas as pd

from .data_models import Order, Session
from .feature_engineering import orders_frame


def history_metrics(sessions: Iterable[Session], orders: Iterable[Order]) -> Dict[str, float]:
    """
    Headline numbers over the stored history.

    ``data_quality_score`` is the percentage of orders whose delayed survey
    (actual pay, pickup site) was collected.
    """
    sessions = list(sessions)
    frame = orders_frame(orders)

    total_orders = len(frame)
    total_hours = float(sum(s.total_hours for s in sessions))
    total_earnings = float(frame["earnings"].sum()) if total_orders else 0.0
    avg_score = frame["score"].mean() if total_orders else np.nan
    with_delayed = int(frame["has_delayed_data"].sum()) if total_orders else 0

    return {
        "sessions": float(len(sessions)),
        "orders": float(total_orders),
        "hours": total_hours,
        "earnings": total_earnings,
        "avg_orders_per_session": total_orders / len(sessions) if sessions else 0.0,
        "avg_earnings_per_hour": total_earnings / total_hours if total_hours else 0.0,
        "avg_score": float(avg_score if not np.isnan(avg_score) else 0.0),
        "data_quality_score": 100.0 * with_delayed / total_orders if total_orders else 0.0,
    }


def score_calibration(orders: Iterable[Order]) -> Dict[str, float]:
    """
    Spearman rank correlation between the score shown for an offer and the
    dollars per hour it actually paid. Only full-scale scores are compared.
    """
    import scipy.stats

    frame = orders_frame(orders)
    frame = frame[(frame["scale"] == "full") & frame["realized_hourly"].notna()]
    n = len(frame)
    if n < 3 or frame["score"].nunique() < 2 or frame["realized_hourly"].nunique() < 2:
        return {"n": float(n), "spearman_rho": float("nan"), "p_value": float("nan")}

    rho, p_value = scipy.stats.spearmanr(frame["score"], frame["realized_hourly"])
    return {"n": float(n), "spearman_rho": float(rho), "p_value": float(p_value)}


def recommendation_metrics(events: pd.DataFrame) -> pd.DataFrame:
    """
    Take rate per score scale from an :class:`~offer_scout.events.EventLogger`
    frame. One row per scale with offers, takes and take_rate.
    """
    scores = events[events["event_type"] == "score"]
    if scores.empty:
        return pd.DataFrame(columns=["offers", "takes", "take_rate"])

    summary = (
        scores.assign(is_take=scores["recommendation"] == "take")
        .groupby("scale")["is_take"]
        .agg(offers="count", takes="sum")
    )
    summary["takes"] = summary["takes"].astype(int)
    summary["take_rate"] = summary["takes"] / summary["offers"]
    return summary
