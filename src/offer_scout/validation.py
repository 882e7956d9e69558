"""
Boundary checks for order metrics.

Keeps outliers and typos (a $25,000 payout, a 0-minute trip) out of the
history that weight training learns from.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from . import config
from .data_models import Order


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    value: float
    message: str
    boundary: Tuple[float, float]


def validate_metric(name: str, value: Optional[float]) -> Optional[ValidationIssue]:
    if value is None:
        return None

    low, high = config.ORDER_BOUNDARIES[name]
    if value < low:
        return ValidationIssue(name, value, f"{name} cannot be less than {low}", (low, high))
    if value > high:
        return ValidationIssue(name, value, f"{name} cannot exceed {high}", (low, high))
    return None


def validate_order_data(**metrics: Optional[float]) -> List[ValidationIssue]:
    """
    Validate the given metrics against ``config.ORDER_BOUNDARIES``.

    Keyword names follow the boundary table (payout, miles, estimatedTime,
    numberOfStops, actualTotalTime, actualPay); None values are skipped.
    """
    issues: List[ValidationIssue] = []
    for name, value in metrics.items():
        if name not in config.ORDER_BOUNDARIES:
            raise KeyError(f"No boundary defined for {name}")
        issue = validate_metric(name, value)
        if issue:
            issues.append(issue)
    return issues


def order_metrics(order: Order) -> Dict[str, Optional[float]]:
    return {
        "payout": order.shown_payout,
        "miles": order.miles,
        "estimatedTime": order.estimated_time,
        "numberOfStops": order.number_of_stops,
        "actualTotalTime": order.actual_total_time,
        "actualPay": order.actual_pay,
    }


def validate_order(order: Order) -> List[ValidationIssue]:
    return validate_order_data(**order_metrics(order))


def is_valid_order(order: Order) -> bool:
    try:
        return not validate_order(order)
    except TypeError:
        # non-numeric values in a stored record
        return False


def validation_message(issues: List[ValidationIssue]) -> str:
    if not issues:
        return ""
    lines = [
        f"{issue.field}: {issue.value} is outside valid range "
        f"({issue.boundary[0]}-{issue.boundary[1]})"
        for issue in issues
    ]
    return (
        "Data validation failed:\n\n"
        + "\n".join(lines)
        + "\n\nPlease correct these values before saving."
    )
