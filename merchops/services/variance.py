"""Variance calculator: pure functions shared by matching and reporting.

quantity_variance = actual_quantity − quantity
value_variance    = actual_value − projection_value
variance_pct      = round(value_variance / projection_value × 100), None when
                    projection_value is 0 (halves round away from zero)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from merchops.models.projection import MATCH_COVERAGE_RATIO, VARIANCE_ALERT_PCT


@dataclass(frozen=True)
class Variance:
    quantity_variance: int
    value_variance: int
    variance_pct: int | None


def compute_variance(
    projected_quantity: int,
    projected_value: int,
    actual_quantity: int,
    actual_value: int,
) -> Variance:
    """Score actuals against a forecast."""
    projected_quantity = projected_quantity or 0
    projected_value = projected_value or 0
    actual_quantity = actual_quantity or 0
    actual_value = actual_value or 0

    value_variance = actual_value - projected_value
    pct = None
    if projected_value > 0:
        ratio = Decimal(value_variance) * 100 / Decimal(projected_value)
        pct = int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    return Variance(
        quantity_variance=actual_quantity - projected_quantity,
        value_variance=value_variance,
        variance_pct=pct,
    )


def coverage_status(projected_quantity: int, actual_quantity: int) -> str:
    """``matched`` once actuals reach the coverage ratio, else ``partial``."""
    projected_quantity = projected_quantity or 0
    if (actual_quantity or 0) >= MATCH_COVERAGE_RATIO * projected_quantity:
        return "matched"
    return "partial"


def is_significant(variance_pct: int | None, threshold: float = VARIANCE_ALERT_PCT) -> bool:
    """True when |variance_pct| exceeds *threshold*."""
    return variance_pct is not None and abs(variance_pct) > threshold
