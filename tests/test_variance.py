"""
Variance calculator and expiration-window arithmetic.

Pure functions, no database:
    - compute_variance: quantity / value deltas and rounded percentage
    - coverage_status: matched at ≥ 90% of projected quantity, else partial
    - expiration_deadline: target month end + order-type threshold
"""

from datetime import date

import pytest

from merchops.models.projection import (
    EXPIRATION_THRESHOLD_DAYS,
    PROJECTION_TRANSITIONS,
    expiration_deadline,
    expiration_threshold_days,
    validate_projection_transition,
    validate_verification_transition,
)
from merchops.services.variance import Variance, compute_variance, coverage_status, is_significant


class TestComputeVariance:
    def test_reference_scenario(self):
        v = compute_variance(1000, 500000, 850, 420000)
        assert v == Variance(quantity_variance=-150, value_variance=-80000, variance_pct=-16)

    def test_overshoot(self):
        v = compute_variance(200, 10000, 260, 12500)
        assert v.quantity_variance == 60
        assert v.value_variance == 2500
        assert v.variance_pct == 25

    def test_zero_projection_value_has_no_percentage(self):
        v = compute_variance(0, 0, 50, 900)
        assert v.variance_pct is None
        assert v.quantity_variance == 50
        assert v.value_variance == 900

    @pytest.mark.parametrize("actual_value,expected", [
        (1005, 1),      # +0.5% → 1
        (995, -1),      # −0.5% → −1, halves round away from zero
        (1004, 0),
        (996, 0),
    ])
    def test_rounding_half_away_from_zero(self, actual_value, expected):
        assert compute_variance(10, 1000, 10, actual_value).variance_pct == expected

    def test_missing_actuals_count_as_zero(self):
        v = compute_variance(100, 1000, None, None)
        assert v.quantity_variance == -100
        assert v.variance_pct == -100


class TestCoverageStatus:
    def test_below_ninety_percent_is_partial(self):
        assert coverage_status(1000, 850) == "partial"

    def test_exactly_ninety_percent_is_matched(self):
        assert coverage_status(1000, 900) == "matched"

    def test_over_delivery_is_matched(self):
        assert coverage_status(1000, 1300) == "matched"

    def test_zero_projection_is_matched_by_anything(self):
        assert coverage_status(0, 0) == "matched"


class TestIsSignificant:
    def test_strictly_above_threshold(self):
        assert is_significant(11)
        assert is_significant(-16)
        assert not is_significant(10)
        assert not is_significant(-10)

    def test_none_is_never_significant(self):
        assert not is_significant(None)

    def test_custom_threshold(self):
        assert is_significant(6, 5)
        assert not is_significant(6, 20)


class TestExpirationWindow:
    def test_thresholds_by_order_type(self):
        assert EXPIRATION_THRESHOLD_DAYS == {"regular": 90, "mto": 30, "spo": 30}
        assert expiration_threshold_days("SPO") == 30
        assert expiration_threshold_days(None) == 90
        assert expiration_threshold_days("unknown") == 90

    def test_regular_june_deadline(self):
        assert expiration_deadline(2025, 6, "regular") == date(2025, 9, 28)

    def test_mto_june_deadline(self):
        assert expiration_deadline(2025, 6, "mto") == date(2025, 7, 30)

    def test_february_leap_year(self):
        assert expiration_deadline(2024, 2, "spo") == date(2024, 3, 30)


class TestTransitionTables:
    def test_terminal_projection_states_have_no_exits(self):
        assert PROJECTION_TRANSITIONS["removed"] == set()
        assert PROJECTION_TRANSITIONS["verified_unmatched"] == set()

    def test_expired_only_restores_or_verifies(self):
        assert validate_projection_transition("expired", "unmatched")
        assert validate_projection_transition("expired", "verified_unmatched")
        assert not validate_projection_transition("expired", "matched")

    def test_matched_cannot_be_removed_or_expired(self):
        assert not validate_projection_transition("matched", "removed")
        assert not validate_projection_transition("matched", "expired")

    @pytest.mark.parametrize("target", ["verified", "cancelled", "restored"])
    def test_pending_is_the_only_verification_source(self, target):
        assert validate_verification_transition("pending", target)
        for terminal in ("verified", "cancelled", "restored"):
            assert not validate_verification_transition(terminal, target)
