"""
Unit Tests for Tolerance Policy

Tests:
- Amount tolerance boundaries (percentage vs fixed floor)
- Asymmetry of amounts_match
- Severity thresholds
- Match score penalties
- Config validation and loading from settings

Run with: pytest tests/test_tolerance.py -v
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from reconciliation.models import DetectedVariance, VarianceSeverity, VarianceType
from reconciliation.tolerance import ToleranceConfig, TolerancePolicy


def _variance(severity):
    return DetectedVariance(VarianceType.TOTAL_AMOUNT, severity, "test")


class TestAmountTolerance:
    """Tests for tolerance_for and amounts_match."""

    def test_fixed_floor_applies_to_small_amounts(self, policy):
        assert policy.tolerance_for(Decimal("50000")) == Decimal("1000")

    def test_percentage_applies_to_large_amounts(self, policy):
        assert policy.tolerance_for(Decimal("2000000")) == Decimal("20000")

    def test_tolerance_uses_magnitude(self, policy):
        assert policy.tolerance_for(Decimal("-2000000")) == Decimal("20000")

    def test_difference_equal_to_tolerance_matches(self, policy):
        assert policy.amounts_match(Decimal("101000"), Decimal("100000")) is True
        assert policy.amounts_match(Decimal("99000"), Decimal("100000")) is True

    def test_difference_just_over_tolerance_does_not_match(self, policy):
        assert policy.amounts_match(Decimal("101000.01"), Decimal("100000")) is False

    def test_percentage_boundary(self, policy):
        reference = Decimal("1000000")
        assert policy.amounts_match(Decimal("1010000"), reference) is True
        assert policy.amounts_match(Decimal("1010001"), reference) is False

    def test_tolerance_scales_to_reference(self, policy):
        """Swapping arguments changes the reference the tolerance is scaled to."""
        small, large = Decimal("200000"), Decimal("202010")

        # 1% of 202,010 is 2,020.10; 1% of 200,000 is 2,000
        assert policy.amounts_match(small, large) is True
        assert policy.amounts_match(large, small) is False

    def test_scenario_b_is_outside_tolerance(self, policy):
        assert policy.amounts_match(Decimal("100000"), Decimal("98500")) is False


class TestSeverity:
    """Tests for severity_of thresholds (lower bound inclusive)."""

    @pytest.mark.parametrize("difference,expected", [
        ("0", VarianceSeverity.LOW),
        ("999.99", VarianceSeverity.LOW),
        ("1000", VarianceSeverity.MEDIUM),
        ("9999.99", VarianceSeverity.MEDIUM),
        ("10000", VarianceSeverity.HIGH),
        ("49999.99", VarianceSeverity.HIGH),
        ("50000", VarianceSeverity.CRITICAL),
        ("-50000", VarianceSeverity.CRITICAL),
    ])
    def test_thresholds(self, policy, difference, expected):
        assert policy.severity_of(Decimal(difference)) == expected


class TestMatchScore:
    """Tests for match_score penalties."""

    def test_clean_match_scores_100(self, policy):
        assert policy.match_score([]) == 100

    def test_penalties_accumulate(self, policy):
        variances = [_variance(VarianceSeverity.LOW), _variance(VarianceSeverity.MEDIUM)]
        assert policy.match_score(variances) == 80

    def test_score_never_negative(self, policy):
        variances = [_variance(VarianceSeverity.CRITICAL)] * 3
        assert policy.match_score(variances) == 0


class TestToleranceConfig:
    """Tests for config validation and loading."""

    def test_rejects_negative_amount_tolerance(self):
        with pytest.raises(ValueError):
            ToleranceConfig(amount_percentage=Decimal("-0.01"))

    def test_rejects_descending_severity_thresholds(self):
        with pytest.raises(ValueError):
            ToleranceConfig(severity_low=Decimal("20000"), severity_medium=Decimal("10000"))

    def test_rejects_split_limit_below_two(self):
        with pytest.raises(ValueError):
            ToleranceConfig(split_search_limit=1)

    def test_from_settings(self):
        settings = SimpleNamespace(
            RECON_AMOUNT_TOLERANCE_PERCENT=0.02,
            RECON_AMOUNT_TOLERANCE_MIN=500,
            RECON_DATE_WINDOW_DAYS=10,
            RECON_INSTRUMENT_TOLERANCE_PERCENT=0.01,
            RECON_SEVERITY_LOW=1000,
            RECON_SEVERITY_MEDIUM=10000,
            RECON_SEVERITY_HIGH=50000,
            RECON_SWEEP_WINDOW_DAYS=30,
            RECON_TIMING_WINDOW_DAYS=3,
            RECON_SPLIT_SEARCH_LIMIT=8,
            RECON_BATCH_SIZE=100,
            RECON_EXCLUDED_CHANNELS="Transfer_Reversal, Internal_Sweep",
        )

        config = ToleranceConfig.from_settings(settings)

        assert config.amount_percentage == Decimal("0.02")
        assert config.amount_fixed_floor == Decimal("500")
        assert config.date_window_days == 10
        assert config.split_search_limit == 8
        assert config.excluded_channels == ("Transfer_Reversal", "Internal_Sweep")

        policy = TolerancePolicy(config)
        assert policy.tolerance_for(Decimal("10000")) == Decimal("500")
