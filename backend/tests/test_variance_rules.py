"""
Unit Tests for Variance Rules

Tests:
- TOTAL_AMOUNT detection and severity
- DATE_DIFFERENCE inside and beyond the date window
- INSTRUMENT_AMOUNT detection, auto-approval and the ledger-relative ratio
- Missing-side variances
- Status resolution

Run with: pytest tests/test_variance_rules.py -v
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from reconciliation.grouping_key import build_groups
from reconciliation.matching_rules.variance_rules import StatusResolver, VarianceClassifier
from reconciliation.models import (
    DetectedVariance,
    InstrumentCode,
    ReconciliationStatus,
    VarianceSeverity,
    VarianceType,
)

from factories import TRADE_DATE, bank, posting


@pytest.fixture
def classifier(policy):
    return VarianceClassifier(policy)


@pytest.fixture
def resolver():
    return StatusResolver()


def _types(variances):
    return [v.variance_type for v in variances]


# ==================== CLASSIFY ====================

class TestTotalAmount:
    """Tests for the total amount check."""

    def test_clean_match_has_no_variances(self, classifier, resolver):
        records = [bank("B1", "TX1", "2275000")]
        groups = build_groups([posting("P1", "TX1", "2275000")])

        variances = classifier.classify(records, groups)

        assert variances == []
        assert resolver.resolve(variances).status == ReconciliationStatus.MATCHED

    def test_amount_outside_tolerance(self, classifier, resolver, policy):
        records = [bank("B1", "TX1", "100000", instruments={InstrumentCode.XUMMF: "98500"})]
        groups = build_groups([posting("P1", "TX1", "98500")])

        variances = classifier.classify(records, groups)

        assert _types(variances) == [VarianceType.TOTAL_AMOUNT]
        variance = variances[0]
        assert variance.severity == VarianceSeverity.MEDIUM
        assert variance.expected_value == Decimal("98500")
        assert variance.actual_value == Decimal("100000")
        assert variance.difference_amount == Decimal("1500")
        assert variance.difference_percentage == pytest.approx(Decimal("1500") / Decimal("98500") * 100)

        decision = resolver.resolve(variances)
        assert decision.status == ReconciliationStatus.MANUAL_REVIEW
        assert decision.auto_approved is False
        assert policy.match_score(variances) == 85

    def test_large_shortfall_is_critical(self, classifier):
        records = [bank("B1", "TX1", "500000", instruments={InstrumentCode.XUMMF: "400000"})]
        groups = build_groups([posting("P1", "TX1", "400000")])

        variances = classifier.classify(records, groups)

        assert variances[0].severity == VarianceSeverity.CRITICAL

    def test_split_sides_are_summed(self, classifier):
        records = [bank("B1", "BR1", "50000"), bank("B2", "BR2", "50000")]
        groups = build_groups([posting("P1", "TX1", "100000")])

        assert classifier.classify(records, groups) == []

    def test_empty_side_yields_nothing(self, classifier):
        assert classifier.classify([], build_groups([posting("P1", "TX1", "100")])) == []
        assert classifier.classify([bank("B1", "TX1", "100")], []) == []


class TestDateDifference:
    """Tests for the date check."""

    def test_small_date_difference_is_auto_approved(self, classifier, resolver, policy):
        records = [bank("B1", "TX1", "75000", transaction_date=TRADE_DATE + timedelta(days=5))]
        groups = build_groups([posting("P1", "TX1", "75000")])

        variances = classifier.classify(records, groups)

        assert _types(variances) == [VarianceType.DATE_DIFFERENCE]
        assert variances[0].severity == VarianceSeverity.LOW
        assert variances[0].date_difference_days == 5
        assert variances[0].auto_approved is True
        assert resolver.resolve(variances).status == ReconciliationStatus.AUTO_APPROVED
        assert policy.match_score(variances) == 95

    def test_date_difference_beyond_window(self, classifier, resolver):
        records = [bank("B1", "TX1", "75000", transaction_date=TRADE_DATE + timedelta(days=45))]
        groups = build_groups([posting("P1", "TX1", "75000")])

        variances = classifier.classify(records, groups)

        assert variances[0].severity == VarianceSeverity.MEDIUM
        assert variances[0].auto_approved is False
        assert resolver.resolve(variances).status == ReconciliationStatus.MANUAL_REVIEW

    def test_earliest_dates_are_compared(self, classifier):
        records = [
            bank("B1", "BR1", "50000", transaction_date=TRADE_DATE),
            bank("B2", "BR2", "50000", transaction_date=TRADE_DATE + timedelta(days=2)),
        ]
        groups = build_groups([posting("P1", "TX1", "100000")])

        assert classifier.classify(records, groups) == []


class TestInstrumentAmount:
    """Tests for the per-instrument check."""

    def test_small_instrument_drift_is_auto_approved(self, classifier, resolver):
        records = [bank("B1", "TX1", "100000", instruments={
            InstrumentCode.XUMMF: "60000",
            InstrumentCode.XUBF: "40000",
        })]
        groups = build_groups([
            posting("P1", "TX1", "59500", instrument=InstrumentCode.XUMMF),
            posting("P2", "TX1", "40500", instrument=InstrumentCode.XUBF),
        ])

        variances = classifier.classify(records, groups)

        # XUMMF drifts 0.84%, inside tolerance; XUBF drifts 1.23%
        assert _types(variances) == [VarianceType.INSTRUMENT_AMOUNT]
        variance = variances[0]
        assert variance.instrument_code == InstrumentCode.XUBF
        assert variance.severity == VarianceSeverity.LOW
        assert variance.difference_amount == Decimal("-500")
        assert variance.auto_approved is True
        assert resolver.resolve(variances).status == ReconciliationStatus.AUTO_APPROVED

    def test_large_instrument_drift_needs_review(self, classifier, resolver):
        records = [bank("B1", "TX1", "100000", instruments={
            InstrumentCode.XUMMF: "60000",
            InstrumentCode.XUBF: "40000",
        })]
        groups = build_groups([
            posting("P1", "TX1", "65000", instrument=InstrumentCode.XUMMF),
            posting("P2", "TX1", "35000", instrument=InstrumentCode.XUBF),
        ])

        variances = classifier.classify(records, groups)

        assert _types(variances) == [VarianceType.INSTRUMENT_AMOUNT] * 2
        assert {v.severity for v in variances} == {VarianceSeverity.MEDIUM}
        assert all(not v.auto_approved for v in variances)
        assert resolver.resolve(variances).status == ReconciliationStatus.MANUAL_REVIEW

    def test_drift_is_measured_against_the_ledger_amount(self, classifier):
        records = [bank("B1", "TX1", "100000", instruments={
            InstrumentCode.XUMMF: "90100",
            InstrumentCode.XUBF: "9900",
        })]
        groups = build_groups([
            posting("P1", "TX1", "90000", instrument=InstrumentCode.XUMMF),
            posting("P2", "TX1", "10000", instrument=InstrumentCode.XUBF),
        ])

        # XUBF is 1.00% of the ledger amount but 1.01% of the bank amount
        assert classifier.classify(records, groups) == []

    def test_instrument_absent_from_ledger_is_not_flagged(self, classifier):
        records = [bank("B1", "TX1", "100800", instruments={
            InstrumentCode.XUMMF: "100000",
            InstrumentCode.XUREF: "800",
        })]
        groups = build_groups([posting("P1", "TX1", "100800")])

        variances = classifier.classify(records, groups)

        assert VarianceType.INSTRUMENT_AMOUNT not in _types(variances)


class TestMissingSides:
    """Tests for missing_in_ledger and missing_in_bank."""

    def test_missing_in_ledger(self, classifier):
        variance = classifier.missing_in_ledger(bank("B1", "TX9", "5000"))

        assert variance.variance_type == VarianceType.MISSING_IN_LEDGER
        assert variance.severity == VarianceSeverity.CRITICAL
        assert "TX9" in variance.description
        assert variance.actual_value == Decimal("5000")

    def test_missing_in_bank(self, classifier):
        group = build_groups([posting("P1", "TX9", "5000")])[0]
        variance = classifier.missing_in_bank(group)

        assert variance.variance_type == VarianceType.MISSING_IN_BANK
        assert variance.severity == VarianceSeverity.CRITICAL
        assert variance.expected_value == Decimal("5000")
        assert variance.expected_date == TRADE_DATE


# ==================== STATUS ====================

class TestStatusResolver:
    """Tests for StatusResolver."""

    def test_blocking_severity_overrides_auto_approval(self, resolver):
        variances = [
            DetectedVariance(VarianceType.DATE_DIFFERENCE, VarianceSeverity.LOW, "d", auto_approved=True),
            DetectedVariance(VarianceType.INSTRUMENT_AMOUNT, VarianceSeverity.HIGH, "i", auto_approved=True),
        ]
        assert resolver.resolve(variances).status == ReconciliationStatus.MANUAL_REVIEW

    def test_mixed_approval_needs_review(self, resolver):
        variances = [
            DetectedVariance(VarianceType.DATE_DIFFERENCE, VarianceSeverity.LOW, "d", auto_approved=True),
            DetectedVariance(VarianceType.INSTRUMENT_AMOUNT, VarianceSeverity.LOW, "i"),
        ]
        assert resolver.resolve(variances).status == ReconciliationStatus.MANUAL_REVIEW

    def test_missing_statuses(self, resolver):
        assert resolver.missing_in_ledger().status == ReconciliationStatus.MISSING_IN_LEDGER
        assert resolver.missing_in_bank().status == ReconciliationStatus.MISSING_IN_BANK
