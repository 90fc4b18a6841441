"""
Variance Rules

Classifies the discrepancies between the bank side and the ledger side
of a match, and turns the variance list into a reconciliation status.

Checks per matched pair:
- Total amount outside tolerance (severity by difference)
- Date difference (LOW + auto-approved inside the window, MEDIUM beyond)
- Per-instrument amount difference above the distribution tolerance

Status:
- No variances: MATCHED
- Any HIGH or CRITICAL: MANUAL_REVIEW
- Otherwise AUTO_APPROVED if every variance is auto-approved, else MANUAL_REVIEW
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from reconciliation.models import (
    BankRecord,
    DetectedVariance,
    GoalTransactionGroup,
    InstrumentCode,
    ReconciliationStatus,
    VarianceSeverity,
    VarianceType,
)
from reconciliation.tolerance import TolerancePolicy


@dataclass
class StatusDecision:
    status: ReconciliationStatus
    auto_approved: bool


def _instrument_totals(rows, attribute: str = "instrument_amounts") -> Dict[InstrumentCode, Decimal]:
    totals: Dict[InstrumentCode, Decimal] = {}
    for row in rows:
        for code, amount in getattr(row, attribute).items():
            totals[code] = totals.get(code, Decimal("0")) + amount
    return totals


class VarianceClassifier:
    """Detects and grades variances for matched and unmatched records."""

    def __init__(self, policy: Optional[TolerancePolicy] = None):
        self.policy = policy or TolerancePolicy()

    @property
    def config(self):
        return self.policy.config

    def classify(
        self,
        bank_records: Sequence[BankRecord],
        groups: Sequence[GoalTransactionGroup]
    ) -> List[DetectedVariance]:
        """
        Compare the bank side of a match against its ledger side.

        Args:
            bank_records: Bank records in the match
            groups: Ledger groups in the match

        Returns:
            Detected variances, empty for a clean match
        """
        if not bank_records or not groups:
            return []

        variances: List[DetectedVariance] = []

        bank_total = sum((r.total_amount for r in bank_records), Decimal("0"))
        ledger_total = sum((g.total_amount for g in groups), Decimal("0"))
        if not self.policy.amounts_match(bank_total, ledger_total):
            difference = bank_total - ledger_total
            variances.append(DetectedVariance(
                variance_type=VarianceType.TOTAL_AMOUNT,
                severity=self.policy.severity_of(difference),
                description="Total amount mismatch",
                expected_value=ledger_total,
                actual_value=bank_total,
                difference_amount=difference,
                difference_percentage=self._percentage(difference, ledger_total),
            ))

        date_variance = self._check_date(
            min(r.transaction_date for r in bank_records),
            min(g.transaction_date for g in groups),
        )
        if date_variance:
            variances.append(date_variance)

        variances.extend(self._check_instruments(
            _instrument_totals(bank_records),
            _instrument_totals(groups),
        ))

        return variances

    def missing_in_ledger(self, record: BankRecord) -> DetectedVariance:
        return DetectedVariance(
            variance_type=VarianceType.MISSING_IN_LEDGER,
            severity=VarianceSeverity.CRITICAL,
            description=(
                f"No matching ledger transaction found for goal {record.goal_id} "
                f"and transaction ID {record.source_transaction_id}"
            ),
            actual_value=record.total_amount,
            actual_date=record.transaction_date,
        )

    def missing_in_bank(self, group: GoalTransactionGroup) -> DetectedVariance:
        return DetectedVariance(
            variance_type=VarianceType.MISSING_IN_BANK,
            severity=VarianceSeverity.CRITICAL,
            description=(
                f"No matching bank transaction found for goal {group.goal_id} "
                f"and transaction ID {group.source_transaction_id}"
            ),
            expected_value=group.total_amount,
            expected_date=group.transaction_date,
        )

    def _check_date(self, bank_date: date, ledger_date: date) -> Optional[DetectedVariance]:
        days = abs((bank_date - ledger_date).days)
        if days == 0:
            return None

        window = self.config.date_window_days
        if days <= window:
            return DetectedVariance(
                variance_type=VarianceType.DATE_DIFFERENCE,
                severity=VarianceSeverity.LOW,
                description=f"Transaction date differs by {days} day(s)",
                expected_date=ledger_date,
                actual_date=bank_date,
                date_difference_days=days,
                auto_approved=True,
                auto_approval_reason=f"Date variance within acceptable tolerance ({window} days)",
            )

        return DetectedVariance(
            variance_type=VarianceType.DATE_DIFFERENCE,
            severity=VarianceSeverity.MEDIUM,
            description=f"Transaction date differs by {days} day(s) - exceeds tolerance",
            expected_date=ledger_date,
            actual_date=bank_date,
            date_difference_days=days,
        )

    def _check_instruments(
        self,
        bank_amounts: Dict[InstrumentCode, Decimal],
        ledger_amounts: Dict[InstrumentCode, Decimal]
    ) -> List[DetectedVariance]:
        variances = []
        limit = self.config.instrument_distribution_percentage

        for code in InstrumentCode:
            bank_amount = bank_amounts.get(code, Decimal("0"))
            ledger_amount = ledger_amounts.get(code, Decimal("0"))
            difference = abs(bank_amount - ledger_amount)
            # A zero ledger amount has no meaningful ratio and is not flagged
            ratio = difference / abs(ledger_amount) if ledger_amount != 0 else Decimal("0")

            if ratio <= limit:
                continue

            severity = self.policy.severity_of(difference)
            auto_approved = severity == VarianceSeverity.LOW and ratio <= limit * 2
            variances.append(DetectedVariance(
                variance_type=VarianceType.INSTRUMENT_AMOUNT,
                severity=severity,
                description=f"{code.value} amount variance",
                instrument_code=code,
                expected_value=ledger_amount,
                actual_value=bank_amount,
                difference_amount=bank_amount - ledger_amount,
                difference_percentage=ratio * 100,
                auto_approved=auto_approved,
                auto_approval_reason=(
                    "Small variance within acceptable tolerance"
                    if severity == VarianceSeverity.LOW else None
                ),
            ))

        return variances

    @staticmethod
    def _percentage(difference: Decimal, reference: Decimal) -> Optional[Decimal]:
        if reference == 0:
            return None
        return abs(difference) / abs(reference) * 100


class StatusResolver:
    """Maps a list of variances to a reconciliation status."""

    BLOCKING_SEVERITIES = (VarianceSeverity.HIGH, VarianceSeverity.CRITICAL)

    def resolve(self, variances: Sequence[DetectedVariance]) -> StatusDecision:
        if not variances:
            return StatusDecision(ReconciliationStatus.MATCHED, auto_approved=True)

        if any(v.severity in self.BLOCKING_SEVERITIES for v in variances):
            return StatusDecision(ReconciliationStatus.MANUAL_REVIEW, auto_approved=False)

        if all(v.auto_approved for v in variances):
            return StatusDecision(ReconciliationStatus.AUTO_APPROVED, auto_approved=True)

        return StatusDecision(ReconciliationStatus.MANUAL_REVIEW, auto_approved=False)

    def missing_in_ledger(self) -> StatusDecision:
        return StatusDecision(ReconciliationStatus.MISSING_IN_LEDGER, auto_approved=False)

    def missing_in_bank(self) -> StatusDecision:
        return StatusDecision(ReconciliationStatus.MISSING_IN_BANK, auto_approved=False)
