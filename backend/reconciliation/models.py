"""
Reconciliation Domain Model

Records and value types shared by the matching engine, the variance
classifier and the reconciliation services.

Sides of a reconciliation:
- BankRecord: one row of a bank statement, per goal
- LedgerPosting: one internal fund entry against one instrument
- GoalTransactionGroup: postings sharing a canonical grouping key

Money is always Decimal. Dates are datetime.date.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple


# ==================== ENUMS ====================

class TransactionType(str, Enum):
    """Direction of a money movement."""
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    REDEMPTION = "REDEMPTION"

    def is_opposite_of(self, other: "TransactionType") -> bool:
        if self == TransactionType.DEPOSIT:
            return other in (TransactionType.WITHDRAWAL, TransactionType.REDEMPTION)
        return other == TransactionType.DEPOSIT


class InstrumentCode(str, Enum):
    """Investment vehicles a goal can hold."""
    XUMMF = "XUMMF"  # Money market fund
    XUBF = "XUBF"    # Bond fund
    XUDEF = "XUDEF"  # Dollar equity fund
    XUREF = "XUREF"  # Regional equity fund


class MatchType(str, Enum):
    """How a bank-side set was paired with a ledger-side set."""
    EXACT = "EXACT"                              # Same source transaction id
    AMOUNT = "AMOUNT"                            # Amount within tolerance inside the date window
    SPLIT_BANK_TO_GROUP = "SPLIT_BANK_TO_GROUP"  # Several bank records, one group
    SPLIT_GROUP_TO_BANK = "SPLIT_GROUP_TO_BANK"  # One bank record, several groups
    MANUAL = "MANUAL"                            # Operator override


class VarianceType(str, Enum):
    TOTAL_AMOUNT = "TOTAL_AMOUNT"
    INSTRUMENT_AMOUNT = "INSTRUMENT_AMOUNT"
    INSTRUMENT_DISTRIBUTION = "INSTRUMENT_DISTRIBUTION"
    DATE_DIFFERENCE = "DATE_DIFFERENCE"
    MISSING_IN_LEDGER = "MISSING_IN_LEDGER"
    MISSING_IN_BANK = "MISSING_IN_BANK"


class VarianceSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ReconciliationStatus(str, Enum):
    """Persisted status of a bank record."""
    PENDING = "PENDING"                      # Not yet processed
    MATCHED = "MATCHED"                      # Matched with no variances
    AUTO_APPROVED = "AUTO_APPROVED"          # Minor variances, approved automatically
    MANUAL_REVIEW = "MANUAL_REVIEW"          # Needs an operator
    MISSING_IN_LEDGER = "MISSING_IN_LEDGER"  # Bank movement with no ledger counterpart
    MISSING_IN_BANK = "MISSING_IN_BANK"      # Ledger movement with no bank counterpart
    APPROVED = "APPROVED"                    # Operator approved
    REJECTED = "REJECTED"                    # Operator rejected


class ReviewTag(str, Enum):
    """Operator review tags."""
    MISSING_IN_LEDGER = "MISSING_IN_LEDGER"
    MISSING_IN_BANK = "MISSING_IN_BANK"
    TIMING_DIFFERENCE = "TIMING_DIFFERENCE"
    AMOUNT_DIFFERENCE = "AMOUNT_DIFFERENCE"
    DUPLICATE_TRANSACTION = "DUPLICATE_TRANSACTION"
    REVERSAL = "REVERSAL"
    OTHER = "OTHER"


# Tags the resolution sweep is able to clear on its own
AUTO_RESOLVABLE_TAGS = (
    ReviewTag.MISSING_IN_LEDGER,
    ReviewTag.MISSING_IN_BANK,
    ReviewTag.TIMING_DIFFERENCE,
)


class RecordSource(str, Enum):
    """Which side of the reconciliation a record lives on."""
    BANK = "BANK"
    LEDGER = "LEDGER"


# ==================== VALUE TYPES ====================

@dataclass(frozen=True)
class DateRange:
    """Inclusive date range."""
    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"start {self.start} is after end {self.end}")

    def contains(self, value: date) -> bool:
        return self.start <= value <= self.end

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class MatchReference:
    """
    Persisted link from bank record(s) to ledger group(s).

    Stored as structured fields so that removal and lookup use
    membership on group_keys, never substring search.
    """
    match_type: MatchType
    group_keys: Tuple[str, ...]
    created_by: str = "system"
    created_at: Optional[datetime] = None

    @property
    def is_manual(self) -> bool:
        return self.match_type == MatchType.MANUAL

    def references(self, group_key: str) -> bool:
        return group_key in self.group_keys

    def same_link(self, other: Optional["MatchReference"]) -> bool:
        """True when other points at the same groups with the same match type."""
        return (
            other is not None
            and other.match_type == self.match_type
            and other.group_keys == self.group_keys
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "match_type": self.match_type.value,
            "group_keys": list(self.group_keys),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class ReversalLink:
    """Pairing of a bank record with the record that reverses it."""
    partner_id: str
    linked_by: str
    linked_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partner_id": self.partner_id,
            "linked_by": self.linked_by,
            "linked_at": self.linked_at.isoformat(),
        }


# ==================== RECORDS ====================

@dataclass
class ReviewState:
    """Review and resolution annotations shared by both sides."""
    review_tag: Optional[ReviewTag] = None
    review_notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    variance_resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_reason: Optional[str] = None
    resolved_by_batch_id: Optional[str] = None

    @property
    def is_reviewed(self) -> bool:
        return self.review_tag is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "review_tag": self.review_tag.value if self.review_tag else None,
            "review_notes": self.review_notes,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "variance_resolved": self.variance_resolved,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_reason": self.resolved_reason,
            "resolved_by_batch_id": self.resolved_by_batch_id,
        }


@dataclass
class BankRecord:
    """One bank statement row for a goal."""
    id: str
    goal_id: str
    account_id: str
    source_transaction_id: str
    transaction_type: TransactionType
    transaction_date: date
    total_amount: Decimal
    instrument_amounts: Dict[InstrumentCode, Decimal] = field(default_factory=dict)

    # Match annotations
    match_reference: Optional[MatchReference] = None
    matched_at: Optional[datetime] = None
    match_score: Optional[int] = None
    reconciliation_status: ReconciliationStatus = ReconciliationStatus.PENDING

    review: ReviewState = field(default_factory=ReviewState)
    reversal_link: Optional[ReversalLink] = None

    @property
    def is_matched(self) -> bool:
        return self.match_reference is not None

    @property
    def has_manual_match(self) -> bool:
        return self.match_reference is not None and self.match_reference.is_manual

    def instrument_amount(self, code: InstrumentCode) -> Decimal:
        return self.instrument_amounts.get(code, Decimal("0"))

    def clear_match(self):
        self.match_reference = None
        self.matched_at = None
        self.match_score = None
        self.reconciliation_status = ReconciliationStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "goal_id": self.goal_id,
            "account_id": self.account_id,
            "source_transaction_id": self.source_transaction_id,
            "transaction_type": self.transaction_type.value,
            "transaction_date": self.transaction_date.isoformat(),
            "total_amount": str(self.total_amount),
            "instrument_amounts": {
                code.value: str(amount) for code, amount in self.instrument_amounts.items()
            },
            "match_reference": self.match_reference.to_dict() if self.match_reference else None,
            "matched_at": self.matched_at.isoformat() if self.matched_at else None,
            "match_score": self.match_score,
            "reconciliation_status": self.reconciliation_status.value,
            "review": self.review.to_dict(),
            "reversal_link": self.reversal_link.to_dict() if self.reversal_link else None,
        }


@dataclass
class LedgerPosting:
    """One internal ledger entry against a single instrument."""
    id: str
    goal_id: str
    account_id: str
    source_transaction_id: str
    channel: str
    instrument_code: InstrumentCode
    transaction_type: TransactionType
    transaction_date: date
    amount: Decimal
    units: Decimal = Decimal("0")
    group_key: Optional[str] = None
    review: ReviewState = field(default_factory=ReviewState)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "goal_id": self.goal_id,
            "account_id": self.account_id,
            "source_transaction_id": self.source_transaction_id,
            "channel": self.channel,
            "instrument_code": self.instrument_code.value,
            "transaction_type": self.transaction_type.value,
            "transaction_date": self.transaction_date.isoformat(),
            "amount": str(self.amount),
            "units": str(self.units),
            "group_key": self.group_key,
            "review": self.review.to_dict(),
        }


@dataclass
class GoalTransactionGroup:
    """
    Aggregate of the ledger postings that form one logical money movement.

    All postings share transaction type, date and source transaction id.
    """
    group_key: str
    goal_id: str
    source_transaction_id: str
    transaction_type: TransactionType
    transaction_date: date
    total_amount: Decimal
    instrument_amounts: Dict[InstrumentCode, Decimal]
    posting_ids: List[str]
    review: ReviewState = field(default_factory=ReviewState)

    def instrument_amount(self, code: InstrumentCode) -> Decimal:
        return self.instrument_amounts.get(code, Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_key": self.group_key,
            "goal_id": self.goal_id,
            "source_transaction_id": self.source_transaction_id,
            "transaction_type": self.transaction_type.value,
            "transaction_date": self.transaction_date.isoformat(),
            "total_amount": str(self.total_amount),
            "instrument_amounts": {
                code.value: str(amount) for code, amount in self.instrument_amounts.items()
            },
            "posting_ids": list(self.posting_ids),
            "review_tag": self.review.review_tag.value if self.review.review_tag else None,
        }


# ==================== MATCHING RESULTS ====================

@dataclass
class MatchResult:
    """
    One pairing of bank record(s) with ledger group(s) produced by a run.

    Within one run a bank id or posting id appears in at most one
    non-manual MatchResult.
    """
    bank_ids: List[str]
    posting_ids: List[str]
    group_keys: List[str]
    match_type: MatchType
    confidence: float
    bank_total: Decimal
    group_total: Decimal
    amount_within_tolerance: bool = True

    @property
    def match_score(self) -> int:
        return round(self.confidence * 100)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bank_ids": list(self.bank_ids),
            "posting_ids": list(self.posting_ids),
            "group_keys": list(self.group_keys),
            "match_type": self.match_type.value,
            "confidence": round(self.confidence, 4),
            "bank_total": str(self.bank_total),
            "group_total": str(self.group_total),
            "amount_within_tolerance": self.amount_within_tolerance,
        }


@dataclass
class DetectedVariance:
    """A classified discrepancy between a bank-side and a ledger-side set."""
    variance_type: VarianceType
    severity: VarianceSeverity
    description: str
    expected_value: Optional[Decimal] = None
    actual_value: Optional[Decimal] = None
    difference_amount: Optional[Decimal] = None
    difference_percentage: Optional[Decimal] = None
    instrument_code: Optional[InstrumentCode] = None
    expected_date: Optional[date] = None
    actual_date: Optional[date] = None
    date_difference_days: Optional[int] = None
    auto_approved: bool = False
    auto_approval_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        def money(value: Optional[Decimal]) -> Optional[str]:
            return str(value) if value is not None else None

        return {
            "variance_type": self.variance_type.value,
            "severity": self.severity.value,
            "description": self.description,
            "expected_value": money(self.expected_value),
            "actual_value": money(self.actual_value),
            "difference_amount": money(self.difference_amount),
            "difference_percentage": money(self.difference_percentage),
            "instrument_code": self.instrument_code.value if self.instrument_code else None,
            "expected_date": self.expected_date.isoformat() if self.expected_date else None,
            "actual_date": self.actual_date.isoformat() if self.actual_date else None,
            "date_difference_days": self.date_difference_days,
            "auto_approved": self.auto_approved,
            "auto_approval_reason": self.auto_approval_reason,
        }


@dataclass
class RecordError:
    """Failure attached to a single record or goal during a batch operation."""
    record_id: str
    message: str
    error_type: str = "error"

    def to_dict(self) -> Dict[str, str]:
        return {
            "record_id": self.record_id,
            "message": self.message,
            "error_type": self.error_type,
        }
