"""
Record validation run before matching. Invalid records are skipped and
reported, never matched.
"""

from datetime import date
from decimal import Decimal

from reconciliation.errors import ValidationError
from reconciliation.models import BankRecord, InstrumentCode, LedgerPosting, TransactionType


def _require_amount(value, field: str, record_id: str):
    if not isinstance(value, Decimal) or not value.is_finite():
        raise ValidationError(f"{field} must be a finite decimal amount", field=field, record_id=record_id)


def _require_common(record, goal_id: str):
    if not record.id:
        raise ValidationError("Record id is required", field="id")
    if record.goal_id != goal_id:
        raise ValidationError(
            f"Record belongs to goal {record.goal_id}, not {goal_id}",
            field="goal_id",
            record_id=record.id,
        )
    if not record.source_transaction_id:
        raise ValidationError("Source transaction id is required", field="source_transaction_id", record_id=record.id)
    if not isinstance(record.transaction_type, TransactionType):
        raise ValidationError(
            f"Unknown transaction type: {record.transaction_type}",
            field="transaction_type",
            record_id=record.id,
        )
    if not isinstance(record.transaction_date, date):
        raise ValidationError("Transaction date is required", field="transaction_date", record_id=record.id)


def validate_bank_record(record: BankRecord, goal_id: str):
    """
    Raises:
        ValidationError: record cannot take part in a run for goal_id
    """
    _require_common(record, goal_id)
    _require_amount(record.total_amount, "total_amount", record.id)
    for code, amount in record.instrument_amounts.items():
        if not isinstance(code, InstrumentCode):
            raise ValidationError(f"Unknown instrument code: {code}", field="instrument_amounts", record_id=record.id)
        _require_amount(amount, f"{code.value} amount", record.id)


def validate_ledger_posting(posting: LedgerPosting, goal_id: str):
    """
    Raises:
        ValidationError: posting cannot take part in a run for goal_id
    """
    _require_common(posting, goal_id)
    if not isinstance(posting.instrument_code, InstrumentCode):
        raise ValidationError(
            f"Unknown instrument code: {posting.instrument_code}",
            field="instrument_code",
            record_id=posting.id,
        )
    _require_amount(posting.amount, "amount", posting.id)
