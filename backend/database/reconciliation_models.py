"""
Goal Reconciliation - Database Models

Tables:
- bank_goal_transactions: bank statement rows with match, review,
  resolution and reversal annotations
- fund_transactions: ledger postings, one per instrument, linked by
  goal_transaction_code (the canonical grouping key)
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Boolean, Date, DateTime, Integer, Index, JSON, Numeric
)

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Per-instrument amount columns on bank_goal_transactions
INSTRUMENT_COLUMNS = {
    "XUMMF": "xummf_amount",
    "XUBF": "xubf_amount",
    "XUDEF": "xudef_amount",
    "XUREF": "xuref_amount",
}


class ReviewColumnsMixin:
    """Review and resolution columns shared by both sides."""
    review_tag = Column(String(40), nullable=True, index=True)
    review_notes = Column(Text, nullable=True)
    reviewed_by = Column(String(100), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)

    variance_resolved = Column(Boolean, nullable=False, default=False, index=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_reason = Column(Text, nullable=True)
    resolved_by_batch_id = Column(String(100), nullable=True)


class BankGoalTransactionDB(ReviewColumnsMixin, Base):
    """One bank statement row for a goal."""
    __tablename__ = "bank_goal_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    goal_id = Column(String(100), nullable=False, index=True)
    account_id = Column(String(100), nullable=False)
    source_transaction_id = Column(String(100), nullable=False, index=True)
    transaction_type = Column(String(20), nullable=False)
    transaction_date = Column(Date, nullable=False, index=True)
    total_amount = Column(Numeric(18, 2), nullable=False)

    xummf_amount = Column(Numeric(18, 2), nullable=True)
    xubf_amount = Column(Numeric(18, 2), nullable=True)
    xudef_amount = Column(Numeric(18, 2), nullable=True)
    xuref_amount = Column(Numeric(18, 2), nullable=True)

    # Match reference, stored as structured fields
    match_type = Column(String(30), nullable=True, index=True)
    match_group_keys = Column(JSON, nullable=True)
    match_created_by = Column(String(100), nullable=True)
    match_created_at = Column(DateTime(timezone=True), nullable=True)
    matched_at = Column(DateTime(timezone=True), nullable=True)
    match_score = Column(Integer, nullable=True)
    reconciliation_status = Column(String(30), nullable=False, default="PENDING", index=True)

    # Reversal pairing
    reversal_partner_id = Column(String(36), nullable=True, index=True)
    reversal_linked_by = Column(String(100), nullable=True)
    reversal_linked_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_bank_goal_txn_goal_date", "goal_id", "transaction_date"),
    )


class FundTransactionDB(ReviewColumnsMixin, Base):
    """One ledger posting against one instrument."""
    __tablename__ = "fund_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    goal_id = Column(String(100), nullable=False, index=True)
    account_id = Column(String(100), nullable=False)
    source_transaction_id = Column(String(100), nullable=False, index=True)
    channel = Column(String(50), nullable=False)
    instrument_code = Column(String(10), nullable=False)
    transaction_type = Column(String(20), nullable=False)
    transaction_date = Column(Date, nullable=False, index=True)
    amount = Column(Numeric(18, 2), nullable=False)
    units = Column(Numeric(18, 4), nullable=False, default=0)
    goal_transaction_code = Column(String(255), nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_fund_txn_goal_date", "goal_id", "transaction_date"),
    )
