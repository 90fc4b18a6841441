"""
SQL Reconciliation Repository

SQLAlchemy async implementation of ReconciliationRepository over the
bank_goal_transactions and fund_transactions tables.

Writes outside atomic() are committed immediately. Inside atomic() they
are flushed and committed once when the block exits, or rolled back if
it raises.
"""

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, func, distinct
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database.reconciliation_models import (
    BankGoalTransactionDB,
    FundTransactionDB,
    INSTRUMENT_COLUMNS,
)
from reconciliation.errors import PersistenceError
from reconciliation.grouping_key import key_for_posting
from reconciliation.models import (
    BankRecord,
    DateRange,
    InstrumentCode,
    LedgerPosting,
    MatchReference,
    MatchType,
    ReconciliationStatus,
    ReversalLink,
    ReviewState,
    ReviewTag,
    TransactionType,
)
from reconciliation.repositories.base import ReconciliationRepository

logger = logging.getLogger(__name__)


# ==================== Row mapping ====================

def _review_from_row(row) -> ReviewState:
    return ReviewState(
        review_tag=ReviewTag(row.review_tag) if row.review_tag else None,
        review_notes=row.review_notes,
        reviewed_by=row.reviewed_by,
        reviewed_at=row.reviewed_at,
        variance_resolved=bool(row.variance_resolved),
        resolved_at=row.resolved_at,
        resolved_reason=row.resolved_reason,
        resolved_by_batch_id=row.resolved_by_batch_id,
    )


def _apply_review(row, review: ReviewState):
    row.review_tag = review.review_tag.value if review.review_tag else None
    row.review_notes = review.review_notes
    row.reviewed_by = review.reviewed_by
    row.reviewed_at = review.reviewed_at
    row.variance_resolved = review.variance_resolved
    row.resolved_at = review.resolved_at
    row.resolved_reason = review.resolved_reason
    row.resolved_by_batch_id = review.resolved_by_batch_id


def bank_record_from_row(row: BankGoalTransactionDB) -> BankRecord:
    instrument_amounts = {}
    for code, column in INSTRUMENT_COLUMNS.items():
        value = getattr(row, column)
        if value is not None:
            instrument_amounts[InstrumentCode(code)] = Decimal(value)

    reference = None
    if row.match_type:
        reference = MatchReference(
            match_type=MatchType(row.match_type),
            group_keys=tuple(row.match_group_keys or ()),
            created_by=row.match_created_by or "system",
            created_at=row.match_created_at,
        )

    reversal = None
    if row.reversal_partner_id:
        reversal = ReversalLink(
            partner_id=row.reversal_partner_id,
            linked_by=row.reversal_linked_by or "system",
            linked_at=row.reversal_linked_at,
        )

    return BankRecord(
        id=row.id,
        goal_id=row.goal_id,
        account_id=row.account_id,
        source_transaction_id=row.source_transaction_id,
        transaction_type=TransactionType(row.transaction_type),
        transaction_date=row.transaction_date,
        total_amount=Decimal(row.total_amount),
        instrument_amounts=instrument_amounts,
        match_reference=reference,
        matched_at=row.matched_at,
        match_score=row.match_score,
        reconciliation_status=ReconciliationStatus(row.reconciliation_status or "PENDING"),
        review=_review_from_row(row),
        reversal_link=reversal,
    )


def apply_bank_record(row: BankGoalTransactionDB, record: BankRecord):
    row.id = record.id
    row.goal_id = record.goal_id
    row.account_id = record.account_id
    row.source_transaction_id = record.source_transaction_id
    row.transaction_type = record.transaction_type.value
    row.transaction_date = record.transaction_date
    row.total_amount = record.total_amount

    for code, column in INSTRUMENT_COLUMNS.items():
        setattr(row, column, record.instrument_amounts.get(InstrumentCode(code)))

    reference = record.match_reference
    row.match_type = reference.match_type.value if reference else None
    row.match_group_keys = list(reference.group_keys) if reference else None
    row.match_created_by = reference.created_by if reference else None
    row.match_created_at = reference.created_at if reference else None
    row.matched_at = record.matched_at
    row.match_score = record.match_score
    row.reconciliation_status = record.reconciliation_status.value

    link = record.reversal_link
    row.reversal_partner_id = link.partner_id if link else None
    row.reversal_linked_by = link.linked_by if link else None
    row.reversal_linked_at = link.linked_at if link else None

    _apply_review(row, record.review)


def ledger_posting_from_row(row: FundTransactionDB) -> LedgerPosting:
    return LedgerPosting(
        id=row.id,
        goal_id=row.goal_id,
        account_id=row.account_id,
        source_transaction_id=row.source_transaction_id,
        channel=row.channel,
        instrument_code=InstrumentCode(row.instrument_code),
        transaction_type=TransactionType(row.transaction_type),
        transaction_date=row.transaction_date,
        amount=Decimal(row.amount),
        units=Decimal(row.units or 0),
        group_key=row.goal_transaction_code,
        review=_review_from_row(row),
    )


def apply_ledger_posting(row: FundTransactionDB, posting: LedgerPosting):
    row.id = posting.id
    row.goal_id = posting.goal_id
    row.account_id = posting.account_id
    row.source_transaction_id = posting.source_transaction_id
    row.channel = posting.channel
    row.instrument_code = posting.instrument_code.value
    row.transaction_type = posting.transaction_type.value
    row.transaction_date = posting.transaction_date
    row.amount = posting.amount
    row.units = posting.units
    row.goal_transaction_code = key_for_posting(posting)
    _apply_review(row, posting.review)


# ==================== Repository ====================

class SqlReconciliationRepository(ReconciliationRepository):
    """Repository backed by an AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self._atomic_depth = 0

    async def _scalars(self, query) -> list:
        try:
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Reconciliation query failed: {e}")
            raise PersistenceError(f"Query failed: {e}") from e

    async def _scalar(self, query):
        try:
            result = await self.session.execute(query)
            return result.scalar()
        except SQLAlchemyError as e:
            logger.error(f"Reconciliation query failed: {e}")
            raise PersistenceError(f"Query failed: {e}") from e

    @staticmethod
    def _filter(query, model, goal_id: Optional[str], date_range: Optional[DateRange]):
        if goal_id is not None:
            query = query.where(model.goal_id == goal_id)
        if date_range is not None:
            query = query.where(
                model.transaction_date >= date_range.start,
                model.transaction_date <= date_range.end,
            )
        return query

    # ==================== Reads ====================

    async def list_bank_records(self, goal_id=None, date_range=None) -> List[BankRecord]:
        query = self._filter(select(BankGoalTransactionDB), BankGoalTransactionDB, goal_id, date_range)
        query = query.order_by(BankGoalTransactionDB.transaction_date.desc(), BankGoalTransactionDB.id)
        return [bank_record_from_row(row) for row in await self._scalars(query)]

    async def list_ledger_postings(self, goal_id=None, date_range=None) -> List[LedgerPosting]:
        query = self._filter(select(FundTransactionDB), FundTransactionDB, goal_id, date_range)
        query = query.order_by(FundTransactionDB.transaction_date.desc(), FundTransactionDB.id)
        return [ledger_posting_from_row(row) for row in await self._scalars(query)]

    async def get_bank_records(self, record_ids: Iterable[str]) -> Dict[str, BankRecord]:
        ids = list(record_ids)
        if not ids:
            return {}
        query = select(BankGoalTransactionDB).where(BankGoalTransactionDB.id.in_(ids))
        return {row.id: bank_record_from_row(row) for row in await self._scalars(query)}

    async def list_postings_by_group_keys(self, group_keys: Iterable[str]) -> List[LedgerPosting]:
        keys = list(group_keys)
        if not keys:
            return []
        query = (
            select(FundTransactionDB)
            .where(FundTransactionDB.goal_transaction_code.in_(keys))
            .order_by(FundTransactionDB.transaction_date.desc(), FundTransactionDB.id)
        )
        return [ledger_posting_from_row(row) for row in await self._scalars(query)]

    async def list_manual_matches(self, goal_id: Optional[str] = None) -> List[BankRecord]:
        query = select(BankGoalTransactionDB).where(BankGoalTransactionDB.match_type == MatchType.MANUAL.value)
        query = self._filter(query, BankGoalTransactionDB, goal_id, None).order_by(BankGoalTransactionDB.id)
        return [bank_record_from_row(row) for row in await self._scalars(query)]

    async def list_goal_ids(self, date_range: Optional[DateRange] = None) -> List[str]:
        bank_query = self._filter(
            select(distinct(BankGoalTransactionDB.goal_id)), BankGoalTransactionDB, None, date_range
        )
        ledger_query = self._filter(
            select(distinct(FundTransactionDB.goal_id)), FundTransactionDB, None, date_range
        )
        goals = set(await self._scalars(bank_query))
        goals.update(await self._scalars(ledger_query))
        return sorted(goals)

    @staticmethod
    def _tag_filter(query, model, tags, resolved, date_range):
        query = query.where(
            model.review_tag.in_([t.value for t in tags]),
            model.variance_resolved == resolved,
        )
        if date_range is not None:
            query = query.where(
                model.transaction_date >= date_range.start,
                model.transaction_date <= date_range.end,
            )
        return query

    async def list_tagged_bank_records(
        self,
        tags: Sequence[ReviewTag],
        resolved: bool = False,
        date_range: Optional[DateRange] = None,
        after_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[BankRecord]:
        model = BankGoalTransactionDB
        query = self._tag_filter(select(model), model, tags, resolved, date_range)
        if after_id is not None:
            query = query.where(model.id > after_id)
        query = query.order_by(model.id)
        if limit is not None:
            query = query.limit(limit)
        return [bank_record_from_row(row) for row in await self._scalars(query)]

    async def count_tagged_bank_records(self, tags, resolved=False, date_range=None, after_id=None) -> int:
        model = BankGoalTransactionDB
        query = self._tag_filter(select(func.count(model.id)), model, tags, resolved, date_range)
        if after_id is not None:
            query = query.where(model.id > after_id)
        return int(await self._scalar(query) or 0)

    async def list_tagged_group_keys(
        self,
        tags: Sequence[ReviewTag],
        resolved: bool = False,
        date_range: Optional[DateRange] = None,
        after_key: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[str]:
        model = FundTransactionDB
        query = self._tag_filter(select(distinct(model.goal_transaction_code)), model, tags, resolved, date_range)
        if after_key is not None:
            query = query.where(model.goal_transaction_code > after_key)
        query = query.order_by(model.goal_transaction_code)
        if limit is not None:
            query = query.limit(limit)
        return list(await self._scalars(query))

    async def count_tagged_group_keys(self, tags, resolved=False, date_range=None, after_key=None) -> int:
        model = FundTransactionDB
        query = self._tag_filter(
            select(func.count(distinct(model.goal_transaction_code))), model, tags, resolved, date_range
        )
        if after_key is not None:
            query = query.where(model.goal_transaction_code > after_key)
        return int(await self._scalar(query) or 0)

    # ==================== Writes ====================

    async def _commit_unless_atomic(self):
        if self._atomic_depth:
            await self.session.flush()
        else:
            await self.session.commit()

    async def save_bank_records(self, records: Sequence[BankRecord]):
        try:
            for record in records:
                row = await self.session.get(BankGoalTransactionDB, record.id)
                if row is None:
                    row = BankGoalTransactionDB()
                    self.session.add(row)
                apply_bank_record(row, record)
            await self._commit_unless_atomic()
        except SQLAlchemyError as e:
            if not self._atomic_depth:
                await self.session.rollback()
            logger.error(f"Failed to save bank records: {e}")
            raise PersistenceError(f"Failed to save bank records: {e}") from e

    async def save_ledger_postings(self, postings: Sequence[LedgerPosting]):
        try:
            for posting in postings:
                row = await self.session.get(FundTransactionDB, posting.id)
                if row is None:
                    row = FundTransactionDB()
                    self.session.add(row)
                apply_ledger_posting(row, posting)
            await self._commit_unless_atomic()
        except SQLAlchemyError as e:
            if not self._atomic_depth:
                await self.session.rollback()
            logger.error(f"Failed to save ledger postings: {e}")
            raise PersistenceError(f"Failed to save ledger postings: {e}") from e

    @asynccontextmanager
    async def atomic(self):
        if self._atomic_depth:
            self._atomic_depth += 1
            try:
                yield
            finally:
                self._atomic_depth -= 1
            return

        self._atomic_depth = 1
        try:
            yield
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(f"Transaction failed: {e}")
            raise PersistenceError(f"Transaction failed: {e}") from e
        except Exception:
            await self.session.rollback()
            raise
        finally:
            self._atomic_depth = 0
