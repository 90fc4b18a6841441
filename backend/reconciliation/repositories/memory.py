"""
In-Memory Reconciliation Repository

Dictionary-backed implementation of ReconciliationRepository. Records are
copied on the way in and on the way out, so callers only change stored
state through save_*.

atomic() snapshots both stores and restores them if the block raises.
"""

import copy
import logging
from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Optional, Sequence

from reconciliation.grouping_key import key_for_posting
from reconciliation.models import BankRecord, DateRange, LedgerPosting, ReviewTag
from reconciliation.repositories.base import ReconciliationRepository

logger = logging.getLogger(__name__)


def _in_range(value, date_range: Optional[DateRange]) -> bool:
    return date_range is None or date_range.contains(value)


def _newest_first(rows):
    # Date descending, id ascending
    rows = sorted(rows, key=lambda r: r.id)
    return sorted(rows, key=lambda r: r.transaction_date, reverse=True)


class InMemoryReconciliationRepository(ReconciliationRepository):
    """Repository holding records in process memory."""

    def __init__(
        self,
        bank_records: Optional[Iterable[BankRecord]] = None,
        ledger_postings: Optional[Iterable[LedgerPosting]] = None
    ):
        self._bank: Dict[str, BankRecord] = {}
        self._ledger: Dict[str, LedgerPosting] = {}
        self._atomic_depth = 0

        for record in bank_records or []:
            self._bank[record.id] = copy.deepcopy(record)
        for posting in ledger_postings or []:
            self._store_posting(posting)

    def _store_posting(self, posting: LedgerPosting):
        stored = copy.deepcopy(posting)
        stored.group_key = key_for_posting(stored)
        self._ledger[stored.id] = stored

    # ==================== Reads ====================

    async def list_bank_records(self, goal_id=None, date_range=None) -> List[BankRecord]:
        rows = [
            r for r in self._bank.values()
            if (goal_id is None or r.goal_id == goal_id) and _in_range(r.transaction_date, date_range)
        ]
        return copy.deepcopy(_newest_first(rows))

    async def list_ledger_postings(self, goal_id=None, date_range=None) -> List[LedgerPosting]:
        rows = [
            p for p in self._ledger.values()
            if (goal_id is None or p.goal_id == goal_id) and _in_range(p.transaction_date, date_range)
        ]
        return copy.deepcopy(_newest_first(rows))

    async def get_bank_records(self, record_ids: Iterable[str]) -> Dict[str, BankRecord]:
        return {
            record_id: copy.deepcopy(self._bank[record_id])
            for record_id in record_ids
            if record_id in self._bank
        }

    async def list_postings_by_group_keys(self, group_keys: Iterable[str]) -> List[LedgerPosting]:
        wanted = set(group_keys)
        rows = [p for p in self._ledger.values() if p.group_key in wanted]
        return copy.deepcopy(_newest_first(rows))

    async def list_manual_matches(self, goal_id: Optional[str] = None) -> List[BankRecord]:
        rows = [
            r for r in self._bank.values()
            if r.has_manual_match and (goal_id is None or r.goal_id == goal_id)
        ]
        return copy.deepcopy(sorted(rows, key=lambda r: r.id))

    async def list_goal_ids(self, date_range: Optional[DateRange] = None) -> List[str]:
        goals = {r.goal_id for r in self._bank.values() if _in_range(r.transaction_date, date_range)}
        goals.update(p.goal_id for p in self._ledger.values() if _in_range(p.transaction_date, date_range))
        return sorted(goals)

    def _tagged_bank(self, tags, resolved, date_range) -> List[BankRecord]:
        return sorted(
            (
                r for r in self._bank.values()
                if r.review.review_tag in tags
                and r.review.variance_resolved == resolved
                and _in_range(r.transaction_date, date_range)
            ),
            key=lambda r: r.id,
        )

    def _tagged_keys(self, tags, resolved, date_range) -> List[str]:
        return sorted({
            p.group_key for p in self._ledger.values()
            if p.review.review_tag in tags
            and p.review.variance_resolved == resolved
            and _in_range(p.transaction_date, date_range)
        })

    async def list_tagged_bank_records(
        self,
        tags: Sequence[ReviewTag],
        resolved: bool = False,
        date_range: Optional[DateRange] = None,
        after_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[BankRecord]:
        rows = self._tagged_bank(tags, resolved, date_range)
        if after_id is not None:
            rows = [r for r in rows if r.id > after_id]
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def count_tagged_bank_records(self, tags, resolved=False, date_range=None, after_id=None) -> int:
        rows = self._tagged_bank(tags, resolved, date_range)
        if after_id is not None:
            rows = [r for r in rows if r.id > after_id]
        return len(rows)

    async def list_tagged_group_keys(
        self,
        tags: Sequence[ReviewTag],
        resolved: bool = False,
        date_range: Optional[DateRange] = None,
        after_key: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[str]:
        keys = self._tagged_keys(tags, resolved, date_range)
        if after_key is not None:
            keys = [k for k in keys if k > after_key]
        if limit is not None:
            keys = keys[:limit]
        return keys

    async def count_tagged_group_keys(self, tags, resolved=False, date_range=None, after_key=None) -> int:
        keys = self._tagged_keys(tags, resolved, date_range)
        if after_key is not None:
            keys = [k for k in keys if k > after_key]
        return len(keys)

    # ==================== Writes ====================

    async def save_bank_records(self, records: Sequence[BankRecord]):
        for record in records:
            self._bank[record.id] = copy.deepcopy(record)

    async def save_ledger_postings(self, postings: Sequence[LedgerPosting]):
        for posting in postings:
            self._store_posting(posting)

    @asynccontextmanager
    async def atomic(self):
        if self._atomic_depth:
            self._atomic_depth += 1
            try:
                yield
            finally:
                self._atomic_depth -= 1
            return

        bank_snapshot = copy.deepcopy(self._bank)
        ledger_snapshot = copy.deepcopy(self._ledger)
        self._atomic_depth = 1
        try:
            yield
        except Exception:
            self._bank = bank_snapshot
            self._ledger = ledger_snapshot
            logger.warning("Rolled back in-memory reconciliation writes")
            raise
        finally:
            self._atomic_depth = 0
