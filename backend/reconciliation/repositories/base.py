"""
Reconciliation Repository Interface

Storage contract used by the reconciliation services. The engine never
talks to a database directly; it is handed an implementation of this
interface.

Ordering guarantees:
- list_bank_records / list_ledger_postings: transaction date descending, then id
- tagged record listings: id (or group key) ascending, for cursor paging
"""

from abc import ABC, abstractmethod
from typing import AsyncContextManager, Dict, Iterable, List, Optional, Sequence

from reconciliation.models import BankRecord, DateRange, LedgerPosting, ReviewTag


class ReconciliationRepository(ABC):
    """Async storage for bank records and ledger postings."""

    # ==================== Reads ====================

    @abstractmethod
    async def list_bank_records(
        self,
        goal_id: Optional[str] = None,
        date_range: Optional[DateRange] = None
    ) -> List[BankRecord]:
        """Bank records for a goal (or all goals) inside a date range."""

    @abstractmethod
    async def list_ledger_postings(
        self,
        goal_id: Optional[str] = None,
        date_range: Optional[DateRange] = None
    ) -> List[LedgerPosting]:
        """Ledger postings for a goal (or all goals) inside a date range."""

    @abstractmethod
    async def get_bank_records(self, record_ids: Iterable[str]) -> Dict[str, BankRecord]:
        """Bank records by id. Unknown ids are absent from the result."""

    async def get_bank_record(self, record_id: str) -> Optional[BankRecord]:
        return (await self.get_bank_records([record_id])).get(record_id)

    @abstractmethod
    async def list_postings_by_group_keys(self, group_keys: Iterable[str]) -> List[LedgerPosting]:
        """Every posting whose grouping key is in group_keys."""

    @abstractmethod
    async def list_manual_matches(self, goal_id: Optional[str] = None) -> List[BankRecord]:
        """Bank records holding a MANUAL match reference."""

    async def find_bank_records_by_group_key(self, group_key: str) -> List[BankRecord]:
        """Bank records whose MANUAL reference names group_key."""
        return [
            record for record in await self.list_manual_matches()
            if record.match_reference.references(group_key)
        ]

    @abstractmethod
    async def list_goal_ids(self, date_range: Optional[DateRange] = None) -> List[str]:
        """Distinct goal ids with bank or ledger activity, sorted."""

    @abstractmethod
    async def list_tagged_bank_records(
        self,
        tags: Sequence[ReviewTag],
        resolved: bool = False,
        date_range: Optional[DateRange] = None,
        after_id: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[BankRecord]:
        """Bank records carrying one of tags, paged by id."""

    @abstractmethod
    async def count_tagged_bank_records(
        self,
        tags: Sequence[ReviewTag],
        resolved: bool = False,
        date_range: Optional[DateRange] = None,
        after_id: Optional[str] = None
    ) -> int:
        pass

    @abstractmethod
    async def list_tagged_group_keys(
        self,
        tags: Sequence[ReviewTag],
        resolved: bool = False,
        date_range: Optional[DateRange] = None,
        after_key: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[str]:
        """Distinct grouping keys of postings carrying one of tags, paged by key."""

    @abstractmethod
    async def count_tagged_group_keys(
        self,
        tags: Sequence[ReviewTag],
        resolved: bool = False,
        date_range: Optional[DateRange] = None,
        after_key: Optional[str] = None
    ) -> int:
        pass

    # ==================== Writes ====================

    @abstractmethod
    async def save_bank_records(self, records: Sequence[BankRecord]):
        """Upsert bank records by id."""

    @abstractmethod
    async def save_ledger_postings(self, postings: Sequence[LedgerPosting]):
        """Upsert ledger postings by id."""

    @abstractmethod
    def atomic(self) -> AsyncContextManager[None]:
        """
        All-or-nothing scope for multi-record writes.

        Usage:
            async with repository.atomic():
                await repository.save_bank_records([...])
        """
