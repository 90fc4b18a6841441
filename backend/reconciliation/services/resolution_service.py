"""
Variance Resolution Service

Periodic sweep over records an operator tagged as a variance, clearing
the tags whose counterpart has since appeared.

Auto-resolvable tags:
- MISSING_IN_LEDGER (bank records): a ledger group with the same source id,
  type and amount now exists, or failing that one with the same type and
  amount within +/- sweep_window_days
- MISSING_IN_BANK (ledger groups): the same, against bank records
- TIMING_DIFFERENCE (either side): a counterpart with the same source id
  and type, amount within tolerance, dated within +/- timing_window_days

Tolerance is scaled to the tagged record's amount.

Resolution is monotonic: resolved records are never revisited or reverted.
The sweep is chunked; pass the returned cursors back in to continue.
"""

import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Any, List, Optional

from reconciliation.errors import ValidationError
from reconciliation.grouping_key import build_group, group_by_code
from reconciliation.models import (
    AUTO_RESOLVABLE_TAGS,
    BankRecord,
    DateRange,
    GoalTransactionGroup,
    LedgerPosting,
    RecordError,
    RecordSource,
    ReviewTag,
)
from reconciliation.repositories.base import ReconciliationRepository
from reconciliation.services.audit import ReconciliationAuditEvent, log_reconciliation_event
from reconciliation.tolerance import TolerancePolicy, get_tolerance_policy

logger = logging.getLogger(__name__)

BANK_SIDE_TAGS = (ReviewTag.MISSING_IN_LEDGER, ReviewTag.TIMING_DIFFERENCE)
LEDGER_SIDE_TAGS = (ReviewTag.MISSING_IN_BANK, ReviewTag.TIMING_DIFFERENCE)

DEFAULT_SWEEP_BATCH_SIZE = 2000


@dataclass
class ResolvedVariance:
    """One tagged record the sweep resolved."""
    record_id: str
    source: RecordSource
    goal_id: str
    source_transaction_id: str
    amount: Decimal
    original_tag: ReviewTag
    resolved_reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "source": self.source.value,
            "goal_id": self.goal_id,
            "source_transaction_id": self.source_transaction_id,
            "amount": str(self.amount),
            "original_tag": self.original_tag.value,
            "resolved_reason": self.resolved_reason,
        }


@dataclass
class SweepResult:
    """Outcome of one chunk of the resolution sweep."""
    batch_id: str
    resolved_count: int = 0
    by_tag: Dict[str, int] = field(default_factory=dict)
    details: List[ResolvedVariance] = field(default_factory=list)
    processed: int = 0
    failed: int = 0
    remaining: int = 0
    has_more: bool = False
    bank_cursor: Optional[str] = None
    group_cursor: Optional[str] = None
    errors: List[RecordError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "resolved_count": self.resolved_count,
            "by_tag": self.by_tag,
            "details": [d.to_dict() for d in self.details],
            "processed": self.processed,
            "failed": self.failed,
            "remaining": self.remaining,
            "has_more": self.has_more,
            "bank_cursor": self.bank_cursor,
            "group_cursor": self.group_cursor,
            "errors": [e.to_dict() for e in self.errors],
        }


class _GoalContext:
    """Counterpart candidates for one goal, loaded once per sweep chunk."""

    def __init__(self, bank_records: List[BankRecord], groups: List[GoalTransactionGroup]):
        self.bank_records = bank_records
        self.groups = groups


class VarianceResolutionService:
    """Runs the resolution sweep and reports on resolved variances."""

    def __init__(self, repository: ReconciliationRepository, policy: Optional[TolerancePolicy] = None):
        self.repository = repository
        self.policy = policy or get_tolerance_policy()

    @property
    def config(self):
        return self.policy.config

    async def run_resolution_sweep(
        self,
        date_range: Optional[DateRange] = None,
        batch_size: int = DEFAULT_SWEEP_BATCH_SIZE,
        bank_cursor: Optional[str] = None,
        group_cursor: Optional[str] = None,
        batch_id: Optional[str] = None,
        actor: str = "system"
    ) -> SweepResult:
        """
        Resolve one chunk of tagged records.

        Bank records are visited first, then ledger groups, each in id/key
        order after the given cursor.

        Args:
            date_range: Only consider tagged records dated inside this range
            batch_size: Maximum records (bank records + groups) per chunk
            bank_cursor: Last bank record id visited by the previous chunk
            group_cursor: Last grouping key visited by the previous chunk
            batch_id: Identifier stamped on resolved records
            actor: Who triggered the sweep

        Returns:
            SweepResult with counts, details and cursors for the next chunk
        """
        result = SweepResult(
            batch_id=batch_id or f"sweep-{uuid.uuid4()}",
            bank_cursor=bank_cursor,
            group_cursor=group_cursor,
        )
        contexts: Dict[str, _GoalContext] = {}
        by_tag = Counter()

        bank_records = await self.repository.list_tagged_bank_records(
            BANK_SIDE_TAGS, resolved=False, date_range=date_range, after_id=bank_cursor, limit=batch_size
        )
        for record in bank_records:
            result.processed += 1
            result.bank_cursor = record.id
            try:
                context = await self._context(record.goal_id, contexts)
                reason = self._resolve_bank_record(record, context)
                if reason is None:
                    continue
                tag = record.review.review_tag
                self._mark_resolved(record.review, reason, result.batch_id)
                await self.repository.save_bank_records([record])
            except Exception as e:
                logger.error(f"Failed to resolve bank record {record.id}: {e}", exc_info=True)
                result.failed += 1
                result.errors.append(RecordError(record.id, str(e), type(e).__name__))
                continue

            by_tag[tag.value] += 1
            result.details.append(ResolvedVariance(
                record_id=record.id,
                source=RecordSource.BANK,
                goal_id=record.goal_id,
                source_transaction_id=record.source_transaction_id,
                amount=record.total_amount,
                original_tag=tag,
                resolved_reason=reason,
            ))

        capacity = batch_size - len(bank_records)
        group_keys = []
        if capacity > 0:
            group_keys = await self.repository.list_tagged_group_keys(
                LEDGER_SIDE_TAGS, resolved=False, date_range=date_range, after_key=group_cursor, limit=capacity
            )

        for group_key in group_keys:
            result.processed += 1
            result.group_cursor = group_key
            try:
                resolved = await self._resolve_group(group_key, contexts, result.batch_id)
            except Exception as e:
                logger.error(f"Failed to resolve ledger group {group_key}: {e}", exc_info=True)
                result.failed += 1
                result.errors.append(RecordError(group_key, str(e), type(e).__name__))
                continue

            if resolved is not None:
                by_tag[resolved.original_tag.value] += 1
                result.details.append(resolved)

        remaining_bank = await self.repository.count_tagged_bank_records(
            BANK_SIDE_TAGS, resolved=False, date_range=date_range, after_id=result.bank_cursor
        )
        remaining_groups = await self.repository.count_tagged_group_keys(
            LEDGER_SIDE_TAGS, resolved=False, date_range=date_range, after_key=result.group_cursor
        )
        result.remaining = remaining_bank + remaining_groups
        result.has_more = result.remaining > 0
        result.resolved_count = len(result.details)
        result.by_tag = dict(by_tag)

        log_reconciliation_event(
            ReconciliationAuditEvent.SWEEP_COMPLETED,
            None,
            {
                "batch_id": result.batch_id,
                "resolved": result.resolved_count,
                "processed": result.processed,
                "failed": result.failed,
                "remaining": result.remaining,
            },
            actor=actor
        )
        return result

    # ==================== Matching a tagged record ====================

    async def _context(self, goal_id: str, contexts: Dict[str, _GoalContext]) -> _GoalContext:
        context = contexts.get(goal_id)
        if context is None:
            excluded = set(self.config.excluded_channels)
            postings = [
                p for p in await self.repository.list_ledger_postings(goal_id)
                if p.channel not in excluded
            ]
            groups = []
            for key, members in group_by_code(postings).items():
                try:
                    groups.append(build_group(key, members))
                except ValidationError as e:
                    logger.warning(f"Ignoring inconsistent ledger group {key}: {e.message}")
            context = _GoalContext(await self.repository.list_bank_records(goal_id), groups)
            contexts[goal_id] = context
        return context

    def _within(self, candidate: Decimal, tagged: Decimal) -> bool:
        return self.policy.amounts_match(candidate, tagged)

    def _resolve_bank_record(self, record: BankRecord, context: _GoalContext) -> Optional[str]:
        tag = record.review.review_tag
        same_type = [g for g in context.groups if g.transaction_type == record.transaction_type]

        if tag == ReviewTag.MISSING_IN_LEDGER:
            for group in same_type:
                if (
                    group.source_transaction_id == record.source_transaction_id
                    and self._within(group.total_amount, record.total_amount)
                ):
                    return f"Matching ledger transaction found: {group.group_key}"
            for group in same_type:
                days = abs((group.transaction_date - record.transaction_date).days)
                if days <= self.config.sweep_window_days and self._within(group.total_amount, record.total_amount):
                    return f"Matching ledger transaction found: {group.group_key}"

        elif tag == ReviewTag.TIMING_DIFFERENCE:
            for group in same_type:
                days = abs((group.transaction_date - record.transaction_date).days)
                if (
                    group.source_transaction_id == record.source_transaction_id
                    and days <= self.config.timing_window_days
                    and self._within(group.total_amount, record.total_amount)
                ):
                    return (
                        f"Date now within tolerance. Bank: {record.transaction_date.isoformat()}, "
                        f"Ledger: {group.transaction_date.isoformat()}"
                    )

        return None

    def _resolve_group_against_bank(self, group: GoalTransactionGroup, tag: ReviewTag, context: _GoalContext) -> Optional[str]:
        same_type = [r for r in context.bank_records if r.transaction_type == group.transaction_type]

        if tag == ReviewTag.MISSING_IN_BANK:
            for record in same_type:
                if (
                    record.source_transaction_id == group.source_transaction_id
                    and self._within(record.total_amount, group.total_amount)
                ):
                    return f"Matching bank transaction found: {record.source_transaction_id}"
            for record in same_type:
                days = abs((record.transaction_date - group.transaction_date).days)
                if days <= self.config.sweep_window_days and self._within(record.total_amount, group.total_amount):
                    return f"Matching bank transaction found: {record.source_transaction_id}"

        elif tag == ReviewTag.TIMING_DIFFERENCE:
            for record in same_type:
                days = abs((record.transaction_date - group.transaction_date).days)
                if (
                    record.source_transaction_id == group.source_transaction_id
                    and days <= self.config.timing_window_days
                    and self._within(record.total_amount, group.total_amount)
                ):
                    return (
                        f"Date now within tolerance. Ledger: {group.transaction_date.isoformat()}, "
                        f"Bank: {record.transaction_date.isoformat()}"
                    )

        return None

    async def _resolve_group(
        self,
        group_key: str,
        contexts: Dict[str, _GoalContext],
        batch_id: str
    ) -> Optional[ResolvedVariance]:
        postings = await self.repository.list_postings_by_group_keys([group_key])
        tagged = [
            p for p in postings
            if p.review.review_tag in LEDGER_SIDE_TAGS and not p.review.variance_resolved
        ]
        if not tagged:
            return None

        group = build_group(group_key, postings)
        tag = tagged[0].review.review_tag
        context = await self._context(group.goal_id, contexts)
        reason = self._resolve_group_against_bank(group, tag, context)
        if reason is None:
            return None

        for posting in tagged:
            self._mark_resolved(posting.review, reason, batch_id)
        async with self.repository.atomic():
            await self.repository.save_ledger_postings(tagged)

        return ResolvedVariance(
            record_id=group_key,
            source=RecordSource.LEDGER,
            goal_id=group.goal_id,
            source_transaction_id=group.source_transaction_id,
            amount=group.total_amount,
            original_tag=tag,
            resolved_reason=reason,
        )

    @staticmethod
    def _mark_resolved(review, reason: str, batch_id: str):
        review.variance_resolved = True
        review.resolved_at = datetime.now(timezone.utc)
        review.resolved_reason = reason
        review.resolved_by_batch_id = batch_id

    # ==================== Reporting ====================

    async def get_resolution_stats(self, date_range: Optional[DateRange] = None) -> Dict[str, Any]:
        """Total, resolved and pending counts per auto-resolvable tag."""
        by_tag = {}
        totals = Counter()
        for tag in AUTO_RESOLVABLE_TAGS:
            resolved = (
                await self.repository.count_tagged_bank_records([tag], resolved=True, date_range=date_range)
                + await self.repository.count_tagged_group_keys([tag], resolved=True, date_range=date_range)
            )
            pending = (
                await self.repository.count_tagged_bank_records([tag], resolved=False, date_range=date_range)
                + await self.repository.count_tagged_group_keys([tag], resolved=False, date_range=date_range)
            )
            by_tag[tag.value] = {"total": resolved + pending, "resolved": resolved, "pending": pending}
            totals.update(total=resolved + pending, resolved=resolved, pending=pending)

        return {
            "total_tagged": totals["total"],
            "resolved": totals["resolved"],
            "pending": totals["pending"],
            "by_tag": by_tag,
        }

    async def get_resolved_report(
        self,
        date_range: Optional[DateRange] = None,
        goal_id: Optional[str] = None,
        original_tag: Optional[ReviewTag] = None
    ) -> List[Dict[str, Any]]:
        """Resolved records with the reason and batch that resolved them."""
        tags = [original_tag] if original_tag else list(AUTO_RESOLVABLE_TAGS)
        rows = []

        for record in await self.repository.list_tagged_bank_records(tags, resolved=True, date_range=date_range):
            if goal_id and record.goal_id != goal_id:
                continue
            rows.append(self._report_row(
                record.id, RecordSource.BANK, record.goal_id, record.source_transaction_id,
                record.transaction_date, record.total_amount, record.review,
            ))

        keys = await self.repository.list_tagged_group_keys(tags, resolved=True, date_range=date_range)
        postings_by_key: Dict[str, List[LedgerPosting]] = group_by_code(
            await self.repository.list_postings_by_group_keys(keys)
        )
        for key in keys:
            postings = postings_by_key.get(key, [])
            resolved = [p for p in postings if p.review.variance_resolved and p.review.review_tag in tags]
            if not resolved or (goal_id and resolved[0].goal_id != goal_id):
                continue
            first = resolved[0]
            rows.append(self._report_row(
                key, RecordSource.LEDGER, first.goal_id, first.source_transaction_id,
                first.transaction_date, sum((p.amount for p in postings), Decimal("0")), first.review,
            ))

        rows.sort(key=lambda row: row["resolved_at"] or "", reverse=True)
        return rows

    @staticmethod
    def _report_row(record_id, source, goal_id, source_transaction_id, transaction_date, amount, review) -> Dict[str, Any]:
        return {
            "record_id": record_id,
            "source": source.value,
            "goal_id": goal_id,
            "source_transaction_id": source_transaction_id,
            "transaction_date": transaction_date.isoformat(),
            "amount": str(amount),
            "original_tag": review.review_tag.value if review.review_tag else None,
            "resolved_at": review.resolved_at.isoformat() if review.resolved_at else None,
            "resolved_reason": review.resolved_reason,
            "resolved_by_batch_id": review.resolved_by_batch_id,
        }
