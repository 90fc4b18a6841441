"""
Reconciliation Service

Orchestrates reconciliation for client goals:
- Matching one goal's bank records against its ledger groups
- Classifying variances and resolving a status per match
- Persisting algorithmic matches (idempotent on re-run)
- Chunked batch re-matching across goals
- Operator review tagging (single and bulk)
- Audit logging

Runs for the same goal are serialized; different goals may run in parallel.
"""

import asyncio
import logging
import uuid
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Sequence, Tuple

from config import get_settings
from reconciliation.errors import NotFoundError, PersistenceError, ValidationError
from reconciliation.grouping_key import build_group, group_by_code
from reconciliation.matching_rules.goal_rules import GoalMatchingRules, reference_for
from reconciliation.matching_rules.variance_rules import StatusResolver, VarianceClassifier
from reconciliation.models import (
    BankRecord,
    DateRange,
    DetectedVariance,
    GoalTransactionGroup,
    MatchResult,
    MatchType,
    ReconciliationStatus,
    RecordError,
    RecordSource,
    ReviewState,
    ReviewTag,
)
from reconciliation.repositories.base import ReconciliationRepository
from reconciliation.services.audit import ReconciliationAuditEvent, log_reconciliation_event
from reconciliation.tolerance import ToleranceConfig, TolerancePolicy, get_tolerance_policy
from reconciliation.validation import validate_bank_record, validate_ledger_posting
from sentry_integration import capture_exception

logger = logging.getLogger(__name__)

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== Results ====================

@dataclass
class ReconciledMatch:
    """A match with its variances and resolved status."""
    match: MatchResult
    variances: List[DetectedVariance]
    status: ReconciliationStatus
    auto_approved: bool
    score: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.match.to_dict(),
            "variances": [v.to_dict() for v in self.variances],
            "status": self.status.value,
            "auto_approved": self.auto_approved,
            "score": self.score,
        }


@dataclass
class UnmatchedRecord:
    """A bank record or ledger group nothing matched."""
    record_id: str
    source: RecordSource
    status: ReconciliationStatus
    variance: DetectedVariance

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "source": self.source.value,
            "status": self.status.value,
            "variance": self.variance.to_dict(),
        }


@dataclass
class MatchGoalResult:
    """Result of one matching run for one goal."""
    run_id: str
    goal_id: str
    date_range: DateRange
    matches: List[ReconciledMatch] = field(default_factory=list)
    unmatched_bank: List[UnmatchedRecord] = field(default_factory=list)
    unmatched_groups: List[UnmatchedRecord] = field(default_factory=list)
    reversal_pairs: List[Tuple[str, str]] = field(default_factory=list)
    errors: List[RecordError] = field(default_factory=list)
    persisted: int = 0

    def summary(self) -> Dict[str, Any]:
        """Counts by status, severity and match type."""
        by_status = Counter(m.status.value for m in self.matches)
        by_status.update(u.status.value for u in self.unmatched_bank)
        by_status.update(u.status.value for u in self.unmatched_groups)

        by_severity = Counter(v.severity.value for m in self.matches for v in m.variances)
        by_severity.update(u.variance.severity.value for u in self.unmatched_bank)
        by_severity.update(u.variance.severity.value for u in self.unmatched_groups)

        return {
            "matched": len(self.matches),
            "unmatched_bank": len(self.unmatched_bank),
            "unmatched_groups": len(self.unmatched_groups),
            "auto_approved": sum(1 for m in self.matches if m.auto_approved),
            "manual_review": by_status.get(ReconciliationStatus.MANUAL_REVIEW.value, 0),
            "by_status": dict(by_status),
            "by_severity": dict(by_severity),
            "by_match_type": dict(Counter(m.match.match_type.value for m in self.matches)),
            "errors": len(self.errors),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "goal_id": self.goal_id,
            "date_range": self.date_range.to_dict(),
            "summary": self.summary(),
            "matches": [m.to_dict() for m in self.matches],
            "unmatched_bank": [u.to_dict() for u in self.unmatched_bank],
            "unmatched_groups": [u.to_dict() for u in self.unmatched_groups],
            "reversal_pairs": [list(pair) for pair in self.reversal_pairs],
            "errors": [e.to_dict() for e in self.errors],
            "persisted": self.persisted,
        }


@dataclass
class BatchMatchingResult:
    """Result of one chunk of goal-level re-matching."""
    total_goals: int
    processed_goals: int
    failed_goals: int
    offset: int
    next_offset: Optional[int]
    has_more: bool
    matched: int = 0
    unmatched_bank: int = 0
    unmatched_groups: int = 0
    auto_approved: int = 0
    manual_review: int = 0
    by_match_type: Dict[str, int] = field(default_factory=dict)
    errors: List[RecordError] = field(default_factory=list)

    @property
    def remaining_goals(self) -> int:
        return max(0, self.total_goals - self.offset - self.processed_goals - self.failed_goals)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_goals": self.total_goals,
            "processed_goals": self.processed_goals,
            "failed_goals": self.failed_goals,
            "remaining_goals": self.remaining_goals,
            "offset": self.offset,
            "next_offset": self.next_offset,
            "has_more": self.has_more,
            "matched": self.matched,
            "unmatched_bank": self.unmatched_bank,
            "unmatched_groups": self.unmatched_groups,
            "auto_approved": self.auto_approved,
            "manual_review": self.manual_review,
            "by_match_type": self.by_match_type,
            "errors": [e.to_dict() for e in self.errors],
        }


# ==================== Per-goal serialization ====================

class GoalLockRegistry:
    """
    One asyncio.Lock per goal id while the goal has a run active or waiting.

    A goal's entry is dropped when its last holder releases it.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, goal_id: str):
        lock = self._locks.get(goal_id)
        if lock is None:
            lock = self._locks[goal_id] = asyncio.Lock()
        self._holders[goal_id] = self._holders.get(goal_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[goal_id] -= 1
            if not self._holders[goal_id]:
                del self._holders[goal_id]
                del self._locks[goal_id]

    def is_running(self, goal_id: str) -> bool:
        lock = self._locks.get(goal_id)
        return lock is not None and lock.locked()


# Shared across service instances in one process
goal_locks = GoalLockRegistry()


# ==================== Service ====================

class ReconciliationService:
    """
    Matches bank records to ledger groups per goal and persists the result.

    The repository is injected; the service holds no storage state.
    """

    def __init__(
        self,
        repository: ReconciliationRepository,
        policy: Optional[TolerancePolicy] = None,
        locks: Optional[GoalLockRegistry] = None
    ):
        self.repository = repository
        self.policy = policy or get_tolerance_policy()
        self.locks = locks if locks is not None else goal_locks
        self.resolver = StatusResolver()

    async def match_goal(
        self,
        goal_id: str,
        date_range: DateRange,
        tolerance: Optional[ToleranceConfig] = None,
        persist: bool = True,
        actor: str = "system"
    ) -> MatchGoalResult:
        """
        Run the matcher for one goal and persist algorithmic matches.

        Args:
            goal_id: Goal to reconcile
            date_range: Inclusive range of transaction dates to load
            tolerance: Override for the process-wide tolerance config
            persist: Write match annotations back to bank records
            actor: Who triggered the run

        Returns:
            MatchGoalResult with matches, unmatched records and per-record errors
        """
        async with self.locks.hold(goal_id):
            return await self._match_goal(goal_id, date_range, tolerance, persist, actor)

    async def _match_goal(
        self,
        goal_id: str,
        date_range: DateRange,
        tolerance: Optional[ToleranceConfig],
        persist: bool,
        actor: str
    ) -> MatchGoalResult:
        policy = TolerancePolicy(tolerance) if tolerance else self.policy
        result = MatchGoalResult(run_id=str(uuid.uuid4()), goal_id=goal_id, date_range=date_range)

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_STARTED,
            goal_id,
            {"run_id": result.run_id, "date_range": date_range.to_dict(), "persist": persist},
            actor=actor
        )

        bank_records = await self._load_bank_records(goal_id, date_range, result)
        groups = await self._load_groups(goal_id, date_range, policy, result)

        loaded_ids = {r.id for r in bank_records}
        reserved_keys = set()
        for record in await self.repository.list_manual_matches(goal_id):
            if record.id not in loaded_ids:
                reserved_keys.update(record.match_reference.group_keys)

        outcome = GoalMatchingRules(policy).match(bank_records, groups, reserved_keys)

        classifier = VarianceClassifier(policy)
        bank_by_id = {r.id: r for r in bank_records}
        groups_by_key = {g.group_key: g for g in groups}

        for match in outcome.matches:
            variances = classifier.classify(
                [bank_by_id[i] for i in match.bank_ids],
                [groups_by_key[k] for k in match.group_keys if k in groups_by_key],
            )
            decision = self.resolver.resolve(variances)
            result.matches.append(ReconciledMatch(
                match=match,
                variances=variances,
                status=decision.status,
                auto_approved=decision.auto_approved,
                score=policy.match_score(variances),
            ))

        for record_id in outcome.unmatched_bank_ids:
            result.unmatched_bank.append(UnmatchedRecord(
                record_id=record_id,
                source=RecordSource.BANK,
                status=self.resolver.missing_in_ledger().status,
                variance=classifier.missing_in_ledger(bank_by_id[record_id]),
            ))

        for group_key in outcome.unmatched_group_keys:
            result.unmatched_groups.append(UnmatchedRecord(
                record_id=group_key,
                source=RecordSource.LEDGER,
                status=self.resolver.missing_in_bank().status,
                variance=classifier.missing_in_bank(groups_by_key[group_key]),
            ))

        if persist:
            await self._persist(result, bank_by_id)

        log_reconciliation_event(
            ReconciliationAuditEvent.RUN_COMPLETED,
            goal_id,
            {"run_id": result.run_id, **result.summary(), "persisted": result.persisted},
            actor=actor
        )
        return result

    async def _load_bank_records(
        self,
        goal_id: str,
        date_range: DateRange,
        result: MatchGoalResult
    ) -> List[BankRecord]:
        valid = []
        pairs = set()
        for record in await self.repository.list_bank_records(goal_id, date_range):
            try:
                validate_bank_record(record, goal_id)
            except ValidationError as e:
                logger.warning(f"Skipping bank record {record.id}: {e.message}")
                result.errors.append(RecordError(record.id, e.message, "validation"))
                continue

            # Reversal pairs net to zero and have no ledger counterpart
            if record.reversal_link is not None:
                pairs.add(tuple(sorted((record.id, record.reversal_link.partner_id))))
                continue
            valid.append(record)

        result.reversal_pairs = sorted(pairs)
        return valid

    async def _load_groups(
        self,
        goal_id: str,
        date_range: DateRange,
        policy: TolerancePolicy,
        result: MatchGoalResult
    ) -> List[GoalTransactionGroup]:
        excluded = set(policy.config.excluded_channels)
        postings = []
        for posting in await self.repository.list_ledger_postings(goal_id, date_range):
            if posting.channel in excluded:
                continue
            try:
                validate_ledger_posting(posting, goal_id)
            except ValidationError as e:
                logger.warning(f"Skipping ledger posting {posting.id}: {e.message}")
                result.errors.append(RecordError(posting.id, e.message, "validation"))
                continue
            postings.append(posting)

        groups = []
        for group_key, members in group_by_code(postings).items():
            try:
                groups.append(build_group(group_key, members))
            except ValidationError as e:
                logger.warning(f"Skipping ledger group {group_key}: {e.message}")
                result.errors.append(RecordError(group_key, e.message, "validation"))
        return groups

    async def _persist(self, result: MatchGoalResult, bank_by_id: Dict[str, BankRecord]):
        now = utc_now()

        for reconciled in result.matches:
            match = reconciled.match
            if match.match_type == MatchType.MANUAL:
                continue

            changed = []
            for bank_id in match.bank_ids:
                record = bank_by_id[bank_id]
                reference = reference_for(match, created_at=now)
                if (
                    reference.same_link(record.match_reference)
                    and record.match_score == match.match_score
                    and record.reconciliation_status == reconciled.status
                ):
                    continue
                record.match_reference = reference
                record.matched_at = now
                record.match_score = match.match_score
                record.reconciliation_status = reconciled.status
                changed.append(record)

            await self._save(changed, result)

        for unmatched in result.unmatched_bank:
            record = bank_by_id[unmatched.record_id]
            if (
                record.match_reference is None
                and record.match_score is None
                and record.reconciliation_status == unmatched.status
            ):
                continue
            record.clear_match()
            record.reconciliation_status = unmatched.status
            await self._save([record], result)

    async def _save(self, records: List[BankRecord], result: MatchGoalResult):
        if not records:
            return
        try:
            async with self.repository.atomic():
                await self.repository.save_bank_records(records)
            result.persisted += len(records)
        except PersistenceError as e:
            logger.error(f"Failed to persist match for {[r.id for r in records]}: {e}")
            for record in records:
                result.errors.append(RecordError(record.id, str(e), "persistence"))

    # ==================== Batch re-matching ====================

    async def run_matching_batch(
        self,
        date_range: DateRange,
        batch_size: Optional[int] = None,
        offset: int = 0,
        max_concurrency: int = 1,
        actor: str = "system"
    ) -> BatchMatchingResult:
        """
        Re-match one chunk of goals.

        Call again with next_offset while has_more is True. Concurrency
        above 1 needs a repository that tolerates concurrent use.

        Args:
            date_range: Range passed to every goal run
            batch_size: Goals per chunk, RECON_BATCH_SIZE when omitted
            offset: Index of the first goal in this chunk
            max_concurrency: Goals matched at the same time
            actor: Who triggered the batch

        Returns:
            BatchMatchingResult with totals and per-goal errors
        """
        batch_size = batch_size or get_settings().RECON_BATCH_SIZE
        goal_ids = await self.repository.list_goal_ids(date_range)
        chunk = goal_ids[offset:offset + batch_size]
        semaphore = asyncio.Semaphore(max(1, max_concurrency))

        async def run_one(goal_id: str):
            async with semaphore:
                try:
                    return goal_id, await self.match_goal(goal_id, date_range, actor=actor), None
                except Exception as e:
                    logger.error(f"Matching failed for goal {goal_id}: {e}", exc_info=True)
                    capture_exception(e, goal_id=goal_id)
                    return goal_id, None, e

        outcomes = await asyncio.gather(*(run_one(goal_id) for goal_id in chunk))

        next_offset = offset + len(chunk)
        has_more = next_offset < len(goal_ids)
        batch = BatchMatchingResult(
            total_goals=len(goal_ids),
            processed_goals=0,
            failed_goals=0,
            offset=offset,
            next_offset=next_offset if has_more else None,
            has_more=has_more,
        )
        by_match_type = Counter()

        for goal_id, goal_result, error in outcomes:
            if error is not None:
                batch.failed_goals += 1
                batch.errors.append(RecordError(goal_id, str(error), type(error).__name__))
                continue

            summary = goal_result.summary()
            batch.processed_goals += 1
            batch.matched += summary["matched"]
            batch.unmatched_bank += summary["unmatched_bank"]
            batch.unmatched_groups += summary["unmatched_groups"]
            batch.auto_approved += summary["auto_approved"]
            batch.manual_review += summary["manual_review"]
            by_match_type.update(summary["by_match_type"])
            batch.errors.extend(goal_result.errors)

        batch.by_match_type = dict(by_match_type)

        log_reconciliation_event(
            ReconciliationAuditEvent.BATCH_COMPLETED,
            None,
            {
                "offset": offset,
                "processed_goals": batch.processed_goals,
                "failed_goals": batch.failed_goals,
                "has_more": batch.has_more,
            },
            actor=actor
        )
        return batch

    # ==================== Review ====================

    @staticmethod
    def _apply_review(review: ReviewState, tag: Optional[ReviewTag], notes: Optional[str], actor: str, now: datetime) -> ReviewState:
        # A new tag starts a new review; the same tag keeps its resolution
        if tag == review.review_tag:
            return ReviewState(
                review_tag=tag,
                review_notes=notes,
                reviewed_by=actor,
                reviewed_at=now,
                variance_resolved=review.variance_resolved,
                resolved_at=review.resolved_at,
                resolved_reason=review.resolved_reason,
                resolved_by_batch_id=review.resolved_by_batch_id,
            )
        return ReviewState(review_tag=tag, review_notes=notes, reviewed_by=actor, reviewed_at=now)

    async def review_record(
        self,
        record_id: str,
        tag: Optional[ReviewTag],
        notes: Optional[str] = None,
        actor: str = "system",
        source: RecordSource = RecordSource.BANK
    ) -> Dict[str, Any]:
        """
        Tag a bank record, or every posting of a ledger group, for review.

        Args:
            record_id: Bank record id, or grouping key when source is LEDGER
            tag: Review tag, or None to clear
            notes: Operator notes
            actor: Reviewer
            source: Side the record lives on

        Raises:
            NotFoundError: no such record or group
        """
        return await self.bulk_review(
            bank_ids=[record_id] if source == RecordSource.BANK else [],
            group_keys=[record_id] if source == RecordSource.LEDGER else [],
            tag=tag,
            notes=notes,
            actor=actor,
        )

    async def bulk_review(
        self,
        bank_ids: Sequence[str],
        group_keys: Sequence[str],
        tag: Optional[ReviewTag],
        notes: Optional[str] = None,
        actor: str = "system"
    ) -> Dict[str, Any]:
        """
        Apply one review tag to several bank records and ledger groups.

        Every id and key is checked before anything is written.

        Raises:
            NotFoundError: any bank id or group key is unknown
        """
        records = await self.repository.get_bank_records(bank_ids)
        for bank_id in bank_ids:
            if bank_id not in records:
                raise NotFoundError("Bank record", bank_id)

        postings = await self.repository.list_postings_by_group_keys(group_keys)
        found_keys = {p.group_key for p in postings}
        for group_key in group_keys:
            if group_key not in found_keys:
                raise NotFoundError("Goal transaction group", group_key)

        now = utc_now()
        for record in records.values():
            record.review = self._apply_review(record.review, tag, notes, actor, now)
        for posting in postings:
            posting.review = self._apply_review(posting.review, tag, notes, actor, now)

        async with self.repository.atomic():
            await self.repository.save_bank_records(list(records.values()))
            await self.repository.save_ledger_postings(postings)

        log_reconciliation_event(
            ReconciliationAuditEvent.REVIEW_APPLIED,
            None,
            {
                "tag": tag.value if tag else None,
                "bank_ids": list(bank_ids),
                "group_keys": list(group_keys),
            },
            actor=actor
        )

        return {
            "tag": tag.value if tag else None,
            "bank_records_updated": len(records),
            "groups_updated": len(found_keys),
            "postings_updated": len(postings),
            "reviewed_at": now.isoformat(),
        }
