"""
Reconciliation Summary Service

Read-only reporting over bank records and ledger postings:
- Goal summary: deposit/withdrawal totals on both sides, variance flags
  and review progress
- Instrument summary: net amounts per instrument on both sides
- Status counts: bank records by reconciliation status and review state

Review status of a goal:
- NOT_APPLICABLE: totals agree, or nothing is unmatched by source id
- UNREVIEWED: unmatched records exist, none tagged
- PARTIALLY_REVIEWED: some unmatched records tagged
- REVIEWED: every unmatched record tagged
"""

import logging
from collections import Counter
from decimal import Decimal
from typing import Dict, Any, Optional

from reconciliation.models import DateRange, InstrumentCode, TransactionType
from reconciliation.repositories.base import ReconciliationRepository
from reconciliation.tolerance import TolerancePolicy, get_tolerance_policy

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _direction(transaction_type: TransactionType) -> str:
    return "deposits" if transaction_type == TransactionType.DEPOSIT else "withdrawals"


class ReconciliationSummaryService:
    """Aggregated views for reporting endpoints."""

    def __init__(self, repository: ReconciliationRepository, policy: Optional[TolerancePolicy] = None):
        self.repository = repository
        self.policy = policy or get_tolerance_policy()

    async def get_goal_summary(self, goal_id: str, date_range: DateRange) -> Dict[str, Any]:
        """
        Compare bank and ledger totals for one goal.

        Args:
            goal_id: Goal to summarize
            date_range: Inclusive date range

        Returns:
            Totals, counts, variances and review status for the goal
        """
        excluded = set(self.policy.config.excluded_channels)
        bank_records = await self.repository.list_bank_records(goal_id, date_range)
        postings = [
            p for p in await self.repository.list_ledger_postings(goal_id, date_range)
            if p.channel not in excluded
        ]

        totals = {
            side: {"deposits": ZERO, "withdrawals": ZERO}
            for side in ("bank", "ledger")
        }
        counts = {
            side: {"deposits": 0, "withdrawals": 0}
            for side in ("bank", "ledger")
        }

        for record in bank_records:
            direction = _direction(record.transaction_type)
            totals["bank"][direction] += abs(record.total_amount)
            counts["bank"][direction] += 1

        group_keys_seen = set()
        for posting in postings:
            direction = _direction(posting.transaction_type)
            totals["ledger"][direction] += abs(posting.amount)
            if posting.group_key not in group_keys_seen:
                group_keys_seen.add(posting.group_key)
                counts["ledger"][direction] += 1

        has_variance = False
        variances = {}
        for direction in ("deposits", "withdrawals"):
            difference = totals["bank"][direction] - totals["ledger"][direction]
            flagged = not self.policy.amounts_match(totals["bank"][direction], totals["ledger"][direction])
            has_variance = has_variance or flagged
            variances[direction] = {"difference": str(difference), "has_variance": flagged}

        # Records with no counterpart carrying the same source id and type
        ledger_keys = {(p.source_transaction_id, p.transaction_type) for p in postings}
        bank_keys = {(r.source_transaction_id, r.transaction_type) for r in bank_records}

        reviewed = unreviewed = 0
        for record in bank_records:
            if (record.source_transaction_id, record.transaction_type) not in ledger_keys:
                if record.review.is_reviewed:
                    reviewed += 1
                else:
                    unreviewed += 1

        unmatched_groups = {}
        for posting in postings:
            if (posting.source_transaction_id, posting.transaction_type) not in bank_keys:
                unmatched_groups[posting.group_key] = (
                    unmatched_groups.get(posting.group_key, False) or posting.review.is_reviewed
                )
        reviewed += sum(1 for is_reviewed in unmatched_groups.values() if is_reviewed)
        unreviewed += sum(1 for is_reviewed in unmatched_groups.values() if not is_reviewed)

        if not has_variance or reviewed + unreviewed == 0:
            review_status = "NOT_APPLICABLE"
        elif unreviewed == 0:
            review_status = "REVIEWED"
        elif reviewed > 0:
            review_status = "PARTIALLY_REVIEWED"
        else:
            review_status = "UNREVIEWED"

        return {
            "goal_id": goal_id,
            "date_range": date_range.to_dict(),
            "bank": {k: str(v) for k, v in totals["bank"].items()},
            "ledger": {k: str(v) for k, v in totals["ledger"].items()},
            "counts": counts,
            "variances": variances,
            "status": "VARIANCE" if has_variance else "MATCHED",
            "has_variance": has_variance,
            "review_status": review_status,
            "reviewed_count": reviewed,
            "unreviewed_count": unreviewed,
        }

    async def get_instrument_summary(self, goal_id: str, date_range: DateRange) -> Dict[str, Any]:
        """Net bank vs ledger amount per instrument for one goal."""
        excluded = set(self.policy.config.excluded_channels)
        bank_totals = {code: ZERO for code in InstrumentCode}
        ledger_totals = {code: ZERO for code in InstrumentCode}

        for record in await self.repository.list_bank_records(goal_id, date_range):
            for code, amount in record.instrument_amounts.items():
                bank_totals[code] += amount

        for posting in await self.repository.list_ledger_postings(goal_id, date_range):
            if posting.channel not in excluded:
                ledger_totals[posting.instrument_code] += posting.amount

        instruments = []
        for code in InstrumentCode:
            difference = bank_totals[code] - ledger_totals[code]
            instruments.append({
                "instrument_code": code.value,
                "bank_amount": str(bank_totals[code]),
                "ledger_amount": str(ledger_totals[code]),
                "difference": str(difference),
                "has_variance": not self.policy.amounts_match(bank_totals[code], ledger_totals[code]),
            })

        return {"goal_id": goal_id, "date_range": date_range.to_dict(), "instruments": instruments}

    async def get_status_counts(
        self,
        goal_id: Optional[str] = None,
        date_range: Optional[DateRange] = None
    ) -> Dict[str, Any]:
        """Bank records by reconciliation status, review state and review tag."""
        records = await self.repository.list_bank_records(goal_id, date_range)

        by_status = Counter(r.reconciliation_status.value for r in records)
        by_tag = Counter(r.review.review_tag.value for r in records if r.review.review_tag)
        reviewed = sum(1 for r in records if r.review.is_reviewed)
        matched = sum(1 for r in records if r.is_matched)

        return {
            "goal_id": goal_id,
            "total": len(records),
            "matched": matched,
            "reconciliation_rate": round(matched / len(records) * 100, 2) if records else 0.0,
            "by_status": dict(by_status),
            "by_review_state": {"reviewed": reviewed, "pending": len(records) - reviewed},
            "by_review_tag": dict(by_tag),
        }
