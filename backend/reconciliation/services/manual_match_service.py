"""
Manual Match Service

Operator overrides pairing bank records with ledger groups directly.
A manual match takes precedence over every algorithmic pass on later runs.

Creating a manual match:
- Every bank id and group key must exist
- Everything must belong to one goal
- No selected bank record may already hold a manual match
- Bank total and ledger total must agree within
  max(|bank total| x 1%, 1)

All checks run before anything is written; the write itself is atomic.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Any, List, Optional, Sequence

from reconciliation.errors import ConsistencyError, NotFoundError
from reconciliation.models import (
    BankRecord,
    MatchReference,
    MatchType,
    ReconciliationStatus,
)
from reconciliation.repositories.base import ReconciliationRepository
from reconciliation.services.audit import ReconciliationAuditEvent, log_reconciliation_event
from reconciliation.tolerance import ToleranceConfig, get_tolerance_config

logger = logging.getLogger(__name__)


class ManualMatchService:
    """Creates and removes operator match overrides."""

    def __init__(self, repository: ReconciliationRepository, config: Optional[ToleranceConfig] = None):
        self.repository = repository
        self.config = config or get_tolerance_config()

    def tolerance_for(self, bank_total: Decimal) -> Decimal:
        return max(abs(bank_total) * self.config.manual_match_percentage, self.config.manual_match_floor)

    async def create_manual_match(
        self,
        bank_ids: Sequence[str],
        group_keys: Sequence[str],
        actor: str
    ) -> Dict[str, Any]:
        """
        Link bank records to ledger groups by hand.

        Args:
            bank_ids: Bank records on one side of the match
            group_keys: Ledger groups on the other side
            actor: Operator creating the match

        Returns:
            Summary of the created match

        Raises:
            NotFoundError: a bank id or group key does not exist
            ConsistencyError: the selection cannot form a valid match
        """
        bank_ids = list(dict.fromkeys(bank_ids))
        group_keys = list(dict.fromkeys(group_keys))
        if not bank_ids or not group_keys:
            raise ConsistencyError("A manual match needs at least one bank record and one group")

        records = await self.repository.get_bank_records(bank_ids)
        for bank_id in bank_ids:
            if bank_id not in records:
                raise NotFoundError("Bank record", bank_id)

        postings = await self.repository.list_postings_by_group_keys(group_keys)
        found_keys = {p.group_key for p in postings}
        for group_key in group_keys:
            if group_key not in found_keys:
                raise NotFoundError("Goal transaction group", group_key)

        goals = {r.goal_id for r in records.values()} | {p.goal_id for p in postings}
        if len(goals) > 1:
            raise ConsistencyError(f"Manual match spans several goals: {sorted(goals)}")

        already_manual = sorted(r.id for r in records.values() if r.has_manual_match)
        if already_manual:
            raise ConsistencyError(f"Bank records already manually matched: {already_manual}")

        bank_total = sum((r.total_amount for r in records.values()), Decimal("0"))
        group_total = sum((p.amount for p in postings), Decimal("0"))
        difference = abs(bank_total - group_total)
        tolerance = self.tolerance_for(bank_total)
        if difference > tolerance:
            raise ConsistencyError(
                f"Amount mismatch: bank total {bank_total}, ledger total {group_total}, "
                f"difference {difference} exceeds tolerance {tolerance}"
            )

        now = datetime.now(timezone.utc)
        reference = MatchReference(
            match_type=MatchType.MANUAL,
            group_keys=tuple(group_keys),
            created_by=actor,
            created_at=now,
        )
        updated: List[BankRecord] = []
        for bank_id in bank_ids:
            record = records[bank_id]
            record.match_reference = reference
            record.matched_at = now
            record.match_score = 100
            record.reconciliation_status = ReconciliationStatus.MATCHED
            updated.append(record)

        async with self.repository.atomic():
            await self.repository.save_bank_records(updated)

        goal_id = next(iter(goals))
        log_reconciliation_event(
            ReconciliationAuditEvent.MANUAL_MATCH_CREATED,
            goal_id,
            {
                "bank_ids": bank_ids,
                "group_keys": group_keys,
                "bank_total": str(bank_total),
                "group_total": str(group_total),
            },
            actor=actor
        )

        return {
            "goal_id": goal_id,
            "match_reference": reference.to_dict(),
            "bank_ids": bank_ids,
            "group_keys": group_keys,
            "bank_total": str(bank_total),
            "group_total": str(group_total),
            "difference": str(difference),
        }

    async def remove_manual_match(
        self,
        bank_ids: Sequence[str] = (),
        group_keys: Sequence[str] = (),
        actor: str = "system"
    ) -> List[str]:
        """
        Clear manual matches selected by bank id or by referenced group key.

        Bank records named by id are cleared whatever their match type.
        Group keys select records whose manual reference contains the key.

        Returns:
            Ids of the bank records that were cleared
        """
        selected: Dict[str, BankRecord] = {}

        if bank_ids:
            records = await self.repository.get_bank_records(bank_ids)
            for bank_id in bank_ids:
                if bank_id not in records:
                    raise NotFoundError("Bank record", bank_id)
            selected.update(records)

        for group_key in group_keys:
            for record in await self.repository.find_bank_records_by_group_key(group_key):
                selected.setdefault(record.id, record)

        cleared = [r for r in selected.values() if r.match_reference is not None]
        for record in cleared:
            record.clear_match()

        if cleared:
            async with self.repository.atomic():
                await self.repository.save_bank_records(cleared)

        cleared_ids = sorted(r.id for r in cleared)
        log_reconciliation_event(
            ReconciliationAuditEvent.MANUAL_MATCH_REMOVED,
            None,
            {"bank_ids": list(bank_ids), "group_keys": list(group_keys), "cleared": cleared_ids},
            actor=actor
        )
        return cleared_ids
