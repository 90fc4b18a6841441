"""
Reversal Service

Links a bank record to the record that reverses it (a deposit and the
withdrawal undoing it). Linked records are tagged REVERSAL on both sides
and drop out of matching.

Link rules:
- Both records on the same goal, and different records
- Opposite transaction types
- Amounts net to zero within 0.01
- Neither record already part of a pair
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from reconciliation.errors import ConsistencyError, NotFoundError
from reconciliation.models import BankRecord, DateRange, ReversalLink, ReviewState, ReviewTag
from reconciliation.repositories.base import ReconciliationRepository
from reconciliation.services.audit import ReconciliationAuditEvent, log_reconciliation_event
from reconciliation.tolerance import ToleranceConfig, get_tolerance_config

logger = logging.getLogger(__name__)


class ReversalService:
    """Finds, links and unlinks reversal pairs."""

    def __init__(self, repository: ReconciliationRepository, config: Optional[ToleranceConfig] = None):
        self.repository = repository
        self.config = config or get_tolerance_config()

    async def _get(self, record_id: str) -> BankRecord:
        record = await self.repository.get_bank_record(record_id)
        if record is None:
            raise NotFoundError("Bank record", record_id)
        return record

    async def find_reversal_candidates(
        self,
        bank_id: str,
        date_range: Optional[DateRange] = None
    ) -> List[BankRecord]:
        """
        Unmatched, unpaired records on the same goal that exactly undo bank_id.

        Raises:
            NotFoundError: bank_id does not exist
        """
        source = await self._get(bank_id)
        candidates = []
        for record in await self.repository.list_bank_records(source.goal_id, date_range):
            if record.id == source.id:
                continue
            if record.is_matched or record.reversal_link is not None:
                continue
            if not record.transaction_type.is_opposite_of(source.transaction_type):
                continue
            if record.total_amount != -source.total_amount:
                continue
            candidates.append(record)
        return candidates

    async def link_reversal(self, id_a: str, id_b: str, actor: str) -> Dict[str, Any]:
        """
        Pair two bank records as a transaction and its reversal.

        Raises:
            NotFoundError: either record does not exist
            ConsistencyError: the records cannot form a reversal pair
        """
        if id_a == id_b:
            raise ConsistencyError("A record cannot reverse itself")

        record_a = await self._get(id_a)
        record_b = await self._get(id_b)

        if record_a.goal_id != record_b.goal_id:
            raise ConsistencyError(
                f"Records belong to different goals: {record_a.goal_id}, {record_b.goal_id}"
            )
        if not record_a.transaction_type.is_opposite_of(record_b.transaction_type):
            raise ConsistencyError(
                f"Transaction types are not opposite: "
                f"{record_a.transaction_type.value}, {record_b.transaction_type.value}"
            )
        net = record_a.total_amount + record_b.total_amount
        if abs(net) > self.config.reversal_net_tolerance:
            raise ConsistencyError(f"Reversal amounts don't net to zero (net {net})")
        for record in (record_a, record_b):
            if record.reversal_link is not None:
                raise ConsistencyError(
                    f"Bank record {record.id} is already paired with {record.reversal_link.partner_id}"
                )

        now = datetime.now(timezone.utc)
        for record, partner in ((record_a, record_b), (record_b, record_a)):
            record.reversal_link = ReversalLink(partner_id=partner.id, linked_by=actor, linked_at=now)
            record.review = ReviewState(
                review_tag=ReviewTag.REVERSAL,
                review_notes=f"Reversal of {partner.id}",
                reviewed_by=actor,
                reviewed_at=now,
            )

        async with self.repository.atomic():
            await self.repository.save_bank_records([record_a, record_b])

        log_reconciliation_event(
            ReconciliationAuditEvent.REVERSAL_LINKED,
            record_a.goal_id,
            {"bank_ids": [id_a, id_b], "net": str(net)},
            actor=actor
        )
        return {"goal_id": record_a.goal_id, "bank_ids": [id_a, id_b], "linked_at": now.isoformat()}

    async def unlink_reversal(self, bank_id: str, actor: str = "system") -> List[str]:
        """
        Dissolve the pair bank_id belongs to.

        Returns:
            Ids of the records that were unlinked

        Raises:
            NotFoundError: bank_id does not exist
            ConsistencyError: bank_id is not part of a pair
        """
        record = await self._get(bank_id)
        if record.reversal_link is None:
            raise ConsistencyError(f"Bank record {bank_id} is not part of a reversal pair")

        updated = [record]
        partner = await self.repository.get_bank_record(record.reversal_link.partner_id)
        if partner is None:
            logger.warning(f"Reversal partner {record.reversal_link.partner_id} of {bank_id} no longer exists")
        elif partner.reversal_link is not None and partner.reversal_link.partner_id == record.id:
            updated.append(partner)

        for item in updated:
            item.reversal_link = None
            if item.review.review_tag == ReviewTag.REVERSAL:
                item.review = ReviewState()

        async with self.repository.atomic():
            await self.repository.save_bank_records(updated)

        unlinked = [item.id for item in updated]
        log_reconciliation_event(
            ReconciliationAuditEvent.REVERSAL_UNLINKED,
            record.goal_id,
            {"bank_ids": unlinked},
            actor=actor
        )
        return unlinked

    async def get_reversal_partner(self, bank_id: str) -> Optional[BankRecord]:
        """
        Raises:
            NotFoundError: bank_id does not exist
        """
        record = await self._get(bank_id)
        if record.reversal_link is None:
            return None
        return await self.repository.get_bank_record(record.reversal_link.partner_id)
