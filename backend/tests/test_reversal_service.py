"""
Unit Tests for Reversal Service

Tests:
- Candidate search
- Linking: validation rules and REVERSAL tagging on both sides
- Unlinking, including a dangling partner
- Partner lookup

Run with: pytest tests/test_reversal_service.py -v
"""

from datetime import datetime, timezone

import pytest

from reconciliation.errors import ConsistencyError, NotFoundError
from reconciliation.models import MatchReference, MatchType, ReversalLink, ReviewTag, TransactionType
from reconciliation.repositories.memory import InMemoryReconciliationRepository
from reconciliation.services.reversal_service import ReversalService
from reconciliation.tolerance import ToleranceConfig

from factories import bank, group_key

WITHDRAWAL = TransactionType.WITHDRAWAL


@pytest.fixture
def repository():
    matched = bank("B5", "BR5", "-40000", transaction_type=WITHDRAWAL)
    matched.match_reference = MatchReference(MatchType.EXACT, (group_key("TX5"),))
    return InMemoryReconciliationRepository([
        bank("B1", "BR1", "40000"),
        bank("B2", "BR2", "-40000", transaction_type=WITHDRAWAL),
        bank("B3", "BR3", "-39000", transaction_type=WITHDRAWAL),
        bank("B4", "BR4", "40000"),
        matched,
        bank("BX", "BRX", "-40000", transaction_type=WITHDRAWAL, goal_id="G2"),
    ])


@pytest.fixture
def service(repository):
    return ReversalService(repository, ToleranceConfig())


class TestFindCandidates:
    """Tests for find_reversal_candidates."""

    @pytest.mark.asyncio
    async def test_candidates_undo_the_amount_exactly(self, service):
        candidates = await service.find_reversal_candidates("B1")

        # B3 is the wrong amount, B4 the same direction, B5 already matched, BX another goal
        assert [c.id for c in candidates] == ["B2"]

    @pytest.mark.asyncio
    async def test_linked_records_are_not_candidates(self, service):
        await service.link_reversal("B1", "B2", actor="ops")

        assert await service.find_reversal_candidates("B4") == []

    @pytest.mark.asyncio
    async def test_unknown_record(self, service):
        with pytest.raises(NotFoundError):
            await service.find_reversal_candidates("B404")


class TestLinkReversal:
    """Tests for link_reversal."""

    @pytest.mark.asyncio
    async def test_link_tags_both_records(self, service, repository):
        response = await service.link_reversal("B1", "B2", actor="ops")

        assert response["goal_id"] == "G1"
        assert response["bank_ids"] == ["B1", "B2"]

        first = await repository.get_bank_record("B1")
        second = await repository.get_bank_record("B2")
        assert first.reversal_link.partner_id == "B2"
        assert second.reversal_link.partner_id == "B1"
        assert first.reversal_link.linked_by == "ops"
        assert first.review.review_tag == ReviewTag.REVERSAL
        assert second.review.review_notes == "Reversal of B1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("id_a,id_b,message", [
        ("B1", "B1", "cannot reverse itself"),
        ("B1", "B4", "not opposite"),
        ("B1", "B3", "don't net to zero"),
        ("B1", "BX", "different goals"),
    ])
    async def test_invalid_pairs_are_rejected(self, service, repository, id_a, id_b, message):
        with pytest.raises(ConsistencyError, match=message):
            await service.link_reversal(id_a, id_b, actor="ops")

        assert (await repository.get_bank_record(id_a)).reversal_link is None

    @pytest.mark.asyncio
    async def test_already_paired_is_rejected(self, service):
        await service.link_reversal("B1", "B2", actor="ops")

        with pytest.raises(ConsistencyError, match="already paired"):
            await service.link_reversal("B4", "B2", actor="ops")

    @pytest.mark.asyncio
    async def test_unknown_partner(self, service):
        with pytest.raises(NotFoundError):
            await service.link_reversal("B1", "B404", actor="ops")


class TestUnlinkReversal:
    """Tests for unlink_reversal and get_reversal_partner."""

    @pytest.mark.asyncio
    async def test_unlink_clears_both_sides(self, service, repository):
        await service.link_reversal("B1", "B2", actor="ops")

        unlinked = await service.unlink_reversal("B2", actor="ops")

        assert unlinked == ["B2", "B1"]
        for bank_id in ("B1", "B2"):
            stored = await repository.get_bank_record(bank_id)
            assert stored.reversal_link is None
            assert stored.review.review_tag is None

    @pytest.mark.asyncio
    async def test_unlink_unpaired_record(self, service):
        with pytest.raises(ConsistencyError):
            await service.unlink_reversal("B1")

    @pytest.mark.asyncio
    async def test_unlink_with_missing_partner(self, repository):
        record = await repository.get_bank_record("B1")
        record.reversal_link = ReversalLink("GONE", "ops", datetime(2024, 3, 20, tzinfo=timezone.utc))
        await repository.save_bank_records([record])

        unlinked = await ReversalService(repository, ToleranceConfig()).unlink_reversal("B1")

        assert unlinked == ["B1"]
        assert (await repository.get_bank_record("B1")).reversal_link is None

    @pytest.mark.asyncio
    async def test_partner_lookup(self, service):
        assert await service.get_reversal_partner("B1") is None

        await service.link_reversal("B1", "B2", actor="ops")

        partner = await service.get_reversal_partner("B1")
        assert partner.id == "B2"
