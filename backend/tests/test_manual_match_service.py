"""
Unit Tests for Manual Match Service

Tests:
- Creating manual matches (single and split)
- Rejections: unknown ids, cross-goal, already manual, amount mismatch
- Atomicity of rejected and failed writes
- Removing manual matches by bank id and by group key
- Manual matches surviving a later matching run

Run with: pytest tests/test_manual_match_service.py -v
"""

from unittest.mock import AsyncMock, patch

import pytest

from reconciliation.errors import ConsistencyError, NotFoundError, PersistenceError
from reconciliation.models import MatchReference, MatchType, ReconciliationStatus
from reconciliation.repositories.memory import InMemoryReconciliationRepository
from reconciliation.services.manual_match_service import ManualMatchService
from reconciliation.services.reconciliation_service import GoalLockRegistry, ReconciliationService
from reconciliation.tolerance import ToleranceConfig

from factories import MARCH, bank, group_key, posting


@pytest.fixture
def repository():
    return InMemoryReconciliationRepository(
        [
            bank("B1", "BR1", "60000"),
            bank("B2", "BR2", "40000"),
            bank("B3", "BR3", "500"),
            bank("BX", "BRX", "60000", goal_id="G2"),
        ],
        [
            posting("P1", "TX1", "60000"),
            posting("P2", "TX2", "100000"),
            posting("P3", "TX3", "500.80"),
            posting("PX", "TXX", "60000", goal_id="G2"),
        ],
    )


@pytest.fixture
def service(repository):
    return ManualMatchService(repository, ToleranceConfig())


# ==================== CREATE ====================

class TestCreateManualMatch:
    """Tests for create_manual_match."""

    @pytest.mark.asyncio
    async def test_create_single_match(self, service, repository):
        response = await service.create_manual_match(["B1"], [group_key("TX1")], actor="ops")

        assert response["goal_id"] == "G1"
        assert response["difference"] == "0"
        assert response["match_reference"]["match_type"] == "MANUAL"

        stored = await repository.get_bank_record("B1")
        assert stored.has_manual_match
        assert stored.match_reference.group_keys == (group_key("TX1"),)
        assert stored.match_reference.created_by == "ops"
        assert stored.match_score == 100
        assert stored.reconciliation_status == ReconciliationStatus.MATCHED

    @pytest.mark.asyncio
    async def test_create_split_match(self, service, repository):
        await service.create_manual_match(["B1", "B2"], [group_key("TX2")], actor="ops")

        for bank_id in ("B1", "B2"):
            stored = await repository.get_bank_record(bank_id)
            assert stored.match_reference.group_keys == (group_key("TX2"),)

    @pytest.mark.asyncio
    async def test_small_amounts_use_unit_floor(self, service):
        """500 vs 500.80 is inside the floor of 1 even though 1% of 500 is 5."""
        response = await service.create_manual_match(["B3"], [group_key("TX3")], actor="ops")
        assert response["difference"] == "0.80"

    @pytest.mark.asyncio
    async def test_amount_mismatch_is_rejected(self, service, repository):
        with pytest.raises(ConsistencyError, match="Amount mismatch"):
            await service.create_manual_match(["B1"], [group_key("TX2")], actor="ops")

        assert (await repository.get_bank_record("B1")).match_reference is None

    @pytest.mark.asyncio
    async def test_unknown_bank_id(self, service):
        with pytest.raises(NotFoundError) as exc:
            await service.create_manual_match(["B404"], [group_key("TX1")], actor="ops")
        assert exc.value.identifier == "B404"

    @pytest.mark.asyncio
    async def test_unknown_group_key(self, service):
        with pytest.raises(NotFoundError) as exc:
            await service.create_manual_match(["B1"], [group_key("NOPE")], actor="ops")
        assert exc.value.resource == "Goal transaction group"

    @pytest.mark.asyncio
    async def test_cross_goal_is_rejected(self, service):
        with pytest.raises(ConsistencyError, match="several goals"):
            await service.create_manual_match(["BX"], [group_key("TX1")], actor="ops")

    @pytest.mark.asyncio
    async def test_already_manual_is_rejected(self, service, repository):
        await service.create_manual_match(["B1"], [group_key("TX1")], actor="ops")

        with pytest.raises(ConsistencyError, match="already manually matched"):
            await service.create_manual_match(["B1", "B2"], [group_key("TX2")], actor="ops")

        assert (await repository.get_bank_record("B2")).match_reference is None

    @pytest.mark.asyncio
    async def test_empty_selection_is_rejected(self, service):
        with pytest.raises(ConsistencyError):
            await service.create_manual_match([], [group_key("TX1")], actor="ops")

    @pytest.mark.asyncio
    async def test_failed_write_leaves_no_partial_match(self, service, repository):
        with patch.object(
            repository, "save_bank_records", new=AsyncMock(side_effect=PersistenceError("disk full"))
        ):
            with pytest.raises(PersistenceError):
                await service.create_manual_match(["B1", "B2"], [group_key("TX2")], actor="ops")

        for bank_id in ("B1", "B2"):
            assert (await repository.get_bank_record(bank_id)).match_reference is None


# ==================== REMOVE ====================

class TestRemoveManualMatch:
    """Tests for remove_manual_match."""

    @pytest.mark.asyncio
    async def test_remove_by_bank_id(self, service, repository):
        await service.create_manual_match(["B1"], [group_key("TX1")], actor="ops")

        cleared = await service.remove_manual_match(bank_ids=["B1"], actor="ops")

        assert cleared == ["B1"]
        stored = await repository.get_bank_record("B1")
        assert stored.match_reference is None
        assert stored.reconciliation_status == ReconciliationStatus.PENDING

    @pytest.mark.asyncio
    async def test_remove_by_group_key(self, service, repository):
        await service.create_manual_match(["B1", "B2"], [group_key("TX2")], actor="ops")

        cleared = await service.remove_manual_match(group_keys=[group_key("TX2")], actor="ops")

        assert cleared == ["B1", "B2"]

    @pytest.mark.asyncio
    async def test_group_key_match_is_exact(self, repository):
        """A key that is a prefix of a referenced key selects nothing."""
        record = await repository.get_bank_record("B1")
        record.match_reference = MatchReference(MatchType.MANUAL, (group_key("TX10"),))
        await repository.save_bank_records([record])
        service = ManualMatchService(repository, ToleranceConfig())

        assert await service.remove_manual_match(group_keys=[group_key("TX1")]) == []
        assert (await repository.get_bank_record("B1")).has_manual_match

    @pytest.mark.asyncio
    async def test_remove_unknown_bank_id(self, service):
        with pytest.raises(NotFoundError):
            await service.remove_manual_match(bank_ids=["B404"])

    @pytest.mark.asyncio
    async def test_remove_unmatched_record_is_noop(self, service):
        assert await service.remove_manual_match(bank_ids=["B3"]) == []


class TestManualMatchPrecedence:
    """A manual match survives later runs of the matcher."""

    @pytest.mark.asyncio
    async def test_matching_run_keeps_manual_match(self, service, repository, policy):
        await service.create_manual_match(["B1", "B2"], [group_key("TX2")], actor="ops")
        reconciliation = ReconciliationService(repository, policy=policy, locks=GoalLockRegistry())

        result = await reconciliation.match_goal("G1", MARCH)

        manual = [m for m in result.matches if m.match.match_type == MatchType.MANUAL]
        assert sorted(manual[0].match.bank_ids) == ["B1", "B2"]
        assert manual[0].status == ReconciliationStatus.MATCHED
        # P1 matches B1 on amount but B1 is taken
        assert group_key("TX1") in [u.record_id for u in result.unmatched_groups]
        for bank_id in ("B1", "B2"):
            stored = await repository.get_bank_record(bank_id)
            assert stored.match_reference.is_manual
            assert stored.match_reference.group_keys == (group_key("TX2"),)
