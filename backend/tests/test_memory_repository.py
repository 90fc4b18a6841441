"""
Unit Tests for In-Memory Reconciliation Repository

Tests:
- Ordering of listings
- Copy-in / copy-out semantics
- Grouping key assignment on postings
- Tagged listings with cursors and counts
- atomic() rollback and nesting

Run with: pytest tests/test_memory_repository.py -v
"""

from datetime import timedelta

import pytest

from reconciliation.models import MatchReference, MatchType, ReviewTag
from reconciliation.repositories.memory import InMemoryReconciliationRepository

from factories import MARCH, TRADE_DATE, bank, group_key, posting


@pytest.fixture
def repository():
    return InMemoryReconciliationRepository(
        [
            bank("B2", "TX2", "200"),
            bank("B1", "TX1", "100"),
            bank("B3", "TX3", "300", transaction_date=TRADE_DATE + timedelta(days=1)),
            bank("B4", "TX4", "400", goal_id="G2", transaction_date=TRADE_DATE.replace(month=4)),
        ],
        [
            posting("P1", "TX1", "100"),
            posting("P2", "TX1", "50"),
            posting("P3", "TX3", "300", goal_id="G3"),
        ],
    )


class TestReads:
    """Tests for list and get operations."""

    @pytest.mark.asyncio
    async def test_bank_records_newest_first_then_id(self, repository):
        records = await repository.list_bank_records("G1", MARCH)
        assert [r.id for r in records] == ["B3", "B1", "B2"]

    @pytest.mark.asyncio
    async def test_goal_and_range_filters(self, repository):
        assert [r.id for r in await repository.list_bank_records("G2")] == ["B4"]
        assert await repository.list_bank_records("G2", MARCH) == []
        assert len(await repository.list_bank_records()) == 4

    @pytest.mark.asyncio
    async def test_postings_get_grouping_key(self, repository):
        postings = await repository.list_postings_by_group_keys([group_key("TX1")])
        assert sorted(p.id for p in postings) == ["P1", "P2"]
        assert {p.group_key for p in postings} == {group_key("TX1")}

    @pytest.mark.asyncio
    async def test_get_bank_records_skips_unknown(self, repository):
        records = await repository.get_bank_records(["B1", "NOPE"])
        assert list(records) == ["B1"]
        assert await repository.get_bank_record("NOPE") is None

    @pytest.mark.asyncio
    async def test_goal_ids(self, repository):
        assert await repository.list_goal_ids() == ["G1", "G2", "G3"]
        assert await repository.list_goal_ids(MARCH) == ["G1", "G3"]

    @pytest.mark.asyncio
    async def test_manual_matches_by_group_key(self, repository):
        record = await repository.get_bank_record("B1")
        record.match_reference = MatchReference(MatchType.MANUAL, (group_key("TX1"),))
        await repository.save_bank_records([record])

        assert [r.id for r in await repository.list_manual_matches("G1")] == ["B1"]
        assert [r.id for r in await repository.find_bank_records_by_group_key(group_key("TX1"))] == ["B1"]
        assert await repository.find_bank_records_by_group_key(group_key("TX")) == []


class TestCopySemantics:
    """Callers only change stored state through save_*."""

    @pytest.mark.asyncio
    async def test_mutating_a_read_does_not_change_storage(self, repository):
        record = await repository.get_bank_record("B1")
        record.review.review_tag = ReviewTag.OTHER

        assert (await repository.get_bank_record("B1")).review.review_tag is None

    @pytest.mark.asyncio
    async def test_mutating_after_save_does_not_change_storage(self, repository):
        record = await repository.get_bank_record("B1")
        record.review.review_tag = ReviewTag.OTHER
        await repository.save_bank_records([record])
        record.review.review_tag = ReviewTag.REVERSAL

        assert (await repository.get_bank_record("B1")).review.review_tag == ReviewTag.OTHER


class TestTaggedListings:
    """Tests for tagged listings and counts."""

    @pytest.fixture
    def tagged(self):
        return InMemoryReconciliationRepository(
            [
                bank("B3", "TX3", "1", review_tag=ReviewTag.MISSING_IN_LEDGER),
                bank("B1", "TX1", "1", review_tag=ReviewTag.MISSING_IN_LEDGER),
                bank("B2", "TX2", "1", review_tag=ReviewTag.TIMING_DIFFERENCE),
                bank("B4", "TX4", "1", review_tag=ReviewTag.OTHER),
            ],
            [
                posting("P1", "TX1", "1", review_tag=ReviewTag.MISSING_IN_BANK),
                posting("P2", "TX1", "1", review_tag=ReviewTag.MISSING_IN_BANK),
                posting("P3", "TX2", "1", review_tag=ReviewTag.MISSING_IN_BANK),
            ],
        )

    @pytest.mark.asyncio
    async def test_bank_records_paged_by_id(self, tagged):
        tags = [ReviewTag.MISSING_IN_LEDGER, ReviewTag.TIMING_DIFFERENCE]

        first = await tagged.list_tagged_bank_records(tags, limit=2)
        rest = await tagged.list_tagged_bank_records(tags, after_id=first[-1].id)

        assert [r.id for r in first] == ["B1", "B2"]
        assert [r.id for r in rest] == ["B3"]
        assert await tagged.count_tagged_bank_records(tags) == 3
        assert await tagged.count_tagged_bank_records(tags, after_id="B2") == 1
        assert await tagged.count_tagged_bank_records(tags, resolved=True) == 0

    @pytest.mark.asyncio
    async def test_group_keys_are_distinct(self, tagged):
        tags = [ReviewTag.MISSING_IN_BANK]

        keys = await tagged.list_tagged_group_keys(tags)

        assert keys == [group_key("TX1"), group_key("TX2")]
        assert await tagged.count_tagged_group_keys(tags) == 2
        assert await tagged.list_tagged_group_keys(tags, after_key=group_key("TX1")) == [group_key("TX2")]
        assert await tagged.list_tagged_group_keys(tags, limit=1) == [group_key("TX1")]


class TestAtomic:
    """Tests for atomic()."""

    @pytest.mark.asyncio
    async def test_rollback_on_error(self, repository):
        record = await repository.get_bank_record("B1")
        record.review.review_tag = ReviewTag.OTHER

        with pytest.raises(RuntimeError):
            async with repository.atomic():
                await repository.save_bank_records([record])
                await repository.save_ledger_postings([posting("P9", "TX9", "1")])
                raise RuntimeError("abort")

        assert (await repository.get_bank_record("B1")).review.review_tag is None
        assert await repository.list_postings_by_group_keys([group_key("TX9")]) == []

    @pytest.mark.asyncio
    async def test_nested_blocks_roll_back_together(self, repository):
        record = await repository.get_bank_record("B1")
        record.review.review_tag = ReviewTag.OTHER

        with pytest.raises(RuntimeError):
            async with repository.atomic():
                async with repository.atomic():
                    await repository.save_bank_records([record])
                raise RuntimeError("abort")

        assert (await repository.get_bank_record("B1")).review.review_tag is None

    @pytest.mark.asyncio
    async def test_commit_on_success(self, repository):
        record = await repository.get_bank_record("B1")
        record.review.review_tag = ReviewTag.OTHER

        async with repository.atomic():
            await repository.save_bank_records([record])

        assert (await repository.get_bank_record("B1")).review.review_tag == ReviewTag.OTHER
