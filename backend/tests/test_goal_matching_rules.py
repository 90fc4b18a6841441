"""
Unit Tests for Goal Matching Rules

Tests:
- EXACT, AMOUNT and SPLIT passes
- Source id pairing outside tolerance
- Manual precedence and reserved groups
- Bounded subset search (find_combination_sum)
- No bank record or posting claimed twice, on randomized inputs

Run with: pytest tests/test_goal_matching_rules.py -v
"""

import random
from datetime import timedelta
from decimal import Decimal

import pytest

from reconciliation.grouping_key import build_groups
from reconciliation.matching_rules.goal_rules import GoalMatchingRules, find_combination_sum, reference_for
from reconciliation.models import MatchReference, MatchType, TransactionType
from reconciliation.tolerance import ToleranceConfig, TolerancePolicy

from factories import TRADE_DATE, bank, group_key, posting


@pytest.fixture
def rules(policy):
    return GoalMatchingRules(policy)


class TestExactAndAmountPasses:
    """Tests for passes 1 and 2."""

    def test_exact_match_on_source_id(self, rules):
        """Bank deposit and ledger group with the same source id and amount."""
        records = [bank("B1", "TX1", "2275000")]
        groups = build_groups([posting("P1", "TX1", "2275000")])

        outcome = rules.match(records, groups)

        assert len(outcome.matches) == 1
        match = outcome.matches[0]
        assert match.match_type == MatchType.EXACT
        assert match.confidence == 1.0
        assert match.bank_ids == ["B1"]
        assert match.posting_ids == ["P1"]
        assert match.group_keys == [group_key("TX1")]
        assert match.amount_within_tolerance is True
        assert outcome.unmatched_bank_ids == []
        assert outcome.unmatched_group_keys == []

    def test_exact_requires_same_type(self, rules):
        records = [bank("B1", "TX1", "5000", transaction_type=TransactionType.WITHDRAWAL)]
        groups = build_groups([posting("P1", "TX1", "5000")])

        outcome = rules.match(records, groups)

        assert outcome.matches == []
        assert outcome.unmatched_bank_ids == ["B1"]
        assert outcome.unmatched_group_keys == [group_key("TX1")]

    def test_amount_match_confidence_decays_with_distance(self, rules):
        records = [bank("B1", "BANKREF", "75000", transaction_date=TRADE_DATE)]
        groups = build_groups([
            posting("P1", "TX1", "75000", transaction_date=TRADE_DATE - timedelta(days=15)),
        ])

        outcome = rules.match(records, groups)

        match = outcome.matches[0]
        assert match.match_type == MatchType.AMOUNT
        assert match.confidence == pytest.approx(0.65)
        assert match.match_score == 65

    def test_amount_match_same_day_has_top_confidence(self, rules):
        outcome = rules.match(
            [bank("B1", "BANKREF", "75000")],
            build_groups([posting("P1", "TX1", "75500")]),
        )
        assert outcome.matches[0].match_type == MatchType.AMOUNT
        assert outcome.matches[0].confidence == pytest.approx(0.8)

    def test_amount_match_outside_window_is_not_made(self, rules):
        outcome = rules.match(
            [bank("B1", "BANKREF", "75000")],
            build_groups([posting("P1", "TX1", "75000", transaction_date=TRADE_DATE - timedelta(days=31))]),
        )
        assert outcome.matches == []

    def test_source_id_pairing_outside_tolerance(self, rules):
        """Same source id but amounts 1,500 apart: paired with reduced confidence."""
        outcome = rules.match(
            [bank("B1", "TX1", "100000")],
            build_groups([posting("P1", "TX1", "98500")]),
        )

        match = outcome.matches[0]
        assert match.match_type == MatchType.EXACT
        assert match.confidence == 0.5
        assert match.amount_within_tolerance is False


class TestSplitPasses:
    """Tests for pass 3 (split matches)."""

    def test_two_bank_records_to_one_group(self, rules):
        records = [bank("B1", "BR1", "50000"), bank("B2", "BR2", "50000")]
        groups = build_groups([posting("P1", "TX1", "100000")])

        outcome = rules.match(records, groups)

        assert len(outcome.matches) == 1
        match = outcome.matches[0]
        assert match.match_type == MatchType.SPLIT_BANK_TO_GROUP
        assert match.confidence == 0.7
        assert sorted(match.bank_ids) == ["B1", "B2"]
        assert match.bank_total == Decimal("100000")

    def test_one_bank_record_to_two_groups(self, rules):
        records = [bank("B1", "BR1", "300000")]
        groups = build_groups([posting("P1", "TX1", "180000"), posting("P2", "TX2", "120000")])

        outcome = rules.match(records, groups)

        match = outcome.matches[0]
        assert match.match_type == MatchType.SPLIT_GROUP_TO_BANK
        assert sorted(match.group_keys) == [group_key("TX1"), group_key("TX2")]
        assert sorted(match.posting_ids) == ["P1", "P2"]

    def test_split_requires_same_date(self, rules):
        records = [
            bank("B1", "BR1", "50000"),
            bank("B2", "BR2", "50000", transaction_date=TRADE_DATE + timedelta(days=1)),
        ]
        outcome = rules.match(records, build_groups([posting("P1", "TX1", "100000")]))
        assert outcome.matches == []

    def test_records_that_cannot_sum_to_group_stay_unmatched(self, rules):
        records = [bank("B1", "BR1", "40000"), bank("B2", "BR2", "7000")]
        groups = build_groups([posting("P1", "TX1", "100000")])

        outcome = rules.match(records, groups)

        assert outcome.matches == []

    def test_withdrawals_split_on_magnitude(self, rules):
        records = [
            bank("B1", "BR1", "-60000", transaction_type=TransactionType.WITHDRAWAL),
            bank("B2", "BR2", "-40000", transaction_type=TransactionType.WITHDRAWAL),
        ]
        groups = build_groups([posting("P1", "TX1", "-100000", transaction_type=TransactionType.WITHDRAWAL)])

        outcome = rules.match(records, groups)

        assert outcome.matches[0].match_type == MatchType.SPLIT_BANK_TO_GROUP


class TestManualPrecedence:
    """Tests for pass 0 and reserved groups."""

    def test_manual_reference_is_honoured_first(self, rules):
        manual = bank("B1", "BR1", "60000")
        manual.match_reference = MatchReference(MatchType.MANUAL, (group_key("TX2"),), created_by="ops")
        records = [manual, bank("B2", "TX1", "50000")]
        groups = build_groups([posting("P1", "TX1", "50000"), posting("P2", "TX2", "60000")])

        outcome = rules.match(records, groups)

        manual_matches = outcome.matches_of_type(MatchType.MANUAL)
        assert len(manual_matches) == 1
        assert manual_matches[0].bank_ids == ["B1"]
        assert manual_matches[0].posting_ids == ["P2"]
        exact = outcome.matches_of_type(MatchType.EXACT)
        assert exact[0].bank_ids == ["B2"]

    def test_manual_group_never_claimed_algorithmically(self, rules):
        """A manual reference wins even when another record would match the group exactly."""
        manual = bank("B1", "OTHER", "10")
        manual.match_reference = MatchReference(MatchType.MANUAL, (group_key("TX1"),))
        records = [manual, bank("B2", "TX1", "50000")]
        groups = build_groups([posting("P1", "TX1", "50000")])

        outcome = rules.match(records, groups)

        assert [m.match_type for m in outcome.matches] == [MatchType.MANUAL]
        assert outcome.unmatched_bank_ids == ["B2"]

    def test_reserved_group_keys_are_skipped(self, rules):
        records = [bank("B2", "TX1", "50000")]
        groups = build_groups([posting("P1", "TX1", "50000")])

        outcome = rules.match(records, groups, reserved_group_keys={group_key("TX1")})

        assert outcome.matches == []
        assert outcome.unmatched_bank_ids == ["B2"]
        assert outcome.unmatched_group_keys == []

    def test_reference_for_copies_match_groups(self, rules):
        outcome = rules.match([bank("B1", "TX1", "100")], build_groups([posting("P1", "TX1", "100")]))
        reference = reference_for(outcome.matches[0], created_by="system")

        assert reference.match_type == MatchType.EXACT
        assert reference.group_keys == (group_key("TX1"),)
        assert reference.references(group_key("TX1"))
        assert not reference.is_manual


class TestFindCombinationSum:
    """Tests for the bounded subset search."""

    def test_greedy_finds_combination(self):
        items = [("A", Decimal("60")), ("B", Decimal("40")), ("C", Decimal("5"))]
        assert find_combination_sum(items, Decimal("100"), Decimal("0")) == ["A", "B"]

    def test_exhaustive_search_after_greedy_miss(self):
        # Greedy takes 70 then cannot reach 90 exactly; 50 + 40 can
        items = [("A", Decimal("70")), ("B", Decimal("50")), ("C", Decimal("40"))]
        result = find_combination_sum(items, Decimal("90"), Decimal("0"))
        assert sorted(result) == ["B", "C"]

    def test_single_item_is_never_returned(self):
        items = [("A", Decimal("100")), ("B", Decimal("1"))]
        assert find_combination_sum(items, Decimal("100"), Decimal("0.5")) == []

    def test_fewer_than_two_items(self):
        assert find_combination_sum([("A", Decimal("100"))], Decimal("100"), Decimal("0")) == []

    def test_negative_target(self):
        items = [("A", Decimal("-30")), ("B", Decimal("-70"))]
        assert sorted(find_combination_sum(items, Decimal("-100"), Decimal("0"))) == ["A", "B"]

    def test_combination_beyond_limit_is_missed(self):
        """Only the largest `limit` items are enumerated."""
        items = [(f"BIG{i}", Decimal("1000")) for i in range(10)]
        # Greedy takes 5 and then overshoots with either 4 or 3
        items += [("S1", Decimal("3")), ("S2", Decimal("4")), ("S3", Decimal("5"))]

        assert find_combination_sum(items, Decimal("7"), Decimal("0"), limit=10) == []
        assert sorted(find_combination_sum(items, Decimal("7"), Decimal("0"), limit=13)) == ["S1", "S2"]


class TestNoDoubleClaim:
    """Every bank record and posting appears in at most one match."""

    @pytest.mark.parametrize("seed", range(25))
    def test_randomized_overlapping_candidates(self, seed):
        rng = random.Random(seed)
        amounts = [Decimal(rng.choice([20000, 30000, 50000, 80000, 100000])) for _ in range(12)]
        days = [TRADE_DATE + timedelta(days=rng.randint(0, 3)) for _ in range(12)]

        records = [
            bank(f"B{i}", f"TX{rng.randint(0, 8)}", amounts[i], transaction_date=days[i])
            for i in range(8)
        ]
        postings = [
            posting(f"P{i}", f"TX{i}", amounts[rng.randint(0, 11)], transaction_date=days[rng.randint(0, 11)])
            for i in range(9)
        ]
        groups = build_groups(postings)

        outcome = GoalMatchingRules(TolerancePolicy(ToleranceConfig())).match(records, groups)

        claimed_bank = [bank_id for m in outcome.matches for bank_id in m.bank_ids]
        claimed_postings = [pid for m in outcome.matches for pid in m.posting_ids]
        assert len(claimed_bank) == len(set(claimed_bank))
        assert len(claimed_postings) == len(set(claimed_postings))

        assert set(claimed_bank) | set(outcome.unmatched_bank_ids) == {r.id for r in records}
        assert not set(claimed_bank) & set(outcome.unmatched_bank_ids)
        claimed_keys = {k for m in outcome.matches for k in m.group_keys}
        assert claimed_keys | set(outcome.unmatched_group_keys) == {g.group_key for g in groups}
        assert not claimed_keys & set(outcome.unmatched_group_keys)
