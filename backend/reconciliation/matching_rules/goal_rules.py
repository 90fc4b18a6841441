"""
Goal Matching Rules

Multi-pass matcher pairing bank records with ledger transaction groups
for a single goal. Each pass only sees items no earlier pass claimed.

Passes:
0. MANUAL - operator overrides, always honoured first
1. EXACT - same source transaction id, same type, amount within tolerance
2. AMOUNT - same type, amount within tolerance, inside the date window
3. SPLIT_BANK_TO_GROUP - several bank records on one day sum to one group
4. SPLIT_GROUP_TO_BANK - several groups on one day sum to one bank record
5. Source id pairing - same source id and type, amount outside tolerance
   (reported as EXACT with reduced confidence so the classifier records
   a TOTAL_AMOUNT variance)

Confidence:
- MANUAL / EXACT: 1.0
- AMOUNT: 0.8 scaled down linearly to 0.5 at the edge of the window
- SPLIT: 0.7
- Source id pairing: 0.5
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Set, Tuple

from reconciliation.models import (
    BankRecord,
    GoalTransactionGroup,
    MatchReference,
    MatchResult,
    MatchType,
)
from reconciliation.tolerance import TolerancePolicy

# Subset enumeration is exponential; only this many candidates are searched
MAX_EXHAUSTIVE_ITEMS = 10

CONFIDENCE_EXACT = 1.0
CONFIDENCE_AMOUNT_MAX = 0.8
CONFIDENCE_AMOUNT_SPAN = 0.3
CONFIDENCE_SPLIT = 0.7
CONFIDENCE_SOURCE_ID_ONLY = 0.5


def find_combination_sum(
    items: Sequence[Tuple[str, Decimal]],
    target: Decimal,
    tolerance: Decimal,
    limit: int = MAX_EXHAUSTIVE_ITEMS
) -> List[str]:
    """
    Find more than one item whose amounts sum to target within tolerance.

    Greedy first (largest amounts first), then every subset of the first
    `limit` items in bitmask order. Candidates beyond `limit` are never
    considered by the exhaustive step, so a valid combination can be missed
    when many same-day records exist.

    Args:
        items: (id, amount) pairs
        target: Amount to reach
        tolerance: Allowed absolute difference from target
        limit: Cap on items enumerated exhaustively

    Returns:
        Ids of the combination (always more than one), or [] if none found
    """
    if len(items) < 2:
        return []

    # Work on magnitudes so withdrawals stored as negatives search the same way
    sign = Decimal("-1") if target < 0 else Decimal("1")
    target = target * sign
    ordered = sorted(
        ((item_id, amount * sign) for item_id, amount in items),
        key=lambda item: item[1],
        reverse=True,
    )

    chosen: List[str] = []
    running = Decimal("0")
    for item_id, amount in ordered:
        if running + amount <= target + tolerance:
            chosen.append(item_id)
            running += amount
            if abs(running - target) <= tolerance and len(chosen) > 1:
                return chosen

    candidates = ordered[:limit]
    n = len(candidates)
    for mask in range(1, 1 << n):
        subset = [candidates[i] for i in range(n) if mask & (1 << i)]
        if len(subset) < 2:
            continue
        total = sum((amount for _, amount in subset), Decimal("0"))
        if abs(total - target) <= tolerance:
            return [item_id for item_id, _ in subset]

    return []


@dataclass
class MatchOutcome:
    """Result of matching one goal's records."""
    matches: List[MatchResult] = field(default_factory=list)
    unmatched_bank_ids: List[str] = field(default_factory=list)
    unmatched_group_keys: List[str] = field(default_factory=list)

    def matches_of_type(self, match_type: MatchType) -> List[MatchResult]:
        return [m for m in self.matches if m.match_type == match_type]


class GoalMatchingRules:
    """
    Multi-pass matcher for one goal.

    Manual references take precedence: no algorithmic pass claims a bank
    record carrying a MANUAL reference or a posting of a group that any
    manual reference names.
    """

    def __init__(self, policy: Optional[TolerancePolicy] = None):
        self.policy = policy or TolerancePolicy()

    @property
    def config(self):
        return self.policy.config

    def match(
        self,
        bank_records: Sequence[BankRecord],
        groups: Sequence[GoalTransactionGroup],
        reserved_group_keys: Optional[Set[str]] = None
    ) -> MatchOutcome:
        """
        Run every pass over one goal's bank records and ledger groups.

        Args:
            bank_records: Bank records in processing order
            groups: Ledger groups in processing order
            reserved_group_keys: Groups named by manual references held by
                bank records outside this run; never claimed algorithmically

        Returns:
            MatchOutcome with matches and leftovers on both sides
        """
        outcome = MatchOutcome()
        claimed_bank: Set[str] = set()
        claimed_groups: Set[str] = set()
        groups_by_key = OrderedDict((g.group_key, g) for g in groups)

        self._match_manual(bank_records, groups_by_key, claimed_bank, claimed_groups, outcome)
        reserved = set(reserved_group_keys or ()) - claimed_groups
        claimed_groups.update(reserved)
        self._match_exact(bank_records, groups, claimed_bank, claimed_groups, outcome)
        self._match_amount(bank_records, groups, claimed_bank, claimed_groups, outcome)
        self._match_split_bank_to_group(bank_records, groups, claimed_bank, claimed_groups, outcome)
        self._match_split_group_to_bank(bank_records, groups, claimed_bank, claimed_groups, outcome)
        self._pair_by_source_id(bank_records, groups, claimed_bank, claimed_groups, outcome)

        outcome.unmatched_bank_ids = [r.id for r in bank_records if r.id not in claimed_bank]
        outcome.unmatched_group_keys = [
            g.group_key for g in groups
            if g.group_key not in claimed_groups and g.group_key not in reserved
        ]
        return outcome

    # ==================== Pass 0: manual ====================

    def _match_manual(
        self,
        bank_records: Sequence[BankRecord],
        groups_by_key: Dict[str, GoalTransactionGroup],
        claimed_bank: Set[str],
        claimed_groups: Set[str],
        outcome: MatchOutcome
    ):
        by_reference: Dict[Tuple[str, ...], List[BankRecord]] = OrderedDict()
        for record in bank_records:
            if record.has_manual_match:
                by_reference.setdefault(record.match_reference.group_keys, []).append(record)

        for group_keys, records in by_reference.items():
            present = [groups_by_key[k] for k in group_keys if k in groups_by_key]
            for record in records:
                claimed_bank.add(record.id)
            for group in present:
                claimed_groups.add(group.group_key)

            outcome.matches.append(MatchResult(
                bank_ids=[r.id for r in records],
                posting_ids=[pid for g in present for pid in g.posting_ids],
                group_keys=list(group_keys),
                match_type=MatchType.MANUAL,
                confidence=CONFIDENCE_EXACT,
                bank_total=sum((r.total_amount for r in records), Decimal("0")),
                group_total=sum((g.total_amount for g in present), Decimal("0")),
            ))

    # ==================== Pass 1: exact ====================

    def _match_exact(self, bank_records, groups, claimed_bank, claimed_groups, outcome):
        for record in bank_records:
            if record.id in claimed_bank:
                continue
            for group in groups:
                if group.group_key in claimed_groups:
                    continue
                if (
                    group.source_transaction_id == record.source_transaction_id
                    and group.transaction_type == record.transaction_type
                    and self.policy.amounts_match(record.total_amount, group.total_amount)
                ):
                    self._claim(
                        [record], [group], MatchType.EXACT, CONFIDENCE_EXACT,
                        claimed_bank, claimed_groups, outcome
                    )
                    break

    # ==================== Pass 2: amount within date window ====================

    def _match_amount(self, bank_records, groups, claimed_bank, claimed_groups, outcome):
        window = self.config.date_window_days
        for record in bank_records:
            if record.id in claimed_bank:
                continue
            for group in groups:
                if group.group_key in claimed_groups:
                    continue
                if group.transaction_type != record.transaction_type:
                    continue
                days_apart = abs((record.transaction_date - group.transaction_date).days)
                if days_apart > window:
                    continue
                if self.policy.amounts_match(record.total_amount, group.total_amount):
                    confidence = CONFIDENCE_AMOUNT_MAX
                    if window:
                        confidence -= (days_apart / window) * CONFIDENCE_AMOUNT_SPAN
                    self._claim(
                        [record], [group], MatchType.AMOUNT, confidence,
                        claimed_bank, claimed_groups, outcome
                    )
                    break

    # ==================== Pass 3: splits ====================

    def _match_split_bank_to_group(self, bank_records, groups, claimed_bank, claimed_groups, outcome):
        for group in groups:
            if group.group_key in claimed_groups:
                continue
            candidates = [
                r for r in bank_records
                if r.id not in claimed_bank
                and r.transaction_date == group.transaction_date
                and r.transaction_type == group.transaction_type
            ]
            if len(candidates) < 2:
                continue

            chosen_ids = find_combination_sum(
                [(r.id, r.total_amount) for r in candidates],
                group.total_amount,
                self.policy.tolerance_for(group.total_amount),
                self.config.split_search_limit,
            )
            if len(chosen_ids) > 1:
                by_id = {r.id: r for r in candidates}
                self._claim(
                    [by_id[i] for i in chosen_ids], [group], MatchType.SPLIT_BANK_TO_GROUP,
                    CONFIDENCE_SPLIT, claimed_bank, claimed_groups, outcome
                )

    def _match_split_group_to_bank(self, bank_records, groups, claimed_bank, claimed_groups, outcome):
        for record in bank_records:
            if record.id in claimed_bank:
                continue
            candidates = [
                g for g in groups
                if g.group_key not in claimed_groups
                and g.transaction_date == record.transaction_date
                and g.transaction_type == record.transaction_type
            ]
            if len(candidates) < 2:
                continue

            chosen_keys = find_combination_sum(
                [(g.group_key, g.total_amount) for g in candidates],
                record.total_amount,
                self.policy.tolerance_for(record.total_amount),
                self.config.split_search_limit,
            )
            if len(chosen_keys) > 1:
                by_key = {g.group_key: g for g in candidates}
                self._claim(
                    [record], [by_key[k] for k in chosen_keys], MatchType.SPLIT_GROUP_TO_BANK,
                    CONFIDENCE_SPLIT, claimed_bank, claimed_groups, outcome
                )

    # ==================== Pass 4: source id outside tolerance ====================

    def _pair_by_source_id(self, bank_records, groups, claimed_bank, claimed_groups, outcome):
        for record in bank_records:
            if record.id in claimed_bank:
                continue
            for group in groups:
                if group.group_key in claimed_groups:
                    continue
                if (
                    group.source_transaction_id == record.source_transaction_id
                    and group.transaction_type == record.transaction_type
                ):
                    self._claim(
                        [record], [group], MatchType.EXACT, CONFIDENCE_SOURCE_ID_ONLY,
                        claimed_bank, claimed_groups, outcome,
                        within_tolerance=False,
                    )
                    break

    # ==================== Helpers ====================

    def _claim(
        self,
        records: List[BankRecord],
        groups: List[GoalTransactionGroup],
        match_type: MatchType,
        confidence: float,
        claimed_bank: Set[str],
        claimed_groups: Set[str],
        outcome: MatchOutcome,
        within_tolerance: bool = True
    ):
        for record in records:
            claimed_bank.add(record.id)
        for group in groups:
            claimed_groups.add(group.group_key)

        outcome.matches.append(MatchResult(
            bank_ids=[r.id for r in records],
            posting_ids=[pid for g in groups for pid in g.posting_ids],
            group_keys=[g.group_key for g in groups],
            match_type=match_type,
            confidence=confidence,
            bank_total=sum((r.total_amount for r in records), Decimal("0")),
            group_total=sum((g.total_amount for g in groups), Decimal("0")),
            amount_within_tolerance=within_tolerance,
        ))


def reference_for(match: MatchResult, created_by: str = "system", created_at=None) -> MatchReference:
    """MatchReference to persist on the bank records of a match."""
    return MatchReference(
        match_type=match.match_type,
        group_keys=tuple(match.group_keys),
        created_by=created_by,
        created_at=created_at,
    )
