"""
Canonical Grouping Key

Ledger postings that belong to one logical money movement share a
grouping key:

    {YYYY-MM-DD}-{account}-{goal}-{source_transaction_id}-{channel}

The key is deterministic and doubles as an idempotency key for ingestion.

parse() reads fields from both ends of the key: the first three dash
separated fields are the date, the last three are goal, source id and
channel, and whatever remains in the middle is the account. This only
holds while goal, source id and channel contain no dash; account ids
may.
"""

import re
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Union

from reconciliation.errors import ValidationError
from reconciliation.models import GoalTransactionGroup, LedgerPosting, ReviewState

DELIMITER = "-"

KEY_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}(-[^-]+){1,}(-[^-]+){3}$")

DateLike = Union[date, datetime, str]


@dataclass(frozen=True)
class GroupingKeyParts:
    """Fields recovered from a grouping key."""
    transaction_date: date
    account_id: str
    goal_id: str
    source_transaction_id: str
    channel: str


def normalize_date(value: DateLike) -> str:
    """
    Normalize a date to YYYY-MM-DD.

    Accepts date/datetime objects, ISO dates and timestamps, and DD/MM/YYYY.

    Raises:
        ValidationError: value is not a recognisable date
    """
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = str(value or "").strip()
    if not text:
        raise ValidationError("Transaction date is required", field="transaction_date")

    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        pass

    try:
        return datetime.strptime(text, "%d/%m/%Y").date().isoformat()
    except ValueError:
        raise ValidationError(f"Invalid date format: {text}", field="transaction_date")


def generate(
    transaction_date: DateLike,
    account_id: str,
    goal_id: str,
    source_transaction_id: str,
    channel: str
) -> str:
    """
    Build the grouping key for a posting.

    Args:
        transaction_date: Posting date (date, datetime or string)
        account_id: Account number
        goal_id: Goal number
        source_transaction_id: Upstream transaction id
        channel: Channel the money moved through (e.g. MTN_MOMO, BANK)

    Returns:
        Canonical grouping key
    """
    parts = [normalize_date(transaction_date)]
    for name, value in (
        ("account_id", account_id),
        ("goal_id", goal_id),
        ("source_transaction_id", source_transaction_id),
        ("channel", channel),
    ):
        cleaned = str(value or "").strip()
        if not cleaned:
            raise ValidationError(f"{name} is required for grouping key", field=name)
        parts.append(cleaned)

    return DELIMITER.join(parts)


def validate(key: str) -> bool:
    """Check the key has a date prefix followed by at least four fields."""
    return bool(key) and KEY_PATTERN.match(key) is not None


def parse(key: str) -> Optional[GroupingKeyParts]:
    """
    Split a grouping key back into its fields.

    Returns None when the key does not validate.
    """
    if not validate(key):
        return None

    parts = key.split(DELIMITER)
    try:
        transaction_date = date(int(parts[0]), int(parts[1]), int(parts[2]))
    except ValueError:
        return None

    return GroupingKeyParts(
        transaction_date=transaction_date,
        account_id=DELIMITER.join(parts[3:-3]),
        goal_id=parts[-3],
        source_transaction_id=parts[-2],
        channel=parts[-1],
    )


def extract_date(key: str) -> Optional[date]:
    parsed = parse(key)
    return parsed.transaction_date if parsed else None


def key_for_posting(posting: LedgerPosting) -> str:
    """The posting's stored key, or the one its fields generate."""
    if posting.group_key:
        return posting.group_key
    return generate(
        posting.transaction_date,
        posting.account_id,
        posting.goal_id,
        posting.source_transaction_id,
        posting.channel,
    )


def group_by_code(postings: Iterable[LedgerPosting]) -> Dict[str, List[LedgerPosting]]:
    """Group postings by key, preserving first-seen order."""
    groups: Dict[str, List[LedgerPosting]] = OrderedDict()
    for posting in postings:
        groups.setdefault(key_for_posting(posting), []).append(posting)
    return groups


def build_group(group_key: str, postings: List[LedgerPosting]) -> GoalTransactionGroup:
    """
    Aggregate the postings of one key into a GoalTransactionGroup.

    Raises:
        ValidationError: postings disagree on type, date or source id
    """
    if not postings:
        raise ValidationError(f"Group {group_key} has no postings", field="group_key")

    first = postings[0]
    total = Decimal("0")
    instrument_amounts = {}
    review = ReviewState()

    for posting in postings:
        if (
            posting.transaction_type != first.transaction_type
            or posting.transaction_date != first.transaction_date
            or posting.source_transaction_id != first.source_transaction_id
        ):
            raise ValidationError(
                f"Posting {posting.id} does not agree with group {group_key}",
                field="group_key",
                record_id=posting.id,
            )
        total += posting.amount
        instrument_amounts[posting.instrument_code] = (
            instrument_amounts.get(posting.instrument_code, Decimal("0")) + posting.amount
        )
        if review.review_tag is None and posting.review.review_tag is not None:
            review = posting.review

    return GoalTransactionGroup(
        group_key=group_key,
        goal_id=first.goal_id,
        source_transaction_id=first.source_transaction_id,
        transaction_type=first.transaction_type,
        transaction_date=first.transaction_date,
        total_amount=total,
        instrument_amounts=instrument_amounts,
        posting_ids=[p.id for p in postings],
        review=review,
    )


def build_groups(postings: Iterable[LedgerPosting]) -> List[GoalTransactionGroup]:
    """Aggregate postings into groups, in first-seen key order."""
    return [build_group(key, members) for key, members in group_by_code(postings).items()]
