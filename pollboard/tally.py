"""
Vote counting for poll details and results.
"""

from __future__ import annotations

from collections import Counter
from typing import Iterable, Optional

from pollboard.db import PollRecord, VoteRecord
from pollboard.validation import is_poll_expired


def poll_status(poll: PollRecord, now: Optional[float] = None) -> str:
    return "closed" if is_poll_expired(poll.expires_at, now) else "active"


def aggregate_votes(votes: Iterable[VoteRecord]) -> Counter:
    """Count selections per option id. A multi-select vote counts once per option."""
    counts: Counter = Counter()
    for vote in votes:
        counts.update(vote.option_ids)
    return counts


def build_option_results(
    poll: PollRecord, votes: list[VoteRecord]
) -> tuple[list[dict], int]:
    """
    Return per-option counts with whole-number percentages of all selections
    (halves round up),
    plus the selection total. Options nobody picked report zero.
    """
    counts = aggregate_votes(votes)
    total_selections = sum(counts[option["id"]] for option in poll.options)
    results = []
    for option in poll.options:
        count = counts[option["id"]]
        percentage = (
            (count * 200 + total_selections) // (2 * total_selections)
            if total_selections
            else 0
        )
        results.append(
            {
                "id": option["id"],
                "text": option["text"],
                "votes": count,
                "percentage": percentage,
            }
        )
    return results, total_selections


def user_selections(votes: Iterable[VoteRecord], user_id: Optional[str]) -> list[int]:
    if not user_id:
        return []
    selected: list[int] = []
    for vote in votes:
        if vote.user_id == user_id:
            selected.extend(i for i in vote.option_ids if i not in selected)
    return selected
