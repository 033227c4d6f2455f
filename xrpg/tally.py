"""Vote tallying for chapter decisions."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from .models import ChapterVote, TallyResult

logger = logging.getLogger(__name__)


def _ballots(votes: List[ChapterVote], count_policy: str) -> List[ChapterVote]:
    if count_policy == "all":
        return votes
    chosen: Dict[str, ChapterVote] = {}
    for vote in votes:
        if count_policy == "first":
            chosen.setdefault(vote.user_id, vote)
        else:
            chosen[vote.user_id] = vote
    return sorted(chosen.values(), key=_order_key)


def _order_key(vote: ChapterVote) -> Tuple[datetime, int]:
    return (vote.voted_at, vote.id)


def tally_votes(
    option_count: int,
    votes: Iterable[ChapterVote],
    *,
    default_option: int = 0,
    cutoff: Optional[datetime] = None,
    count_policy: str = "all",
) -> TallyResult:
    """Pick the winning option for a chapter.

    The highest count wins. A tie goes to the option whose earliest counted
    vote came first, then to the lowest option index. The result depends only
    on the persisted votes, never on the order they are passed in.
    """

    if option_count < 1:
        raise ValueError("A chapter needs at least one option to tally")
    if count_policy not in ("all", "latest", "first"):
        raise ValueError(f"Unknown count policy {count_policy!r}")

    ordered = sorted(votes, key=_order_key)
    valid: List[ChapterVote] = []
    discarded = 0
    for vote in ordered:
        if cutoff is not None and vote.voted_at > cutoff:
            continue
        if not 0 <= vote.selected_option < option_count:
            discarded += 1
            logger.warning(
                "Discarding vote %s on chapter %s: option %s outside 0..%s",
                vote.id,
                vote.chapter_id,
                vote.selected_option,
                option_count - 1,
            )
            continue
        valid.append(vote)

    ballots = _ballots(valid, count_policy)
    counts = [0] * option_count
    first_seen: Dict[int, Tuple[datetime, int]] = {}
    for ballot in ballots:
        counts[ballot.selected_option] += 1
        first_seen.setdefault(ballot.selected_option, _order_key(ballot))

    if not ballots:
        fallback = min(max(default_option, 0), option_count - 1)
        return TallyResult(
            winning_option=fallback,
            vote_counts=counts,
            participation=0,
            discarded=discarded,
            used_default=True,
        )

    top = max(counts)
    tied = [index for index, count in enumerate(counts) if count == top]
    winner = min(tied, key=lambda index: (first_seen[index], index))
    return TallyResult(
        winning_option=winner,
        vote_counts=counts,
        participation=len({ballot.user_id for ballot in ballots}),
        discarded=discarded,
        tied_options=tied if len(tied) > 1 else [],
    )


__all__ = ["tally_votes"]
