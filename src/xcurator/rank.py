"""Engagement ranking for posts and bounded leaderboard collections."""

from __future__ import annotations

import logging

from xcurator import config
from xcurator.models import TweetItem

logger = logging.getLogger(__name__)


def rank(items: list[TweetItem]) -> list[TweetItem]:
    """Sort descending by engagement score; ties keep their input order."""
    return sorted(items, key=lambda t: t.engagement_score, reverse=True)


def top(items: list[TweetItem], n: int) -> list[TweetItem]:
    return rank(items)[:n]


def merge_rank_cap(
    existing: list[TweetItem],
    incoming: list[TweetItem],
    cap: int = config.LEADERBOARD_CAP,
) -> list[TweetItem]:
    """Merge *incoming* into *existing* by id, rank by score and keep the top *cap*.

    An id present in both takes the incoming copy, so fresher engagement
    numbers win. Merging a result with nothing returns it unchanged.
    """
    by_id: dict[str, TweetItem] = {item.id: item for item in existing}
    for item in incoming:
        by_id[item.id] = item

    ranked = rank(list(by_id.values()))[:cap]
    merged = [item.model_copy(update={"rank": i + 1}) for i, item in enumerate(ranked)]
    logger.info(
        "Merged %d existing + %d incoming → %d kept (cap %d); top score=%d",
        len(existing),
        len(incoming),
        len(merged),
        cap,
        merged[0].engagement_score if merged else 0,
    )
    return merged
