"""Deduplication logic: drop posts already emitted by earlier runs."""

from __future__ import annotations

import logging

from xcurator.models import TweetItem

logger = logging.getLogger(__name__)


def dedupe(items: list[TweetItem], seen: set[str]) -> list[TweetItem]:
    """Return posts whose URL is not in *seen*, first occurrence winning.

    Every processed URL, new or not, is added to *seen*.
    """
    new_items: list[TweetItem] = []
    for item in items:
        if item.url in seen:
            continue
        seen.add(item.url)
        new_items.append(item)
    logger.info(
        "Dedupe: %d total → %d new (filtered %d seen)",
        len(items),
        len(new_items),
        len(items) - len(new_items),
    )
    return new_items


def unique_by_id(items: list[TweetItem]) -> list[TweetItem]:
    """Drop repeated post ids, keeping the first."""
    by_id: dict[str, TweetItem] = {}
    for item in items:
        by_id.setdefault(item.id, item)
    return list(by_id.values())
