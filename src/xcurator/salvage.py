"""Recover post records from model output that may be fenced, truncated or junk.

The search backend is asked for a bare JSON array but regularly wraps it in a
code fence, runs out of output tokens half-way through an object, or answers
in prose. :func:`salvage` treats all of these as data: it returns whatever
records can be recovered and never raises.

The brace scan does not understand string literals, so a ``{`` or ``}`` inside
a post's text can split or swallow an object. Payloads seen in practice carry
no literal braces, and callers must not rely on anything stronger.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from xcurator.models import SourceType, TweetItem

logger = logging.getLogger(__name__)

_OPEN_FENCE_RE = re.compile(r"^```(?:json)?\n?")
_CLOSE_FENCE_RE = re.compile(r"\n?```$")


def strip_fences(text: str) -> str:
    """Remove one leading ```` ``` ```` / ```` ```json ```` fence and one trailing fence."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _OPEN_FENCE_RE.sub("", cleaned, count=1)
        cleaned = _CLOSE_FENCE_RE.sub("", cleaned, count=1)
    return cleaned


def _scan_objects(text: str) -> list[Any]:
    """Parse every balanced top-level ``{...}`` span; skip spans that don't parse."""
    objects: list[Any] = []
    depth = 0
    start = -1
    for i, ch in enumerate(text):
        if ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0 and start != -1:
                try:
                    objects.append(json.loads(text[start : i + 1]))
                except json.JSONDecodeError:
                    pass
                start = -1
    return objects


def extract_candidates(raw_text: str) -> list[Any]:
    """Return the raw JSON values that look like records, before validation."""
    cleaned = strip_fences(raw_text)
    if not cleaned:
        return []
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        objects = _scan_objects(cleaned)
        logger.warning(
            "Response was not valid JSON (%d chars); salvaged %d object(s)",
            len(cleaned),
            len(objects),
        )
        return objects

    if isinstance(parsed, list):
        return parsed
    logger.warning("Response JSON is a %s, not an array", type(parsed).__name__)
    return []


def salvage(
    raw_text: str,
    *,
    search_name: str = "",
    source_type: SourceType | None = None,
    source_value: str | None = None,
    scraped_at: datetime | None = None,
) -> list[TweetItem]:
    """Return every valid post recoverable from *raw_text*, stamped with provenance."""
    scraped_at = scraped_at or datetime.now(UTC)
    items: list[TweetItem] = []

    for candidate in extract_candidates(raw_text):
        if not isinstance(candidate, dict):
            logger.warning("Skipping non-object record: %r", candidate)
            continue
        record = {k: v for k, v in candidate.items() if k != "rank"}
        record.update(
            scrapedAt=scraped_at,
            searchName=search_name,
            sourceType=source_type,
            sourceValue=source_value,
        )
        try:
            items.append(TweetItem.model_validate(record))
        except ValidationError as err:
            logger.warning(
                "Skipping malformed post %r: %d validation error(s)",
                candidate.get("id"),
                err.error_count(),
            )

    if not items and raw_text.strip():
        logger.info("No usable posts in response (first 200 chars): %s", raw_text[:200])
    return items
