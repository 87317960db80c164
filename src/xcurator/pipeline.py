"""One-shot scrape pipeline: searches → retrieve → dedupe → rank → save."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from xcurator.dedupe import dedupe
from xcurator.models import ProgressEvent, SearchConfig, TweetItem
from xcurator.rank import rank
from xcurator.retriever import Retriever
from xcurator.store import CuratorStore

logger = logging.getLogger(__name__)


def log_progress(event: ProgressEvent) -> None:
    """Progress subscriber that narrates a run to the log."""
    if event.type == "attempt":
        logger.info("[%s] attempt %s (%s)", event.query, event.attempt, event.window)
    elif event.type == "response":
        logger.info(
            "[%s] %s: %s found, %s filtered", event.query, event.window, event.found, event.filtered
        )
    elif event.type == "expanding":
        logger.info("[%s] %s", event.query, event.message)
    elif event.type == "source-complete":
        logger.info("[%s] done: %s posts", event.query, event.found)
    elif event.type in ("source-error", "error"):
        logger.error("[%s] %s", event.query or "run", event.message)


def write_results(
    items: list[TweetItem], output_dir: Path, *, searches: list[str], errors: dict[str, str]
) -> Path:
    """Write *items* to ``scraped-<timestamp>.json`` in *output_dir*."""
    output_dir.mkdir(parents=True, exist_ok=True)
    now = datetime.now(UTC)
    path = output_dir / f"scraped-{now.strftime('%Y%m%d-%H%M%S')}.json"
    payload = {
        "scrapedAt": now.isoformat(),
        "searches": searches,
        "errors": errors,
        "tweets": [item.model_dump(mode="json", by_alias=True) for item in items],
    }
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    return path


async def run_pipeline(
    searches: list[SearchConfig],
    retriever: Retriever,
    store: CuratorStore,
    output_dir: Path,
) -> Path | None:
    """Run *searches* once and save the posts no earlier run has emitted."""
    logger.info("=== xcurator pipeline start [%d searches] ===", len(searches))

    # ── 1. Retrieve ───────────────────────────────────────────────────
    batch = await retriever.retrieve_all([s.to_query() for s in searches], log_progress)
    for name, result in batch.results.items():
        logger.info("  [%s] %d posts (window %s)", name, len(result.items), result.final_window)
    if not batch.items:
        logger.warning("No posts retrieved; exiting.")
        return None

    # ── 2. Dedupe against the seen-set ────────────────────────────────
    seen = store.load_seen_urls()
    new_items = dedupe(batch.items, seen)
    store.add_seen_urls(item.url for item in batch.items)
    if not new_items:
        logger.info("All posts already seen; nothing new.")
        return None

    # ── 3. Rank & save ────────────────────────────────────────────────
    ranked = rank(new_items)
    out_path = write_results(
        ranked, output_dir, searches=[s.name for s in searches], errors=batch.errors
    )
    for item in ranked[:10]:
        logger.info("  [%d] @%s: %s", item.engagement_score, item.handle.lstrip("@"), item.text[:100])

    tokens = batch.tokens
    logger.info(
        "=== xcurator pipeline done: %d new posts → %s (tokens in=%d out=%d) ===",
        len(ranked),
        out_path,
        tokens.input,
        tokens.output,
    )
    return out_path
