"""Run retrieval queries against the search backend, widening the window when empty."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Protocol

from xcurator import config
from xcurator.grok_client import BackendResponse
from xcurator.models import (
    ProgressEvent,
    RetrievalBatch,
    RetrievalQuery,
    RetrievalResult,
    TimeWindow,
    TokenUsage,
    TweetItem,
)
from xcurator.retry import MAX_ATTEMPTS, call_with_retry
from xcurator.salvage import salvage
from xcurator.scope import next_window

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], Any]


class SearchBackend(Protocol):
    def search(self, query: RetrievalQuery, window: TimeWindow) -> BackendResponse: ...


def passes_thresholds(item: TweetItem, query: RetrievalQuery) -> bool:
    if query.min_views is not None and item.views < query.min_views:
        return False
    if query.min_likes is not None and item.likes < query.min_likes:
        return False
    return True


def notify(on_progress: ProgressCallback | None, event: ProgressEvent) -> None:
    """Deliver *event* to the subscriber; a failing subscriber is logged and ignored."""
    if on_progress is None:
        return
    try:
        on_progress(event)
    except Exception:
        logger.exception("Progress subscriber failed on %s event", event.type)


class Retriever:
    """Executes :class:`RetrievalQuery` objects to completion.

    Each window is tried under the retry policy. An empty (post-filter) answer
    widens the window until one yields posts or the widest window is spent,
    in which case the empty result is returned as a success.
    """

    def __init__(
        self,
        backend: SearchBackend,
        *,
        max_attempts: int = MAX_ATTEMPTS,
        timeout: float = config.QUERY_TIMEOUT_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._max_attempts = max_attempts
        self._timeout = timeout
        self._sleep = sleep

    # ── public ──────────────────────────────────────────────────────────
    async def retrieve(
        self,
        query: RetrievalQuery,
        on_progress: ProgressCallback | None = None,
    ) -> RetrievalResult:
        window: TimeWindow = query.time_window
        tokens = TokenUsage()

        while True:
            response = await self._attempt(query, window, on_progress)
            tokens = tokens + response.tokens

            salvaged = salvage(
                response.text,
                search_name=query.name,
                source_type=query.source_type,
                source_value=query.source_value,
            )
            kept = [item for item in salvaged if passes_thresholds(item, query)]
            dropped = len(salvaged) - len(kept)
            if dropped:
                logger.info("[%s/%s] filtered out %d below threshold", query.name, window, dropped)
            notify(
                on_progress,
                ProgressEvent(
                    type="response",
                    query=query.name,
                    window=window,
                    found=len(salvaged),
                    filtered=dropped,
                    tokens=response.tokens,
                ),
            )

            if kept:
                logger.info("[%s] %d posts in %s window", query.name, len(kept), window)
                return RetrievalResult(
                    query_name=query.name, items=kept, tokens=tokens, final_window=window
                )

            wider = next_window(window)
            if wider is None:
                logger.info("[%s] no posts even at %s; giving up", query.name, window)
                return RetrievalResult(
                    query_name=query.name, items=[], tokens=tokens, final_window=window
                )
            logger.info("[%s] nothing in %s; expanding to %s", query.name, window, wider)
            notify(
                on_progress,
                ProgressEvent(
                    type="expanding",
                    query=query.name,
                    window=wider,
                    message=f"No results in {window}, expanding to {wider}",
                ),
            )
            window = wider

    async def retrieve_all(
        self,
        queries: Iterable[RetrievalQuery],
        on_progress: ProgressCallback | None = None,
    ) -> RetrievalBatch:
        """Run *queries* one after another; a failing query never stops the rest."""
        batch = RetrievalBatch()
        for query in queries:
            try:
                result = await self.retrieve(query, on_progress)
            except Exception as err:
                logger.error("Query [%s] failed: %s", query.name, err)
                batch.errors[query.name] = str(err)
                notify(
                    on_progress,
                    ProgressEvent(type="source-error", query=query.name, message=str(err)),
                )
                continue
            batch.results[query.name] = result
            notify(
                on_progress,
                ProgressEvent(
                    type="source-complete",
                    query=query.name,
                    window=result.final_window,
                    found=len(result.items),
                    tokens=result.tokens,
                ),
            )

        total = batch.tokens
        logger.info(
            "Retrieved %d posts from %d/%d queries (tokens in=%d out=%d)",
            len(batch.items),
            len(batch.results),
            len(batch.results) + len(batch.errors),
            total.input,
            total.output,
        )
        notify(
            on_progress,
            ProgressEvent(
                type="complete",
                found=len(batch.items),
                tokens=total,
                message=f"{len(batch.errors)} query(ies) failed" if batch.errors else "",
            ),
        )
        return batch

    # ── private ─────────────────────────────────────────────────────────
    async def _attempt(
        self,
        query: RetrievalQuery,
        window: TimeWindow,
        on_progress: ProgressCallback | None,
    ) -> BackendResponse:
        def started(attempt: int) -> None:
            notify(
                on_progress,
                ProgressEvent(type="attempt", query=query.name, window=window, attempt=attempt),
            )

        async def call() -> BackendResponse:
            return await asyncio.wait_for(
                asyncio.to_thread(self._backend.search, query, window),
                timeout=self._timeout,
            )

        return await call_with_retry(
            call,
            label=f"Grok [{query.name}/{window}]",
            max_attempts=self._max_attempts,
            sleep=self._sleep,
            on_attempt=started,
        )
