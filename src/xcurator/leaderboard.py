"""Leaderboard driver: merge scrapes into a capped ranking, then draft replies."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from xcurator import config
from xcurator.dedupe import unique_by_id
from xcurator.guard import ConcurrencyGuard
from xcurator.llm import LLMWriter
from xcurator.models import (
    Leaderboard,
    LeaderboardSource,
    ProgressEvent,
    RetrievalQuery,
    TimeWindow,
    TweetItem,
)
from xcurator.rank import merge_rank_cap, top
from xcurator.retriever import ProgressCallback, Retriever, notify
from xcurator.retry import UpstreamError
from xcurator.service import PersonaLoader, WorkflowService, new_id, utcnow
from xcurator.store import CuratorStore
from xcurator.workflow import LEADERBOARD_MACHINE, Action, InvalidTransitionError

logger = logging.getLogger(__name__)

_SETTINGS = {"name", "persona", "max_tweets_per_source", "min_views", "min_likes", "time_window"}


def source_query(source: LeaderboardSource, board: Leaderboard) -> RetrievalQuery:
    """Translate one leaderboard source into a retrieval query."""
    if source.type == "handle":
        handle = source.value.strip().lstrip("@")
        return RetrievalQuery(
            name=source.label or f"@{handle}",
            goal_text=f"Top tweets from @{handle}",
            time_window=board.time_window,
            max_results=board.max_tweets_per_source,
            min_views=board.min_views,
            min_likes=board.min_likes,
            handles=[handle],
            source_type="handle",
            source_value=handle,
        )
    topic = source.value.strip()
    return RetrievalQuery(
        name=source.label or topic,
        goal_text=topic,
        time_window=board.time_window,
        max_results=board.max_tweets_per_source,
        min_views=board.min_views,
        min_likes=board.min_likes,
        source_type="topic",
        source_value=topic,
    )


def source_queries(board: Leaderboard) -> list[RetrievalQuery]:
    """One query per source; repeated names get a numeric suffix."""
    queries: list[RetrievalQuery] = []
    used: set[str] = set()
    for source in board.sources:
        query = source_query(source, board)
        name, n = query.name, 2
        while name in used:
            name, n = f"{query.name} ({n})", n + 1
        used.add(name)
        queries.append(query.model_copy(update={"name": name}))
    return queries


class LeaderboardService(WorkflowService[Leaderboard]):
    kind = "leaderboard"
    model = Leaderboard
    machine = LEADERBOARD_MACHINE

    def __init__(
        self,
        store: CuratorStore,
        guard: ConcurrencyGuard,
        retriever: Retriever,
        writer: LLMWriter | None,
        *,
        personas: PersonaLoader,
        interval_hours: int = config.SCRAPE_INTERVAL_HOURS,
        cap: int = config.LEADERBOARD_CAP,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(store, guard, retriever, writer, personas=personas, clock=clock)
        self.interval = timedelta(hours=interval_hours)
        self._cap = cap

    # ── CRUD ────────────────────────────────────────────────────────────

    def create(
        self,
        name: str,
        sources: list[LeaderboardSource],
        *,
        max_tweets_per_source: int = 10,
        min_views: int | None = None,
        min_likes: int | None = None,
        time_window: TimeWindow = TimeWindow.H48,
        persona: str | None = None,
    ) -> Leaderboard:
        board = Leaderboard(
            id=new_id(),
            name=name,
            sources=sources,
            max_tweets_per_source=max_tweets_per_source,
            min_views=min_views,
            min_likes=min_likes,
            time_window=time_window,
            persona=persona,
        )
        self._store.save_workflow(board)
        logger.info("Created leaderboard %s with %d source(s)", board.id, len(sources))
        return board

    def update_settings(self, board_id: str, **changes: Any) -> Leaderboard:
        """Change scrape settings; the collection and stage are left alone."""
        unknown = set(changes) - _SETTINGS
        if unknown:
            raise ValueError(f"Unknown leaderboard setting(s): {', '.join(sorted(unknown))}")
        return self._update(board_id, changes)

    def update_sources(self, board_id: str, sources: list[LeaderboardSource]) -> Leaderboard:
        return self._update(board_id, {"sources": sources})

    def top(self, board_id: str, n: int = 10) -> list[TweetItem]:
        return top(self.get(board_id).items, n)

    # ── automated stages ────────────────────────────────────────────────

    async def scrape(self, board_id: str, on_progress: ProgressCallback | None = None) -> Leaderboard:
        """Query every source and merge the posts into the ranked collection."""
        board = self.get(board_id)
        self.machine.check(board, Action.SCRAPE)
        queries = source_queries(board)

        async with self._guard.hold(board_id):
            batch = await self._retriever.retrieve_all(queries, on_progress)
            if not batch.results:
                message = "; ".join(f"{name}: {err}" for name, err in batch.errors.items())
                notify(on_progress, ProgressEvent(type="error", message=message))
                raise UpstreamError(f"Every source failed: {message}")

            incoming = unique_by_id(batch.items)
            merged = merge_rank_cap(self._store.load_collection(board_id), incoming, self._cap)
            board = self.machine.apply(
                self.get(board_id), Action.SCRAPE, items=merged, tokens=batch.tokens
            )
            now = self._clock()
            board = board.model_copy(
                update={
                    "tokens_used": board.tokens_used + batch.tokens,
                    "last_scraped_at": now,
                    "next_scheduled_at": now + self.interval,
                }
            )
            self._store.save_workflow(board)
            logger.info(
                "Leaderboard %s: %d new posts, %d in collection (tokens in=%d out=%d)",
                board_id,
                len(incoming),
                len(merged),
                batch.tokens.input,
                batch.tokens.output,
            )
        return self.get(board_id)

    def select(self, board_id: str, item_id: str) -> Leaderboard:
        return self._transition(self.get(board_id), Action.SELECT, ids=[item_id])

    async def generate(self, board_id: str) -> Leaderboard:
        """Draft one reply per tone for the selected post, replacing earlier drafts."""
        board = self.get(board_id)
        self.machine.check(board, Action.GENERATE)
        persona = self._persona(board.persona) if board.persona else None
        samples, tokens = await self.writer.suggest_replies(board.selected_items()[0], persona)
        board = self.machine.apply(self.get(board_id), Action.GENERATE, samples=samples, tokens=tokens)
        board = board.model_copy(update={"tokens_used": board.tokens_used + tokens})
        self._store.save_workflow(board)
        return board

    # ── private ─────────────────────────────────────────────────────────

    def _update(self, board_id: str, changes: dict[str, Any]) -> Leaderboard:
        board = self.get(board_id)
        try:
            updated = Leaderboard.model_validate(
                {**board.model_dump(), **changes, "updated_at": self._clock()}
            )
        except ValidationError as err:
            raise ValueError(f"Invalid leaderboard settings: {err}") from err
        self._store.save_workflow(updated)
        logger.info("Updated leaderboard %s: %s", board_id, ", ".join(sorted(changes)))
        return updated

    async def _run_follow_up(self, workflow: Leaderboard, action: Action) -> Leaderboard:
        if action is Action.SCRAPE:
            return await self.scrape(workflow.id)
        if action is Action.GENERATE:
            return await self.generate(workflow.id)
        raise InvalidTransitionError(f"A leaderboard cannot {action}")
