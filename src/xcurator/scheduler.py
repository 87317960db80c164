"""Periodic leaderboard scraping."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from xcurator import config
from xcurator.guard import ScrapeInProgressError
from xcurator.leaderboard import LeaderboardService
from xcurator.models import Leaderboard
from xcurator.service import utcnow

logger = logging.getLogger(__name__)


class SchedulerHandle:
    """Owns the background task that keeps leaderboards fresh.

    Every *poll_seconds* it scrapes each leaderboard whose last scrape is
    older than *interval_hours*, one at a time. Created once at startup and
    stopped explicitly.
    """

    def __init__(
        self,
        service: LeaderboardService,
        *,
        interval_hours: int = config.SCRAPE_INTERVAL_HOURS,
        poll_seconds: float = config.SCHEDULER_POLL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not 1 <= interval_hours <= 168:
            raise ValueError("interval_hours must be between 1 and 168")
        self._service = service
        self._interval = timedelta(hours=interval_hours)
        self._poll_seconds = poll_seconds
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start polling; the first pass runs right away."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="xcurator-scheduler")
        logger.info(
            "Scheduler started (every %s, polling every %ss)", self._interval, self._poll_seconds
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Scheduler stopped")

    def is_due(self, board: Leaderboard, now: datetime) -> bool:
        return board.last_scraped_at is None or board.last_scraped_at + self._interval <= now

    async def run_due(self) -> list[str]:
        """Scrape every due, unlocked leaderboard; return the ids that succeeded."""
        now = self._clock()
        boards = self._service.list_all()
        logger.info("Checking %d leaderboard(s)", len(boards))

        scraped: list[str] = []
        for board in boards:
            if not self.is_due(board, now):
                continue
            try:
                if self._service.is_scraping(board.id):
                    logger.info("Leaderboard %s is already scraping; skipping", board.id)
                    continue
                await self._service.scrape(board.id)
            except ScrapeInProgressError:
                logger.info("Leaderboard %s started scraping elsewhere; skipping", board.id)
            except Exception:
                logger.exception("Scheduled scrape of leaderboard %s failed", board.id)
            else:
                scraped.append(board.id)
        return scraped

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_due()
            except Exception:
                logger.exception("Scheduler pass failed")
            await asyncio.sleep(self._poll_seconds)
