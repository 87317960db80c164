"""Per-target scrape lock with stale-lock recovery."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

from xcurator import config
from xcurator.store import CuratorStore

logger = logging.getLogger(__name__)

STALE_REASON = "Scrape timed out (stale lock recovered)"
CANCELLED_REASON = "Scrape cancelled (connection lost)"


class ScrapeInProgressError(Exception):
    """Raised when a scrape is requested for a target that is already scraping."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ConcurrencyGuard:
    """Serializes scrapes per target using the lock columns of the workflow row.

    A lock older than *timeout* is assumed to belong to a crashed or killed
    run and is released before any new acquisition.
    """

    def __init__(
        self,
        store: CuratorStore,
        *,
        timeout: timedelta = timedelta(minutes=config.STALE_LOCK_MINUTES),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._timeout = timeout
        self._clock = clock

    # ── public ──────────────────────────────────────────────────────────
    def try_start(self, target_id: str) -> bool:
        self.recover_stale()
        acquired = self._store.try_acquire_lock(target_id, self._clock())
        if acquired:
            logger.debug("Lock acquired for %s", target_id)
        return acquired

    def finish(self, target_id: str, error: str | None = None) -> None:
        self._store.release_lock(target_id, error)
        logger.debug("Lock released for %s%s", target_id, f" ({error})" if error else "")

    def is_running(self, target_id: str) -> bool:
        started = self._store.lock_started_at(target_id)
        if started is None:
            return self._store.is_locked(target_id)
        return self._clock() - started <= self._timeout

    def recover_stale(self) -> list[str]:
        released = self._store.release_stale_locks(self._clock() - self._timeout, STALE_REASON)
        for target_id in released:
            logger.warning("Recovered stale scrape lock for %s", target_id)
        return released

    @asynccontextmanager
    async def hold(self, target_id: str) -> AsyncGenerator[None, None]:
        """Hold the lock for *target_id* for the duration of the block.

        Raises :class:`ScrapeInProgressError` if another run holds it. Any
        failure inside the block, cancellation included, releases the lock
        with the error recorded and propagates.
        """
        if not self.try_start(target_id):
            raise ScrapeInProgressError(f"A scrape is already running for {target_id}")
        try:
            yield
        except asyncio.CancelledError:
            self.finish(target_id, CANCELLED_REASON)
            raise
        except Exception as err:
            self.finish(target_id, str(err) or type(err).__name__)
            raise
        else:
            self.finish(target_id)
