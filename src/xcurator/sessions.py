"""Session driver: scrape → analyze → select → generate → choose."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from xcurator.dedupe import unique_by_id
from xcurator.guard import ConcurrencyGuard
from xcurator.llm import LLMWriter
from xcurator.models import ProgressEvent, SearchConfig, Session
from xcurator.retriever import ProgressCallback, Retriever, notify
from xcurator.retry import UpstreamError
from xcurator.searches import select_searches
from xcurator.service import PersonaLoader, WorkflowService, new_id, utcnow
from xcurator.store import CuratorStore
from xcurator.workflow import SESSION_MACHINE, Action, InvalidTransitionError

logger = logging.getLogger(__name__)


class SessionService(WorkflowService[Session]):
    kind = "session"
    model = Session
    machine = SESSION_MACHINE

    def __init__(
        self,
        store: CuratorStore,
        guard: ConcurrencyGuard,
        retriever: Retriever,
        writer: LLMWriter | None,
        *,
        searches: list[SearchConfig],
        personas: PersonaLoader,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(store, guard, retriever, writer, personas=personas, clock=clock)
        self._searches = searches

    def create(self, name: str, search_names: list[str], persona: str | None = None) -> Session:
        session = Session(id=new_id(), name=name, search_names=search_names, persona=persona)
        self._store.save_workflow(session)
        logger.info("Created session %s (%s)", session.id, ", ".join(search_names))
        return session

    # ── automated stages ────────────────────────────────────────────────

    async def scrape(self, session_id: str, on_progress: ProgressCallback | None = None) -> Session:
        """Run every configured search of the session and store the combined posts."""
        session = self.get(session_id)
        self.machine.check(session, Action.SCRAPE)
        searches = select_searches(self._searches, session.search_names)
        if not searches:
            raise InvalidTransitionError(
                f"None of the searches {session.search_names} are configured"
            )

        async with self._guard.hold(session_id):
            batch = await self._retriever.retrieve_all(
                [s.to_query() for s in searches], on_progress
            )
            if not batch.results:
                message = "; ".join(f"{name}: {err}" for name, err in batch.errors.items())
                notify(on_progress, ProgressEvent(type="error", message=message))
                raise UpstreamError(f"Every search failed: {message}")

            items = unique_by_id(batch.items)
            self._transition(self.get(session_id), Action.SCRAPE, items=items, tokens=batch.tokens)
            logger.info(
                "Session %s scraped %d posts (tokens in=%d out=%d)",
                session_id,
                len(items),
                batch.tokens.input,
                batch.tokens.output,
            )
        return self.get(session_id)

    async def analyze(self, session_id: str) -> Session:
        session = self.get(session_id)
        self.machine.check(session, Action.ANALYZE)
        analysis, tokens = await self.writer.analyze(session.search_names, session.items)
        return self._transition(self.get(session_id), Action.ANALYZE, analysis=analysis, tokens=tokens)

    def select(self, session_id: str, ids: list[str], instructions: str) -> Session:
        return self._transition(
            self.get(session_id), Action.SELECT, ids=ids, instructions=instructions
        )

    async def generate(self, session_id: str) -> Session:
        """Generate a fresh set of variations, replacing any earlier ones."""
        session = self.get(session_id)
        self.machine.check(session, Action.GENERATE)
        persona = self._persona(session.persona)
        samples, tokens = await self.writer.generate_samples(
            persona, session.selected_items(), session.prompt
        )
        return self._transition(
            self.get(session_id), Action.GENERATE, samples=samples, tokens=tokens
        )

    # ── private ─────────────────────────────────────────────────────────

    async def _run_follow_up(self, workflow: Session, action: Action) -> Session:
        if action is Action.SCRAPE:
            return await self.scrape(workflow.id)
        if action is Action.ANALYZE:
            if not workflow.items:
                logger.info("Session %s has no posts to re-analyze", workflow.id)
                return workflow
            return await self.analyze(workflow.id)
        return await self.generate(workflow.id)
