"""Operations shared by the session and leaderboard drivers."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Generic, TypeVar

from xcurator.config import ConfigError
from xcurator.guard import ConcurrencyGuard
from xcurator.llm import LLMWriter
from xcurator.models import Persona, Stage, Workflow
from xcurator.retriever import Retriever
from xcurator.store import CuratorStore, NotFoundError
from xcurator.workflow import Action, StageMachine

logger = logging.getLogger(__name__)

W = TypeVar("W", bound=Workflow)

PersonaLoader = Callable[[str | None], Persona]


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid.uuid4().hex[:12]


class WorkflowService(Generic[W]):
    """Load, transition and persist one kind of workflow."""

    kind: str
    model: type[W]
    machine: StageMachine

    def __init__(
        self,
        store: CuratorStore,
        guard: ConcurrencyGuard,
        retriever: Retriever,
        writer: LLMWriter | None,
        *,
        personas: PersonaLoader,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._guard = guard
        self._retriever = retriever
        self._writer = writer
        self._personas = personas
        self._clock = clock

    # ── CRUD ────────────────────────────────────────────────────────────

    def get(self, workflow_id: str) -> W:
        workflow = self._store.load_workflow(workflow_id)
        if not isinstance(workflow, self.model):
            raise NotFoundError(f"No {self.kind} with id {workflow_id!r}")
        return workflow

    def list_all(self) -> list[W]:
        return [w for w in self._store.list_workflows(self.kind) if isinstance(w, self.model)]

    def delete(self, workflow_id: str) -> None:
        self.get(workflow_id)
        self._store.delete_workflow(workflow_id)
        logger.info("Deleted %s %s", self.kind, workflow_id)

    @property
    def writer(self) -> LLMWriter:
        if self._writer is None:
            raise ConfigError("Content generation needs OPENROUTER_API_KEY. See .env.example")
        return self._writer

    def is_scraping(self, workflow_id: str) -> bool:
        return self._guard.is_running(workflow_id)

    # ── operator stages ─────────────────────────────────────────────────

    def choose(self, workflow_id: str, sample_id: str) -> W:
        return self._transition(self.get(workflow_id), Action.CHOOSE, sample_id=sample_id)

    def edit(self, workflow_id: str, text: str) -> W:
        return self._transition(self.get(workflow_id), Action.EDIT, text=text)

    async def rewind(self, workflow_id: str, target: Stage) -> W:
        """Step back to *target* and immediately redo the automated work after it."""
        workflow, follow_up = self.machine.rewind(self.get(workflow_id), target)
        self._store.save_workflow(workflow)
        if follow_up is None:
            return workflow
        return await self._run_follow_up(workflow, follow_up)

    # ── private ─────────────────────────────────────────────────────────

    def _transition(self, workflow: W, action: Action, **payload: object) -> W:
        updated = self.machine.apply(workflow, action, **payload)
        self._store.save_workflow(updated)
        return updated

    def _persona(self, slug: str | None) -> Persona:
        return self._personas(slug)

    async def _run_follow_up(self, workflow: W, action: Action) -> W:
        raise NotImplementedError
