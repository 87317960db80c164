"""Stage machine shared by sessions and leaderboards.

Each variant is an explicit ``(stage, action) -> Transition`` table. A
transition names its target stage and the downstream state it clears before
the action's own writes land, so every stored artefact always has a stage
that produced it.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict

from xcurator.models import Stage, TokenUsage, Workflow

logger = logging.getLogger(__name__)

W = TypeVar("W", bound=Workflow)


class Action(StrEnum):
    SCRAPE = "scrape"
    ANALYZE = "analyze"
    SELECT = "select"
    GENERATE = "generate"
    CHOOSE = "choose"
    EDIT = "edit"


class Effect(StrEnum):
    CLEAR_ANALYSIS = "clear_analysis"
    CLEAR_SELECTION = "clear_selection"
    CLEAR_SAMPLES = "clear_samples"
    CLEAR_CHOICE = "clear_choice"


class Transition(BaseModel):
    model_config = ConfigDict(frozen=True)

    target: Stage
    effects: tuple[Effect, ...] = ()


class InvalidTransitionError(Exception):
    """Raised when an action is not allowed from the workflow's current stage."""


_CLEARED: dict[Effect, dict[str, Any]] = {
    Effect.CLEAR_ANALYSIS: {"analysis": None},
    Effect.CLEAR_SELECTION: {"selected_ids": []},
    Effect.CLEAR_SAMPLES: {"samples": []},
    Effect.CLEAR_CHOICE: {"chosen_id": None, "final_output": None},
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StageMachine:
    """Transition table plus the precondition checks for one workflow kind."""

    def __init__(
        self,
        name: str,
        table: dict[tuple[Stage, Action], Transition],
        *,
        stages: tuple[Stage, ...],
        single_selection: bool,
        requires_instructions: bool,
        scrape_replaces_items: bool,
    ) -> None:
        self.name = name
        self.stages = stages
        self._table = table
        self._single_selection = single_selection
        self._requires_instructions = requires_instructions
        self._scrape_replaces_items = scrape_replaces_items

    # ── public ──────────────────────────────────────────────────────────
    def allowed(self, stage: Stage) -> list[Action]:
        return [action for (src, action) in self._table if src == stage]

    def transition(self, stage: Stage, action: Action) -> Transition:
        try:
            return self._table[(stage, action)]
        except KeyError:
            allowed = ", ".join(self.allowed(stage)) or "none"
            raise InvalidTransitionError(
                f"Cannot {action} a {self.name} at stage '{stage}' (allowed: {allowed})"
            ) from None

    def check(self, workflow: Workflow, action: Action, **payload: Any) -> Transition:
        """Validate *action* and its payload against *workflow* without changing it."""
        transition = self.transition(workflow.stage, action)

        if action is Action.ANALYZE and not workflow.items:
            raise InvalidTransitionError("Nothing to analyze: the scrape returned no posts")

        elif action is Action.SELECT:
            ids: list[str] = list(payload.get("ids") or [])
            if not ids:
                raise InvalidTransitionError("Select at least one post")
            if self._single_selection and len(ids) != 1:
                raise InvalidTransitionError(f"A {self.name} selects exactly one post")
            known = {item.id for item in workflow.items}
            unknown = [i for i in ids if i not in known]
            if unknown:
                raise InvalidTransitionError(f"Unknown post id(s): {', '.join(unknown)}")
            instructions = payload.get("instructions") or ""
            if self._requires_instructions and not instructions.strip():
                raise InvalidTransitionError("Instructions are required")

        elif action is Action.GENERATE:
            if not workflow.selected_items():
                raise InvalidTransitionError("Nothing selected to generate from")
            if self._requires_instructions and not workflow.prompt.strip():
                raise InvalidTransitionError("Instructions are required")

        elif action is Action.CHOOSE:
            sample_id = payload.get("sample_id")
            if not sample_id or workflow.sample(sample_id) is None:
                raise InvalidTransitionError(f"Unknown sample id: {sample_id!r}")

        elif action is Action.EDIT and not isinstance(payload.get("text"), str):
            raise InvalidTransitionError("Edited output must be text")

        return transition

    def apply(self, workflow: W, action: Action, **payload: Any) -> W:
        """Return a copy of *workflow* with *action* applied.

        Payload keys per action: SCRAPE ``items``, ``tokens``; ANALYZE
        ``analysis``, ``tokens``; SELECT ``ids``, ``instructions``; GENERATE
        ``samples``, ``tokens``; CHOOSE ``sample_id``; EDIT ``text``.
        """
        transition = self.check(workflow, action, **payload)

        update: dict[str, Any] = {}
        for effect in transition.effects:
            update.update(_CLEARED[effect])
        update.update(self._writes(workflow, action, payload))
        update["stage"] = transition.target
        update["updated_at"] = _utcnow()

        logger.info(
            "%s %s: %s --%s--> %s",
            self.name,
            workflow.id,
            workflow.stage,
            action,
            transition.target,
        )
        return workflow.model_copy(update=update)

    def rewind(self, workflow: W, target: Stage) -> tuple[W, Action | None]:
        """Step *workflow* back to *target*, clearing what later stages produced.

        Returns the rewound copy and the automated action that follows
        *target*, or ``None`` when the next step needs operator input.
        """
        if target not in self.stages or workflow.stage not in self.stages:
            raise InvalidTransitionError(f"A {self.name} has no stage '{target}'")
        if self.stages.index(target) >= self.stages.index(workflow.stage):
            raise InvalidTransitionError(
                f"Cannot rewind a {self.name} from '{workflow.stage}' to '{target}'"
            )
        # SELECT may follow SCRAPED directly, skipping ANALYZED.
        if target is Stage.ANALYZED and getattr(workflow, "analysis", None) is None:
            raise InvalidTransitionError(
                f"This {self.name} was never analyzed; rewind to '{Stage.SCRAPED}' instead"
            )

        update: dict[str, Any] = {}
        for stage in self.stages[self.stages.index(target) + 1 :]:
            update.update(self._produced_by(stage))
        update["stage"] = target
        update["updated_at"] = _utcnow()

        follow_up = self._follow_up(target)
        logger.info(
            "%s %s rewound %s → %s (next: %s)",
            self.name,
            workflow.id,
            workflow.stage,
            target,
            follow_up or "operator",
        )
        return workflow.model_copy(update=update), follow_up

    # ── private ─────────────────────────────────────────────────────────
    @staticmethod
    def _writes(workflow: Workflow, action: Action, payload: dict[str, Any]) -> dict[str, Any]:
        if action is Action.SCRAPE:
            return {
                "items": list(payload.get("items") or []),
                "scrape_tokens": payload.get("tokens") or TokenUsage(),
            }
        if action is Action.ANALYZE:
            return {
                "analysis": payload["analysis"],
                "analyze_tokens": payload.get("tokens") or TokenUsage(),
            }
        if action is Action.SELECT:
            writes: dict[str, Any] = {"selected_ids": list(payload["ids"])}
            instructions = payload.get("instructions")
            if instructions:
                writes["prompt"] = instructions
            return writes
        if action is Action.GENERATE:
            return {
                "samples": list(payload.get("samples") or []),
                "generate_tokens": payload.get("tokens") or TokenUsage(),
            }
        if action is Action.CHOOSE:
            sample = workflow.sample(payload["sample_id"])
            assert sample is not None
            return {"chosen_id": sample.id, "final_output": sample.text}
        return {"final_output": payload["text"]}

    def _produced_by(self, stage: Stage) -> dict[str, Any]:
        if stage is Stage.SCRAPED:
            if self._scrape_replaces_items:
                return {"items": [], "scrape_tokens": TokenUsage()}
            return {}
        if stage is Stage.ANALYZED:
            return {"analysis": None, "analyze_tokens": TokenUsage()}
        if stage is Stage.SELECTED:
            return {"selected_ids": []}
        if stage is Stage.GENERATED:
            return {"samples": [], "generate_tokens": TokenUsage()}
        if stage is Stage.COMPLETED:
            return {"chosen_id": None, "final_output": None}
        return {}

    def _follow_up(self, target: Stage) -> Action | None:
        if target is Stage.CREATED:
            return Action.SCRAPE
        if target is Stage.SCRAPED and Stage.ANALYZED in self.stages:
            return Action.ANALYZE
        if target is Stage.SELECTED:
            return Action.GENERATE
        return None


def _build_table(*, with_analysis: bool) -> dict[tuple[Stage, Action], Transition]:
    scrape_effects: tuple[Effect, ...] = (
        Effect.CLEAR_SELECTION,
        Effect.CLEAR_SAMPLES,
        Effect.CLEAR_CHOICE,
    )
    if with_analysis:
        scrape_effects = (Effect.CLEAR_ANALYSIS, *scrape_effects)
    stages = list(Stage) if with_analysis else [s for s in Stage if s is not Stage.ANALYZED]
    selectable = [Stage.SCRAPED, Stage.ANALYZED] if with_analysis else [Stage.SCRAPED]

    table: dict[tuple[Stage, Action], Transition] = {}
    for stage in stages:
        table[(stage, Action.SCRAPE)] = Transition(target=Stage.SCRAPED, effects=scrape_effects)
    if with_analysis:
        for stage in (Stage.SCRAPED, Stage.ANALYZED):
            table[(stage, Action.ANALYZE)] = Transition(target=Stage.ANALYZED)
    for stage in selectable:
        table[(stage, Action.SELECT)] = Transition(
            target=Stage.SELECTED, effects=(Effect.CLEAR_SAMPLES, Effect.CLEAR_CHOICE)
        )
    for stage in (Stage.SELECTED, Stage.GENERATED):
        table[(stage, Action.GENERATE)] = Transition(
            target=Stage.GENERATED, effects=(Effect.CLEAR_SAMPLES, Effect.CLEAR_CHOICE)
        )
    table[(Stage.GENERATED, Action.CHOOSE)] = Transition(target=Stage.COMPLETED)
    table[(Stage.COMPLETED, Action.EDIT)] = Transition(target=Stage.COMPLETED)
    return table


SESSION_MACHINE = StageMachine(
    "session",
    _build_table(with_analysis=True),
    stages=tuple(Stage),
    single_selection=False,
    requires_instructions=True,
    scrape_replaces_items=True,
)

LEADERBOARD_MACHINE = StageMachine(
    "leaderboard",
    _build_table(with_analysis=False),
    stages=tuple(s for s in Stage if s is not Stage.ANALYZED),
    single_selection=True,
    requires_instructions=False,
    scrape_replaces_items=False,
)
