"""Load configured searches and personas from YAML files."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from xcurator.config import ConfigError
from xcurator.models import Persona, SearchConfig

logger = logging.getLogger(__name__)


def _read_yaml(path: Path) -> Any:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with open(path, encoding="utf-8") as fh:
            return yaml.safe_load(fh)
    except yaml.YAMLError as err:
        raise ConfigError(f"Invalid YAML in {path}: {err}") from err


def load_searches(searches_path: Path) -> list[SearchConfig]:
    """Parse ``searches.yml`` into validated :class:`SearchConfig` objects.

    Expected layout::

        searches:
          - name: ai-agents
            prompt: "Viral posts about AI coding agents"
            time_window: 24h
            min_views: 10000
            max_results: 20

    Entries that fail validation are skipped with a warning; duplicate names
    keep the first entry.
    """
    cfg = _read_yaml(searches_path) or {}
    entries: list[dict[str, Any]] = cfg.get("searches", []) or []

    searches: list[SearchConfig] = []
    seen: set[str] = set()
    for entry in entries:
        try:
            search = SearchConfig.model_validate(entry)
        except ValidationError as err:
            logger.warning("Skipping invalid search %r: %s", entry.get("name"), err)
            continue
        if search.name in seen:
            logger.warning("Duplicate search name %r; keeping the first", search.name)
            continue
        seen.add(search.name)
        searches.append(search)
        logger.debug("Search [%s]: %s (%s)", search.name, search.prompt, search.time_window)

    if not searches:
        raise ConfigError(f"No valid searches in {searches_path}")
    return searches


def select_searches(searches: list[SearchConfig], names: list[str]) -> list[SearchConfig]:
    """Return the searches named in *names*, in configuration order."""
    wanted = set(names)
    return [s for s in searches if s.name in wanted]


def load_persona(persona_path: Path) -> Persona:
    data = _read_yaml(persona_path)
    try:
        return Persona.model_validate(data)
    except ValidationError as err:
        raise ConfigError(f"Invalid persona in {persona_path}: {err}") from err
