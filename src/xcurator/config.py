"""Centralised configuration loaded from environment variables and dotenv."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


class ConfigError(Exception):
    """Raised when required configuration is missing or unreadable."""


# ── Paths ──────────────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parents[2]
CONFIG_DIR: Path = Path(os.getenv("XCURATOR_CONFIG_DIR", str(PROJECT_ROOT / "config")))
OUTPUT_DIR: Path = Path(os.getenv("XCURATOR_OUTPUT_DIR", str(PROJECT_ROOT / "out")))
DB_PATH: Path = Path(os.getenv("XCURATOR_DB_PATH", str(PROJECT_ROOT / "var" / "xcurator.sqlite3")))

# ── Search backend (xAI Grok, x_search tool) ──────────────────────────────
XAI_API_KEY: str = os.getenv("XAI_API_KEY", "")
GROK_API_URL: str = os.getenv("GROK_API_URL", "https://api.x.ai/v1/responses")
GROK_MODEL: str = os.getenv("GROK_MODEL", "grok-4-1-fast")
GROK_MAX_OUTPUT_TOKENS: int = int(os.getenv("GROK_MAX_OUTPUT_TOKENS", "16000"))
QUERY_TIMEOUT_S: float = float(os.getenv("XCURATOR_QUERY_TIMEOUT_S", "180"))

# ── Content LLM (OpenAI-compatible, OpenRouter by default) ────────────────
OPENROUTER_API_KEY: str = os.getenv("OPENROUTER_API_KEY", "")
OPENROUTER_BASE_URL: str = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
LLM_MODEL: str = os.getenv("LLM_MODEL", "anthropic/claude-sonnet-4")

# ── Leaderboards & scheduling ─────────────────────────────────────────────
LEADERBOARD_CAP: int = int(os.getenv("XCURATOR_LEADERBOARD_CAP", "200"))
STALE_LOCK_MINUTES: int = int(os.getenv("XCURATOR_STALE_LOCK_MINUTES", "10"))
SCRAPE_INTERVAL_HOURS: int = min(max(int(os.getenv("XCURATOR_SCRAPE_INTERVAL_HOURS", "24")), 1), 168)
SCHEDULER_POLL_SECONDS: int = int(os.getenv("XCURATOR_SCHEDULER_POLL_SECONDS", "300"))


def require(name: str) -> str:
    """Return the environment variable *name*, or raise :class:`ConfigError`."""
    value = os.getenv(name, "")
    if not value:
        raise ConfigError(f"Missing required environment variable: {name}. See .env.example")
    return value


def searches_path() -> Path:
    return CONFIG_DIR / "searches.yml"


def persona_path(slug: str) -> Path:
    return CONFIG_DIR / "personas" / f"{slug}.yml"
