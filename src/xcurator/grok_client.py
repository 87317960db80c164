"""Minimal xAI Grok Responses client using the ``x_search`` tool (read-only)."""

from __future__ import annotations

import logging
from typing import Any

import requests
from pydantic import BaseModel, Field

from xcurator import config
from xcurator.models import RetrievalQuery, TimeWindow, TokenUsage
from xcurator.scope import from_date

logger = logging.getLogger(__name__)

# ── Prompts ────────────────────────────────────────────────────────────────
_SYSTEM_PROMPT = """You are a tweet research assistant. Search X (Twitter) and return results as structured JSON.

IMPORTANT: Return ONLY a valid JSON array. No markdown, no code fences, no explanation text.

Each object in the array must have exactly these fields:
{
  "id": "tweet status ID from the URL",
  "text": "full tweet text",
  "author": "display name",
  "handle": "@username",
  "likes": number,
  "retweets": number,
  "views": number,
  "replies": number,
  "url": "https://x.com/username/status/ID",
  "imageUrls": ["direct image URLs, empty if none"],
  "postedAt": "ISO 8601 timestamp"
}

Rules:
- Include the direct tweet URL for every tweet
- If exact engagement numbers aren't available, estimate from context (use 0 if unknown)
- Sort by engagement (views) descending
- Only include tweets that match the user's criteria
- If no tweets match, return an empty array: []"""

_WINDOW_LABELS: dict[TimeWindow, str] = {
    TimeWindow.H1: "hour",
    TimeWindow.H12: "12 hours",
    TimeWindow.H24: "24 hours",
    TimeWindow.H48: "48 hours",
    TimeWindow.D7: "7 days",
    TimeWindow.D14: "14 days",
    TimeWindow.D30: "30 days",
}


class BackendResponse(BaseModel):
    """Raw model output plus the tokens it cost."""

    text: str = ""
    tokens: TokenUsage = Field(default_factory=TokenUsage)


def _thresholds(query: RetrievalQuery) -> list[str]:
    filters: list[str] = []
    if query.min_views:
        filters.append(f"more than {query.min_views} views")
    if query.min_likes:
        filters.append(f"more than {query.min_likes} likes")
    return filters


def build_user_prompt(query: RetrievalQuery, window: TimeWindow) -> str:
    """Render the user message for *query* searched over *window*."""
    label = _WINDOW_LABELS[window]
    filters = _thresholds(query)

    if query.source_type == "handle":
        handle = query.source_value or (query.handles[0] if query.handles else query.goal_text)
        prompt = (
            f"Find the top {query.max_results} tweets from @{handle.lstrip('@')} "
            f"in the last {label}, ranked by engagement."
        )
        if filters:
            prompt += f"\nMinimum engagement: {' and '.join(filters)}."
        return prompt

    lines = [
        f"Search for: {query.goal_text}",
        "",
        "Constraints:",
        f"- Time window: last {label}",
        f"- Max results: {query.max_results}",
    ]
    if filters:
        lines.append(f"- Only include tweets with {' and '.join(filters)}")
    lines.append("- Include the direct tweet link for each result")
    return "\n".join(lines)


def _extract_text(data: dict[str, Any]) -> str:
    for entry in data.get("output") or []:
        if entry.get("type") != "message":
            continue
        for part in entry.get("content") or []:
            if part.get("type") in ("output_text", "text") and part.get("text"):
                return str(part["text"])
    return ""


def _extract_usage(data: dict[str, Any]) -> TokenUsage:
    usage = data.get("usage") or {}
    return TokenUsage(
        input=int(usage.get("input_tokens") or 0),
        output=int(usage.get("output_tokens") or 0),
    )


class GrokClient:
    """Thin wrapper around ``POST /v1/responses`` with the ``x_search`` tool."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = config.GROK_MODEL,
        url: str = config.GROK_API_URL,
        max_output_tokens: int = config.GROK_MAX_OUTPUT_TOKENS,
        timeout: float = config.QUERY_TIMEOUT_S,
    ) -> None:
        if not api_key:
            raise ValueError("XAI_API_KEY is required but was empty.")
        self._model = model
        self._url = url
        self._max_output_tokens = max_output_tokens
        self._timeout = timeout
        self._session = requests.Session()
        self._session.headers.update(
            {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        )

    # ── public ──────────────────────────────────────────────────────────
    def search(self, query: RetrievalQuery, window: TimeWindow) -> BackendResponse:
        """Run one search over *window* and return the model's raw answer."""
        payload = self.build_payload(query, window)
        resp = self._session.post(self._url, json=payload, timeout=self._timeout)
        resp.raise_for_status()
        data: dict[str, Any] = resp.json()

        result = BackendResponse(text=_extract_text(data), tokens=_extract_usage(data))
        logger.info(
            "Grok [%s/%s]: %d chars, tokens in=%d out=%d",
            query.name,
            window,
            len(result.text),
            result.tokens.input,
            result.tokens.output,
        )
        return result

    def build_payload(self, query: RetrievalQuery, window: TimeWindow) -> dict[str, Any]:
        tool: dict[str, Any] = {"type": "x_search", "from_date": from_date(window)}
        if query.handles:
            tool["allowed_x_handles"] = query.handles
        return {
            "model": self._model,
            "instructions": _SYSTEM_PROMPT,
            "input": [{"role": "user", "content": build_user_prompt(query, window)}],
            "tools": [tool],
            "max_output_tokens": self._max_output_tokens,
        }
