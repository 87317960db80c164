"""LLM-powered writer: trend analysis, post variations and reply suggestions."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any

from openai import OpenAI
from pydantic import ValidationError

from xcurator import config
from xcurator.models import Persona, Sample, TokenUsage, TrendAnalysis, TweetItem
from xcurator.retry import call_with_retry
from xcurator.salvage import strip_fences

logger = logging.getLogger(__name__)

SAMPLE_COUNT = 3
REPLY_TONES: tuple[str, ...] = ("witty", "insightful", "supportive")

# ── Prompts ────────────────────────────────────────────────────────────────
_ANALYSIS_PROMPT = """You are a social media trend analyst. Below are high-engagement posts collected for the searches: {searches}.

{posts}

Identify what is trending and why, then suggest original content ideas.

Respond with ONLY a JSON object (no markdown, no code fences):
{{
  "summary": "2-3 sentence overview of what is happening",
  "trending_topics": ["topic", "..."],
  "topics_with_tweets": [{{"topic": "...", "explanation": "...", "tweet_ids": ["..."]}}],
  "content_ideas": [{{"title": "...", "description": "...", "angle": "...",
    "suggested_format": "thread|single|poll|media", "relevance_score": 1-10,
    "source_tweet_ids": ["..."]}}]
}}"""

_SAMPLES_FORMAT = f"""## Output Format
Based on the source tweets and instructions I give you, generate exactly {SAMPLE_COUNT} different tweet variations.
Each variation should take a different angle while staying in your voice.
For each variation, also suggest an image idea that would complement the tweet.

Respond with ONLY a JSON array (no markdown, no code fences):
[
  {{ "text": "your tweet text", "confidence": 1-10, "hashtags": ["optional"], "image_suggestion": "brief image idea" }}
]

confidence = how good you think each variation is (10 = banger, 1 = weak).
Each tweet must be under 280 characters."""

_REPLIES_PROMPT = """You are a social media engagement expert. Generate reply suggestions for a post that will drive engagement and build relationships.

Generate 3 different replies, each with a distinct tone:
1. witty: clever, humorous or playful
2. insightful: adds value or a new perspective
3. supportive: agrees with, amplifies or encourages the poster"""

_REPLIES_FORMAT = """OUTPUT FORMAT:
Return ONLY a valid JSON array (no markdown, no code fences):
[
  { "text": "witty reply", "tone": "witty", "confidence": 1-10 },
  { "text": "insightful reply", "tone": "insightful", "confidence": 1-10 },
  { "text": "supportive reply", "tone": "supportive", "confidence": 1-10 }
]

RULES:
- Keep replies under 280 characters
- Be authentic and conversational
- Don't be sycophantic or overly promotional"""


def _new_id() -> str:
    return uuid.uuid4().hex[:8]


def _confidence(value: Any) -> int:
    try:
        return min(10, max(1, int(float(value))))
    except (TypeError, ValueError):
        return 5


def _post_block(item: TweetItem, index: int | None = None) -> str:
    header = f"--- Tweet {index} (id {item.id}) ---\n" if index is not None else ""
    return (
        f"{header}@{item.handle.lstrip('@')} ({item.author})\n"
        f'"{item.text}"\n'
        f"Engagement: {item.views:,} views, {item.likes:,} likes, {item.retweets:,} RTs"
    )


def persona_context(persona: Persona) -> str:
    lines = [f"You are writing as {persona.name}. {persona.bio}".strip(), "", "## Voice"]
    if persona.tone:
        lines.append(f"- Tone: {persona.tone}")
    if persona.style:
        lines.append(f"- Style: {persona.style}")
    if persona.vocabulary:
        lines.append(f"- Vocabulary: {', '.join(persona.vocabulary)}")
    if persona.avoid:
        lines.append(f"- Avoid: {', '.join(persona.avoid)}")
    if persona.rules:
        lines.append("")
        lines.append("## Rules")
        lines.extend(f"- {rule}" for rule in persona.rules)
    return "\n".join(lines)


# ── Parsers ────────────────────────────────────────────────────────────────


def parse_analysis(raw: str) -> TrendAnalysis:
    """Parse an analysis object; unparseable output becomes the summary."""
    cleaned = strip_fences(raw)
    try:
        data = json.loads(cleaned)
        if not isinstance(data, dict):
            raise ValueError("analysis is not an object")
        for idea in data.get("content_ideas") or []:
            if isinstance(idea, dict):
                idea["relevance_score"] = _confidence(idea.get("relevance_score", 5))
                if idea.get("suggested_format") not in ("thread", "single", "poll", "media"):
                    idea["suggested_format"] = "single"
        return TrendAnalysis.model_validate(data)
    except (ValueError, ValidationError) as err:
        logger.warning("Analysis was not structured JSON (%s); keeping raw text", err)
        return TrendAnalysis(summary=cleaned)


def parse_samples(raw: str) -> list[Sample]:
    """Parse post variations from an array, a single object, or plain text."""
    cleaned = strip_fences(raw)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        return [Sample(id=_new_id(), text=cleaned)] if cleaned else []

    if isinstance(data, dict):
        data = [data] if (data.get("text") or data.get("rewritten")) else []
    if not isinstance(data, list):
        return [Sample(id=_new_id(), text=cleaned)]

    samples: list[Sample] = []
    for entry in data:
        if not isinstance(entry, dict):
            continue
        text = str(entry.get("text") or entry.get("rewritten") or "")
        if not text:
            continue
        image = entry.get("image_suggestion") or entry.get("imageSuggestion")
        samples.append(
            Sample(
                id=_new_id(),
                text=text,
                confidence=_confidence(entry.get("confidence", 5)),
                hashtags=[str(tag) for tag in entry.get("hashtags") or []],
                image_suggestion=str(image) if image else None,
            )
        )
    return samples


def parse_replies(raw: str) -> list[Sample]:
    """Return one reply per tone, with a low-confidence placeholder for any gap."""
    cleaned = strip_fences(raw)
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        logger.warning("Reply suggestions were not JSON; using placeholders")
        data = []

    by_tone: dict[str, Sample] = {}
    for entry in data if isinstance(data, list) else []:
        if not isinstance(entry, dict) or not entry.get("text"):
            continue
        tone = str(entry.get("tone") or "").lower()
        if tone not in REPLY_TONES:
            tone = "insightful"
        by_tone.setdefault(
            tone,
            Sample(
                id=_new_id(),
                text=str(entry["text"]),
                tone=tone,
                confidence=_confidence(entry.get("confidence", 5)),
            ),
        )

    return [
        by_tone.get(tone)
        or Sample(id=_new_id(), text=f"[Could not generate {tone} comment]", tone=tone, confidence=1)
        for tone in REPLY_TONES
    ]


class LLMWriter:
    """Chat-completions client for the content stages.

    Talks to any OpenAI-compatible endpoint (OpenRouter by default). SDK
    retries are off; every call goes through :func:`call_with_retry`.
    """

    def __init__(
        self,
        api_key: str,
        model: str = config.LLM_MODEL,
        base_url: str = config.OPENROUTER_BASE_URL,
        timeout: float = 60.0,
    ) -> None:
        if not api_key:
            raise ValueError("OPENROUTER_API_KEY is required but was empty.")
        self._model = model
        self._client = OpenAI(
            api_key=api_key,
            base_url=base_url,
            max_retries=0,
            timeout=timeout,
            default_headers={"X-Title": "xcurator"},
        )

    # ── public ──────────────────────────────────────────────────────────

    async def analyze(
        self, search_names: list[str], items: list[TweetItem]
    ) -> tuple[TrendAnalysis, TokenUsage]:
        posts = "\n\n".join(_post_block(item, i + 1) for i, item in enumerate(items))
        prompt = _ANALYSIS_PROMPT.format(searches=", ".join(search_names), posts=posts)
        raw, tokens = await self._chat(
            [{"role": "user", "content": prompt}],
            temperature=0.7,
            max_tokens=2500,
            label="Analyze",
        )
        return parse_analysis(raw), tokens

    async def generate_samples(
        self, persona: Persona, items: list[TweetItem], instructions: str
    ) -> tuple[list[Sample], TokenUsage]:
        system = f"{persona_context(persona)}\n\n{_SAMPLES_FORMAT}"
        text = "Here are the source tweets:\n\n"
        text += "\n\n".join(_post_block(item, i + 1) for i, item in enumerate(items))
        text += f"\n\n---\nInstructions: {instructions}"
        content: list[dict[str, Any]] = [{"type": "text", "text": text}]
        content.extend(
            {"type": "image_url", "image_url": {"url": url}}
            for item in items
            for url in item.image_urls
        )
        raw, tokens = await self._chat(
            [{"role": "system", "content": system}, {"role": "user", "content": content}],
            temperature=0.9,
            max_tokens=1500,
            label="Generate",
        )
        samples = parse_samples(raw)
        logger.info("Generated %d sample(s) from %d post(s)", len(samples), len(items))
        return samples, tokens

    async def suggest_replies(
        self, item: TweetItem, persona: Persona | None = None
    ) -> tuple[list[Sample], TokenUsage]:
        system = _REPLIES_PROMPT
        if persona is not None:
            system += "\n\n" + persona_context(persona)
        system += "\n\n" + _REPLIES_FORMAT
        user = (
            f"Generate 3 reply suggestions for this tweet:\n\n{_post_block(item)}\n\n"
            "Generate replies that would work well for this specific tweet."
        )
        raw, tokens = await self._chat(
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            temperature=0.8,
            max_tokens=800,
            label="Replies",
        )
        return parse_replies(raw), tokens

    # ── private ─────────────────────────────────────────────────────────

    async def _chat(
        self,
        messages: list[dict[str, Any]],
        *,
        temperature: float,
        max_tokens: int,
        label: str,
    ) -> tuple[str, TokenUsage]:
        def create() -> Any:
            return self._client.chat.completions.create(
                model=self._model,
                messages=messages,  # type: ignore[arg-type]
                temperature=temperature,
                max_tokens=max_tokens,
            )

        resp = await call_with_retry(
            lambda: asyncio.to_thread(create), label=f"OpenRouter {label}"
        )
        content = (resp.choices[0].message.content or "") if resp.choices else ""
        usage = resp.usage
        tokens = TokenUsage(
            input=usage.prompt_tokens if usage else 0,
            output=usage.completion_tokens if usage else 0,
        )
        logger.info("%s: tokens in=%d out=%d", label, tokens.input, tokens.output)
        return content, tokens
