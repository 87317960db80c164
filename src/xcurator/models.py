"""Domain models used across the pipeline."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from xcurator.scoring import engagement_score as _engagement_score

SourceType = Literal["handle", "topic"]

_HANDLE_RE = re.compile(r"@(\w+)")
_MAX_HANDLES = 10


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TimeWindow(StrEnum):
    """Search lookback, declared narrowest to widest."""

    H1 = "1h"
    H12 = "12h"
    H24 = "24h"
    H48 = "48h"
    D7 = "7d"
    D14 = "14d"
    D30 = "30d"


class Stage(StrEnum):
    CREATED = "created"
    SCRAPED = "scraped"
    ANALYZED = "analyzed"
    SELECTED = "selected"
    GENERATED = "generated"
    COMPLETED = "completed"


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(input=self.input + other.input, output=self.output + other.output)

    @property
    def total(self) -> int:
        return self.input + self.output


# ── Posts ──────────────────────────────────────────────────────────────────


class TweetItem(BaseModel):
    """A discovered post. Only ``rank`` changes after ingestion."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    text: str
    author: str
    handle: str
    likes: int = 0
    retweets: int = 0
    views: int = 0
    replies: int = 0
    url: str
    image_urls: list[str] = Field(default_factory=list, alias="imageUrls")
    posted_at: str = Field(alias="postedAt")
    scraped_at: datetime | None = Field(default=None, alias="scrapedAt")
    search_name: str = Field(default="", alias="searchName")
    source_type: SourceType | None = Field(default=None, alias="sourceType")
    source_value: str | None = Field(default=None, alias="sourceValue")
    rank: int | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: object) -> object:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("likes", "retweets", "views", "replies", mode="before")
    @classmethod
    def _missing_count_is_zero(cls, value: object) -> object:
        return 0 if value is None else value

    @field_validator("image_urls", mode="before")
    @classmethod
    def _missing_images(cls, value: object) -> object:
        return [] if value is None else value

    @field_validator("url")
    @classmethod
    def _require_http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"not an http(s) URL: {value!r}")
        return value

    @computed_field  # type: ignore[prop-decorator]
    @property
    def engagement_score(self) -> int:
        return _engagement_score(
            views=self.views,
            likes=self.likes,
            retweets=self.retweets,
            replies=self.replies,
        )


# ── Retrieval ──────────────────────────────────────────────────────────────


class SearchConfig(BaseModel):
    """A named, user-configured search (``config/searches.yml``)."""

    name: str = Field(min_length=1)
    prompt: str = Field(min_length=1)
    time_window: TimeWindow = TimeWindow.H24
    min_views: int | None = None
    min_likes: int | None = None
    max_results: int = 20

    def to_query(self) -> RetrievalQuery:
        handles = _HANDLE_RE.findall(self.prompt)[:_MAX_HANDLES]
        return RetrievalQuery(
            name=self.name,
            goal_text=self.prompt,
            time_window=self.time_window,
            max_results=self.max_results,
            min_views=self.min_views,
            min_likes=self.min_likes,
            handles=handles,
        )


class RetrievalQuery(BaseModel):
    name: str
    goal_text: str
    time_window: TimeWindow
    max_results: int = 20
    min_views: int | None = None
    min_likes: int | None = None
    handles: list[str] = Field(default_factory=list)
    source_type: SourceType | None = None
    source_value: str | None = None


class RetrievalResult(BaseModel):
    query_name: str
    items: list[TweetItem] = Field(default_factory=list)
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    final_window: TimeWindow


class RetrievalBatch(BaseModel):
    """Outcome of running several queries back to back."""

    results: dict[str, RetrievalResult] = Field(default_factory=dict)
    errors: dict[str, str] = Field(default_factory=dict)

    @property
    def items(self) -> list[TweetItem]:
        return [item for result in self.results.values() for item in result.items]

    @property
    def tokens(self) -> TokenUsage:
        total = TokenUsage()
        for result in self.results.values():
            total = total + result.tokens
        return total

    @property
    def ok(self) -> bool:
        return not self.errors


ProgressType = Literal[
    "attempt",
    "expanding",
    "response",
    "source-complete",
    "source-error",
    "complete",
    "error",
]


class ProgressEvent(BaseModel):
    type: ProgressType
    query: str = ""
    window: TimeWindow | None = None
    attempt: int | None = None
    found: int | None = None
    filtered: int | None = None
    tokens: TokenUsage | None = None
    message: str = ""


# ── Generated content ──────────────────────────────────────────────────────


class Sample(BaseModel):
    """One generated candidate: a post variation or a reply suggestion."""

    id: str
    text: str
    confidence: int = Field(default=5, ge=1, le=10)
    hashtags: list[str] = Field(default_factory=list)
    image_suggestion: str | None = None
    tone: str | None = None


class ContentIdea(BaseModel):
    title: str = ""
    description: str = ""
    angle: str = ""
    suggested_format: Literal["thread", "single", "poll", "media"] = "single"
    relevance_score: int = Field(default=5, ge=1, le=10)
    source_tweet_ids: list[str] = Field(default_factory=list)


class TopicWithTweets(BaseModel):
    topic: str = ""
    explanation: str = ""
    tweet_ids: list[str] = Field(default_factory=list)


class TrendAnalysis(BaseModel):
    summary: str = ""
    trending_topics: list[str] = Field(default_factory=list)
    topics_with_tweets: list[TopicWithTweets] = Field(default_factory=list)
    content_ideas: list[ContentIdea] = Field(default_factory=list)


class Persona(BaseModel):
    name: str = Field(min_length=1)
    bio: str = ""
    tone: str = ""
    style: str = ""
    vocabulary: list[str] = Field(default_factory=list)
    avoid: list[str] = Field(default_factory=list)
    rules: list[str] = Field(default_factory=list)


# ── Workflows ──────────────────────────────────────────────────────────────


class Workflow(BaseModel):
    """State shared by sessions and leaderboards.

    The lock columns (``is_scraping_now``, ``scrape_started_at``,
    ``last_error``) are owned by the store's lock operations and are only
    read here.
    """

    id: str
    name: str = Field(min_length=1)
    stage: Stage = Stage.CREATED
    items: list[TweetItem] = Field(default_factory=list)
    scrape_tokens: TokenUsage = Field(default_factory=TokenUsage)
    selected_ids: list[str] = Field(default_factory=list)
    prompt: str = ""
    persona: str | None = None
    samples: list[Sample] = Field(default_factory=list)
    generate_tokens: TokenUsage = Field(default_factory=TokenUsage)
    chosen_id: str | None = None
    final_output: str | None = None
    is_scraping_now: bool = False
    scrape_started_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def selected_items(self) -> list[TweetItem]:
        """Return the stored items named by ``selected_ids``, in selection order."""
        by_id = {item.id: item for item in self.items}
        return [by_id[i] for i in self.selected_ids if i in by_id]

    def sample(self, sample_id: str) -> Sample | None:
        return next((s for s in self.samples if s.id == sample_id), None)


class Session(Workflow):
    kind: Literal["session"] = "session"
    search_names: list[str] = Field(min_length=1)
    analysis: TrendAnalysis | None = None
    analyze_tokens: TokenUsage = Field(default_factory=TokenUsage)


class LeaderboardSource(BaseModel):
    type: SourceType
    value: str = Field(min_length=1)
    label: str | None = None


class Leaderboard(Workflow):
    kind: Literal["leaderboard"] = "leaderboard"
    sources: list[LeaderboardSource] = Field(min_length=1)
    max_tweets_per_source: int = Field(default=10, ge=5, le=50)
    min_views: int | None = None
    min_likes: int | None = None
    time_window: TimeWindow = TimeWindow.H48
    last_scraped_at: datetime | None = None
    next_scheduled_at: datetime | None = None
    tokens_used: TokenUsage = Field(default_factory=TokenUsage)
