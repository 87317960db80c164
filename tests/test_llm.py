"""Tests for the content writer's response parsing and request shape."""

import json
from types import SimpleNamespace

import pytest
from fakes import make_item

from xcurator.llm import (
    REPLY_TONES,
    LLMWriter,
    parse_analysis,
    parse_replies,
    parse_samples,
    persona_context,
)
from xcurator.models import Persona, TweetItem


class TestParseAnalysis:
    def test_structured(self) -> None:
        raw = json.dumps(
            {
                "summary": "Agents everywhere",
                "trending_topics": ["agents"],
                "content_ideas": [
                    {"title": "Thread", "relevance_score": 42, "suggested_format": "essay"}
                ],
            }
        )
        analysis = parse_analysis(f"```json\n{raw}\n```")
        assert analysis.summary == "Agents everywhere"
        assert analysis.trending_topics == ["agents"]
        assert analysis.content_ideas[0].relevance_score == 10
        assert analysis.content_ideas[0].suggested_format == "single"

    def test_free_text_becomes_summary(self) -> None:
        analysis = parse_analysis("Everyone is talking about agents.")
        assert analysis.summary == "Everyone is talking about agents."
        assert analysis.content_ideas == []


class TestParseSamples:
    def test_array(self) -> None:
        raw = json.dumps(
            [
                {"text": "one", "confidence": 8, "hashtags": ["ai"], "image_suggestion": "a chart"},
                {"text": "two", "confidence": "0"},
                {"text": ""},
            ]
        )
        samples = parse_samples(raw)
        assert [s.text for s in samples] == ["one", "two"]
        assert samples[0].hashtags == ["ai"]
        assert samples[0].image_suggestion == "a chart"
        assert samples[1].confidence == 1
        assert len({s.id for s in samples}) == 2

    def test_single_object(self) -> None:
        samples = parse_samples('{"rewritten": "better version"}')
        assert [s.text for s in samples] == ["better version"]
        assert samples[0].confidence == 5

    def test_plain_text(self) -> None:
        assert [s.text for s in parse_samples("just a post")] == ["just a post"]

    def test_empty(self) -> None:
        assert parse_samples("") == []


class TestParseReplies:
    def test_one_per_tone(self) -> None:
        raw = json.dumps(
            [
                {"text": "lol", "tone": "Witty", "confidence": 7},
                {"text": "great point", "tone": "supportive"},
                {"text": "consider this", "tone": "deep"},
            ]
        )
        replies = parse_replies(raw)
        assert [r.tone for r in replies] == list(REPLY_TONES)
        assert [r.text for r in replies] == ["lol", "consider this", "great point"]

    def test_missing_tones_get_placeholders(self) -> None:
        replies = parse_replies('[{"text": "lol", "tone": "witty"}]')
        assert replies[1].text == "[Could not generate insightful comment]"
        assert replies[1].confidence == 1
        assert replies[2].tone == "supportive"

    def test_garbage(self) -> None:
        replies = parse_replies("I cannot help with that")
        assert all(r.confidence == 1 for r in replies)
        assert len(replies) == 3


class TestPersonaContext:
    def test_includes_voice_and_rules(self) -> None:
        persona = Persona(
            name="Sam", bio="Builds agents.", tone="dry", avoid=["hype"], rules=["No emojis"]
        )
        text = persona_context(persona)
        assert text.startswith("You are writing as Sam. Builds agents.")
        assert "- Tone: dry" in text
        assert "- Avoid: hype" in text
        assert "## Rules\n- No emojis" in text
        assert "Style" not in text


class _Completions:
    def __init__(self, content: str) -> None:
        self.content = content
        self.requests: list[dict] = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=self.content))],
            usage=SimpleNamespace(prompt_tokens=11, completion_tokens=7),
        )


def _writer(content: str) -> tuple[LLMWriter, _Completions]:
    writer = LLMWriter("test-key", model="test/model")
    completions = _Completions(content)
    writer._client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return writer, completions


class TestLLMWriter:
    def test_requires_key(self) -> None:
        with pytest.raises(ValueError):
            LLMWriter("")

    @pytest.mark.asyncio
    async def test_generate_sends_images_and_instructions(self) -> None:
        writer, completions = _writer('[{"text": "draft", "confidence": 9}]')
        item = TweetItem.model_validate(
            {**make_item("1").model_dump(by_alias=True), "imageUrls": ["https://img/1.png"]}
        )
        samples, tokens = await writer.generate_samples(
            Persona(name="Sam"), [item], "Make it short"
        )

        assert [s.text for s in samples] == ["draft"]
        assert (tokens.input, tokens.output) == (11, 7)
        request = completions.requests[0]
        assert request["model"] == "test/model"
        assert request["temperature"] == 0.9
        system, user = request["messages"]
        assert system["role"] == "system" and "Sam" in system["content"]
        assert "Instructions: Make it short" in user["content"][0]["text"]
        assert user["content"][1] == {"type": "image_url", "image_url": {"url": "https://img/1.png"}}

    @pytest.mark.asyncio
    async def test_replies_without_persona(self) -> None:
        writer, completions = _writer('[{"text": "ha", "tone": "witty"}]')
        replies, _ = await writer.suggest_replies(make_item("1", text="big news"))
        assert replies[0].text == "ha"
        system = completions.requests[0]["messages"][0]["content"]
        assert "You are writing as" not in system
        assert '"big news"' in completions.requests[0]["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_analyze(self) -> None:
        writer, completions = _writer('{"summary": "hot"}')
        analysis, _ = await writer.analyze(["ai"], [make_item("1")])
        assert analysis.summary == "hot"
        assert "searches: ai" in completions.requests[0]["messages"][0]["content"]
