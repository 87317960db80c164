"""Tests for the Grok request payload and response extraction."""

import pytest
import requests

from xcurator.grok_client import GrokClient, _extract_text, build_user_prompt
from xcurator.models import RetrievalQuery, TimeWindow


def _topic(**kwargs) -> RetrievalQuery:
    return RetrievalQuery(name="ai", goal_text="AI agents", time_window=TimeWindow.H24, **kwargs)


def _handle() -> RetrievalQuery:
    return RetrievalQuery(
        name="@alice",
        goal_text="Top tweets from @alice",
        time_window=TimeWindow.D7,
        max_results=15,
        min_likes=50,
        handles=["alice"],
        source_type="handle",
        source_value="alice",
    )


class _Response:
    def __init__(self, data: dict, status: int = 200) -> None:
        self._data = data
        self.status_code = status

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self) -> dict:
        return self._data


class TestBuildUserPrompt:
    def test_topic(self) -> None:
        prompt = build_user_prompt(_topic(min_views=1000), TimeWindow.H12)
        assert prompt.startswith("Search for: AI agents")
        assert "- Time window: last 12 hours" in prompt
        assert "- Only include tweets with more than 1000 views" in prompt

    def test_handle(self) -> None:
        prompt = build_user_prompt(_handle(), TimeWindow.D7)
        assert prompt.startswith("Find the top 15 tweets from @alice in the last 7 days")
        assert "Minimum engagement: more than 50 likes." in prompt


class TestPayload:
    def test_topic_search_has_no_handle_filter(self) -> None:
        payload = GrokClient("key", model="grok-test").build_payload(_topic(), TimeWindow.H24)
        assert payload["model"] == "grok-test"
        assert payload["input"][0]["role"] == "user"
        (tool,) = payload["tools"]
        assert tool["type"] == "x_search"
        assert "allowed_x_handles" not in tool

    def test_handle_search_restricts_handles(self) -> None:
        payload = GrokClient("key").build_payload(_handle(), TimeWindow.D7)
        assert payload["tools"][0]["allowed_x_handles"] == ["alice"]

    def test_requires_key(self) -> None:
        with pytest.raises(ValueError):
            GrokClient("")


class TestExtract:
    def test_first_message_text(self) -> None:
        data = {
            "output": [
                {"type": "x_search_call", "status": "completed"},
                {"type": "message", "content": [{"type": "output_text", "text": "[]"}]},
            ]
        }
        assert _extract_text(data) == "[]"

    def test_no_message(self) -> None:
        assert _extract_text({"output": [{"type": "reasoning"}]}) == ""


class TestSearch:
    def test_returns_text_and_tokens(self, monkeypatch: pytest.MonkeyPatch) -> None:
        client = GrokClient("key")
        sent: dict = {}

        def fake_post(url, json, timeout):
            sent.update(url=url, json=json, timeout=timeout)
            return _Response(
                {
                    "output": [{"type": "message", "content": [{"type": "text", "text": "[1]"}]}],
                    "usage": {"input_tokens": 120, "output_tokens": 30},
                }
            )

        monkeypatch.setattr(client._session, "post", fake_post)
        result = client.search(_topic(), TimeWindow.H24)
        assert result.text == "[1]"
        assert (result.tokens.input, result.tokens.output) == (120, 30)
        assert sent["json"]["tools"][0]["type"] == "x_search"
        assert client._session.headers["Authorization"] == "Bearer key"

    def test_http_errors_propagate(self, monkeypatch: pytest.MonkeyPatch) -> None:
        client = GrokClient("key")
        monkeypatch.setattr(client._session, "post", lambda url, json, timeout: _Response({}, 503))
        with pytest.raises(requests.HTTPError):
            client.search(_topic(), TimeWindow.H24)
