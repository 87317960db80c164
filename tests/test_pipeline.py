"""Tests for the one-shot scrape pipeline."""

import json
from pathlib import Path

import pytest
from fakes import FakeBackend, no_sleep, posts_json, raw_post

from xcurator.models import SearchConfig
from xcurator.pipeline import run_pipeline
from xcurator.retriever import Retriever
from xcurator.store import CuratorStore

SEARCHES = [SearchConfig(name="ai", prompt="AI agents"), SearchConfig(name="ml", prompt="ML")]


def _handler(query, window):
    if query.name == "ai":
        return posts_json(raw_post("1", views=10), raw_post("2", views=900))
    return posts_json(raw_post("2", views=900), raw_post("3", likes=5))


class TestRunPipeline:
    @pytest.mark.asyncio
    async def test_writes_ranked_new_posts(self, tmp_path: Path) -> None:
        store = CuratorStore(tmp_path / "seen.sqlite3")
        retriever = Retriever(FakeBackend(_handler), sleep=no_sleep)

        path = await run_pipeline(SEARCHES, retriever, store, tmp_path / "out")

        assert path is not None and path.name.startswith("scraped-")
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["searches"] == ["ai", "ml"]
        assert data["errors"] == {}
        assert [t["id"] for t in data["tweets"]] == ["2", "3", "1"]
        assert "postedAt" in data["tweets"][0]
        assert len(store.load_seen_urls()) == 3

    @pytest.mark.asyncio
    async def test_second_run_skips_seen_posts(self, tmp_path: Path) -> None:
        store = CuratorStore(tmp_path / "seen.sqlite3")
        retriever = Retriever(FakeBackend(_handler), sleep=no_sleep)
        await run_pipeline(SEARCHES, retriever, store, tmp_path / "out")

        assert await run_pipeline(SEARCHES, retriever, store, tmp_path / "out2") is None
        assert not (tmp_path / "out2").exists()

    @pytest.mark.asyncio
    async def test_nothing_retrieved(self, tmp_path: Path) -> None:
        store = CuratorStore(tmp_path / "seen.sqlite3")
        retriever = Retriever(FakeBackend(lambda q, w: "[]"), sleep=no_sleep)
        assert await run_pipeline(SEARCHES[:1], retriever, store, tmp_path / "out") is None

    @pytest.mark.asyncio
    async def test_failed_search_is_reported(self, tmp_path: Path) -> None:
        def handler(query, window):
            if query.name == "ml":
                raise ValueError("bad prompt")
            return _handler(query, window)

        store = CuratorStore(tmp_path / "seen.sqlite3")
        retriever = Retriever(FakeBackend(handler), sleep=no_sleep)
        path = await run_pipeline(SEARCHES, retriever, store, tmp_path / "out")
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["errors"] == {"ml": "bad prompt"}
