"""Tests for the session driver with fake backends."""

from pathlib import Path

import pytest
from fakes import FakeBackend, FakeWriter, default_persona, no_sleep, posts_json, raw_post

from xcurator.config import ConfigError
from xcurator.guard import ConcurrencyGuard
from xcurator.models import SearchConfig, Stage, TimeWindow
from xcurator.retriever import Retriever
from xcurator.retry import UpstreamError
from xcurator.sessions import SessionService
from xcurator.store import CuratorStore, NotFoundError
from xcurator.workflow import InvalidTransitionError

SEARCHES = [
    SearchConfig(name="ai", prompt="AI agents", time_window=TimeWindow.H24),
    SearchConfig(name="markets", prompt="Posts from @polymarket", min_views=100),
]


def _handler(query, window):
    if query.name == "ai":
        return posts_json(raw_post("1", views=10), raw_post("2", views=20))
    return posts_json(raw_post("2", views=20), raw_post("3", views=500))


def _service(
    tmp_path: Path, handler=_handler, writer: FakeWriter | None = None
) -> tuple[SessionService, FakeBackend, FakeWriter, CuratorStore]:
    store = CuratorStore(tmp_path / "sessions.sqlite3")
    backend = FakeBackend(handler)
    writer = writer or FakeWriter()
    service = SessionService(
        store,
        ConcurrencyGuard(store),
        Retriever(backend, sleep=no_sleep),
        writer,
        searches=SEARCHES,
        personas=default_persona,
    )
    return service, backend, writer, store


class TestSessionService:
    @pytest.mark.asyncio
    async def test_full_flow(self, tmp_path: Path) -> None:
        service, backend, writer, _ = _service(tmp_path)
        session = service.create("Morning", ["ai", "markets"])

        session = await service.scrape(session.id)
        assert session.stage == Stage.SCRAPED
        assert [i.id for i in session.items] == ["1", "2", "3"]
        assert session.scrape_tokens.input == 200
        assert not session.is_scraping_now
        assert {name for name, _ in backend.calls} == {"ai", "markets"}

        session = await service.analyze(session.id)
        assert session.stage == Stage.ANALYZED
        assert session.analysis is not None and session.analysis.summary == "3 posts"

        session = service.select(session.id, ["3", "1"], "Write a hot take")
        assert session.selected_ids == ["3", "1"]

        session = await service.generate(session.id)
        assert session.stage == Stage.GENERATED
        assert len(session.samples) == 3

        session = service.choose(session.id, session.samples[1].id)
        assert session.stage == Stage.COMPLETED
        assert session.final_output == "Write a hot take #1"

        session = service.edit(session.id, "final words")
        assert service.get(session.id).final_output == "final words"
        assert writer.calls == ["analyze", "generate"]

    @pytest.mark.asyncio
    async def test_unknown_searches_rejected_before_backend(self, tmp_path: Path) -> None:
        service, backend, _, _ = _service(tmp_path)
        session = service.create("Empty", ["does-not-exist"])
        with pytest.raises(InvalidTransitionError):
            await service.scrape(session.id)
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_generate_without_selection_makes_no_calls(self, tmp_path: Path) -> None:
        service, _, writer, _ = _service(tmp_path)
        session = await service.scrape(service.create("S", ["ai"]).id)
        with pytest.raises(InvalidTransitionError):
            await service.generate(session.id)
        assert writer.calls == []

    @pytest.mark.asyncio
    async def test_partial_failure_still_scrapes(self, tmp_path: Path) -> None:
        def handler(query, window):
            if query.name == "markets":
                raise ValueError("bad prompt")
            return _handler(query, window)

        service, _, _, _ = _service(tmp_path, handler)
        session = await service.scrape(service.create("S", ["ai", "markets"]).id)
        assert [i.id for i in session.items] == ["1", "2"]
        assert session.last_error is None

    @pytest.mark.asyncio
    async def test_total_failure_records_error(self, tmp_path: Path) -> None:
        def handler(query, window):
            raise ValueError("bad prompt")

        service, _, _, _ = _service(tmp_path, handler)
        session = service.create("S", ["ai"])
        with pytest.raises(UpstreamError):
            await service.scrape(session.id)
        session = service.get(session.id)
        assert session.stage == Stage.CREATED
        assert not session.is_scraping_now
        assert "bad prompt" in (session.last_error or "")

    @pytest.mark.asyncio
    async def test_rewind_to_scraped_reanalyzes(self, tmp_path: Path) -> None:
        service, _, writer, _ = _service(tmp_path)
        session = await service.scrape(service.create("S", ["ai"]).id)
        session = service.select(session.id, ["1"], "go")
        session = await service.generate(session.id)
        session = service.choose(session.id, session.samples[0].id)

        session = await service.rewind(session.id, Stage.SCRAPED)
        assert session.stage == Stage.ANALYZED
        assert session.selected_ids == []
        assert session.samples == []
        assert session.final_output is None
        assert writer.calls == ["generate", "analyze"]

    @pytest.mark.asyncio
    async def test_rewind_to_selected_regenerates(self, tmp_path: Path) -> None:
        service, _, writer, _ = _service(tmp_path)
        session = await service.scrape(service.create("S", ["ai"]).id)
        session = service.select(session.id, ["1"], "go")
        first = await service.generate(session.id)

        session = await service.rewind(session.id, Stage.SELECTED)
        assert session.stage == Stage.GENERATED
        assert {s.id for s in session.samples}.isdisjoint({s.id for s in first.samples})

    def test_missing_writer_is_a_config_error(self, tmp_path: Path) -> None:
        store = CuratorStore(tmp_path / "s.sqlite3")
        service = SessionService(
            store,
            ConcurrencyGuard(store),
            Retriever(FakeBackend(_handler)),
            None,
            searches=SEARCHES,
            personas=default_persona,
        )
        with pytest.raises(ConfigError):
            service.writer

    def test_crud(self, tmp_path: Path) -> None:
        service, _, _, _ = _service(tmp_path)
        a = service.create("A", ["ai"])
        b = service.create("B", ["markets"])
        assert {s.id for s in service.list_all()} == {a.id, b.id}
        service.delete(a.id)
        with pytest.raises(NotFoundError):
            service.get(a.id)
