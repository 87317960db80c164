"""Tests for the ``session`` commands of the CLI."""

from pathlib import Path

import pytest
from fakes import FakeBackend, no_sleep, posts_json, raw_post

import xcurator.__main__ as cli
from xcurator import config
from xcurator.models import Stage
from xcurator.retriever import Retriever
from xcurator.store import CuratorStore

_SEARCHES = """
searches:
  - name: ai
    prompt: "AI agents"
"""


def _exit_code(*argv: str) -> int:
    with pytest.raises(SystemExit) as exc_info:
        cli.main(list(argv))
    return exc_info.value.code


@pytest.fixture
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    (tmp_path / "searches.yml").write_text(_SEARCHES, encoding="utf-8")
    (tmp_path / "personas").mkdir()
    (tmp_path / "personas" / "default.yml").write_text("name: Sam\n", encoding="utf-8")
    db = tmp_path / "cli.sqlite3"
    monkeypatch.setattr(config, "CONFIG_DIR", tmp_path)
    monkeypatch.setattr(config, "DB_PATH", db)
    monkeypatch.setattr(config, "OPENROUTER_API_KEY", "")
    backend = FakeBackend(lambda q, w: posts_json(raw_post("1", views=10), raw_post("2")))
    monkeypatch.setattr(cli, "_retriever", lambda: Retriever(backend, sleep=no_sleep))
    return db


class TestSessionCommands:
    def test_create_scrape_select(self, db_path: Path) -> None:
        assert _exit_code("session", "create", "Morning", "--search", "ai") == 0
        (session,) = CuratorStore(db_path).list_workflows("session")
        assert session.search_names == ["ai"]

        assert _exit_code("session", "scrape", session.id) == 0
        assert _exit_code("session", "select", session.id, "1", "-i", "Make it short") == 0
        assert _exit_code("session", "list") == 0

        session = CuratorStore(db_path).load_workflow(session.id)
        assert session.stage == Stage.SELECTED
        assert session.selected_ids == ["1"]
        assert session.prompt == "Make it short"

    def test_generate_without_writer_key_fails_cleanly(self, db_path: Path) -> None:
        _exit_code("session", "create", "Morning", "--search", "ai")
        (session,) = CuratorStore(db_path).list_workflows("session")
        _exit_code("session", "scrape", session.id)
        _exit_code("session", "select", session.id, "2", "-i", "go")

        assert _exit_code("session", "generate", session.id) == 1
        assert CuratorStore(db_path).load_workflow(session.id).stage == Stage.SELECTED

    def test_unknown_session(self, db_path: Path) -> None:
        assert _exit_code("session", "scrape", "missing") == 1

    def test_invalid_stage_change(self, db_path: Path) -> None:
        _exit_code("session", "create", "Morning", "--search", "ai")
        (session,) = CuratorStore(db_path).list_workflows("session")
        assert _exit_code("session", "analyze", session.id) == 1

    def test_missing_subcommand_prints_help(self, db_path: Path) -> None:
        assert _exit_code("session") == 1
