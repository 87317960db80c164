"""SQLite-backed store for workflows, their post collections and the seen-URL set."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from xcurator.models import Leaderboard, Session, TweetItem, Workflow

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS workflows (
    id                TEXT PRIMARY KEY,
    kind              TEXT NOT NULL,
    name              TEXT NOT NULL,
    stage             TEXT NOT NULL,
    payload           TEXT NOT NULL DEFAULT '{}',
    is_scraping_now   INTEGER NOT NULL DEFAULT 0,
    scrape_started_at TEXT,
    last_error        TEXT,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS collection_items (
    workflow_id TEXT NOT NULL REFERENCES workflows(id) ON DELETE CASCADE,
    item_id     TEXT NOT NULL,
    position    INTEGER NOT NULL,
    payload     TEXT NOT NULL,
    PRIMARY KEY (workflow_id, item_id)
);
CREATE TABLE IF NOT EXISTS seen_urls (
    url           TEXT PRIMARY KEY,
    first_seen_at TEXT NOT NULL
);
"""

# Columns owned by the lock operations; save_workflow never writes them.
_LOCK_FIELDS = {"is_scraping_now", "scrape_started_at", "last_error"}

_KINDS: dict[str, type[Workflow]] = {"session": Session, "leaderboard": Leaderboard}


class NotFoundError(Exception):
    """Raised when a workflow id does not exist."""


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class CuratorStore:
    """Workflow state, ranked collections and the cross-run seen-set."""

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._init_db()

    # ── collections ─────────────────────────────────────────────────────

    def load_collection(self, workflow_id: str) -> list[TweetItem]:
        con = self._connect()
        try:
            self._require(con, workflow_id)
            return self._items(con, workflow_id)
        finally:
            con.close()

    def save_collection(self, workflow_id: str, items: list[TweetItem]) -> None:
        """Replace the stored collection of *workflow_id* with *items*."""
        con = self._connect()
        try:
            with con:
                self._require(con, workflow_id)
                self._replace_items(con, workflow_id, items)
                con.execute(
                    "UPDATE workflows SET updated_at = ? WHERE id = ?", (_now(), workflow_id)
                )
        finally:
            con.close()

    # ── seen-set ────────────────────────────────────────────────────────

    def load_seen_urls(self) -> set[str]:
        con = self._connect()
        try:
            return {row[0] for row in con.execute("SELECT url FROM seen_urls")}
        finally:
            con.close()

    def add_seen_urls(self, urls: Iterable[str]) -> int:
        """Record *urls* as seen; return how many were new."""
        now = _now()
        con = self._connect()
        try:
            with con:
                before = con.total_changes
                con.executemany(
                    "INSERT OR IGNORE INTO seen_urls (url, first_seen_at) VALUES (?, ?)",
                    [(url, now) for url in urls],
                )
                return con.total_changes - before
        finally:
            con.close()

    # ── workflows ───────────────────────────────────────────────────────

    def load_workflow(self, workflow_id: str) -> Workflow:
        con = self._connect()
        try:
            row = con.execute("SELECT * FROM workflows WHERE id = ?", (workflow_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"No workflow with id {workflow_id!r}")
            return self._hydrate(con, row)
        finally:
            con.close()

    def list_workflows(self, kind: str | None = None) -> list[Workflow]:
        con = self._connect()
        try:
            if kind is None:
                rows = con.execute("SELECT * FROM workflows ORDER BY created_at").fetchall()
            else:
                rows = con.execute(
                    "SELECT * FROM workflows WHERE kind = ? ORDER BY created_at", (kind,)
                ).fetchall()
            return [self._hydrate(con, row) for row in rows]
        finally:
            con.close()

    def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace *workflow* and its collection in one transaction.

        The lock columns keep whatever the lock operations last wrote.
        """
        kind: str = workflow.kind  # type: ignore[attr-defined]
        payload = workflow.model_dump_json(exclude={"items"} | _LOCK_FIELDS)
        con = self._connect()
        try:
            with con:
                con.execute(
                    """
                    INSERT INTO workflows (id, kind, name, stage, payload, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        stage = excluded.stage,
                        payload = excluded.payload,
                        updated_at = excluded.updated_at
                    """,
                    (
                        workflow.id,
                        kind,
                        workflow.name,
                        str(workflow.stage),
                        payload,
                        workflow.created_at.isoformat(),
                        workflow.updated_at.isoformat(),
                    ),
                )
                self._replace_items(con, workflow.id, workflow.items)
        finally:
            con.close()
        logger.debug("Saved %s %s at stage %s", kind, workflow.id, workflow.stage)

    def delete_workflow(self, workflow_id: str) -> None:
        con = self._connect()
        try:
            with con:
                self._require(con, workflow_id)
                con.execute("DELETE FROM collection_items WHERE workflow_id = ?", (workflow_id,))
                con.execute("DELETE FROM workflows WHERE id = ?", (workflow_id,))
        finally:
            con.close()

    # ── locks ───────────────────────────────────────────────────────────

    def try_acquire_lock(self, workflow_id: str, now: datetime) -> bool:
        """Take the scrape lock unless it is already held."""
        con = self._connect()
        try:
            with con:
                cur = con.execute(
                    """
                    UPDATE workflows
                    SET is_scraping_now = 1, scrape_started_at = ?, last_error = NULL
                    WHERE id = ? AND is_scraping_now = 0
                    """,
                    (now.isoformat(), workflow_id),
                )
                if cur.rowcount == 1:
                    return True
                self._require(con, workflow_id)
                return False
        finally:
            con.close()

    def release_lock(self, workflow_id: str, error: str | None = None) -> None:
        con = self._connect()
        try:
            with con:
                self._require(con, workflow_id)
                con.execute(
                    """
                    UPDATE workflows
                    SET is_scraping_now = 0, scrape_started_at = NULL, last_error = ?
                    WHERE id = ?
                    """,
                    (error, workflow_id),
                )
        finally:
            con.close()

    def release_stale_locks(self, older_than: datetime, reason: str) -> list[str]:
        """Force-release every lock taken before *older_than*; return the ids."""
        con = self._connect()
        try:
            with con:
                rows = con.execute(
                    "SELECT id, scrape_started_at FROM workflows WHERE is_scraping_now = 1"
                ).fetchall()
                stale = [
                    row["id"]
                    for row in rows
                    if (started := _parse_ts(row["scrape_started_at"])) is None
                    or started < older_than
                ]
                con.executemany(
                    """
                    UPDATE workflows
                    SET is_scraping_now = 0, scrape_started_at = NULL, last_error = ?
                    WHERE id = ?
                    """,
                    [(reason, workflow_id) for workflow_id in stale],
                )
                return stale
        finally:
            con.close()

    def is_locked(self, workflow_id: str) -> bool:
        con = self._connect()
        try:
            row = self._require(con, workflow_id)
            return bool(row["is_scraping_now"])
        finally:
            con.close()

    def lock_started_at(self, workflow_id: str) -> datetime | None:
        con = self._connect()
        try:
            row = self._require(con, workflow_id)
            return _parse_ts(row["scrape_started_at"]) if row["is_scraping_now"] else None
        finally:
            con.close()

    # ── private ─────────────────────────────────────────────────────────

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(str(self._db_path))
        con.row_factory = sqlite3.Row
        return con

    def _init_db(self) -> None:
        con = self._connect()
        con.executescript(_SCHEMA)
        con.close()

    @staticmethod
    def _require(con: sqlite3.Connection, workflow_id: str) -> sqlite3.Row:
        row = con.execute(
            "SELECT id, is_scraping_now, scrape_started_at FROM workflows WHERE id = ?",
            (workflow_id,),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"No workflow with id {workflow_id!r}")
        return row  # type: ignore[no-any-return]

    @staticmethod
    def _items(con: sqlite3.Connection, workflow_id: str) -> list[TweetItem]:
        cur = con.execute(
            "SELECT payload FROM collection_items WHERE workflow_id = ? ORDER BY position",
            (workflow_id,),
        )
        return [TweetItem.model_validate_json(row[0]) for row in cur.fetchall()]

    @staticmethod
    def _replace_items(con: sqlite3.Connection, workflow_id: str, items: list[TweetItem]) -> None:
        con.execute("DELETE FROM collection_items WHERE workflow_id = ?", (workflow_id,))
        con.executemany(
            """
            INSERT OR REPLACE INTO collection_items (workflow_id, item_id, position, payload)
            VALUES (?, ?, ?, ?)
            """,
            [
                (workflow_id, item.id, position, item.model_dump_json(by_alias=True))
                for position, item in enumerate(items)
            ],
        )

    def _hydrate(self, con: sqlite3.Connection, row: sqlite3.Row) -> Workflow:
        model = _KINDS[row["kind"]]
        data = json.loads(row["payload"])
        data.update(
            items=self._items(con, row["id"]),
            is_scraping_now=bool(row["is_scraping_now"]),
            scrape_started_at=row["scrape_started_at"],
            last_error=row["last_error"],
        )
        return model.model_validate(data)
