"""Unit tests for the Local Store (mneme/core/database.py)."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from mneme.core.database import DATABASE_VERSION, Database


@pytest.mark.unit
class TestSchema:
    """Schema creation and pragmas."""

    def test_creates_tables(self, db: Database) -> None:
        names = {
            row["name"]
            for row in db.fetch_all("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        assert {"chats", "messages", "user", "sync_meta", "messages_fts"} <= names

    def test_user_version(self, db: Database) -> None:
        assert db.fetch_value("PRAGMA user_version") == DATABASE_VERSION

    def test_foreign_keys_enabled(self, db: Database) -> None:
        assert db.fetch_value("PRAGMA foreign_keys") == 1

    def test_server_id_is_unique(self, db: Database) -> None:
        insert = (
            "INSERT INTO chats (id, server_id, name, created_at, updated_at) "
            "VALUES (?, 'srv-1', 'x', '2026-01-01T00:00:00.000Z', '2026-01-01T00:00:00.000Z')"
        )
        db.execute(insert, ("a" * 32,))
        with pytest.raises(sqlite3.IntegrityError):
            db.execute(insert, ("b" * 32,))

    def test_reopen_keeps_data(self, tmp_path: Path) -> None:
        path = tmp_path / "reopen.db"
        first = Database(path)
        first.set_last_pull_timestamp("2026-01-01T00:00:00.000Z")
        first.close()
        second = Database(path)
        assert second.get_sync_meta()["last_pull_timestamp"] == "2026-01-01T00:00:00.000Z"
        second.close()


@pytest.mark.unit
class TestTransactions:
    """Nested transaction handling."""

    def test_rollback_on_error(self, db: Database) -> None:
        with pytest.raises(RuntimeError):
            with db.transaction():
                db.set_last_push_timestamp("2026-01-01T00:00:00.000Z")
                raise RuntimeError("boom")
        assert db.get_sync_meta()["last_push_timestamp"] is None

    def test_nested_rolls_back_outermost(self, db: Database) -> None:
        with pytest.raises(RuntimeError):
            with db.transaction():
                db.set_last_push_timestamp("2026-01-01T00:00:00.000Z")
                with db.transaction():
                    db.set_last_pull_timestamp("2026-01-01T00:00:00.000Z")
                raise RuntimeError("boom")
        meta = db.get_sync_meta()
        assert meta["last_push_timestamp"] is None
        assert meta["last_pull_timestamp"] is None

    def test_commit(self, db: Database) -> None:
        with db.transaction():
            db.set_syncing(True)
        assert db.get_sync_meta()["is_syncing"] is True


@pytest.mark.unit
class TestSyncMeta:
    """The sync_meta singleton."""

    def test_defaults(self, db: Database) -> None:
        assert db.get_sync_meta() == {
            "last_pull_timestamp": None,
            "last_push_timestamp": None,
            "is_syncing": False,
        }

    def test_interrupted_sync_flag_is_cleared_on_open(self, tmp_path: Path) -> None:
        """A crash mid-sync leaves is_syncing set; reopening clears it."""
        path = tmp_path / "crash.db"
        first = Database(path)
        first.set_syncing(True)
        first.close()

        second = Database(path)
        assert second.get_sync_meta()["is_syncing"] is False
        second.close()


@pytest.mark.unit
class TestFullTextIndex:
    """FTS write-through helpers."""

    def _matches(self, db: Database, term: str) -> list:
        return [
            row["message_id"]
            for row in db.fetch_all(
                "SELECT message_id FROM messages_fts WHERE messages_fts MATCH ?", (term,)
            )
        ]

    def test_index_replaces_entry(self, db: Database) -> None:
        db.index_message("m1", "c1", "buy milk")
        db.index_message("m1", "c1", "buy bread")
        assert self._matches(db, "milk") == []
        assert self._matches(db, "bread") == ["m1"]

    def test_unindex(self, db: Database) -> None:
        db.index_message("m1", "c1", "buy milk")
        db.unindex_message("m1")
        assert self._matches(db, "milk") == []

    def test_reindex_chat(self, db: Database) -> None:
        db.index_message("m1", "c1", "buy milk")
        db.reindex_chat("c1", "c2")
        row = db.fetch_one("SELECT chat_id FROM messages_fts WHERE message_id = 'm1'")
        assert row["chat_id"] == "c2"
