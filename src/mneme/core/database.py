"""Local Store for Mneme.

This module owns the on-device SQLite database: connection handling,
schema creation and migrations, transactions, the sync_meta singleton and
the full-text index over message content.

All entity reads and writes go through the repositories in this package;
the sync engine never issues raw SQL.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

logger = logging.getLogger(__name__)

__all__ = ["Database", "DATABASE_VERSION"]

DATABASE_VERSION = 1

SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS chats (
    id TEXT PRIMARY KEY NOT NULL,
    server_id TEXT UNIQUE,
    name TEXT NOT NULL,
    icon TEXT,
    is_pinned INTEGER NOT NULL DEFAULT 0,
    wallpaper TEXT,
    last_message_content TEXT,
    last_message_type TEXT,
    last_message_timestamp TEXT,
    sync_status TEXT NOT NULL DEFAULT 'pending',
    deleted_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chats_deleted_at ON chats(deleted_at);
CREATE INDEX IF NOT EXISTS idx_chats_updated_at ON chats(updated_at);
CREATE INDEX IF NOT EXISTS idx_chats_sync_status ON chats(sync_status);
CREATE INDEX IF NOT EXISTS idx_chats_is_pinned ON chats(is_pinned);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY NOT NULL,
    server_id TEXT UNIQUE,
    chat_id TEXT NOT NULL,
    content TEXT,
    type TEXT NOT NULL DEFAULT 'text',
    attachment_url TEXT,
    attachment_filename TEXT,
    attachment_mime_type TEXT,
    attachment_size INTEGER,
    attachment_duration INTEGER,
    attachment_thumbnail TEXT,
    attachment_width INTEGER,
    attachment_height INTEGER,
    location_latitude REAL,
    location_longitude REAL,
    location_address TEXT,
    link_preview TEXT,
    is_locked INTEGER NOT NULL DEFAULT 0,
    is_starred INTEGER NOT NULL DEFAULT 0,
    is_edited INTEGER NOT NULL DEFAULT 0,
    is_task INTEGER NOT NULL DEFAULT 0,
    reminder_at TEXT,
    is_completed INTEGER NOT NULL DEFAULT 0,
    completed_at TEXT,
    sync_status TEXT NOT NULL DEFAULT 'pending',
    deleted_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (chat_id) REFERENCES chats(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_messages_chat_id ON messages(chat_id);
CREATE INDEX IF NOT EXISTS idx_messages_deleted_at ON messages(deleted_at);
CREATE INDEX IF NOT EXISTS idx_messages_created_at ON messages(created_at);
CREATE INDEX IF NOT EXISTS idx_messages_sync_status ON messages(sync_status);
CREATE INDEX IF NOT EXISTS idx_messages_is_task ON messages(is_task);
CREATE INDEX IF NOT EXISTS idx_messages_reminder_at ON messages(reminder_at);

-- Maintained by application code in the same transaction as the
-- messages row it mirrors (see index_message / unindex_message).
CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
    message_id UNINDEXED,
    chat_id UNINDEXED,
    content
);

CREATE TABLE IF NOT EXISTS user (
    id TEXT PRIMARY KEY NOT NULL,
    server_id TEXT UNIQUE,
    device_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    username TEXT,
    email TEXT,
    phone TEXT,
    avatar TEXT,
    settings_theme TEXT NOT NULL DEFAULT 'system',
    settings_notifications_task_reminders INTEGER NOT NULL DEFAULT 1,
    settings_notifications_shared_messages INTEGER NOT NULL DEFAULT 1,
    settings_privacy_visibility TEXT NOT NULL DEFAULT 'private',
    sync_status TEXT NOT NULL DEFAULT 'pending',
    deleted_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_meta (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    last_pull_timestamp TEXT,
    last_push_timestamp TEXT,
    is_syncing INTEGER NOT NULL DEFAULT 0
);

INSERT OR IGNORE INTO sync_meta (id) VALUES (1);
"""

# Migrations keyed by the version they upgrade to.
MIGRATIONS: Dict[int, str] = {}

Params = Union[Sequence[Any], Dict[str, Any]]


class Database:
    """SQLite-backed Local Store.

    One connection is shared by every repository. Access is serialized
    with a re-entrant lock so the sync worker thread and the caller's
    thread never interleave statements inside a transaction.
    """

    def __init__(self, db_path: Union[Path, str]) -> None:
        """Open (and if needed create) the database.

        Args:
            db_path: Path to the SQLite database file, or ':memory:' for in-memory
        """
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._depth = 0
        self.conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.execute("PRAGMA journal_mode = WAL")
        self._init_schema()
        self._recover_interrupted_sync()
        logger.info(f"Opened database at {self.db_path}")

    def _init_schema(self) -> None:
        """Create the schema on a fresh database and run pending migrations."""
        current_version = self.conn.execute("PRAGMA user_version").fetchone()[0]

        if current_version == 0:
            self.conn.executescript(SCHEMA_V1)
            current_version = 1

        while current_version < DATABASE_VERSION:
            next_version = current_version + 1
            migration = MIGRATIONS.get(next_version)
            if migration:
                logger.info(f"Migrating database to version {next_version}")
                self.conn.executescript(migration)
            current_version = next_version

        self.conn.execute(f"PRAGMA user_version = {DATABASE_VERSION}")

    def _recover_interrupted_sync(self) -> None:
        """Clear an is_syncing flag left behind by a crashed process."""
        meta = self.get_sync_meta()
        if meta["is_syncing"]:
            logger.warning(
                "Previous sync did not finish (process exited mid-sync); "
                "pending records will be retried on the next cycle"
            )
            self.set_syncing(False)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self.conn.close()
        logger.info("Closed database connection")

    # ============================================================================
    # Statement helpers
    # ============================================================================

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside a single write transaction.

        Nested use joins the outermost transaction, so a repository method
        may call another repository method without committing half of its
        work. Any exception rolls back the whole outermost transaction.
        """
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self.conn.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield self.conn
            except BaseException:
                self._depth -= 1
                if outermost:
                    self.conn.execute("ROLLBACK")
                raise
            self._depth -= 1
            if outermost:
                self.conn.execute("COMMIT")

    def execute(self, sql: str, params: Params = ()) -> sqlite3.Cursor:
        """Execute a write statement inside a transaction."""
        with self.transaction() as conn:
            return conn.execute(sql, params)

    def fetch_one(self, sql: str, params: Params = ()) -> Optional[sqlite3.Row]:
        """Fetch a single row, or None."""
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def fetch_all(self, sql: str, params: Params = ()) -> List[sqlite3.Row]:
        """Fetch all rows."""
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def fetch_value(self, sql: str, params: Params = (), default: Any = None) -> Any:
        """Fetch the first column of the first row."""
        row = self.fetch_one(sql, params)
        return row[0] if row is not None else default

    # ============================================================================
    # Full-text index write-through
    # ============================================================================

    def index_message(
        self, message_id: str, chat_id: str, content: Optional[str]
    ) -> None:
        """Insert or replace the index entry for a message.

        Must be called in the same transaction as the messages write it
        mirrors.
        """
        with self.transaction() as conn:
            conn.execute("DELETE FROM messages_fts WHERE message_id = ?", (message_id,))
            conn.execute(
                "INSERT INTO messages_fts (message_id, chat_id, content) VALUES (?, ?, ?)",
                (message_id, chat_id, content),
            )

    def unindex_message(self, message_id: str) -> None:
        """Remove the index entry for a physically deleted message."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM messages_fts WHERE message_id = ?", (message_id,))

    def reindex_chat(self, old_chat_id: str, new_chat_id: str) -> None:
        """Move index entries from one chat to another after re-parenting."""
        with self.transaction() as conn:
            conn.execute(
                "UPDATE messages_fts SET chat_id = ? WHERE chat_id = ?",
                (new_chat_id, old_chat_id),
            )

    # ============================================================================
    # Sync bookkeeping
    # ============================================================================

    def get_sync_meta(self) -> Dict[str, Any]:
        """Get the sync_meta singleton as a dict."""
        row = self.fetch_one(
            "SELECT last_pull_timestamp, last_push_timestamp, is_syncing "
            "FROM sync_meta WHERE id = 1"
        )
        return {
            "last_pull_timestamp": row["last_pull_timestamp"],
            "last_push_timestamp": row["last_push_timestamp"],
            "is_syncing": bool(row["is_syncing"]),
        }

    def set_last_pull_timestamp(self, timestamp: Optional[str]) -> None:
        """Record the server time of the last successful pull."""
        self.execute(
            "UPDATE sync_meta SET last_pull_timestamp = ? WHERE id = 1", (timestamp,)
        )

    def set_last_push_timestamp(self, timestamp: Optional[str]) -> None:
        """Record when the last push completed."""
        self.execute(
            "UPDATE sync_meta SET last_push_timestamp = ? WHERE id = 1", (timestamp,)
        )

    def set_syncing(self, is_syncing: bool) -> None:
        """Set the crash-diagnostics is_syncing flag."""
        self.execute(
            "UPDATE sync_meta SET is_syncing = ? WHERE id = 1", (1 if is_syncing else 0,)
        )
