"""Remote Store persistence for the Mneme sync server.

The server side of sync is a thin pass-through over the same data model:
records are stored in wire (camelCase) shape, owned by the device that
created them, and identified by a server-generated UUID7 "_id".

Creates are idempotent per (owner, clientId): replaying a create whose
response was lost returns the record created the first time.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from uuid6 import uuid7

from .timestamp_utils import next_timestamp, normalize_timestamp, now_timestamp
from .validation import (
    ValidationError,
    validate_chat_name,
    validate_message_content,
    validate_message_type,
    validate_theme,
    validate_visibility,
)

logger = logging.getLogger(__name__)

SERVER_SCHEMA = """
CREATE TABLE IF NOT EXISTS chats (
    id TEXT PRIMARY KEY NOT NULL,
    owner TEXT NOT NULL,
    client_id TEXT,
    data TEXT NOT NULL,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (owner, client_id)
);

CREATE INDEX IF NOT EXISTS idx_chats_owner_updated ON chats(owner, updated_at);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY NOT NULL,
    owner TEXT NOT NULL,
    client_id TEXT,
    chat_id TEXT NOT NULL REFERENCES chats(id),
    data TEXT NOT NULL,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (owner, client_id)
);

CREATE INDEX IF NOT EXISTS idx_messages_owner_updated ON messages(owner, updated_at);

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY NOT NULL,
    owner TEXT NOT NULL UNIQUE,
    data TEXT NOT NULL,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

CHAT_FIELDS = ("name", "icon", "isPinned", "wallpaper", "lastMessage")
MESSAGE_FIELDS = (
    "content",
    "type",
    "attachment",
    "location",
    "linkPreview",
    "isLocked",
    "isStarred",
    "isEdited",
    "task",
)
USER_FIELDS = ("deviceId", "name", "username", "email", "phone", "avatar", "settings")


class RecordNotFoundError(LookupError):
    """A record does not exist or is not owned by the requesting device."""


def _pick(body: Dict[str, Any], fields: tuple) -> Dict[str, Any]:
    return {key: body.get(key) for key in fields}


def _check_chat(data: Dict[str, Any]) -> None:
    data["name"] = validate_chat_name(data.get("name"))
    data["isPinned"] = bool(data.get("isPinned"))


def _check_message(data: Dict[str, Any]) -> None:
    validate_message_content(data.get("content"))
    data["type"] = validate_message_type(data.get("type") or "text")
    for flag in ("isLocked", "isStarred", "isEdited"):
        data[flag] = bool(data.get(flag))


def _check_user(data: Dict[str, Any]) -> None:
    if not data.get("name"):
        raise ValidationError("name", "cannot be empty")
    settings = data.get("settings") or {}
    if settings.get("theme") is not None:
        validate_theme(settings["theme"])
    visibility = (settings.get("privacy") or {}).get("visibility")
    if visibility is not None:
        validate_visibility(visibility)


class ServerStore:
    """SQLite-backed authoritative store used by the sync server."""

    def __init__(self, db_path: Union[Path, str]) -> None:
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self.conn.executescript(SERVER_SCHEMA)
        self.conn.commit()
        self._last_stamp: Optional[str] = None
        logger.info(f"Opened server store at {self.db_path}")

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _stamp(self) -> str:
        """Next write timestamp; strictly increasing across the whole store."""
        self._last_stamp = next_timestamp(self._last_stamp)
        return self._last_stamp

    @staticmethod
    def _to_wire(row: sqlite3.Row, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        record = {"_id": row["id"], **json.loads(row["data"])}
        if extra:
            record.update(extra)
        record["isDeleted"] = bool(row["is_deleted"])
        record["createdAt"] = row["created_at"]
        record["updatedAt"] = row["updated_at"]
        return record

    def server_time(self) -> str:
        """Current server clock, for pull responses."""
        return now_timestamp()

    # ============================================================================
    # Chats
    # ============================================================================

    def _chat_row(self, owner: str, chat_id: str) -> sqlite3.Row:
        row = self.conn.execute(
            "SELECT * FROM chats WHERE id = ? AND owner = ?", (chat_id, owner)
        ).fetchone()
        if row is None:
            raise RecordNotFoundError(f"chat {chat_id} not found")
        return row

    def get_chat(self, owner: str, chat_id: str) -> Dict[str, Any]:
        with self._lock:
            return self._to_wire(self._chat_row(owner, chat_id))

    def create_chat(self, owner: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Create a chat, or return the existing one for a replayed clientId."""
        client_id = body.get("clientId")
        with self._lock:
            if client_id:
                row = self.conn.execute(
                    "SELECT * FROM chats WHERE owner = ? AND client_id = ?",
                    (owner, client_id),
                ).fetchone()
                if row is not None:
                    logger.info(f"Replayed chat create {client_id} -> {row['id']}")
                    return self._to_wire(row)

            data = _pick(body, CHAT_FIELDS)
            _check_chat(data)
            chat_id = uuid7().hex
            stamp = self._stamp()
            created_at = normalize_timestamp(body.get("createdAt")) or stamp
            with self.conn:
                self.conn.execute(
                    """INSERT INTO chats (id, owner, client_id, data, is_deleted,
                           created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        chat_id,
                        owner,
                        client_id,
                        json.dumps(data),
                        1 if body.get("isDeleted") else 0,
                        created_at,
                        stamp,
                    ),
                )
            logger.info(f"Created chat {chat_id} for device {owner}")
            return self.get_chat(owner, chat_id)

    def update_chat(self, owner: str, chat_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Overwrite a chat. A deleted chat stays deleted."""
        with self._lock:
            row = self._chat_row(owner, chat_id)
            data = _pick(body, CHAT_FIELDS)
            _check_chat(data)
            is_deleted = bool(row["is_deleted"]) or bool(body.get("isDeleted"))
            with self.conn:
                self.conn.execute(
                    "UPDATE chats SET data = ?, is_deleted = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(data), 1 if is_deleted else 0, self._stamp(), chat_id),
                )
            return self.get_chat(owner, chat_id)

    def list_chats(self, owner: str, since: Optional[str] = None) -> List[Dict[str, Any]]:
        """List chats, optionally only those updated at or after `since`."""
        sql = "SELECT * FROM chats WHERE owner = ?"
        params: List[Any] = [owner]
        if since:
            sql += " AND updated_at >= ?"
            params.append(normalize_timestamp(since))
        with self._lock:
            rows = self.conn.execute(sql + " ORDER BY updated_at, id", params).fetchall()
        return [self._to_wire(r) for r in rows]

    # ============================================================================
    # Messages
    # ============================================================================

    def _message_row(self, owner: str, message_id: str) -> sqlite3.Row:
        row = self.conn.execute(
            "SELECT * FROM messages WHERE id = ? AND owner = ?", (message_id, owner)
        ).fetchone()
        if row is None:
            raise RecordNotFoundError(f"message {message_id} not found")
        return row

    def get_message(self, owner: str, message_id: str) -> Dict[str, Any]:
        with self._lock:
            row = self._message_row(owner, message_id)
            return self._to_wire(row, {"chatId": row["chat_id"]})

    def create_message(
        self, owner: str, chat_id: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Create a message in a chat, or return the one for a replayed clientId."""
        client_id = body.get("clientId")
        with self._lock:
            self._chat_row(owner, chat_id)
            if client_id:
                row = self.conn.execute(
                    "SELECT * FROM messages WHERE owner = ? AND client_id = ?",
                    (owner, client_id),
                ).fetchone()
                if row is not None:
                    logger.info(f"Replayed message create {client_id} -> {row['id']}")
                    return self._to_wire(row, {"chatId": row["chat_id"]})

            data = _pick(body, MESSAGE_FIELDS)
            _check_message(data)
            message_id = uuid7().hex
            stamp = self._stamp()
            created_at = normalize_timestamp(body.get("createdAt")) or stamp
            with self.conn:
                self.conn.execute(
                    """INSERT INTO messages (id, owner, client_id, chat_id, data,
                           is_deleted, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        message_id,
                        owner,
                        client_id,
                        chat_id,
                        json.dumps(data),
                        1 if body.get("isDeleted") else 0,
                        created_at,
                        stamp,
                    ),
                )
            return self.get_message(owner, message_id)

    def update_message(
        self, owner: str, message_id: str, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Overwrite a message; a chatId naming another owned chat moves it."""
        with self._lock:
            row = self._message_row(owner, message_id)
            chat_id = body.get("chatId") or row["chat_id"]
            if chat_id != row["chat_id"]:
                self._chat_row(owner, chat_id)
            data = _pick(body, MESSAGE_FIELDS)
            _check_message(data)
            is_deleted = bool(row["is_deleted"]) or bool(body.get("isDeleted"))
            with self.conn:
                self.conn.execute(
                    """UPDATE messages SET chat_id = ?, data = ?, is_deleted = ?,
                           updated_at = ?
                       WHERE id = ?""",
                    (
                        chat_id,
                        json.dumps(data),
                        1 if is_deleted else 0,
                        self._stamp(),
                        message_id,
                    ),
                )
            return self.get_message(owner, message_id)

    def list_messages(
        self, owner: str, since: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM messages WHERE owner = ?"
        params: List[Any] = [owner]
        if since:
            sql += " AND updated_at >= ?"
            params.append(normalize_timestamp(since))
        with self._lock:
            rows = self.conn.execute(sql + " ORDER BY updated_at, id", params).fetchall()
        return [self._to_wire(r, {"chatId": r["chat_id"]}) for r in rows]

    # ============================================================================
    # Users
    # ============================================================================

    def get_user(self, owner: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM users WHERE owner = ?", (owner,)
            ).fetchone()
        return self._to_wire(row) if row else None

    def put_user(self, owner: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Create or overwrite the requesting device's user profile."""
        data = _pick(body, USER_FIELDS)
        data["deviceId"] = owner
        _check_user(data)
        with self._lock:
            stamp = self._stamp()
            row = self.conn.execute(
                "SELECT id FROM users WHERE owner = ?", (owner,)
            ).fetchone()
            with self.conn:
                if row is None:
                    self.conn.execute(
                        """INSERT INTO users (id, owner, data, is_deleted, created_at, updated_at)
                           VALUES (?, ?, ?, ?, ?, ?)""",
                        (
                            uuid7().hex,
                            owner,
                            json.dumps(data),
                            1 if body.get("isDeleted") else 0,
                            normalize_timestamp(body.get("createdAt")) or stamp,
                            stamp,
                        ),
                    )
                else:
                    self.conn.execute(
                        """UPDATE users SET data = ?, is_deleted = ?, updated_at = ?
                           WHERE id = ?""",
                        (
                            json.dumps(data),
                            1 if body.get("isDeleted") else 0,
                            stamp,
                            row["id"],
                        ),
                    )
        return self.get_user(owner)

    def delete_user(self, owner: str) -> Dict[str, Any]:
        """Tombstone the device's profile together with all of its chats and messages.

        Raises:
            RecordNotFoundError: If the device has no profile
        """
        with self._lock:
            row = self.conn.execute(
                "SELECT id FROM users WHERE owner = ?", (owner,)
            ).fetchone()
            if row is None:
                raise RecordNotFoundError(f"no profile for device {owner}")
            stamp = self._stamp()
            with self.conn:
                for table in ("messages", "chats"):
                    self.conn.execute(
                        f"""UPDATE {table} SET is_deleted = 1, updated_at = ?
                            WHERE owner = ? AND is_deleted = 0""",
                        (stamp, owner),
                    )
                self.conn.execute(
                    "UPDATE users SET is_deleted = 1, updated_at = ? WHERE id = ?",
                    (stamp, row["id"]),
                )
            logger.info(f"Deleted profile and data of device {owner}")
            return self.get_user(owner)

    def counts(self) -> Dict[str, int]:
        """Record counts per table, for the status endpoint."""
        with self._lock:
            return {
                table: self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("chats", "messages", "users")
            }
