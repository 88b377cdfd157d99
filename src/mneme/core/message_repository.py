"""Message repository for Mneme.

Typed CRUD, task and full-text search queries over the messages table,
plus the sync-specific operations used by the sync engine.

Every write that changes message content also writes the full-text index
in the same transaction, and every write that can change which message is
newest in a chat recomputes that chat's last-message cache.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from uuid6 import uuid7

from .chat_repository import ChatRepository
from .database import Database
from .models import Attachment, Location, Message, Page, SyncStatus, TaskFilter
from .timestamp_utils import (
    format_timestamp,
    next_timestamp,
    normalize_timestamp,
    now_timestamp,
)
from .validation import (
    ValidationError,
    validate_location,
    validate_message_content,
    validate_message_id,
    validate_message_type,
    validate_pagination,
    validate_search_query,
    validate_server_id,
)

logger = logging.getLogger(__name__)

_SELECT = """SELECT m.*, c.name AS chat_name
             FROM messages m
             LEFT JOIN chats c ON m.chat_id = c.id"""

_DATA_COLUMNS = (
    "content",
    "type",
    "attachment_url",
    "attachment_filename",
    "attachment_mime_type",
    "attachment_size",
    "attachment_duration",
    "attachment_thumbnail",
    "attachment_width",
    "attachment_height",
    "location_latitude",
    "location_longitude",
    "location_address",
    "link_preview",
    "is_locked",
    "is_starred",
    "is_edited",
    "is_task",
    "reminder_at",
    "is_completed",
    "completed_at",
)


def _attachment_columns(attachment: Optional[Attachment]) -> List[Any]:
    if attachment is None:
        return [None] * 8
    return [
        attachment.url,
        attachment.filename,
        attachment.mime_type,
        attachment.size,
        attachment.duration,
        attachment.thumbnail,
        attachment.width,
        attachment.height,
    ]


def _location_columns(location: Optional[Location]) -> List[Any]:
    if location is None:
        return [None] * 3
    validate_location(location.latitude, location.longitude)
    return [location.latitude, location.longitude, location.address]


def _fts_query(query: str) -> str:
    """Turn user input into an FTS5 prefix query with every term quoted."""
    terms = validate_search_query(query).split()
    return " ".join('"' + term.replace('"', '""') + '"*' for term in terms)


class MessageRepository:
    """Repository for messages (notes)."""

    def __init__(
        self,
        db: Database,
        chats: ChatRepository,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.db = db
        self.chats = chats
        self.on_change = on_change

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change()

    # ============================================================================
    # Queries
    # ============================================================================

    def get_by_id(self, message_id: str, include_deleted: bool = False) -> Optional[Message]:
        """Get a message by local ID."""
        sql = f"{_SELECT} WHERE m.id = ?"
        if not include_deleted:
            sql += " AND m.deleted_at IS NULL"
        row = self.db.fetch_one(sql, (message_id,))
        return Message.from_row(row) if row else None

    def get_by_server_id(
        self, server_id: str, include_deleted: bool = False
    ) -> Optional[Message]:
        """Get a message by server ID."""
        sql = f"{_SELECT} WHERE m.server_id = ?"
        if not include_deleted:
            sql += " AND m.deleted_at IS NULL"
        row = self.db.fetch_one(sql, (server_id,))
        return Message.from_row(row) if row else None

    def get_by_chat(
        self,
        chat_id: str,
        before: Optional[str] = None,
        after: Optional[str] = None,
        limit: int = 50,
    ) -> Page[Message]:
        """Get messages of a chat, newest first, with cursor pagination.

        Args:
            chat_id: Local chat ID
            before: Only messages created strictly before this timestamp
            after: Only messages created strictly after this timestamp
            limit: Maximum number of messages to return
        """
        validate_pagination(1, limit)
        where = "WHERE m.chat_id = ? AND m.deleted_at IS NULL"
        params: List[Any] = [chat_id]
        if before:
            where += " AND m.created_at < ?"
            params.append(normalize_timestamp(before))
        if after:
            where += " AND m.created_at > ?"
            params.append(normalize_timestamp(after))

        total = self.db.fetch_value(f"SELECT COUNT(*) FROM messages m {where}", params, 0)
        rows = self.db.fetch_all(
            f"{_SELECT} {where} ORDER BY m.created_at DESC, m.id DESC LIMIT ?",
            [*params, limit + 1],
        )
        return Page(
            data=[Message.from_row(r) for r in rows[:limit]],
            has_more=len(rows) > limit,
            total=total,
        )

    def get_locked(self) -> List[Message]:
        """Get all live locked messages, including those whose chat was deleted."""
        rows = self.db.fetch_all(
            f"""{_SELECT} WHERE m.is_locked = 1 AND m.deleted_at IS NULL
                ORDER BY m.created_at DESC"""
        )
        return [Message.from_row(r) for r in rows]

    def get_tasks(
        self,
        task_filter: TaskFilter = TaskFilter.ALL,
        chat_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[Message]:
        """Get task messages, open ones first, then by reminder date."""
        validate_pagination(page, limit)
        offset = (page - 1) * limit
        where = "WHERE m.is_task = 1 AND m.deleted_at IS NULL"
        params: List[Any] = []
        if chat_id:
            where += " AND m.chat_id = ?"
            params.append(chat_id)

        if task_filter is TaskFilter.PENDING:
            where += " AND m.is_completed = 0"
        elif task_filter is TaskFilter.COMPLETED:
            where += " AND m.is_completed = 1"
        elif task_filter is TaskFilter.OVERDUE:
            where += (
                " AND m.is_completed = 0 AND m.reminder_at IS NOT NULL"
                " AND m.reminder_at < ?"
            )
            params.append(now_timestamp())

        total = self.db.fetch_value(f"SELECT COUNT(*) FROM messages m {where}", params, 0)
        rows = self.db.fetch_all(
            f"""{_SELECT} {where}
                ORDER BY m.is_completed ASC,
                         CASE WHEN m.reminder_at IS NOT NULL THEN 0 ELSE 1 END,
                         m.reminder_at ASC,
                         m.created_at DESC
                LIMIT ? OFFSET ?""",
            [*params, limit, offset],
        )
        return Page(
            data=[Message.from_row(r) for r in rows],
            has_more=offset + len(rows) < total,
            total=total,
        )

    def get_upcoming_tasks(self, days: int = 7) -> List[Message]:
        """Get open tasks with a reminder within the next `days` days."""
        horizon = format_timestamp(datetime.now(timezone.utc) + timedelta(days=days))
        rows = self.db.fetch_all(
            f"""{_SELECT}
                WHERE m.is_task = 1 AND m.is_completed = 0 AND m.deleted_at IS NULL
                  AND m.reminder_at IS NOT NULL AND m.reminder_at <= ?
                ORDER BY m.reminder_at ASC""",
            (horizon,),
        )
        return [Message.from_row(r) for r in rows]

    def search(
        self,
        query: str,
        chat_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[Message]:
        """Full-text search over message content (prefix match on every term)."""
        validate_pagination(page, limit)
        offset = (page - 1) * limit
        params: List[Any] = [_fts_query(query)]
        chat_clause = ""
        if chat_id:
            chat_clause = "AND messages_fts.chat_id = ?"
            params.append(chat_id)

        base = f"""FROM messages_fts
                   JOIN messages m ON messages_fts.message_id = m.id
                   LEFT JOIN chats c ON m.chat_id = c.id
                   WHERE messages_fts MATCH ? {chat_clause} AND m.deleted_at IS NULL"""
        total = self.db.fetch_value(f"SELECT COUNT(*) {base}", params, 0)
        rows = self.db.fetch_all(
            f"SELECT m.*, c.name AS chat_name {base} ORDER BY rank LIMIT ? OFFSET ?",
            [*params, limit, offset],
        )
        return Page(
            data=[Message.from_row(r) for r in rows],
            has_more=offset + len(rows) < total,
            total=total,
        )

    def search_in_chat(
        self, chat_id: str, query: str, page: int = 1, limit: int = 20
    ) -> Page[Message]:
        """Full-text search restricted to one chat."""
        return self.search(query, chat_id=chat_id, page=page, limit=limit)

    # ============================================================================
    # Mutations
    # ============================================================================

    def create(
        self,
        chat_id: str,
        message_type: str = "text",
        content: Optional[str] = None,
        attachment: Optional[Attachment] = None,
        location: Optional[Location] = None,
        link_preview: Optional[Dict[str, Any]] = None,
    ) -> Message:
        """Create a message in a chat (pending, no server ID yet)."""
        validate_message_type(message_type)
        validate_message_content(content)
        if content is None and attachment is None and location is None:
            raise ValidationError("content", "a message needs content, an attachment or a location")

        message_id = uuid7().hex
        now = now_timestamp()
        with self.db.transaction():
            self.chats.require(chat_id)
            self.db.execute(
                """INSERT INTO messages (
                       id, chat_id, content, type,
                       attachment_url, attachment_filename, attachment_mime_type,
                       attachment_size, attachment_duration, attachment_thumbnail,
                       attachment_width, attachment_height,
                       location_latitude, location_longitude, location_address,
                       link_preview, sync_status, created_at, updated_at
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)""",
                [
                    message_id,
                    chat_id,
                    content,
                    message_type,
                    *_attachment_columns(attachment),
                    *_location_columns(location),
                    json.dumps(link_preview) if link_preview else None,
                    now,
                    now,
                ],
            )
            self.db.index_message(message_id, chat_id, content)
            self.chats.refresh_last_message(chat_id)

        logger.debug(f"Created message {message_id} in chat {chat_id}")
        self._notify()
        return self.get_by_id(message_id)

    def _apply_local_update(self, message_id: str, updates: Dict[str, Any]) -> Optional[Message]:
        """Write a user mutation: bump updated_at, mark pending, keep caches in step."""
        validate_message_id(message_id)
        with self.db.transaction():
            message = self.get_by_id(message_id)
            if message is None:
                return None
            updates["sync_status"] = SyncStatus.PENDING.value
            updates["updated_at"] = next_timestamp(message.updated_at)
            assignments = ", ".join(f"{column} = ?" for column in updates)
            self.db.execute(
                f"UPDATE messages SET {assignments} WHERE id = ?",
                [*updates.values(), message_id],
            )
            if "content" in updates:
                self.db.index_message(message_id, message.chat_id, updates["content"])
            if "content" in updates or "deleted_at" in updates:
                self.chats.refresh_last_message(message.chat_id)

        self._notify()
        return self.get_by_id(message_id, include_deleted=True)

    def update(self, message_id: str, content: Optional[str]) -> Optional[Message]:
        """Edit message content (marks the message as edited)."""
        validate_message_content(content)
        return self._apply_local_update(message_id, {"content": content, "is_edited": 1})

    def delete(self, message_id: str) -> bool:
        """Soft delete a message."""
        result = self._apply_local_update(message_id, {"deleted_at": now_timestamp()})
        return result is not None

    def set_locked(self, message_id: str, is_locked: bool) -> Optional[Message]:
        """Lock or unlock a message. Locked messages survive chat deletion."""
        return self._apply_local_update(message_id, {"is_locked": 1 if is_locked else 0})

    def set_starred(self, message_id: str, is_starred: bool) -> Optional[Message]:
        """Star or unstar a message."""
        return self._apply_local_update(message_id, {"is_starred": 1 if is_starred else 0})

    def set_task(
        self,
        message_id: str,
        is_task: bool,
        reminder_at: Optional[str] = None,
        is_completed: bool = False,
    ) -> Optional[Message]:
        """Set the task sub-record of a message."""
        return self._apply_local_update(
            message_id,
            {
                "is_task": 1 if is_task else 0,
                "reminder_at": normalize_timestamp(reminder_at),
                "is_completed": 1 if is_completed else 0,
                "completed_at": now_timestamp() if is_completed else None,
            },
        )

    def complete_task(self, message_id: str) -> Optional[Message]:
        """Mark a task as completed."""
        return self._apply_local_update(
            message_id, {"is_completed": 1, "completed_at": now_timestamp()}
        )

    # ============================================================================
    # Sync operations
    # ============================================================================

    def get_pending_sync(self) -> List[Message]:
        """Get all messages with pending sync status, deleted ones included."""
        rows = self.db.fetch_all(
            f"{_SELECT} WHERE m.sync_status = 'pending' ORDER BY m.created_at, m.id"
        )
        return [Message.from_row(r) for r in rows]

    def get_never_synced(self) -> List[Message]:
        """Get all non-deleted messages that have no server ID yet."""
        rows = self.db.fetch_all(
            f"""{_SELECT} WHERE m.server_id IS NULL AND m.deleted_at IS NULL
                ORDER BY m.created_at, m.id"""
        )
        return [Message.from_row(r) for r in rows]

    def mark_synced(
        self,
        local_id: str,
        server_id: str,
        if_unchanged_since: Optional[str] = None,
    ) -> str:
        """Assign a server ID to a message, merging with any existing holder.

        If another local message already holds server_id, this message is a
        duplicate: it is physically deleted (index entry included) and the
        last-message caches of both chats are recomputed.

        Returns:
            Local ID of the message that now holds server_id
        """
        server_id = validate_server_id(server_id)
        with self.db.transaction():
            existing = self.db.fetch_one(
                "SELECT id, chat_id FROM messages WHERE server_id = ? AND id != ?",
                (server_id, local_id),
            )
            if existing is not None:
                duplicate = self.get_by_id(local_id, include_deleted=True)
                self.db.execute("DELETE FROM messages WHERE id = ?", (local_id,))
                self.db.unindex_message(local_id)
                if duplicate is not None:
                    self.chats.refresh_last_message(duplicate.chat_id)
                self.chats.refresh_last_message(existing["chat_id"])
                logger.info(
                    f"Merged duplicate message {local_id} into {existing['id']} "
                    f"(server_id={server_id})"
                )
                return existing["id"]

            self.db.execute(
                """UPDATE messages SET server_id = ?,
                       sync_status = CASE WHEN ? IS NULL OR updated_at = ?
                                          THEN 'synced' ELSE sync_status END
                   WHERE id = ?""",
                (server_id, if_unchanged_since, if_unchanged_since, local_id),
            )
        return local_id

    def mark_clean(self, local_id: str, if_unchanged_since: Optional[str] = None) -> bool:
        """Mark an already-identified message as synced after a confirmed update."""
        cursor = self.db.execute(
            """UPDATE messages SET sync_status = 'synced'
               WHERE id = ? AND (? IS NULL OR updated_at = ?)""",
            (local_id, if_unchanged_since, if_unchanged_since),
        )
        return cursor.rowcount > 0

    def upsert_from_server(self, chat_local_id: str, record: Dict[str, Any]) -> Optional[str]:
        """Apply confirmed server state for one message.

        Args:
            chat_local_id: Local ID of the chat the server places it in
            record: Message in local field names (see remote.decode_message)

        Returns:
            Local ID of the affected message, or None if nothing was stored
        """
        server_id = validate_server_id(record["server_id"])
        updated_at = normalize_timestamp(record["updated_at"])
        created_at = normalize_timestamp(record.get("created_at")) or updated_at

        with self.db.transaction():
            existing = self.get_by_server_id(server_id, include_deleted=True)

            if record.get("is_deleted"):
                if existing is None:
                    return None
                self.db.execute(
                    """UPDATE messages SET deleted_at = COALESCE(deleted_at, ?),
                           sync_status = 'synced', updated_at = MAX(updated_at, ?)
                       WHERE id = ?""",
                    (updated_at, updated_at, existing.id),
                )
                self.chats.refresh_last_message(existing.chat_id)
                return existing.id

            if (
                existing is not None
                and existing.deleted_at is not None
                and existing.sync_status is SyncStatus.PENDING
            ):
                # Unpushed local deletion; the next push sends it.
                logger.debug(f"Kept pending deletion of message {existing.id} over server copy")
                return existing.id

            content = record.get("content")
            validate_message_content(content)
            message_type = validate_message_type(record.get("type") or "text")
            location = record.get("location")
            task = record.get("task") or {}
            link_preview = record.get("link_preview")
            values = [
                content,
                message_type,
                *_attachment_columns(record.get("attachment")),
                *_location_columns(location),
                json.dumps(link_preview) if link_preview else None,
                1 if record.get("is_locked") else 0,
                1 if record.get("is_starred") else 0,
                1 if record.get("is_edited") else 0,
                1 if task.get("is_task") else 0,
                normalize_timestamp(task.get("reminder_at")),
                1 if task.get("is_completed") else 0,
                normalize_timestamp(task.get("completed_at")),
            ]

            if existing is not None:
                assignments = ", ".join(f"{column} = ?" for column in _DATA_COLUMNS)
                self.db.execute(
                    f"""UPDATE messages SET {assignments}, chat_id = ?, deleted_at = NULL,
                            sync_status = 'synced', updated_at = ?
                        WHERE id = ?""",
                    [*values, chat_local_id, updated_at, existing.id],
                )
                self.db.index_message(existing.id, chat_local_id, content)
                if existing.chat_id != chat_local_id:
                    self.chats.refresh_last_message(existing.chat_id)
                self.chats.refresh_last_message(chat_local_id)
                return existing.id

            message_id = uuid7().hex
            columns = ", ".join(_DATA_COLUMNS)
            placeholders = ", ".join("?" for _ in _DATA_COLUMNS)
            self.db.execute(
                f"""INSERT INTO messages (
                        id, server_id, chat_id, {columns},
                        sync_status, created_at, updated_at
                    ) VALUES (?, ?, ?, {placeholders}, 'synced', ?, ?)""",
                [message_id, server_id, chat_local_id, *values, created_at, updated_at],
            )
            self.db.index_message(message_id, chat_local_id, content)
            self.chats.refresh_last_message(chat_local_id)
            logger.debug(
                f"Inserted message {message_id} from server (server_id={server_id})"
            )
            return message_id

    def purge_tombstones(self, before: str) -> int:
        """Physically remove synced messages soft-deleted before a timestamp.

        Returns:
            Number of messages removed
        """
        with self.db.transaction():
            rows = self.db.fetch_all(
                """SELECT id FROM messages
                   WHERE deleted_at IS NOT NULL AND deleted_at < ?
                     AND sync_status = 'synced'""",
                (before,),
            )
            for row in rows:
                self.db.execute("DELETE FROM messages WHERE id = ?", (row["id"],))
                self.db.unindex_message(row["id"])
        return len(rows)
