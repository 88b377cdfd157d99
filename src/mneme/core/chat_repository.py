"""Chat repository for Mneme.

Typed CRUD and query surface over the chats table, plus the sync-specific
operations the sync engine uses: pending/never-synced queries, identity
assignment with duplicate merge, and upsert of confirmed server state.

Every user-facing mutation bumps updated_at, marks the chat pending and
notifies the on_change callback (normally the debounced push scheduler).

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from uuid6 import uuid7

from .database import Database
from .models import Chat, Page, SyncStatus
from .timestamp_utils import next_timestamp, normalize_timestamp, now_timestamp
from .validation import (
    ValidationError,
    validate_chat_id,
    validate_chat_name,
    validate_pagination,
    validate_server_id,
)

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class ChatRepository:
    """Repository for chats (threads)."""

    def __init__(
        self, db: Database, on_change: Optional[Callable[[], None]] = None
    ) -> None:
        self.db = db
        self.on_change = on_change

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change()

    # ============================================================================
    # Queries
    # ============================================================================

    def get_by_id(self, chat_id: str, include_deleted: bool = False) -> Optional[Chat]:
        """Get a chat by local ID."""
        sql = "SELECT * FROM chats WHERE id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        row = self.db.fetch_one(sql, (chat_id,))
        return Chat.from_row(row) if row else None

    def get_by_server_id(
        self, server_id: str, include_deleted: bool = False
    ) -> Optional[Chat]:
        """Get a chat by server ID."""
        sql = "SELECT * FROM chats WHERE server_id = ?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        row = self.db.fetch_one(sql, (server_id,))
        return Chat.from_row(row) if row else None

    def get_all(
        self, search: Optional[str] = None, page: int = 1, limit: int = 20
    ) -> Page[Chat]:
        """Get non-deleted chats, pinned first, then by most recent activity."""
        validate_pagination(page, limit)
        offset = (page - 1) * limit

        where = "WHERE deleted_at IS NULL"
        params: List[Any] = []
        if search and search.strip():
            where += " AND name LIKE ?"
            params.append(f"%{search.strip()}%")

        total = self.db.fetch_value(f"SELECT COUNT(*) FROM chats {where}", params, 0)
        rows = self.db.fetch_all(
            f"""SELECT * FROM chats {where}
                ORDER BY is_pinned DESC,
                         COALESCE(last_message_timestamp, updated_at) DESC
                LIMIT ? OFFSET ?""",
            [*params, limit, offset],
        )
        return Page(
            data=[Chat.from_row(r) for r in rows],
            has_more=offset + len(rows) < total,
            total=total,
        )

    # ============================================================================
    # Mutations
    # ============================================================================

    def create(self, name: str, icon: Optional[str] = None) -> Chat:
        """Create a new chat (pending, no server ID yet)."""
        name = validate_chat_name(name)
        chat_id = uuid7().hex
        now = now_timestamp()
        self.db.execute(
            """INSERT INTO chats (id, name, icon, is_pinned, sync_status, created_at, updated_at)
               VALUES (?, ?, ?, 0, 'pending', ?, ?)""",
            (chat_id, name, icon, now, now),
        )
        logger.debug(f"Created chat {chat_id}")
        self._notify()
        return self.get_by_id(chat_id)

    def update(
        self,
        chat_id: str,
        name: Any = _UNSET,
        icon: Any = _UNSET,
        is_pinned: Any = _UNSET,
        wallpaper: Any = _UNSET,
    ) -> Optional[Chat]:
        """Update chat fields. Fields left unset are not touched.

        Returns:
            The updated chat, or None if it does not exist or is deleted
        """
        validate_chat_id(chat_id)
        updates: Dict[str, Any] = {}
        if name is not _UNSET:
            updates["name"] = validate_chat_name(name)
        if icon is not _UNSET:
            updates["icon"] = icon
        if is_pinned is not _UNSET:
            updates["is_pinned"] = 1 if is_pinned else 0
        if wallpaper is not _UNSET:
            updates["wallpaper"] = wallpaper

        with self.db.transaction():
            chat = self.get_by_id(chat_id)
            if chat is None:
                return None
            if not updates:
                return chat
            updates["sync_status"] = SyncStatus.PENDING.value
            updates["updated_at"] = next_timestamp(chat.updated_at)
            assignments = ", ".join(f"{column} = ?" for column in updates)
            self.db.execute(
                f"UPDATE chats SET {assignments} WHERE id = ?",
                [*updates.values(), chat_id],
            )

        self._notify()
        return self.get_by_id(chat_id)

    def delete(self, chat_id: str) -> Tuple[bool, int]:
        """Soft delete a chat and its non-locked messages.

        Locked messages survive: they stay attached to the deleted chat and
        remain reachable through MessageRepository.get_locked().

        Returns:
            Tuple of (deleted, number of locked messages that survived)
        """
        with self.db.transaction():
            chat = self.get_by_id(chat_id)
            if chat is None:
                return False, 0
            locked_count = self._soft_delete_cascade(
                chat_id, next_timestamp(chat.updated_at), SyncStatus.PENDING
            )

        logger.info(
            f"Deleted chat {chat_id} ({locked_count} locked messages kept)"
        )
        self._notify()
        return True, locked_count

    def _soft_delete_cascade(
        self, chat_id: str, deleted_at: str, status: SyncStatus
    ) -> int:
        """Soft delete a chat and its non-locked messages in one transaction.

        Returns the number of locked messages left alive.
        """
        with self.db.transaction():
            locked_count = self.db.fetch_value(
                """SELECT COUNT(*) FROM messages
                   WHERE chat_id = ? AND is_locked = 1 AND deleted_at IS NULL""",
                (chat_id,),
                0,
            )
            self.db.execute(
                """UPDATE chats SET deleted_at = ?, sync_status = ?,
                       updated_at = MAX(updated_at, ?)
                   WHERE id = ?""",
                (deleted_at, status.value, deleted_at, chat_id),
            )
            self.db.execute(
                """UPDATE messages SET deleted_at = ?, sync_status = ?,
                       updated_at = MAX(updated_at, ?)
                   WHERE chat_id = ? AND is_locked = 0 AND deleted_at IS NULL""",
                (deleted_at, status.value, deleted_at, chat_id),
            )
            self.refresh_last_message(chat_id)
        return locked_count

    # ============================================================================
    # Last-message cache
    # ============================================================================

    def update_last_message(
        self,
        chat_id: str,
        content: Optional[str],
        message_type: Optional[str],
        timestamp: Optional[str],
    ) -> None:
        """Overwrite the cached last-message summary.

        The cache is derived data: writing it does not change sync status.
        """
        self.db.execute(
            """UPDATE chats SET last_message_content = ?, last_message_type = ?,
                   last_message_timestamp = ?
               WHERE id = ?""",
            (content, message_type, timestamp, chat_id),
        )

    def refresh_last_message(self, chat_id: str) -> None:
        """Recompute the last-message cache from the newest non-deleted message."""
        with self.db.transaction():
            latest = self.db.fetch_one(
                """SELECT content, type, created_at FROM messages
                   WHERE chat_id = ? AND deleted_at IS NULL
                   ORDER BY created_at DESC, id DESC
                   LIMIT 1""",
                (chat_id,),
            )
            if latest is None:
                self.update_last_message(chat_id, None, None, None)
            else:
                self.update_last_message(
                    chat_id, latest["content"], latest["type"], latest["created_at"]
                )

    # ============================================================================
    # Sync operations
    # ============================================================================

    def get_pending_sync(self) -> List[Chat]:
        """Get all chats with pending sync status, deleted ones included."""
        rows = self.db.fetch_all(
            "SELECT * FROM chats WHERE sync_status = 'pending' ORDER BY created_at, id"
        )
        return [Chat.from_row(r) for r in rows]

    def get_never_synced(self) -> List[Chat]:
        """Get all non-deleted chats that have no server ID yet."""
        rows = self.db.fetch_all(
            """SELECT * FROM chats WHERE server_id IS NULL AND deleted_at IS NULL
               ORDER BY created_at, id"""
        )
        return [Chat.from_row(r) for r in rows]

    def mark_synced(
        self,
        local_id: str,
        server_id: str,
        if_unchanged_since: Optional[str] = None,
    ) -> str:
        """Assign a server ID to a chat, merging with any existing holder.

        If another local chat already holds server_id, this chat is a
        duplicate of it: its messages are re-parented onto the existing
        chat, the existing chat's last-message cache is recomputed from the
        merged set and this chat is physically deleted.

        Args:
            local_id: Local ID of the chat that was pushed
            server_id: ID assigned (or returned) by the Remote Store
            if_unchanged_since: updated_at seen when the push was built; if
                the chat changed since, it keeps its pending status

        Returns:
            Local ID of the chat that now holds server_id
        """
        server_id = validate_server_id(server_id)
        with self.db.transaction():
            existing = self.db.fetch_one(
                "SELECT id FROM chats WHERE server_id = ? AND id != ?",
                (server_id, local_id),
            )
            if existing is not None:
                self._merge_into(local_id, existing["id"])
                logger.info(
                    f"Merged duplicate chat {local_id} into {existing['id']} "
                    f"(server_id={server_id})"
                )
                return existing["id"]

            self.db.execute(
                """UPDATE chats SET server_id = ?,
                       sync_status = CASE WHEN ? IS NULL OR updated_at = ?
                                          THEN 'synced' ELSE sync_status END
                   WHERE id = ?""",
                (server_id, if_unchanged_since, if_unchanged_since, local_id),
            )
        return local_id

    def _merge_into(self, duplicate_id: str, survivor_id: str) -> None:
        """Move every message of duplicate_id onto survivor_id, then drop it."""
        now = now_timestamp()
        with self.db.transaction():
            self.db.execute(
                """UPDATE messages SET chat_id = ?, sync_status = 'pending',
                       updated_at = MAX(updated_at, ?)
                   WHERE chat_id = ?""",
                (survivor_id, now, duplicate_id),
            )
            self.db.reindex_chat(duplicate_id, survivor_id)
            self.refresh_last_message(survivor_id)
            self.db.execute("DELETE FROM chats WHERE id = ?", (duplicate_id,))

    def mark_clean(self, local_id: str, if_unchanged_since: Optional[str] = None) -> bool:
        """Mark an already-identified chat as synced after a confirmed update.

        Returns:
            True if the status changed, False if the chat was modified
            after the push snapshot (it then stays pending)
        """
        cursor = self.db.execute(
            """UPDATE chats SET sync_status = 'synced'
               WHERE id = ? AND (? IS NULL OR updated_at = ?)""",
            (local_id, if_unchanged_since, if_unchanged_since),
        )
        return cursor.rowcount > 0

    def upsert_from_server(
        self, record: Dict[str, Any], keep_tombstone: bool = False
    ) -> Optional[str]:
        """Apply confirmed server state for one chat.

        The record uses local field names (see remote.decode_chat). The
        server is authoritative: an existing chat is overwritten as a whole.
        A server-side deletion soft-deletes the local chat. It is never
        turned into a live local row.

        Args:
            record: Chat in local field names
            keep_tombstone: Store a deleted chat that has no local row as a
                synced tombstone. Used when live locked messages still
                belong to it.

        Returns:
            Local ID of the affected chat, or None if nothing was stored
        """
        server_id = validate_server_id(record["server_id"])
        name = validate_chat_name(record["name"])
        updated_at = normalize_timestamp(record["updated_at"])
        created_at = normalize_timestamp(record.get("created_at")) or updated_at
        last_message = record.get("last_message") or {}

        with self.db.transaction():
            existing = self.get_by_server_id(server_id, include_deleted=True)

            if record.get("is_deleted"):
                if existing is None:
                    if not keep_tombstone:
                        return None
                    chat_id = uuid7().hex
                    self.db.execute(
                        """INSERT INTO chats (
                               id, server_id, name, icon, is_pinned, wallpaper,
                               sync_status, created_at, updated_at, deleted_at
                           ) VALUES (?, ?, ?, ?, ?, ?, 'synced', ?, ?, ?)""",
                        (
                            chat_id,
                            server_id,
                            name,
                            record.get("icon"),
                            1 if record.get("is_pinned") else 0,
                            record.get("wallpaper"),
                            created_at,
                            updated_at,
                            updated_at,
                        ),
                    )
                    logger.debug(
                        f"Stored deleted chat {chat_id} from server (server_id={server_id})"
                    )
                    return chat_id
                if existing.deleted_at is None:
                    self._soft_delete_cascade(existing.id, updated_at, SyncStatus.SYNCED)
                self.db.execute(
                    "UPDATE chats SET sync_status = 'synced' WHERE id = ?", (existing.id,)
                )
                return existing.id

            values = (
                name,
                record.get("icon"),
                1 if record.get("is_pinned") else 0,
                record.get("wallpaper"),
                last_message.get("content"),
                last_message.get("type"),
                normalize_timestamp(last_message.get("timestamp")),
            )
            if existing is not None:
                if existing.deleted_at is not None and existing.sync_status is SyncStatus.PENDING:
                    # Unpushed local deletion; the next push sends it.
                    logger.debug(f"Kept pending deletion of chat {existing.id} over server copy")
                    return existing.id
                self.db.execute(
                    """UPDATE chats SET name = ?, icon = ?, is_pinned = ?, wallpaper = ?,
                           last_message_content = ?, last_message_type = ?,
                           last_message_timestamp = ?,
                           deleted_at = NULL, sync_status = 'synced', updated_at = ?
                       WHERE id = ?""",
                    (*values, updated_at, existing.id),
                )
                return existing.id

            chat_id = uuid7().hex
            self.db.execute(
                """INSERT INTO chats (
                       id, server_id, name, icon, is_pinned, wallpaper,
                       last_message_content, last_message_type, last_message_timestamp,
                       sync_status, created_at, updated_at
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'synced', ?, ?)""",
                (chat_id, server_id, *values, created_at, updated_at),
            )
            logger.debug(f"Inserted chat {chat_id} from server (server_id={server_id})")
            return chat_id

    def purge_tombstones(self, before: str) -> int:
        """Physically remove synced chats soft-deleted before a timestamp.

        A chat that still holds live (locked) messages is kept.

        Returns:
            Number of chats removed
        """
        cursor = self.db.execute(
            """DELETE FROM chats
               WHERE deleted_at IS NOT NULL AND deleted_at < ?
                 AND sync_status = 'synced'
                 AND NOT EXISTS (SELECT 1 FROM messages m WHERE m.chat_id = chats.id)""",
            (before,),
        )
        return cursor.rowcount

    def require(self, chat_id: str) -> Chat:
        """Get a non-deleted chat or raise ValidationError."""
        validate_chat_id(chat_id)
        chat = self.get_by_id(chat_id)
        if chat is None:
            raise ValidationError("chat_id", f"chat {chat_id} not found")
        return chat
