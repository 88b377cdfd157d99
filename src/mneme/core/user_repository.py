"""User repository for Mneme.

The user table holds one row per device identity: the profile and settings
of whoever owns this device. The row is created on first start and is
pushed to the Remote Store like any other syncable entity.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from uuid6 import uuid7

from .database import Database
from .models import SyncStatus, User
from .timestamp_utils import next_timestamp, normalize_timestamp, now_timestamp
from .validation import (
    ValidationError,
    validate_device_id,
    validate_server_id,
    validate_theme,
    validate_visibility,
)

logger = logging.getLogger(__name__)

_UNSET: Any = object()

_PROFILE_COLUMNS = ("name", "username", "email", "phone", "avatar")


class UserRepository:
    """Repository for the per-device user profile."""

    def __init__(
        self,
        db: Database,
        device_id: str,
        on_change: Optional[Callable[[], None]] = None,
    ) -> None:
        self.db = db
        self.device_id = validate_device_id(device_id)
        self.on_change = on_change

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def get_by_id(self, user_id: str) -> Optional[User]:
        """Get a user row by local ID."""
        row = self.db.fetch_one("SELECT * FROM user WHERE id = ?", (user_id,))
        return User.from_row(row) if row else None

    def get_by_server_id(self, server_id: str) -> Optional[User]:
        """Get a user row by server ID."""
        row = self.db.fetch_one("SELECT * FROM user WHERE server_id = ?", (server_id,))
        return User.from_row(row) if row else None

    def get_current(self) -> Optional[User]:
        """Get this device's user row, or None before get_or_create()."""
        row = self.db.fetch_one(
            "SELECT * FROM user WHERE device_id = ? AND deleted_at IS NULL",
            (self.device_id,),
        )
        return User.from_row(row) if row else None

    def get_or_create(self, name: str = "Me") -> User:
        """Get this device's user row, creating it (pending) if missing."""
        with self.db.transaction():
            user = self.get_current()
            if user is not None:
                return user
            now = now_timestamp()
            tombstone = self.db.fetch_one(
                "SELECT id, updated_at FROM user WHERE device_id = ?", (self.device_id,)
            )
            if tombstone is not None:
                self.db.execute(
                    """UPDATE user SET deleted_at = NULL, sync_status = 'pending',
                           updated_at = ? WHERE id = ?""",
                    (next_timestamp(tombstone["updated_at"]), tombstone["id"]),
                )
                logger.info(f"Revived deleted user profile {tombstone['id']}")
                self._notify()
                return self.get_by_id(tombstone["id"])
            user_id = uuid7().hex
            self.db.execute(
                """INSERT INTO user (id, device_id, name, sync_status, created_at, updated_at)
                   VALUES (?, ?, ?, 'pending', ?, ?)""",
                (user_id, self.device_id, name, now, now),
            )
        logger.info(f"Created user profile {user_id} for device {self.device_id}")
        self._notify()
        return self.get_by_id(user_id)

    def _apply_local_update(self, updates: Dict[str, Any]) -> User:
        with self.db.transaction():
            user = self.get_or_create()
            if not updates:
                return user
            updates["sync_status"] = SyncStatus.PENDING.value
            updates["updated_at"] = next_timestamp(user.updated_at)
            assignments = ", ".join(f"{column} = ?" for column in updates)
            self.db.execute(
                f"UPDATE user SET {assignments} WHERE id = ?", [*updates.values(), user.id]
            )
        self._notify()
        return self.get_by_id(user.id)

    def update_profile(
        self,
        name: Any = _UNSET,
        username: Any = _UNSET,
        email: Any = _UNSET,
        phone: Any = _UNSET,
        avatar: Any = _UNSET,
    ) -> User:
        """Update profile fields. Fields left unset are not touched."""
        updates: Dict[str, Any] = {}
        if name is not _UNSET:
            if not isinstance(name, str) or not name.strip():
                raise ValidationError("name", "cannot be empty")
            updates["name"] = name.strip()
        for column, value in (
            ("username", username),
            ("email", email),
            ("phone", phone),
            ("avatar", avatar),
        ):
            if value is not _UNSET:
                updates[column] = value
        if updates.get("email") and "@" not in updates["email"]:
            raise ValidationError("email", "must contain '@'")
        return self._apply_local_update(updates)

    def update_settings(
        self,
        theme: Any = _UNSET,
        task_reminders: Any = _UNSET,
        shared_messages: Any = _UNSET,
        visibility: Any = _UNSET,
    ) -> User:
        """Update settings. Fields left unset are not touched."""
        updates: Dict[str, Any] = {}
        if theme is not _UNSET:
            updates["settings_theme"] = validate_theme(theme)
        if task_reminders is not _UNSET:
            updates["settings_notifications_task_reminders"] = 1 if task_reminders else 0
        if shared_messages is not _UNSET:
            updates["settings_notifications_shared_messages"] = 1 if shared_messages else 0
        if visibility is not _UNSET:
            updates["settings_privacy_visibility"] = validate_visibility(visibility)
        return self._apply_local_update(updates)

    def delete(self) -> bool:
        """Soft delete this device's profile.

        The push that follows asks the Remote Store to delete the profile
        and every chat and message of this device. A later get_or_create()
        revives the row as a fresh pending profile.

        Returns:
            True if a profile was deleted, False if there was none
        """
        with self.db.transaction():
            user = self.get_current()
            if user is None:
                return False
            stamp = next_timestamp(user.updated_at)
            self.db.execute(
                """UPDATE user SET deleted_at = ?, sync_status = 'pending', updated_at = ?
                   WHERE id = ?""",
                (stamp, stamp, user.id),
            )
        logger.info(f"Deleted user profile {user.id}")
        self._notify()
        return True

    # ============================================================================
    # Sync operations
    # ============================================================================

    def get_pending_sync(self) -> List[User]:
        """Get user rows with pending sync status."""
        rows = self.db.fetch_all("SELECT * FROM user WHERE sync_status = 'pending'")
        return [User.from_row(r) for r in rows]

    def get_never_synced(self) -> List[User]:
        """Get non-deleted user rows with no server ID yet."""
        rows = self.db.fetch_all(
            "SELECT * FROM user WHERE server_id IS NULL AND deleted_at IS NULL"
        )
        return [User.from_row(r) for r in rows]

    def mark_synced(
        self,
        local_id: str,
        server_id: str,
        if_unchanged_since: Optional[str] = None,
    ) -> str:
        """Assign a server ID to a user row, merging with any existing holder.

        A stale row already holding server_id (e.g. restored from a backup
        made under another device identity) is kept as the survivor: it
        takes over this row's device ID and profile, and this row is
        physically deleted.

        Returns:
            Local ID of the row that now holds server_id
        """
        server_id = validate_server_id(server_id)
        with self.db.transaction():
            existing = self.db.fetch_one(
                "SELECT id FROM user WHERE server_id = ? AND id != ?",
                (server_id, local_id),
            )
            if existing is not None:
                duplicate = self.db.fetch_one("SELECT * FROM user WHERE id = ?", (local_id,))
                self.db.execute("DELETE FROM user WHERE id = ?", (local_id,))
                if duplicate is not None:
                    carried = (
                        "device_id",
                        *_PROFILE_COLUMNS,
                        "settings_theme",
                        "settings_notifications_task_reminders",
                        "settings_notifications_shared_messages",
                        "settings_privacy_visibility",
                    )
                    assignments = ", ".join(f"{column} = ?" for column in carried)
                    self.db.execute(
                        f"""UPDATE user SET {assignments}, deleted_at = NULL,
                                sync_status = 'pending', updated_at = MAX(updated_at, ?)
                            WHERE id = ?""",
                        [
                            *(duplicate[column] for column in carried),
                            duplicate["updated_at"],
                            existing["id"],
                        ],
                    )
                logger.info(
                    f"Merged duplicate user {local_id} into {existing['id']} "
                    f"(server_id={server_id})"
                )
                return existing["id"]

            self.db.execute(
                """UPDATE user SET server_id = ?,
                       sync_status = CASE WHEN ? IS NULL OR updated_at = ?
                                          THEN 'synced' ELSE sync_status END
                   WHERE id = ?""",
                (server_id, if_unchanged_since, if_unchanged_since, local_id),
            )
        return local_id

    def mark_clean(self, local_id: str, if_unchanged_since: Optional[str] = None) -> bool:
        """Mark a user row as synced after a confirmed update."""
        cursor = self.db.execute(
            """UPDATE user SET sync_status = 'synced'
               WHERE id = ? AND (? IS NULL OR updated_at = ?)""",
            (local_id, if_unchanged_since, if_unchanged_since),
        )
        return cursor.rowcount > 0

    def upsert_from_server(self, record: Dict[str, Any]) -> Optional[str]:
        """Apply confirmed server state for the user profile.

        Lookup is by server ID first, then by device ID so that a row that
        never got its server ID adopts the server record instead of being
        duplicated.

        Returns:
            Local ID of the affected row, or None if nothing was stored
        """
        server_id = validate_server_id(record["server_id"])
        device_id = validate_device_id(record.get("device_id") or self.device_id)
        updated_at = normalize_timestamp(record["updated_at"])
        created_at = normalize_timestamp(record.get("created_at")) or updated_at

        with self.db.transaction():
            row = self.db.fetch_one("SELECT * FROM user WHERE server_id = ?", (server_id,))
            if row is None:
                row = self.db.fetch_one(
                    "SELECT * FROM user WHERE device_id = ? AND server_id IS NULL",
                    (device_id,),
                )

            if record.get("is_deleted"):
                if row is None:
                    return None
                self.db.execute(
                    """UPDATE user SET deleted_at = COALESCE(deleted_at, ?),
                           sync_status = 'synced' WHERE id = ?""",
                    (updated_at, row["id"]),
                )
                return row["id"]

            values = [
                record.get("name") or "Me",
                record.get("username"),
                record.get("email"),
                record.get("phone"),
                record.get("avatar"),
                validate_theme(record.get("theme") or "system"),
                1 if record.get("task_reminders", True) else 0,
                1 if record.get("shared_messages", True) else 0,
                validate_visibility(record.get("visibility") or "private"),
            ]
            columns = (
                *_PROFILE_COLUMNS,
                "settings_theme",
                "settings_notifications_task_reminders",
                "settings_notifications_shared_messages",
                "settings_privacy_visibility",
            )

            if row is not None:
                assignments = ", ".join(f"{column} = ?" for column in columns)
                self.db.execute(
                    f"""UPDATE user SET {assignments}, server_id = ?,
                            sync_status = 'synced', updated_at = ?
                        WHERE id = ?""",
                    [*values, server_id, updated_at, row["id"]],
                )
                return row["id"]

            user_id = uuid7().hex
            self.db.execute(
                f"""INSERT INTO user (id, server_id, device_id, {", ".join(columns)},
                        sync_status, created_at, updated_at)
                    VALUES (?, ?, ?, {", ".join("?" for _ in columns)}, 'synced', ?, ?)""",
                [user_id, server_id, device_id, *values, created_at, updated_at],
            )
            return user_id
