"""Sync engine for Mneme.

Orchestrates the two halves of a sync cycle against the Remote Store:

1. Push: send every pending or never-synced record (chats, then messages,
   then the user profile), record server identities and mark them synced.
2. Pull: fetch everything the server changed since the last pull and
   upsert it into the Local Store, server state winning on conflict.

Only one cycle runs at a time. A push or pull requested while another is
in flight is coalesced: it returns immediately with `coalesced=True`
instead of queueing behind the running one.

The engine never writes SQL itself; all local reads and writes go through
the repositories.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Set, TypeVar

from .chat_repository import ChatRepository
from .database import Database
from .message_repository import MessageRepository
from .models import User
from .remote import (
    AuthenticationError,
    RecordRejectedError,
    RemoteClient,
    TransientSyncError,
)
from .timestamp_utils import (
    format_timestamp,
    normalize_timestamp,
    now_timestamp,
    shift_timestamp,
)
from .user_repository import UserRepository
from .validation import ValidationError

logger = logging.getLogger(__name__)

# Incremental pulls re-read this many seconds before the last server time so
# that writes committed while the previous pull was running are not missed.
PULL_OVERLAP_SECONDS = 2.0


class SyncState(Enum):
    """Externally visible state of the sync engine."""

    IDLE = "idle"
    PUSHING = "pushing"
    PULLING = "pulling"
    ERROR = "error"


@dataclass
class SyncResult:
    """Result of a push, pull or full cycle."""

    success: bool = True
    pushed: int = 0  # Records confirmed by the server
    pulled: int = 0  # Server records applied locally
    merged: int = 0  # Duplicate local records merged away
    purged: int = 0  # Tombstones physically removed
    coalesced: bool = False  # Another cycle was already running
    errors: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.success = False


T = TypeVar("T")


def _union_by_id(*groups: Iterable[T]) -> List[T]:
    """Concatenate record lists, keeping the first occurrence of each id."""
    seen: Set[str] = set()
    result: List[T] = []
    for group in groups:
        for record in group:
            if record.id not in seen:
                seen.add(record.id)
                result.append(record)
    return result


def _pull_watermark(server_time: Optional[str], skipped: List[Dict]) -> Optional[str]:
    """Timestamp to store as last_pull_timestamp after a pull.

    Skipped records must be served again by the next incremental pull, so
    the watermark never passes the oldest of them. None means keep the
    previous watermark.
    """
    if not skipped:
        return server_time
    try:
        stamps = [normalize_timestamp(record["updated_at"]) for record in skipped]
        if server_time is not None:
            stamps.append(normalize_timestamp(server_time))
    except (KeyError, TypeError, ValueError, AttributeError):
        return None
    if None in stamps:
        return None
    return min(stamps)


class SyncEngine:
    """Push / pull orchestration with single-flight mutual exclusion."""

    def __init__(
        self,
        db: Database,
        chats: ChatRepository,
        messages: MessageRepository,
        users: UserRepository,
        remote: RemoteClient,
        tombstone_retention_days: int = 30,
    ) -> None:
        """Initialize the sync engine.

        Args:
            db: Local Store (used for sync_meta bookkeeping only)
            chats: Chat repository
            messages: Message repository
            users: User repository
            remote: Remote Store client
            tombstone_retention_days: Days a synced tombstone is kept before
                it is purged; 0 keeps tombstones forever
        """
        self.db = db
        self.chats = chats
        self.messages = messages
        self.users = users
        self.remote = remote
        self.tombstone_retention_days = tombstone_retention_days
        self._lock = threading.Lock()
        self._state = SyncState.IDLE
        self._listeners: List[Callable[[SyncState], None]] = []

    # ============================================================================
    # State
    # ============================================================================

    @property
    def state(self) -> SyncState:
        return self._state

    def add_listener(self, listener: Callable[[SyncState], None]) -> None:
        """Register a callback invoked with every state change."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[SyncState], None]) -> None:
        self._listeners.remove(listener)

    def _set_state(self, state: SyncState) -> None:
        self._state = state
        for listener in list(self._listeners):
            listener(state)

    def is_syncing(self) -> bool:
        """Check whether a push or pull is in flight."""
        return self._lock.locked()

    # ============================================================================
    # Public entry points
    # ============================================================================

    def push(self) -> SyncResult:
        """Push local changes to the Remote Store.

        Raises:
            TransientSyncError: If the Remote Store is unreachable
            AuthenticationError: If the Remote Store refuses this device
        """
        return self._run_exclusive(self._push)

    def pull(self) -> SyncResult:
        """Pull server changes into the Local Store.

        Raises:
            TransientSyncError: If the Remote Store is unreachable
            AuthenticationError: If the Remote Store refuses this device
        """
        return self._run_exclusive(self._pull)

    def sync(self) -> SyncResult:
        """Run a full cycle: push, then pull, then purge old tombstones.

        The pull only starts once the push has completed, so local changes
        reach the server before server state is applied locally.
        """

        def cycle() -> SyncResult:
            result = self._push()
            pulled = self._pull()
            result.pulled = pulled.pulled
            for error in pulled.errors:
                result.add_error(error)
            result.purged = self.purge_tombstones()
            return result

        return self._run_exclusive(cycle)

    def _run_exclusive(self, operation: Callable[[], SyncResult]) -> SyncResult:
        if not self._lock.acquire(blocking=False):
            logger.debug("Sync already in progress, coalescing request")
            return SyncResult(coalesced=True)
        try:
            self.db.set_syncing(True)
            try:
                return operation()
            except (TransientSyncError, AuthenticationError) as e:
                logger.warning(f"Sync aborted: {e}")
                self._set_state(SyncState.ERROR)
                raise
            except Exception as e:
                logger.error(f"Sync failed with a local error: {e}")
                self._set_state(SyncState.ERROR)
                raise
            finally:
                self.db.set_syncing(False)
                self._set_state(SyncState.IDLE)
        finally:
            self._lock.release()

    # ============================================================================
    # Push
    # ============================================================================

    def _push(self) -> SyncResult:
        self._set_state(SyncState.PUSHING)
        result = SyncResult()
        self._push_chats(result)
        self._push_messages(result)
        self._push_user(result)
        self.db.set_last_push_timestamp(now_timestamp())
        logger.info(
            f"Push complete: {result.pushed} pushed, {result.merged} merged, "
            f"{len(result.errors)} rejected"
        )
        return result

    def _record_rejection(
        self,
        result: SyncResult,
        entity: str,
        local_id: str,
        server_id: Optional[str],
        error: Exception,
    ) -> None:
        logger.warning(
            f"Push of {entity} {local_id} (server_id={server_id}) rejected: {error}"
        )
        result.add_error(f"{entity} {local_id}: {error}")

    def _push_chats(self, result: SyncResult) -> None:
        for chat in _union_by_id(self.chats.get_pending_sync(), self.chats.get_never_synced()):
            try:
                if chat.server_id is None:
                    if chat.deleted_at is not None and not self._has_live_messages(chat.id):
                        # Never reached the server; nothing to delete there.
                        self.chats.mark_clean(chat.id, chat.updated_at)
                        continue
                    record = self.remote.create_chat(chat)
                    survivor = self.chats.mark_synced(
                        chat.id, record["server_id"], chat.updated_at
                    )
                    if survivor != chat.id:
                        result.merged += 1
                    logger.debug(f"Created chat {chat.id} on server as {record['server_id']}")
                else:
                    self.remote.update_chat(chat.server_id, chat)
                    self.chats.mark_clean(chat.id, chat.updated_at)
                    logger.debug(f"Updated chat {chat.id} (server_id={chat.server_id})")
                result.pushed += 1
            except (RecordRejectedError, ValidationError) as e:
                self._record_rejection(result, "chat", chat.id, chat.server_id, e)

    def _has_live_messages(self, chat_id: str) -> bool:
        return self.messages.get_by_chat(chat_id, limit=1).total > 0

    def _push_messages(self, result: SyncResult) -> None:
        pending = _union_by_id(
            self.messages.get_pending_sync(), self.messages.get_never_synced()
        )
        chat_server_ids: Dict[str, Optional[str]] = {}
        for message in pending:
            try:
                if message.server_id is None and message.deleted_at is not None:
                    self.messages.mark_clean(message.id, message.updated_at)
                    continue

                if message.chat_id not in chat_server_ids:
                    chat = self.chats.get_by_id(message.chat_id, include_deleted=True)
                    chat_server_ids[message.chat_id] = chat.server_id if chat else None
                chat_server_id = chat_server_ids[message.chat_id]
                if chat_server_id is None:
                    raise ValidationError(
                        "chat_id", f"chat {message.chat_id} has no server identity yet"
                    )

                if message.server_id is None:
                    record = self.remote.create_message(chat_server_id, message)
                    survivor = self.messages.mark_synced(
                        message.id, record["server_id"], message.updated_at
                    )
                    if survivor != message.id:
                        result.merged += 1
                    logger.debug(
                        f"Created message {message.id} on server as {record['server_id']}"
                    )
                else:
                    self.remote.update_message(message.server_id, chat_server_id, message)
                    self.messages.mark_clean(message.id, message.updated_at)
                    logger.debug(
                        f"Updated message {message.id} (server_id={message.server_id})"
                    )
                result.pushed += 1
            except (RecordRejectedError, ValidationError) as e:
                self._record_rejection(result, "message", message.id, message.server_id, e)

    def _push_user(self, result: SyncResult) -> None:
        for user in _union_by_id(self.users.get_pending_sync(), self.users.get_never_synced()):
            if user.deleted_at is not None:
                self._push_user_deletion(result, user)
                continue
            try:
                record = self.remote.put_user(user)
                survivor = self.users.mark_synced(user.id, record["server_id"], user.updated_at)
                if survivor != user.id:
                    result.merged += 1
                result.pushed += 1
            except (RecordRejectedError, ValidationError) as e:
                self._record_rejection(result, "user", user.id, user.server_id, e)

    def _push_user_deletion(self, result: SyncResult, user: User) -> None:
        if user.server_id is not None:
            try:
                self.remote.delete_user()
                result.pushed += 1
                logger.info(f"Deleted profile {user.server_id} and its data on server")
            except RecordRejectedError as e:
                if e.status_code != 404:
                    self._record_rejection(result, "user", user.id, user.server_id, e)
                    return
                logger.debug(f"Profile {user.server_id} was already gone on server")
        self.users.mark_clean(user.id, user.updated_at)

    # ============================================================================
    # Pull
    # ============================================================================

    def _pull(self) -> SyncResult:
        self._set_state(SyncState.PULLING)
        result = SyncResult()
        last_pull = self.db.get_sync_meta()["last_pull_timestamp"]
        since = shift_timestamp(last_pull, -PULL_OVERLAP_SECONDS) if last_pull else None

        chat_records, server_time = self.remote.list_chats(since)
        message_records, _ = self.remote.list_messages(since)
        user_record = self.remote.get_user()

        touched_chats: Set[str] = set()
        skipped: List[Dict] = []
        # Deleted server chats with no local row, by server id.
        unseen_tombstones: Dict[str, Dict] = {}
        for record in chat_records:
            try:
                local_id = self.chats.upsert_from_server(record)
            except ValidationError as e:
                self._record_pull_error(result, skipped, "chat", record, e)
                continue
            if local_id is not None:
                touched_chats.add(local_id)
                result.pulled += 1
            elif record.get("is_deleted"):
                unseen_tombstones[record["server_id"]] = record

        for record in message_records:
            chat_server_id = record["chat_server_id"] or ""
            try:
                chat = self.chats.get_by_server_id(chat_server_id, include_deleted=True)
                if chat is None and chat_server_id in unseen_tombstones:
                    if record.get("is_deleted"):
                        continue
                    # A live locked message keeps its deleted chat.
                    self.chats.upsert_from_server(
                        unseen_tombstones.pop(chat_server_id), keep_tombstone=True
                    )
                    chat = self.chats.get_by_server_id(chat_server_id, include_deleted=True)
                if chat is None:
                    raise ValidationError("chat_id", f"unknown chat {chat_server_id!r}")
                local_id = self.messages.upsert_from_server(chat.id, record)
            except ValidationError as e:
                self._record_pull_error(result, skipped, "message", record, e)
                continue
            if local_id is not None:
                touched_chats.add(chat.id)
                result.pulled += 1

        # Server copies of the last-message cache may be older than local messages.
        for chat_id in touched_chats:
            self.chats.refresh_last_message(chat_id)

        if user_record is not None:
            try:
                if self.users.upsert_from_server(user_record) is not None:
                    result.pulled += 1
            except ValidationError as e:
                self._record_pull_error(result, skipped, "user", user_record, e)

        watermark = _pull_watermark(server_time, skipped)
        if watermark is not None:
            self.db.set_last_pull_timestamp(watermark)
        logger.info(f"Pull complete: {result.pulled} applied, {len(result.errors)} skipped")
        return result

    def _record_pull_error(
        self,
        result: SyncResult,
        skipped: List[Dict],
        entity: str,
        record: Dict,
        error: Exception,
    ) -> None:
        logger.warning(
            f"Skipped server {entity} (server_id={record.get('server_id')}): {error}"
        )
        result.add_error(f"{entity} {record.get('server_id')}: {error}")
        skipped.append(record)

    # ============================================================================
    # Tombstones
    # ============================================================================

    def purge_tombstones(self, now: Optional[datetime] = None) -> int:
        """Physically remove synced tombstones older than the retention period.

        Messages are purged before chats so that a chat whose last messages
        expire in the same pass can go too.

        Returns:
            Number of rows removed
        """
        if self.tombstone_retention_days <= 0:
            return 0
        now = now or datetime.now(timezone.utc)
        before = format_timestamp(now - timedelta(days=self.tombstone_retention_days))
        purged = self.messages.purge_tombstones(before) + self.chats.purge_tombstones(before)
        if purged:
            logger.info(f"Purged {purged} tombstones deleted before {before}")
        return purged
