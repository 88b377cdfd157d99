"""Push tests against an in-process Remote Store.

Covers:
- First push of offline-created data
- Idempotent replays (a second push sends nothing, a lost response
  does not duplicate)
- Per-record rejections that do not abort the batch
- Transport and authentication failures that do
- Deleted records that never reached the server
"""

from __future__ import annotations

from unittest.mock import patch

import pytest
import requests

from helpers import FlaskSession
from mneme.core.chat_repository import ChatRepository
from mneme.core.database import Database
from mneme.core.message_repository import MessageRepository
from mneme.core.models import SyncStatus
from mneme.core.remote import AuthenticationError, RemoteClient, TransientSyncError
from mneme.core.server_store import ServerStore
from mneme.core.sync_engine import SyncEngine, SyncState
from mneme.core.user_repository import UserRepository


@pytest.mark.sync
class TestFirstPush:
    """Pushing records that have never been synced."""

    def test_push_creates_everything(
        self,
        engine: SyncEngine,
        chats: ChatRepository,
        messages: MessageRepository,
        users: UserRepository,
        server_store: ServerStore,
        db: Database,
    ) -> None:
        chat = chats.create("Groceries")
        message = messages.create(chat.id, content="milk")
        users.get_or_create()

        result = engine.push()

        assert result.success is True
        assert result.pushed == 3
        assert server_store.counts() == {"chats": 1, "messages": 1, "users": 1}
        synced_chat = chats.get_by_id(chat.id)
        synced_message = messages.get_by_id(message.id)
        assert synced_chat.server_id is not None
        assert synced_chat.sync_status is SyncStatus.SYNCED
        assert synced_message.server_id is not None
        assert synced_message.sync_status is SyncStatus.SYNCED
        assert users.get_current().server_id is not None
        assert db.get_sync_meta()["last_push_timestamp"] is not None

    def test_server_record_matches_local(
        self,
        engine: SyncEngine,
        chats: ChatRepository,
        messages: MessageRepository,
        server_store: ServerStore,
    ) -> None:
        chat = chats.create("Groceries", icon="🛒")
        message = messages.create(chat.id, content="milk")
        messages.set_starred(message.id, True)

        engine.push()

        chat = chats.get_by_id(chat.id)
        message = messages.get_by_id(message.id)
        owner = engine.remote.device_id
        server_chat = server_store.get_chat(owner, chat.server_id)
        server_message = server_store.get_message(owner, message.server_id)
        assert server_chat["name"] == "Groceries"
        assert server_chat["icon"] == "🛒"
        assert server_message["content"] == "milk"
        assert server_message["isStarred"] is True
        assert server_message["chatId"] == chat.server_id

    def test_second_push_sends_nothing(
        self,
        engine: SyncEngine,
        chats: ChatRepository,
        messages: MessageRepository,
        session: FlaskSession,
    ) -> None:
        chat = chats.create("Groceries")
        messages.create(chat.id, content="milk")
        engine.push()
        calls = len(session.calls)

        result = engine.push()

        assert result.pushed == 0
        assert len(session.calls) == calls

    def test_update_uses_put(
        self,
        engine: SyncEngine,
        chats: ChatRepository,
        session: FlaskSession,
        server_store: ServerStore,
    ) -> None:
        chat = chats.create("Groceries")
        engine.push()
        chats.update(chat.id, name="Shopping")

        result = engine.push()

        assert result.pushed == 1
        assert session.count("POST", "/api/chats") == 1
        assert session.count("PUT", "/api/chats/") == 1
        server_id = chats.get_by_id(chat.id).server_id
        assert server_store.get_chat(engine.remote.device_id, server_id)["name"] == "Shopping"
        assert chats.get_by_id(chat.id).sync_status is SyncStatus.SYNCED

    def test_lost_create_response_is_not_duplicated(
        self,
        engine: SyncEngine,
        chats: ChatRepository,
        remote: RemoteClient,
        server_store: ServerStore,
    ) -> None:
        """The server applied a create whose response never arrived."""
        chat = chats.create("Groceries")
        first = remote.create_chat(chat)

        engine.push()

        assert server_store.counts()["chats"] == 1
        assert chats.get_by_id(chat.id).server_id == first["server_id"]

    def test_edit_during_push_stays_pending(
        self,
        engine: SyncEngine,
        chats: ChatRepository,
        remote: RemoteClient,
    ) -> None:
        """A local write that lands between snapshot and confirmation is kept."""
        chat = chats.create("Groceries")
        real_create = remote.create_chat

        def create_and_edit(pushed_chat):
            record = real_create(pushed_chat)
            chats.update(chat.id, name="Edited meanwhile")
            return record

        with patch.object(remote, "create_chat", side_effect=create_and_edit):
            engine.push()

        reloaded = chats.get_by_id(chat.id)
        assert reloaded.server_id is not None
        assert reloaded.name == "Edited meanwhile"
        assert reloaded.sync_status is SyncStatus.PENDING

        engine.push()
        assert chats.get_by_id(chat.id).sync_status is SyncStatus.SYNCED


@pytest.mark.sync
class TestPushDeletions:
    """Deleted records and tombstones."""

    def test_deleted_never_synced_chat_is_not_sent(
        self,
        engine: SyncEngine,
        chats: ChatRepository,
        messages: MessageRepository,
        session: FlaskSession,
    ) -> None:
        chat = chats.create("Scratch")
        messages.create(chat.id, content="temp")
        chats.delete(chat.id)

        result = engine.push()

        assert result.success is True
        assert session.count("POST", "/api/chats") == 0
        assert chats.get_pending_sync() == []
        assert messages.get_pending_sync() == []

    def test_deleted_chat_with_locked_message_is_created_as_tombstone(
        self,
        engine: SyncEngine,
        chats: ChatRepository,
        messages: MessageRepository,
        server_store: ServerStore,
    ) -> None:
        chat = chats.create("Scratch")
        locked = messages.create(chat.id, content="keep")
        messages.set_locked(locked.id, True)
        chats.delete(chat.id)

        result = engine.push()

        assert result.success is True
        deleted_chat = chats.get_by_id(chat.id, include_deleted=True)
        assert deleted_chat.server_id is not None
        owner = engine.remote.device_id
        assert server_store.get_chat(owner, deleted_chat.server_id)["isDeleted"] is True
        locked = messages.get_by_id(locked.id)
        assert server_store.get_message(owner, locked.server_id)["isDeleted"] is False

    def test_delete_after_sync_sends_tombstone(
        self,
        engine: SyncEngine,
        chats: ChatRepository,
        messages: MessageRepository,
        server_store: ServerStore,
    ) -> None:
        chat = chats.create("Groceries")
        message = messages.create(chat.id, content="milk")
        engine.push()
        chats.delete(chat.id)

        result = engine.push()

        assert result.pushed == 2
        owner = engine.remote.device_id
        chat = chats.get_by_id(chat.id, include_deleted=True)
        message = messages.get_by_id(message.id, include_deleted=True)
        assert server_store.get_chat(owner, chat.server_id)["isDeleted"] is True
        assert server_store.get_message(owner, message.server_id)["isDeleted"] is True
        assert chat.sync_status is SyncStatus.SYNCED


@pytest.mark.sync
class TestPartialFailures:
    """Rejected records do not stop the rest of the batch."""

    def test_rejected_message_does_not_block_others(
        self,
        engine: SyncEngine,
        chats: ChatRepository,
        messages: MessageRepository,
        db: Database,
    ) -> None:
        chat = chats.create("Groceries")
        bad = messages.create(chat.id, content="bad")
        good = messages.create(chat.id, content="good")
        db.execute("UPDATE messages SET type = 'sticker' WHERE id = ?", (bad.id,))

        result = engine.push()

        assert result.success is False
        assert len(result.errors) == 1
        assert bad.id in result.errors[0]
        assert messages.get_by_id(good.id).sync_status is SyncStatus.SYNCED
        assert messages.get_by_id(bad.id).sync_status is SyncStatus.PENDING

    def test_message_of_rejected_chat_is_reported(
        self,
        engine: SyncEngine,
        chats: ChatRepository,
        messages: MessageRepository,
        db: Database,
    ) -> None:
        bad_chat = chats.create("Bad")
        orphan = messages.create(bad_chat.id, content="orphan")
        good_chat = chats.create("Good")
        db.execute("UPDATE chats SET name = '' WHERE id = ?", (bad_chat.id,))

        result = engine.push()

        assert len(result.errors) == 2
        assert chats.get_by_id(good_chat.id).server_id is not None
        assert chats.get_by_id(bad_chat.id).server_id is None
        assert messages.get_by_id(orphan.id).server_id is None
        assert engine.state is SyncState.IDLE


@pytest.mark.sync
class TestPushAborts:
    """Failures that abort the whole push."""

    def test_offline_push_raises_and_keeps_pending(
        self,
        engine: SyncEngine,
        chats: ChatRepository,
        session: FlaskSession,
        db: Database,
    ) -> None:
        chat = chats.create("Groceries")
        with patch.object(
            session, "request", side_effect=requests.ConnectionError("offline")
        ):
            with pytest.raises(TransientSyncError):
                engine.push()

        assert chats.get_by_id(chat.id).sync_status is SyncStatus.PENDING
        assert db.get_sync_meta()["is_syncing"] is False
        assert engine.state is SyncState.IDLE
        assert engine.is_syncing() is False

        engine.push()
        assert chats.get_by_id(chat.id).sync_status is SyncStatus.SYNCED

    def test_unknown_device_raises_authentication_error(
        self,
        db: Database,
        chats: ChatRepository,
        messages: MessageRepository,
        users: UserRepository,
        session: FlaskSession,
    ) -> None:
        remote = RemoteClient("http://testserver", "not-a-device", session=session)
        engine = SyncEngine(db, chats, messages, users, remote)
        chats.create("Groceries")

        with pytest.raises(AuthenticationError):
            engine.push()
