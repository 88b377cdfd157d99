"""Unit tests for ChatRepository.

Covers CRUD, cascade deletion with locked messages, the last-message cache
and the sync operations (pending queries, mark_synced merge, upsert).
"""

from __future__ import annotations

from unittest.mock import Mock

import pytest

from mneme.core.chat_repository import ChatRepository
from mneme.core.database import Database
from mneme.core.message_repository import MessageRepository
from mneme.core.models import SyncStatus
from mneme.core.validation import ValidationError


def server_chat(server_id: str, **overrides) -> dict:
    record = {
        "server_id": server_id,
        "name": "From server",
        "icon": None,
        "is_pinned": False,
        "wallpaper": None,
        "last_message": {"content": None, "type": None, "timestamp": None},
        "is_deleted": False,
        "created_at": "2026-01-01T00:00:00.000Z",
        "updated_at": "2026-01-02T00:00:00.000Z",
    }
    record.update(overrides)
    return record


@pytest.mark.unit
class TestChatCrud:
    """Create, read, update, list."""

    def test_create_is_pending_without_server_id(self, chats: ChatRepository) -> None:
        chat = chats.create("  Ideas ", icon="💡")
        assert chat.name == "Ideas"
        assert chat.icon == "💡"
        assert chat.server_id is None
        assert chat.sync_status is SyncStatus.PENDING
        assert chat.created_at == chat.updated_at

    def test_create_notifies(self, db: Database) -> None:
        on_change = Mock()
        repo = ChatRepository(db, on_change=on_change)
        repo.create("Ideas")
        on_change.assert_called_once_with()

    def test_create_rejects_empty_name(self, chats: ChatRepository) -> None:
        with pytest.raises(ValidationError):
            chats.create("   ")

    def test_update_bumps_updated_at_and_marks_pending(self, chats: ChatRepository) -> None:
        chat = chats.create("Ideas")
        chats.mark_synced(chat.id, "srv-1")
        updated = chats.update(chat.id, name="Plans", is_pinned=True)
        assert updated.name == "Plans"
        assert updated.is_pinned is True
        assert updated.sync_status is SyncStatus.PENDING
        assert updated.updated_at > chat.updated_at

    def test_update_without_changes_is_noop(self, chats: ChatRepository) -> None:
        chat = chats.create("Ideas")
        assert chats.update(chat.id) == chat

    def test_update_missing_returns_none(self, chats: ChatRepository) -> None:
        assert chats.update("0" * 32, name="x") is None

    def test_get_all_orders_pinned_first(self, chats: ChatRepository) -> None:
        first = chats.create("First")
        second = chats.create("Second")
        chats.update(first.id, is_pinned=True)
        page = chats.get_all()
        assert [c.id for c in page.data] == [first.id, second.id]
        assert page.total == 2
        assert page.has_more is False

    def test_get_all_search_and_paging(self, chats: ChatRepository) -> None:
        for name in ("Work", "Workout", "Home"):
            chats.create(name)
        page = chats.get_all(search="work", limit=1)
        assert page.total == 2
        assert len(page.data) == 1
        assert page.has_more is True

    def test_require_raises_for_missing(self, chats: ChatRepository) -> None:
        with pytest.raises(ValidationError):
            chats.require("0" * 32)


@pytest.mark.unit
class TestChatDelete:
    """Soft delete with cascade and locked-message exception."""

    def test_delete_cascades_except_locked(
        self, chats: ChatRepository, messages: MessageRepository
    ) -> None:
        chat = chats.create("Ideas")
        plain = messages.create(chat.id, content="plain")
        locked = messages.create(chat.id, content="keep me")
        messages.set_locked(locked.id, True)

        deleted, locked_count = chats.delete(chat.id)

        assert deleted is True
        assert locked_count == 1
        assert chats.get_by_id(chat.id) is None
        assert chats.get_by_id(chat.id, include_deleted=True).deleted_at is not None
        assert messages.get_by_id(plain.id) is None
        survivor = messages.get_by_id(locked.id)
        assert survivor is not None
        assert [m.id for m in messages.get_locked()] == [locked.id]

    def test_delete_marks_chat_and_messages_pending(
        self, chats: ChatRepository, messages: MessageRepository
    ) -> None:
        chat = chats.create("Ideas")
        message = messages.create(chat.id, content="x")
        chats.mark_synced(chat.id, "srv-c")
        messages.mark_synced(message.id, "srv-m")

        chats.delete(chat.id)

        assert chats.get_by_id(chat.id, include_deleted=True).sync_status is SyncStatus.PENDING
        assert messages.get_by_id(message.id, include_deleted=True).sync_status is SyncStatus.PENDING

    def test_delete_missing(self, chats: ChatRepository) -> None:
        assert chats.delete("0" * 32) == (False, 0)


@pytest.mark.unit
class TestLastMessageCache:
    """The denormalized last-message summary."""

    def test_tracks_newest_message(
        self, chats: ChatRepository, messages: MessageRepository
    ) -> None:
        chat = chats.create("Ideas")
        messages.create(chat.id, content="first")
        second = messages.create(chat.id, content="second")
        cached = chats.get_by_id(chat.id).last_message
        assert cached.content == "second"
        assert cached.timestamp == second.created_at

    def test_follows_edit_and_delete(
        self, chats: ChatRepository, messages: MessageRepository
    ) -> None:
        chat = chats.create("Ideas")
        first = messages.create(chat.id, content="first")
        second = messages.create(chat.id, content="second")

        messages.update(second.id, "second, edited")
        assert chats.get_by_id(chat.id).last_message.content == "second, edited"

        messages.delete(second.id)
        assert chats.get_by_id(chat.id).last_message.content == "first"

        messages.delete(first.id)
        assert chats.get_by_id(chat.id).last_message is None

    def test_refresh_does_not_change_sync_status(
        self, chats: ChatRepository, messages: MessageRepository
    ) -> None:
        chat = chats.create("Ideas")
        chats.mark_synced(chat.id, "srv-c")
        before = chats.get_by_id(chat.id)
        chats.refresh_last_message(chat.id)
        after = chats.get_by_id(chat.id)
        assert after.sync_status is SyncStatus.SYNCED
        assert after.updated_at == before.updated_at


@pytest.mark.unit
class TestChatSyncQueries:
    """get_pending_sync / get_never_synced / mark_clean."""

    def test_pending_and_never_synced(self, chats: ChatRepository) -> None:
        chat = chats.create("Ideas")
        assert [c.id for c in chats.get_pending_sync()] == [chat.id]
        assert [c.id for c in chats.get_never_synced()] == [chat.id]

        chats.mark_synced(chat.id, "srv-1", chat.updated_at)
        assert chats.get_pending_sync() == []
        assert chats.get_never_synced() == []

    def test_never_synced_excludes_deleted(self, chats: ChatRepository) -> None:
        chat = chats.create("Ideas")
        chats.delete(chat.id)
        assert chats.get_never_synced() == []
        assert [c.id for c in chats.get_pending_sync()] == [chat.id]

    def test_mark_synced_keeps_pending_if_changed_since_snapshot(
        self, chats: ChatRepository
    ) -> None:
        chat = chats.create("Ideas")
        snapshot = chat.updated_at
        chats.update(chat.id, name="Changed during push")

        chats.mark_synced(chat.id, "srv-1", snapshot)

        reloaded = chats.get_by_id(chat.id)
        assert reloaded.server_id == "srv-1"
        assert reloaded.sync_status is SyncStatus.PENDING

    def test_mark_clean(self, chats: ChatRepository) -> None:
        chat = chats.create("Ideas")
        chats.mark_synced(chat.id, "srv-1")
        updated = chats.update(chat.id, name="Plans")
        assert chats.mark_clean(chat.id, chat.updated_at) is False
        assert chats.mark_clean(chat.id, updated.updated_at) is True
        assert chats.get_by_id(chat.id).sync_status is SyncStatus.SYNCED


@pytest.mark.unit
class TestChatMerge:
    """Identity collision in mark_synced."""

    def test_merge_moves_messages_and_deletes_duplicate(
        self, chats: ChatRepository, messages: MessageRepository
    ) -> None:
        existing_id = chats.upsert_from_server(server_chat("srv-1", name="Ideas"))
        older = messages.create(existing_id, content="older")

        duplicate = chats.create("Ideas")
        child_1 = messages.create(duplicate.id, content="child one")
        child_2 = messages.create(duplicate.id, content="child two")

        survivor = chats.mark_synced(duplicate.id, "srv-1")

        assert survivor == existing_id
        assert chats.get_by_id(duplicate.id, include_deleted=True) is None
        moved = {m.id for m in messages.get_by_chat(existing_id).data}
        assert moved == {older.id, child_1.id, child_2.id}
        assert chats.get_by_id(existing_id).last_message.content == "child two"
        assert messages.get_by_id(child_1.id).sync_status is SyncStatus.PENDING
        assert messages.search_in_chat(existing_id, "child").total == 2

    def test_only_one_row_per_server_id(self, chats: ChatRepository) -> None:
        chats.upsert_from_server(server_chat("srv-1"))
        duplicate = chats.create("Dup")
        chats.mark_synced(duplicate.id, "srv-1")
        count = chats.db.fetch_value("SELECT COUNT(*) FROM chats WHERE server_id = 'srv-1'")
        assert count == 1
        assert chats.get_all().total == 1


@pytest.mark.unit
class TestChatUpsertFromServer:
    """Pull-side upsert."""

    def test_inserts_new_synced_row(self, chats: ChatRepository) -> None:
        local_id = chats.upsert_from_server(server_chat("srv-1", name="Remote"))
        chat = chats.get_by_id(local_id)
        assert chat.server_id == "srv-1"
        assert chat.name == "Remote"
        assert chat.sync_status is SyncStatus.SYNCED
        assert chat.updated_at == "2026-01-02T00:00:00.000Z"

    def test_overwrites_existing_row(self, chats: ChatRepository) -> None:
        chat = chats.create("Local")
        chats.mark_synced(chat.id, "srv-1")
        local_id = chats.upsert_from_server(server_chat("srv-1", name="Remote", is_pinned=True))
        assert local_id == chat.id
        reloaded = chats.get_by_id(chat.id)
        assert reloaded.name == "Remote"
        assert reloaded.is_pinned is True
        assert reloaded.sync_status is SyncStatus.SYNCED

    def test_tombstone_without_local_row_is_ignored(self, chats: ChatRepository) -> None:
        assert chats.upsert_from_server(server_chat("srv-1", is_deleted=True)) is None
        assert chats.get_by_server_id("srv-1", include_deleted=True) is None

    def test_tombstone_kept_on_request(self, chats: ChatRepository) -> None:
        local_id = chats.upsert_from_server(
            server_chat("srv-1", is_deleted=True), keep_tombstone=True
        )

        chat = chats.get_by_id(local_id, include_deleted=True)
        assert chat.server_id == "srv-1"
        assert chat.deleted_at == "2026-01-02T00:00:00.000Z"
        assert chat.sync_status is SyncStatus.SYNCED
        assert chats.get_all().total == 0
        assert chats.get_pending_sync() == []
        assert chats.get_never_synced() == []

    def test_tombstone_cascade_does_not_queue_messages(
        self, chats: ChatRepository, messages: MessageRepository
    ) -> None:
        chat = chats.create("Local")
        plain = messages.create(chat.id, content="plain")
        chats.mark_synced(chat.id, "srv-1")
        messages.mark_synced(plain.id, "srv-m1")

        chats.upsert_from_server(server_chat("srv-1", is_deleted=True))

        deleted = messages.get_by_id(plain.id, include_deleted=True)
        assert deleted.deleted_at is not None
        assert deleted.sync_status is SyncStatus.SYNCED
        assert messages.get_pending_sync() == []

    def test_tombstone_soft_deletes_and_cascades(
        self, chats: ChatRepository, messages: MessageRepository
    ) -> None:
        chat = chats.create("Local")
        plain = messages.create(chat.id, content="plain")
        locked = messages.create(chat.id, content="locked")
        messages.set_locked(locked.id, True)
        chats.mark_synced(chat.id, "srv-1")

        chats.upsert_from_server(server_chat("srv-1", is_deleted=True))

        deleted = chats.get_by_id(chat.id, include_deleted=True)
        assert deleted.deleted_at is not None
        assert deleted.sync_status is SyncStatus.SYNCED
        assert messages.get_by_id(plain.id) is None
        assert messages.get_by_id(locked.id) is not None

    def test_pending_local_deletion_is_kept(self, chats: ChatRepository) -> None:
        chat = chats.create("Local")
        chats.mark_synced(chat.id, "srv-1")
        chats.delete(chat.id)

        chats.upsert_from_server(server_chat("srv-1", name="Still alive remotely"))

        reloaded = chats.get_by_id(chat.id, include_deleted=True)
        assert reloaded.deleted_at is not None
        assert reloaded.sync_status is SyncStatus.PENDING

    def test_invalid_record_raises(self, chats: ChatRepository) -> None:
        with pytest.raises(ValidationError):
            chats.upsert_from_server(server_chat("srv-1", name=""))


@pytest.mark.unit
class TestChatPurge:
    """Tombstone purge."""

    def test_purges_synced_tombstones_without_messages(self, chats: ChatRepository) -> None:
        chat = chats.create("Old")
        chats.delete(chat.id)
        deleted = chats.get_by_id(chat.id, include_deleted=True)
        chats.mark_clean(chat.id, deleted.updated_at)

        assert chats.purge_tombstones("2000-01-01T00:00:00.000Z") == 0
        assert chats.purge_tombstones("2999-01-01T00:00:00.000Z") == 1
        assert chats.get_by_id(chat.id, include_deleted=True) is None

    def test_keeps_pending_tombstones(self, chats: ChatRepository) -> None:
        chat = chats.create("Old")
        chats.delete(chat.id)
        assert chats.purge_tombstones("2999-01-01T00:00:00.000Z") == 0

    def test_keeps_chat_with_locked_messages(
        self, chats: ChatRepository, messages: MessageRepository
    ) -> None:
        chat = chats.create("Old")
        locked = messages.create(chat.id, content="keep")
        messages.set_locked(locked.id, True)
        chats.delete(chat.id)
        deleted = chats.get_by_id(chat.id, include_deleted=True)
        chats.mark_clean(chat.id, deleted.updated_at)
        assert chats.purge_tombstones("2999-01-01T00:00:00.000Z") == 0
