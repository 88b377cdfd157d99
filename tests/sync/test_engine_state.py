"""Sync engine state machine, single-flight exclusion and tombstone purge."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List
from unittest.mock import patch

import pytest

from mneme.core.chat_repository import ChatRepository
from mneme.core.database import Database
from mneme.core.message_repository import MessageRepository
from mneme.core.remote import RemoteClient, TransientSyncError
from mneme.core.sync_engine import SyncEngine, SyncResult, SyncState
from mneme.core.user_repository import UserRepository


@pytest.mark.sync
class TestStateTransitions:
    """Listeners observe every state change."""

    def test_push_states(self, engine: SyncEngine) -> None:
        states: List[SyncState] = []
        engine.add_listener(states.append)
        engine.push()
        assert states == [SyncState.PUSHING, SyncState.IDLE]
        assert engine.state is SyncState.IDLE

    def test_sync_states(self, engine: SyncEngine) -> None:
        states: List[SyncState] = []
        engine.add_listener(states.append)
        engine.sync()
        assert states == [SyncState.PUSHING, SyncState.PULLING, SyncState.IDLE]

    def test_error_state(self, engine: SyncEngine, remote: RemoteClient) -> None:
        states: List[SyncState] = []
        engine.add_listener(states.append)
        with patch.object(remote, "list_chats", side_effect=TransientSyncError("down")):
            with pytest.raises(TransientSyncError):
                engine.pull()
        assert states == [SyncState.PULLING, SyncState.ERROR, SyncState.IDLE]

    def test_local_error_propagates(self, engine: SyncEngine, chats: ChatRepository) -> None:
        states: List[SyncState] = []
        engine.add_listener(states.append)
        with patch.object(chats, "get_pending_sync", side_effect=RuntimeError("disk")):
            with pytest.raises(RuntimeError):
                engine.push()
        assert SyncState.ERROR in states
        assert engine.state is SyncState.IDLE

    def test_remove_listener(self, engine: SyncEngine) -> None:
        states: List[SyncState] = []
        engine.add_listener(states.append)
        engine.remove_listener(states.append)
        engine.push()
        assert states == []


@pytest.mark.sync
class TestSingleFlight:
    """Only one push or pull runs at a time."""

    def test_nested_request_is_coalesced(self, engine: SyncEngine, db: Database) -> None:
        inner: List[SyncResult] = []
        flags: List[bool] = []

        def on_state(state: SyncState) -> None:
            if state is SyncState.PUSHING:
                flags.append(engine.is_syncing())
                flags.append(db.get_sync_meta()["is_syncing"])
                inner.append(engine.pull())

        engine.add_listener(on_state)
        outer = engine.push()

        assert outer.coalesced is False
        assert inner[0].coalesced is True
        assert flags == [True, True]
        assert engine.is_syncing() is False
        assert db.get_sync_meta()["is_syncing"] is False

    def test_coalesced_request_makes_no_calls(
        self, engine: SyncEngine, remote: RemoteClient
    ) -> None:
        engine._lock.acquire()
        try:
            with patch.object(remote, "list_chats") as list_chats:
                result = engine.pull()
            list_chats.assert_not_called()
            assert result.coalesced is True
        finally:
            engine._lock.release()


@pytest.mark.sync
class TestPurgeTombstones:
    """Retention-based removal of synced tombstones."""

    def test_purge_after_retention(
        self,
        engine: SyncEngine,
        chats: ChatRepository,
        messages: MessageRepository,
    ) -> None:
        chat = chats.create("Old")
        message = messages.create(chat.id, content="old")
        engine.push()
        chats.delete(chat.id)
        engine.push()

        assert engine.purge_tombstones() == 0
        later = datetime.now(timezone.utc) + timedelta(days=31)
        assert engine.purge_tombstones(now=later) == 2
        assert chats.get_by_id(chat.id, include_deleted=True) is None
        assert messages.get_by_id(message.id, include_deleted=True) is None

    def test_pending_tombstones_are_kept(
        self, engine: SyncEngine, chats: ChatRepository
    ) -> None:
        chat = chats.create("Old")
        engine.push()
        chats.delete(chat.id)
        later = datetime.now(timezone.utc) + timedelta(days=31)
        assert engine.purge_tombstones(now=later) == 0

    def test_zero_retention_disables_purge(
        self,
        db: Database,
        chats: ChatRepository,
        messages: MessageRepository,
        users: UserRepository,
        remote: RemoteClient,
    ) -> None:
        engine = SyncEngine(db, chats, messages, users, remote, tombstone_retention_days=0)
        chat = chats.create("Old")
        engine.push()
        chats.delete(chat.id)
        engine.push()
        later = datetime.now(timezone.utc) + timedelta(days=3650)
        assert engine.purge_tombstones(now=later) == 0
