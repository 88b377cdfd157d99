"""Pytest fixtures for Mneme tests.

This module provides fixtures for configuration, the Local Store and its
repositories, an in-process Remote Store served through the Flask test
client, and a wired sync engine.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Generator

import pytest
from flask import Flask

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from mneme.core.chat_repository import ChatRepository
from mneme.core.config import Config
from mneme.core.database import Database
from mneme.core.message_repository import MessageRepository
from mneme.core.remote import RemoteClient
from mneme.core.server_store import ServerStore
from mneme.core.sync_engine import SyncEngine
from mneme.core.user_repository import UserRepository
from mneme.server import create_app

from helpers import TEST_DEVICE_ID, TEST_SERVER_URL, Device, FlaskSession, make_device


@pytest.fixture
def test_config_dir(tmp_path: Path) -> Path:
    """Create temporary config directory for tests."""
    config_dir = tmp_path / "mneme_test"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def test_config(test_config_dir: Path) -> Config:
    """Create test configuration with a fixed device ID."""
    config = Config(config_dir=test_config_dir)
    config.set("device_id", TEST_DEVICE_ID)
    return config


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """Create an empty Local Store."""
    database = Database(tmp_path / "local.db")
    yield database
    database.close()


@pytest.fixture
def chats(db: Database) -> ChatRepository:
    return ChatRepository(db)


@pytest.fixture
def messages(db: Database, chats: ChatRepository) -> MessageRepository:
    return MessageRepository(db, chats)


@pytest.fixture
def users(db: Database) -> UserRepository:
    return UserRepository(db, TEST_DEVICE_ID)


@pytest.fixture
def server_store(tmp_path: Path) -> Generator[ServerStore, None, None]:
    """Create an empty Remote Store."""
    store = ServerStore(tmp_path / "server.db")
    yield store
    store.close()


@pytest.fixture
def server_app(server_store: ServerStore) -> Flask:
    app = create_app(server_store)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def session(server_app: Flask) -> FlaskSession:
    """HTTP session routed to the in-process Remote Store."""
    return FlaskSession(server_app)


@pytest.fixture
def remote(session: FlaskSession) -> RemoteClient:
    return RemoteClient(TEST_SERVER_URL, TEST_DEVICE_ID, timeout=5, session=session)


@pytest.fixture
def engine(
    db: Database,
    chats: ChatRepository,
    messages: MessageRepository,
    users: UserRepository,
    remote: RemoteClient,
) -> SyncEngine:
    """Sync engine wired to the fixture repositories and Remote Store."""
    return SyncEngine(db, chats, messages, users, remote)


@pytest.fixture
def second_install(tmp_path: Path, server_app: Flask) -> Generator[Device, None, None]:
    """A second installation with the same device identity.

    Models a reinstall or restored backup: it sees the same server records
    but has its own Local Store.
    """
    device = make_device(tmp_path / "second.db", TEST_DEVICE_ID, server_app)
    yield device
    device.db.close()
