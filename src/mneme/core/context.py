"""Composition root for Mneme.

Builds exactly one instance of each collaborator for a Local Store handle
and wires them together: repositories notify the trigger surface, which
schedules pushes through the single PushScheduler owned here.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import requests

from .chat_repository import ChatRepository
from .config import Config
from .database import Database
from .message_repository import MessageRepository
from .remote import RemoteClient
from .scheduler import PushScheduler
from .sync_engine import SyncEngine
from .triggers import SyncTriggers
from .user_repository import UserRepository

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Every long-lived object of one running application."""

    config: Config
    db: Database
    chats: ChatRepository
    messages: MessageRepository
    users: UserRepository
    triggers: SyncTriggers
    remote: Optional[RemoteClient] = None
    engine: Optional[SyncEngine] = None
    scheduler: Optional[PushScheduler] = None

    def close(self) -> None:
        """Cancel scheduled pushes and close the Local Store."""
        if self.scheduler is not None:
            self.scheduler.shutdown()
        self.db.close()


def create_context(
    config: Config,
    db: Optional[Database] = None,
    session: Optional[requests.Session] = None,
) -> AppContext:
    """Build and wire the application objects.

    The sync engine and scheduler are only created when a server URL is
    configured; whether they run is decided by the sync.enabled setting.

    Args:
        config: Loaded configuration
        db: Local Store to use (opened from config when None)
        session: HTTP session for the Remote Store client

    Returns:
        The wired AppContext
    """
    if db is None:
        db_path = config.get_database_file()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        db = Database(db_path)

    device_id = config.get_device_id_hex()
    chats = ChatRepository(db)
    messages = MessageRepository(db, chats)
    users = UserRepository(db, device_id)
    users.get_or_create()

    remote = None
    engine = None
    scheduler = None
    server_url = config.get_server_url()
    if server_url:
        remote = RemoteClient(
            server_url, device_id, timeout=config.get_request_timeout(), session=session
        )
        engine = SyncEngine(
            db,
            chats,
            messages,
            users,
            remote,
            tombstone_retention_days=config.get_tombstone_retention_days(),
        )
        scheduler = PushScheduler(engine.push, delay=config.get_debounce_seconds())
        logger.info(f"Sync configured against {server_url}")

    triggers = SyncTriggers(config, engine, scheduler)
    for repository in (chats, messages, users):
        repository.on_change = triggers.on_local_mutation

    return AppContext(
        config=config,
        db=db,
        chats=chats,
        messages=messages,
        users=users,
        triggers=triggers,
        remote=remote,
        engine=engine,
        scheduler=scheduler,
    )
