"""Shared helpers for Mneme tests."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from flask import Flask

from mneme.cli import run as run_cli_command
from mneme.core.chat_repository import ChatRepository
from mneme.core.database import Database
from mneme.core.message_repository import MessageRepository
from mneme.core.remote import RemoteClient
from mneme.core.sync_engine import SyncEngine
from mneme.core.user_repository import UserRepository
from mneme.main import create_parser

TEST_SERVER_URL = "http://testserver"

# Device IDs (hex strings - 32 chars)
TEST_DEVICE_ID = "00000000000070008000000000000001"
OTHER_DEVICE_ID = "00000000000070008000000000000002"


class FlaskResponse:
    """The parts of requests.Response that RemoteClient reads."""

    def __init__(self, response: Any) -> None:
        self.status_code = response.status_code
        self.text = response.get_data(as_text=True)

    def json(self) -> Any:
        return json.loads(self.text)


class FlaskSession:
    """Stand-in for requests.Session that routes to a Flask test client.

    Every request is recorded in `calls` as (method, path) so tests can
    assert on network traffic.
    """

    def __init__(self, app: Flask) -> None:
        self.client = app.test_client()
        self.calls: List[Tuple[str, str]] = []

    def request(
        self,
        method: str,
        url: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> FlaskResponse:
        path = urlsplit(url).path
        self.calls.append((method, path))
        response = self.client.open(
            path, method=method, json=json, query_string=params, headers=headers
        )
        return FlaskResponse(response)

    def count(self, method: str, path_prefix: str = "") -> int:
        return sum(1 for m, p in self.calls if m == method and p.startswith(path_prefix))


@dataclass
class Device:
    """One installation: a Local Store with its repositories and engine."""

    db: Database
    chats: ChatRepository
    messages: MessageRepository
    users: UserRepository
    remote: RemoteClient
    engine: SyncEngine
    session: FlaskSession


def make_device(db_path: Any, device_id: str, app: Flask) -> Device:
    """Build a fully wired device talking to `app`."""
    db = Database(db_path)
    chats = ChatRepository(db)
    messages = MessageRepository(db, chats)
    users = UserRepository(db, device_id)
    session = FlaskSession(app)
    remote = RemoteClient(TEST_SERVER_URL, device_id, timeout=5, session=session)
    engine = SyncEngine(db, chats, messages, users, remote)
    return Device(db, chats, messages, users, remote, engine, session)


def run_cli(config_dir: Any, *argv: str, session: Optional[FlaskSession] = None) -> int:
    """Parse and run one `mneme cli ...` command in-process."""
    args = create_parser().parse_args(["-d", str(config_dir), "cli", *argv])
    return run_cli_command(args.config_dir, args, session=session)
