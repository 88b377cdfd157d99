"""Remote Store HTTP server for Mneme.

Serves the sync wire contract over the ServerStore. Uses only core/
modules - no UI dependencies.

Endpoints (all under /api):
    GET  /status                       Health check (no device header needed)
    POST /chats                        Create a chat (idempotent per clientId)
    PUT  /chats/<server_id>            Update or tombstone a chat
    GET  /chats?since=<ts>             Chats changed since a timestamp
    POST /chats/<server_id>/messages   Create a message in a chat
    PUT  /messages/<server_id>         Update, move or tombstone a message
    GET  /messages?since=<ts>          Messages changed since a timestamp
    PUT  /users/me                     Upsert this device's user profile
    GET  /users/me                     Get this device's user profile
    DELETE /users/me                   Delete the profile and all data of this device

Every request except /status must carry the X-Device-ID header with the
calling device's UUID hex string; records are owned by that device.
List responses carry "serverTime", the server clock before the query ran.
"""

from __future__ import annotations

import argparse
import functools
import logging
from pathlib import Path
from typing import Any, Callable, Optional

from flask import Blueprint, Flask, Response, jsonify, request
from flask_cors import CORS

from mneme import __version__
from mneme.core.config import Config
from mneme.core.remote import DEVICE_ID_HEADER
from mneme.core.server_store import RecordNotFoundError, ServerStore
from mneme.core.validation import ValidationError, validate_device_id

logger = logging.getLogger(__name__)


class UnauthorizedError(Exception):
    """The request did not identify a device."""


def api_endpoint(func: Callable) -> Callable:
    """Decorator for consistent API error handling.

    Maps ValidationError/ValueError to 400, UnauthorizedError to 401,
    RecordNotFoundError to 404 and anything else to 500, always as
    {"error": "..."} JSON.
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except UnauthorizedError as e:
            logger.warning(f"Rejected unauthenticated request to {request.path}: {e}")
            return jsonify({"error": str(e)}), 401
        except ValidationError as e:
            logger.warning(f"Validation error in {func.__name__}: {e.field} - {e.message}")
            return jsonify({"error": f"Invalid {e.field}: {e.message}"}), 400
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        except RecordNotFoundError as e:
            return jsonify({"error": str(e)}), 404
        except Exception as e:
            logger.error(f"Error in {func.__name__}: {e}")
            return jsonify({"error": str(e)}), 500

    return wrapper


def _device_id() -> str:
    value = request.headers.get(DEVICE_ID_HEADER)
    if not value:
        raise UnauthorizedError(f"missing {DEVICE_ID_HEADER} header")
    try:
        return validate_device_id(value)
    except ValidationError as e:
        raise UnauthorizedError(f"invalid {DEVICE_ID_HEADER} header: {e.message}") from None


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationError("body", "must be a JSON object")
    return body


def create_api_blueprint(store: ServerStore) -> Blueprint:
    """Create the /api blueprint over a store.

    Args:
        store: ServerStore instance

    Returns:
        Flask Blueprint with the sync routes
    """
    api = Blueprint("api", __name__, url_prefix="/api")

    @api.route("/status", methods=["GET"])
    @api_endpoint
    def status() -> Response:
        """Health check."""
        return jsonify(
            {"status": "ok", "version": __version__, "serverTime": store.server_time()}
        )

    # ===== Chats =====

    @api.route("/chats", methods=["POST"])
    @api_endpoint
    def create_chat() -> tuple[Response, int]:
        owner = _device_id()
        return jsonify(store.create_chat(owner, _json_body())), 201

    @api.route("/chats/<chat_id>", methods=["PUT"])
    @api_endpoint
    def update_chat(chat_id: str) -> Response:
        owner = _device_id()
        return jsonify(store.update_chat(owner, chat_id, _json_body()))

    @api.route("/chats", methods=["GET"])
    @api_endpoint
    def list_chats() -> Response:
        owner = _device_id()
        server_time = store.server_time()
        chats = store.list_chats(owner, request.args.get("since"))
        return jsonify({"chats": chats, "serverTime": server_time})

    # ===== Messages =====

    @api.route("/chats/<chat_id>/messages", methods=["POST"])
    @api_endpoint
    def create_message(chat_id: str) -> tuple[Response, int]:
        owner = _device_id()
        return jsonify(store.create_message(owner, chat_id, _json_body())), 201

    @api.route("/messages/<message_id>", methods=["PUT"])
    @api_endpoint
    def update_message(message_id: str) -> Response:
        owner = _device_id()
        return jsonify(store.update_message(owner, message_id, _json_body()))

    @api.route("/messages", methods=["GET"])
    @api_endpoint
    def list_messages() -> Response:
        owner = _device_id()
        server_time = store.server_time()
        messages = store.list_messages(owner, request.args.get("since"))
        return jsonify({"messages": messages, "serverTime": server_time})

    # ===== User =====

    @api.route("/users/me", methods=["PUT"])
    @api_endpoint
    def put_user() -> Response:
        owner = _device_id()
        return jsonify(store.put_user(owner, _json_body()))

    @api.route("/users/me", methods=["GET"])
    @api_endpoint
    def get_user() -> Response:
        owner = _device_id()
        return jsonify({"user": store.get_user(owner), "serverTime": store.server_time()})

    @api.route("/users/me", methods=["DELETE"])
    @api_endpoint
    def delete_user() -> Response:
        owner = _device_id()
        return jsonify(store.delete_user(owner))

    return api


def create_app(store: ServerStore) -> Flask:
    """Create and configure the Flask application.

    Args:
        store: ServerStore the routes read and write

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)
    CORS(app)
    app.register_blueprint(create_api_blueprint(store))

    @app.errorhandler(404)
    def not_found(error: Any) -> tuple[Response, int]:
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(error: Any) -> tuple[Response, int]:
        return jsonify({"error": "Method not allowed"}), 405

    return app


def add_server_subparser(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> None:
    """Add the server subparser and its arguments."""
    server_parser = subparsers.add_parser("server", help="Run the Remote Store sync server")
    server_parser.add_argument(
        "--host", type=str, default=None, help="Host to bind to (default: from config)"
    )
    server_parser.add_argument(
        "--port", type=int, default=None, help="Port to bind to (default: from config)"
    )
    server_parser.add_argument(
        "--database",
        type=Path,
        default=None,
        help="Server database file (default: from config)",
    )
    server_parser.add_argument("--debug", action="store_true", help="Enable debug mode")


def run(config_dir: Optional[Path], args: argparse.Namespace) -> int:
    """Run the sync server with given arguments.

    Returns:
        Exit code (0 for success)
    """
    config = Config(config_dir=config_dir)
    server_config = config.get_server_config()
    host = args.host or server_config["host"]
    port = args.port or server_config["port"]
    db_path = Path(args.database or server_config["database_file"])
    db_path.parent.mkdir(parents=True, exist_ok=True)

    store = ServerStore(db_path)
    logger.info(f"Starting Mneme sync server on {host}:{port} (database: {db_path})")
    try:
        create_app(store).run(host=host, port=port, debug=args.debug)
    finally:
        store.close()
    return 0
