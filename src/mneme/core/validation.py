"""Input validation for Mneme.

This module provides validation functions for all user inputs and for
records received from the Remote Store. All validators raise
ValidationError with descriptive messages.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

__all__ = [
    "ValidationError",
    "validate_uuid_hex",
    "validate_entity_id",
    "validate_chat_id",
    "validate_message_id",
    "validate_device_id",
    "validate_server_id",
    "validate_chat_name",
    "validate_message_content",
    "validate_message_type",
    "validate_location",
    "validate_search_query",
    "validate_theme",
    "validate_visibility",
    "validate_pagination",
    "MESSAGE_TYPES",
    "THEMES",
    "VISIBILITIES",
]

MAX_CHAT_NAME_LENGTH = 100
MAX_MESSAGE_CONTENT_LENGTH = 100_000
MAX_SEARCH_QUERY_LENGTH = 500
MAX_SERVER_ID_LENGTH = 64
MAX_PAGE_SIZE = 500

MESSAGE_TYPES = frozenset(
    ["text", "image", "voice", "file", "location", "contact", "video", "link"]
)
THEMES = frozenset(["light", "dark", "system"])
VISIBILITIES = frozenset(["public", "private", "contacts"])


class ValidationError(ValueError):
    """Validation error with field and message attributes."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"

    def __repr__(self) -> str:
        return f"ValidationError(field='{self.field}', message='{self.message}')"


def validate_uuid_hex(value: str, field_name: str = "id") -> str:
    """Validate a UUID hex string and return its canonical 32-char form."""
    if not isinstance(value, str):
        raise ValidationError(
            field_name, f"must be a string, got {type(value).__name__}"
        )
    stripped = value.replace("-", "")
    if len(stripped) != 32:
        raise ValidationError(
            field_name, f"must be 32 hex characters, got {len(stripped)}"
        )
    try:
        return uuid.UUID(hex=stripped).hex
    except ValueError as e:
        raise ValidationError(field_name, f"invalid UUID format: {e}") from None


def validate_entity_id(entity_id: str, field_name: str = "id") -> str:
    """Validate a local entity ID (chat, message, user)."""
    return validate_uuid_hex(entity_id, field_name)


def validate_chat_id(chat_id: str) -> str:
    """Validate a chat ID."""
    return validate_entity_id(chat_id, "chat_id")


def validate_message_id(message_id: str) -> str:
    """Validate a message ID."""
    return validate_entity_id(message_id, "message_id")


def validate_device_id(device_id: str) -> str:
    """Validate a device ID."""
    return validate_entity_id(device_id, "device_id")


def validate_server_id(server_id: Any, field_name: str = "server_id") -> str:
    """Validate a server-assigned identifier.

    Server IDs are opaque to the client: any non-empty string up to
    MAX_SERVER_ID_LENGTH characters is accepted.
    """
    if not isinstance(server_id, str):
        raise ValidationError(
            field_name, f"must be a string, got {type(server_id).__name__}"
        )
    stripped = server_id.strip()
    if not stripped:
        raise ValidationError(field_name, "cannot be empty")
    if len(stripped) > MAX_SERVER_ID_LENGTH:
        raise ValidationError(
            field_name, f"cannot exceed {MAX_SERVER_ID_LENGTH} characters"
        )
    return stripped


def validate_chat_name(name: Any) -> str:
    """Validate a chat name and return it stripped."""
    if not isinstance(name, str):
        raise ValidationError(
            "name", f"must be a string, got {type(name).__name__}"
        )
    stripped = name.strip()
    if not stripped:
        raise ValidationError("name", "cannot be empty or whitespace only")
    if len(stripped) > MAX_CHAT_NAME_LENGTH:
        raise ValidationError(
            "name",
            f"cannot exceed {MAX_CHAT_NAME_LENGTH} characters (got {len(stripped)})",
        )
    return stripped


def validate_message_content(content: Optional[str]) -> None:
    """Validate message content. None is allowed for attachment-only types."""
    if content is None:
        return
    if not isinstance(content, str):
        raise ValidationError(
            "content", f"must be a string or None, got {type(content).__name__}"
        )
    if len(content) > MAX_MESSAGE_CONTENT_LENGTH:
        raise ValidationError(
            "content",
            f"cannot exceed {MAX_MESSAGE_CONTENT_LENGTH} characters (got {len(content)})",
        )


def validate_message_type(message_type: Any) -> str:
    """Validate a message type."""
    if message_type not in MESSAGE_TYPES:
        allowed = ", ".join(sorted(MESSAGE_TYPES))
        raise ValidationError("type", f"must be one of {allowed}, got {message_type!r}")
    return message_type


def validate_location(latitude: Any, longitude: Any) -> None:
    """Validate a latitude/longitude pair."""
    for field_name, value, limit in (
        ("latitude", latitude, 90.0),
        ("longitude", longitude, 180.0),
    ):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(
                field_name, f"must be a number, got {type(value).__name__}"
            )
        if not -limit <= value <= limit:
            raise ValidationError(
                field_name, f"must be between -{limit:g} and {limit:g}, got {value}"
            )


def validate_search_query(query: Any) -> str:
    """Validate a full-text search query and return it stripped."""
    if not isinstance(query, str):
        raise ValidationError(
            "query", f"must be a string, got {type(query).__name__}"
        )
    stripped = query.strip()
    if not stripped:
        raise ValidationError("query", "cannot be empty")
    if len(stripped) > MAX_SEARCH_QUERY_LENGTH:
        raise ValidationError(
            "query", f"cannot exceed {MAX_SEARCH_QUERY_LENGTH} characters"
        )
    return stripped


def validate_theme(theme: Any) -> str:
    """Validate a theme setting."""
    if theme not in THEMES:
        raise ValidationError("theme", f"must be one of light, dark, system, got {theme!r}")
    return theme


def validate_visibility(visibility: Any) -> str:
    """Validate a privacy visibility setting."""
    if visibility not in VISIBILITIES:
        raise ValidationError(
            "visibility", f"must be one of public, private, contacts, got {visibility!r}"
        )
    return visibility


def validate_pagination(page: Any, limit: Any) -> None:
    """Validate page/limit pagination parameters."""
    if isinstance(page, bool) or not isinstance(page, int) or page < 1:
        raise ValidationError("page", f"must be a positive integer, got {page!r}")
    if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(
            "limit", f"must be an integer between 1 and {MAX_PAGE_SIZE}, got {limit!r}"
        )
