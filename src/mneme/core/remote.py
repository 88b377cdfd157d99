"""Remote Store client for Mneme.

This module provides the client side of the sync wire contract:
- HTTP transport (requests) with a per-device identification header
- Encoding of local entities into the camelCase wire format
- Decoding of server records into the local field names the repositories
  expect from upsert_from_server()
- The sync error taxonomy

Wire records carry the server identity in "_id", the local identity in
"clientId" (on create), tombstones as "isDeleted": true, and every list
response carries the server clock as "serverTime".

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import requests

from .models import Attachment, Chat, Location, Message, User

logger = logging.getLogger(__name__)

DEVICE_ID_HEADER = "X-Device-ID"

# 4xx statuses that reject one record without saying anything about the rest
REJECTED_STATUSES = frozenset([400, 404, 409, 422])


class SyncError(Exception):
    """Base class for sync failures."""


class TransientSyncError(SyncError):
    """Connectivity failure, timeout or server error. Retried next cycle."""


class AuthenticationError(SyncError):
    """The Remote Store refused this device. Aborts the whole cycle."""


class RecordRejectedError(SyncError):
    """The Remote Store rejected a single record."""

    def __init__(self, message: str, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(message)


# ============================================================================
# Wire codec
# ============================================================================


def encode_chat(chat: Chat) -> Dict[str, Any]:
    """Encode a local chat for a create or update request."""
    last_message = None
    if chat.last_message is not None:
        last_message = {
            "content": chat.last_message.content,
            "type": chat.last_message.type,
            "timestamp": chat.last_message.timestamp,
        }
    return {
        "clientId": chat.id,
        "name": chat.name,
        "icon": chat.icon,
        "isPinned": chat.is_pinned,
        "wallpaper": chat.wallpaper,
        "lastMessage": last_message,
        "isDeleted": chat.deleted_at is not None,
        "createdAt": chat.created_at,
        "updatedAt": chat.updated_at,
    }


def decode_chat(data: Dict[str, Any]) -> Dict[str, Any]:
    """Decode a server chat record into local field names."""
    last_message = data.get("lastMessage") or {}
    return {
        "server_id": data.get("_id"),
        "name": data.get("name"),
        "icon": data.get("icon"),
        "is_pinned": bool(data.get("isPinned")),
        "wallpaper": data.get("wallpaper"),
        "last_message": {
            "content": last_message.get("content"),
            "type": last_message.get("type"),
            "timestamp": last_message.get("timestamp"),
        },
        "is_deleted": bool(data.get("isDeleted")),
        "created_at": data.get("createdAt"),
        "updated_at": data.get("updatedAt"),
    }


def encode_message(message: Message, chat_server_id: str) -> Dict[str, Any]:
    """Encode a local message for a create or update request."""
    attachment = None
    if message.attachment is not None:
        attachment = {
            "url": message.attachment.url,
            "filename": message.attachment.filename,
            "mimeType": message.attachment.mime_type,
            "size": message.attachment.size,
            "duration": message.attachment.duration,
            "thumbnail": message.attachment.thumbnail,
            "width": message.attachment.width,
            "height": message.attachment.height,
        }
    location = None
    if message.location is not None:
        location = {
            "latitude": message.location.latitude,
            "longitude": message.location.longitude,
            "address": message.location.address,
        }
    return {
        "clientId": message.id,
        "chatId": chat_server_id,
        "content": message.content,
        "type": message.type,
        "attachment": attachment,
        "location": location,
        "linkPreview": message.link_preview,
        "isLocked": message.is_locked,
        "isStarred": message.is_starred,
        "isEdited": message.is_edited,
        "task": {
            "isTask": message.task.is_task,
            "reminderAt": message.task.reminder_at,
            "isCompleted": message.task.is_completed,
            "completedAt": message.task.completed_at,
        },
        "isDeleted": message.deleted_at is not None,
        "createdAt": message.created_at,
        "updatedAt": message.updated_at,
    }


def decode_message(data: Dict[str, Any]) -> Dict[str, Any]:
    """Decode a server message record into local field names.

    The owning chat is returned as "chat_server_id"; the caller resolves it
    to a local chat before calling MessageRepository.upsert_from_server().
    """
    attachment = None
    raw_attachment = data.get("attachment")
    if raw_attachment and raw_attachment.get("url"):
        attachment = Attachment(
            url=raw_attachment["url"],
            filename=raw_attachment.get("filename"),
            mime_type=raw_attachment.get("mimeType"),
            size=raw_attachment.get("size"),
            duration=raw_attachment.get("duration"),
            thumbnail=raw_attachment.get("thumbnail"),
            width=raw_attachment.get("width"),
            height=raw_attachment.get("height"),
        )
    location = None
    raw_location = data.get("location")
    if raw_location and raw_location.get("latitude") is not None:
        location = Location(
            latitude=raw_location["latitude"],
            longitude=raw_location["longitude"],
            address=raw_location.get("address"),
        )
    task = data.get("task") or {}
    return {
        "server_id": data.get("_id"),
        "chat_server_id": data.get("chatId"),
        "content": data.get("content"),
        "type": data.get("type") or "text",
        "attachment": attachment,
        "location": location,
        "link_preview": data.get("linkPreview"),
        "is_locked": bool(data.get("isLocked")),
        "is_starred": bool(data.get("isStarred")),
        "is_edited": bool(data.get("isEdited")),
        "task": {
            "is_task": bool(task.get("isTask")),
            "reminder_at": task.get("reminderAt"),
            "is_completed": bool(task.get("isCompleted")),
            "completed_at": task.get("completedAt"),
        },
        "is_deleted": bool(data.get("isDeleted")),
        "created_at": data.get("createdAt"),
        "updated_at": data.get("updatedAt"),
    }


def encode_user(user: User) -> Dict[str, Any]:
    """Encode the local user profile for PUT /users/me."""
    return {
        "clientId": user.id,
        "deviceId": user.device_id,
        "name": user.name,
        "username": user.username,
        "email": user.email,
        "phone": user.phone,
        "avatar": user.avatar,
        "settings": {
            "theme": user.theme,
            "notifications": {
                "taskReminders": user.task_reminders,
                "sharedMessages": user.shared_messages,
            },
            "privacy": {"visibility": user.visibility},
        },
        "isDeleted": user.deleted_at is not None,
        "createdAt": user.created_at,
        "updatedAt": user.updated_at,
    }


def decode_user(data: Dict[str, Any]) -> Dict[str, Any]:
    """Decode a server user record into local field names."""
    settings = data.get("settings") or {}
    notifications = settings.get("notifications") or {}
    privacy = settings.get("privacy") or {}
    return {
        "server_id": data.get("_id"),
        "device_id": data.get("deviceId"),
        "name": data.get("name"),
        "username": data.get("username"),
        "email": data.get("email"),
        "phone": data.get("phone"),
        "avatar": data.get("avatar"),
        "theme": settings.get("theme"),
        "task_reminders": notifications.get("taskReminders", True),
        "shared_messages": notifications.get("sharedMessages", True),
        "visibility": privacy.get("visibility"),
        "is_deleted": bool(data.get("isDeleted")),
        "created_at": data.get("createdAt"),
        "updated_at": data.get("updatedAt"),
    }


# ============================================================================
# HTTP client
# ============================================================================


class RemoteClient:
    """HTTP client for the Remote Store.

    Every method returns decoded data or raises a SyncError subclass:
    TransientSyncError for connectivity problems, timeouts and 5xx
    responses, AuthenticationError for 401/403 and RecordRejectedError for
    per-record 4xx rejections.
    """

    def __init__(
        self,
        base_url: str,
        device_id: str,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Remote Store root URL, e.g. "http://127.0.0.1:8385"
            device_id: This device's UUID hex string
            timeout: Timeout in seconds applied to every request
            session: Session to send requests with (a new one by default)
        """
        self.base_url = base_url.rstrip("/")
        self.device_id = device_id
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()

    def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send one request and return the decoded JSON body."""
        url = f"{self.base_url}/api{path}"
        try:
            response = self.session.request(
                method,
                url,
                json=json,
                params=params,
                headers={DEVICE_ID_HEADER: self.device_id},
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise TransientSyncError(f"{method} {path} timed out: {e}") from e
        except requests.RequestException as e:
            raise TransientSyncError(f"{method} {path} failed: {e}") from e

        status = response.status_code
        if status >= 400:
            try:
                detail = response.json().get("error", response.text)
            except ValueError:
                detail = response.text
            message = f"{method} {path} returned {status}: {detail}"
            if status in (401, 403):
                raise AuthenticationError(message)
            if status in REJECTED_STATUSES:
                raise RecordRejectedError(message, status)
            raise TransientSyncError(message)

        try:
            body = response.json()
        except ValueError as e:
            raise TransientSyncError(f"{method} {path} returned invalid JSON") from e
        if not isinstance(body, dict):
            raise TransientSyncError(f"{method} {path} returned a non-object body")
        return body

    def get_status(self) -> Dict[str, Any]:
        """Get the Remote Store health status."""
        return self._request("GET", "/status")

    # ===== Chats =====

    def create_chat(self, chat: Chat) -> Dict[str, Any]:
        """Create a chat. Retrying with the same local ID returns the same record."""
        return decode_chat(self._request("POST", "/chats", json=encode_chat(chat)))

    def update_chat(self, server_id: str, chat: Chat) -> Dict[str, Any]:
        """Update (or tombstone) a chat."""
        return decode_chat(
            self._request("PUT", f"/chats/{server_id}", json=encode_chat(chat))
        )

    def list_chats(self, since: Optional[str] = None) -> Tuple[List[Dict[str, Any]], str]:
        """List chats changed since a timestamp (all chats if None).

        Returns:
            Tuple of (decoded chats, server time of the query)
        """
        body = self._request("GET", "/chats", params={"since": since} if since else None)
        return [decode_chat(c) for c in body.get("chats", [])], body["serverTime"]

    # ===== Messages =====

    def create_message(self, chat_server_id: str, message: Message) -> Dict[str, Any]:
        """Create a message in a chat."""
        return decode_message(
            self._request(
                "POST",
                f"/chats/{chat_server_id}/messages",
                json=encode_message(message, chat_server_id),
            )
        )

    def update_message(
        self, server_id: str, chat_server_id: str, message: Message
    ) -> Dict[str, Any]:
        """Update (or tombstone) a message. A changed chatId moves it."""
        return decode_message(
            self._request(
                "PUT",
                f"/messages/{server_id}",
                json=encode_message(message, chat_server_id),
            )
        )

    def list_messages(
        self, since: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], str]:
        """List messages changed since a timestamp (all messages if None)."""
        body = self._request(
            "GET", "/messages", params={"since": since} if since else None
        )
        return [decode_message(m) for m in body.get("messages", [])], body["serverTime"]

    # ===== User =====

    def put_user(self, user: User) -> Dict[str, Any]:
        """Upsert this device's user profile."""
        return decode_user(self._request("PUT", "/users/me", json=encode_user(user)))

    def get_user(self) -> Optional[Dict[str, Any]]:
        """Get this device's user profile as stored on the server, or None."""
        body = self._request("GET", "/users/me")
        user = body.get("user")
        return decode_user(user) if user else None

    def delete_user(self) -> Dict[str, Any]:
        """Delete this device's profile and all of its chats and messages."""
        return decode_user(self._request("DELETE", "/users/me"))
