"""Data models for the Mneme application.

This module defines immutable dataclasses representing the core entities:
Chat, Message and User, plus the value objects they carry.

Every syncable entity has a local ID (UUID7 hex, primary key in the Local
Store, never reassigned) and a nullable server ID assigned by the Remote
Store on first successful push.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar


class SyncStatus(Enum):
    """Sync state of a local record."""

    PENDING = "pending"  # Local state diverged from (or never reached) the server
    SYNCED = "synced"  # Local state matches the server as of the last sync


class MessageType(Enum):
    """Kinds of messages a chat can hold."""

    TEXT = "text"
    IMAGE = "image"
    VOICE = "voice"
    FILE = "file"
    LOCATION = "location"
    CONTACT = "contact"
    VIDEO = "video"
    LINK = "link"


class TaskFilter(Enum):
    """Filters for task queries."""

    ALL = "all"
    PENDING = "pending"
    COMPLETED = "completed"
    OVERDUE = "overdue"


@dataclass(frozen=True)
class Attachment:
    """Attachment metadata. File bytes are never interpreted by sync."""

    url: str
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    size: Optional[int] = None
    duration: Optional[int] = None
    thumbnail: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass(frozen=True)
class Location:
    """Geographic location attached to a message."""

    latitude: float
    longitude: float
    address: Optional[str] = None


@dataclass(frozen=True)
class Task:
    """Task sub-record of a message."""

    is_task: bool = False
    reminder_at: Optional[str] = None
    is_completed: bool = False
    completed_at: Optional[str] = None


@dataclass(frozen=True)
class LastMessage:
    """Denormalized summary of the newest non-deleted message in a chat."""

    content: Optional[str]
    type: str
    timestamp: str


@dataclass(frozen=True)
class Chat:
    """A chat (thread) holding messages.

    Attributes:
        id: Local ID (UUID7 hex)
        server_id: Remote Store ID, None until first successful push
        name: Display name
        icon: Emoji or image URL
        is_pinned: Whether the chat is pinned to the top of the list
        wallpaper: Optional wallpaper reference
        last_message: Cached summary of the newest message, or None
        sync_status: Pending or synced
        created_at: Creation timestamp
        updated_at: Last local mutation or confirmed server timestamp
        deleted_at: Soft-delete timestamp (None if active)
    """

    id: str
    server_id: Optional[str]
    name: str
    icon: Optional[str]
    is_pinned: bool
    wallpaper: Optional[str]
    last_message: Optional[LastMessage]
    sync_status: SyncStatus
    created_at: str
    updated_at: str
    deleted_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Chat":
        last_message = None
        if row["last_message_content"] is not None or row["last_message_type"] is not None:
            last_message = LastMessage(
                content=row["last_message_content"],
                type=row["last_message_type"] or MessageType.TEXT.value,
                timestamp=row["last_message_timestamp"] or row["updated_at"],
            )
        return cls(
            id=row["id"],
            server_id=row["server_id"],
            name=row["name"],
            icon=row["icon"],
            is_pinned=bool(row["is_pinned"]),
            wallpaper=row["wallpaper"],
            last_message=last_message,
            sync_status=SyncStatus(row["sync_status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["sync_status"] = self.sync_status.value
        return data


@dataclass(frozen=True)
class Message:
    """A message (note) belonging to exactly one chat."""

    id: str
    server_id: Optional[str]
    chat_id: str
    content: Optional[str]
    type: str
    attachment: Optional[Attachment]
    location: Optional[Location]
    link_preview: Optional[Dict[str, Any]]
    is_locked: bool
    is_starred: bool
    is_edited: bool
    task: Task
    sync_status: SyncStatus
    created_at: str
    updated_at: str
    deleted_at: Optional[str] = None
    chat_name: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Message":
        keys = row.keys()
        attachment = None
        if row["attachment_url"]:
            attachment = Attachment(
                url=row["attachment_url"],
                filename=row["attachment_filename"],
                mime_type=row["attachment_mime_type"],
                size=row["attachment_size"],
                duration=row["attachment_duration"],
                thumbnail=row["attachment_thumbnail"],
                width=row["attachment_width"],
                height=row["attachment_height"],
            )
        location = None
        if row["location_latitude"] is not None and row["location_longitude"] is not None:
            location = Location(
                latitude=row["location_latitude"],
                longitude=row["location_longitude"],
                address=row["location_address"],
            )
        link_preview = json.loads(row["link_preview"]) if row["link_preview"] else None
        return cls(
            id=row["id"],
            server_id=row["server_id"],
            chat_id=row["chat_id"],
            content=row["content"],
            type=row["type"],
            attachment=attachment,
            location=location,
            link_preview=link_preview,
            is_locked=bool(row["is_locked"]),
            is_starred=bool(row["is_starred"]),
            is_edited=bool(row["is_edited"]),
            task=Task(
                is_task=bool(row["is_task"]),
                reminder_at=row["reminder_at"],
                is_completed=bool(row["is_completed"]),
                completed_at=row["completed_at"],
            ),
            sync_status=SyncStatus(row["sync_status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
            chat_name=row["chat_name"] if "chat_name" in keys else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["sync_status"] = self.sync_status.value
        return data


@dataclass(frozen=True)
class User:
    """The single per-device user profile and its settings."""

    id: str
    server_id: Optional[str]
    device_id: str
    name: str
    username: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    avatar: Optional[str]
    theme: str
    task_reminders: bool
    shared_messages: bool
    visibility: str
    sync_status: SyncStatus
    created_at: str
    updated_at: str
    deleted_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "User":
        return cls(
            id=row["id"],
            server_id=row["server_id"],
            device_id=row["device_id"],
            name=row["name"],
            username=row["username"],
            email=row["email"],
            phone=row["phone"],
            avatar=row["avatar"],
            theme=row["settings_theme"],
            task_reminders=bool(row["settings_notifications_task_reminders"]),
            shared_messages=bool(row["settings_notifications_shared_messages"]),
            visibility=row["settings_privacy_visibility"],
            sync_status=SyncStatus(row["sync_status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["sync_status"] = self.sync_status.value
        return data


T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    """One page of a paginated query."""

    data: List[T] = field(default_factory=list)
    has_more: bool = False
    total: int = 0
