"""Plain-text chat export for Mneme.

Renders one chat as a text document: a header with the chat name, the
export time and the message count, then one line per message, oldest
first. Media messages are shown as placeholders and tasks carry a
completion marker.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import List, Optional

from .chat_repository import ChatRepository
from .message_repository import MessageRepository
from .models import Message
from .timestamp_utils import parse_timestamp, shift_timestamp
from .validation import MAX_PAGE_SIZE, ValidationError, validate_chat_id

EXPORT_PAGE_SIZE = 100

DATE_FORMAT = "%Y-%m-%d %H:%M"


def format_export_line(message: Message) -> str:
    """Format one message as "[date] content"."""
    date = parse_timestamp(message.created_at).strftime(DATE_FORMAT)
    content = message.content or ""
    if message.type == "image":
        content = "[Image]"
    elif message.type == "voice":
        content = "[Voice Note]"
    elif message.type == "file":
        filename = message.attachment.filename if message.attachment else None
        content = f"[File: {filename or 'attachment'}]"
    elif message.type == "location":
        address = message.location.address if message.location else None
        content = f"[Location: {address or 'shared location'}]"

    if message.task.is_task:
        marker = "✓" if message.task.is_completed else "○"
        content = f"[{marker}] {content}"
    return f"[{date}] {content}"


def export_chat(
    chats: ChatRepository,
    messages: MessageRepository,
    chat_id: str,
    now: Optional[datetime] = None,
    page_size: int = EXPORT_PAGE_SIZE,
) -> str:
    """Render a chat and all of its live messages as plain text.

    Args:
        chats: Chat repository
        messages: Message repository
        chat_id: Local ID of the chat to export
        now: Export time shown in the header (defaults to the current time)
        page_size: Messages fetched per page

    Returns:
        The export document

    Raises:
        ValidationError: If the chat does not exist or is deleted
    """
    validate_chat_id(chat_id)
    chat = chats.get_by_id(chat_id)
    if chat is None:
        raise ValidationError("chat_id", f"chat {chat_id} not found")

    lines: List[str] = []
    before: Optional[str] = None
    while True:
        page = messages.get_by_chat(chat_id, before=before, limit=page_size)
        batch = list(page.data)
        if page.has_more and batch:
            # Messages sharing the oldest timestamp can spill past the page.
            oldest = batch[-1].created_at
            seen = {m.id for m in batch}
            tied = messages.get_by_chat(
                chat_id,
                before=shift_timestamp(oldest, 0.001),
                after=shift_timestamp(oldest, -0.001),
                limit=MAX_PAGE_SIZE,
            )
            batch.extend(m for m in tied.data if m.id not in seen)
        # Pages are newest first; the whole list is reversed at the end.
        lines.extend(format_export_line(m) for m in batch)
        if not page.has_more or not batch:
            break
        before = batch[-1].created_at
    lines.reverse()

    exported_at = (now or datetime.now(timezone.utc)).strftime(DATE_FORMAT)
    return "\n".join(
        [
            f"# {chat.name}",
            f"Exported on {exported_at}",
            f"Total messages: {len(lines)}",
            "",
            "---",
            "",
            *lines,
        ]
    )


def export_filename(chat_name: str, now: Optional[datetime] = None) -> str:
    """File name for an export: sanitized chat name plus the export date."""
    sanitized = re.sub(r"[^a-zA-Z0-9]", "_", chat_name)
    date = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d")
    return f"{sanitized}_{date}.txt"
