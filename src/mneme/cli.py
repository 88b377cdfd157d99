#!/usr/bin/env python3
"""Command-line interface for Mneme.

This module provides CLI commands for chats, messages, tasks, search and
sync. Uses only core/ modules - no UI dependencies.

Commands:
    list-chats                      List chats
    new-chat <name>                 Create a chat
    delete-chat <id>                Delete a chat (locked messages survive)
    list-messages <chat_id>         List messages of a chat, newest first
    new-message <chat_id> [content] Create a message
    edit-message <id> [content]     Edit a message
    delete-message <id>             Delete a message
    lock-message <id>               Lock (or --unlock) a message
    star-message <id>               Star (or --unstar) a message
    task <id>                       Turn a message into a task / complete it
    list-tasks                      List tasks
    search <query>                  Full-text search
    export-chat <chat_id>           Export a chat as plain text
    delete-profile --yes            Delete the profile and all synced data
    sync status|enable|disable|set-server|push|pull|now|foreground
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from mneme.core.config import Config
from mneme.core.context import AppContext, create_context
from mneme.core.export import export_chat, export_filename
from mneme.core.models import Chat, Message, TaskFilter
from mneme.core.remote import SyncError
from mneme.core.sync_engine import SyncResult
from mneme.core.triggers import SyncNotConfiguredError
from mneme.core.validation import ValidationError

logger = logging.getLogger(__name__)


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def format_chat(chat: Chat) -> str:
    """Format a chat as a single line."""
    pin = "* " if chat.is_pinned else ""
    line = f"{chat.id} | {pin}{chat.name} [{chat.sync_status.value}]"
    if chat.last_message is not None and chat.last_message.content:
        preview = chat.last_message.content
        if len(preview) > 60:
            preview = preview[:60] + "..."
        line += f"\n    {preview}"
    return line


def format_message(message: Message) -> str:
    """Format a message for display.

    Returns:
        Header line with id, timestamp and flags, followed by the content
    """
    flags: List[str] = []
    if message.is_locked:
        flags.append("locked")
    if message.is_starred:
        flags.append("starred")
    if message.is_edited:
        flags.append("edited")
    if message.task.is_task:
        flags.append("done" if message.task.is_completed else "task")
        if message.task.reminder_at:
            flags.append(f"due {message.task.reminder_at}")
    header = f"{message.id} | {message.created_at}"
    if message.chat_name:
        header += f" | {message.chat_name}"
    if flags:
        header += f" ({', '.join(flags)})"

    body = message.content
    if body is None and message.attachment is not None:
        body = f"[{message.type}] {message.attachment.filename or message.attachment.url}"
    elif body is None and message.location is not None:
        body = f"[location] {message.location.latitude}, {message.location.longitude}"
    return f"{header}\n{body or ''}"


def format_sync_result(result: SyncResult) -> str:
    if result.coalesced:
        return "A sync is already running."
    lines = [
        f"Pushed: {result.pushed}",
        f"Pulled: {result.pulled}",
    ]
    if result.merged:
        lines.append(f"Merged duplicates: {result.merged}")
    if result.purged:
        lines.append(f"Purged tombstones: {result.purged}")
    for error in result.errors:
        lines.append(f"Error: {error}")
    return "\n".join(lines)


def read_content(args: argparse.Namespace) -> Optional[str]:
    """Get content from the argument, or from stdin if piped."""
    if args.content:
        return args.content
    if not sys.stdin.isatty():
        content = sys.stdin.read().strip()
        return content or None
    return None


# ============================================================================
# Chat and message commands
# ============================================================================


def cmd_list_chats(ctx: AppContext, args: argparse.Namespace) -> int:
    page = ctx.chats.get_all(search=args.search, page=args.page, limit=args.limit)
    if args.format == "json":
        print_json(
            {
                "chats": [c.to_dict() for c in page.data],
                "has_more": page.has_more,
                "total": page.total,
            }
        )
        return 0

    if not page.data:
        print("No chats found.")
        return 0
    for chat in page.data:
        print(format_chat(chat))
    if page.has_more:
        print(f"... {page.total - args.page * args.limit} more (use --page)")
    return 0


def cmd_new_chat(ctx: AppContext, args: argparse.Namespace) -> int:
    chat = ctx.chats.create(args.name, icon=args.icon)
    if args.format == "json":
        print_json(chat.to_dict())
    else:
        print(f"Created chat {chat.id}")
    return 0


def cmd_delete_chat(ctx: AppContext, args: argparse.Namespace) -> int:
    """Delete a chat, keeping its locked messages.

    Returns:
        Exit code (0 for success, 1 for not found)
    """
    deleted, locked_count = ctx.chats.delete(args.chat_id)
    if not deleted:
        print(f"Error: Chat {args.chat_id} not found.", file=sys.stderr)
        return 1
    if args.format == "json":
        print_json({"id": args.chat_id, "deleted": True, "locked_kept": locked_count})
    else:
        print(f"Deleted chat {args.chat_id}")
        if locked_count:
            print(f"{locked_count} locked message(s) kept")
    return 0


def cmd_list_messages(ctx: AppContext, args: argparse.Namespace) -> int:
    ctx.chats.require(args.chat_id)
    page = ctx.messages.get_by_chat(args.chat_id, before=args.before, limit=args.limit)
    if args.format == "json":
        print_json(
            {
                "messages": [m.to_dict() for m in page.data],
                "has_more": page.has_more,
                "total": page.total,
            }
        )
        return 0

    if not page.data:
        print("No messages found.")
        return 0
    for i, message in enumerate(page.data):
        if i > 0:
            print("\n" + "-" * 60 + "\n")
        print(format_message(message))
    if page.has_more:
        print(f"\n... more (use --before {page.data[-1].created_at})")
    return 0


def cmd_new_message(ctx: AppContext, args: argparse.Namespace) -> int:
    content = read_content(args)
    if content is None:
        print("Error: No content provided. Pass it as an argument or pipe it to stdin.", file=sys.stderr)
        return 1
    message = ctx.messages.create(args.chat_id, content=content)
    if args.format == "json":
        print_json(message.to_dict())
    else:
        print(f"Created message {message.id}")
    return 0


def cmd_edit_message(ctx: AppContext, args: argparse.Namespace) -> int:
    content = read_content(args)
    if content is None:
        print("Error: No content provided. Pass it as an argument or pipe it to stdin.", file=sys.stderr)
        return 1
    message = ctx.messages.update(args.message_id, content)
    if message is None:
        print(f"Error: Message {args.message_id} not found.", file=sys.stderr)
        return 1
    if args.format == "json":
        print_json(message.to_dict())
    else:
        print(f"Updated message {message.id}")
    return 0


def cmd_delete_message(ctx: AppContext, args: argparse.Namespace) -> int:
    if not ctx.messages.delete(args.message_id):
        print(f"Error: Message {args.message_id} not found.", file=sys.stderr)
        return 1
    if args.format == "json":
        print_json({"id": args.message_id, "deleted": True})
    else:
        print(f"Deleted message {args.message_id}")
    return 0


def _print_flag_result(message: Optional[Message], message_id: str, args: argparse.Namespace, verb: str) -> int:
    if message is None:
        print(f"Error: Message {message_id} not found.", file=sys.stderr)
        return 1
    if args.format == "json":
        print_json(message.to_dict())
    else:
        print(f"{verb} message {message.id}")
    return 0


def cmd_lock_message(ctx: AppContext, args: argparse.Namespace) -> int:
    message = ctx.messages.set_locked(args.message_id, not args.unlock)
    return _print_flag_result(message, args.message_id, args, "Unlocked" if args.unlock else "Locked")


def cmd_star_message(ctx: AppContext, args: argparse.Namespace) -> int:
    message = ctx.messages.set_starred(args.message_id, not args.unstar)
    return _print_flag_result(message, args.message_id, args, "Unstarred" if args.unstar else "Starred")


def cmd_task(ctx: AppContext, args: argparse.Namespace) -> int:
    """Turn a message into a task, complete it, or clear the task."""
    if args.done:
        message = ctx.messages.complete_task(args.message_id)
        verb = "Completed task"
    elif args.clear:
        message = ctx.messages.set_task(args.message_id, False)
        verb = "Cleared task on"
    else:
        message = ctx.messages.set_task(args.message_id, True, reminder_at=args.remind)
        verb = "Made task of"
    return _print_flag_result(message, args.message_id, args, verb)


def cmd_list_tasks(ctx: AppContext, args: argparse.Namespace) -> int:
    page = ctx.messages.get_tasks(
        TaskFilter(args.filter), chat_id=args.chat_id, page=args.page, limit=args.limit
    )
    if args.format == "json":
        print_json(
            {
                "tasks": [m.to_dict() for m in page.data],
                "has_more": page.has_more,
                "total": page.total,
            }
        )
        return 0
    if not page.data:
        print("No tasks found.")
        return 0
    for message in page.data:
        print(format_message(message))
        print()
    return 0


def cmd_search(ctx: AppContext, args: argparse.Namespace) -> int:
    page = ctx.messages.search(args.query, chat_id=args.chat_id, page=args.page, limit=args.limit)
    if args.format == "json":
        print_json(
            {
                "messages": [m.to_dict() for m in page.data],
                "has_more": page.has_more,
                "total": page.total,
            }
        )
        return 0
    if not page.data:
        print("No messages found.")
        return 0
    print(f"{page.total} match(es)\n")
    for message in page.data:
        print(format_message(message))
        print()
    return 0


def cmd_export_chat(ctx: AppContext, args: argparse.Namespace) -> int:
    """Export a chat as plain text to stdout, a file or a directory."""
    chat = ctx.chats.require(args.chat_id)
    text = export_chat(ctx.chats, ctx.messages, chat.id)
    filename = export_filename(chat.name)

    if args.output is None:
        if args.format == "json":
            print_json({"chat_id": chat.id, "filename": filename, "text": text})
        else:
            print(text)
        return 0

    path = Path(args.output)
    if path.is_dir():
        path = path / filename
    path.write_text(text + "\n", encoding="utf-8")
    if args.format == "json":
        print_json({"chat_id": chat.id, "path": str(path)})
    else:
        print(f"Exported chat {chat.id} to {path}")
    return 0


def cmd_delete_profile(ctx: AppContext, args: argparse.Namespace) -> int:
    """Delete this device's profile; the server then drops all of its data."""
    if not args.yes:
        print(
            "Error: This deletes your profile and all synced chats and messages. "
            "Re-run with --yes to confirm.",
            file=sys.stderr,
        )
        return 1
    if not ctx.users.delete():
        print("Error: No profile to delete.", file=sys.stderr)
        return 1
    if args.format == "json":
        print_json({"deleted": True})
    else:
        print("Profile deleted")
    return 0


# ============================================================================
# Sync commands
# ============================================================================


def cmd_sync_status(ctx: AppContext, args: argparse.Namespace) -> int:
    config = ctx.config
    meta = ctx.db.get_sync_meta()
    status: Dict[str, Any] = {
        "device_id": config.get_device_id_hex(),
        "device_name": config.get_device_name(),
        "enabled": config.is_sync_enabled(),
        "server_url": config.get_server_url(),
        "pending": {
            "chats": len(ctx.chats.get_pending_sync()),
            "messages": len(ctx.messages.get_pending_sync()),
            "user": len(ctx.users.get_pending_sync()),
        },
        **meta,
    }
    if args.format == "json":
        print_json(status)
        return 0

    print(f"Device ID: {status['device_id']}")
    print(f"Device Name: {status['device_name']}")
    print(f"Sync: {'enabled' if status['enabled'] else 'disabled'}")
    print(f"Server: {status['server_url'] or '(not set)'}")
    pending = status["pending"]
    print(
        f"Pending: {pending['chats']} chat(s), {pending['messages']} message(s), "
        f"{pending['user']} profile"
    )
    print(f"Last push: {meta['last_push_timestamp'] or 'never'}")
    print(f"Last pull: {meta['last_pull_timestamp'] or 'never'}")
    return 0


def cmd_sync_enable(ctx: AppContext, args: argparse.Namespace) -> int:
    if not ctx.config.get_server_url():
        print("Error: Set a server first with 'sync set-server <url>'.", file=sys.stderr)
        return 1
    ctx.config.set_sync_enabled(True)
    print("Sync enabled")
    return 0


def cmd_sync_disable(ctx: AppContext, args: argparse.Namespace) -> int:
    ctx.config.set_sync_enabled(False)
    print("Sync disabled")
    return 0


def cmd_sync_set_server(ctx: AppContext, args: argparse.Namespace) -> int:
    ctx.config.set_server_url(args.url)
    print(f"Server set to {ctx.config.get_server_url()}")
    return 0


def cmd_sync_run(ctx: AppContext, args: argparse.Namespace) -> int:
    """Run push, pull or a full cycle, reporting failures as exit code 1."""
    if ctx.engine is None:
        print("Error: No server configured. Use 'sync set-server <url>'.", file=sys.stderr)
        return 1

    operations = {
        "push": ctx.engine.push,
        "pull": ctx.triggers.manual_refresh,
        "now": ctx.engine.sync,
        "foreground": ctx.triggers.on_foreground,
    }
    try:
        result = operations[args.sync_command]()
    except SyncNotConfiguredError:
        print("Error: Sync is disabled. Use 'sync enable'.", file=sys.stderr)
        return 1
    except SyncError as e:
        print(f"Error: Sync failed: {e}", file=sys.stderr)
        return 1

    if result is None:
        print("Sync skipped: disabled or already running.")
        return 0

    if args.format == "json":
        print_json(
            {
                "success": result.success,
                "pushed": result.pushed,
                "pulled": result.pulled,
                "merged": result.merged,
                "purged": result.purged,
                "errors": result.errors,
            }
        )
    else:
        print(format_sync_result(result))
    return 0 if result.success else 1


# ============================================================================
# Parser and dispatch
# ============================================================================


def add_cli_subparser(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    """Add CLI subparser and all of its commands.

    Args:
        subparsers: Parent subparsers object to add the CLI parser to
    """
    cli_parser = subparsers.add_parser("cli", help="Command-line interface")
    cli_parser.add_argument(
        "--format",
        choices=["text", "json"],
        default="text",
        help="Output format (default: text)",
    )
    cli_subparsers = cli_parser.add_subparsers(dest="cli_command", help="CLI commands")

    def add_paging(parser: argparse.ArgumentParser, limit: int = 20) -> None:
        parser.add_argument("--page", type=int, default=1, help="Page number (default: 1)")
        parser.add_argument("--limit", type=int, default=limit, help=f"Page size (default: {limit})")

    list_chats_parser = cli_subparsers.add_parser("list-chats", help="List chats")
    list_chats_parser.add_argument("--search", type=str, default=None, help="Filter by name")
    add_paging(list_chats_parser)

    new_chat_parser = cli_subparsers.add_parser("new-chat", help="Create a chat")
    new_chat_parser.add_argument("name", type=str, help="Chat name")
    new_chat_parser.add_argument("--icon", type=str, default=None, help="Emoji or image URL")

    delete_chat_parser = cli_subparsers.add_parser("delete-chat", help="Delete a chat")
    delete_chat_parser.add_argument("chat_id", type=str, help="Chat ID")

    list_messages_parser = cli_subparsers.add_parser("list-messages", help="List messages of a chat")
    list_messages_parser.add_argument("chat_id", type=str, help="Chat ID")
    list_messages_parser.add_argument(
        "--before", type=str, default=None, help="Only messages created before this timestamp"
    )
    list_messages_parser.add_argument("--limit", type=int, default=50, help="Maximum messages (default: 50)")

    new_message_parser = cli_subparsers.add_parser("new-message", help="Create a message")
    new_message_parser.add_argument("chat_id", type=str, help="Chat ID")
    new_message_parser.add_argument("content", type=str, nargs="?", help="Message text (or pipe via stdin)")

    edit_message_parser = cli_subparsers.add_parser("edit-message", help="Edit a message")
    edit_message_parser.add_argument("message_id", type=str, help="Message ID")
    edit_message_parser.add_argument("content", type=str, nargs="?", help="New text (or pipe via stdin)")

    delete_message_parser = cli_subparsers.add_parser("delete-message", help="Delete a message")
    delete_message_parser.add_argument("message_id", type=str, help="Message ID")

    lock_parser = cli_subparsers.add_parser("lock-message", help="Lock a message")
    lock_parser.add_argument("message_id", type=str, help="Message ID")
    lock_parser.add_argument("--unlock", action="store_true", help="Unlock instead")

    star_parser = cli_subparsers.add_parser("star-message", help="Star a message")
    star_parser.add_argument("message_id", type=str, help="Message ID")
    star_parser.add_argument("--unstar", action="store_true", help="Unstar instead")

    task_parser = cli_subparsers.add_parser("task", help="Make a message a task")
    task_parser.add_argument("message_id", type=str, help="Message ID")
    task_group = task_parser.add_mutually_exclusive_group()
    task_group.add_argument("--remind", type=str, default=None, help="Reminder timestamp (ISO-8601)")
    task_group.add_argument("--done", action="store_true", help="Mark the task completed")
    task_group.add_argument("--clear", action="store_true", help="Remove the task")

    list_tasks_parser = cli_subparsers.add_parser("list-tasks", help="List tasks")
    list_tasks_parser.add_argument(
        "--filter",
        choices=[f.value for f in TaskFilter],
        default=TaskFilter.ALL.value,
        help="Which tasks to show (default: all)",
    )
    list_tasks_parser.add_argument("--chat-id", type=str, default=None, help="Only tasks in this chat")
    add_paging(list_tasks_parser)

    search_parser = cli_subparsers.add_parser("search", help="Full-text search")
    search_parser.add_argument("query", type=str, help="Search terms (prefix match)")
    search_parser.add_argument("--chat-id", type=str, default=None, help="Only search this chat")
    add_paging(search_parser)

    export_parser = cli_subparsers.add_parser("export-chat", help="Export a chat as plain text")
    export_parser.add_argument("chat_id", type=str, help="Chat ID")
    export_parser.add_argument(
        "-o", "--output", type=str, default=None, help="File or directory to write (default: stdout)"
    )

    delete_profile_parser = cli_subparsers.add_parser(
        "delete-profile", help="Delete your profile and all synced data"
    )
    delete_profile_parser.add_argument("--yes", action="store_true", help="Confirm the deletion")

    sync_parser = cli_subparsers.add_parser("sync", help="Sync with the Remote Store")
    sync_subparsers = sync_parser.add_subparsers(dest="sync_command", help="Sync commands")
    sync_subparsers.add_parser("status", help="Show sync status and device info")
    sync_subparsers.add_parser("enable", help="Enable sync")
    sync_subparsers.add_parser("disable", help="Disable sync")
    set_server_parser = sync_subparsers.add_parser("set-server", help="Set the server URL")
    set_server_parser.add_argument("url", type=str, help="Server URL (e.g. http://host:8385)")
    sync_subparsers.add_parser("push", help="Push local changes")
    sync_subparsers.add_parser("pull", help="Pull server changes")
    sync_subparsers.add_parser("now", help="Push, then pull")
    sync_subparsers.add_parser(
        "foreground", help="Run the app-activation sync (push, then pull; failures logged)"
    )


COMMANDS = {
    "list-chats": cmd_list_chats,
    "new-chat": cmd_new_chat,
    "delete-chat": cmd_delete_chat,
    "list-messages": cmd_list_messages,
    "new-message": cmd_new_message,
    "edit-message": cmd_edit_message,
    "delete-message": cmd_delete_message,
    "lock-message": cmd_lock_message,
    "star-message": cmd_star_message,
    "task": cmd_task,
    "list-tasks": cmd_list_tasks,
    "search": cmd_search,
    "export-chat": cmd_export_chat,
    "delete-profile": cmd_delete_profile,
}

SYNC_COMMANDS = {
    "status": cmd_sync_status,
    "enable": cmd_sync_enable,
    "disable": cmd_sync_disable,
    "set-server": cmd_sync_set_server,
    "push": cmd_sync_run,
    "pull": cmd_sync_run,
    "now": cmd_sync_run,
    "foreground": cmd_sync_run,
}


def _flush_pending_push(ctx: AppContext) -> None:
    """Push mutations made by this command before the process exits."""
    if ctx.scheduler is None or not ctx.scheduler.is_scheduled():
        return
    try:
        ctx.scheduler.flush_now()
    except SyncError as e:
        logger.warning(f"Changes saved locally, push deferred: {e}")


def run(
    config_dir: Optional[Path],
    args: argparse.Namespace,
    session: Optional[requests.Session] = None,
) -> int:
    """Run CLI with given arguments.

    Args:
        config_dir: Custom configuration directory or None for default
        args: Parsed command-line arguments (should have cli_command attribute)
        session: HTTP session for the Remote Store client

    Returns:
        Exit code (0 for success, 1 for error)
    """
    if not getattr(args, "cli_command", None):
        print("Error: No CLI command specified. Use --help for available commands.", file=sys.stderr)
        return 1

    if args.cli_command == "sync":
        handler = SYNC_COMMANDS.get(getattr(args, "sync_command", None) or "")
        if handler is None:
            print("Error: No sync command specified. Use 'sync --help'.", file=sys.stderr)
            return 1
    else:
        handler = COMMANDS.get(args.cli_command)
        if handler is None:
            print(f"Error: Unknown command '{args.cli_command}'", file=sys.stderr)
            return 1

    config = Config(config_dir=config_dir)
    ctx = create_context(config, session=session)
    try:
        exit_code = handler(ctx, args)
        _flush_pending_push(ctx)
        return exit_code
    except ValidationError as e:
        print(f"Error: Invalid {e.field} - {e.message}", file=sys.stderr)
        return 1
    finally:
        ctx.close()
