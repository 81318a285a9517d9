# src/battle_plan/cli/commands.py

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from ..core.errors import BattlePlanError
from ..core.state import AppState
from ..sync.sync_config import AI_KEY_SETTING, LAST_SYNC_SETTING
from ..tasks import task_api
from ..tasks.task_models import TaskStatus
from ..views.aggregator import LocalEntry, RemoteEntry, ViewEntry, parse_view, sort_fields

CommandEmitter = Callable[[str], None]
CommandHandler = Callable[[AppState, list[str], CommandEmitter | None], Awaitable[str]]

logger = logging.getLogger(__name__)

# /add and /edit take key=value tokens; these short names map to Task attributes.
FIELD_ALIASES: dict[str, str] = {
    "kind": "kind",
    "type": "kind",
    "date": "scheduled_date",
    "deadline": "deadline_date",
    "at": "start_time",
    "time": "start_time",
    "urgency": "urgency",
    "duration": "total_duration",
    "progress": "progress",
    "title": "title",
    "notes": "notes",
    "description": "description",
    "due": "due",
}

# Settings that only make sense on this device or are managed elsewhere.
_PROTECTED_SETTINGS = frozenset({"google_access_token", LAST_SYNC_SETTING})


class CommandRegistry:
    """Simple slash-command registry used by the console connector (/help, /view, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    async def handle(
        self,
        state: AppState,
        line: str,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.

        Domain errors (not found, auth, ownership, bad input) become the reply text;
        anything else propagates to the connector.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            return await handler(state, args, emit)
        except (BattlePlanError, ValueError) as e:
            logger.info("Command /%s failed: %s", name, e)
            return f"[{type(e).__name__}] {e}"

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def _ts(ms: int) -> str:
    if not ms:
        return "never"
    return datetime.fromtimestamp(ms / 1000).astimezone().strftime("%Y-%m-%d %H:%M:%S")


def parse_field_tokens(tokens: list[str]) -> tuple[str, dict[str, Any]]:
    """Split "buy milk date=2025-01-02 urgency=3" into ("buy milk", {...})."""
    words: list[str] = []
    fields: dict[str, Any] = {}
    for tok in tokens:
        name, sep, value = tok.partition("=")
        attr = FIELD_ALIASES.get(name.lower()) if sep else None
        if attr is None:
            words.append(tok)
            continue
        fields[attr] = value.replace("_", " ") if attr in ("title", "notes", "description") else value
    return " ".join(words).strip(), fields


def format_entry(index: int, entry: ViewEntry) -> str:
    f = sort_fields(entry)
    mark = "x" if f.status == TaskStatus.COMPLETED else " "
    when = f.effective_date.isoformat() if f.effective_date else "-"
    if f.start_time is not None:
        when += f" {f.start_time:%H:%M}"
    extra = ""
    match entry:
        case LocalEntry(task=t):
            extra = f" u{int(t.urgency)}"
            if t.sub_items:
                extra += f" {t.progress}%"
            if t.remaining_duration:
                extra += f" {t.remaining_duration}min"
        case RemoteEntry():
            extra = " (google)"
    return f"{index:>3}. [{mark}] {when:<16} {f.kind.value:<8} {f.title}{extra}  <{entry.key}>"


async def _resolve_entry(state: AppState, ref: str) -> ViewEntry:
    """An index into the last shown view, or an entry key (local:<id> / remote:<id>)."""
    snapshot = state.aggregator.current
    if snapshot is None:
        snapshot = await state.aggregator.refresh(state.view)
    if snapshot is None:
        raise ValueError("view is still loading, try again")

    if ref.isdigit():
        index = int(ref)
        if not 1 <= index <= len(snapshot.entries):
            raise ValueError(f"no entry #{index} in the current view")
        return snapshot.entries[index - 1]

    if ":" not in ref:
        ref = f"local:{ref}"
    entry = snapshot.find(ref)
    if entry is None:
        snapshot = await state.aggregator.refresh(state.view) or snapshot
        entry = snapshot.find(ref)
    if entry is None:
        raise ValueError(f"no entry {ref} in the current view")
    return entry


def _local_id(entry: ViewEntry) -> int:
    if not isinstance(entry, LocalEntry) or entry.task.id is None:
        raise ValueError("this command works on local entries only")
    return entry.task.id


# ---- handlers ----


async def cmd_help(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    return registry.build_help()


async def cmd_status(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    total = await state.store.count()
    has_ai = bool((await state.store.get_setting(AI_KEY_SETTING) or "").strip())
    auto = "HALTED" if state.sync.auto_sync_halted else ("pending" if state.sync.backup_pending else "idle")
    return (
        "Status:\n"
        f"  Google: {'signed in' if state.session.is_signed_in else 'signed out'}\n"
        f"  Local tasks: {total}\n"
        f"  Last sync: {_ts(state.sync.last_sync_ms)}\n"
        f"  Sync: {state.sync.state.value} (auto-backup {auto})\n"
        f"  AI key: {'set' if has_ai else 'missing'}\n"
        f"  View: {state.view.kind.value}"
    )


async def cmd_view(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /view               -> re-show the current view
    /view today|week[:n]|tasks|meetings|thoughts|by-kind:<kind>|all
    """
    if args:
        state.view = parse_view(args[0])
    snapshot = await state.aggregator.refresh(state.view)
    if snapshot is None:
        return "View changed while loading; run /view again."

    lines = [f"View: {' '.join(args) or state.view.kind.value} ({len(snapshot.entries)} entries)"]
    lines.extend(format_entry(i, e) for i, e in enumerate(snapshot.entries, start=1))
    if snapshot.remote_error is not None:
        lines.append(f"  (Google Tasks unavailable: {snapshot.remote_error})")
    return "\n".join(lines)


async def cmd_add(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """/add <title> [kind=meeting] [date=YYYY-MM-DD] [deadline=...] [at=HH:MM] [urgency=1..5] [duration=min]"""
    title, fields = parse_field_tokens(args)
    if not title:
        return "Usage: /add <title> [kind=task|meeting|thought] [date=YYYY-MM-DD] [at=HH:MM] [urgency=1..5]"
    if "total_duration" in fields:
        fields.setdefault("remaining_duration", fields["total_duration"])
    task_id = await task_api.add_task(state, title, **fields)
    return f"Added local:{task_id} {title}"


async def cmd_edit(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """/edit <ref> field=value ...  (Google entries accept title, notes and due only)"""
    if len(args) < 2:
        return "Usage: /edit <n|key> field=value ..."
    entry = await _resolve_entry(state, args[0])
    leftover, fields = parse_field_tokens(args[1:])
    if leftover:
        return f"Unrecognised arguments: {leftover}"
    if isinstance(entry, LocalEntry):
        task = await task_api.save_edit(state, _local_id(entry), fields)
        return f"Updated {entry.key} {task.title}"
    await state.aggregator.edit(entry, fields)
    return f"Updated {entry.key}"


async def cmd_done(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not args:
        return "Usage: /done <n|key>"
    entry = await _resolve_entry(state, args[0])
    await state.aggregator.toggle(entry)
    was_done = sort_fields(entry).status == TaskStatus.COMPLETED
    return f"{entry.key} marked {'pending' if was_done else 'completed'}."


async def cmd_delete(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not args:
        return "Usage: /delete <n|key>"
    entry = await _resolve_entry(state, args[0])
    await state.aggregator.delete(entry)
    return f"Deleted {entry.key}."


async def cmd_sub(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /sub <ref>                  -> list sub-items
    /sub <ref> add <title...>   -> append a sub-item
    /sub <ref> <n|sub-id>       -> toggle a sub-item
    """
    if not args:
        return "Usage: /sub <n|key> [add <title> | <n|sub-id>]"
    task_id = _local_id(await _resolve_entry(state, args[0]))
    task = await state.store.get(task_id)
    if task is None:
        return f"Task {task_id} no longer exists."

    if len(args) == 1:
        if not task.sub_items:
            return f"local:{task_id} has no sub-items."
        lines = [f"Sub-items of local:{task_id} ({task.progress}%):"]
        for i, s in enumerate(task.sub_items, start=1):
            lines.append(f"  {i}. [{'x' if s.completed else ' '}] {s.title}  <{s.id}>")
        return "\n".join(lines)

    if args[1].lower() == "add":
        title = " ".join(args[2:]).strip()
        if not title:
            return "Usage: /sub <n|key> add <title>"
        items = [s.to_dict() for s in task.sub_items] + [{"title": title}]
        updated = await state.store.update(task_id, {"sub_items": items})
        return f"Added sub-item to local:{task_id} (progress {updated.progress}%)."

    ref = args[1]
    sub_id = ref
    if ref.isdigit() and 1 <= int(ref) <= len(task.sub_items):
        sub_id = task.sub_items[int(ref) - 1].id
    updated = await task_api.toggle_sub_item(state.store, task_id, sub_id)
    return f"local:{task_id} progress {updated.progress}%, {updated.remaining_duration or 0} min left."


async def cmd_progress(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if len(args) != 2:
        return "Usage: /progress <n|key> <0-100>"
    task_id = _local_id(await _resolve_entry(state, args[0]))
    updated = await task_api.set_progress(state.store, task_id, int(args[1]))
    return f"local:{task_id} progress {updated.progress}%, {updated.remaining_duration or 0} min left."


async def cmd_push(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not args:
        return "Usage: /push <n|key>"
    task_id = _local_id(await _resolve_entry(state, args[0]))
    event_id = await task_api.push_to_calendar(state, task_id)
    return f"Calendar event {event_id} is up to date."


async def cmd_capture(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """/capture <audio-file> [n|key]  -> voice note to a new entry (or merged into an existing one)"""
    if not args:
        return "Usage: /capture <audio-file> [n|key]"
    path = Path(args[0]).expanduser()
    if not path.is_file():
        return f"No such file: {path}"
    target_id = _local_id(await _resolve_entry(state, args[1])) if len(args) > 1 else None

    if emit:
        emit("[AI] Processing the recording...")
    audio = await asyncio.to_thread(path.read_bytes)
    mime = f"audio/{path.suffix.lstrip('.').lower() or 'webm'}"
    task_id = await task_api.capture_audio(state, audio, mime_type=mime, target_id=target_id)
    task = await state.store.get(task_id)
    title = task.title if task is not None else ""
    return f"{'Updated' if target_id is not None else 'Captured'} local:{task_id} {title}"


async def cmd_backup(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    envelope = await state.sync.backup_now()
    return f"Backup saved: {len(envelope.tasks)} tasks at {_ts(envelope.timestamp)}."


async def cmd_restore(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    confirmed = bool(args) and args[0].lower() == "confirm"
    if not confirmed:
        return "Restore REPLACES all local tasks with the cloud backup. Run /restore confirm to proceed."
    count = await state.sync.restore_now(confirmed=True)
    await state.aggregator.refresh(state.view)
    return f"Restored {count} tasks from the cloud backup."


async def cmd_signin(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not args:
        return "Usage: /signin <google-access-token>"
    await state.session.sign_in(args[0])
    return "Signed in to Google. Checking the cloud backup in the background."


async def cmd_signout(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not state.session.is_signed_in:
        return "Already signed out."
    await state.session.sign_out()
    return "Signed out of Google. Auto-backup is paused until the next sign-in."


async def cmd_lists(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if state.tasks_provider is None or not state.session.is_signed_in:
        return "Sign in to Google first (/signin <token>)."
    lists = await state.tasks_provider.list_lists()
    if not lists:
        return "No Google task lists."
    return "\n".join(["Google task lists (choose with /set remote_task_list_id <id>):"] + [
        f"  {tl.list_id}  {tl.title}" for tl in lists
    ])


async def cmd_set(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /set                 -> list stored settings (values masked)
    /set <key> <value>   -> store a setting
    /set <key>           -> delete a setting
    """
    if not args:
        settings = [s for s in await state.store.list_settings() if s.key not in _PROTECTED_SETTINGS]
        if not settings:
            return "No settings stored."
        return "\n".join(["Settings:"] + [f"  {s.key} = {_mask(s.key, s.value)}" for s in settings])

    key = args[0]
    if key in _PROTECTED_SETTINGS:
        return f"{key} is managed by the app; use /signin or /signout."
    if len(args) == 1:
        removed = await state.store.delete_setting(key)
        if key == AI_KEY_SETTING:
            await state.sync.reload_credentials()
        return f"Removed {key}." if removed else f"{key} was not set."
    await state.store.put_setting(key, " ".join(args[1:]))
    if key == AI_KEY_SETTING:
        await state.sync.reload_credentials()
    # Settings travel with the backup document.
    state.sync.notify_change()
    return f"Saved {key}."


def _mask(key: str, value: str) -> str:
    if "key" in key.lower() or "token" in key.lower():
        return value[:4] + "..." if len(value) > 4 else "***"
    return value


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("status", cmd_status, help_text="Show sign-in, sync and store status.")
registry.register("view", cmd_view, help_text="Show a view: today | week[:n] | tasks | meetings | thoughts | all.")
registry.register("add", cmd_add, help_text="Add an entry: /add <title> [kind=..] [date=..] [at=..] [urgency=..].")
registry.register("edit", cmd_edit, help_text="Edit an entry: /edit <n|key> field=value ...")
registry.register("done", cmd_done, help_text="Toggle completed/pending: /done <n|key>.", aliases=["toggle"])
registry.register("delete", cmd_delete, help_text="Delete an entry: /delete <n|key>.", aliases=["rm"])
registry.register("sub", cmd_sub, help_text="Sub-items: /sub <n|key> [add <title> | <n|sub-id>].")
registry.register("progress", cmd_progress, help_text="Set progress: /progress <n|key> <0-100>.")
registry.register("push", cmd_push, help_text="Push a meeting to Google Calendar: /push <n|key>.")
registry.register("capture", cmd_capture, help_text="Voice capture: /capture <audio-file> [n|key].")
registry.register("backup", cmd_backup, help_text="Back up now to Google Drive.")
registry.register("restore", cmd_restore, help_text="Restore from Google Drive: /restore confirm.")
registry.register("signin", cmd_signin, help_text="Sign in with a Google access token.")
registry.register("signout", cmd_signout, help_text="Sign out of Google.")
registry.register("lists", cmd_lists, help_text="List Google task lists.")
registry.register("set", cmd_set, help_text="Settings: /set [<key> [<value>]].")
