# src/battle_plan/tasks/task_api.py

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import date
from typing import Any

from ..core.errors import AuthExpiredError, NotFoundError
from ..core.ports import TaskRepo
from ..core.state import AppState
from .task_models import (
    Task,
    TaskKind,
    TaskStatus,
    Urgency,
    compute_remaining,
    normalize_start_time,
    now_ms,
    parse_date,
)

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

# Words the AI uses for each kind (it answers in Czech or English).
_KIND_WORDS: tuple[tuple[TaskKind, tuple[str, ...]], ...] = (
    (TaskKind.TASK, ("task", "úkol", "ukol")),
    (TaskKind.MEETING, ("meeting", "sraz", "schůzka", "schuzka")),
    (TaskKind.THOUGHT, ("thought", "myšlenka", "myslenka", "note")),
)

# AI / legacy key -> Task attribute. Unknown keys in AI output are ignored.
_CAPTURE_KEYS: dict[str, str] = {
    "title": "title",
    "description": "description",
    "internalNotes": "internal_notes",
    "internal_notes": "internal_notes",
    "type": "kind",
    "kind": "kind",
    "status": "status",
    "date": "scheduled_date",
    "scheduledDate": "scheduled_date",
    "deadline": "deadline_date",
    "deadlineDate": "deadline_date",
    "startTime": "start_time",
    "start_time": "start_time",
    "urgency": "urgency",
    "subTasks": "sub_items",
    "subItems": "sub_items",
    "progress": "progress",
    "duration": "total_duration",
    "totalDuration": "total_duration",
}

DEFAULT_TITLE = "New entry"


def normalize_capture_kind(raw: Any) -> TaskKind | None:
    """Map free-form AI kind text to a TaskKind; None when nothing matches."""
    text = str(raw or "").strip().lower()
    if not text:
        return None
    for kind, words in _KIND_WORDS:
        if any(w in text for w in words):
            return kind
    return None


def capture_to_fields(partial: Mapping[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key, value in partial.items():
        attr = _CAPTURE_KEYS.get(key)
        if attr is None or value is None:
            continue
        if attr == "kind":
            kind = normalize_capture_kind(value)
            if kind is None:
                continue
            value = kind
        elif attr in ("total_duration", "progress"):
            try:
                value = int(float(value))
            except (TypeError, ValueError):
                logger.debug("Ignoring non-numeric capture value %s=%r", key, value)
                continue
        elif attr in ("scheduled_date", "deadline_date", "start_time"):
            try:
                value = normalize_start_time(value) if attr == "start_time" else parse_date(value, strict=True)
            except ValueError:
                logger.debug("Ignoring unreadable capture value %s=%r", key, value)
                continue
        fields[attr] = value
    return fields


# ---- retention ----


async def purge_expired(store: TaskRepo, *, retention_days: int = 30, now: int | None = None) -> int:
    """Delete completed local tasks created more than `retention_days` ago."""
    now = now_ms() if now is None else now
    cutoff = now - int(retention_days) * DAY_MS
    return await store.purge_completed_before(cutoff)


# ---- derived-field operations ----


async def toggle_sub_item(store: TaskRepo, task_id: int, sub_item_id: str) -> Task:
    """Flip one sub-item; progress and remaining duration follow."""
    task = await store.get(task_id)
    if task is None:
        raise NotFoundError(f"task {task_id} not found")
    if not any(s.id == sub_item_id for s in task.sub_items):
        raise NotFoundError(f"sub-item {sub_item_id} not found on task {task_id}")

    items = [
        {"id": s.id, "title": s.title, "completed": (not s.completed) if s.id == sub_item_id else s.completed}
        for s in task.sub_items
    ]
    return await store.update(task_id, {"sub_items": items})


async def set_progress(store: TaskRepo, task_id: int, progress: int) -> Task:
    return await store.update(task_id, {"progress": progress})


async def toggle_status(store: TaskRepo, task_id: int) -> Task:
    task = await store.get(task_id)
    if task is None:
        raise NotFoundError(f"task {task_id} not found")
    new_status = TaskStatus.PENDING if task.status == TaskStatus.COMPLETED else TaskStatus.COMPLETED
    return await store.update(task_id, {"status": new_status})


# ---- calendar ----


async def push_to_calendar(state: AppState, task_id: int) -> str:
    """
    Create or update the calendar event for a meeting.

    Idempotent: a stored origin_external_id turns the push into an update of
    that event. Raises on failure (callers doing this in the background catch).
    """
    if state.calendar is None or not state.session.is_signed_in:
        raise AuthExpiredError("sign in to Google to use the calendar")
    task = await state.store.get(task_id)
    if task is None:
        raise NotFoundError(f"task {task_id} not found")
    if task.kind != TaskKind.MEETING:
        raise ValueError("only meetings are pushed to the calendar")

    try:
        event_id = await state.calendar.push_event(task)
    except AuthExpiredError:
        await state.session.sign_out()
        raise
    if event_id != task.origin_external_id:
        await state.store.update(task_id, {"origin_external_id": event_id})
    return event_id


async def _auto_push_meeting(state: AppState, task_id: int) -> None:
    if state.calendar is None or not state.session.is_signed_in:
        return
    try:
        await push_to_calendar(state, task_id)
    except Exception:
        logger.exception("Automatic calendar push failed task_id=%s", task_id)


# ---- create / edit ----


async def add_task(state: AppState, title: str, **fields: Any) -> int:
    """Typed input: create a local task, pushing meetings to the calendar."""
    task = Task(title=title.strip()).merged(fields)
    task_id = await state.store.add(task)
    if task.kind == TaskKind.MEETING:
        await _auto_push_meeting(state, task_id)
    return task_id


async def save_edit(state: AppState, task_id: int, fields: Mapping[str, Any]) -> Task:
    updated = await state.store.update(task_id, fields)
    if updated.kind == TaskKind.MEETING:
        await _auto_push_meeting(state, task_id)
    return updated


async def apply_capture(
    state: AppState,
    partial: Mapping[str, Any],
    *,
    target_id: int | None = None,
    today: date | None = None,
) -> int:
    """
    Apply a structured capture.

    target_id given -> merge the provided fields into that record.
    otherwise       -> create a record, filling the gaps with defaults.
    """
    fields = capture_to_fields(partial)

    if target_id is not None:
        current = await state.store.get(target_id)
        if current is None:
            raise NotFoundError(f"task {target_id} not found")
        # A new estimate rescales what is left of it at the current progress.
        if "total_duration" in fields and not fields.keys() & {"progress", "sub_items"}:
            fields["remaining_duration"] = compute_remaining(fields["total_duration"], current.progress)
        updated = await state.store.update(target_id, fields)
        logger.info("Capture merged into task id=%s fields=%s", target_id, sorted(fields))
        if updated.kind == TaskKind.MEETING:
            await _auto_push_meeting(state, target_id)
        return target_id

    today = today or date.today()
    kind = fields.pop("kind", TaskKind.THOUGHT)
    duration = fields.pop("total_duration", 0) or (60 if kind == TaskKind.MEETING else 30)

    scheduled = fields.pop("scheduled_date", None) or today
    defaults: dict[str, Any] = {
        "kind": kind,
        "status": TaskStatus.PENDING,
        "urgency": Urgency.NORMAL,
        "scheduled_date": scheduled,
        "deadline_date": fields.pop("deadline_date", None) or scheduled,
        "start_time": fields.pop("start_time", None) or ("09:00" if kind == TaskKind.MEETING else None),
        "total_duration": duration,
        "remaining_duration": duration,
    }
    title = str(fields.pop("title", "") or "").strip() or DEFAULT_TITLE
    task = Task(title=title).merged({**defaults, **fields})
    task_id = await state.store.add(task)
    logger.info("Capture created task id=%s kind=%s", task_id, kind.value)

    if kind == TaskKind.MEETING:
        await _auto_push_meeting(state, task_id)
    return task_id


async def capture_audio(
    state: AppState,
    audio: bytes,
    *,
    mime_type: str = "audio/webm",
    target_id: int | None = None,
) -> int:
    """Structure a voice capture with the AI collaborator and apply it."""
    existing = None
    if target_id is not None:
        existing = await state.store.get(target_id)
        if existing is None:
            raise NotFoundError(f"task {target_id} not found")
    partial = await state.structurer.structure(audio, mime_type=mime_type, existing=existing)
    return await apply_capture(state, partial, target_id=target_id)
