# src/battle_plan/tasks/task_models.py

from __future__ import annotations

import dataclasses
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import IntEnum, StrEnum
from typing import Any

from ..core.errors import OwnershipError


def now_ms() -> int:
    return int(datetime.now().timestamp() * 1000)


class TaskKind(StrEnum):
    TASK = "task"
    MEETING = "meeting"
    THOUGHT = "thought"

    @classmethod
    def from_raw(cls, raw: str | None) -> TaskKind:
        if not raw:
            return cls.THOUGHT
        value = str(raw).strip().lower()
        # "note" was a separate kind in old backups.
        if value == "note":
            return cls.THOUGHT
        try:
            return cls(value)
        except ValueError:
            return cls.THOUGHT


class TaskStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def from_db(cls, raw: str | None) -> TaskStatus:
        if not raw:
            return cls.PENDING
        try:
            return cls(raw)
        except Exception:
            return cls.PENDING


class Urgency(IntEnum):
    """
    Urgency scale, 1 (minimal) .. 5 (critical), NORMAL in the middle.

    Backups written by older clients use the same scale, so values round-trip
    unchanged. Out-of-range numbers clamp; anything unparseable is NORMAL.
    """

    MINIMAL = 1
    LOW = 2
    NORMAL = 3
    HIGH = 4
    CRITICAL = 5

    @classmethod
    def coerce(cls, raw: Any) -> Urgency:
        try:
            value = int(raw)
        except (TypeError, ValueError):
            return cls.NORMAL
        lo, hi = min(cls).value, max(cls).value
        return cls(max(lo, min(hi, value)))


def parse_date(raw: Any, *, strict: bool = False) -> date | None:
    """
    Accept a date, an ISO date or an ISO datetime (only the date part is kept).

    Empty input is None. Anything else that does not parse is None too, unless
    `strict`, in which case it raises ValueError.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, date):
        return raw
    text = str(raw).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        if strict:
            raise ValueError(f"invalid date {raw!r}, expected YYYY-MM-DD") from None
        return None


def parse_time_of_day(raw: Any) -> time | None:
    """
    "9:30", "09:30" or "09:30:00" -> time(9, 30). Empty input is None.

    Raises ValueError for anything else, including out-of-range hours/minutes.
    """
    if raw is None or raw == "":
        return None
    if isinstance(raw, time):
        return raw.replace(second=0, microsecond=0)
    text = str(raw).strip()
    if not text:
        return None
    parts = text.split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() and len(p) <= 2 for p in parts):
        raise ValueError(f"invalid time {raw!r}, expected HH:MM")
    try:
        return time(int(parts[0]), int(parts[1]))
    except ValueError as e:
        raise ValueError(f"invalid time {raw!r}: {e}") from None


def normalize_start_time(raw: Any) -> str | None:
    """Zero-padded "HH:MM" or None; ValueError for unparseable input."""
    parsed = parse_time_of_day(raw)
    return parsed.strftime("%H:%M") if parsed is not None else None


def lenient_time_of_day(raw: Any) -> time | None:
    """Like parse_time_of_day, but stored garbage from older data reads as "no time"."""
    try:
        return parse_time_of_day(raw)
    except ValueError:
        return None


def _round_half_up_ratio(num: int, den: int) -> int:
    # round(num / den) with .5 going up, in exact integer arithmetic
    return (2 * num + den) // (2 * den)


def compute_progress(sub_items: Iterable[SubItem]) -> int:
    items = list(sub_items)
    if not items:
        return 0
    done = sum(1 for s in items if s.completed)
    return _round_half_up_ratio(100 * done, len(items))


def compute_remaining(total_duration: int, progress: int) -> int:
    """Minutes left: total * (1 - progress / 100), rounded half-up."""
    progress = max(0, min(100, int(progress)))
    return _round_half_up_ratio(int(total_duration) * (100 - progress), 100)


@dataclass(slots=True)
class SubItem:
    title: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "completed": self.completed}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> SubItem:
        sub_id = raw.get("id")
        return cls(
            title=str(raw.get("title") or ""),
            id=str(sub_id) if sub_id else uuid.uuid4().hex[:12],
            completed=bool(raw.get("completed", False)),
        )


def parse_sub_items(raw: Any) -> list[SubItem]:
    if not raw:
        return []
    out: list[SubItem] = []
    for item in raw:
        if isinstance(item, SubItem):
            out.append(item)
        elif isinstance(item, Mapping):
            out.append(SubItem.from_dict(item))
        elif isinstance(item, str) and item.strip():
            out.append(SubItem(title=item.strip()))
    return out


# Wire (backup document) key -> attribute name. Old documents used the second group.
_WIRE_KEYS: dict[str, str] = {
    "id": "id",
    "title": "title",
    "description": "description",
    "internalNotes": "internal_notes",
    "kind": "kind",
    "status": "status",
    "scheduledDate": "scheduled_date",
    "deadlineDate": "deadline_date",
    "startTime": "start_time",
    "urgency": "urgency",
    "subItems": "sub_items",
    "progress": "progress",
    "remainingDuration": "remaining_duration",
    "totalDuration": "total_duration",
    "createdAt": "created_at",
    "originExternalId": "origin_external_id",
}
_LEGACY_WIRE_KEYS: dict[str, str] = {
    "type": "kind",
    "date": "scheduled_date",
    "deadline": "deadline_date",
    "subTasks": "sub_items",
    "duration": "remaining_duration",
    "googleEventId": "origin_external_id",
}

# Fields that only exist on remote-owned records.
REMOTE_ONLY_FIELDS = frozenset({"remote_id", "remote_list_id", "remoteId", "remoteListId"})


@dataclass(slots=True)
class Task:
    """A local-owned record. `id` is None until the store assigns one."""

    title: str
    id: int | None = None
    description: str = ""
    internal_notes: str = ""
    kind: TaskKind = TaskKind.TASK
    status: TaskStatus = TaskStatus.PENDING

    scheduled_date: date | None = None
    deadline_date: date | None = None
    start_time: str | None = None  # "HH:MM"

    urgency: Urgency = Urgency.NORMAL
    sub_items: list[SubItem] = field(default_factory=list)
    progress: int = 0
    remaining_duration: int | None = None
    total_duration: int | None = None

    created_at: int = field(default_factory=now_ms)
    origin_external_id: str | None = None

    @property
    def effective_date(self) -> date | None:
        return self.scheduled_date or self.deadline_date

    def merged(self, fields: Mapping[str, Any]) -> Task:
        """
        Shallow-merge `fields` over this record and recompute derived fields.

        - sub_items changed -> progress recomputed, then remaining_duration
        - progress changed  -> remaining_duration recomputed
        An explicit remaining_duration in `fields` always wins.
        """
        values = coerce_task_fields(fields)
        updated = dataclasses.replace(self, **values)

        progress_changed = "progress" in values
        if "sub_items" in values and updated.sub_items:
            updated.progress = compute_progress(updated.sub_items)
            progress_changed = True
        if progress_changed and "remaining_duration" not in values:
            total = updated.total_duration or updated.remaining_duration or 0
            updated.total_duration = total
            updated.remaining_duration = compute_remaining(total, updated.progress)
        return updated

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "internalNotes": self.internal_notes,
            "kind": self.kind.value,
            "status": self.status.value,
            "scheduledDate": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "deadlineDate": self.deadline_date.isoformat() if self.deadline_date else None,
            "startTime": self.start_time,
            "urgency": int(self.urgency),
            "subItems": [s.to_dict() for s in self.sub_items],
            "progress": self.progress,
            "remainingDuration": self.remaining_duration,
            "totalDuration": self.total_duration,
            "createdAt": self.created_at,
            "originExternalId": self.origin_external_id,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Task:
        values: dict[str, Any] = {}
        for key, attr in _LEGACY_WIRE_KEYS.items():
            if key in raw:
                values[attr] = raw[key]
        for key, attr in _WIRE_KEYS.items():
            if key in raw:
                values[attr] = raw[key]

        task_id = values.pop("id", None)
        created_at = values.pop("created_at", None)
        data = coerce_task_fields(values, strict=False)
        data.setdefault("title", "")
        task = cls(**data)
        task.id = int(task_id) if task_id is not None else None
        if created_at is not None:
            task.created_at = int(created_at)
        return task


EDITABLE_FIELDS = frozenset(f.name for f in dataclasses.fields(Task)) - {"id", "created_at"}


def coerce_task_fields(fields: Mapping[str, Any], *, strict: bool = True) -> dict[str, Any]:
    """
    Validate attribute names and normalise values for a partial Task.

    strict (user edits): a non-empty date or start time that does not parse raises
    ValueError instead of silently clearing the stored value. Documents from older
    clients are read with strict=False, where such values become None.
    """
    out: dict[str, Any] = {}
    for name, value in fields.items():
        if name in REMOTE_ONLY_FIELDS:
            raise OwnershipError(f"{name} cannot be set on a local record")
        if name not in EDITABLE_FIELDS:
            raise ValueError(f"unknown or read-only task field: {name}")

        if name == "kind":
            value = TaskKind.from_raw(value)
        elif name == "status":
            value = TaskStatus.from_db(value)
        elif name == "urgency":
            value = Urgency.coerce(value)
        elif name in ("scheduled_date", "deadline_date"):
            value = parse_date(value, strict=strict)
        elif name == "start_time":
            if strict:
                value = normalize_start_time(value)
            else:
                parsed = lenient_time_of_day(value)
                value = parsed.strftime("%H:%M") if parsed is not None else None
        elif name == "sub_items":
            value = parse_sub_items(value)
        elif name == "progress":
            value = max(0, min(100, int(value or 0)))
        elif name in ("remaining_duration", "total_duration"):
            value = None if value is None or value == "" else int(value)
        elif name in ("title", "description", "internal_notes"):
            value = str(value or "")
        elif name == "origin_external_id":
            value = str(value) if value else None
        out[name] = value
    return out


@dataclass(slots=True, frozen=True)
class RemoteTask:
    """
    A record owned by the remote task provider.

    Rebuilt on every fetch and never persisted locally. It has no local id and
    no sub-items; its kind is always TASK.
    """

    remote_id: str
    remote_list_id: str
    title: str
    notes: str = ""
    status: TaskStatus = TaskStatus.PENDING
    due: date | None = None
    created_at: int = 0

    @property
    def kind(self) -> TaskKind:
        return TaskKind.TASK


@dataclass(slots=True, frozen=True)
class RemoteTaskList:
    list_id: str
    title: str


@dataclass(slots=True, frozen=True)
class Setting:
    key: str
    value: str

    def to_dict(self) -> dict[str, str]:
        return {"key": self.key, "value": self.value}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Setting:
        # Old backups keyed settings by "id".
        key = raw.get("key", raw.get("id"))
        if not key:
            raise ValueError("setting without a key")
        return cls(key=str(key), value=str(raw.get("value") or ""))


@dataclass(slots=True, frozen=True)
class RemoteTaskPatch:
    """The only fields a remote-owned record accepts from us."""

    title: str | None = None
    notes: str | None = None
    due: date | None = None

    @classmethod
    def from_fields(cls, fields: Mapping[str, Any]) -> RemoteTaskPatch:
        allowed = {"title": "title", "notes": "notes", "description": "notes", "due": "due"}
        values: dict[str, Any] = {}
        for name, value in fields.items():
            attr = allowed.get(name)
            if attr is None:
                raise OwnershipError(f"{name} cannot be set on a remote record")
            values[attr] = parse_date(value, strict=True) if attr == "due" else (None if value is None else str(value))
        return cls(**values)

    def is_empty(self) -> bool:
        return self.title is None and self.notes is None and self.due is None
