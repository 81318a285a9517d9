# src/battle_plan/views/aggregator.py

from __future__ import annotations

"""
Task aggregator.

Builds the per-view list from two independently keyed sources:
- the local record store (LocalEntry, key "local:<id>")
- the remote task provider (RemoteEntry, key "remote:<remoteId>")

Entries are never merged structurally: each keeps its own record type and every
write is routed back to the store that owns it.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import date, time, timedelta
from enum import StrEnum
from typing import Any, assert_never

from ..core.errors import AuthExpiredError, OwnershipError, RemoteError
from ..core.ports import AuthState, CalendarClient, RemoteTaskProvider, TaskRepo
from ..tasks.task_models import (
    RemoteTask,
    RemoteTaskPatch,
    Task,
    TaskKind,
    TaskStatus,
    Urgency,
    lenient_time_of_day,
)
from ..tasks.task_store import StoreChange

logger = logging.getLogger(__name__)


class Origin(StrEnum):
    LOCAL = "local"
    REMOTE = "remote"


class ViewKind(StrEnum):
    PRIMARY = "primary"
    WEEK = "week"
    BY_KIND = "by-kind"
    ALL = "all"


def week_range(today: date, offset: int = 0) -> tuple[date, date]:
    """Monday..Sunday of the week containing `today`, shifted by `offset` weeks."""
    start = today - timedelta(days=today.weekday()) + timedelta(weeks=offset)
    return start, start + timedelta(days=6)


@dataclass(slots=True, frozen=True)
class ViewSpec:
    kind: ViewKind
    task_kind: TaskKind | None = None
    start: date | None = None
    end: date | None = None

    def __post_init__(self) -> None:
        if self.kind == ViewKind.WEEK:
            if self.start is None or self.end is None:
                raise ValueError("week view needs both start and end dates")
            if self.start > self.end:
                raise ValueError(f"week view starts after it ends ({self.start} > {self.end})")
        if self.kind == ViewKind.BY_KIND and self.task_kind is None:
            raise ValueError("by-kind view needs a task kind")

    @property
    def is_dated(self) -> bool:
        return self.kind in (ViewKind.PRIMARY, ViewKind.WEEK)


def parse_view(raw: str, *, today: date | None = None) -> ViewSpec:
    """
    "today" | "primary"      -> PRIMARY
    "week" | "week:<offset>" -> WEEK over that Monday..Sunday
    "by-kind:<kind>"         -> BY_KIND (also "tasks", "meetings", "thoughts")
    "all"                    -> ALL
    """
    value = (raw or "").strip().lower()
    if value in ("", "today", "primary", "battle"):
        return ViewSpec(ViewKind.PRIMARY)
    if value == "all":
        return ViewSpec(ViewKind.ALL)
    if value == "week" or value.startswith("week:"):
        offset = 0
        if ":" in value:
            try:
                offset = int(value.split(":", 1)[1])
            except ValueError as e:
                raise ValueError(f"bad week offset in view {raw!r}") from e
        start, end = week_range(today or date.today(), offset)
        return ViewSpec(ViewKind.WEEK, start=start, end=end)

    shortcuts = {"tasks": "task", "meetings": "meeting", "thoughts": "thought"}
    if value in shortcuts:
        value = f"by-kind:{shortcuts[value]}"
    if value.startswith("by-kind:"):
        name = value.split(":", 1)[1]
        if name not in {k.value for k in TaskKind}:
            raise ValueError(f"unknown task kind {name!r}")
        return ViewSpec(ViewKind.BY_KIND, task_kind=TaskKind(name))
    raise ValueError(f"unknown view {raw!r}")


@dataclass(slots=True, frozen=True)
class LocalEntry:
    task: Task

    @property
    def origin(self) -> Origin:
        return Origin.LOCAL

    @property
    def key(self) -> str:
        return f"local:{self.task.id}"


@dataclass(slots=True, frozen=True)
class RemoteEntry:
    task: RemoteTask

    @property
    def origin(self) -> Origin:
        return Origin.REMOTE

    @property
    def key(self) -> str:
        return f"remote:{self.task.remote_id}"


ViewEntry = LocalEntry | RemoteEntry


def _local_id(task: Task) -> int:
    if task.id is None:
        raise ValueError(f"local entry {task.title!r} has no id (never stored?)")
    return task.id


@dataclass(slots=True, frozen=True)
class SortFields:
    """Origin-independent projection of an entry, used by filters and sorting."""

    key: str
    title: str
    kind: TaskKind
    status: TaskStatus
    scheduled_date: date | None
    deadline_date: date | None
    start_time: time | None
    urgency: Urgency
    created_at: int

    @property
    def effective_date(self) -> date | None:
        return self.scheduled_date or self.deadline_date


def sort_fields(entry: ViewEntry) -> SortFields:
    match entry:
        case LocalEntry(task=t):
            return SortFields(
                key=entry.key,
                title=t.title,
                kind=t.kind,
                status=t.status,
                scheduled_date=t.scheduled_date,
                deadline_date=t.deadline_date,
                start_time=lenient_time_of_day(t.start_time),
                urgency=t.urgency,
                created_at=t.created_at,
            )
        case RemoteEntry(task=r):
            # Remote records: always a task, due date acts as deadline, no time or urgency.
            return SortFields(
                key=entry.key,
                title=r.title,
                kind=TaskKind.TASK,
                status=r.status,
                scheduled_date=None,
                deadline_date=r.due,
                start_time=None,
                urgency=Urgency.NORMAL,
                created_at=r.created_at,
            )
        case _:
            assert_never(entry)


def matches_view(fields: SortFields, view: ViewSpec, today: date) -> bool:
    match view.kind:
        case ViewKind.PRIMARY:
            # Pending and not yet past its date; undated records are never past due.
            if fields.status != TaskStatus.PENDING:
                return False
            eff = fields.effective_date
            return eff is None or eff >= today
        case ViewKind.WEEK:
            if fields.status == TaskStatus.COMPLETED:
                return False
            start, end = view.start or date.min, view.end or date.max
            return any(
                d is not None and start <= d <= end
                for d in (fields.scheduled_date, fields.deadline_date)
            )
        case ViewKind.BY_KIND:
            return fields.kind == view.task_kind
        case ViewKind.ALL:
            return True
        case _:
            assert_never(view.kind)


def _dated_sort_key(fields: SortFields) -> tuple[Any, ...]:
    eff = fields.effective_date
    return (
        eff is None,
        eff or date.max,
        fields.start_time is None,
        fields.start_time or time.min,
        -int(fields.urgency),
        fields.created_at,
        fields.key,
    )


def _list_sort_key(fields: SortFields) -> tuple[Any, ...]:
    return (
        fields.status == TaskStatus.COMPLETED,
        -int(fields.urgency),
        fields.created_at,
        fields.key,
    )


def sort_entries(entries: list[ViewEntry], view: ViewSpec) -> list[ViewEntry]:
    """
    Dated views: effective date (missing last), start time (missing last), urgency desc.
    List views: pending before completed, then urgency desc.
    created_at and key break remaining ties so the order is fully deterministic.
    """
    key_fn = _dated_sort_key if view.is_dated else _list_sort_key
    return sorted(entries, key=lambda e: key_fn(sort_fields(e)))


@dataclass(slots=True, frozen=True)
class ViewSnapshot:
    view: ViewSpec
    entries: tuple[ViewEntry, ...]
    generation: int
    remote_error: RemoteError | None = None

    def find(self, key: str) -> ViewEntry | None:
        for entry in self.entries:
            if entry.key == key:
                return entry
        return None


class TaskAggregator:
    def __init__(
        self,
        store: TaskRepo,
        provider: RemoteTaskProvider | None,
        session: AuthState,
        *,
        list_id: Callable[[], Awaitable[str]] | str = "@default",
        today: Callable[[], date] = date.today,
        calendar: CalendarClient | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._session = session
        self._calendar = calendar
        self._list_id = list_id
        self._today = today

        self._generation = 0
        self.current: ViewSnapshot | None = None
        self._watchers: set[asyncio.Queue[None]] = set()
        self._unsubscribe = store.subscribe(self._on_store_change)

    def close(self) -> None:
        self._unsubscribe()
        self._watchers.clear()

    async def _active_list_id(self) -> str:
        if isinstance(self._list_id, str):
            return self._list_id
        return await self._list_id()

    # ---- building ----

    async def _fetch_remote(self) -> tuple[list[RemoteTask], RemoteError | None]:
        if self._provider is None or not self._session.is_signed_in:
            return [], None
        try:
            return await self._provider.list_tasks(await self._active_list_id()), None
        except AuthExpiredError as e:
            logger.warning("Remote tasks rejected credentials; signing out.")
            await self._session.sign_out()
            return [], e
        except RemoteError as e:
            logger.warning("Remote tasks unavailable: %s", e)
            return [], e

    async def build(self, view: ViewSpec, *, generation: int = 0) -> ViewSnapshot:
        today = self._today()
        local = await self._store.query()
        remote, remote_error = await self._fetch_remote()

        entries: list[ViewEntry] = [LocalEntry(t) for t in local]
        entries.extend(RemoteEntry(r) for r in remote)
        selected = [e for e in entries if matches_view(sort_fields(e), view, today)]
        return ViewSnapshot(
            view=view,
            entries=tuple(sort_entries(selected, view)),
            generation=generation,
            remote_error=remote_error,
        )

    async def refresh(self, view: ViewSpec | None = None) -> ViewSnapshot | None:
        """
        Rebuild `current` for `view` (default: the current view).

        Last request wins: if another refresh started while this one was awaiting
        the network, this result is dropped and None is returned.
        """
        if view is None:
            if self.current is None:
                raise ValueError("no view selected yet")
            view = self.current.view
        self._generation += 1
        generation = self._generation
        snapshot = await self.build(view, generation=generation)
        if generation != self._generation:
            logger.debug("Dropping stale view result gen=%d (current=%d)", generation, self._generation)
            return None
        self.current = snapshot
        return snapshot

    # ---- subscriptions ----

    def _on_store_change(self, change: StoreChange) -> None:
        self.invalidate()

    def invalidate(self) -> None:
        """Mark every subscribed view dirty (store mutation or remote write)."""
        for queue in list(self._watchers):
            if queue.empty():
                queue.put_nowait(None)

    async def subscribe(self, view: ViewSpec) -> AsyncIterator[tuple[ViewEntry, ...]]:
        """
        Yield the view's entries now and again after every underlying change.

        Each yielded tuple is a fresh, read-only sequence.
        """
        queue: asyncio.Queue[None] = asyncio.Queue(maxsize=1)
        self._watchers.add(queue)
        try:
            snapshot = await self.build(view)
            yield snapshot.entries
            while True:
                await queue.get()
                snapshot = await self.build(view)
                yield snapshot.entries
        finally:
            self._watchers.discard(queue)

    # ---- writes, routed by origin ----

    async def toggle(self, entry: ViewEntry) -> None:
        """Flip completed <-> pending on whichever side owns the record."""
        match entry:
            case LocalEntry(task=t):
                new_status = TaskStatus.PENDING if t.status == TaskStatus.COMPLETED else TaskStatus.COMPLETED
                await self._store.update(_local_id(t), {"status": new_status})
            case RemoteEntry(task=r):
                new_status = TaskStatus.PENDING if r.status == TaskStatus.COMPLETED else TaskStatus.COMPLETED
                await self._remote_call(self._require_provider().set_status(r.remote_id, r.remote_list_id, new_status))
            case _:
                assert_never(entry)

    async def delete(self, entry: ViewEntry) -> None:
        match entry:
            case LocalEntry(task=t):
                task_id = _local_id(t)
                if t.origin_external_id:
                    await self._delete_calendar_event(t.origin_external_id)
                await self._store.delete(task_id)
            case RemoteEntry(task=r):
                await self._remote_call(self._require_provider().delete(r.remote_id, r.remote_list_id))
            case _:
                assert_never(entry)

    async def edit(self, entry: ViewEntry, fields: Mapping[str, Any]) -> None:
        """
        Local entries take any editable Task field. Remote entries take only
        title/notes/due; anything else raises OwnershipError before any I/O.
        """
        match entry:
            case LocalEntry(task=t):
                await self._store.update(_local_id(t), fields)
            case RemoteEntry(task=r):
                patch = RemoteTaskPatch.from_fields(fields)
                if patch.is_empty():
                    return
                await self._remote_call(self._require_provider().update(r.remote_id, r.remote_list_id, patch))
            case _:
                assert_never(entry)

    async def _delete_calendar_event(self, event_id: str) -> None:
        """Best effort: the local delete goes ahead whatever the calendar says."""
        if self._calendar is None or not self._session.is_signed_in:
            return
        try:
            await self._calendar.delete_event(event_id)
        except AuthExpiredError:
            logger.warning("Calendar rejected credentials while deleting event %s; signing out.", event_id)
            await self._session.sign_out()
        except Exception:
            logger.exception("Failed to delete calendar event %s; deleting the local record anyway.", event_id)

    def _require_provider(self) -> RemoteTaskProvider:
        if self._provider is None:
            raise OwnershipError("remote entry without a remote task provider")
        return self._provider

    async def _remote_call(self, call: Awaitable[object]) -> None:
        try:
            await call
        except AuthExpiredError:
            await self._session.sign_out()
            raise
        self.invalidate()

