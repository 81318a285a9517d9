# tests/fakes.py

from __future__ import annotations

import itertools
from dataclasses import dataclass, field, replace
from typing import Any

from battle_plan.core.errors import NotFoundError
from battle_plan.sync.envelope import BackupEnvelope
from battle_plan.tasks.task_models import (
    RemoteTask,
    RemoteTaskList,
    RemoteTaskPatch,
    Task,
    TaskStatus,
)


class FakeBackupTransport:
    """
    In-memory BackupTransport.

    - `envelope` is the remote document (None = no backup yet)
    - `error` (if set) is raised by both load() and save()
    - saves / loads are counted for assertions
    """

    def __init__(self, envelope: BackupEnvelope | None = None) -> None:
        self.envelope = envelope
        self.error: Exception | None = None
        self.saved: list[BackupEnvelope] = []
        self.loads = 0

    async def load(self) -> BackupEnvelope | None:
        self.loads += 1
        if self.error is not None:
            raise self.error
        return self.envelope

    async def save(self, envelope: BackupEnvelope) -> None:
        if self.error is not None:
            raise self.error
        self.saved.append(envelope)
        self.envelope = envelope


@dataclass(slots=True)
class RemoteCall:
    op: str
    remote_id: str
    list_id: str
    payload: Any = None


@dataclass
class FakeRemoteProvider:
    """In-memory RemoteTaskProvider keyed by remote id; records every write."""

    tasks: dict[str, RemoteTask] = field(default_factory=dict)
    calls: list[RemoteCall] = field(default_factory=list)
    error: Exception | None = None
    list_calls: int = 0

    def add(self, remote_id: str, title: str, **kwargs: Any) -> RemoteTask:
        task = RemoteTask(remote_id=remote_id, remote_list_id=kwargs.pop("list_id", "@default"), title=title, **kwargs)
        self.tasks[remote_id] = task
        return task

    async def list_lists(self) -> list[RemoteTaskList]:
        return [RemoteTaskList(list_id="@default", title="My Tasks")]

    async def list_tasks(self, list_id: str) -> list[RemoteTask]:
        self.list_calls += 1
        if self.error is not None:
            raise self.error
        return [t for t in self.tasks.values() if t.remote_list_id == list_id]

    def _require(self, remote_id: str) -> RemoteTask:
        if self.error is not None:
            raise self.error
        task = self.tasks.get(remote_id)
        if task is None:
            raise NotFoundError(f"remote task {remote_id} not found")
        return task

    async def set_status(self, remote_id: str, list_id: str, status: TaskStatus) -> None:
        task = self._require(remote_id)
        self.calls.append(RemoteCall("set_status", remote_id, list_id, status))
        self.tasks[remote_id] = replace(task, status=status)

    async def update(self, remote_id: str, list_id: str, patch: RemoteTaskPatch) -> RemoteTask:
        task = self._require(remote_id)
        self.calls.append(RemoteCall("update", remote_id, list_id, patch))
        updated = replace(
            task,
            title=patch.title if patch.title is not None else task.title,
            notes=patch.notes if patch.notes is not None else task.notes,
            due=patch.due if patch.due is not None else task.due,
        )
        self.tasks[remote_id] = updated
        return updated

    async def delete(self, remote_id: str, list_id: str) -> None:
        self._require(remote_id)
        self.calls.append(RemoteCall("delete", remote_id, list_id))
        del self.tasks[remote_id]


class FakeCalendar:
    """CalendarClient that hands out sequential event ids and remembers pushes and deletes."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.events: dict[str, Task] = {}
        self.pushes: list[Task] = []
        self.deleted: list[str] = []
        self.error: Exception | None = None

    async def push_event(self, task: Task) -> str:
        if self.error is not None:
            raise self.error
        self.pushes.append(task)
        event_id = task.origin_external_id or f"evt-{next(self._ids)}"
        self.events[event_id] = task
        return event_id

    async def delete_event(self, event_id: str) -> None:
        if self.error is not None:
            raise self.error
        self.deleted.append(event_id)
        self.events.pop(event_id, None)


class FakeStructurer:
    """
    Deterministic CaptureStructurer.

    - returns `next_fields` for every call
    - captures (audio, mime_type, existing) for assertions
    """

    def __init__(self, next_fields: dict[str, Any] | None = None) -> None:
        self.next_fields = next_fields or {}
        self.calls: list[tuple[bytes, str, Task | None]] = []

    async def structure(
        self,
        audio: bytes,
        *,
        mime_type: str = "audio/webm",
        existing: Task | None = None,
    ) -> dict[str, Any]:
        self.calls.append((audio, mime_type, existing))
        return dict(self.next_fields)


class MutableClock:
    """Millisecond clock for the sync engine."""

    def __init__(self, now: int = 1_700_000_000_000) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now
