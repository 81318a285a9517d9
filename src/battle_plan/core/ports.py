# src/battle_plan/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The sync engine and the aggregator depend on Protocols instead of concrete
implementations. This keeps the Google adapters and the AI provider swappable
and lets tests run against in-memory fakes.
"""

from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from ..sync.envelope import BackupEnvelope
    from ..tasks.task_models import (
        RemoteTask,
        RemoteTaskList,
        RemoteTaskPatch,
        Setting,
        Task,
        TaskStatus,
    )
    from ..tasks.task_store import StoreListener, TaskPredicate, TaskSortKey


class SettingsRepo(Protocol):
    async def put_setting(self, key: str, value: str) -> None: ...
    async def get_setting(self, key: str) -> str | None: ...
    async def delete_setting(self, key: str) -> bool: ...
    async def list_settings(self) -> list[Setting]: ...


class TaskRepo(SettingsRepo, Protocol):
    """Local record store: Tasks by integer id, Settings by string key."""

    async def add(self, task: Task) -> int: ...
    async def bulk_add(self, tasks: Any) -> list[int]: ...
    async def update(self, task_id: int, fields: Mapping[str, Any]) -> Task: ...
    async def delete(self, task_id: int) -> None: ...
    async def get(self, task_id: int) -> Task | None: ...
    async def query(
        self,
        predicate: TaskPredicate | None = None,
        sort_key: TaskSortKey | None = None,
        *,
        reverse: bool = False,
    ) -> list[Task]: ...
    async def count(self, predicate: TaskPredicate | None = None) -> int: ...
    async def clear_tasks(self) -> int: ...
    async def purge_completed_before(self, cutoff_ms: int) -> int: ...

    def subscribe(self, listener: StoreListener) -> Callable[[], None]: ...


class RemoteTaskProvider(Protocol):
    """
    External task-list service. Every call is a network round trip.

    Raises AuthExpiredError when credentials are rejected, TransientError after
    retries are exhausted, NotFoundError / RemoteError otherwise.
    """

    async def list_lists(self) -> list[RemoteTaskList]: ...
    async def list_tasks(self, list_id: str) -> list[RemoteTask]: ...
    async def set_status(self, remote_id: str, list_id: str, status: TaskStatus) -> None: ...
    async def update(self, remote_id: str, list_id: str, patch: RemoteTaskPatch) -> RemoteTask: ...
    async def delete(self, remote_id: str, list_id: str) -> None: ...


class BackupTransport(Protocol):
    """Remote blob store holding one whole backup document under a fixed name."""

    async def load(self) -> BackupEnvelope | None: ...
    async def save(self, envelope: BackupEnvelope) -> None: ...


class CalendarClient(Protocol):
    async def push_event(self, task: Task) -> str: ...
    async def delete_event(self, event_id: str) -> None: ...


class CaptureStructurer(Protocol):
    """
    AI structuring collaborator: raw audio (+ optional record being edited)
    in, partial Task fields out. Fails with CaptureError.
    """

    async def structure(
        self,
        audio: bytes,
        *,
        mime_type: str = "audio/webm",
        existing: Task | None = None,
    ) -> dict[str, Any]: ...


class AuthState(Protocol):
    @property
    def is_signed_in(self) -> bool: ...

    async def sign_out(self) -> None: ...
