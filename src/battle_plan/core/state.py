# src/battle_plan/core/state.py

from __future__ import annotations

from dataclasses import dataclass, field

from ..remote.http import GoogleApiClient
from ..remote.session import AuthSession
from ..sync.sync_engine import SyncEngine
from ..tasks.task_store import TaskStore
from ..views.aggregator import TaskAggregator, ViewKind, ViewSpec
from .ports import CalendarClient, CaptureStructurer, RemoteTaskProvider


@dataclass
class AppState:
    # Store Settings on the state for easy access in other modules later.
    settings: object

    store: TaskStore
    session: AuthSession
    sync: SyncEngine
    aggregator: TaskAggregator
    structurer: CaptureStructurer

    tasks_provider: RemoteTaskProvider | None = None
    calendar: CalendarClient | None = None
    api: GoogleApiClient | None = None

    view: ViewSpec = field(default_factory=lambda: ViewSpec(ViewKind.PRIMARY))
