# tests/conftest.py

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import date
from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio

from battle_plan.core.state import AppState
from battle_plan.remote.session import AuthSession
from battle_plan.sync.sync_config import Credentials, SyncConfig
from battle_plan.sync.sync_engine import SyncEngine
from battle_plan.tasks.task_store import TaskStore
from battle_plan.views.aggregator import TaskAggregator

from .fakes import FakeBackupTransport, FakeCalendar, FakeRemoteProvider, FakeStructurer, MutableClock

TODAY = date(2025, 3, 12)  # a Wednesday


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and core modules.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        db_path=tmp_path / "battle_plan.sqlite3",
        retention_days=30,
        backup_debounce_seconds=0.05,
        restore_stale_max_local=1,
        google_tasks_list_id="@default",
    )


@pytest.fixture()
def store(settings: SimpleNamespace) -> TaskStore:
    # Real SQLite: the store's behaviour is part of what we test.
    return TaskStore(settings.db_path)


@pytest.fixture()
def session() -> AuthSession:
    return AuthSession(token="test-token")


@pytest.fixture()
def transport() -> FakeBackupTransport:
    return FakeBackupTransport()


@pytest.fixture()
def provider() -> FakeRemoteProvider:
    return FakeRemoteProvider()


@pytest.fixture()
def calendar() -> FakeCalendar:
    return FakeCalendar()


@pytest.fixture()
def structurer() -> FakeStructurer:
    return FakeStructurer()


@pytest.fixture()
def clock() -> MutableClock:
    return MutableClock()


@pytest_asyncio.fixture()
async def engine(
    store: TaskStore,
    transport: FakeBackupTransport,
    session: AuthSession,
    clock: MutableClock,
) -> AsyncIterator[SyncEngine]:
    eng = SyncEngine(
        store,
        transport,
        session,
        SyncConfig(debounce_seconds=0.05),
        Credentials(has_ai_credential=True, last_sync_ms=0),
        clock=clock,
    )
    eng.start()
    session.add_listener(eng.on_auth_change)
    yield eng
    await eng.close()


@pytest.fixture()
def aggregator(
    store: TaskStore, provider: FakeRemoteProvider, session: AuthSession, calendar: FakeCalendar
) -> TaskAggregator:
    agg = TaskAggregator(store, provider, session, today=lambda: TODAY, calendar=calendar)
    return agg


@pytest_asyncio.fixture()
async def state(
    settings: SimpleNamespace,
    store: TaskStore,
    session: AuthSession,
    engine: SyncEngine,
    aggregator: TaskAggregator,
    structurer: FakeStructurer,
    provider: FakeRemoteProvider,
    calendar: FakeCalendar,
) -> AsyncIterator[AppState]:
    """AppState wired with deterministic fakes around a real TaskStore."""
    app = AppState(
        settings=settings,
        store=store,
        session=session,
        sync=engine,
        aggregator=aggregator,
        structurer=structurer,
        tasks_provider=provider,
        calendar=calendar,
    )
    yield app
    aggregator.close()
