# src/battle_plan/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete implementations into AppState (store/session/Google adapters/AI/sync/views),
- tears them down again on shutdown.
"""

from __future__ import annotations

import logging

from ..config import Settings, get_settings
from ..core.ports import CaptureStructurer
from ..core.state import AppState
from ..llm.offline import OfflineCaptureStructurer
from ..llm.structurer import OpenAICaptureStructurer
from ..remote.calendar import GoogleCalendarClient
from ..remote.drive_backup import DriveBackupTransport
from ..remote.google_tasks import GoogleTasksProvider
from ..remote.http import GoogleApiClient
from ..remote.session import AuthSession
from ..sync.sync_config import TASK_LIST_SETTING, load_sync_config
from ..sync.sync_engine import SyncEngine
from ..tasks.task_api import purge_expired
from ..tasks.task_store import TaskStore
from ..views.aggregator import TaskAggregator

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)


def _build_structurer(settings: Settings, store: TaskStore) -> CaptureStructurer:
    if not settings.ai_enabled:
        logger.info("AI capture disabled; voice capture runs offline.")
        return OfflineCaptureStructurer()
    return OpenAICaptureStructurer(
        store,
        base_url=settings.ai_base_url,
        transcription_model=settings.ai_transcription_model,
        default_model=settings.ai_default_model,
        timeout_seconds=settings.http_timeout_seconds,
        max_attempts=settings.http_max_attempts,
    )


async def create_initial_state(*, settings: Settings | None = None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings(). The startup restore check is
    NOT run here; main() starts it once the console is up.
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    store = TaskStore(settings.db_path)
    purged = await purge_expired(store, retention_days=settings.retention_days)
    if purged:
        logger.info("Purged %d completed tasks older than %d days.", purged, settings.retention_days)

    session = AuthSession(store)
    await session.load()
    if settings.google_access_token and settings.google_access_token != session.token:
        await session.sign_in(settings.google_access_token)

    api = GoogleApiClient(
        session,
        timeout=settings.http_timeout_seconds,
        max_attempts=settings.http_max_attempts,
        retry_base_seconds=settings.http_retry_base_seconds,
    )
    provider = GoogleTasksProvider(api)
    transport = DriveBackupTransport(api, file_name=settings.backup_file_name)
    calendar = GoogleCalendarClient(api, time_zone=settings.calendar_time_zone)

    sync_config, credentials = await load_sync_config(store, settings)
    engine = SyncEngine(store, transport, session, sync_config, credentials)
    engine.start()
    session.add_listener(engine.on_auth_change)

    async def _list_id() -> str:
        return (await store.get_setting(TASK_LIST_SETTING)) or settings.google_tasks_list_id

    aggregator = TaskAggregator(store, provider, session, list_id=_list_id, calendar=calendar)

    logger.info(
        "State ready (db=%s, signed_in=%s, last_sync=%s)",
        settings.db_path,
        session.is_signed_in,
        credentials.last_sync_ms,
    )
    return AppState(
        settings=settings,
        store=store,
        session=session,
        sync=engine,
        aggregator=aggregator,
        structurer=_build_structurer(settings, store),
        tasks_provider=provider,
        calendar=calendar,
        api=api,
    )


async def shutdown_state(state: AppState) -> None:
    """Best-effort shutdown: push a pending backup, then release resources."""
    try:
        await state.sync.flush()
    except Exception:
        logger.exception("Final backup failed.")

    await state.sync.close()
    state.aggregator.close()

    if state.api is not None:
        try:
            await state.api.aclose()
        except Exception:
            logger.debug("HTTP client close failed.", exc_info=True)

    state.store.close()
