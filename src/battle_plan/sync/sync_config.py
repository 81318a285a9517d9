# src/battle_plan/sync/sync_config.py

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..config import Settings
from ..core.ports import SettingsRepo
from ..remote.session import TOKEN_SETTING_KEY
from .envelope import ENVELOPE_VERSION

logger = logging.getLogger(__name__)

AI_KEY_SETTING = "ai_api_key"
AI_MODEL_SETTING = "ai_model"
LAST_SYNC_SETTING = "last_sync_timestamp"
TASK_LIST_SETTING = "remote_task_list_id"


@dataclass(frozen=True, slots=True)
class SyncConfig:
    debounce_seconds: float = 10.0
    # Restore over a device that has at most this many local tasks when the cloud copy is newer.
    stale_max_local: int = 1
    envelope_version: str = ENVELOPE_VERSION
    ai_credential_key: str = AI_KEY_SETTING
    last_sync_key: str = LAST_SYNC_SETTING
    # Per-device keys: never written to the backup, never overwritten by a restore.
    device_local_keys: frozenset[str] = frozenset({TOKEN_SETTING_KEY, LAST_SYNC_SETTING})


@dataclass(frozen=True, slots=True)
class Credentials:
    has_ai_credential: bool
    last_sync_ms: int


def _parse_ms(raw: str | None) -> int:
    if not raw:
        return 0
    try:
        return int(float(raw))
    except ValueError:
        logger.warning("Ignoring corrupt last-sync marker %r", raw)
        return 0


async def load_credentials(store: SettingsRepo, config: SyncConfig) -> Credentials:
    ai_key = await store.get_setting(config.ai_credential_key)
    last_sync = await store.get_setting(config.last_sync_key)
    return Credentials(has_ai_credential=bool(ai_key and ai_key.strip()), last_sync_ms=_parse_ms(last_sync))


async def load_sync_config(store: SettingsRepo, settings: Settings) -> tuple[SyncConfig, Credentials]:
    """Read once at startup; the engine keeps its own copy afterwards."""
    config = SyncConfig(
        debounce_seconds=settings.backup_debounce_seconds,
        stale_max_local=settings.restore_stale_max_local,
    )
    return config, await load_credentials(store, config)
