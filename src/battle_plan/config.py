# src/battle_plan/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole process (normal "settings layer").
- No secrets required at import time.
- User-editable values (AI key, preferred model, list id) live in the record
  store's settings table, not here; see sync.sync_config for how the two meet.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "BATTLE_PLAN"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


# Local .env never overrides the real environment.
load_dotenv(override=False)


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _first_env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v
    return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    db_path: Path

    # ---- Google (tasks, drive backup, calendar) ----
    google_access_token: str | None
    google_tasks_list_id: str
    backup_file_name: str
    calendar_time_zone: str

    # ---- HTTP ----
    http_timeout_seconds: float
    http_max_attempts: int
    http_retry_base_seconds: float

    # ---- Sync tuning ----
    backup_debounce_seconds: float
    restore_stale_max_local: int
    retention_days: int

    # ---- AI structuring ----
    ai_enabled: bool
    ai_base_url: str | None
    ai_transcription_model: str
    ai_default_model: str

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "battle-plan")
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/battle_plan"))
        db_path = _env_path(_k("DB_PATH"), data_dir / "battle_plan.sqlite3")

        google_access_token = _first_env(_k("GOOGLE_ACCESS_TOKEN"), "GOOGLE_ACCESS_TOKEN", default=None)
        google_tasks_list_id = _env(_k("GOOGLE_TASKS_LIST_ID"), "@default")
        backup_file_name = _env(_k("BACKUP_FILE_NAME"), "battle_plan_data.json")
        calendar_time_zone = _env(_k("CALENDAR_TIME_ZONE"), "UTC")

        http_timeout_seconds = _env_float(_k("HTTP_TIMEOUT_SECONDS"), 30.0)
        # Bounded retry: never fewer than one attempt.
        http_max_attempts = max(1, _env_int(_k("HTTP_MAX_ATTEMPTS"), 4))
        http_retry_base_seconds = max(0.0, _env_float(_k("HTTP_RETRY_BASE_SECONDS"), 2.0))

        backup_debounce_seconds = max(0.0, _env_float(_k("BACKUP_DEBOUNCE_SECONDS"), 10.0))
        restore_stale_max_local = max(0, _env_int(_k("RESTORE_STALE_MAX_LOCAL"), 1))
        retention_days = max(1, _env_int(_k("RETENTION_DAYS"), 30))

        ai_enabled = _env_bool(_k("AI_ENABLED"), True)
        ai_base_url = _first_env(_k("AI_BASE_URL"), default=None)
        ai_transcription_model = _env(_k("AI_TRANSCRIPTION_MODEL"), "whisper-1")
        ai_default_model = _env(_k("AI_MODEL"), "gpt-4o-mini")

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            db_path=db_path,
            google_access_token=google_access_token,
            google_tasks_list_id=google_tasks_list_id,
            backup_file_name=backup_file_name,
            calendar_time_zone=calendar_time_zone,
            http_timeout_seconds=http_timeout_seconds,
            http_max_attempts=http_max_attempts,
            http_retry_base_seconds=http_retry_base_seconds,
            backup_debounce_seconds=backup_debounce_seconds,
            restore_stale_max_local=restore_stale_max_local,
            retention_days=retention_days,
            ai_enabled=ai_enabled,
            ai_base_url=ai_base_url,
            ai_transcription_model=ai_transcription_model,
            ai_default_model=ai_default_model,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
