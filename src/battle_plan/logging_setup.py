# src/battle_plan/logging_setup.py

from __future__ import annotations

import logging
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+")
_API_KEY_RE = re.compile(r"\bsk-[A-Za-z0-9_-]{6,}")
_ACCESS_TOKEN_RE = re.compile(r"\bya29\.[A-Za-z0-9._-]+")

# Third-party loggers that only reach the console at ERROR+.
_NOISY = ("httpx", "httpcore", "openai")


def redact_secrets(text: str) -> str:
    """Mask Google access tokens and AI keys that may end up in messages or tracebacks."""
    if not text:
        return text
    text = _BEARER_RE.sub(r"\1[REDACTED]", text)
    text = _API_KEY_RE.sub("sk-[REDACTED]", text)
    return _ACCESS_TOKEN_RE.sub("[REDACTED_TOKEN]", text)


class _RedactingFormatter(logging.Formatter):
    """Redacts the fully rendered record, traceback included."""

    def format(self, record: logging.LogRecord) -> str:
        return redact_secrets(super().format(record))


class _ConsoleFilter(logging.Filter):
    """
    Keep the REPL readable:
    - battle_plan.* at the console level, except per-request HTTP retries (WARNING+)
    - py.warnings and third-party libraries only at ERROR+
    """

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        if name.startswith("battle_plan."):
            if name == "battle_plan.remote.http":
                return record.levelno >= logging.WARNING
            return True
        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    log_dir: str | Path = ".local/battle_plan",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
    max_bytes: int = 2_000_000,
    backup_count: int = 3,
) -> Path:
    """
    Install a filtered stderr handler and a rotating file handler (battle_plan.log).

    Both handlers redact tokens and API keys. Call once, before the first log line;
    existing root handlers are replaced. Returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "battle_plan.log"

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = _RedactingFormatter(
        fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    file_fmt = _RedactingFormatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(fmt)
    console.addFilter(_ConsoleFilter())
    root.addHandler(console)

    rotating = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    rotating.setLevel(file_level)
    rotating.setFormatter(file_fmt)
    root.addHandler(rotating)

    logging.captureWarnings(True)
    for name in _NOISY:
        logging.getLogger(name).setLevel(logging.WARNING)
    return log_file
