# tests/test_logging_setup.py

from __future__ import annotations

import logging
from pathlib import Path

from battle_plan.logging_setup import redact_secrets, setup_logging


def test_redact_secrets() -> None:
    text = "GET /tasks Authorization: Bearer ya29.a0AfH6abc key=sk-proj_1234567890"
    cleaned = redact_secrets(text)

    assert "ya29" not in cleaned
    assert "1234567890" not in cleaned
    assert "Bearer [REDACTED]" in cleaned
    assert redact_secrets("nothing secret here") == "nothing secret here"


def test_setup_logging_writes_redacted_file(tmp_path: Path) -> None:
    root = logging.getLogger()
    saved = list(root.handlers)
    try:
        log_file = setup_logging(log_dir=tmp_path, console_level=logging.CRITICAL)
        logging.getLogger("battle_plan.test").info("token %s", "ya29.secretvalue")
        for h in root.handlers:
            h.flush()

        content = log_file.read_text("utf-8")
        assert "battle_plan.test" in content
        assert "secretvalue" not in content
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()
        for h in saved:
            root.addHandler(h)


def test_setup_logging_redacts_tracebacks(tmp_path: Path) -> None:
    root = logging.getLogger()
    saved = list(root.handlers)
    try:
        log_file = setup_logging(log_dir=tmp_path, console_level=logging.CRITICAL)
        try:
            raise RuntimeError("upstream said: Authorization: Bearer ya29.leakedtoken key=sk-leaked123456")
        except RuntimeError:
            logging.getLogger("battle_plan.test").exception("request failed")
        for h in root.handlers:
            h.flush()

        content = log_file.read_text("utf-8")
        assert "Traceback" in content
        assert "RuntimeError" in content
        assert "leakedtoken" not in content
        assert "leaked123456" not in content
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()
        for h in saved:
            root.addHandler(h)
