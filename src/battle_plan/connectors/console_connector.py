# src/battle_plan/connectors/console_connector.py

from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from ..cli.commands import registry as command_registry
from ..core.state import AppState

logger = logging.getLogger(__name__)

PROMPT = ">>> "


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}", flush=True)


async def _read_line() -> str:
    # input() blocks; keep the event loop (debounced backups, sign-in checks) running.
    return await asyncio.to_thread(input, PROMPT)


async def run_console_loop(state: AppState) -> None:
    logger.info("Console connector started.")
    _print_ts("[CONSOLE] Type /help for commands, /view to see today's plan, /exit to quit.\n")

    while True:
        try:
            user_input = (await _read_line()).strip()
        except EOFError:
            logger.info("Console EOF received, exiting.")
            break
        except KeyboardInterrupt:
            logger.info("Console KeyboardInterrupt, exiting.")
            print()
            break

        if not user_input:
            continue

        if user_input.lower() in ("/exit", "/quit"):
            logger.info("Console exit command received.")
            break

        if not user_input.startswith("/"):
            # Plain text is a quick typed entry.
            user_input = f"/add {user_input}"

        try:
            reply = await command_registry.handle(state, user_input, emit=_print_ts)
        except Exception:
            logger.exception("Command handler crashed.")
            reply = "Internal error while handling a command."

        if reply is not None:
            _print_ts(reply)

    logger.info("Console connector finished.")
