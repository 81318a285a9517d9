# src/battle_plan/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, kicks off the startup restore check in the
background, then runs the console REPL until /exit (or EOF / Ctrl+C).
"""

from __future__ import annotations

import asyncio
import logging

from ..cli.bootstrap import create_initial_state, shutdown_state
from ..config import Settings, get_settings
from ..connectors.console_connector import run_console_loop
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


async def run(settings: Settings) -> None:
    state = await create_initial_state(settings=settings)

    startup = asyncio.create_task(state.sync.startup_check(), name="startup-sync-check")
    try:
        await run_console_loop(state)
    finally:
        if not startup.done():
            startup.cancel()
        await shutdown_state(state)


def main() -> None:
    settings = get_settings()

    # choose console log level from settings.log_level
    level_name = str(settings.log_level).upper()
    console_level = getattr(logging, level_name, logging.INFO)
    log_file = setup_logging(log_dir=settings.data_dir, console_level=console_level)

    logger.info("Starting %s (log file: %s)", settings.app_name, log_file)
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down...")
    logger.info("Bye.")


if __name__ == "__main__":
    main()
