# src/malunita/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, opens the task store for the configured
user, then runs the console capture loop until /exit.
"""

from __future__ import annotations

import asyncio
import logging

from ..cli.bootstrap import create_initial_state
from ..config import get_settings
from ..connectors.console_connector import run_console_loop
from ..core.errors import MalunitaError
from ..core.state import AppState
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


async def _run(state: AppState) -> None:
    settings = state.settings
    state.store.open(settings.user_id)
    try:
        try:
            await state.store.refresh()
        except MalunitaError as e:
            # Keep working from the local queue; /refresh retries.
            logger.warning("Initial refresh failed: %s", e)

        if settings.console_enabled:
            await run_console_loop(state)
        else:
            logger.info("Console disabled; nothing to run.")

        if state.connectivity.is_online:
            await state.store.flush()
    finally:
        state.store.close()


def main() -> None:
    settings = get_settings()

    # choose console log level from settings.log_level
    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    log_file = setup_logging(log_dir=getattr(settings, "data_dir", ".local/malunita"), console_level=console_level)

    logger.info("Starting %s... (full log: %s)", getattr(settings, "app_name", "malunita"), log_file)

    # IMPORTANT: reuse same settings object
    state = create_initial_state(settings=settings)

    try:
        asyncio.run(_run(state))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down...")
    finally:
        logger.info("Bye.")


if __name__ == "__main__":
    main()
