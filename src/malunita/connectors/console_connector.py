# src/malunita/connectors/console_connector.py

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime

from ..cli.commands import registry as command_registry
from ..core.errors import MalunitaError
from ..core.state import AppState
from ..pipeline.agenda_router import group_by_agenda
from ..pipeline.processing import process_raw_input

logger = logging.getLogger(__name__)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _rewrite_prev_line(line: str) -> None:
    """
    Replace the last terminal line with `line`.
    If stdout is not a TTY, just print a new line.
    """
    if sys.stdout.isatty():
        sys.stdout.write("\033[1A\033[2K\r")
        sys.stdout.write(line + "\n")
        sys.stdout.flush()
    else:
        print(line)


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}", flush=True)


async def capture(state: AppState, text: str) -> str:
    """Free text -> pipeline -> create_tasks. Returns the reply to show."""
    result = await asyncio.to_thread(process_raw_input, text, state.extractor, state.analyzer)
    if not result.tasks:
        return "Nothing actionable found."

    pending = state.store.create_tasks(result.tasks)
    lines = [f"Captured {len(result.tasks)} task(s):"]
    for bucket, rows in group_by_agenda(result.accepted).items():
        for r in rows:
            lines.append(f"  [{bucket.value}] {r.title} ({r.priority}, {r.task_type})")
    if result.context.inferred_projects:
        lines.append(f"  Projects: {', '.join(result.context.inferred_projects)}")
    if result.context.related_people:
        lines.append(f"  People: {', '.join(result.context.related_people)}")
    if result.rejected:
        lines.append(f"  Skipped {len(result.rejected)} candidate(s) without a title.")

    try:
        await pending
    except MalunitaError as e:
        logger.warning("Capture was not saved: %s", e)
        lines.append(f"  Not saved ({e}); the change was undone.")
    else:
        if not state.connectivity.is_online:
            lines.append("  Offline: queued for sync.")
    return "\n".join(lines)


async def run_console_loop(state: AppState) -> None:
    logger.info("Console connector started (user=%s).", state.store.user_id)
    _print_ts("[CONSOLE] Type a thought to capture tasks. Use /help for commands. Use /exit to quit.\n")

    def emit(text: str) -> None:
        # Immediate user-visible feedback for long operations (e.g., queue replay)
        _print_ts(text)

    while True:
        try:
            user_input = (await asyncio.to_thread(input, ">>> You: ")).strip()
            _rewrite_prev_line(f"[{_ts_local()}] >>> You: {user_input}")
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

        try:
            reply = await command_registry.handle(state, user_input, emit=emit)
            if reply is None:
                reply = await capture(state, user_input)
        except Exception:
            logger.exception("Console handler crashed.")
            reply = "Internal error while handling that input."

        _print_ts(reply)

    logger.info("Console connector finished.")
