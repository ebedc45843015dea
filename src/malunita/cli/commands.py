# src/malunita/cli/commands.py

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from ..core.errors import MalunitaError, NotFoundError
from ..core.state import AppState
from ..pipeline.agenda_router import suggest_related_tasks
from ..pipeline.models import Agenda
from ..tasks.task_models import Task, is_temp_id

CommandEmitter = Callable[[str], None]
CommandHandler = Callable[[AppState, list[str], CommandEmitter | None], "str | Awaitable[str]"]

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by connectors (/help, /list, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    async def handle(
        self,
        state: AppState,
        line: str,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        Handlers may be sync or async.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            result = handler(state, args, emit)
            if inspect.isawaitable(result):
                result = await result
        except MalunitaError as e:
            logger.info("/%s failed: %s", name, e)
            return f"Error: {e}"
        return result

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def _ts_local(ts: float | None = None) -> str:
    dt = datetime.fromtimestamp(ts) if ts is not None else datetime.now()
    return dt.astimezone().strftime("%Y-%m-%d %H:%M")


def _short_id(task_id: str) -> str:
    return task_id[:13] if is_temp_id(task_id) else task_id[:8]


def _format_task(idx: int, t: Task) -> str:
    mark = "x" if t.completed else " "
    bits = [f"{idx}. [{mark}] {t.title}"]
    meta = [p for p in (t.priority, t.effort) if p]
    if meta:
        bits.append(f"({', '.join(str(m) for m in meta)})")
    if t.reminder_time:
        bits.append(f"@ {t.reminder_time}")
    if t.optimistic:
        bits.append("*pending*")
    bits.append(f"<{_short_id(t.id)}>")
    return " ".join(bits)


def _parse_bucket(raw: str) -> Agenda | None:
    key = raw.replace("_", "").replace("-", "").lower()
    for a in Agenda:
        if a.value.lower() == key:
            return a
    return None


def _resolve_task(state: AppState, ref: str) -> Task:
    """Accepts a /list index, a full id or a unique id prefix."""
    tasks = state.store.list_tasks()
    if ref.isdigit():
        idx = int(ref)
        if 1 <= idx <= len(tasks):
            return tasks[idx - 1]
        raise NotFoundError(f"no task #{ref}")

    exact = state.store.get(ref)
    if exact is not None:
        return exact

    matches = [t for t in tasks if t.id.startswith(ref)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise NotFoundError(f"no task matches {ref!r}")
    raise NotFoundError(f"{ref!r} is ambiguous ({len(matches)} tasks match)")


def cmd_help(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    return registry.build_help()


def cmd_list(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /list          -> open tasks grouped by agenda bucket
    /list today    -> one bucket only
    /list all      -> include completed tasks
    """
    tasks = state.store.list_tasks()
    show_done = bool(args) and args[0].lower() == "all"
    only: Agenda | None = None
    if args and not show_done:
        only = _parse_bucket(args[0])
        if only is None:
            return f"Unknown bucket {args[0]!r}. Use one of: {', '.join(a.value for a in Agenda)}."

    numbered = list(enumerate(tasks, start=1))
    lines: list[str] = []
    for bucket in Agenda:
        if only is not None and bucket != only:
            continue
        rows = [
            _format_task(i, t)
            for i, t in numbered
            if (t.scheduled_bucket or Agenda.UPCOMING) == bucket and (show_done or not t.completed)
        ]
        if rows:
            lines.append(f"{bucket.value}:")
            lines.extend(f"  {r}" for r in rows)

    return "\n".join(lines) if lines else "No tasks."


async def cmd_done(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not args:
        return "Usage: /done <task>"
    task = _resolve_task(state, args[0])
    updated = await state.store.complete_task(task.id)
    return f"Done: {updated.title}"


async def cmd_rename(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if len(args) < 2:
        return "Usage: /rename <task> <new title>"
    task = _resolve_task(state, args[0])
    updated = await state.store.update_task(task.id, {"title": " ".join(args[1:])})
    return f"Renamed: {updated.title}"


async def cmd_rm(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not args:
        return "Usage: /rm <task>"
    task = _resolve_task(state, args[0])
    await state.store.delete_task(task.id)
    return f"Deleted: {task.title}"


def cmd_offline(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not state.connectivity.is_online:
        return "Already offline."
    state.connectivity.set_online(False)
    return "Offline mode: changes are queued locally."


async def cmd_online(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if state.connectivity.is_online:
        return "Already online."
    pending = len(state.queue)
    state.connectivity.set_online(True)
    if pending and emit:
        emit(f"[SYNC] Replaying {pending} queued change(s)...")
    sent = await state.store.flush()
    left = len(state.queue)
    msg = f"Online. Replayed {sent} change(s)."
    if left:
        msg += f" {left} still queued."
    return msg


def cmd_queue(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    pending = state.queue.pending()
    if not pending:
        return "Offline queue is empty."
    lines = [f"Queued changes ({len(pending)}):"]
    for m in pending:
        target = _short_id(state.store.resolve_id(m.entity_ref))
        tries = f", {m.attempts} failed attempt(s)" if m.attempts else ""
        lines.append(f"  {m.seq}. {m.kind.value} <{target}> at {_ts_local(m.enqueued_at)}{tries}")
    return "\n".join(lines)


async def cmd_refresh(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    tasks = await state.store.refresh()
    return f"Reloaded {len(tasks)} task(s)."


def cmd_status(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    tasks = state.store.list_tasks()
    pending = sum(1 for t in tasks if t.optimistic)
    models = ", ".join(list(getattr(state.settings, "llm_models", []) or []))
    extraction = f"LLM ({models})" if state.llm_mode == "llm" else "offline heuristics"
    return (
        "Status:\n"
        f"  User: {state.store.user_id}\n"
        f"  Network: {'online' if state.connectivity.is_online else 'offline'}\n"
        f"  Tasks: {len(tasks)} ({pending} unconfirmed)\n"
        f"  Offline queue: {len(state.queue)}\n"
        f"  Extraction: {extraction}"
    )


def cmd_related(state: AppState, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not args:
        return "Usage: /related <task>"
    focus = _resolve_task(state, args[0])
    suggestions = suggest_related_tasks(focus, state.store.list_tasks())
    if not suggestions:
        return f"Nothing related to {focus.title!r}."
    lines = [f"Related to {focus.title!r}:"]
    for s in suggestions:
        lines.append(f"  -> {s.task_title} [{s.suggested_agenda.value}] (shared: {', '.join(s.shared_keywords)})")
    return "\n".join(lines)


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("list", cmd_list, help_text="List tasks: /list [today|tomorrow|thisweek|upcoming|someday|all].")
registry.register("done", cmd_done, help_text="Complete a task: /done <#|id>.")
registry.register("rename", cmd_rename, help_text="Rename a task: /rename <#|id> <title>.")
registry.register("rm", cmd_rm, help_text="Delete a task: /rm <#|id>.", aliases=["del"])
registry.register("offline", cmd_offline, help_text="Simulate losing the network (changes get queued).")
registry.register("online", cmd_online, help_text="Reconnect and replay queued changes.")
registry.register("queue", cmd_queue, help_text="Show the offline queue.")
registry.register("refresh", cmd_refresh, help_text="Reload tasks from the remote store.")
registry.register("status", cmd_status, help_text="Show user/network/queue/extraction status.")
registry.register("related", cmd_related, help_text="Suggest tasks related to one: /related <#|id>.")
