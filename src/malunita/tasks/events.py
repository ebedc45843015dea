# src/malunita/tasks/events.py

from __future__ import annotations

import logging
from collections.abc import Callable

from .task_models import TaskEvent

logger = logging.getLogger(__name__)

TaskEventListener = Callable[[TaskEvent], None]


class TaskEventBus:
    """
    Observer over confirmed task transitions.

    Subscribers (side-effect dispatchers, UI layers) never see optimistic
    changes, so nothing needs undoing when a mutation rolls back.
    A failing listener is logged and does not affect other listeners.
    """

    def __init__(self) -> None:
        self._listeners: list[TaskEventListener] = []

    def subscribe(self, listener: TaskEventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event: TaskEvent) -> None:
        logger.debug("Task event kind=%s id=%s", event.kind.value, event.task.id)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Task event listener failed kind=%s id=%s", event.kind.value, event.task.id)

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
