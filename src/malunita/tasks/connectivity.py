# src/malunita/tasks/connectivity.py

from __future__ import annotations

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class Connectivity:
    """
    Online/offline signal.

    Whoever knows about the network (a connector, a health probe, a test)
    calls set_online(); the store subscribes and drains its queue on each
    offline -> online transition.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = bool(online)
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        online = bool(online)
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity %s", "restored" if online else "lost, entering offline mode")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:
                logger.exception("Connectivity listener failed")

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register a listener; it is called immediately with the current status."""
        self._listeners.append(listener)
        listener(self._online)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe
