# src/malunita/core/errors.py

"""
Error taxonomy shared by the store, the offline queue and the remote adapters.

Pipeline functions never raise; everything here belongs to the stateful side.
"""

from __future__ import annotations

from typing import Any


class MalunitaError(Exception):
    """Base class for all project errors."""


class ValidationError(MalunitaError, ValueError):
    """Malformed candidate / task input. Raised before any cache mutation."""


class StoreClosedError(MalunitaError, RuntimeError):
    """Operation attempted on a store that is not open for a user."""


class RemoteStoreError(MalunitaError):
    """Base for failures reported by the remote task store."""


class NetworkError(RemoteStoreError):
    """Remote unreachable. Transient: the same mutation may succeed later."""


class NotFoundError(RemoteStoreError):
    """Target entity does not exist remotely (or no longer exists locally)."""


class ConflictError(RemoteStoreError):
    """Remote rejected a mutation because its base revision is stale."""

    def __init__(self, message: str, *, expected: int | None = None, actual: int | None = None) -> None:
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class QueueReplayError(MalunitaError):
    """
    A queued mutation failed during drain.

    `terminal` decides what the queue does next:
    - True  -> mutation dropped, drain continues
    - False -> mutation stays at the head, drain pauses until reconnect
    """

    def __init__(self, message: str, *, mutation: Any, terminal: bool) -> None:
        super().__init__(message)
        self.mutation = mutation
        self.terminal = terminal


def is_terminal_replay_error(exc: BaseException) -> bool:
    """Only network trouble is worth retrying; anything else would fail the same way again."""
    return not isinstance(exc, NetworkError)
