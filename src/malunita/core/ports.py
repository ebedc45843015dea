# src/malunita/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The core depends on Protocols instead of concrete implementations.
This keeps the remote store / LLM providers swappable and makes testing easier.
"""

from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from ..pipeline.models import IdeaAnalysis, TaskCandidate
    from ..tasks.task_models import QueuedMutation, Task

ChatMessage = dict[str, str]
# OpenAI-style chat messages: {"role": "...", "content": "..."}.


class LLMClient(Protocol):
    """Streaming chat completion client (OpenAI-compatible)."""
    def stream_chat(self, messages: list[ChatMessage], system_prompt: str) -> Iterable[str]: ...


class ExtractionService(Protocol):
    """Turns captured text into task candidates."""
    def extract(self, text: str) -> list[TaskCandidate]: ...


class IdeaAnalysisService(Protocol):
    """Topics / emotional tone / decisions / questions for captured text."""
    def analyze(self, text: str) -> IdeaAnalysis: ...


class RemoteTaskStore(Protocol):
    """
    Authoritative task store, scoped to one authenticated user.

    Errors are distinct: NotFoundError for a missing entity, NetworkError for
    transient trouble, ConflictError for a stale base revision.
    """

    async def create(self, payload: Mapping[str, Any]) -> Task: ...

    async def create_many(self, payloads: Sequence[Mapping[str, Any]]) -> list[Task]: ...

    async def update(
            self,
            task_id: str,
            payload: Mapping[str, Any],
            *,
            base_revision: int | None = None,
    ) -> Task: ...

    async def delete(self, task_id: str) -> None: ...

    async def list_tasks(self) -> list[Task]: ...


class MutationReplayer(Protocol):
    """What the offline queue hands control back to on each drain step."""

    async def replay(self, mutation: QueuedMutation) -> None: ...

    def discard(self, mutation: QueuedMutation, error: BaseException) -> None: ...
