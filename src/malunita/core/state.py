# src/malunita/core/state.py

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .ports import ExtractionService, IdeaAnalysisService

if TYPE_CHECKING:
    from ..tasks.connectivity import Connectivity
    from ..tasks.offline_queue import OfflineQueue
    from ..tasks.optimistic_store import OptimisticTaskStore


@dataclass(slots=True)
class AppState:
    """
    Wired service graph for one running app.

    Built by cli.bootstrap.create_initial_state(); connectors and commands
    only talk to these objects.
    """

    settings: Any
    store: OptimisticTaskStore
    queue: OfflineQueue
    connectivity: Connectivity
    extractor: ExtractionService
    analyzer: IdeaAnalysisService
    llm_mode: str = "offline"
