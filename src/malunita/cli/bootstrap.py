# src/malunita/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete implementations into AppState (remote store/queue/LLM services).
"""

from __future__ import annotations

import logging
from functools import partial
from pathlib import Path

from ..config import get_settings
from ..core.ports import ExtractionService, IdeaAnalysisService
from ..core.state import AppState
from ..llm.client import OpenAILLMClient
from ..llm.extraction import LLMExtractionService, LLMIdeaAnalysisService
from ..llm.offline import OfflineExtractionService, OfflineIdeaAnalysisService
from ..tasks.connectivity import Connectivity
from ..tasks.offline_queue import OfflineQueue
from ..tasks.optimistic_store import OptimisticTaskStore
from ..tasks.remote_store import SQLiteRemoteTaskStore

logger = logging.getLogger(__name__)


def _ensure_local_dirs(settings) -> None:
    Path(settings.data_dir).mkdir(parents=True, exist_ok=True)
    Path(settings.remote_db_path).parent.mkdir(parents=True, exist_ok=True)
    Path(settings.queue_db_path).parent.mkdir(parents=True, exist_ok=True)


def _build_services(settings) -> tuple[ExtractionService, IdeaAnalysisService, str]:
    if not getattr(settings, "llm_enabled", False):
        return OfflineExtractionService(), OfflineIdeaAnalysisService(), "offline"
    try:
        llm = OpenAILLMClient(settings)
    except RuntimeError as e:
        # Fallback for demos / local runs without an API key.
        logger.info("LLM disabled (%s); using offline extraction.", e)
        return OfflineExtractionService(), OfflineIdeaAnalysisService(), "offline"
    return LLMExtractionService(llm), LLMIdeaAnalysisService(llm), "llm"


def create_initial_state(*, settings=None) -> AppState:
    """
    Create AppState from the provided settings.

    Keeping settings injectable makes the app easier to test and avoids hidden global config reads.
    If settings is None, falls back to get_settings(). The store is returned closed.
    """
    if settings is None:
        settings = get_settings()

    _ensure_local_dirs(settings)

    connectivity = Connectivity(online=bool(getattr(settings, "start_online", True)))
    queue = OfflineQueue(settings.queue_db_path, max_attempts=int(getattr(settings, "queue_max_attempts", 5)))
    store = OptimisticTaskStore(
        partial(SQLiteRemoteTaskStore, settings.remote_db_path),
        queue,
        connectivity,
    )
    extractor, analyzer, llm_mode = _build_services(settings)

    return AppState(
        settings=settings,
        store=store,
        queue=queue,
        connectivity=connectivity,
        extractor=extractor,
        analyzer=analyzer,
        llm_mode=llm_mode,
    )
