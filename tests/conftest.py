# tests/conftest.py

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from types import SimpleNamespace

import pytest

from malunita.core.state import AppState
from malunita.llm.offline import OfflineExtractionService, OfflineIdeaAnalysisService
from malunita.tasks.connectivity import Connectivity
from malunita.tasks.offline_queue import OfflineQueue
from malunita.tasks.optimistic_store import OptimisticTaskStore

from .fakes import FakeClock, FakeRemoteStore

USER_ID = "u1"


@pytest.fixture()
def settings(tmp_path: Path) -> SimpleNamespace:
    """
    Minimal settings object compatible with AppState and core modules.

    We intentionally use a SimpleNamespace rather than importing real config,
    to keep unit tests isolated and deterministic.
    """
    return SimpleNamespace(
        app_name="malunita-test",
        user_id=USER_ID,
        console_enabled=False,
        data_dir=tmp_path,
        remote_db_path=tmp_path / "remote.sqlite3",
        queue_db_path=tmp_path / "queue.sqlite3",
        start_online=True,
        queue_max_attempts=3,
        llm_enabled=False,
        openai_api_key=None,
        openai_base_url="https://example.invalid/v1",
        llm_models=["m1", "m2"],
        llm_connect_timeout=1.0,
        llm_read_timeout=1.0,
    )


@pytest.fixture()
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture()
def connectivity() -> Connectivity:
    return Connectivity(online=True)


@pytest.fixture()
def queue(settings: SimpleNamespace) -> OfflineQueue:
    return OfflineQueue(settings.queue_db_path, max_attempts=settings.queue_max_attempts)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_store(
    remote: FakeRemoteStore,
    queue: OfflineQueue,
    connectivity: Connectivity,
    clock: FakeClock,
) -> Iterator[Callable[..., OptimisticTaskStore]]:
    """Factory for stores sharing the same remote/queue/connectivity (restart scenarios)."""
    created: list[OptimisticTaskStore] = []

    def _make(*, user_id: str = USER_ID) -> OptimisticTaskStore:
        store = OptimisticTaskStore(lambda _uid: remote, queue, connectivity, clock=clock)
        store.open(user_id)
        created.append(store)
        return store

    yield _make

    for s in created:
        s.close()


@pytest.fixture()
def store(make_store) -> OptimisticTaskStore:
    return make_store()


@pytest.fixture()
def state(settings: SimpleNamespace, store: OptimisticTaskStore, queue: OfflineQueue, connectivity: Connectivity) -> AppState:
    """AppState wired with the fake remote and offline extraction."""
    return AppState(
        settings=settings,
        store=store,
        queue=queue,
        connectivity=connectivity,
        extractor=OfflineExtractionService(),
        analyzer=OfflineIdeaAnalysisService(),
    )
