# tests/test_offline_queue.py

from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from malunita.core.errors import NetworkError, NotFoundError, ValidationError
from malunita.tasks.offline_queue import OfflineQueue
from malunita.tasks.task_models import MutationKind, MutationState, QueuedMutation


@dataclass(slots=True)
class RecordingReplayer:
    """MutationReplayer that records calls and raises scripted errors per mutation id."""

    errors: dict[str, list[BaseException]] = field(default_factory=dict)
    replayed: list[str] = field(default_factory=list)
    discarded: list[tuple[str, BaseException]] = field(default_factory=list)

    async def replay(self, mutation: QueuedMutation) -> None:
        pending = self.errors.get(mutation.mutation_id)
        if pending:
            raise pending.pop(0)
        self.replayed.append(mutation.mutation_id)

    def discard(self, mutation: QueuedMutation, error: BaseException) -> None:
        self.discarded.append((mutation.mutation_id, error))


def _mutation(mid: str, kind: MutationKind = MutationKind.UPDATE, ref: str = "t1") -> QueuedMutation:
    return QueuedMutation(mutation_id=mid, kind=kind, entity_ref=ref, payload={"title": mid}, enqueued_at=1.0)


# ---- queue on its own ----


def test_queue_is_durable_and_user_scoped(tmp_path) -> None:
    path = tmp_path / "q.sqlite3"
    q = OfflineQueue(path)
    q.bind("u1", RecordingReplayer())
    q.enqueue(_mutation("m1", MutationKind.CREATE, "temp-1"))
    q.enqueue(_mutation("m2"))

    reopened = OfflineQueue(path)
    reopened.bind("u1", RecordingReplayer())
    pending = reopened.pending()
    assert [m.mutation_id for m in pending] == ["m1", "m2"]
    assert pending[0].kind == MutationKind.CREATE
    assert pending[0].payload == {"title": "m1"}
    assert pending[0].seq < pending[1].seq

    reopened.bind("u2", RecordingReplayer())
    assert len(reopened) == 0


@pytest.mark.asyncio
async def test_drain_is_fifo_and_skips_terminal_failures(tmp_path) -> None:
    replayer = RecordingReplayer(errors={"m2": [NotFoundError("gone")]})
    q = OfflineQueue(tmp_path / "q.sqlite3")
    q.bind("u1", replayer)
    for mid in ("m1", "m2", "m3"):
        q.enqueue(_mutation(mid))

    assert await q.drain() == 2
    assert replayer.replayed == ["m1", "m3"]
    assert [mid for mid, _ in replayer.discarded] == ["m2"]
    assert len(q) == 0


@pytest.mark.asyncio
async def test_transient_failure_pauses_then_gives_up(tmp_path) -> None:
    replayer = RecordingReplayer(errors={"m1": [NetworkError("down")] * 2})
    q = OfflineQueue(tmp_path / "q.sqlite3", max_attempts=2)
    q.bind("u1", replayer)
    q.enqueue(_mutation("m1"))
    q.enqueue(_mutation("m2"))

    assert await q.drain() == 0
    head = q.peek()
    assert head is not None and head.mutation_id == "m1" and head.attempts == 1
    assert replayer.replayed == []

    # Second transient failure reaches max_attempts: dropped, drain continues.
    assert await q.drain() == 1
    assert [mid for mid, _ in replayer.discarded] == ["m1"]
    assert replayer.replayed == ["m2"]


@pytest.mark.asyncio
async def test_unbound_queue_does_not_drain(tmp_path) -> None:
    q = OfflineQueue(tmp_path / "q.sqlite3")
    assert await q.drain() == 0
    assert q.pending() == []


# ---- queue driven by the store ----


@pytest.mark.asyncio
async def test_offline_create_is_queued_and_visible(store, remote, queue, connectivity) -> None:
    connectivity.set_online(False)
    (task,) = await store.create_tasks([{"title": "offline idea"}])

    assert task.optimistic is True
    assert store.list_tasks() == [task]
    assert len(queue) == 1
    assert queue.peek().payload["client_ref"] == task.id
    assert remote.ops() == []
    assert list(store.mutation_states().values()) == [MutationState.QUEUED]


@pytest.mark.asyncio
async def test_reconnect_replays_create_before_update(store, remote, queue, connectivity) -> None:
    connectivity.set_online(False)
    (draft,) = await store.create_tasks([{"title": "draft"}])
    await store.update_task(draft.id, {"title": "final"})
    assert store.get(draft.id).title == "final"

    connectivity.set_online(True)
    assert await store.flush() == 2

    assert remote.ops() == ["create", "update"]
    assert remote.calls[0].payload["client_ref"] == draft.id
    assert remote.calls[1].key == "t1"
    assert remote.calls[1].base_revision is None
    (task,) = store.list_tasks()
    assert (task.id, task.title, task.optimistic) == ("t1", "final", False)
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_queue_is_fifo_across_entities(store, remote, connectivity) -> None:
    connectivity.set_online(False)
    (a,) = await store.create_tasks([{"title": "A"}])
    await store.create_tasks([{"title": "B"}])
    await store.update_task(a.id, {"title": "A2"})

    connectivity.set_online(True)
    await store.flush()

    assert [(c.op, c.key) for c in remote.calls] == [("create", "A"), ("create", "B"), ("update", "t1")]


@pytest.mark.asyncio
async def test_terminal_replay_failure_is_dropped_and_layer_removed(store, remote, queue, connectivity) -> None:
    (a,) = await store.create_tasks([{"title": "A"}])
    connectivity.set_online(False)
    await store.update_task(a.id, {"title": "A2"})
    await store.create_tasks([{"title": "B"}])
    remote.records.pop(a.id)

    connectivity.set_online(True)
    assert await store.flush() == 1

    assert len(queue) == 0
    assert store.get(a.id).title == "A"
    assert store.get(a.id).optimistic is False
    assert [t.title for t in store.list_tasks()] == ["A", "B"]
    assert MutationState.DROPPED_WITH_ERROR in store.mutation_states().values()


@pytest.mark.asyncio
async def test_transient_replay_failure_waits_for_next_reconnect(store, remote, queue, connectivity) -> None:
    connectivity.set_online(False)
    await store.create_tasks([{"title": "A"}])
    await store.create_tasks([{"title": "B"}])
    remote.fail_next("create", NetworkError("flaky"))

    connectivity.set_online(True)
    assert await store.flush() == 0
    assert len(queue) == 2
    assert queue.peek().attempts == 1
    assert remote.ops() == ["create"]
    assert all(t.optimistic for t in store.list_tasks())

    connectivity.set_online(False)
    connectivity.set_online(True)
    assert await store.flush() == 2
    assert len(remote.records) == 2
    assert not any(t.optimistic for t in store.list_tasks())


@pytest.mark.asyncio
async def test_transient_failures_stop_after_max_attempts(store, remote, queue, connectivity) -> None:
    connectivity.set_online(False)
    await store.create_tasks([{"title": "doomed"}])
    remote.fail_next("create", NetworkError("down"), times=queue.max_attempts)

    for _ in range(queue.max_attempts):
        connectivity.set_online(True)
        await store.flush()
        connectivity.set_online(False)

    assert len(queue) == 0
    assert store.list_tasks() == []
    assert list(store.mutation_states().values()) == [MutationState.DROPPED_WITH_ERROR]


@pytest.mark.asyncio
async def test_replaying_confirmed_mutation_again_is_noop(store, remote, queue, connectivity) -> None:
    connectivity.set_online(False)
    await store.create_tasks([{"title": "once"}])
    mutation = queue.peek()

    connectivity.set_online(True)
    await store.flush()
    snapshot = store.list_tasks()

    await store.replay(mutation)

    assert store.list_tasks() == snapshot
    assert len(remote.records) == 1
    assert remote.ops() == ["create"]


@pytest.mark.asyncio
async def test_mutation_on_entity_with_queued_work_is_queued_even_online(store, remote, queue, connectivity) -> None:
    connectivity.set_online(False)
    (a,) = await store.create_tasks([{"title": "A"}])
    remote.fail_next("create", NetworkError("flaky"))
    connectivity.set_online(True)
    await store.flush()
    assert len(queue) == 1

    await store.update_task(a.id, {"title": "A2"})
    assert len(queue) == 2
    assert "update" not in remote.ops()

    connectivity.set_online(False)
    connectivity.set_online(True)
    assert await store.flush() == 2
    assert remote.ops() == ["create", "create", "update"]
    assert remote.records["t1"].title == "A2"


@pytest.mark.asyncio
async def test_pending_update_fails_when_queued_create_is_dropped(store, remote, queue, connectivity) -> None:
    connectivity.set_online(False)
    (a,) = await store.create_tasks([{"title": "A"}])
    await store.update_task(a.id, {"title": "A2"})
    remote.fail_next("create", ValidationError("rejected by server"))

    connectivity.set_online(True)
    assert await store.flush() == 0

    assert len(queue) == 0
    assert store.list_tasks() == []
    assert "update" not in remote.ops()
    assert set(store.mutation_states().values()) == {MutationState.DROPPED_WITH_ERROR}


@pytest.mark.asyncio
async def test_queued_mutations_survive_restart(make_store, store, remote, connectivity) -> None:
    connectivity.set_online(False)
    (a,) = await store.create_tasks([{"title": "written before crash"}])
    store.close()

    restarted = make_store()
    tasks = await restarted.refresh()
    assert [(t.id, t.title, t.optimistic) for t in tasks] == [(a.id, "written before crash", True)]

    connectivity.set_online(True)
    assert await restarted.flush() == 1
    (task,) = restarted.list_tasks()
    assert (task.id, task.optimistic) == ("t1", False)
    assert restarted.resolve_id(a.id) == "t1"


@pytest.mark.asyncio
async def test_replayed_create_already_on_remote_folds_into_cached_record(
    make_store, store, remote, queue, connectivity
) -> None:
    connectivity.set_online(False)
    (draft,) = await store.create_tasks([{"title": "Buy milk"}])
    await store.update_task(draft.id, {"title": "Buy oat milk"})
    # The create reached the remote but its queue row was never removed.
    await remote.create(queue.pending()[0].payload)
    store.close()

    restarted = make_store()
    await restarted.refresh()
    assert sorted(t.title for t in restarted.list_tasks()) == ["Buy milk", "Buy oat milk"]

    connectivity.set_online(True)
    assert await restarted.flush() == 2

    assert [(t.id, t.title, t.optimistic) for t in restarted.list_tasks()] == [("t1", "Buy oat milk", False)]
    assert restarted.resolve_id(draft.id) == "t1"
    assert restarted.get(draft.id).id == "t1"
    assert len(remote.records) == 1
    assert len(queue) == 0
    assert set(restarted.mutation_states().values()) == {MutationState.CONFIRMED}
