# tests/test_optimistic_store.py

from __future__ import annotations

import pytest

from malunita.core.errors import ConflictError, NetworkError, NotFoundError, StoreClosedError, ValidationError
from malunita.pipeline.models import Priority
from malunita.tasks.task_models import EventKind, MutationState, NewTaskInput, TaskEvent, is_temp_id


async def _seed(store, *titles: str):
    return await store.create_tasks([{"title": t} for t in titles])


@pytest.mark.asyncio
async def test_create_is_visible_before_network_and_remapped_after(store, remote) -> None:
    gate = remote.gate("create_many")

    pending = store.create_tasks([NewTaskInput(title="Buy milk", priority=Priority.MUST)])

    (optimistic,) = store.list_tasks()
    assert optimistic.optimistic is True
    assert is_temp_id(optimistic.id)
    assert optimistic.priority == Priority.MUST
    temp_id = optimistic.id

    gate.set()
    (confirmed,) = await pending

    assert confirmed.id == "t1"
    assert confirmed.optimistic is False
    assert confirmed.revision == 1
    assert [t.id for t in store.list_tasks()] == ["t1"]
    assert store.resolve_id(temp_id) == "t1"
    assert store.get(temp_id) == store.get("t1")


@pytest.mark.asyncio
async def test_failed_create_rolls_back_to_snapshot(store, remote) -> None:
    await _seed(store, "existing")
    before = store.list_tasks()

    remote.fail_next("create_many", NetworkError("offline"))
    pending = store.create_tasks([{"title": "a"}, {"title": "b"}])
    assert len(store.list_tasks()) == 3

    with pytest.raises(NetworkError):
        await pending
    assert store.list_tasks() == before


@pytest.mark.asyncio
async def test_failed_update_rolls_back_to_snapshot(store, remote) -> None:
    (task,) = await _seed(store, "original")
    before = store.list_tasks()

    remote.fail_next("update", NetworkError("timeout"))
    pending = store.update_task(task.id, {"title": "renamed", "is_focus": True})
    assert store.get(task.id).title == "renamed"
    assert store.get(task.id).optimistic is True

    with pytest.raises(NetworkError):
        await pending
    assert store.list_tasks() == before


@pytest.mark.asyncio
async def test_failed_delete_restores_entity_in_place(store, remote) -> None:
    _, middle, _ = await _seed(store, "a", "b", "c")
    before = store.list_tasks()

    remote.fail_next("delete", NetworkError("timeout"))
    pending = store.delete_task(middle.id)
    assert [t.title for t in store.list_tasks()] == ["a", "c"]

    with pytest.raises(NetworkError):
        await pending
    assert store.list_tasks() == before


@pytest.mark.asyncio
async def test_conflict_is_surfaced_and_rolled_back(store, remote) -> None:
    (task,) = await _seed(store, "shared")
    before = store.list_tasks()
    remote.bump_revision(task.id)

    with pytest.raises(ConflictError) as info:
        await store.update_task(task.id, {"title": "mine"})

    assert info.value.expected == 1
    assert info.value.actual == 2
    assert store.list_tasks() == before


@pytest.mark.asyncio
async def test_update_sends_confirmed_base_revision(store, remote) -> None:
    (task,) = await _seed(store, "a")
    updated = await store.update_task(task.id, {"title": "b"})
    await store.update_task(task.id, {"title": "c"})

    revisions = [c.base_revision for c in remote.calls if c.op == "update"]
    assert revisions == [1, 2]
    assert updated.revision == 2
    assert store.get(task.id).revision == 3


@pytest.mark.asyncio
async def test_events_only_for_confirmed_transitions(store, remote) -> None:
    events: list[TaskEvent] = []
    store.subscribe(events.append)

    gate = remote.gate("create_many")
    pending = store.create_tasks([{"title": "a"}])
    assert events == []
    gate.set()
    (task,) = await pending
    assert [e.kind for e in events] == [EventKind.CREATED]
    assert events[0].task.optimistic is False

    remote.fail_next("update", NetworkError("down"))
    with pytest.raises(NetworkError):
        await store.update_task(task.id, {"title": "nope"})
    assert len(events) == 1

    await store.update_task(task.id, {"title": "yes"})
    await store.delete_task(task.id)
    assert [e.kind for e in events] == [EventKind.CREATED, EventKind.UPDATED, EventKind.DELETED]
    assert events[1].task.title == "yes"


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_the_store(store) -> None:
    def boom(_event: TaskEvent) -> None:
        raise RuntimeError("listener bug")

    store.subscribe(boom)
    (task,) = await _seed(store, "a")
    assert store.get(task.id).optimistic is False


@pytest.mark.asyncio
async def test_update_on_temp_id_waits_for_create(store, remote) -> None:
    gate = remote.gate("create_many")
    created = store.create_tasks([{"title": "draft"}])
    temp_id = store.list_tasks()[0].id

    updated = store.update_task(temp_id, {"title": "final"})
    assert store.get(temp_id).title == "final"

    gate.set()
    await created
    result = await updated

    assert remote.ops() == ["create_many", "update"]
    assert remote.calls[1].key == "t1"
    assert result.id == "t1"
    assert remote.records["t1"].title == "final"
    assert store.get("t1").optimistic is False


@pytest.mark.asyncio
async def test_other_entities_may_confirm_out_of_order(store, remote) -> None:
    gate_a = remote.gate("create_many", "A")
    pending_a = store.create_tasks([{"title": "A"}])
    pending_b = store.create_tasks([{"title": "B"}])

    (b,) = await pending_b
    assert b.optimistic is False
    assert store.list_tasks()[0].optimistic is True

    gate_a.set()
    (a,) = await pending_a
    assert [t.title for t in store.list_tasks()] == ["A", "B"]
    assert {a.id, b.id} == {"t1", "t2"}


@pytest.mark.asyncio
async def test_rollback_is_per_entity(store, remote) -> None:
    a, b = await _seed(store, "a", "b")
    gate = remote.gate("update", a.id)
    remote.fail_next("update", NetworkError("down"), key=a.id)

    pending_a = store.update_task(a.id, {"title": "a2"})
    pending_b = store.update_task(b.id, {"title": "b2"})

    await pending_b
    assert store.get(a.id).optimistic is True
    assert store.get(b.id).optimistic is False

    gate.set()
    with pytest.raises(NetworkError):
        await pending_a

    assert store.get(a.id).title == "a"
    assert store.get(b.id).title == "b2"


@pytest.mark.asyncio
async def test_later_edit_survives_rollback_of_earlier_one(store, remote) -> None:
    (task,) = await _seed(store, "title")
    remote.fail_next("update", NetworkError("down"))

    first = store.update_task(task.id, {"title": "lost"})
    second = store.update_task(task.id, {"category": "home"})
    assert store.get(task.id).title == "lost"

    with pytest.raises(NetworkError):
        await first
    assert store.get(task.id).title == "title"
    assert store.get(task.id).category == "home"

    await second
    current = store.get(task.id)
    assert (current.title, current.category, current.optimistic) == ("title", "home", False)


@pytest.mark.asyncio
async def test_confirmation_after_local_delete_is_discarded(store, remote) -> None:
    events: list[TaskEvent] = []
    store.subscribe(events.append)

    gate = remote.gate("create_many")
    created = store.create_tasks([{"title": "ghost"}])
    temp_id = store.list_tasks()[0].id
    deleted = store.delete_task(temp_id)
    assert store.list_tasks() == []

    gate.set()
    assert await created == []
    await deleted

    assert store.list_tasks() == []
    assert remote.records == {}
    assert events == []


@pytest.mark.asyncio
async def test_dependent_update_fails_when_create_rolls_back(store, remote) -> None:
    gate = remote.gate("create_many")
    remote.fail_next("create_many", NetworkError("down"))
    created = store.create_tasks([{"title": "a"}])
    temp_id = store.list_tasks()[0].id
    updated = store.update_task(temp_id, {"title": "b"})

    gate.set()
    with pytest.raises(NetworkError):
        await created
    with pytest.raises(NotFoundError):
        await updated
    assert store.list_tasks() == []
    assert "update" not in remote.ops()


@pytest.mark.asyncio
async def test_validation_happens_before_any_mutation(store, remote) -> None:
    with pytest.raises(ValidationError):
        store.create_tasks([{"title": "fine"}, {"title": "   "}])
    with pytest.raises(ValidationError):
        store.create_tasks([{"title": "x", "colour": "red"}])
    assert store.list_tasks() == []

    (task,) = await _seed(store, "a")
    before = store.list_tasks()
    with pytest.raises(ValidationError):
        store.update_task(task.id, {"revision": 9})
    with pytest.raises(ValidationError):
        store.update_task(task.id, {"title": ""})
    with pytest.raises(NotFoundError):
        store.update_task("missing", {"title": "x"})
    with pytest.raises(NotFoundError):
        store.delete_task("missing")
    assert store.list_tasks() == before
    assert remote.ops() == ["create_many"]


@pytest.mark.asyncio
async def test_complete_task_sets_completion_fields(store, clock) -> None:
    (task,) = await _seed(store, "a")
    done = await store.complete_task(task.id)
    assert done.completed is True
    assert done.completed_at is not None


@pytest.mark.asyncio
async def test_mutation_states_track_outcomes(store, remote) -> None:
    await _seed(store, "a")
    remote.fail_next("create_many", NetworkError("down"))
    with pytest.raises(NetworkError):
        await store.create_tasks([{"title": "b"}])

    states = sorted(store.mutation_states().values())
    assert states == sorted([MutationState.CONFIRMED, MutationState.ROLLED_BACK])


@pytest.mark.asyncio
async def test_empty_batch_is_a_noop(store, remote) -> None:
    assert await store.create_tasks([]) == []
    assert remote.ops() == []


@pytest.mark.asyncio
async def test_refresh_loads_remote_truth(store, remote) -> None:
    (task,) = await _seed(store, "a")
    remote.records.pop(task.id)
    await remote.create({"title": "from another device"})

    tasks = await store.refresh()
    assert [t.title for t in tasks] == ["from another device"]


def test_closed_store_rejects_mutations(make_store) -> None:
    store = make_store()
    store.close()
    assert store.is_open is False
    with pytest.raises(StoreClosedError):
        store.create_tasks([{"title": "a"}])


def test_open_for_second_user_requires_close(make_store) -> None:
    store = make_store()
    store.open("u1")
    with pytest.raises(StoreClosedError):
        store.open("someone-else")


@pytest.mark.asyncio
async def test_isolated_instances(make_store) -> None:
    first = make_store()
    second = make_store(user_id="u2")
    await first.create_tasks([{"title": "only in first"}])
    assert second.list_tasks() == []
