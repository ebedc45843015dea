# src/malunita/tasks/optimistic_store.py

"""
Optimistic task store.

Owns the user's in-memory task cache. Every mutation runs in two phases:

1. optimistic (synchronous, no I/O): the cache changes before the call returns
2. network (awaitable): the remote store confirms or rejects; offline, the
   mutation goes to the offline queue instead

Each cached entity is a confirmed base record plus an ordered list of pending
layers (one per unconfirmed mutation). The visible task is the base with the
layers applied on top. Confirming a layer folds the server record into the base;
rolling one back just removes it. A failed mutation therefore restores exactly
what it changed, while later edits to the same entity and mutations on other
entities are kept.

Per entity, network calls are chained in call order (create before update
before delete); different entities proceed concurrently. Events go out only for
confirmed transitions.

All mutation methods must be called from a running event loop. They return an
awaitable that resolves to the confirmed result (or the optimistic one when
queued offline).
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

from ..core.errors import NotFoundError, StoreClosedError
from ..core.ports import RemoteTaskStore
from .connectivity import Connectivity
from .events import TaskEventBus, TaskEventListener
from .offline_queue import OfflineQueue
from .task_models import (
    EventKind,
    MutationKind,
    MutationState,
    NewTaskInput,
    QueuedMutation,
    Task,
    TaskEvent,
    new_temp_id,
    validate_updates,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

RemoteFactory = Callable[[str], RemoteTaskStore]


def _copy(task: Task) -> Task:
    return Task.from_dict(task.to_dict())


@dataclass(slots=True, eq=False)
class _Layer:
    mutation_id: str
    kind: MutationKind
    updates: dict[str, Any]
    queued: bool = False
    cancelled: bool = False


@dataclass(slots=True, eq=False)
class _Entry:
    order: int
    key: str
    base: Task | None = None
    layers: list[_Layer] = field(default_factory=list)
    aliases: set[str] = field(default_factory=set)
    visible: Task | None = None
    tail: asyncio.Future[None] | None = None
    announced: bool = False
    detached: bool = False
    merged_into: _Entry | None = None

    def derive(self) -> Task | None:
        task = _copy(self.base) if self.base is not None else None
        for layer in self.layers:
            if layer.kind == MutationKind.CREATE:
                task = Task.from_dict(layer.updates)
            elif layer.kind == MutationKind.UPDATE:
                if task is not None:
                    task = task.merged(layer.updates)
            else:
                task = None
        if task is not None:
            task.id = self.key
            task.optimistic = bool(self.layers)
        return task

    def find(self, mutation_id: str) -> _Layer | None:
        for layer in self.layers:
            if layer.mutation_id == mutation_id:
                return layer
        return None

    @property
    def has_queued(self) -> bool:
        return any(layer.queued for layer in self.layers)


class OptimisticTaskStore:
    """
    User-scoped optimistic cache in front of a remote task store.

    Lifecycle: open(user_id) -> await refresh() -> mutations / reads -> close().
    Instances are independent; tests can run several side by side.
    """

    def __init__(
        self,
        remote_factory: RemoteFactory,
        queue: OfflineQueue,
        connectivity: Connectivity,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._remote_factory = remote_factory
        self._queue = queue
        self._connectivity = connectivity
        self._clock = clock

        self._user_id: str | None = None
        self._remote: RemoteTaskStore | None = None
        self._events = TaskEventBus()
        self._unsubscribe_connectivity: Callable[[], None] | None = None
        self._was_online = connectivity.is_online
        self._drain_task: asyncio.Task[int] | None = None

        self._order = itertools.count()
        self._entries: dict[int, _Entry] = {}
        self._index: dict[str, _Entry] = {}
        self._states: dict[str, MutationState] = {}

    # ---- lifecycle ----

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def is_open(self) -> bool:
        return self._user_id is not None

    def open(self, user_id: str) -> None:
        user_id = str(user_id or "").strip()
        if not user_id:
            raise ValueError("user_id is required")
        if self._user_id == user_id:
            return
        if self._user_id is not None:
            raise StoreClosedError(f"store is already open for user {self._user_id}; close() it first")

        self._user_id = user_id
        self._remote = self._remote_factory(user_id)
        self._queue.bind(user_id, self)
        self._was_online = self._connectivity.is_online
        self._unsubscribe_connectivity = self._connectivity.subscribe(self._on_connectivity)
        logger.info("Task store opened user=%s online=%s", user_id, self._connectivity.is_online)

    def close(self) -> None:
        if self._user_id is None:
            return
        for entry in self._entries.values():
            entry.detached = True
            for layer in entry.layers:
                layer.cancelled = True
        self._entries.clear()
        self._index.clear()
        self._states.clear()
        self._events.clear()
        if self._unsubscribe_connectivity is not None:
            self._unsubscribe_connectivity()
            self._unsubscribe_connectivity = None
        self._queue.unbind()
        logger.info("Task store closed user=%s", self._user_id)
        self._user_id = None
        self._remote = None

    def _require_open(self) -> RemoteTaskStore:
        if self._user_id is None or self._remote is None:
            raise StoreClosedError("task store is not open")
        return self._remote

    # ---- reads ----

    def get(self, task_id: str) -> Task | None:
        entry = self._index.get(str(task_id))
        if entry is None or entry.visible is None:
            return None
        return _copy(entry.visible)

    def list_tasks(self) -> list[Task]:
        return [_copy(e.visible) for e in self._entries.values() if e.visible is not None]

    def resolve_id(self, ref: str) -> str:
        """Current id for a temp-or-real reference (temp ids map to the confirmed id)."""
        entry = self._index.get(str(ref))
        return entry.key if entry is not None else str(ref)

    def mutation_state(self, mutation_id: str) -> MutationState | None:
        return self._states.get(mutation_id)

    def mutation_states(self) -> dict[str, MutationState]:
        return dict(self._states)

    def subscribe(self, listener: TaskEventListener) -> Callable[[], None]:
        return self._events.subscribe(listener)

    # ---- cache bookkeeping ----

    def _new_entry(self, key: str) -> _Entry:
        entry = _Entry(order=next(self._order), key=key, aliases={key})
        self._entries[entry.order] = entry
        self._index[key] = entry
        return entry

    def _detach(self, entry: _Entry) -> None:
        entry.detached = True
        self._entries.pop(entry.order, None)
        for alias in entry.aliases:
            if self._index.get(alias) is entry:
                del self._index[alias]

    def _publish(self, entry: _Entry) -> None:
        entry.visible = entry.derive()
        if entry.visible is None and entry.base is None and not entry.layers:
            self._detach(entry)

    def _push_layer(self, entry: _Entry, kind: MutationKind, updates: dict[str, Any]) -> _Layer:
        layer = _Layer(mutation_id=uuid.uuid4().hex, kind=kind, updates=updates)
        entry.layers.append(layer)
        self._states[layer.mutation_id] = MutationState.PENDING_OPTIMISTIC
        self._publish(entry)
        logger.debug("Optimistic %s id=%s mutation=%s", kind.value, entry.key, layer.mutation_id)
        return layer

    def _lookup_visible(self, task_id: str) -> _Entry:
        entry = self._index.get(str(task_id))
        if entry is None or entry.visible is None:
            raise NotFoundError(f"task {task_id} is not in the cache")
        return entry

    def _reserve_slot(self, entry: _Entry) -> tuple[asyncio.Future[None] | None, asyncio.Future[None]]:
        prev = entry.tail
        mine: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        entry.tail = mine
        return prev, mine

    @staticmethod
    async def _wait_turn(prev: asyncio.Future[None] | None) -> None:
        if prev is not None and not prev.done():
            await asyncio.shield(prev)

    @staticmethod
    def _release(mine: asyncio.Future[None]) -> None:
        if not mine.done():
            mine.set_result(None)

    @staticmethod
    def _resolved(value: T) -> asyncio.Future[T]:
        fut: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        fut.set_result(value)
        return fut

    def _spawn(self, coro: Awaitable[T]) -> asyncio.Future[T]:
        return asyncio.ensure_future(coro)

    @staticmethod
    def _current(entry: _Entry) -> _Entry:
        while entry.merged_into is not None:
            entry = entry.merged_into
        return entry

    @staticmethod
    def _join_tails(*tails: asyncio.Future[None] | None) -> asyncio.Future[Any] | None:
        pending = [t for t in tails if t is not None and not t.done()]
        if not pending:
            return None
        if len(pending) == 1:
            return pending[0]
        return asyncio.gather(*pending)

    # ---- confirmation / rollback ----

    def _confirm(self, entry: _Entry, layer: _Layer, record: Task | None) -> Task | None:
        """Fold a server confirmation into the entry. No-op for detached entries or settled layers."""
        if entry.detached or layer not in entry.layers:
            logger.debug("Ignoring confirmation for settled mutation=%s id=%s", layer.mutation_id, entry.key)
            return None

        previous_base = entry.base
        entry.layers.remove(layer)
        self._states[layer.mutation_id] = MutationState.CONFIRMED

        if layer.kind == MutationKind.DELETE:
            entry.base = None
            self._publish(entry)
            logger.info("Confirmed delete id=%s", entry.key)
            if entry.announced and previous_base is not None:
                entry.announced = False
                self._events.emit(TaskEvent(kind=EventKind.DELETED, task=_copy(previous_base)))
            return None

        assert record is not None
        confirmed = _copy(record)
        confirmed.optimistic = False

        if layer.kind == MutationKind.CREATE:
            holder = self._index.get(confirmed.id)
            if holder is not None and holder is not entry and not holder.detached:
                return self._fold_into(holder, entry, confirmed)
            old_key = entry.key
            entry.key = confirmed.id
            entry.aliases.add(confirmed.id)
            self._index[confirmed.id] = entry
            logger.info("Confirmed create %s -> %s", old_key, confirmed.id)
        else:
            logger.info("Confirmed update id=%s revision=%s", confirmed.id, confirmed.revision)

        entry.base = confirmed
        self._publish(entry)

        if entry.visible is None:
            # Deleted locally while the confirmation was in flight.
            return None

        if layer.kind == MutationKind.CREATE:
            entry.announced = True
            self._events.emit(TaskEvent(kind=EventKind.CREATED, task=_copy(confirmed)))
        elif entry.announced:
            self._events.emit(TaskEvent(kind=EventKind.UPDATED, task=_copy(confirmed)))
        return _copy(entry.visible)

    def _fold_into(self, holder: _Entry, dup: _Entry, confirmed: Task) -> Task | None:
        """
        The remote already had this create (deduplicated by client_ref) and the
        record is cached under its real id. Move the duplicate's pending layers
        and aliases onto that entry and drop the duplicate.
        """
        holder.layers[:0] = dup.layers
        dup.layers = []
        for alias in dup.aliases:
            self._index[alias] = holder
        holder.aliases |= dup.aliases
        holder.tail = self._join_tails(holder.tail, dup.tail)
        dup.merged_into = holder
        self._detach(dup)

        holder.base = confirmed
        self._publish(holder)
        logger.info("Confirmed create %s -> %s (already cached)", dup.key, confirmed.id)

        if holder.visible is None:
            return None
        if not holder.announced:
            holder.announced = True
            self._events.emit(TaskEvent(kind=EventKind.CREATED, task=_copy(confirmed)))
        return _copy(holder.visible)

    def _rollback(self, entry: _Entry, layer: _Layer, error: BaseException, *, state: MutationState) -> None:
        if layer not in entry.layers:
            return
        entry.layers.remove(layer)
        self._states[layer.mutation_id] = state

        if layer.kind == MutationKind.CREATE:
            # Later layers describe an entity that will never exist.
            for dependent in entry.layers:
                dependent.cancelled = True
                self._states[dependent.mutation_id] = state
            entry.layers.clear()

        self._publish(entry)
        logger.warning(
            "Rolled back %s id=%s mutation=%s: %s",
            layer.kind.value,
            entry.key,
            layer.mutation_id,
            error,
        )

    # ---- offline path ----

    def _queue_payload(self, entry: _Entry, layer: _Layer) -> dict[str, Any]:
        if layer.kind == MutationKind.CREATE:
            return {**Task.from_dict(layer.updates).payload(), "client_ref": entry.key}
        if layer.kind == MutationKind.UPDATE:
            return dict(layer.updates)
        return {}

    def _enqueue(self, entry: _Entry, layer: _Layer) -> None:
        mutation = QueuedMutation(
            mutation_id=layer.mutation_id,
            kind=layer.kind,
            entity_ref=entry.key,
            payload=self._queue_payload(entry, layer),
            enqueued_at=self._clock(),
        )
        try:
            self._queue.enqueue(mutation)
        except Exception as e:
            self._rollback(entry, layer, e, state=MutationState.ROLLED_BACK)
            raise
        layer.queued = True
        self._states[layer.mutation_id] = MutationState.QUEUED

    def _should_queue(self, entry: _Entry) -> bool:
        return not self._connectivity.is_online or entry.has_queued

    # ---- public mutations ----

    def create_tasks(self, batch: Iterable[NewTaskInput | Mapping[str, Any]]) -> asyncio.Future[list[Task]]:
        """
        Add tasks to the cache immediately (temporary ids, optimistic=True), then
        create them remotely as one atomic batch.

        Raises ValidationError synchronously, before touching the cache.
        """
        remote = self._require_open()
        inputs = [NewTaskInput.coerce(item) for item in batch]
        if not inputs:
            return self._resolved([])

        now = self._clock()
        pairs: list[tuple[_Entry, _Layer]] = []
        for item in inputs:
            temp_id = new_temp_id()
            entry = self._new_entry(temp_id)
            layer = self._push_layer(entry, MutationKind.CREATE, item.to_task(temp_id, now=now).to_dict())
            pairs.append((entry, layer))

        if not self._connectivity.is_online:
            for entry, layer in pairs:
                self._enqueue(entry, layer)
            return self._resolved([_copy(e.visible) for e, _ in pairs if e.visible is not None])

        slots = [self._reserve_slot(entry) for entry, _ in pairs]
        return self._spawn(self._commit_create(remote, pairs, slots))

    async def _commit_create(
        self,
        remote: RemoteTaskStore,
        pairs: list[tuple[_Entry, _Layer]],
        slots: list[tuple[asyncio.Future[None] | None, asyncio.Future[None]]],
    ) -> list[Task]:
        try:
            payloads = [self._queue_payload(entry, layer) for entry, layer in pairs]
            try:
                records = await remote.create_many(payloads)
            except Exception as e:
                for entry, layer in pairs:
                    self._rollback(entry, layer, e, state=MutationState.ROLLED_BACK)
                raise

            out: list[Task] = []
            for (entry, layer), record in zip(pairs, records, strict=True):
                confirmed = self._confirm(entry, layer, record)
                if confirmed is not None:
                    out.append(confirmed)
            return out
        finally:
            for _, mine in slots:
                self._release(mine)

    def update_task(self, task_id: str, updates: Mapping[str, Any]) -> asyncio.Future[Task]:
        """
        Merge `updates` into the cached task immediately, then send them.

        Raises ValidationError (bad fields) or NotFoundError (not cached) synchronously.
        """
        remote = self._require_open()
        clean = validate_updates(updates)
        entry = self._lookup_visible(task_id)
        layer = self._push_layer(entry, MutationKind.UPDATE, clean)

        if self._should_queue(entry):
            self._enqueue(entry, layer)
            assert entry.visible is not None
            return self._resolved(_copy(entry.visible))

        prev, mine = self._reserve_slot(entry)
        return self._spawn(self._commit_update(remote, entry, layer, prev, mine))

    async def _commit_update(
        self,
        remote: RemoteTaskStore,
        entry: _Entry,
        layer: _Layer,
        prev: asyncio.Future[None] | None,
        mine: asyncio.Future[None],
    ) -> Task:
        try:
            await self._wait_turn(prev)
            entry = self._current(entry)
            if layer.cancelled or entry.base is None:
                raise NotFoundError(f"task {entry.key} no longer exists")

            try:
                record = await remote.update(entry.key, layer.updates, base_revision=entry.base.revision)
            except Exception as e:
                self._rollback(entry, layer, e, state=MutationState.ROLLED_BACK)
                raise

            confirmed = self._confirm(entry, layer, record)
            return confirmed if confirmed is not None else _copy(record)
        finally:
            self._release(mine)

    def complete_task(self, task_id: str) -> asyncio.Future[Task]:
        return self.update_task(task_id, {"completed": True, "completed_at": self._clock()})

    def delete_task(self, task_id: str) -> asyncio.Future[None]:
        """Remove the task from the cache immediately, then delete it remotely."""
        remote = self._require_open()
        entry = self._lookup_visible(task_id)
        layer = self._push_layer(entry, MutationKind.DELETE, {})

        if self._should_queue(entry):
            self._enqueue(entry, layer)
            return self._resolved(None)

        prev, mine = self._reserve_slot(entry)
        return self._spawn(self._commit_delete(remote, entry, layer, prev, mine))

    async def _commit_delete(
        self,
        remote: RemoteTaskStore,
        entry: _Entry,
        layer: _Layer,
        prev: asyncio.Future[None] | None,
        mine: asyncio.Future[None],
    ) -> None:
        try:
            await self._wait_turn(prev)
            entry = self._current(entry)
            if layer.cancelled:
                raise NotFoundError(f"task {entry.key} no longer exists")
            if entry.base is not None:
                try:
                    await remote.delete(entry.key)
                except NotFoundError:
                    logger.info("Delete of %s: already gone remotely", entry.key)
                except Exception as e:
                    self._rollback(entry, layer, e, state=MutationState.ROLLED_BACK)
                    raise
            self._confirm(entry, layer, None)
        finally:
            self._release(mine)

    # ---- offline queue replay (MutationReplayer) ----

    async def replay(self, mutation: QueuedMutation) -> None:
        """Send one queued mutation and fold the result into the cache."""
        remote = self._require_open()
        entry = self._index.get(mutation.entity_ref)
        layer = entry.find(mutation.mutation_id) if entry is not None else None

        if entry is None or layer is None:
            state = self._states.get(mutation.mutation_id)
            if state == MutationState.CONFIRMED:
                logger.debug("Skipping already confirmed mutation=%s", mutation.mutation_id)
                return
            if state is not None and state.is_terminal:
                raise NotFoundError(f"task {mutation.entity_ref} no longer exists")
            await self._send_unlayered(remote, mutation)
            return

        prev, mine = self._reserve_slot(entry)
        try:
            await self._wait_turn(prev)
            entry = self._current(entry)
            if layer.cancelled:
                raise NotFoundError(f"task {mutation.entity_ref} no longer exists")

            if mutation.kind == MutationKind.CREATE:
                record = await remote.create(mutation.payload)
                self._confirm(entry, layer, record)
            elif mutation.kind == MutationKind.UPDATE:
                if entry.base is None:
                    raise NotFoundError(f"task {mutation.entity_ref} was never created remotely")
                record = await remote.update(entry.key, mutation.payload)
                self._confirm(entry, layer, record)
            else:
                if entry.base is not None:
                    with contextlib.suppress(NotFoundError):
                        await remote.delete(entry.key)
                self._confirm(entry, layer, None)
        finally:
            self._release(mine)

    async def _send_unlayered(self, remote: RemoteTaskStore, mutation: QueuedMutation) -> None:
        """Queued mutation with no cache layer (e.g. recorded by an earlier session): send as recorded."""
        target = self.resolve_id(mutation.entity_ref)
        logger.info("Replaying %s for %s without a cached layer", mutation.kind.value, target)
        if mutation.kind == MutationKind.CREATE:
            await remote.create(mutation.payload)
        elif mutation.kind == MutationKind.UPDATE:
            await remote.update(target, mutation.payload)
        else:
            await remote.delete(target)
        self._states[mutation.mutation_id] = MutationState.CONFIRMED

    def discard(self, mutation: QueuedMutation, error: BaseException) -> None:
        """Terminal replay failure: drop the optimistic layer the mutation left behind."""
        self._states[mutation.mutation_id] = MutationState.DROPPED_WITH_ERROR
        entry = self._index.get(mutation.entity_ref)
        layer = entry.find(mutation.mutation_id) if entry is not None else None
        if entry is not None and layer is not None:
            self._rollback(entry, layer, error, state=MutationState.DROPPED_WITH_ERROR)

    # ---- sync ----

    def _on_connectivity(self, online: bool) -> None:
        came_back = online and not self._was_online
        self._was_online = online
        if came_back and self.is_open:
            self._schedule_drain()

    def _schedule_drain(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; queue drain deferred to flush()")
            return
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = loop.create_task(self._queue.drain())

    async def flush(self) -> int:
        """Wait for the drain in progress, or start one when online. Returns mutations replayed."""
        if self._drain_task is not None:
            task, self._drain_task = self._drain_task, None
            with contextlib.suppress(asyncio.CancelledError):
                return await task
            return 0
        if self.is_open and self._connectivity.is_online:
            return await self._queue.drain()
        return 0

    async def refresh(self) -> list[Task]:
        """
        Reload confirmed records from the remote store.

        Pending layers are kept on top of the fresh records; queued mutations
        persisted by an earlier session are re-applied as optimistic layers.
        Online, the queue is drained afterwards.
        """
        remote = self._require_open()
        records = await remote.list_tasks()
        fresh = {r.id: r for r in records}

        for entry in list(self._entries.values()):
            if entry.base is not None and entry.key not in fresh:
                entry.base = None
                entry.announced = False
                self._publish(entry)

        for record in records:
            entry = self._index.get(record.id) or self._new_entry(record.id)
            entry.base = _copy(record)
            entry.base.optimistic = False
            entry.announced = True
            self._publish(entry)

        self._restore_queued_layers()

        if self._connectivity.is_online and len(self._queue):
            self._schedule_drain()
        logger.info("Refreshed %d task(s) for user=%s", len(records), self._user_id)
        return self.list_tasks()

    def _restore_queued_layers(self) -> None:
        known = {layer.mutation_id for e in self._entries.values() for layer in e.layers}
        for mutation in self._queue.pending():
            if mutation.mutation_id in known:
                continue
            entry = self._index.get(mutation.entity_ref)
            if mutation.kind == MutationKind.CREATE:
                if entry is None:
                    entry = self._new_entry(mutation.entity_ref)
                updates = {k: v for k, v in mutation.payload.items() if k != "client_ref"}
                updates["id"] = mutation.entity_ref
            elif entry is None:
                continue
            else:
                updates = dict(mutation.payload)

            layer = _Layer(mutation_id=mutation.mutation_id, kind=mutation.kind, updates=updates, queued=True)
            entry.layers.append(layer)
            self._states[layer.mutation_id] = MutationState.QUEUED
            self._publish(entry)
            logger.debug("Restored queued %s for %s", mutation.kind.value, mutation.entity_ref)
