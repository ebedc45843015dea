# src/malunita/tasks/offline_queue.py

from __future__ import annotations

"""
Offline mutation queue.

A durable FIFO log (SQLite) of mutations recorded while the remote store is
unreachable. drain() replays them strictly one at a time, in enqueue order,
across all entities:

- success   -> row removed, next mutation
- terminal  -> row removed, error logged, replayer told to discard, next mutation
- transient -> row stays at the head (attempts + 1), drain pauses until the next
               reconnect; after max_attempts the failure is treated as terminal
"""

import contextlib
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any

from ..core.errors import QueueReplayError, StoreClosedError, is_terminal_replay_error
from ..core.ports import MutationReplayer
from .task_models import MutationKind, QueuedMutation

logger = logging.getLogger(__name__)


class OfflineQueue:
    """
    SQLite-backed queue, scoped to the user it is bound to.

    Thread-safety:
    - each method opens its own SQLite connection
    """

    def __init__(self, db_path: str | Path = "offline_queue.sqlite3", *, max_attempts: int = 5) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._max_attempts = max(1, int(max_attempts))
        self._user_id: str | None = None
        self._replayer: MutationReplayer | None = None
        self._draining = False
        self._ensure_schema()
        logger.info("OfflineQueue ready db=%s max_attempts=%s", self._db_path, self._max_attempts)

    # ---- binding ----

    def bind(self, user_id: str, replayer: MutationReplayer) -> None:
        self._user_id = str(user_id)
        self._replayer = replayer
        logger.debug("OfflineQueue bound user=%s pending=%s", self._user_id, len(self))

    def unbind(self) -> None:
        self._user_id = None
        self._replayer = None

    @property
    def is_draining(self) -> bool:
        return self._draining

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def _require_user(self) -> str:
        if self._user_id is None:
            raise StoreClosedError("offline queue is not bound to a user")
        return self._user_id

    # ---- low-level helpers ----

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        with contextlib.suppress(sqlite3.DatabaseError):
            conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS queued_mutations (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    mutation_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    entity_ref TEXT NOT NULL,
                    payload TEXT NOT NULL DEFAULT '{}',
                    enqueued_at REAL NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_queued_user_seq ON queued_mutations(user_id, seq)")
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _payload_to_str(payload: dict[str, Any]) -> str:
        return json.dumps(payload or {}, ensure_ascii=False, default=str)

    @staticmethod
    def _str_to_payload(s: str | None) -> dict[str, Any]:
        if not s:
            return {}
        try:
            val = json.loads(s)
        except json.JSONDecodeError:
            logger.warning("Corrupt queued payload; replaying with {}")
            return {}
        return val if isinstance(val, dict) else {}

    def _row_to_mutation(self, row: sqlite3.Row) -> QueuedMutation:
        return QueuedMutation(
            mutation_id=str(row["mutation_id"]),
            kind=MutationKind(row["kind"]),
            entity_ref=str(row["entity_ref"]),
            payload=self._str_to_payload(row["payload"]),
            enqueued_at=float(row["enqueued_at"]),
            attempts=int(row["attempts"]),
            seq=int(row["seq"]),
        )

    # ---- public API ----

    def enqueue(self, mutation: QueuedMutation) -> QueuedMutation:
        user_id = self._require_user()
        conn = self._get_conn()
        try:
            cur = conn.execute(
                """
                INSERT INTO queued_mutations(mutation_id, user_id, kind, entity_ref, payload, enqueued_at, attempts)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    mutation.mutation_id,
                    user_id,
                    mutation.kind.value,
                    mutation.entity_ref,
                    self._payload_to_str(mutation.payload),
                    float(mutation.enqueued_at),
                    int(mutation.attempts),
                ),
            )
            conn.commit()
            if cur.lastrowid is None:
                raise RuntimeError("SQLite did not return lastrowid for queued mutation")
            mutation.seq = int(cur.lastrowid)
        finally:
            conn.close()
        logger.info(
            "Queued %s entity=%s mutation=%s (offline)",
            mutation.kind.value,
            mutation.entity_ref,
            mutation.mutation_id,
        )
        return mutation

    def pending(self) -> list[QueuedMutation]:
        if self._user_id is None:
            return []
        conn = self._get_conn()
        try:
            cur = conn.execute(
                "SELECT * FROM queued_mutations WHERE user_id = ? ORDER BY seq ASC",
                (self._user_id,),
            )
            return [self._row_to_mutation(r) for r in cur.fetchall()]
        finally:
            conn.close()

    def peek(self) -> QueuedMutation | None:
        if self._user_id is None:
            return None
        conn = self._get_conn()
        try:
            cur = conn.execute(
                "SELECT * FROM queued_mutations WHERE user_id = ? ORDER BY seq ASC LIMIT 1",
                (self._user_id,),
            )
            row = cur.fetchone()
            return self._row_to_mutation(row) if row else None
        finally:
            conn.close()

    def remove(self, seq: int) -> None:
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM queued_mutations WHERE seq = ?", (int(seq),))
            conn.commit()
        finally:
            conn.close()

    def bump_attempts(self, seq: int) -> int:
        conn = self._get_conn()
        try:
            conn.execute("UPDATE queued_mutations SET attempts = attempts + 1 WHERE seq = ?", (int(seq),))
            conn.commit()
            cur = conn.execute("SELECT attempts FROM queued_mutations WHERE seq = ?", (int(seq),))
            row = cur.fetchone()
            return int(row["attempts"]) if row else 0
        finally:
            conn.close()

    def clear(self) -> None:
        user_id = self._require_user()
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM queued_mutations WHERE user_id = ?", (user_id,))
            conn.commit()
        finally:
            conn.close()

    def __len__(self) -> int:
        if self._user_id is None:
            return 0
        conn = self._get_conn()
        try:
            cur = conn.execute("SELECT COUNT(*) FROM queued_mutations WHERE user_id = ?", (self._user_id,))
            (n,) = cur.fetchone()
            return int(n)
        finally:
            conn.close()

    # ---- drain ----

    def _drop(self, mutation: QueuedMutation, error: BaseException) -> None:
        assert mutation.seq is not None
        self.remove(mutation.seq)
        report = QueueReplayError(
            f"dropped queued {mutation.kind.value} for {mutation.entity_ref}: {error}",
            mutation=mutation,
            terminal=True,
        )
        report.__cause__ = error
        logger.error("%s", report, exc_info=error)
        if self._replayer is not None:
            try:
                self._replayer.discard(mutation, error)
            except Exception:
                logger.exception("discard failed mutation=%s", mutation.mutation_id)

    async def drain(self) -> int:
        """
        Replay queued mutations in FIFO order. Returns how many were sent successfully.

        No-op when already draining, unbound, or empty.
        """
        if self._draining or self._replayer is None:
            return 0

        self._draining = True
        sent = 0
        try:
            head = self.peek()
            if head is not None:
                logger.info("Draining offline queue (%d pending)", len(self))

            while head is not None:
                assert head.seq is not None
                try:
                    await self._replayer.replay(head)
                except Exception as e:
                    if is_terminal_replay_error(e):
                        self._drop(head, e)
                    else:
                        attempts = self.bump_attempts(head.seq)
                        if attempts >= self._max_attempts:
                            logger.warning(
                                "Queued %s for %s failed %d time(s); giving up",
                                head.kind.value,
                                head.entity_ref,
                                attempts,
                            )
                            self._drop(head, e)
                        else:
                            logger.warning(
                                "Transient replay failure for %s %s (attempt %d/%d); pausing until reconnect",
                                head.kind.value,
                                head.entity_ref,
                                attempts,
                                self._max_attempts,
                            )
                            return sent
                else:
                    self.remove(head.seq)
                    sent += 1
                    logger.debug("Replayed %s entity=%s", head.kind.value, head.entity_ref)

                head = self.peek()

            if sent:
                logger.info("Offline queue drained (%d replayed)", sent)
            return sent
        finally:
            self._draining = False
