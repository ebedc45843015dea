# src/malunita/tasks/remote_store.py

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sqlite3
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any

from ..core.errors import ConflictError, NetworkError, NotFoundError, ValidationError
from .task_models import UPDATABLE_FIELDS, Task

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id",
    "user_id",
    "client_ref",
    "title",
    "category",
    "priority",
    "effort",
    "scheduled_bucket",
    "is_focus",
    "focus_date",
    "completed",
    "completed_at",
    "reminder_time",
    "keywords",
    "parent_task_id",
    "plan_id",
    "project_id",
    "created_at",
    "updated_at",
    "revision",
)


@contextlib.contextmanager
def _remote_errors() -> Iterator[None]:
    """A locked or unreachable database is the local stand-in for a network failure."""
    try:
        yield
    except sqlite3.OperationalError as e:
        raise NetworkError(f"remote store unavailable: {e}") from e


class SQLiteRemoteTaskStore:
    """
    SQLite-backed reference implementation of the remote task store.

    Scoped to one user: every query filters on user_id.
    Create is idempotent per client_ref (the client's temporary id), so a
    replayed create returns the record made the first time.

    Thread-safety:
    - each call opens its own SQLite connection (calls run in a worker thread)
    """

    def __init__(self, db_path: str | Path, user_id: str) -> None:
        if not user_id or not str(user_id).strip():
            raise ValueError("user_id is required")
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._user_id = str(user_id).strip()
        self._ensure_schema()
        logger.info("Remote task store ready db=%s user=%s", self._db_path, self._user_id)

    @property
    def user_id(self) -> str:
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
                CREATE TABLE IF NOT EXISTS remote_tasks (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    client_ref TEXT,
                    title TEXT NOT NULL,
                    category TEXT,
                    priority TEXT,
                    effort TEXT,
                    scheduled_bucket TEXT,
                    is_focus INTEGER NOT NULL DEFAULT 0,
                    focus_date TEXT,
                    completed INTEGER NOT NULL DEFAULT 0,
                    completed_at REAL,
                    reminder_time TEXT,
                    keywords TEXT NOT NULL DEFAULT '[]',
                    parent_task_id TEXT,
                    plan_id TEXT,
                    project_id TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    revision INTEGER NOT NULL DEFAULT 1
                )
                """
            )

            cur.execute("PRAGMA table_info(remote_tasks)")
            cols = {row["name"] for row in cur.fetchall()}

            def add_col(name: str, decl: str) -> None:
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE remote_tasks ADD COLUMN {name} {decl}")
                logger.info("Remote store migration: added column %s", name)

            add_col("client_ref", "TEXT")
            add_col("reminder_time", "TEXT")
            add_col("revision", "INTEGER NOT NULL DEFAULT 1")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_remote_tasks_user ON remote_tasks(user_id, created_at)")
            cur.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_remote_tasks_client_ref "
                "ON remote_tasks(user_id, client_ref) WHERE client_ref IS NOT NULL"
            )
            conn.commit()
        finally:
            conn.close()

    @staticmethod
    def _encode(field_name: str, value: Any) -> Any:
        if field_name == "keywords":
            return json.dumps(list(value or []), ensure_ascii=False)
        if field_name in ("is_focus", "completed"):
            return 1 if value else 0
        if hasattr(value, "value"):
            return value.value
        return value

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        data = {k: row[k] for k in row.keys() if k not in ("user_id", "client_ref")}
        try:
            kw = json.loads(data.get("keywords") or "[]")
        except json.JSONDecodeError:
            kw = []
        data["keywords"] = kw if isinstance(kw, list) else []
        return Task.from_dict(data)

    def _select(self, conn: sqlite3.Connection, task_id: str) -> sqlite3.Row | None:
        cur = conn.execute(
            "SELECT * FROM remote_tasks WHERE id = ? AND user_id = ?",
            (str(task_id), self._user_id),
        )
        return cur.fetchone()

    def _insert(self, conn: sqlite3.Connection, payload: Mapping[str, Any], now: float) -> Task:
        title = str(payload.get("title") or "").strip()
        if not title:
            raise ValidationError("title is required")

        client_ref = payload.get("client_ref")
        if client_ref:
            cur = conn.execute(
                "SELECT * FROM remote_tasks WHERE user_id = ? AND client_ref = ?",
                (self._user_id, str(client_ref)),
            )
            existing = cur.fetchone()
            if existing is not None:
                logger.debug("Remote create deduplicated client_ref=%s", client_ref)
                return self._row_to_task(existing)

        values: dict[str, Any] = {k: self._encode(k, payload.get(k)) for k in UPDATABLE_FIELDS}
        values["title"] = title
        values.update(
            id=uuid.uuid4().hex,
            user_id=self._user_id,
            client_ref=str(client_ref) if client_ref else None,
            created_at=now,
            updated_at=now,
            revision=1,
        )
        cols = [c for c in _COLUMNS if c in values]
        conn.execute(
            f"INSERT INTO remote_tasks({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)})",
            [values[c] for c in cols],
        )
        row = self._select(conn, values["id"])
        if row is None:
            raise RuntimeError("SQLite did not return the inserted task")
        return self._row_to_task(row)

    # ---- sync operations (run in a worker thread) ----

    def _create_many_sync(self, payloads: Sequence[Mapping[str, Any]]) -> list[Task]:
        now = time.time()
        with _remote_errors():
            conn = self._get_conn()
            try:
                out = [self._insert(conn, p, now) for p in payloads]
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()
        logger.debug("Remote created %d task(s)", len(out))
        return out

    def _update_sync(self, task_id: str, payload: Mapping[str, Any], base_revision: int | None) -> Task:
        fields_: list[str] = []
        params: list[Any] = []
        for k, v in payload.items():
            if k not in UPDATABLE_FIELDS:
                continue
            fields_.append(f"{k} = ?")
            params.append(self._encode(k, v))

        with _remote_errors():
            conn = self._get_conn()
            try:
                row = self._select(conn, task_id)
                if row is None:
                    raise NotFoundError(f"task {task_id} not found")
                current = int(row["revision"])
                if base_revision is not None and int(base_revision) != current:
                    raise ConflictError(
                        f"task {task_id} revision is {current}, update was based on {base_revision}",
                        expected=int(base_revision),
                        actual=current,
                    )

                fields_.extend(["updated_at = ?", "revision = revision + 1"])
                params.extend([time.time(), str(task_id), self._user_id])
                conn.execute(
                    f"UPDATE remote_tasks SET {', '.join(fields_)} WHERE id = ? AND user_id = ?",
                    params,
                )
                conn.commit()
                row = self._select(conn, task_id)
            finally:
                conn.close()
        if row is None:
            raise NotFoundError(f"task {task_id} not found")
        return self._row_to_task(row)

    def _delete_sync(self, task_id: str) -> None:
        with _remote_errors():
            conn = self._get_conn()
            try:
                cur = conn.execute(
                    "DELETE FROM remote_tasks WHERE id = ? AND user_id = ?",
                    (str(task_id), self._user_id),
                )
                conn.commit()
                deleted = cur.rowcount
            finally:
                conn.close()
        if deleted != 1:
            raise NotFoundError(f"task {task_id} not found")

    def _list_sync(self) -> list[Task]:
        with _remote_errors():
            conn = self._get_conn()
            try:
                cur = conn.execute(
                    "SELECT * FROM remote_tasks WHERE user_id = ? ORDER BY created_at ASC, rowid ASC",
                    (self._user_id,),
                )
                return [self._row_to_task(r) for r in cur.fetchall()]
            finally:
                conn.close()

    # ---- public API (RemoteTaskStore port) ----

    async def create(self, payload: Mapping[str, Any]) -> Task:
        (task,) = await asyncio.to_thread(self._create_many_sync, [payload])
        return task

    async def create_many(self, payloads: Sequence[Mapping[str, Any]]) -> list[Task]:
        if not payloads:
            return []
        return await asyncio.to_thread(self._create_many_sync, list(payloads))

    async def update(
        self,
        task_id: str,
        payload: Mapping[str, Any],
        *,
        base_revision: int | None = None,
    ) -> Task:
        return await asyncio.to_thread(self._update_sync, task_id, dict(payload), base_revision)

    async def delete(self, task_id: str) -> None:
        await asyncio.to_thread(self._delete_sync, task_id)

    async def list_tasks(self) -> list[Task]:
        return await asyncio.to_thread(self._list_sync)
