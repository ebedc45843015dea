# src/malunita/tasks/task_models.py

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, fields
from enum import StrEnum
from typing import Any

from ..core.errors import ValidationError
from ..pipeline.models import Agenda, Priority, TaskType

TEMP_ID_PREFIX = "temp-"


class EventKind(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class MutationKind(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class MutationState(StrEnum):
    """
    Lifecycle of a single mutation.

    PENDING_OPTIMISTIC -> CONFIRMED | ROLLED_BACK | QUEUED
    QUEUED             -> CONFIRMED | DROPPED_WITH_ERROR
    """

    PENDING_OPTIMISTIC = "pending_optimistic"
    QUEUED = "queued"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    DROPPED_WITH_ERROR = "dropped_with_error"

    @property
    def is_terminal(self) -> bool:
        return self in (MutationState.CONFIRMED, MutationState.ROLLED_BACK, MutationState.DROPPED_WITH_ERROR)


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_temp_id(task_id: str) -> bool:
    return str(task_id).startswith(TEMP_ID_PREFIX)


def _enum_or_none(enum_cls: type[StrEnum], raw: Any) -> Any:
    if raw is None or raw == "":
        return None
    try:
        return enum_cls(raw)
    except ValueError:
        return None


@dataclass(slots=True)
class Task:
    """
    Canonical task record.

    `revision` is owned by the remote store. `optimistic` is a client-only
    marker: True while at least one local mutation on this task is unconfirmed.
    """

    id: str
    title: str
    category: str | None = None
    priority: Priority | None = None
    effort: TaskType | None = None
    scheduled_bucket: Agenda | None = None
    is_focus: bool = False
    focus_date: str | None = None
    completed: bool = False
    completed_at: float | None = None
    reminder_time: str | None = None
    keywords: list[str] = field(default_factory=list)
    parent_task_id: str | None = None
    plan_id: str | None = None
    project_id: str | None = None
    created_at: float = 0.0
    updated_at: float = 0.0
    revision: int = 0
    optimistic: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def payload(self) -> dict[str, Any]:
        """Remote-facing fields (no id, no client-only markers)."""
        data = self.to_dict()
        for k in ("id", "revision", "optimistic"):
            data.pop(k, None)
        return data

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Task:
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in raw.items() if k in known}
        data["priority"] = _enum_or_none(Priority, data.get("priority"))
        data["effort"] = _enum_or_none(TaskType, data.get("effort"))
        data["scheduled_bucket"] = _enum_or_none(Agenda, data.get("scheduled_bucket"))
        data["keywords"] = [str(k) for k in (data.get("keywords") or [])]
        data["is_focus"] = bool(data.get("is_focus", False))
        data["completed"] = bool(data.get("completed", False))
        data["revision"] = int(data.get("revision") or 0)
        data["optimistic"] = bool(data.get("optimistic", False))
        return cls(**data)

    def merged(self, updates: Mapping[str, Any]) -> Task:
        data = self.to_dict()
        data.update(updates)
        return Task.from_dict(data)


# Fields a caller may change through update_task.
UPDATABLE_FIELDS = frozenset(
    {
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
    }
)


def validate_updates(updates: Mapping[str, Any]) -> dict[str, Any]:
    if not isinstance(updates, Mapping):
        raise ValidationError("updates must be a mapping")
    unknown = set(updates) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"unknown or read-only task fields: {sorted(unknown)}")
    if "title" in updates and not str(updates["title"] or "").strip():
        raise ValidationError("title must not be empty")
    clean = dict(updates)
    if "title" in clean:
        clean["title"] = str(clean["title"]).strip()
    return clean


@dataclass(slots=True)
class NewTaskInput:
    """Input for create_tasks. Only `title` is required."""

    title: str
    category: str | None = None
    priority: Priority | None = None
    effort: TaskType | None = None
    scheduled_bucket: Agenda | None = None
    is_focus: bool = False
    focus_date: str | None = None
    reminder_time: str | None = None
    keywords: list[str] = field(default_factory=list)
    parent_task_id: str | None = None
    plan_id: str | None = None
    project_id: str | None = None

    def validate(self) -> NewTaskInput:
        if not isinstance(self.title, str) or not self.title.strip():
            raise ValidationError("task title must not be empty")
        self.title = self.title.strip()
        return self

    @classmethod
    def coerce(cls, raw: NewTaskInput | Mapping[str, Any]) -> NewTaskInput:
        if isinstance(raw, NewTaskInput):
            return raw.validate()
        if not isinstance(raw, Mapping):
            raise ValidationError(f"unsupported task input: {type(raw).__name__}")
        known = {f.name for f in fields(cls)}
        unknown = set(raw) - known
        if unknown:
            raise ValidationError(f"unknown task fields: {sorted(unknown)}")
        return cls(**dict(raw)).validate()

    def to_task(self, task_id: str, *, now: float) -> Task:
        return Task.from_dict(
            {
                **asdict(self),
                "id": task_id,
                "created_at": now,
                "updated_at": now,
                "optimistic": True,
            }
        )


@dataclass(frozen=True, slots=True)
class TaskEvent:
    """Emitted to subscribers only for confirmed (non-optimistic) transitions."""

    kind: EventKind
    task: Task


@dataclass(slots=True)
class QueuedMutation:
    """
    A mutation waiting for connectivity.

    entity_ref is the id known at enqueue time (temp or real); the store
    remaps it on replay.
    """

    mutation_id: str
    kind: MutationKind
    entity_ref: str
    payload: dict[str, Any]
    enqueued_at: float
    attempts: int = 0
    seq: int | None = None
