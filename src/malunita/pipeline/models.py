# src/malunita/pipeline/models.py

"""
Data structures flowing through the task intelligence pipeline.

TaskCandidate -> (context mapper) ContextMap
TaskCandidate -> (priority scorer) ScoredTask -> (agenda router) RoutedTask

All of these are derived, never persisted. Parsing from loosely-typed dicts
(`from_dict`) is tolerant: missing or malformed fields become empty values.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class Priority(StrEnum):
    MUST = "MUST"
    SHOULD = "SHOULD"
    COULD = "COULD"


class TaskType(StrEnum):
    TINY_TASK = "TINY_TASK"
    NORMAL = "NORMAL"
    BIG_TASK = "BIG_TASK"


class Agenda(StrEnum):
    TODAY = "Today"
    TOMORROW = "Tomorrow"
    THIS_WEEK = "ThisWeek"
    UPCOMING = "Upcoming"
    SOMEDAY = "Someday"


class TimeSensitivity(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


def normalize_timeframe(raw: Any) -> str:
    """'This_Week ' -> 'this week'. Non-strings become ''."""
    if not isinstance(raw, str):
        return ""
    return " ".join(raw.replace("_", " ").strip().lower().split())


def _str_or_none(v: Any) -> str | None:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _str_tuple(v: Any) -> tuple[str, ...]:
    if isinstance(v, str) or not isinstance(v, Iterable):
        return ()
    return tuple(str(x).strip() for x in v if x is not None and str(x).strip())


@dataclass(frozen=True, slots=True)
class TaskCandidate:
    """Unstructured task proposal produced by the extraction collaborator."""

    title: str
    suggested_timeframe: str = ""
    has_reminder: bool = False
    has_person_name: bool = False
    suggested_category: str | None = None
    custom_category_id: str | None = None
    reminder_time: datetime | str | None = None
    keywords: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> TaskCandidate:
        reminder = raw.get("reminder_time")
        if not isinstance(reminder, datetime):
            reminder = _str_or_none(reminder)
        return cls(
            title=str(raw.get("title") or "").strip(),
            suggested_timeframe=normalize_timeframe(raw.get("suggested_timeframe")),
            has_reminder=bool(raw.get("has_reminder", False)),
            has_person_name=bool(raw.get("has_person_name", False)),
            suggested_category=_str_or_none(raw.get("suggested_category")),
            custom_category_id=_str_or_none(raw.get("custom_category_id")),
            reminder_time=reminder,
            keywords=_str_tuple(raw.get("keywords")),
        )


@dataclass(frozen=True, slots=True)
class IdeaAnalysis:
    """Output of the idea analysis collaborator. Only topics and tone drive the rules."""

    topics: tuple[str, ...] = ()
    emotional_tone: str | None = None
    decisions: tuple[str, ...] = ()
    questions: tuple[str, ...] = ()
    summary: str = ""

    @property
    def tone(self) -> str:
        """Lowercased, trimmed emotional tone ('' when absent)."""
        if not isinstance(self.emotional_tone, str):
            return ""
        return self.emotional_tone.strip().lower()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> IdeaAnalysis:
        if not raw:
            return cls()
        tone = raw.get("emotional_tone")
        return cls(
            topics=_str_tuple(raw.get("topics")),
            emotional_tone=tone if isinstance(tone, str) else None,
            decisions=_str_tuple(raw.get("decisions")),
            questions=_str_tuple(raw.get("questions")),
            summary=str(raw.get("summary") or ""),
        )


NEUTRAL_ANALYSIS = IdeaAnalysis(emotional_tone="neutral")


@dataclass(frozen=True, slots=True)
class Deadline:
    task: str
    when: str


@dataclass(slots=True)
class ContextMap:
    inferred_projects: list[str] = field(default_factory=list)
    categories: set[str] = field(default_factory=set)
    related_people: list[str] = field(default_factory=list)
    deadlines: list[Deadline] = field(default_factory=list)
    time_sensitivity: TimeSensitivity = TimeSensitivity.NORMAL


@dataclass(frozen=True, slots=True)
class ScoredTask:
    candidate: TaskCandidate
    priority: Priority
    task_type: TaskType

    @property
    def title(self) -> str:
        return self.candidate.title


@dataclass(frozen=True, slots=True)
class RoutedTask:
    scored: ScoredTask
    agenda: Agenda

    @property
    def candidate(self) -> TaskCandidate:
        return self.scored.candidate

    @property
    def title(self) -> str:
        return self.scored.candidate.title

    @property
    def priority(self) -> Priority:
        return self.scored.priority

    @property
    def task_type(self) -> TaskType:
        return self.scored.task_type
