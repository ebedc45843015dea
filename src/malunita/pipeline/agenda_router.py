# src/malunita/pipeline/agenda_router.py

"""
Agenda router: put each scored task into a time bucket.

Order matters and is part of the contract:
1. default Upcoming
2. suggested timeframe mapping
3. title keyword override (may undo step 2)
4. MUST tasks still sitting on the Upcoming default are promoted to Today
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .models import Agenda, ContextMap, IdeaAnalysis, Priority, RoutedTask, ScoredTask

if TYPE_CHECKING:
    from ..tasks.task_models import Task

TIMEFRAME_AGENDA: dict[str, Agenda] = {
    "today": Agenda.TODAY,
    "tomorrow": Agenda.TOMORROW,
    "this week": Agenda.THIS_WEEK,
    "someday": Agenda.SOMEDAY,
}

# Checked in this order; the first matching group wins.
KEYWORD_OVERRIDES: tuple[tuple[tuple[str, ...], Agenda], ...] = (
    (("tonight", "this evening"), Agenda.TODAY),
    (("tomorrow", "next day"), Agenda.TOMORROW),
    (("next week", "this week"), Agenda.THIS_WEEK),
)

MAX_RELATED_SUGGESTIONS = 2


def route_task(task: ScoredTask) -> RoutedTask:
    agenda = Agenda.UPCOMING

    agenda = TIMEFRAME_AGENDA.get(task.candidate.suggested_timeframe, agenda)

    lowered = (task.title or "").lower()
    for needles, bucket in KEYWORD_OVERRIDES:
        if any(n in lowered for n in needles):
            agenda = bucket
            break

    if task.priority == Priority.MUST and agenda == Agenda.UPCOMING:
        agenda = Agenda.TODAY

    return RoutedTask(scored=task, agenda=agenda)


def route_agenda(
    scored: Iterable[ScoredTask] | None,
    context: ContextMap | None = None,
    analysis: IdeaAnalysis | None = None,
) -> list[RoutedTask]:
    return [route_task(t) for t in (scored or [])]


def group_by_agenda(routed: Iterable[RoutedTask]) -> dict[Agenda, list[RoutedTask]]:
    """All buckets present (Today first), each keeping input order."""
    groups: dict[Agenda, list[RoutedTask]] = {a: [] for a in Agenda}
    for r in routed:
        groups[r.agenda].append(r)
    return groups


@dataclass(frozen=True, slots=True)
class RelatedTaskSuggestion:
    task_id: str
    task_title: str
    shared_keywords: tuple[str, ...]
    suggested_agenda: Agenda


def suggest_related_tasks(
    focus: Task,
    tasks: Sequence[Task],
    *,
    limit: int = MAX_RELATED_SUGGESTIONS,
) -> list[RelatedTaskSuggestion]:
    """
    Tasks sharing keywords with the focus task, most overlap first.

    The first suggestion goes to Today, the rest to ThisWeek.
    """
    focus_keywords = {k.lower() for k in (focus.keywords or []) if k}
    if not focus_keywords or limit <= 0:
        return []

    scored: list[tuple[int, int, Task, tuple[str, ...]]] = []
    for idx, t in enumerate(tasks):
        if t.id == focus.id or t.completed:
            continue
        shared = tuple(k for k in (t.keywords or []) if k and k.lower() in focus_keywords)
        if shared:
            scored.append((len(shared), idx, t, shared))

    scored.sort(key=lambda x: (-x[0], x[1]))

    out: list[RelatedTaskSuggestion] = []
    for i, (_, _, t, shared) in enumerate(scored[:limit]):
        out.append(
            RelatedTaskSuggestion(
                task_id=t.id,
                task_title=t.title,
                shared_keywords=shared,
                suggested_agenda=Agenda.TODAY if i == 0 else Agenda.THIS_WEEK,
            )
        )
    return out
