# src/malunita/pipeline/priority_scorer.py

"""
Priority scorer.

Per candidate, rules run in a fixed sequence and each may overwrite the
previous assignment:

1. priority=SHOULD, task_type=NORMAL
2. word count of the title
3. short + no reminder + due today -> TINY_TASK;
   else long, or mentions "project"/"plan" -> BIG_TASK
4. today or reminder -> MUST; "this week" -> SHOULD; "someday" -> COULD
5. stressed/overwhelmed tone lifts SHOULD to MUST (MUST and COULD untouched)

There is no demotion under a calm tone.
"""

from __future__ import annotations

from collections.abc import Iterable

from .models import ContextMap, IdeaAnalysis, Priority, ScoredTask, TaskCandidate, TaskType

TINY_MAX_WORDS = 5
BIG_MIN_WORDS = 11
BIG_TASK_MARKERS = ("project", "plan")
ESCALATION_TONES = frozenset({"stressed", "overwhelmed"})


def classify_task_type(candidate: TaskCandidate) -> TaskType:
    title = candidate.title or ""
    word_count = len(title.split())

    if (
        word_count <= TINY_MAX_WORDS
        and not candidate.has_reminder
        and candidate.suggested_timeframe == "today"
    ):
        return TaskType.TINY_TASK

    lowered = title.lower()
    if word_count >= BIG_MIN_WORDS or any(m in lowered for m in BIG_TASK_MARKERS):
        return TaskType.BIG_TASK

    return TaskType.NORMAL


def score_candidate(candidate: TaskCandidate, analysis: IdeaAnalysis | None = None) -> ScoredTask:
    priority = Priority.SHOULD
    task_type = classify_task_type(candidate)

    timeframe = candidate.suggested_timeframe
    if timeframe == "today" or candidate.has_reminder:
        priority = Priority.MUST
    elif timeframe == "this week":
        priority = Priority.SHOULD
    elif timeframe == "someday":
        priority = Priority.COULD

    tone = analysis.tone if analysis is not None else ""
    if tone in ESCALATION_TONES and priority == Priority.SHOULD:
        priority = Priority.MUST

    return ScoredTask(candidate=candidate, priority=priority, task_type=task_type)


def score_priorities(
    candidates: Iterable[TaskCandidate] | None,
    analysis: IdeaAnalysis | None,
    context: ContextMap | None = None,
) -> list[ScoredTask]:
    # context is accepted for call-site symmetry; scoring is per-candidate.
    return [score_candidate(c, analysis) for c in (candidates or [])]
