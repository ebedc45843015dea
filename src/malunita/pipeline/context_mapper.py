# src/malunita/pipeline/context_mapper.py

"""
Context mapper: infer projects, categories, people, deadlines and time
sensitivity from a batch of candidates plus the idea analysis.

Pure and deterministic. Missing fields are treated as empty; never raises.
"""

from __future__ import annotations

import re
import string
from collections.abc import Iterable
from datetime import datetime

from .models import ContextMap, Deadline, IdeaAnalysis, TaskCandidate, TimeSensitivity

BASELINE_TOPICS = frozenset({"Work", "Personal", "Health"})

HIGH_SENSITIVITY_TONES = frozenset({"stressed", "overwhelmed", "urgent"})
LOW_SENSITIVITY_TONES = frozenset({"calm", "thoughtful"})

_CAPITALIZED = re.compile(r"^[A-Z]")


def format_reminder_time(value: datetime | str | None) -> str:
    """ISO-8601 / datetime -> 'YYYY-MM-DD HH:MM'; anything else is returned as-is."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    raw = str(value).strip()
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return raw
    return parsed.strftime("%Y-%m-%d %H:%M")


def extract_capitalized_tokens(title: str) -> list[str]:
    out: list[str] = []
    for token in (title or "").split():
        token = token.strip(string.punctuation)
        if token and _CAPITALIZED.match(token):
            out.append(token)
    return out


def classify_time_sensitivity(analysis: IdeaAnalysis | None) -> TimeSensitivity:
    tone = analysis.tone if analysis is not None else ""
    if tone in HIGH_SENSITIVITY_TONES:
        return TimeSensitivity.HIGH
    if tone in LOW_SENSITIVITY_TONES:
        return TimeSensitivity.LOW
    return TimeSensitivity.NORMAL


def map_context(
    candidates: Iterable[TaskCandidate] | None,
    analysis: IdeaAnalysis | None,
) -> ContextMap:
    """
    Rules, in order (each one only adds to the map):
    1. projects = analysis topics minus the baseline set
    2. categories from suggested_category, plus "custom" for custom categories
    3. deadlines from reminder_time
    4. people = capitalized title tokens of candidates flagged has_person_name
    5. a single top-level time sensitivity from the emotional tone
    """
    cands = list(candidates or [])
    ctx = ContextMap()

    topics = analysis.topics if analysis is not None else ()
    ctx.inferred_projects = [t for t in topics if t not in BASELINE_TOPICS]

    for c in cands:
        if c.suggested_category:
            ctx.categories.add(c.suggested_category)
        if c.custom_category_id:
            ctx.categories.add("custom")

    for c in cands:
        if c.reminder_time:
            ctx.deadlines.append(Deadline(task=c.title or "", when=format_reminder_time(c.reminder_time)))

    for c in cands:
        if c.has_person_name:
            ctx.related_people.extend(extract_capitalized_tokens(c.title))

    ctx.time_sensitivity = classify_time_sensitivity(analysis)
    return ctx
