# tests/test_context_mapper.py

from __future__ import annotations

from datetime import datetime

from malunita.pipeline.context_mapper import extract_capitalized_tokens, format_reminder_time, map_context
from malunita.pipeline.models import Deadline, IdeaAnalysis, TaskCandidate, TimeSensitivity


def test_projects_exclude_baseline_topics() -> None:
    analysis = IdeaAnalysis(topics=("Work", "Kitchen Remodel", "Health", "Thesis", "Personal"))
    ctx = map_context([], analysis)
    assert ctx.inferred_projects == ["Kitchen Remodel", "Thesis"]


def test_categories_include_custom_marker() -> None:
    cands = [
        TaskCandidate(title="a", suggested_category="work"),
        TaskCandidate(title="b", suggested_category="work", custom_category_id="cat-7"),
        TaskCandidate(title="c"),
    ]
    ctx = map_context(cands, None)
    assert ctx.categories == {"work", "custom"}


def test_deadlines_use_formatted_reminder_time() -> None:
    cands = [
        TaskCandidate(title="Dentist", reminder_time="2024-05-01T09:30:00Z"),
        TaskCandidate(title="Call", reminder_time=datetime(2024, 5, 2, 18, 5)),
        TaskCandidate(title="Later", reminder_time="next full moon"),
        TaskCandidate(title="No reminder"),
    ]
    ctx = map_context(cands, None)
    assert ctx.deadlines == [
        Deadline(task="Dentist", when="2024-05-01 09:30"),
        Deadline(task="Call", when="2024-05-02 18:05"),
        Deadline(task="Later", when="next full moon"),
    ]


def test_people_only_from_flagged_candidates() -> None:
    cands = [
        TaskCandidate(title="email Sarah and Tom, about rent", has_person_name=True),
        TaskCandidate(title="Ask Bob", has_person_name=False),
    ]
    ctx = map_context(cands, None)
    assert ctx.related_people == ["Sarah", "Tom"]


def test_capitalized_tokens_are_a_heuristic_not_nlp() -> None:
    # Sentence-initial words count too.
    assert extract_capitalized_tokens("Call Mom (tonight)") == ["Call", "Mom"]
    assert extract_capitalized_tokens("") == []


def test_time_sensitivity_from_tone_case_insensitive() -> None:
    assert map_context([], IdeaAnalysis(emotional_tone="Overwhelmed")).time_sensitivity == TimeSensitivity.HIGH
    assert map_context([], IdeaAnalysis(emotional_tone="urgent")).time_sensitivity == TimeSensitivity.HIGH
    assert map_context([], IdeaAnalysis(emotional_tone=" calm ")).time_sensitivity == TimeSensitivity.LOW
    assert map_context([], IdeaAnalysis(emotional_tone="excited")).time_sensitivity == TimeSensitivity.NORMAL
    assert map_context([], None).time_sensitivity == TimeSensitivity.NORMAL


def test_missing_inputs_never_raise() -> None:
    ctx = map_context(None, None)
    assert ctx.inferred_projects == []
    assert ctx.categories == set()
    assert ctx.related_people == []
    assert ctx.deadlines == []


def test_parsing_boundary_is_tolerant() -> None:
    cand = TaskCandidate.from_dict({"title": "  Plan trip ", "suggested_timeframe": "This_Week", "keywords": "oops"})
    assert cand.title == "Plan trip"
    assert cand.suggested_timeframe == "this week"
    assert cand.keywords == ()

    analysis = IdeaAnalysis.from_dict({"topics": ["Work", None, ""], "emotional_tone": 3})
    assert analysis.topics == ("Work",)
    assert analysis.tone == ""


def test_format_reminder_time_empty() -> None:
    assert format_reminder_time(None) == ""
