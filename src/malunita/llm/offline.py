# src/malunita/llm/offline.py

from __future__ import annotations

import re

from ..pipeline.models import IdeaAnalysis, TaskCandidate

_SENTENCE_SPLIT = re.compile(r"[.!?;\n]+")
_CLOCK_TIME = re.compile(r"\b\d{1,2}(:\d{2})?\s?(am|pm)\b|\b\d{1,2}:\d{2}\b", re.IGNORECASE)
_WORD = re.compile(r"[A-Za-z][A-Za-z'-]*")

_TIMEFRAME_HINTS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("today", "tonight", "this evening", "this morning"), "today"),
    (("tomorrow",), "tomorrow"),
    (("this week", "next week"), "this week"),
    (("someday", "eventually", "one day"), "someday"),
)

_LEADING_FILLER = (
    "i need to ",
    "i have to ",
    "i should ",
    "i must ",
    "remember to ",
    "don't forget to ",
    "need to ",
)

_NOT_NAMES = frozenset(
    {
        "I",
        "Monday",
        "Tuesday",
        "Wednesday",
        "Thursday",
        "Friday",
        "Saturday",
        "Sunday",
    }
)

_STOPWORDS = frozenset(
    {
        "about",
        "after",
        "before",
        "from",
        "have",
        "into",
        "need",
        "should",
        "that",
        "their",
        "them",
        "then",
        "this",
        "today",
        "tomorrow",
        "tonight",
        "week",
        "when",
        "with",
        "remind",
        "remember",
    }
)

MAX_KEYWORDS = 5


def _strip_filler(sentence: str) -> str:
    lowered = sentence.lower()
    for prefix in _LEADING_FILLER:
        if lowered.startswith(prefix):
            rest = sentence[len(prefix) :].strip()
            return rest[:1].upper() + rest[1:]
    return sentence


def _timeframe(lowered: str) -> str:
    for needles, timeframe in _TIMEFRAME_HINTS:
        if any(n in lowered for n in needles):
            return timeframe
    return ""


def _mentions_person(title: str) -> bool:
    words = title.split()
    return any(w[:1].isupper() and w.strip(".,!?;:'\"") not in _NOT_NAMES for w in words[1:])


def _keywords(lowered: str) -> tuple[str, ...]:
    out: list[str] = []
    for w in _WORD.findall(lowered):
        if len(w) >= 4 and w not in _STOPWORDS and w not in out:
            out.append(w)
        if len(out) >= MAX_KEYWORDS:
            break
    return tuple(out)


class OfflineExtractionService:
    """
    Deterministic extractor used when no LLM is configured.

    One candidate per sentence; timeframe, reminder and person flags come
    from keyword heuristics.
    """

    def extract(self, text: str) -> list[TaskCandidate]:
        out: list[TaskCandidate] = []
        for raw in _SENTENCE_SPLIT.split(text or ""):
            sentence = " ".join(raw.split())
            if not sentence:
                continue
            title = _strip_filler(sentence)
            lowered = title.lower()
            out.append(
                TaskCandidate(
                    title=title,
                    suggested_timeframe=_timeframe(lowered),
                    has_reminder="remind" in sentence.lower() or bool(_CLOCK_TIME.search(sentence)),
                    has_person_name=_mentions_person(title),
                    keywords=_keywords(lowered),
                )
            )
        return out


class OfflineIdeaAnalysisService:
    """No topics, neutral tone: the pipeline runs on candidate fields alone."""

    def analyze(self, text: str) -> IdeaAnalysis:
        summary = " ".join((text or "").split())[:120]
        return IdeaAnalysis(emotional_tone="neutral", summary=summary)
