# src/malunita/pipeline/processing.py

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from ..core.errors import ValidationError
from ..core.ports import ExtractionService, IdeaAnalysisService
from ..tasks.task_models import NewTaskInput
from .agenda_router import route_agenda
from .context_mapper import format_reminder_time, map_context
from .models import NEUTRAL_ANALYSIS, ContextMap, IdeaAnalysis, RoutedTask, TaskCandidate
from .priority_scorer import score_priorities

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessingResult:
    tasks: list[NewTaskInput] = field(default_factory=list)
    routed: list[RoutedTask] = field(default_factory=list)
    context: ContextMap = field(default_factory=ContextMap)
    analysis: IdeaAnalysis = NEUTRAL_ANALYSIS
    rejected: list[tuple[RoutedTask, ValidationError]] = field(default_factory=list)

    @property
    def accepted(self) -> list[RoutedTask]:
        """Routed entries that became tasks, in routing order."""
        skipped = {id(r) for r, _ in self.rejected}
        return [r for r in self.routed if id(r) not in skipped]


def run_pipeline(
    candidates: Iterable[TaskCandidate] | None,
    analysis: IdeaAnalysis | None,
) -> tuple[ContextMap, list[RoutedTask]]:
    """map -> score -> route. Pure; never raises."""
    cands = list(candidates or [])
    context = map_context(cands, analysis)
    scored = score_priorities(cands, analysis, context)
    routed = route_agenda(scored, context, analysis)
    return context, routed


def to_new_task(routed: RoutedTask) -> NewTaskInput:
    """Pipeline output -> store input. Raises ValidationError for an empty title."""
    c = routed.candidate
    reminder = format_reminder_time(c.reminder_time) or None
    return NewTaskInput(
        title=c.title,
        category=c.suggested_category,
        priority=routed.priority,
        effort=routed.task_type,
        scheduled_bucket=routed.agenda,
        reminder_time=reminder,
        keywords=list(c.keywords),
    ).validate()


def process_raw_input(
    text: str,
    extractor: ExtractionService,
    analyzer: IdeaAnalysisService,
) -> ProcessingResult:
    """
    Captured text -> validated task inputs.

    Extraction failure means "no tasks"; analysis failure means a neutral
    analysis. Both are logged, neither raises.
    """
    text = (text or "").strip()
    if not text:
        return ProcessingResult()

    try:
        candidates = list(extractor.extract(text))
    except Exception:
        logger.exception("Task extraction failed; capturing nothing")
        candidates = []

    try:
        analysis = analyzer.analyze(text)
    except Exception:
        logger.exception("Idea analysis failed; using neutral analysis")
        analysis = NEUTRAL_ANALYSIS

    context, routed = run_pipeline(candidates, analysis)

    result = ProcessingResult(routed=routed, context=context, analysis=analysis)
    for r in routed:
        try:
            result.tasks.append(to_new_task(r))
        except ValidationError as e:
            logger.info("Rejected candidate %r: %s", r.title, e)
            result.rejected.append((r, e))

    logger.debug(
        "Processed capture: %d candidate(s), %d task(s), %d rejected",
        len(candidates),
        len(result.tasks),
        len(result.rejected),
    )
    return result
