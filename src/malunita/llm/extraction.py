# src/malunita/llm/extraction.py

"""
LLM-backed extraction and idea analysis.

Both services ask for a single JSON object and parse it tolerantly:
code fences / chatter around the object are ignored, unknown keys dropped,
malformed entries skipped. A reply that cannot be parsed at all raises
ValueError; the capture pipeline turns that into its fallback.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from ..core.ports import LLMClient
from ..pipeline.models import IdeaAnalysis, TaskCandidate

logger = logging.getLogger(__name__)

EXTRACTION_SYSTEM_PROMPT = """
You are a task extraction module. You do NOT chat with the user.

Read the captured thought and list every concrete task in it.
Return ONLY a JSON object:

{"tasks": [
  {
    "title": "short imperative title, in the user's words",
    "suggested_timeframe": "today" | "tomorrow" | "this week" | "someday" | "",
    "has_reminder": true | false,
    "reminder_time": "ISO-8601 datetime or null",
    "has_person_name": true | false,
    "suggested_category": "work" | "home" | "health" | ... | null,
    "keywords": ["lowercase", "keywords"]
  }
]}

Rules:
- do NOT invent tasks that are not in the text
- has_reminder only when the user asks to be reminded or names a clock time
- has_person_name when the title mentions a person by name
- return {"tasks": []} when there is nothing actionable
""".strip()

ANALYSIS_SYSTEM_PROMPT = """
You are an idea analysis module. You do NOT chat with the user.

Return ONLY a JSON object:

{
  "summary": "one sentence",
  "topics": ["Work", "Personal", "Health", or a project name],
  "emotional_tone": "neutral" | "calm" | "thoughtful" | "stressed" | "overwhelmed" | "urgent" | "excited",
  "decisions": ["decisions the user made"],
  "questions": ["open questions the user raised"]
}
""".strip()


def _extract_json_object(raw: str) -> str:
    raw = raw.strip()
    if raw.startswith("{") and raw.endswith("}"):
        return raw
    first = raw.find("{")
    last = raw.rfind("}")
    if first != -1 and last != -1 and last > first:
        return raw[first : last + 1]
    return raw


def _ask_json(llm: LLMClient, system_prompt: str, text: str) -> dict[str, Any]:
    raw = "".join(llm.stream_chat([{"role": "user", "content": text}], system_prompt=system_prompt))
    try:
        data = json.loads(_extract_json_object(raw))
    except json.JSONDecodeError as e:
        logger.warning("LLM returned non-JSON output. Raw=%r", raw[:2000])
        raise ValueError("LLM reply is not a JSON object") from e
    if not isinstance(data, dict):
        raise ValueError("LLM reply is not a JSON object")
    return data


class LLMExtractionService:
    def __init__(self, llm: LLMClient) -> None:
        self._llm = llm

    def extract(self, text: str) -> list[TaskCandidate]:
        data = _ask_json(self._llm, EXTRACTION_SYSTEM_PROMPT, text)
        items = data.get("tasks")
        if not isinstance(items, list):
            logger.info("Extraction reply had no task list")
            return []

        out: list[TaskCandidate] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            candidate = TaskCandidate.from_dict(item)
            if candidate.title:
                out.append(candidate)
        logger.debug("Extracted %d candidate(s)", len(out))
        return out


class LLMIdeaAnalysisService:
    def __init__(self, llm: LLMClient) -> None:
        self._llm = llm

    def analyze(self, text: str) -> IdeaAnalysis:
        return IdeaAnalysis.from_dict(_ask_json(self._llm, ANALYSIS_SYSTEM_PROMPT, text))
