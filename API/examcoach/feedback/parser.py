"""Structured-feedback parsing.

The oracle is asked for four headed sections (question, student answer,
feedback, remediation question) and, on Continue turns, a trailing STATUS
block. Headings are matched on their literal label only: a markdown heading
(`#` to `######`), one of the accepted labels, an optional colon. Labels are
case-insensitive; nothing fuzzier is attempted. When the four sections are not
all present in order, the text is returned whole as unstructured feedback.
"""
from __future__ import annotations

import re

from examcoach.core.json_parser import parse_llm_json
from examcoach.core.logging import DOMAIN_PARSING, get_domain_logger
from examcoach.schemas.feedback import ParsedFeedback, TurnStatus

logger = get_domain_logger(__name__, DOMAIN_PARSING)

SECTION_QUESTION = "QUESTION"
SECTION_STUDENT_ANSWER = "STUDENT_ANSWER"
SECTION_FEEDBACK = "FEEDBACK"
SECTION_REMEDIATION = "REMEDIATION_QUESTION"
SECTION_STATUS = "STATUS"

SECTION_ORDER = (SECTION_QUESTION, SECTION_STUDENT_ANSWER, SECTION_FEEDBACK, SECTION_REMEDIATION)

# Canonical label first, then the labels the Dutch policy asks for.
SECTION_LABELS: dict[str, tuple[str, ...]] = {
    SECTION_QUESTION: ("QUESTION", "VRAAG"),
    SECTION_STUDENT_ANSWER: ("STUDENT_ANSWER", "STUDENT ANSWER", "JOUW ANTWOORD"),
    SECTION_FEEDBACK: ("FEEDBACK",),
    SECTION_REMEDIATION: ("REMEDIATION_QUESTION", "REMEDIATION QUESTION", "REMEDIERENDE VRAAG"),
    SECTION_STATUS: ("STATUS",),
}


def _heading_pattern(labels: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(label).replace(r"\ ", r"[ \t]+") for label in labels)
    return re.compile(rf"^[ \t]*#{{1,6}}[ \t]*(?:{alternatives})(?!\w)[ \t]*:?", re.IGNORECASE | re.MULTILINE)


_PATTERNS: dict[str, re.Pattern[str]] = {name: _heading_pattern(labels) for name, labels in SECTION_LABELS.items()}


def _all_markers(text: str) -> list[tuple[int, int, str]]:
    found: list[tuple[int, int, str]] = []
    for name, pattern in _PATTERNS.items():
        found.extend((m.start(), m.end(), name) for m in pattern.finditer(text))
    found.sort()
    return found


def _ordered_sections(markers: list[tuple[int, int, str]]) -> list[tuple[int, int, str]] | None:
    """Return the last block of four section headings, or None when the headings are not well formed.

    The section headings, read in order, must form one or more complete
    QUESTION, STUDENT_ANSWER, FEEDBACK, REMEDIATION_QUESTION blocks. A STATUS
    heading may only follow the last block.
    """
    sections = [m for m in markers if m[2] != SECTION_STATUS]
    if not sections or len(sections) % len(SECTION_ORDER):
        return None
    if any(m[2] == SECTION_STATUS and m[0] < sections[-1][0] for m in markers):
        return None
    for i, (_, _, name) in enumerate(sections):
        if name != SECTION_ORDER[i % len(SECTION_ORDER)]:
            return None
    return sections[-len(SECTION_ORDER):]


def parse(raw_text: str) -> ParsedFeedback:
    """Parse raw oracle text into ParsedFeedback. Total: never raises."""
    text = raw_text or ""
    markers = _all_markers(text)
    chosen = _ordered_sections(markers)
    if chosen is None:
        if markers:
            logger.info("Section headings missing or out of order; keeping feedback unstructured")
        return ParsedFeedback(feedback_body=text, is_structured=False)

    contents: list[str] = []
    for _, end, _ in chosen:
        # Each section runs to the very next heading (normally STATUS after the last one) or the end.
        stop = next((start for start, _, _ in markers if start >= end), len(text))
        contents.append(text[end:stop].strip())

    return ParsedFeedback(
        original_question=contents[0],
        student_answer_echo=contents[1],
        feedback_body=contents[2],
        remediation_question=contents[3],
        is_structured=True,
    )


def _as_bool(value) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "ja", "1"}:
            return True
        if lowered in {"false", "no", "nee", "0"}:
            return False
    return None


def _as_grade(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(str(value).replace(",", "."))
    except (TypeError, ValueError):
        return None


def parse_turn_status(raw_text: str) -> TurnStatus | None:
    """Read the trailing STATUS block; None when it is absent or not valid JSON."""
    text = raw_text or ""
    matches = list(_PATTERNS[SECTION_STATUS].finditer(text))
    if not matches:
        return None
    data = parse_llm_json(text[matches[-1].end():])
    if not data:
        logger.warning("STATUS heading present but its JSON could not be read")
        return None
    return TurnStatus(
        question_resolved=_as_bool(data.get("questionResolved", data.get("question_resolved"))),
        is_complete=_as_bool(data.get("isComplete", data.get("is_complete"))),
        final_grade=_as_grade(data.get("finalGrade", data.get("final_grade"))),
    )


def mentions_completion(raw_text: str, markers: list[str]) -> bool:
    lowered = (raw_text or "").lower()
    return any(marker.lower() in lowered for marker in markers if marker)


def remediation_is_single_question(feedback: ParsedFeedback) -> bool:
    """Check the one-question rule against returned text."""
    if not feedback.is_structured:
        return True
    return feedback.remediation_question.count("?") <= 1
