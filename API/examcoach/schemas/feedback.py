from __future__ import annotations

import re
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from examcoach.orchestrator.states import ProgressStatus, SessionPhase, SourceKind, Speaker

_DATA_URL = re.compile(r"^data:(?P<mime>image/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExamDocument(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str = Field(..., min_length=1)
    source_name: str
    source_kind: SourceKind = SourceKind.TEXT

    def inline_image(self) -> tuple[str, str] | None:
        """(mime type, base64 payload) for image exams carried as a data URL."""
        if self.source_kind != SourceKind.IMAGE:
            return None
        match = _DATA_URL.match(self.text.strip())
        if not match:
            return None
        return match.group("mime"), match.group("data")


class ParsedFeedback(BaseModel):
    model_config = ConfigDict(frozen=True)

    original_question: str = ""
    student_answer_echo: str = ""
    feedback_body: str = ""
    remediation_question: str = ""
    is_structured: bool = False


class TurnStatus(BaseModel):
    """Explicit status block the oracle appends to a Continue-turn response."""

    model_config = ConfigDict(frozen=True)

    question_resolved: bool | None = None
    is_complete: bool | None = None
    final_grade: float | None = None


class ConversationTurn(BaseModel):
    model_config = ConfigDict(frozen=True)

    speaker: Speaker
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)


class InitialAnalysis(BaseModel):
    """Validated Initial-turn envelope."""

    summary: str
    initial_grade: float
    learning_objectives: list[str] = Field(default_factory=list)
    total_questions: int = Field(..., ge=1)
    first_question_feedback: str
    is_fallback: bool = False


class SessionState(BaseModel):
    session_id: str
    exam: ExamDocument
    total_questions: int = Field(..., ge=1)
    current_question_index: int = Field(..., ge=1)
    progress: dict[int, ProgressStatus]
    initial_grade: float = Field(..., ge=0.0, le=10.0)
    final_grade: float | None = None
    is_complete: bool = False
    last_feedback: ParsedFeedback = Field(default_factory=ParsedFeedback)
    last_teacher_text: str = ""
    history: list[ConversationTurn] = Field(default_factory=list)
    summary: str = ""
    learning_objectives: list[str] = Field(default_factory=list)
    analysis_is_fallback: bool = False
    turn_count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def phase(self) -> SessionPhase:
        return SessionPhase.COMPLETE if self.is_complete else SessionPhase.ACTIVE

    def reviewing_indices(self) -> list[int]:
        return sorted(i for i, status in self.progress.items() if status == ProgressStatus.REVIEWING)
