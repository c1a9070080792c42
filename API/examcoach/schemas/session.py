from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from examcoach.orchestrator.states import SourceKind, Speaker
from examcoach.schemas.feedback import SessionState


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AnalyzeRequest(CamelModel):
    action: Literal["initial_analysis", "continue_feedback"]
    exam_content: str | None = None
    file_name: str | None = None
    source_kind: SourceKind | None = None
    session_id: str | None = None
    student_response: str | None = None
    current_question: int | None = None
    question_progress: dict[str, str] | None = None


class StreamRequest(CamelModel):
    session_id: str
    student_response: str = Field(..., min_length=1)
    current_question: int | None = None


class ParsedFeedbackView(CamelModel):
    original_question: str
    student_answer_echo: str
    feedback_body: str
    remediation_question: str
    is_structured: bool


class TurnView(CamelModel):
    speaker: Speaker
    content: str
    timestamp: datetime


class SessionSnapshot(CamelModel):
    session_id: str
    file_name: str
    source_kind: SourceKind
    total_questions: int
    current_question: int
    question_progress: dict[str, str]
    initial_grade: float
    final_grade: float | None
    is_complete: bool
    summary: str
    learning_objectives: list[str]
    analysis_is_fallback: bool
    feedback: str
    parsed_feedback: ParsedFeedbackView
    history: list[TurnView]
    busy: bool = False

    @classmethod
    def from_state(cls, state: SessionState, *, busy: bool = False) -> "SessionSnapshot":
        last = state.last_feedback
        return cls(
            session_id=state.session_id,
            file_name=state.exam.source_name,
            source_kind=state.exam.source_kind,
            total_questions=state.total_questions,
            current_question=state.current_question_index,
            question_progress={str(i): status.value for i, status in sorted(state.progress.items())},
            initial_grade=state.initial_grade,
            final_grade=state.final_grade,
            is_complete=state.is_complete,
            summary=state.summary,
            learning_objectives=list(state.learning_objectives),
            analysis_is_fallback=state.analysis_is_fallback,
            feedback=state.last_teacher_text,
            parsed_feedback=ParsedFeedbackView(
                original_question=last.original_question,
                student_answer_echo=last.student_answer_echo,
                feedback_body=last.feedback_body,
                remediation_question=last.remediation_question,
                is_structured=last.is_structured,
            ),
            history=[TurnView(speaker=t.speaker, content=t.content, timestamp=t.timestamp) for t in state.history],
            busy=busy,
        )

    def as_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class UploadDocumentResponse(CamelModel):
    success: bool = True
    filename: str
    size: int
    file_type: str
    source_kind: SourceKind
    content: str
    word_count: int
    character_count: int
