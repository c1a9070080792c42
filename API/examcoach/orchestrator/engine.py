from dataclasses import dataclass
from datetime import datetime, timezone

from examcoach.core.errors import InvalidTransition
from examcoach.core.settings import settings
from examcoach.feedback.parser import mentions_completion
from examcoach.orchestrator.states import ProgressStatus, SessionPhase, Speaker
from examcoach.schemas.feedback import (
    ConversationTurn,
    ExamDocument,
    InitialAnalysis,
    ParsedFeedback,
    SessionState,
    TurnStatus,
)

MIN_GRADE = 0.0
MAX_GRADE = 10.0


def clamp_grade(value: float) -> float:
    return max(MIN_GRADE, min(MAX_GRADE, float(value)))


@dataclass
class TransitionResult:
    state: SessionState
    from_phase: SessionPhase
    to_phase: SessionPhase
    from_question: int | None
    to_question: int
    event: str
    completion_source: str | None = None


def progress_violations(state: SessionState) -> list[str]:
    """Describe every way the progress map breaks the one-active-question invariant."""
    problems: list[str] = []
    total = state.total_questions
    idx = state.current_question_index
    if sorted(state.progress) != list(range(1, total + 1)):
        problems.append(f"progress keys are not 1..{total}")
    if not 1 <= idx <= total:
        problems.append(f"current question {idx} outside 1..{total}")
    for i, status in state.progress.items():
        if i < idx and status != ProgressStatus.COMPLETED:
            problems.append(f"question {i} before the active one is {status.value}")
        if i > idx and status != ProgressStatus.PENDING:
            problems.append(f"question {i} after the active one is {status.value}")
    current = state.progress.get(idx)
    if current == ProgressStatus.PENDING:
        problems.append(f"active question {idx} is still pending")
    if current == ProgressStatus.COMPLETED and not state.is_complete and idx != total:
        problems.append(f"active question {idx} is completed but the session did not advance")
    if state.is_complete != (state.final_grade is not None):
        problems.append("final grade must be present exactly when the session is complete")
    return problems


class FeedbackStateEngine:
    """Uninitialized -> Active -> Complete. Transitions return a new state; inputs are never mutated."""

    def __init__(self, *, grade_bonus: float | None = None, completion_markers: list[str] | None = None):
        self.grade_bonus = settings.completion_grade_bonus if grade_bonus is None else float(grade_bonus)
        self.completion_markers = list(
            settings.completion_markers if completion_markers is None else completion_markers
        )

    def initial_transition(
        self,
        *,
        session_id: str,
        exam: ExamDocument,
        analysis: InitialAnalysis,
        parsed: ParsedFeedback,
    ) -> TransitionResult:
        total = analysis.total_questions
        progress = {i: ProgressStatus.PENDING for i in range(1, total + 1)}
        progress[1] = ProgressStatus.REVIEWING
        now = datetime.now(timezone.utc)
        state = SessionState(
            session_id=session_id,
            exam=exam,
            total_questions=total,
            current_question_index=1,
            progress=progress,
            initial_grade=clamp_grade(analysis.initial_grade),
            final_grade=None,
            is_complete=False,
            last_feedback=parsed,
            last_teacher_text=analysis.first_question_feedback,
            history=[ConversationTurn(speaker=Speaker.TEACHER, content=analysis.first_question_feedback, timestamp=now)],
            summary=analysis.summary,
            learning_objectives=list(analysis.learning_objectives),
            analysis_is_fallback=analysis.is_fallback,
            created_at=now,
            updated_at=now,
        )
        return TransitionResult(
            state=state,
            from_phase=SessionPhase.UNINITIALIZED,
            to_phase=SessionPhase.ACTIVE,
            from_question=None,
            to_question=1,
            event="session_started",
        )

    def continue_transition(
        self,
        state: SessionState,
        *,
        student_text: str,
        raw_text: str,
        parsed: ParsedFeedback,
        status: TurnStatus | None = None,
    ) -> TransitionResult:
        if state.is_complete:
            raise InvalidTransition("Session is complete; no further turns are accepted.")
        problems = progress_violations(state)
        if problems:
            raise InvalidTransition("Session state is inconsistent.", details=problems)

        nxt = state.model_copy(deep=True)
        now = datetime.now(timezone.utc)
        nxt.history = [
            *state.history,
            ConversationTurn(speaker=Speaker.STUDENT, content=student_text, timestamp=now),
            ConversationTurn(speaker=Speaker.TEACHER, content=raw_text, timestamp=now),
        ]

        idx = state.current_question_index
        progress = dict(state.progress)

        if status is not None and status.is_complete is not None:
            complete = status.is_complete
            completion_source = "status_block"
        else:
            complete = mentions_completion(raw_text, self.completion_markers)
            completion_source = "prose_marker" if complete else None

        if complete:
            progress[idx] = ProgressStatus.COMPLETED
            nxt.is_complete = True
            if status is not None and status.final_grade is not None:
                nxt.final_grade = clamp_grade(status.final_grade)
            else:
                nxt.final_grade = clamp_grade(min(MAX_GRADE, state.initial_grade + self.grade_bonus))
            event = "session_completed"
        else:
            resolved = True
            if status is not None and status.question_resolved is not None:
                resolved = status.question_resolved
            if resolved:
                progress[idx] = ProgressStatus.COMPLETED
                if idx + 1 <= state.total_questions:
                    progress[idx + 1] = ProgressStatus.REVIEWING
                    nxt.current_question_index = idx + 1
                    event = "question_advanced"
                else:
                    event = "last_question_resolved"
            else:
                event = "remediation_continued"

        nxt.progress = progress
        nxt.last_feedback = parsed
        nxt.last_teacher_text = raw_text
        nxt.turn_count = state.turn_count + 1
        nxt.updated_at = now
        return TransitionResult(
            state=nxt,
            from_phase=state.phase,
            to_phase=nxt.phase,
            from_question=idx,
            to_question=nxt.current_question_index,
            event=event,
            completion_source=completion_source,
        )
