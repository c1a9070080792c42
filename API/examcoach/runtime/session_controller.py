from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import aclosing

from examcoach.core.app_metrics import record_turn_committed
from examcoach.core.errors import FeedbackError, InvalidTransition, MalformedOracleOutput, SessionBusyError, UpstreamError
from examcoach.core.event_bus import SessionEventBus
from examcoach.core.json_parser import parse_llm_json
from examcoach.core.logging import DOMAIN_SESSION, current_session_id, get_domain_logger, log_event
from examcoach.core.oracle_gateway import BaseOracleGateway
from examcoach.core.settings import settings
from examcoach.feedback import parser
from examcoach.feedback.compositor import compose
from examcoach.feedback.policy import POLICY_TEMPLATE
from examcoach.orchestrator.engine import FeedbackStateEngine, TransitionResult, clamp_grade
from examcoach.orchestrator.states import SessionPhase, TurnKind
from examcoach.schemas.feedback import ExamDocument, InitialAnalysis, SessionState
from examcoach.schemas.session import SessionSnapshot

logger = get_domain_logger(__name__, DOMAIN_SESSION)

FALLBACK_SUMMARY = (
    "⚠️ Automatische analyse: de toets kon niet volledig worden geanalyseerd. "
    "Het cijfer en de leerdoelen hieronder zijn voorlopige standaardwaarden."
)
FALLBACK_OBJECTIVES = [
    "Ik kan scheikundige concepten toepassen",
    "Ik begrijp chemische reacties",
    "Ik kan berekeningen maken",
]


def _log_state_transition(session_id: str, result: TransitionResult, *, turn_count: int) -> None:
    log_event(
        logger,
        "state_transition",
        session_id=session_id,
        event=result.event,
        from_phase=result.from_phase.value,
        to_phase=result.to_phase.value,
        from_question=result.from_question,
        to_question=result.to_question,
        is_complete=result.state.is_complete,
        final_grade=result.state.final_grade,
        completion_source=result.completion_source,
        turn_count=turn_count,
    )


class TurnStream:
    """Fragments of one Continue turn, the first one already received.

    The session stays claimed until the turn ends. Closing the stream ends it
    without a commit, even when nothing was read yet; a stream that is dropped
    without being closed frees the session when it is collected.
    """

    def __init__(self, controller: SessionController, turn: AsyncIterator[str], first: str, token: object):
        self._controller = controller
        self._turn = turn
        self._first: str | None = first
        self._token = token
        self._closed = False

    def __aiter__(self) -> TurnStream:
        return self

    async def __anext__(self) -> str:
        if self._first is not None:
            fragment, self._first = self._first, None
            return fragment
        return await anext(self._turn)

    async def aclose(self) -> None:
        self._closed = True
        await self._turn.aclose()

    def __del__(self):
        if not self._closed:
            self._controller._release(self._token)


class SessionController:
    """Owns one session: the only place its SessionState is replaced.

    A turn is committed once, after the oracle stream closes normally. Anything
    else (upstream failure, cancellation, abandonment) leaves the state as it was.
    """

    def __init__(
        self,
        gateway: BaseOracleGateway,
        *,
        session_id: str | None = None,
        policy: str = POLICY_TEMPLATE,
        engine: FeedbackStateEngine | None = None,
        event_bus: SessionEventBus | None = None,
    ):
        self.session_id = session_id or str(uuid.uuid4())
        self._gateway = gateway
        self._policy = policy
        self._engine = engine or FeedbackStateEngine()
        self._event_bus = event_bus or SessionEventBus()
        self._state: SessionState | None = None
        self._busy = False
        self._abandoned = False
        self._turn_task: asyncio.Task | None = None
        self._claim_token: object | None = None
        self.last_activity = time.monotonic()

    @property
    def state(self) -> SessionState | None:
        return self._state

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def abandoned(self) -> bool:
        return self._abandoned

    @property
    def phase(self) -> SessionPhase:
        if self._state is None:
            return SessionPhase.UNINITIALIZED
        return self._state.phase

    def snapshot(self) -> SessionSnapshot:
        if self._state is None:
            raise InvalidTransition("Session has not been started.")
        return SessionSnapshot.from_state(self._state, busy=self._busy)

    def _claim(self) -> object:
        if self._abandoned:
            raise InvalidTransition("Session was abandoned.")
        if self._busy:
            raise SessionBusyError()
        self._busy = True
        self._claim_token = token = object()
        self._turn_task = asyncio.current_task()
        current_session_id.set(self.session_id)
        self.last_activity = time.monotonic()
        return token

    def _release(self, token: object) -> None:
        # A late release from an earlier turn must not free a newer claim.
        if token is not self._claim_token:
            return
        self._claim_token = None
        self._busy = False
        self._turn_task = None
        self.last_activity = time.monotonic()

    # -- Initial turn ---------------------------------------------------------

    def _read_analysis(self, raw_text: str) -> InitialAnalysis:
        data = parse_llm_json(raw_text)
        try:
            if not data:
                raise ValueError("no JSON object in oracle output")
            first = str(data.get("firstQuestionFeedback") or data.get("first_question_feedback") or "")
            if not first.strip():
                raise ValueError("firstQuestionFeedback is empty")
            grade = data.get("initialGrade", data.get("initial_grade"))
            total = data.get("totalQuestions", data.get("total_questions"))
            return InitialAnalysis(
                summary=str(data.get("summary") or ""),
                initial_grade=clamp_grade(float(str(grade).replace(",", "."))),
                learning_objectives=[str(o) for o in data.get("learningObjectives") or [] if str(o).strip()],
                total_questions=int(total),
                first_question_feedback=first,
            )
        except (TypeError, ValueError) as exc:
            if settings.malformed_envelope_policy == "fail":
                raise MalformedOracleOutput(details={"reason": str(exc)}) from exc
            logger.warning("Initial analysis envelope unreadable (%s); using fallback analysis", exc)
            return InitialAnalysis(
                summary=FALLBACK_SUMMARY,
                initial_grade=clamp_grade(settings.fallback_initial_grade),
                learning_objectives=list(FALLBACK_OBJECTIVES),
                total_questions=max(1, settings.fallback_total_questions),
                first_question_feedback=raw_text,
                is_fallback=True,
            )

    async def start_session(self, exam: ExamDocument) -> SessionState:
        if self._state is not None:
            raise InvalidTransition("Session has already been started.")
        token = self._claim()
        try:
            prompt = compose(self._policy, exam, None, None, TurnKind.INITIAL)
            image = exam.inline_image()
            raw = await self._gateway.generate(prompt, images=[image] if image else [])
            analysis = self._read_analysis(raw)
            result = self._engine.initial_transition(
                session_id=self.session_id,
                exam=exam,
                analysis=analysis,
                parsed=parser.parse(analysis.first_question_feedback),
            )
            if self._abandoned:
                raise InvalidTransition("Session was abandoned.")
            self._state = result.state
        except FeedbackError as exc:
            await self._event_bus.publish(self.session_id, "turn_failed", {"code": exc.code, "message": exc.message})
            raise
        finally:
            self._release(token)

        _log_state_transition(self.session_id, result, turn_count=0)
        await self._event_bus.publish(self.session_id, "session_started", self.snapshot().as_payload())
        return self._state

    # -- Continue turns -------------------------------------------------------

    async def open_turn(self, student_text: str) -> TurnStream:
        """Start a Continue turn and wait for its first fragment.

        Errors that happen before any text arrives are raised here, so callers can
        still answer with an error status. The returned stream yields the first
        fragment and the rest, and commits the turn once the oracle stream closes.
        """
        text = (student_text or "").strip()
        if self._state is None:
            raise InvalidTransition("Session has not been started.")
        if self._state.is_complete:
            raise InvalidTransition("Session is complete; no further turns are accepted.")
        if not text:
            raise InvalidTransition("An answer is required.")
        token = self._claim()
        turn = self._run_turn(text, token)
        first = await anext(turn)
        return TurnStream(self, turn, first, token)

    async def _run_turn(self, student_text: str, token: object) -> AsyncIterator[str]:
        state = self._state
        question = state.current_question_index
        buffer: list[str] = []
        committed = False
        try:
            prompt = compose(self._policy, state.exam, state, student_text, TurnKind.CONTINUE)
            image = state.exam.inline_image()
            upstream = self._gateway.generate_stream(prompt, images=[image] if image else [])
            async with aclosing(upstream):
                async for fragment in upstream:
                    buffer.append(fragment)
                    await self._event_bus.publish(self.session_id, "fragment", {"text": fragment, "question": question})
                    yield fragment
                    self._turn_task = asyncio.current_task()
            if not buffer:
                raise UpstreamError(details={"reason": "empty_stream"})
            committed = self._commit(student_text, "".join(buffer))
        except FeedbackError as exc:
            logger.warning("Turn failed for session %s: %s", self.session_id, exc.code)
            await self._event_bus.publish(self.session_id, "turn_failed", {"code": exc.code, "message": exc.message})
            raise
        finally:
            self._release(token)
            if not committed:
                logger.info("Turn for session %s ended without a commit", self.session_id)

        if not committed:
            return
        snapshot = self.snapshot().as_payload()
        await self._event_bus.publish(self.session_id, "turn_committed", snapshot)
        if self._state.is_complete:
            await self._event_bus.publish(self.session_id, "session_completed", snapshot)

    def _commit(self, student_text: str, raw_text: str) -> bool:
        if self._abandoned:
            logger.info("Session %s abandoned mid-turn; discarding oracle output", self.session_id)
            return False
        parsed = parser.parse(raw_text)
        if not parser.remediation_is_single_question(parsed):
            logger.warning(
                "Oracle asked more than one remediation question (session %s, question %d)",
                self.session_id,
                self._state.current_question_index,
            )
        result = self._engine.continue_transition(
            self._state,
            student_text=student_text,
            raw_text=raw_text,
            parsed=parsed,
            status=parser.parse_turn_status(raw_text),
        )
        self._state = result.state
        record_turn_committed()
        _log_state_transition(self.session_id, result, turn_count=result.state.turn_count)
        return True

    async def submit_answer(self, student_text: str) -> SessionState:
        """Run a whole Continue turn; fragments still reach observers through the event bus."""
        stream = await self.open_turn(student_text)
        async with aclosing(stream):
            async for _ in stream:
                pass
        return self._state

    # -- Abandonment ----------------------------------------------------------

    async def abandon(self) -> None:
        """Drop the session; an in-flight turn is cancelled and never committed."""
        self._abandoned = True
        task = self._turn_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self._event_bus.close(self.session_id)
        logger.info("Session %s abandoned (busy=%s)", self.session_id, self._busy)
