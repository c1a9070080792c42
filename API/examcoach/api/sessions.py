from contextlib import aclosing

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from examcoach.core.errors import FeedbackError
from examcoach.core.logging import DOMAIN_SESSION, get_domain_logger
from examcoach.orchestrator.states import SourceKind
from examcoach.runtime.session_controller import SessionController
from examcoach.runtime.session_manager import SessionManager, get_session_manager
from examcoach.schemas.feedback import ExamDocument
from examcoach.schemas.session import AnalyzeRequest, StreamRequest

router = APIRouter(tags=["sessions"])
logger = get_domain_logger(__name__, DOMAIN_SESSION)


def _check_client_view(controller: SessionController, current_question: int | None, progress: dict | None = None) -> None:
    """The server's state wins; a client that disagrees is only logged."""
    state = controller.state
    if state is None:
        return
    if current_question is not None and current_question != state.current_question_index:
        logger.warning(
            "Client question %s differs from server question %s (session %s)",
            current_question,
            state.current_question_index,
            controller.session_id,
        )
    if progress is not None:
        server = {str(i): s.value for i, s in state.progress.items()}
        if progress != server:
            logger.warning("Client progress map differs from server state (session %s)", controller.session_id)


def _source_kind(payload: AnalyzeRequest) -> SourceKind:
    if payload.source_kind is not None:
        return payload.source_kind
    if payload.exam_content.lstrip().startswith("data:image/"):
        return SourceKind.IMAGE
    return SourceKind.TEXT


@router.post("/analyze")
async def analyze(payload: AnalyzeRequest, manager: SessionManager = Depends(get_session_manager)):
    if payload.action == "initial_analysis":
        if not (payload.exam_content or "").strip():
            raise HTTPException(status_code=400, detail="Toetsinhoud is vereist")
        exam = ExamDocument(
            text=payload.exam_content,
            source_name=payload.file_name or "toets",
            source_kind=_source_kind(payload),
        )
        controller = manager.create()
        try:
            await controller.start_session(exam)
        except FeedbackError:
            manager.discard(controller.session_id)
            raise
        return {"success": True, **controller.snapshot().as_payload()}

    if not payload.session_id:
        raise HTTPException(status_code=400, detail="sessionId is vereist")
    if not (payload.student_response or "").strip():
        raise HTTPException(status_code=400, detail="Antwoord is vereist")
    controller = manager.get(payload.session_id)
    _check_client_view(controller, payload.current_question, payload.question_progress)
    await controller.submit_answer(payload.student_response)
    return {"success": True, **controller.snapshot().as_payload()}


@router.post("/stream")
async def stream(payload: StreamRequest, manager: SessionManager = Depends(get_session_manager)):
    controller = manager.get(payload.session_id)
    _check_client_view(controller, payload.current_question)
    # Failures before the first fragment surface here as an error envelope.
    fragments = await controller.open_turn(payload.student_response)

    async def body():
        async with aclosing(fragments):
            try:
                async for fragment in fragments:
                    yield fragment
            except FeedbackError as exc:
                logger.warning("Stream for session %s ended early: %s", controller.session_id, exc.code)

    # The background close also frees the session when the body never starts.
    return StreamingResponse(body(), media_type="text/plain; charset=utf-8", background=BackgroundTask(fragments.aclose))


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    controller = manager.get(session_id)
    return {"success": True, **controller.snapshot().as_payload()}


@router.delete("/sessions/{session_id}")
async def abandon_session(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    await manager.abandon(session_id)
    return {"success": True, "sessionId": session_id, "abandoned": True}
