import logging
import uuid

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class FeedbackError(Exception):
    """Base for every failure that may reach the presentation layer."""

    code = "feedback_error"
    status_code = 500
    default_message = "Er is een fout opgetreden."

    def __init__(self, message: str | None = None, *, details=None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ConfigError(FeedbackError):
    code = "config_error"
    status_code = 500
    default_message = "API configuratie ontbreekt. Voeg GEMINI_API_KEY toe aan je environment variables."


class UpstreamError(FeedbackError):
    code = "upstream_error"
    status_code = 502
    default_message = "De feedbackservice is tijdelijk niet bereikbaar. Probeer het opnieuw."


class MalformedOracleOutput(FeedbackError):
    code = "malformed_oracle_output"
    status_code = 502
    default_message = "De analyse van je toets kon niet worden gelezen. Probeer het opnieuw."


class InvalidTransition(FeedbackError):
    code = "invalid_transition"
    status_code = 409
    default_message = "Deze sessie accepteert geen nieuwe antwoorden meer."


class SessionBusyError(FeedbackError):
    code = "session_busy"
    status_code = 409
    default_message = "Je vorige antwoord wordt nog verwerkt. Wacht even."


class SessionNotFoundError(FeedbackError):
    code = "session_not_found"
    status_code = 404
    default_message = "Session not found or expired"


class DocumentExtractionError(FeedbackError):
    code = "document_extraction_error"
    status_code = 400
    default_message = (
        "Het bestand kon niet worden verwerkt. Probeer het als .docx of .txt op te slaan en opnieuw te uploaden."
    )


class UploadTooLargeError(DocumentExtractionError):
    code = "upload_too_large"
    status_code = 413
    default_message = "Bestand is te groot (max 10MB)."


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    status_code: int,
    details=None,
) -> JSONResponse:
    payload = {
        "success": False,
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
            "details": details,
        },
    }
    return JSONResponse(status_code=status_code, content=payload)


async def feedback_error_handler(request: Request, exc: FeedbackError):
    if isinstance(exc, (ConfigError, InvalidTransition)):
        logger.error("%s | request_id=%s | %s", exc.code, get_request_id(request), exc.message)
    return error_response(
        request,
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    return error_response(
        request,
        code="http_error",
        message=str(exc.detail),
        status_code=exc.status_code,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return error_response(
        request,
        code="validation_error",
        message="Request validation failed",
        status_code=422,
        details=exc.errors(),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception | request_id=%s", get_request_id(request), exc_info=exc)
    return error_response(
        request,
        code="internal_error",
        message="Internal server error",
        status_code=500,
    )


async def request_id_middleware(request: Request, call_next):
    incoming = request.headers.get("x-request-id")
    request.state.request_id = incoming or str(uuid.uuid4())
    response = await call_next(request)
    response.headers["x-request-id"] = request.state.request_id
    return response
