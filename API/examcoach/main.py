from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from examcoach.api.documents import router as documents_router
from examcoach.api.events import router as events_router
from examcoach.api.health import router as health_router
from examcoach.api.metrics import router as metrics_router
from examcoach.api.sessions import router as sessions_router
from examcoach.core.app_metrics import metrics_middleware
from examcoach.core.auth import api_key_auth_middleware
from examcoach.core.errors import (
    FeedbackError,
    feedback_error_handler,
    http_exception_handler,
    request_id_middleware,
    unhandled_exception_handler,
    validation_exception_handler,
)
from examcoach.core.logging import configure_logging
from examcoach.core.oracle_gateway import get_oracle_gateway
from examcoach.core.settings import settings
from examcoach.runtime.session_manager import SessionManager


configure_logging(settings.log_level)

app = FastAPI(title="Examcoach API", version="0.1.0")
app.state.session_manager = SessionManager(get_oracle_gateway())
app.include_router(health_router)
app.include_router(sessions_router)
app.include_router(events_router)
app.include_router(documents_router)
app.include_router(metrics_router)
app.middleware("http")(metrics_middleware)
app.middleware("http")(api_key_auth_middleware)
app.middleware("http")(request_id_middleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_exception_handler(FeedbackError, feedback_error_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)


@app.on_event("shutdown")
async def on_shutdown():
    await app.state.session_manager.close_all()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.app_host, port=settings.app_port, log_level=settings.log_level.lower())
