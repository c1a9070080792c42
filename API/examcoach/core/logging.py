import json
import logging
import re
import sys
from contextvars import ContextVar

DOMAIN_SESSION = "session"
DOMAIN_ORACLE = "oracle"
DOMAIN_PARSING = "parsing"
DOMAIN_UPLOAD = "upload"

LOG_FORMAT = "%(asctime)s | %(levelname)s | [%(domain)s] | session=%(session_id)s | %(name)s | %(message)s"

# Session the current task is working on; "-" outside of a session.
current_session_id: ContextVar[str] = ContextVar("current_session_id", default="-")


def get_domain_logger(name: str, domain: str) -> logging.LoggerAdapter[logging.Logger]:
    """Logger that tags every record with a domain, so output can be filtered per concern."""
    return logging.LoggerAdapter(logging.getLogger(name), {"domain": domain})


def log_event(logger: logging.LoggerAdapter, event_type: str, **fields) -> None:
    """One JSON object per line, for transitions and oracle calls that are grepped and aggregated later."""
    logger.info(json.dumps({"type": event_type, **fields}, ensure_ascii=False, default=str))


class RecordDefaultsFilter(logging.Filter):
    """Fill %(domain)s and %(session_id)s for records from third-party loggers."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "domain"):
            record.domain = "app"  # type: ignore[attr-defined]
        if not hasattr(record, "session_id"):
            record.session_id = current_session_id.get()  # type: ignore[attr-defined]
        return True


_SECRET_KEYS = ("x-goog-api-key", "x-api-key", r"api[_-]?key", "token", "password")
_SECRET_PATTERNS = [re.compile(rf"(?i)({key}\s*[=:]\s*)([^\s,;&]+)") for key in _SECRET_KEYS] + [
    re.compile(r"(?i)(authorization\s*[=:]\s*bearer\s+)([^\s,;]+)"),
    re.compile(r"(?i)([?&]key=)([^\s&]+)"),
]


def redact_secrets(message: str) -> str:
    text = str(message or "")
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(r"\1[REDACTED]", text)
    return text


class SecretRedactionFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_secrets(record.getMessage())
        record.args = ()
        return True


_POLL_LINE = re.compile(r'"GET /(health|metrics/app)[^"]*" 200')


class SuppressPollingFilter(logging.Filter):
    """Drop uvicorn access lines for successful health and metrics polls."""

    def filter(self, record: logging.LogRecord) -> bool:
        return _POLL_LINE.search(record.getMessage()) is None


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(RecordDefaultsFilter())
        handler.addFilter(SecretRedactionFilter())
    # Oracle request URLs may carry the key.
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").addFilter(SuppressPollingFilter())
