import hmac

from starlette.requests import Request

from examcoach.core.errors import error_response
from examcoach.core.logging import DOMAIN_SESSION, get_domain_logger
from examcoach.core.settings import settings

logger = get_domain_logger(__name__, DOMAIN_SESSION)

# Probes and API docs stay reachable without the shared key.
OPEN_PATHS = ("/health", "/docs", "/openapi.json", "/redoc")


def _key_matches(provided: str) -> bool:
    expected = settings.gateway_api_key
    return bool(expected) and hmac.compare_digest(provided.encode(), expected.encode())


async def api_key_auth_middleware(request: Request, call_next):
    """Optional shared-key gate in front of every session endpoint."""
    path = request.url.path
    if not settings.gateway_auth_enabled or path.startswith(OPEN_PATHS):
        return await call_next(request)
    if not _key_matches(request.headers.get("x-api-key", "")):
        logger.warning("Rejected %s %s: invalid or missing x-api-key", request.method, path)
        return error_response(
            request,
            code="unauthorized",
            message="Unauthorized: invalid or missing x-api-key",
            status_code=401,
        )
    return await call_next(request)
