from fastapi import APIRouter, Depends

from examcoach.core.settings import settings
from examcoach.runtime.session_manager import SessionManager, get_session_manager

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(manager: SessionManager = Depends(get_session_manager)):
    return {
        "status": "ok",
        "service": "examcoach-api",
        "env": settings.app_env,
        "active_sessions": len(manager),
        "oracle_provider": manager.gateway.provider_name,
        "oracle_configured": manager.gateway.configured,
    }
