from __future__ import annotations

from fastapi import APIRouter, Depends

from examcoach.core.app_metrics import get_metrics
from examcoach.runtime.session_manager import SessionManager, get_session_manager

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("/app")
async def app_metrics(manager: SessionManager = Depends(get_session_manager)):
    """Request latency (p50/p95), error rate, oracle call outcomes and alerts."""
    out = get_metrics()
    out["active_sessions"] = len(manager)
    return out
