from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from examcoach.runtime.session_manager import SessionManager, get_session_manager

router = APIRouter(tags=["events"])

TERMINAL_EVENTS = {"session_completed", "session_closed"}


@router.get("/sessions/{session_id}/events")
async def stream_session_events(
    session_id: str,
    replay: int = Query(default=1, ge=0, le=50),
    manager: SessionManager = Depends(get_session_manager),
):
    manager.get(session_id)
    bus = manager.event_bus
    queue = await bus.subscribe(session_id, replay_last=replay)

    async def generator():
        try:
            while True:
                event = await queue.get()
                yield f"event: {event['type']}\ndata: {json.dumps(event, ensure_ascii=False)}\n\n"
                if event["type"] in TERMINAL_EVENTS:
                    return
        except asyncio.CancelledError:
            return
        finally:
            await bus.unsubscribe(session_id, queue)

    return StreamingResponse(generator(), media_type="text/event-stream")
