import asyncio
from collections import deque
from datetime import datetime, timezone


class SessionEventBus:
    """Observer channel for the presentation layer, one topic per session.

    Only committed snapshots travel as `session_started` / `turn_committed` /
    `session_completed`; `fragment` events are a transient preview.
    """

    def __init__(self, history_size: int = 50):
        self._history_size = history_size
        self._subscribers: dict[str, list[asyncio.Queue]] = {}
        self._history: dict[str, deque[dict]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _event(session_id: str, event_type: str, data: dict) -> dict:
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": event_type,
            "session_id": session_id,
            "data": data,
        }

    async def publish(self, session_id: str, event_type: str, data: dict) -> None:
        event = self._event(session_id, event_type, data)
        async with self._lock:
            # Fragments are not replayed to late subscribers.
            if event_type != "fragment":
                self._history.setdefault(session_id, deque(maxlen=self._history_size)).append(event)
            subscribers = list(self._subscribers.get(session_id, []))
        for queue in subscribers:
            queue.put_nowait(event)

    async def subscribe(self, session_id: str, replay_last: int = 1) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self._lock:
            self._subscribers.setdefault(session_id, []).append(queue)
            history = list(self._history.get(session_id, []))[-replay_last:] if replay_last > 0 else []
        for event in history:
            queue.put_nowait(event)
        return queue

    async def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        async with self._lock:
            queues = self._subscribers.get(session_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self._subscribers.pop(session_id, None)

    def close(self, session_id: str) -> None:
        """Forget a session's topic; live subscribers receive a final `session_closed`."""
        self._history.pop(session_id, None)
        subscribers = self._subscribers.pop(session_id, [])
        if subscribers:
            event = self._event(session_id, "session_closed", {})
            for queue in subscribers:
                queue.put_nowait(event)

    def history(self, session_id: str) -> list[dict]:
        return list(self._history.get(session_id, []))
