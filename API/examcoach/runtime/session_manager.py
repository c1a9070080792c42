from __future__ import annotations

import time

from fastapi import Request

from examcoach.core.errors import SessionNotFoundError
from examcoach.core.event_bus import SessionEventBus
from examcoach.core.logging import DOMAIN_SESSION, get_domain_logger
from examcoach.core.oracle_gateway import BaseOracleGateway
from examcoach.core.settings import settings
from examcoach.feedback.policy import POLICY_TEMPLATE
from examcoach.orchestrator.engine import FeedbackStateEngine
from examcoach.runtime.session_controller import SessionController

logger = get_domain_logger(__name__, DOMAIN_SESSION)


class SessionManager:
    """Process-scoped registry of session controllers. Nothing is persisted."""

    def __init__(
        self,
        gateway: BaseOracleGateway,
        *,
        event_bus: SessionEventBus | None = None,
        engine: FeedbackStateEngine | None = None,
        ttl_seconds: int | None = None,
        max_sessions: int | None = None,
    ):
        self.gateway = gateway
        self.event_bus = event_bus or SessionEventBus()
        self.engine = engine or FeedbackStateEngine()
        self.ttl_seconds = settings.session_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.max_sessions = settings.max_sessions if max_sessions is None else max_sessions
        self._controllers: dict[str, SessionController] = {}

    def __len__(self) -> int:
        return len(self._controllers)

    def create(self) -> SessionController:
        self._evict_expired()
        while len(self._controllers) >= self.max_sessions:
            idle = [c for c in self._controllers.values() if not c.busy]
            if not idle:
                break
            oldest = min(idle, key=lambda c: c.last_activity)
            logger.info("Session registry full; evicting %s", oldest.session_id)
            self._forget(oldest.session_id)
        controller = SessionController(
            self.gateway,
            policy=POLICY_TEMPLATE,
            engine=self.engine,
            event_bus=self.event_bus,
        )
        self._controllers[controller.session_id] = controller
        return controller

    def get(self, session_id: str) -> SessionController:
        self._evict_expired()
        controller = self._controllers.get(session_id)
        if controller is None or controller.abandoned:
            raise SessionNotFoundError(details={"session_id": session_id})
        return controller

    def discard(self, session_id: str) -> None:
        """Forget a controller whose Initial turn failed."""
        self._forget(session_id)

    async def abandon(self, session_id: str) -> None:
        controller = self.get(session_id)
        self._controllers.pop(session_id, None)
        await controller.abandon()

    async def close_all(self) -> None:
        for session_id in list(self._controllers):
            controller = self._controllers.pop(session_id)
            await controller.abandon()

    def _forget(self, session_id: str) -> None:
        self._controllers.pop(session_id, None)
        self.event_bus.close(session_id)

    def _evict_expired(self) -> None:
        if self.ttl_seconds <= 0:
            return
        cutoff = time.monotonic() - self.ttl_seconds
        expired = [sid for sid, c in self._controllers.items() if c.last_activity < cutoff and not c.busy]
        for sid in expired:
            self._forget(sid)
        if expired:
            logger.info("Evicted %d idle sessions", len(expired))


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager
