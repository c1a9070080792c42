from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
API_DIR = ROOT / "API"
if str(API_DIR) not in sys.path:
    sys.path.insert(0, str(API_DIR))

# Test-mode runtime guards:
# - no oracle traffic unless a test injects a gateway
# - no .env credentials leaking into assertions
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("LLM_PROVIDER", "none")
os.environ.setdefault("GEMINI_API_KEY", "")
os.environ.setdefault("GATEWAY_AUTH_ENABLED", "false")

from examcoach.core.app_metrics import reset_metrics  # noqa: E402
from examcoach.core.oracle_gateway import BaseOracleGateway  # noqa: E402
from examcoach.main import app  # noqa: E402
from examcoach.runtime.session_manager import SessionManager, get_session_manager  # noqa: E402


def structured_feedback(
    question: str = "Wat is de formule van water?",
    answer: str = "H2O2",
    feedback: str = "⚠️ Bijna: tel de zuurstofatomen nog eens.",
    remediation: str = "Hoeveel zuurstofatomen zitten er in één watermolecuul?",
    status: dict | None = None,
) -> str:
    text = (
        f"### VRAAG:\n{question}\n\n"
        f"### JOUW ANTWOORD:\n{answer}\n\n"
        f"### FEEDBACK:\n{feedback}\n\n"
        f"### REMEDIERENDE VRAAG:\n{remediation}"
    )
    if status is not None:
        text += f"\n\n### STATUS:\n{json.dumps(status)}"
    return text


def initial_envelope(total: int = 3, grade: float = 6.0, **overrides) -> str:
    envelope = {
        "summary": "✅ Reactievergelijkingen goed\n⚠️ Molberekeningen oefenen",
        "initialGrade": grade,
        "learningObjectives": ["Ik kan reactievergelijkingen kloppend maken", "Ik begrijp de mol"],
        "totalQuestions": total,
        "firstQuestionFeedback": structured_feedback(),
    }
    envelope.update(overrides)
    return "```json\n" + json.dumps(envelope, ensure_ascii=False) + "\n```"


class ScriptedGateway(BaseOracleGateway):
    """Replays canned oracle output.

    Each entry in `turns` is a string, a list of fragments, or an exception.
    A fragment list may itself contain an exception, raised after the fragments
    before it. When `gate` is set, the stream pauses after its first fragment
    until the event fires.
    """

    provider_name = "scripted"

    def __init__(self, initial: str | Exception | None = None, turns: list | None = None):
        self.initial = initial_envelope() if initial is None else initial
        self.turns = list(turns or [])
        self.prompts: list[str] = []
        self.images: list[list] = []
        self.gate: asyncio.Event | None = None
        self.closed_streams = 0

    async def generate(self, prompt, *, images=()):
        self.prompts.append(prompt)
        self.images.append(list(images))
        if isinstance(self.initial, Exception):
            raise self.initial
        return self.initial

    async def generate_stream(self, prompt, *, images=()):
        self.prompts.append(prompt)
        self.images.append(list(images))
        script = self.turns.pop(0)
        if isinstance(script, Exception):
            raise script
        fragments = [script] if isinstance(script, str) else list(script)
        try:
            for i, fragment in enumerate(fragments):
                if isinstance(fragment, Exception):
                    raise fragment
                if i == 1 and self.gate is not None:
                    await self.gate.wait()
                yield fragment
        finally:
            self.closed_streams += 1


@pytest.fixture(scope="session")
def client() -> TestClient:
    with TestClient(app) as tc:
        yield tc


@pytest.fixture
def install_gateway():
    """Route the app to a fresh SessionManager backed by the given gateway."""
    installed: list[SessionManager] = []

    def _install(gateway: BaseOracleGateway) -> SessionManager:
        manager = SessionManager(gateway)
        app.dependency_overrides[get_session_manager] = lambda: manager
        installed.append(manager)
        return manager

    reset_metrics()
    yield _install
    app.dependency_overrides.pop(get_session_manager, None)
