from __future__ import annotations

import io
import json
import uuid

from examcoach.core.errors import UpstreamError
from examcoach.core.oracle_gateway import NullOracleGateway

from conftest import ScriptedGateway, initial_envelope, structured_feedback

EXAM_TEXT = "1. Wat is de formule van water?\nAntwoord: H2O2\n2. Wat is een mol?\nAntwoord: een stof"


def _start(client, **extra):
    body = {"action": "initial_analysis", "examContent": EXAM_TEXT, "fileName": "toets.txt", **extra}
    return client.post("/analyze", json=body)


def _status(resolved=True, complete=False, grade=None):
    return {"questionResolved": resolved, "isComplete": complete, "finalGrade": grade}


def test_happy_path_analyze_stream_and_complete(client, install_gateway):
    gateway = ScriptedGateway(
        initial=initial_envelope(total=2, grade=6.0),
        turns=[
            ["### VRAAG:\nWat is een mol?\n", "### JOUW ANTWOORD:\neen stof\n### FEEDBACK:\nBijna.\n",
             "### REMEDIERENDE VRAAG:\nHoeveel deeltjes?\n### STATUS:\n" + json.dumps(_status())],
            "## Eindoverzicht\nGoed gewerkt!\n### STATUS:\n" + json.dumps(_status(complete=True, grade=8.1)),
        ],
    )
    install_gateway(gateway)

    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["oracle_provider"] == "scripted"

    start = _start(client)
    assert start.status_code == 200
    data = start.json()
    assert data["success"] is True
    session_id = data["sessionId"]
    assert data["totalQuestions"] == 2
    assert data["currentQuestion"] == 1
    assert data["questionProgress"] == {"1": "reviewing", "2": "pending"}
    assert data["initialGrade"] == 6.0
    assert data["finalGrade"] is None
    assert data["parsedFeedback"]["isStructured"] is True
    assert data["analysisIsFallback"] is False
    assert data["sourceKind"] == "text"

    streamed = client.post("/stream", json={"sessionId": session_id, "studentResponse": "een stof", "currentQuestion": 1})
    assert streamed.status_code == 200
    assert streamed.headers["content-type"].startswith("text/plain")
    assert "### REMEDIERENDE VRAAG:\nHoeveel deeltjes?" in streamed.text

    snapshot = client.get(f"/sessions/{session_id}").json()
    assert snapshot["currentQuestion"] == 2
    assert snapshot["questionProgress"] == {"1": "completed", "2": "reviewing"}
    assert snapshot["parsedFeedback"]["remediationQuestion"] == "Hoeveel deeltjes?"
    assert [turn["speaker"] for turn in snapshot["history"]] == ["teacher", "student", "teacher"]
    assert snapshot["busy"] is False

    final = client.post(
        "/analyze",
        json={"action": "continue_feedback", "sessionId": session_id, "studentResponse": "6,02 × 10²³"},
    )
    assert final.status_code == 200
    done = final.json()
    assert done["isComplete"] is True
    assert done["finalGrade"] == 8.1

    again = client.post("/stream", json={"sessionId": session_id, "studentResponse": "nog iets"})
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "invalid_transition"

    metrics = client.get("/metrics/app").json()
    assert metrics["turns_committed"] == 2
    assert metrics["active_sessions"] == 1


def test_unknown_session_is_404_envelope(client, install_gateway):
    install_gateway(ScriptedGateway())
    response = client.post("/stream", json={"sessionId": str(uuid.uuid4()), "studentResponse": "antwoord"})
    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "session_not_found"
    assert "Session not found or expired" in str(body)
    assert body["error"]["request_id"] == response.headers["x-request-id"]


def test_missing_credential_returns_config_error(client, install_gateway):
    install_gateway(NullOracleGateway())
    response = _start(client)
    assert response.status_code == 500
    error = response.json()["error"]
    assert error["code"] == "config_error"
    assert "LLM_PROVIDER" in error["message"]


def test_upstream_failure_before_stream_is_error_envelope(client, install_gateway):
    gateway = ScriptedGateway(turns=[UpstreamError(details={"reason": "timeout"})])
    install_gateway(gateway)
    session_id = _start(client).json()["sessionId"]

    response = client.post("/stream", json={"sessionId": session_id, "studentResponse": "antwoord"})
    assert response.status_code == 502
    assert response.json()["error"]["code"] == "upstream_error"
    assert client.get(f"/sessions/{session_id}").json()["history"][-1]["speaker"] == "teacher"


def test_failure_mid_stream_ends_body_without_commit(client, install_gateway):
    gateway = ScriptedGateway(turns=[["### VRAAG:\nDeel", UpstreamError()]])
    install_gateway(gateway)
    session_id = _start(client).json()["sessionId"]

    response = client.post("/stream", json={"sessionId": session_id, "studentResponse": "antwoord"})
    assert response.status_code == 200
    assert response.text == "### VRAAG:\nDeel"
    snapshot = client.get(f"/sessions/{session_id}").json()
    assert snapshot["currentQuestion"] == 1
    assert len(snapshot["history"]) == 1


def test_malformed_envelope_fallback_is_labelled(client, install_gateway):
    install_gateway(ScriptedGateway(initial="Ik zie geen vragen in deze toets."))
    data = _start(client).json()
    assert data["analysisIsFallback"] is True
    assert data["totalQuestions"] == 5
    assert data["feedback"] == "Ik zie geen vragen in deze toets."
    assert data["parsedFeedback"]["isStructured"] is False


def test_image_exam_is_detected_from_data_url(client, install_gateway):
    gateway = ScriptedGateway()
    install_gateway(gateway)
    response = client.post(
        "/analyze",
        json={"action": "initial_analysis", "examContent": "data:image/png;base64,iVBORw0KGgo=", "fileName": "foto.png"},
    )
    assert response.json()["sourceKind"] == "image"
    assert gateway.images[0] == [("image/png", "iVBORw0KGgo=")]


def test_request_validation_uses_error_envelope(client, install_gateway):
    install_gateway(ScriptedGateway())
    bad_action = client.post("/analyze", json={"action": "grade_everything"})
    assert bad_action.status_code == 422
    assert bad_action.json()["error"]["code"] == "validation_error"

    empty_exam = client.post("/analyze", json={"action": "initial_analysis", "examContent": "  "})
    assert empty_exam.status_code == 400
    assert empty_exam.json()["error"]["code"] == "http_error"

    no_answer = client.post("/analyze", json={"action": "continue_feedback", "sessionId": "x", "studentResponse": ""})
    assert no_answer.status_code == 400


def test_abandoned_session_is_gone(client, install_gateway):
    install_gateway(ScriptedGateway(turns=[structured_feedback()]))
    session_id = _start(client).json()["sessionId"]
    deleted = client.delete(f"/sessions/{session_id}")
    assert deleted.status_code == 200
    assert deleted.json()["abandoned"] is True
    assert client.get(f"/sessions/{session_id}").status_code == 404
    assert client.delete(f"/sessions/{session_id}").status_code == 404


def test_event_stream_replays_completion(client, install_gateway):
    done = "Eindoverzicht\n### STATUS:\n" + json.dumps(_status(complete=True))
    install_gateway(ScriptedGateway(turns=[done]))
    session_id = _start(client).json()["sessionId"]
    client.post("/analyze", json={"action": "continue_feedback", "sessionId": session_id, "studentResponse": "klaar"})

    with client.stream("GET", f"/sessions/{session_id}/events") as response:
        assert response.headers["content-type"].startswith("text/event-stream")
        body = "".join(response.iter_text())
    assert body.startswith("event: session_completed\n")
    payload = json.loads(body.split("data: ", 1)[1])
    assert payload["data"]["isComplete"] is True
    assert payload["data"]["finalGrade"] == 7.5


def test_upload_document_returns_extracted_text(client, install_gateway):
    install_gateway(ScriptedGateway())
    files = {"file": ("antwoorden.txt", io.BytesIO("Vraag 1: H₂O is water".encode("utf-8")), "text/plain")}
    response = client.post("/upload-document", files=files)
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["filename"] == "antwoorden.txt"
    assert body["content"] == "Vraag 1: H₂O is water"
    assert body["wordCount"] == 5
    assert body["sourceKind"] == "text"

    rejected = client.post("/upload-document", files={"file": ("toets.xlsx", io.BytesIO(b"x"), "application/octet-stream")})
    assert rejected.status_code == 400
    assert rejected.json()["error"]["code"] == "document_extraction_error"


def test_oversized_upload_is_rejected_with_413(client, install_gateway, monkeypatch):
    from examcoach.core.settings import settings

    install_gateway(ScriptedGateway())
    monkeypatch.setattr(settings, "max_upload_bytes", 16)
    files = {"file": ("antwoorden.txt", io.BytesIO(b"x" * 4096), "text/plain")}
    response = client.post("/upload-document", files=files)
    assert response.status_code == 413
    assert response.json()["error"]["code"] == "upload_too_large"
