from fastapi.testclient import TestClient

from veritas.api.main import app
from veritas.assistant.engine import DecisionEngine
from veritas.internal_core.session_store import InMemorySessionStore
from veritas.live.speech import RecordingSpeechOutput


def _client_with_fresh_state() -> TestClient:
    app.state.decision_engine = DecisionEngine()
    app.state.live_session_store = InMemorySessionStore(ttl_seconds=3600)
    app.state.speech_output_factory = RecordingSpeechOutput
    return TestClient(app)


def test_healthz() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_procedures_list_and_detail() -> None:
    client = TestClient(app)

    listed = client.get("/procedures")
    assert listed.status_code == 200
    summaries = {item["id"]: item for item in listed.json()}
    assert summaries["robotic-cholecystectomy"]["stepCount"] == 9

    detail = client.get("/procedures/robotic-cholecystectomy")
    assert detail.status_code == 200
    body = detail.json()
    assert body["steps"][0] == {
        "key": "portPlacement",
        "name": "Port Placement",
        "time": "5-10 min",
        "minSeconds": 300,
        "maxSeconds": 600,
        "estimatedSeconds": 450,
    }
    assert set(body["difficultyRubric"]) == {"1", "2", "3"}

    missing = client.get("/procedures/heart-transplant")
    assert missing.status_code == 404
    assert "Unknown procedure id" in missing.json()["detail"]


def test_evaluate_returns_wire_action() -> None:
    client = _client_with_fresh_state()
    response = client.post(
        "/assistant/evaluate",
        json={
            "transcript": "Hey, Veritas. How how long have we been doing this port placement?",
            "currentState": {
                "currentStepKey": "portPlacement",
                "currentStepName": "Port Placement",
                "timeElapsedInStep": 501,
                "timeElapsedInSession": 501,
                "lastCheckinTime": None,
            },
            "procedureId": "robotic-cholecystectomy",
        },
    )
    assert response.status_code == 200
    assert response.json() == {
        "action": "SPEAK",
        "speak": "We've been on Port Placement for 8 minutes and 21 seconds.",
    }


def test_evaluate_honors_pending_confirmation() -> None:
    client = _client_with_fresh_state()
    response = client.post(
        "/assistant/evaluate",
        json={
            "transcript": "Hey Veritas, confirm we've moved on.",
            "currentState": {"currentStepKey": "portPlacement", "timeElapsedInStep": 155, "timeElapsedInSession": 185},
            "procedureId": "robotic-cholecystectomy",
            "pendingConfirmation": {"proposedStepKey": "robotDocking", "priorStepKey": "portPlacement"},
        },
    )
    assert response.status_code == 200
    assert response.json()["payload"] == {"stepKey": "robotDocking"}


def test_evaluate_suppresses_repeat_of_last_spoken_message() -> None:
    client = _client_with_fresh_state()
    message = (
        "Observing requests to move the robot. It looks like we are moving to 'Docking the robot'. Please confirm."
    )
    response = client.post(
        "/assistant/evaluate",
        json={
            "transcript": "Alright, can you drive the robot here now? A little closer.",
            "currentState": {"currentStepKey": "portPlacement", "timeElapsedInStep": 150, "timeElapsedInSession": 180},
            "procedureId": "robotic-cholecystectomy",
            "lastSpokenMessage": message,
        },
    )
    assert response.status_code == 200
    assert response.json() == {"action": "NONE"}


def test_evaluate_error_paths() -> None:
    client = _client_with_fresh_state()
    unknown = client.post(
        "/assistant/evaluate",
        json={"transcript": "Scalpel, please.", "currentState": {}, "procedureId": "heart-transplant"},
    )
    assert unknown.status_code == 404

    invalid = client.post(
        "/assistant/evaluate",
        json={"transcript": "Scalpel, please.", "currentState": {"timeElapsedInStep": -1}, "procedureId": "x"},
    )
    assert invalid.status_code == 422


def test_live_session_lifecycle() -> None:
    client = _client_with_fresh_state()

    created = client.post("/sessions", json={"procedureId": "robotic-cholecystectomy"})
    assert created.status_code == 200
    body = created.json()
    session_id = body["session"]["sessionId"]
    assert body["status"] == "applied"
    assert body["action"]["action"] == "START_TIMEOUT"
    assert body["session"]["status"] == "active"
    assert body["session"]["state"]["currentStepKey"] == "timeout"

    for speaker, text in (("Attending", "James Harris attending."), ("Resident", "Sam Lee resident.")):
        turn = client.post(f"/sessions/{session_id}/transcript", json={"speaker": speaker, "text": text})
        assert turn.status_code == 200
    assert turn.json()["session"]["state"]["currentStepKey"] == "portPlacement"
    assert turn.json()["spoken"] == "Time-out complete. Ready to begin."

    interim = client.post(
        f"/sessions/{session_id}/transcript", json={"speaker": "Attending", "text": "Scal", "isFinal": False}
    )
    assert interim.json()["status"] == "interim"

    note = client.post(f"/sessions/{session_id}/transcript", json={"speaker": "Attending", "text": "Scalpel, please."})
    assert note.json()["action"] == {"action": "LOG_NOTE", "payload": {"note": "User requested scalpel."}}

    ticked = client.post(f"/sessions/{session_id}/tick", json={"seconds": 30})
    assert ticked.status_code == 200
    assert ticked.json()["session"]["state"]["timeElapsedInStep"] == 30

    snapshot = client.get(f"/sessions/{session_id}")
    assert snapshot.status_code == 200
    assert snapshot.json()["notes"][0]["stepKey"] == "portPlacement"

    transcript = client.get(f"/sessions/{session_id}/transcript")
    assert transcript.status_code == 200
    assert "[Attending] Scalpel, please." in transcript.json()["transcript"]
    assert transcript.json()["notes"][0]["note"] == "User requested scalpel."

    ended = client.post(f"/sessions/{session_id}/end", json={"reason": "user_ended"})
    assert ended.status_code == 200
    assert ended.json()["status"] == "ended"
    assert ended.json()["endReason"] == "user_ended"

    after_end = client.post(f"/sessions/{session_id}/transcript", json={"speaker": "Attending", "text": "Hello?"})
    assert after_end.json()["status"] == "ended"

    audit = client.get(f"/sessions/{session_id}/audit")
    assert audit.status_code == 200
    types = [event["type"] for event in audit.json()["events"]]
    assert types[0] == "SESSION_CREATED"
    assert "SESSION_STARTED" in types
    assert "ACTION_APPLIED" in types
    assert types[-1] == "SESSION_ENDED"
    # Audit detail never carries transcript text.
    assert all("Scalpel" not in event["detail"] for event in audit.json()["events"])

    speech = app.state.live_session_store.get_runner(session_id).speech
    assert speech.spoken[0].startswith("Time-out initiated.")


def test_live_session_error_paths() -> None:
    client = _client_with_fresh_state()

    assert client.post("/sessions", json={"procedureId": "heart-transplant"}).status_code == 404
    assert client.get("/sessions/missing").status_code == 404
    assert client.post("/sessions/missing/tick", json={"seconds": 1}).status_code == 404
    assert (
        client.post("/sessions/missing/transcript", json={"speaker": "Attending", "text": "hi"}).status_code == 404
    )

    created = client.post("/sessions", json={"procedureId": "robotic-cholecystectomy"}).json()
    session_id = created["session"]["sessionId"]
    assert client.post(f"/sessions/{session_id}/tick", json={"seconds": 0}).status_code == 422
    assert client.post(f"/sessions/{session_id}/transcript", json={"speaker": "", "text": "hi"}).status_code == 422

    destroyed = client.delete(f"/sessions/{session_id}")
    assert destroyed.status_code == 200
    assert destroyed.json() == {"status": "destroyed", "session_id": session_id}
    assert client.get(f"/sessions/{session_id}").status_code == 404
    assert client.delete(f"/sessions/{session_id}").status_code == 404
