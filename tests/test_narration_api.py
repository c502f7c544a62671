from fastapi.testclient import TestClient

from app.main import app
from gm_os.lore_guard import GUARD_REPLY
from gm_os.memory_store import MemoryStoreError
from gm_os.world import create_initial_world_state

OUTCOME = {
    "result": {"entityType": "quest", "toState": "Terminée", "impactScope": "local"},
    "historyEntry": {"transitionId": "t-1", "entityId": "q-1", "at": "2026-01-01T10:00:00Z"},
}


def test_health_reports_database_state(monkeypatch) -> None:
    client = TestClient(app)
    monkeypatch.setattr("app.main.check_db_connection", lambda: None)
    assert client.get("/health").json() == {"status": "ok"}

    def broken() -> None:
        raise RuntimeError("down")

    monkeypatch.setattr("app.main.check_db_connection", broken)
    assert client.get("/health").status_code == 503


def test_chat_returns_clean_payload_with_debug_channel() -> None:
    client = TestClient(app)
    response = client.post("/api/narration/chat", json={"message": "Je fouille le coffre"})

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"
    assert response.headers["content-type"] == "application/json; charset=utf-8"
    body = response.json()
    assert body["reply"].startswith("Tu te trouves à Parvis des Archives, Lysenthe.")
    assert body["mjResponse"]["responseType"] == "narration"
    assert "worldState" not in body
    assert body["debug"]["mjContract"]["contractSource"] == "parsed-reply"
    assert body["debug"]["mjContract"]["loreGuardReport"]["blocked"] is False


def test_chat_blocks_incoherent_world_state() -> None:
    world = create_initial_world_state()
    world["time"]["hour"] = 25
    client = TestClient(app)
    response = client.post(
        "/api/narration/chat",
        json={"message": "J'attends la nuit", "worldState": world},
    )
    body = response.json()
    assert body["reply"] == GUARD_REPLY
    assert body["mjResponse"]["responseType"] == "clarification"


def test_chat_debug_command() -> None:
    client = TestClient(app)
    body = client.post("/api/narration/chat", json={"message": "/phase3-debug"}).json()
    assert body["speaker"]["kind"] == "system"
    assert "checkedTurns" in body["debug"]["phase3"]["dod"]


def test_chat_rejects_unknown_mode() -> None:
    client = TestClient(app)
    response = client.post(
        "/api/narration/chat",
        json={"message": "x", "conversationMode": "ooc"},
    )
    assert response.status_code == 422


def test_chat_persists_memory_for_sessions(monkeypatch) -> None:
    saved = {}

    def fake_load(session_id: str) -> dict:
        return {"memory": {"shortTerm": [], "longTerm": []}}

    def fake_save(session_id: str, state: dict) -> None:
        saved[session_id] = state

    monkeypatch.setattr("app.main.load_memory_state", fake_load)
    monkeypatch.setattr("app.main.save_memory_state", fake_save)
    client = TestClient(app)
    response = client.post(
        "/api/narration/chat",
        json={"sessionId": "abc", "message": "Je rends la relique", "outcome": OUTCOME},
    )

    assert response.status_code == 200
    assert len(saved["abc"]["memory"]["longTerm"]) == 1
    assert response.json()["debug"]["outcome"] == OUTCOME


def test_chat_without_session_skips_memory(monkeypatch) -> None:
    def fail(*args, **kwargs):
        raise AssertionError("memory store should not be used")

    monkeypatch.setattr("app.main.load_memory_state", fail)
    monkeypatch.setattr("app.main.save_memory_state", fail)
    client = TestClient(app)
    response = client.post("/api/narration/chat", json={"message": "x", "outcome": OUTCOME})
    assert response.status_code == 200


def test_chat_memory_failure_returns_503(monkeypatch) -> None:
    def broken(session_id: str) -> dict:
        raise MemoryStoreError("Narrative memory unavailable.")

    monkeypatch.setattr("app.main.load_memory_state", broken)
    client = TestClient(app)
    response = client.post(
        "/api/narration/chat",
        json={"sessionId": "abc", "message": "x", "outcome": OUTCOME},
    )
    assert response.status_code == 503
    assert response.json() == {"detail": "Narrative memory unavailable."}


def test_stats_endpoints() -> None:
    client = TestClient(app)
    client.post("/api/narration/chat", json={"message": "Je fouille le coffre"})

    response = client.get("/api/narration/stats/contract")
    assert response.status_code == 200
    body = response.json()
    assert body["collector"] == "contract"
    assert body["stats"]["total"] >= 1
    assert "phase2" in body["stats"]

    routing = client.get("/api/narration/stats/routing").json()
    assert routing["stats"]["turnsWithRouting"] >= 1
    assert client.get("/api/narration/stats/unknown").status_code == 404


def test_preflight_returns_cors_headers() -> None:
    client = TestClient(app)
    response = client.options("/api/narration/chat")
    assert response.status_code == 204
    assert response.headers["access-control-allow-methods"] == "GET, POST, OPTIONS"


def test_chat_survives_nan_in_request_body() -> None:
    client = TestClient(app)
    body = '{"message": "je regarde", "worldState": {"location": {"id": "x"}, "time": {"day": 1, "hour": NaN, "minute": 0}}}'
    response = client.post(
        "/api/narration/chat",
        content=body,
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["reply"] == GUARD_REPLY
    assert payload["debug"]["worldState"]["time"]["hour"] is None
