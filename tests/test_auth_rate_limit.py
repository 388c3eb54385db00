# tests/test_auth_rate_limit.py
"""
Tests for API key auth, caller identity and rate limiting.

These tests set MOCK_AUTH=false and configure test API keys with a very small
rate limit. They use monkeypatch to control the auth module's settings so they
don't interfere with other tests (which run with MOCK_AUTH=true by default).
"""
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from sqlassist.app import app
from sqlassist import app as app_module
from sqlassist import auth as authmod
from sqlassist.auth import InMemoryFixedWindowLimiter
from sqlassist.delivery import GenerationSink
from sqlassist.schemas import GenerationResult

SEEN_USERS = []


def fake_run(request, user_id, sink: GenerationSink, channel="rest", cancel_event=None):
    SEEN_USERS.append(user_id)
    result = GenerationResult(sql="SELECT 1 FROM DUAL", source="llm", request_id=request.request_id)
    sink.on_complete(result)
    return result


@pytest.fixture
def client():
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture(autouse=True)
def setup_auth(monkeypatch):
    """Configure auth for testing: disable mock, set test keys, small rate limit."""
    monkeypatch.setattr(authmod, "MOCK_AUTH", False)
    monkeypatch.setattr(authmod, "API_KEYS", {"test-key-123": "analyst-1", "other-key": "analyst-2"})

    # Replace the rate limiter with a fresh one (small limit)
    limiter = InMemoryFixedWindowLimiter(limit_per_minute=3)
    monkeypatch.setattr(authmod, "_rate_limiter", limiter)

    # Patch orchestrator to return simple success
    monkeypatch.setattr(app_module.orchestrator, "run", fake_run)
    SEEN_USERS.clear()
    yield


def test_missing_api_key_rejected(client):
    r = client.post("/api/sql/generate", json={"query": "hello"})
    assert r.status_code == 401


def test_wrong_api_key_rejected(client):
    headers = {"x-api-key": "wrong-key"}
    r = client.post("/api/sql/generate", headers=headers, json={"query": "hello"})
    assert r.status_code == 401


def test_valid_key_accepted(client):
    headers = {"x-api-key": "test-key-123"}
    r = client.post("/api/sql/generate", headers=headers, json={"query": "hello"})
    assert r.status_code == 200
    assert r.json()["status"] == "success"


def test_identity_bound_to_key_not_header(client):
    headers = {"x-api-key": "test-key-123", "x-user-id": "someone-else"}
    client.post("/api/sql/generate", headers=headers, json={"query": "hello"})
    assert SEEN_USERS == ["analyst-1"]


def test_rate_limit_enforced(client):
    headers = {"x-api-key": "test-key-123"}
    # 3 allowed, 4th should be 429
    for i in range(3):
        r = client.post("/api/sql/generate", headers=headers, json={"query": f"req {i}"})
        assert r.status_code == 200, f"Request {i+1} should succeed"

    r4 = client.post("/api/sql/generate", headers=headers, json={"query": "req 4"})
    assert r4.status_code == 429
    assert r4.json().get("error_code") == "E_RATE_LIMIT"
    assert "Retry-After" in r4.headers

    # limits are per key
    r5 = client.post("/api/sql/generate", headers={"x-api-key": "other-key"}, json={"query": "req 5"})
    assert r5.status_code == 200


def test_rate_limit_resets_in_new_window(client):
    """Verify rate limit resets after crossing the minute window boundary."""
    headers = {"x-api-key": "test-key-123"}

    # Exhaust the limit
    for i in range(3):
        client.post("/api/sql/generate", headers=headers, json={"query": f"req {i}"})
    r = client.post("/api/sql/generate", headers=headers, json={"query": "blocked"})
    assert r.status_code == 429

    # Simulate advancing to the next minute window by manipulating the limiter's store
    limiter = authmod._rate_limiter
    with limiter._lock:
        for key in limiter._store:
            old_window, count = limiter._store[key]
            limiter._store[key] = (old_window - 2, count)

    r = client.post("/api/sql/generate", headers=headers, json={"query": "after reset"})
    assert r.status_code == 200


def test_execute_requires_key(client):
    r = client.post("/api/sql/execute", json={"sql": "SELECT 1"})
    assert r.status_code == 401


def test_ws_rejects_missing_key(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/api/ws/sql") as ws:
            ws.receive_json()


def test_ws_accepts_key_in_query(client):
    with client.websocket_connect("/api/ws/sql?api_key=test-key-123") as ws:
        ws.send_json({"query": "hello"})
        frame = ws.receive_json()
    assert frame["type"] == "complete"
    assert SEEN_USERS == ["analyst-1"]


def test_health_not_rate_limited(client):
    """Health endpoint should not be affected by auth/rate limiting."""
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_metrics_not_rate_limited(client):
    """Metrics endpoint should not be affected by auth."""
    r = client.get("/metrics")
    assert r.status_code in (200, 404)  # 200 if prometheus enabled, 404 if not


def test_mock_mode_takes_claimed_identity(monkeypatch):
    monkeypatch.setattr(authmod, "MOCK_AUTH", True)
    assert authmod.resolve_user_id(None, " bob ") == "bob"
    assert authmod.resolve_user_id(None, None) == authmod.ANONYMOUS_USER


def test_key_file_entries(tmp_path, monkeypatch):
    keys = tmp_path / "keys.txt"
    keys.write_text("# comment\nk1:alice\nk2\n\n", encoding="utf-8")
    monkeypatch.setattr(authmod, "API_KEYS_ENV", "k3:carol")
    monkeypatch.setattr(authmod, "API_KEYS_FILE", str(keys))
    assert authmod._load_api_keys() == {"k3": "carol", "k1": "alice", "k2": "k2"}
