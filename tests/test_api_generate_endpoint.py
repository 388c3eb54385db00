# tests/test_api_generate_endpoint.py
"""
REST and WebSocket delivery of the generation pipeline.
The app's orchestrator keeps its real stores; the LLM and schema builder are faked.
"""
import threading
import time
import uuid
import pytest
from fastapi.testclient import TestClient

from sqlassist.app import app
from sqlassist import app as app_module
from sqlassist.errors import GenerationFailed, TransportFailure

client = TestClient(app)

SCHEMA_CONTEXT = "Available tables in the database:\n\nTable: ORDERS\n"


class FakeSchemaBuilder:
    def build(self, table_filter=None, deadline=None):
        return SCHEMA_CONTEXT


class FakeLLM:
    def __init__(self, answer=("SELECT * FROM ORDERS", "all orders"), error=None, guidance_error=None):
        self.answer = answer
        self.error = error
        self.guidance_error = guidance_error

    def generate_sql(self, query, schema_context, memory_context="", timeout=None, context=None):
        if self.error:
            raise self.error
        return self.answer

    def generate_sql_stream(self, query, schema_context, memory_context, on_chunk, deadline, context=None):
        if self.error:
            raise self.error
        on_chunk('{"sql": "SELECT * ')
        on_chunk('FROM ORDERS"}')
        return self.answer

    def generate_guidance(self, query, schema_context, issue, timeout=None):
        if self.guidance_error:
            raise self.guidance_error
        return "Ask about ORDERS instead."


@pytest.fixture
def use_llm(monkeypatch):
    monkeypatch.setattr(app_module.orchestrator, "schema_builder", FakeSchemaBuilder())

    def _use(llm):
        monkeypatch.setattr(app_module.orchestrator, "llm", llm)
        return llm
    _use(FakeLLM())
    return _use


def new_session():
    return f"sess-{uuid.uuid4().hex[:8]}"


def test_generate_success(use_llm):
    r = client.post("/api/sql/generate", json={"query": "list every order", "session_id": new_session()})
    assert r.status_code == 200
    j = r.json()
    assert j["status"] == "success"
    assert j["source"] == "llm"
    assert j["sql"] == "SELECT * FROM ORDERS"
    assert j["request_id"]


def test_generate_template_match(use_llm):
    r = client.post("/api/sql/generate", json={"query": "recent store activity", "session_id": new_session()})
    assert r.status_code == 200
    j = r.json()
    assert j["source"] == "template"
    assert j["template_id"] == "store_recent_activity"


def test_generate_blank_query_is_422(use_llm):
    r = client.post("/api/sql/generate", json={"query": "   "})
    assert r.status_code == 422


def test_generate_guidance(use_llm):
    use_llm(FakeLLM(answer=("", "no such data")))
    r = client.post("/api/sql/generate", json={"query": "weather tomorrow", "session_id": new_session()})
    assert r.status_code == 200
    j = r.json()
    assert j["status"] == "success"
    assert j["source"] == "assistant_hint"
    assert j["sql"] == ""
    assert j["reasoning"] == "Ask about ORDERS instead."


def test_generate_failure_is_200_error_envelope(use_llm):
    use_llm(FakeLLM(error=GenerationFailed("bad"), guidance_error=GenerationFailed("worse")))
    r = client.post("/api/sql/generate", json={"query": "weather tomorrow", "request_id": "gen-fail-1"})
    assert r.status_code == 200
    j = r.json()
    assert j["status"] == "error"
    assert j["error_code"] == "E_GENERATION_FAILED"
    assert j["request_id"] == "gen-fail-1"


def test_generate_transport_failure_is_503(use_llm):
    use_llm(FakeLLM(error=TransportFailure("LLM unreachable")))
    r = client.post("/api/sql/generate", json={"query": "list every order", "request_id": "gen-503"})
    assert r.status_code == 503
    j = r.json()
    assert j["error_code"] == "E_TRANSPORT"
    assert j["request_id"] == "gen-503"


def test_status_after_generation(use_llm):
    rid = f"status-{uuid.uuid4().hex[:8]}"
    client.post("/api/sql/generate", json={"query": "list every order", "request_id": rid})
    r = client.get(f"/api/sql/generate/status/{rid}")
    assert r.status_code == 200
    j = r.json()
    assert j["request_id"] == rid
    assert j["done"] is True
    assert j["success"] is True
    assert j["stage"] == "completed"


def test_status_unknown_is_pending():
    r = client.get("/api/sql/generate/status/never-seen")
    assert r.status_code == 200
    assert r.json()["stage"] == "pending"


def test_sessions_and_history(use_llm):
    user = f"user-{uuid.uuid4().hex[:8]}"
    session = new_session()
    headers = {"x-user-id": user}
    client.post("/api/sql/generate", headers=headers, json={"query": "list every order", "session_id": session})
    client.post("/api/sql/generate", headers=headers, json={"query": "only big ones", "session_id": session})

    r = client.get("/api/sql/sessions", headers=headers)
    assert r.status_code == 200
    sessions = r.json()["sessions"]
    assert [s["session_id"] for s in sessions] == [session]
    assert sessions[0]["turns"] == 2

    r = client.get(f"/api/sql/sessions/{session}/history", headers=headers)
    history = r.json()["history"]
    assert [h["query"] for h in history] == ["list every order", "only big ones"]

    # another caller sees nothing
    r = client.get("/api/sql/sessions", headers={"x-user-id": "someone-else-" + user})
    assert r.json()["sessions"] == []


def test_templates_listed():
    r = client.get("/api/sql/templates")
    assert r.status_code == 200
    ids = [t["template_id"] for t in r.json()["templates"]]
    assert "store_recent_activity" in ids


def _collect(ws):
    frames = []
    while True:
        frame = ws.receive_json()
        frames.append(frame)
        if frame["type"] in ("complete", "error"):
            return frames


def test_ws_streams_progress_chunks_and_complete(use_llm):
    with client.websocket_connect("/api/ws/sql") as ws:
        ws.send_json({"query": "list every order", "session_id": new_session(), "request_id": "ws-1"})
        frames = _collect(ws)

    kinds = [f["type"] for f in frames]
    assert kinds[0] == "progress"
    assert frames[0]["stage"] == "received"
    assert "chunk" in kinds
    assert kinds[-1] == "complete"
    assert kinds.count("complete") == 1
    assert frames[-1]["sql"] == "SELECT * FROM ORDERS"
    assert frames[-1]["request_id"] == "ws-1"
    assert "".join(f["text"] for f in frames if f["type"] == "chunk") == '{"sql": "SELECT * FROM ORDERS"}'


def test_ws_error_frame(use_llm):
    use_llm(FakeLLM(error=TransportFailure("LLM unreachable")))
    with client.websocket_connect("/api/ws/sql") as ws:
        ws.send_json({"query": "list every order"})
        frames = _collect(ws)
    assert frames[-1]["type"] == "error"
    assert frames[-1]["error_code"] == "E_TRANSPORT"
    assert "chunk" not in [f["type"] for f in frames]


def test_ws_invalid_request(use_llm):
    with client.websocket_connect("/api/ws/sql") as ws:
        ws.send_json({"query": ""})
        frame = ws.receive_json()
    assert frame["type"] == "error"
    assert frame["error_code"] == "E_BAD_REQUEST"


class BlockingLLM(FakeLLM):
    """Streams nothing until the request is cancelled or five seconds pass."""

    def __init__(self):
        super().__init__()
        self.started = threading.Event()
        self.saw_cancel = threading.Event()

    def generate_sql_stream(self, query, schema_context, memory_context, on_chunk, deadline, context=None):
        self.started.set()
        stop_at = time.monotonic() + 5
        while time.monotonic() < stop_at:
            if deadline.cancelled:
                self.saw_cancel.set()
                break
            time.sleep(0.01)
        deadline.check("llm stream")
        return self.answer


def test_ws_disconnect_cancels_generation(use_llm):
    llm = use_llm(BlockingLLM())
    with client.websocket_connect("/api/ws/sql") as ws:
        ws.send_json({"query": "list every order", "session_id": new_session()})
        assert ws.receive_json()["type"] == "progress"
        assert llm.started.wait(5)
    # no frame is sent after the close, so only the disconnect itself can cancel
    assert llm.saw_cancel.wait(5)
