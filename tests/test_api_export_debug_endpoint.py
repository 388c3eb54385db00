# tests/test_api_export_debug_endpoint.py
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from sqlassist.app import app
from sqlassist import app as app_module
from sqlassist.errors import GenerationFailed, TransportFailure
from sqlassist.executor import SQLExecutor, ColumnCommentCache
from sqlassist.schemas import DebugSuggestion
from sqlassist.warehouse import WarehouseClient, make_warehouse_engine

client = TestClient(app)


@pytest.fixture
def warehouse(tmp_path, monkeypatch):
    engine = make_warehouse_engine(f"sqlite:///{tmp_path / 'wh.db'}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE STORES (STORE_ID INTEGER PRIMARY KEY, STORE_NAME TEXT, OWNER_EMAIL TEXT)"))
        conn.execute(text(
            "INSERT INTO STORES VALUES (1, 'North & Co', 'n@example.com'), (2, 'South', 's@example.com'), "
            "(3, 'East', NULL)"
        ))
    wh = WarehouseClient(engine)
    monkeypatch.setattr(wh, "fetch_column_comments", lambda names, timeout=None: {})
    # page size cap of 2 must not limit exports
    executor = SQLExecutor(wh, ColumnCommentCache(), default_page_size=2, max_page_size=2,
                           sensitive_columns=["OWNER_EMAIL"])
    monkeypatch.setattr(app_module, "executor", executor)
    yield wh
    wh.dispose()


def test_export_excel_document(warehouse):
    r = client.post("/api/sql/export", json={"sql": "SELECT * FROM STORES ORDER BY STORE_ID"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/vnd.ms-excel")
    disposition = r.headers["content-disposition"]
    assert disposition.startswith('attachment; filename="sql_result_')
    assert '.xls"' in disposition
    body = r.text
    assert "<th>STORE_ID</th><th>STORE_NAME</th><th>OWNER_EMAIL</th>" in body
    assert "<td>North &amp; Co</td>" in body
    assert body.count("<tr><td>") == 3
    assert "n@example.com" not in body
    assert "Rows: 3</p>" in body


def test_export_word_with_filename_and_limit(warehouse):
    r = client.post("/api/sql/export", json={
        "sql": "SELECT STORE_NAME FROM STORES ORDER BY STORE_ID", "format": " WORD ",
        "filename": 'stores/"q1"', "limit": 1,
    })
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/msword")
    assert 'filename="stores_q1.doc"' in r.headers["content-disposition"]
    assert r.text.count("<tr><td>") == 1
    assert "(limited to the first 1)" in r.text


def test_export_empty_result(warehouse):
    r = client.post("/api/sql/export", json={"sql": "SELECT * FROM STORES WHERE 1 = 0"})
    assert r.status_code == 200
    assert '<td class="empty" colspan="3">No data</td>' in r.text


def test_export_rejected_sql(warehouse):
    r = client.post("/api/sql/export", json={"sql": "DROP TABLE STORES"})
    assert r.status_code == 200
    assert r.json()["error_code"] == "E_SQL_REJECTED"


def test_export_engine_error(warehouse):
    r = client.post("/api/sql/export", json={"sql": "SELECT NOPE FROM STORES"})
    assert r.status_code == 200
    assert r.json()["error_code"] == "E_EXECUTION_FAILED"


@pytest.mark.parametrize("body", [
    {"sql": "SELECT 1", "format": "pdf"},
    {"sql": "SELECT 1", "limit": 0},
])
def test_export_malformed_request_is_422(warehouse, body):
    assert client.post("/api/sql/export", json=body).status_code == 422


def test_export_row_cap(warehouse, monkeypatch):
    seen = {}
    real = app_module.executor.fetch_for_export

    def spy(sql, limit, timeout_seconds=None):
        seen["limit"] = limit
        return real(sql, limit, timeout_seconds)

    monkeypatch.setattr(app_module.executor, "fetch_for_export", spy)
    client.post("/api/sql/export", json={"sql": "SELECT 1", "limit": 10 ** 6})
    assert seen["limit"] == app_module.settings.export_max_rows
    client.post("/api/sql/export", json={"sql": "SELECT 1"})
    assert seen["limit"] == 1000


class FakeSchemaBuilder:
    def build(self, table_filter=None, deadline=None):
        return "Available tables in the database:\n\nTable: STORES\n"


class FakeDebugLLM:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def debug_sql(self, sql, error, schema_context, timeout=None):
        self.calls.append((sql, error, schema_context))
        if self.error:
            raise self.error
        return DebugSuggestion(
            analysis_text="STORE_NM does not exist.",
            suggested_sql="SELECT STORE_NAME FROM STORES",
            explanation="Renamed the column.",
        )


@pytest.fixture
def debug_llm(monkeypatch):
    monkeypatch.setattr(app_module.orchestrator, "schema_builder", FakeSchemaBuilder())

    def _use(llm):
        monkeypatch.setattr(app_module.orchestrator, "llm", llm)
        return llm
    return _use


def test_debug_success(debug_llm):
    llm = debug_llm(FakeDebugLLM())
    r = client.post("/api/sql/debug", json={"sql": "SELECT STORE_NM FROM STORES", "error": "no such column: STORE_NM"})
    assert r.status_code == 200
    j = r.json()
    assert j["status"] == "success"
    assert j["debug"]["suggested_sql"] == "SELECT STORE_NAME FROM STORES"
    assert llm.calls[0][1] == "no such column: STORE_NM"
    assert "Table: STORES" in llm.calls[0][2]


def test_debug_generation_failure_is_200_envelope(debug_llm):
    debug_llm(FakeDebugLLM(error=GenerationFailed("Debug response was not JSON")))
    r = client.post("/api/sql/debug", json={"sql": "SELECT 1", "error": "boom"})
    assert r.status_code == 200
    assert r.json()["error_code"] == "E_GENERATION_FAILED"


def test_debug_transport_failure_is_503(debug_llm):
    debug_llm(FakeDebugLLM(error=TransportFailure("LLM unreachable")))
    r = client.post("/api/sql/debug", json={"sql": "SELECT 1", "error": "boom"})
    assert r.status_code == 503


def test_debug_requires_error_text(debug_llm):
    debug_llm(FakeDebugLLM())
    assert client.post("/api/sql/debug", json={"sql": "SELECT 1", "error": "  "}).status_code == 422
