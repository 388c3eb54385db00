# tests/test_sql_generator.py
import json
import pytest

import sqlassist.processors.sql_generator as sgen
from sqlassist.deadline import Deadline
from sqlassist.errors import GenerationFailed, GenerationTimeout

SCHEMA_CONTEXT = "Available tables in the database:\n\nTable: ORDERS\nColumns:\n  - ORDER_ID (NUMBER)\n"


def test_parse_plain_json():
    sql, reasoning = sgen.parse_model_response(json.dumps({"sql": "SELECT 1 FROM DUAL", "reasoning": "trivial"}))
    assert sql == "SELECT 1 FROM DUAL"
    assert reasoning == "trivial"


def test_parse_fenced_json_and_fenced_sql():
    text = "```json\n" + json.dumps({"sql": "```sql\nSELECT * FROM ORDERS\n```", "reasoning": "r"}) + "\n```"
    sql, _ = sgen.parse_model_response(text)
    assert sql == "SELECT * FROM ORDERS"


def test_parse_json_with_leading_chatter():
    text = 'Here you go: {"sql": "SELECT 2 FROM DUAL", "reasoning": "ok"} hope that helps'
    assert sgen.parse_model_response(text)[0] == "SELECT 2 FROM DUAL"


def test_needs_guidance_status_blanks_sql():
    text = json.dumps({"sql": "SELECT nothing", "reasoning": "no such table", "status": "needs_guidance"})
    assert sgen.parse_model_response(text) == ("", "no such table")


def test_non_json_text_is_bare_sql():
    assert sgen.parse_model_response("ERROR: table not found") == ("ERROR: table not found", "")


def test_schema_violation_raises():
    with pytest.raises(GenerationFailed):
        sgen.parse_model_response(json.dumps({"sql": "SELECT 1"}))


def test_empty_text():
    assert sgen.parse_model_response("  ") == ("", "")


def test_prompt_puts_history_before_schema():
    prompt = sgen._build_user_prompt("and for last month?", SCHEMA_CONTEXT,
                                     "1) USER: orders this month\n   SQL: SELECT 1\n", context="fiscal year starts in April")
    assert prompt.index("CONVERSATION_HISTORY:") < prompt.index("DATABASE_SCHEMA:")
    assert prompt.index("DATABASE_SCHEMA:") < prompt.index("EXTRA_CONTEXT:") < prompt.index("USER_QUERY:")
    assert prompt.rstrip().endswith("and for last month?")


def test_prompt_without_history():
    prompt = sgen._build_user_prompt("count orders", "")
    assert "CONVERSATION_HISTORY" not in prompt
    assert "DATABASE_SCHEMA:\n(none)" in prompt


def test_mock_mode_selects_first_table(monkeypatch):
    monkeypatch.setattr(sgen, "MOCK_SQL_MODE", True)
    sql, reasoning = sgen.generate_sql("list orders", SCHEMA_CONTEXT)
    assert sql == "SELECT * FROM ORDERS"
    assert "ORDERS" in reasoning


def test_mock_mode_without_tables_needs_guidance(monkeypatch):
    monkeypatch.setattr(sgen, "MOCK_SQL_MODE", True)
    sql, _ = sgen.generate_sql("list orders", "Database schema metadata is unavailable.")
    assert sql == ""


def test_real_path_uses_llm_call(monkeypatch):
    seen = {}

    def fake_call(prompt_text, timeout=None, system_prompt=sgen.SYSTEM_PROMPT, max_tokens=2048):
        seen["prompt"] = prompt_text
        seen["timeout"] = timeout
        return json.dumps({"sql": "SELECT COUNT(*) FROM ORDERS", "reasoning": "count"})

    monkeypatch.setattr(sgen, "MOCK_SQL_MODE", False)
    monkeypatch.setattr(sgen, "_call_llm", fake_call)
    sql, reasoning = sgen.generate_sql("how many orders", SCHEMA_CONTEXT, timeout=12.5)
    assert sql == "SELECT COUNT(*) FROM ORDERS"
    assert seen["timeout"] == 12.5
    assert "USER_QUERY:\nhow many orders" in seen["prompt"]


def test_stream_forwards_chunks(monkeypatch):
    monkeypatch.setattr(sgen, "MOCK_SQL_MODE", True)
    chunks = []
    sql, _ = sgen.generate_sql_stream("list orders", SCHEMA_CONTEXT, "", chunks.append, Deadline(10))
    assert sql == "SELECT * FROM ORDERS"
    assert len(chunks) > 1
    assert json.loads("".join(chunks))["sql"] == "SELECT * FROM ORDERS"


def test_stream_stops_when_deadline_expires(monkeypatch):
    monkeypatch.setattr(sgen, "MOCK_SQL_MODE", True)
    with pytest.raises(GenerationTimeout):
        sgen.generate_sql_stream("list orders", SCHEMA_CONTEXT, "", lambda t: None, Deadline(0))


def test_guidance_real_path(monkeypatch):
    monkeypatch.setattr(sgen, "MOCK_SQL_MODE", False)
    monkeypatch.setattr(sgen, "_call_llm", lambda *a, **k: "  Try asking about ORDERS.  ")
    assert sgen.generate_guidance("q", SCHEMA_CONTEXT, "not found") == "Try asking about ORDERS."


def test_empty_guidance_is_failure(monkeypatch):
    monkeypatch.setattr(sgen, "MOCK_SQL_MODE", False)
    monkeypatch.setattr(sgen, "_call_llm", lambda *a, **k: "")
    with pytest.raises(GenerationFailed):
        sgen.generate_guidance("q", SCHEMA_CONTEXT, "not found")


def test_mock_guidance_names_tables(monkeypatch):
    monkeypatch.setattr(sgen, "MOCK_SQL_MODE", True)
    assert "ORDERS" in sgen.generate_guidance("q", SCHEMA_CONTEXT, "not found")


def test_parse_debug_response():
    text = "```json\n" + json.dumps({
        "analysis_text": " ORDER_DT is not a column. ",
        "suggested_sql": "```sql\nSELECT ORDER_DATE FROM ORDERS\n```",
    }) + "\n```"
    suggestion = sgen.parse_debug_response(text)
    assert suggestion.analysis_text == "ORDER_DT is not a column."
    assert suggestion.suggested_sql == "SELECT ORDER_DATE FROM ORDERS"
    assert suggestion.explanation == ""


@pytest.mark.parametrize("text", [
    "The column is misspelled.",
    json.dumps({"analysis_text": "no fix offered"}),
    json.dumps(["not", "an", "object"]),
])
def test_debug_response_needs_the_json_contract(text):
    with pytest.raises(GenerationFailed):
        sgen.parse_debug_response(text)


def test_debug_prompt_sections():
    prompt = sgen._build_debug_prompt(" SELECT X FROM ORDERS ", "no such column: X", SCHEMA_CONTEXT)
    assert prompt.index("DATABASE_SCHEMA:") < prompt.index("FAILING_SQL:\nSELECT X FROM ORDERS")
    assert prompt.rstrip().endswith("DATABASE_ERROR:\nno such column: X")


def test_mock_debug_echoes_statement(monkeypatch):
    monkeypatch.setattr(sgen, "MOCK_SQL_MODE", True)
    suggestion = sgen.debug_sql("SELECT X FROM ORDERS;", "no such column: X", SCHEMA_CONTEXT)
    assert suggestion.suggested_sql == "SELECT X FROM ORDERS"
    assert "no such column: X" in suggestion.analysis_text


def test_debug_real_path_uses_debug_prompt(monkeypatch):
    seen = {}

    def fake_call(prompt_text, timeout=None, system_prompt=sgen.SYSTEM_PROMPT, max_tokens=2048):
        seen["system"] = system_prompt
        seen["timeout"] = timeout
        return json.dumps({"analysis_text": "typo", "suggested_sql": "SELECT 1", "explanation": "fixed"})

    monkeypatch.setattr(sgen, "MOCK_SQL_MODE", False)
    monkeypatch.setattr(sgen, "_call_llm", fake_call)
    suggestion = sgen.debug_sql("SELEC 1", "syntax error", SCHEMA_CONTEXT, timeout=9)
    assert suggestion.explanation == "fixed"
    assert seen == {"system": sgen.DEBUG_PROMPT, "timeout": 9}
