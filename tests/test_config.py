# tests/test_config.py
import pytest
from pydantic import ValidationError

from sqlassist.config import load_settings, DEFAULT_TEMPLATES_FILE


def test_defaults(monkeypatch):
    for name in ("SQL_MAX_PAGE_SIZE", "SENSITIVE_COLUMNS", "WAREHOUSE_SCHEMA", "TEMPLATE_MIN_HITS"):
        monkeypatch.delenv(name, raising=False)
    s = load_settings()
    assert s.max_page_size == 200
    assert s.template_min_hits == 2
    assert s.sensitive_columns == []
    assert s.warehouse_schema is None
    assert s.templates_file == DEFAULT_TEMPLATES_FILE


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("SQL_MAX_PAGE_SIZE", "500")
    monkeypatch.setenv("SQL_EXEC_TIMEOUT", "12.5")
    monkeypatch.setenv("SCHEMA_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("SENSITIVE_COLUMNS", " SSN, card_number ,,")
    monkeypatch.setenv("WAREHOUSE_SCHEMA", "  ")
    s = load_settings()
    assert s.max_page_size == 500
    assert s.exec_timeout == 12.5
    assert s.schema_max_attempts == 7
    assert s.sensitive_columns == ["SSN", "card_number"]
    assert s.warehouse_schema is None


@pytest.mark.parametrize("name, value", [
    ("SQL_MAX_PAGE_SIZE", "2OO"),
    ("SQL_DEFAULT_PAGE_SIZE", "0"),
    ("SQL_GENERATE_TIMEOUT", "soon"),
    ("TEMPLATE_MIN_HITS", "0"),
])
def test_malformed_values_fail_fast(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValidationError):
        load_settings()


def test_settings_are_frozen():
    s = load_settings()
    with pytest.raises(ValidationError):
        s.max_page_size = 1
