# tests/test_warehouse.py
import pytest
from sqlalchemy import text

from sqlassist.errors import ExecutionFailed, QueryTimeout
from sqlassist.warehouse import WarehouseClient, make_warehouse_engine, ROW_NUMBER_COLUMN


@pytest.fixture
def client(tmp_path):
    engine = make_warehouse_engine(f"sqlite:///{tmp_path / 'wh.db'}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE STORES (STORE_ID INTEGER PRIMARY KEY, STORE_NAME VARCHAR(64) NOT NULL)"))
        conn.execute(text("CREATE TABLE ORDERS (ORDER_ID INTEGER PRIMARY KEY, STORE_ID INTEGER, AMOUNT REAL)"))
        conn.execute(text("CREATE INDEX IX_ORDERS_STORE ON ORDERS (STORE_ID)"))
        conn.execute(text("INSERT INTO STORES VALUES (1, 'North'), (2, 'South')"))
    c = WarehouseClient(engine)
    yield c
    c.dispose()


def test_list_tables(client):
    assert sorted(client.list_tables()) == ["ORDERS", "STORES"]


def test_table_schema_reflects_columns_keys_and_indexes(client):
    schema = client.get_table_schema("ORDERS")
    assert schema.table_name == "ORDERS"
    by_name = {c.name: c for c in schema.columns}
    assert list(by_name) == ["ORDER_ID", "STORE_ID", "AMOUNT"]
    assert by_name["ORDER_ID"].primary_key is True
    assert by_name["STORE_ID"].indexed is True
    assert by_name["AMOUNT"].primary_key is False


def test_varchar_length_reported(client):
    schema = client.get_table_schema("STORES")
    name_col = [c for c in schema.columns if c.name == "STORE_NAME"][0]
    assert name_col.length == 64
    assert name_col.nullable is False


def test_unknown_table_is_execution_failure(client):
    with pytest.raises(ExecutionFailed):
        client.get_table_schema("NOPE")


def test_window_hides_row_number_column(client):
    columns, rows, has_more = client.execute_window("SELECT * FROM STORES ORDER BY STORE_ID;", 0, 1, timeout=5)
    assert ROW_NUMBER_COLUMN not in [c.lower() for c in columns]
    assert rows == [[1, "North"]]
    assert has_more is True


def test_window_offset(client):
    columns, rows, has_more = client.execute_window("SELECT * FROM STORES ORDER BY STORE_ID", 1, 5, timeout=5)
    assert rows == [[2, "South"]]
    assert has_more is False


def test_exhausted_deadline_fails_fast(client):
    with pytest.raises(QueryTimeout):
        client.execute_window("SELECT 1", 0, 1, timeout=0)


def test_sqlite_has_no_column_comments(client):
    assert client.fetch_column_comments(["STORE_ID", "AMOUNT"]) == {}
    assert client.fetch_column_comments([]) == {}


def test_table_names_kept_as_given_outside_oracle(client):
    assert client.dialect == "sqlite"
    assert client.normalize_table_name(" orders ") == "orders"
