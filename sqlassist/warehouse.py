# sqlassist/warehouse.py
"""
Access to the target warehouse through a bounded SQLAlchemy connection pool.

The engine is built once by the composition root (app.py) and handed to the
executor and the schema context builder; nothing here is a module-level global.

Every statement runs under a watchdog timer. When the timer fires, the DBAPI
connection is asked to cancel the running call (oracledb / psycopg ``cancel()``,
sqlite3 ``interrupt()``) and the caller gets a QueryTimeout.
"""

import re
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple, Any

from sqlalchemy import create_engine, inspect, text, bindparam
from sqlalchemy.engine import Engine, Connection
from sqlalchemy.exc import DBAPIError, SQLAlchemyError, NoSuchTableError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from sqlassist.errors import ExecutionFailed, QueryTimeout, TransportFailure
from sqlassist.monitoring import logger
from sqlassist.schemas import ColumnInfo, TableSchema

ROW_NUMBER_COLUMN = "sqlassist_rn"

# Oracle rejects IN lists longer than 1000 items
COMMENT_CHUNK_SIZE = 900

_TRAILING_SEMICOLON = re.compile(r";\s*$")


def make_warehouse_engine(url: str, pool_size: int = 25, pool_idle: int = 5,
                          pool_timeout: float = 30.0, pool_recycle: int = 300) -> Engine:
    """
    pool_size is the total number of open connections; pool_idle of them are kept
    around, the rest are overflow. Callers block for at most pool_timeout seconds
    waiting for a free connection.
    """
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, pool_pre_ping=True)
    idle = max(1, min(pool_idle, pool_size))
    return create_engine(
        url,
        pool_size=idle,
        max_overflow=max(0, pool_size - idle),
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        pool_pre_ping=True,
    )


def _error_text(e: Exception) -> str:
    orig = getattr(e, "orig", None)
    return str(orig) if orig is not None else str(e)


class WarehouseClient:
    def __init__(self, engine: Engine, schema: Optional[str] = None,
                 comment_chunk_size: int = COMMENT_CHUNK_SIZE):
        self.engine = engine
        self.schema = schema
        self.comment_chunk_size = comment_chunk_size

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def normalize_table_name(self, name: str) -> str:
        name = name.strip()
        return name.upper() if self.dialect == "oracle" else name

    def dispose(self):
        self.engine.dispose()

    # ------------------------------------------------------------------
    # connection + watchdog
    # ------------------------------------------------------------------
    @contextmanager
    def _connection(self):
        try:
            conn = self.engine.connect()
        except PoolTimeoutError as e:
            raise TransportFailure(f"warehouse connection pool exhausted: {e}") from e
        except DBAPIError as e:
            raise TransportFailure(f"warehouse unavailable: {_error_text(e)}") from e
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _watchdog(self, conn: Connection, timeout: float):
        if timeout is not None and timeout <= 0:
            raise QueryTimeout("query deadline already exceeded")
        dbapi_conn = conn.connection.dbapi_connection
        fired = threading.Event()

        def _cancel():
            fired.set()
            canceller = getattr(dbapi_conn, "cancel", None) or getattr(dbapi_conn, "interrupt", None)
            if canceller is None:
                return
            try:
                canceller()
            except Exception:
                logger.warning("Failed to cancel running statement", exc_info=True)

        timer = None
        if timeout is not None:
            timer = threading.Timer(timeout, _cancel)
            timer.daemon = True
            timer.start()
        try:
            yield
        except DBAPIError as e:
            if fired.is_set():
                raise QueryTimeout(f"query exceeded {timeout:g}s timeout") from e
            if e.connection_invalidated:
                raise TransportFailure(f"warehouse connection lost: {_error_text(e)}") from e
            raise ExecutionFailed(_error_text(e)) from e
        except NoSuchTableError as e:
            raise ExecutionFailed(f"table not found: {e}") from e
        except SQLAlchemyError as e:
            raise ExecutionFailed(str(e)) from e
        finally:
            if timer is not None:
                timer.cancel()

    # ------------------------------------------------------------------
    # paginated execution
    # ------------------------------------------------------------------
    def _window_statement(self, sql: str) -> str:
        # escape ':' so text() does not mistake literals like 'HH24:MI' for bind params
        inner = sql.replace(":", r"\:")
        if self.dialect == "oracle":
            return (
                "SELECT * FROM (\n"
                f"  SELECT inner_query.*, ROWNUM {ROW_NUMBER_COLUMN} FROM (\n{inner}\n  ) inner_query\n"
                "  WHERE ROWNUM <= :max_row\n"
                f") WHERE {ROW_NUMBER_COLUMN} > :offset_rows"
            )
        return (
            "SELECT * FROM (\n"
            f"  SELECT inner_query.*, ROW_NUMBER() OVER () AS {ROW_NUMBER_COLUMN} FROM (\n{inner}\n  ) AS inner_query\n"
            f") AS paged WHERE paged.{ROW_NUMBER_COLUMN} > :offset_rows AND paged.{ROW_NUMBER_COLUMN} <= :max_row"
        )

    def execute_window(self, sql: str, offset: int, limit: int,
                       timeout: Optional[float]) -> Tuple[List[str], List[List[Any]], bool]:
        """
        Run ``sql`` wrapped in a row-numbering subquery and return
        (columns, rows, has_more) for rows offset+1 .. offset+limit.
        One extra row is fetched to decide has_more without a COUNT query.
        """
        inner = _TRAILING_SEMICOLON.sub("", sql.strip())
        stmt = text(self._window_statement(inner))
        params = {"max_row": offset + limit + 1, "offset_rows": offset}

        with self._connection() as conn:
            with self._watchdog(conn, timeout):
                result = conn.execute(stmt, params)
                columns = list(result.keys())
                rows = [list(r) for r in result.fetchall()]

        keep = [i for i, c in enumerate(columns) if c.lower() != ROW_NUMBER_COLUMN]
        if len(keep) != len(columns):
            columns = [columns[i] for i in keep]
            rows = [[r[i] for i in keep] for r in rows]

        has_more = len(rows) > limit
        if has_more:
            rows = rows[:limit]
        return columns, rows, has_more

    # ------------------------------------------------------------------
    # metadata
    # ------------------------------------------------------------------
    def list_tables(self, timeout: Optional[float] = None) -> List[str]:
        with self._connection() as conn:
            with self._watchdog(conn, timeout):
                names = inspect(conn).get_table_names(schema=self.schema)
        return [self.normalize_table_name(n) for n in names]

    def get_table_schema(self, table_name: str, timeout: Optional[float] = None) -> TableSchema:
        name = self._reflect_name(table_name)
        with self._connection() as conn:
            with self._watchdog(conn, timeout):
                insp = inspect(conn)
                raw_columns = insp.get_columns(name, schema=self.schema)
                pk = set(insp.get_pk_constraint(name, schema=self.schema).get("constrained_columns") or [])
                indexed = set()
                for ix in insp.get_indexes(name, schema=self.schema):
                    indexed.update(c for c in ix.get("column_names") or [] if c)
                try:
                    table_comment = (insp.get_table_comment(name, schema=self.schema) or {}).get("text") or ""
                except NotImplementedError:
                    table_comment = ""

        columns = []
        for col in raw_columns:
            col_type = col.get("type")
            try:
                type_name = str(col_type)
            except Exception:
                type_name = type(col_type).__name__
            columns.append(ColumnInfo(
                name=self.normalize_table_name(col["name"]),
                data_type=type_name,
                length=getattr(col_type, "length", None),
                nullable=bool(col.get("nullable", True)),
                comment=col.get("comment") or "",
                primary_key=col["name"] in pk,
                indexed=col["name"] in indexed,
            ))
        return TableSchema(table_name=self.normalize_table_name(table_name), comment=table_comment, columns=columns)

    def _reflect_name(self, table_name: str) -> str:
        # SQLAlchemy's Oracle dialect reflects case-insensitive names in lower case
        if self.dialect == "oracle" and table_name.isupper():
            return table_name.lower()
        return table_name

    def fetch_column_comments(self, column_names: List[str],
                              timeout: Optional[float] = None) -> Dict[str, str]:
        """
        Look up catalog comments for the given column names.
        Returns {UPPER_NAME: comment}; names without a comment are absent.
        """
        wanted = sorted({c.upper() for c in column_names if c})
        if not wanted:
            return {}
        if self.dialect == "oracle":
            return self._oracle_column_comments(wanted, timeout)

        found: Dict[str, str] = {}
        with self._connection() as conn:
            with self._watchdog(conn, timeout):
                by_table = inspect(conn).get_multi_columns(schema=self.schema)
        for cols in by_table.values():
            for col in cols:
                key = str(col["name"]).upper()
                comment = col.get("comment") or ""
                if key in wanted and comment and key not in found:
                    found[key] = comment
        return found

    def _oracle_column_comments(self, wanted: List[str], timeout: Optional[float]) -> Dict[str, str]:
        stmt = text(
            "SELECT COLUMN_NAME, MAX(COMMENTS) FROM ALL_COL_COMMENTS "
            "WHERE OWNER = :owner AND COLUMN_NAME IN :names GROUP BY COLUMN_NAME"
        ).bindparams(bindparam("names", expanding=True))
        found: Dict[str, str] = {}
        with self._connection() as conn:
            with self._watchdog(conn, timeout):
                owner = self.schema.upper() if self.schema else conn.execute(text("SELECT USER FROM DUAL")).scalar()
                for i in range(0, len(wanted), self.comment_chunk_size):
                    chunk = wanted[i:i + self.comment_chunk_size]
                    for name, comment in conn.execute(stmt, {"owner": owner, "names": chunk}):
                        if comment:
                            found[str(name).upper()] = comment
        return found
