# sqlassist/executor.py
import time
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional, Iterable, Tuple, Any

from sqlassist import monitoring
from sqlassist.errors import ValidationRejected, ExecutionFailed, TransportFailure
from sqlassist.schemas import ExecutionResult
from sqlassist.validator import ensure_safe
from sqlassist.warehouse import WarehouseClient

MASK_TOKEN = "***"
MAX_TIMEOUT_SECONDS = 300


class _ReadWriteLock:
    """Many concurrent readers or one writer. Writers wait for readers to drain."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def reading(self):
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def writing(self):
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class ColumnCommentCache:
    """
    Process-wide column comment cache keyed by upper-cased column name.

    Read/write discipline:
    - lookups take the shared read side; any number run concurrently
    - on a miss the caller fetches the missing names outside the lock, then
      takes the exclusive write side once to store every result
    - names without a comment are stored as "" so they are never fetched again
    Two requests missing the same name may both fetch it; the second store is
    a harmless overwrite with the same value.
    """

    def __init__(self):
        self._lock = _ReadWriteLock()
        self._comments: Dict[str, str] = {}

    def get_many(self, names: Iterable[str]) -> Tuple[Dict[str, str], List[str]]:
        """Return (known {UPPER: comment}, missing upper names)."""
        known: Dict[str, str] = {}
        missing: List[str] = []
        with self._lock.reading():
            for name in names:
                key = name.upper()
                if key in self._comments:
                    known[key] = self._comments[key]
                elif key not in missing:
                    missing.append(key)
        return known, missing

    def store(self, names: Iterable[str], comments: Dict[str, str]):
        with self._lock.writing():
            for name in names:
                key = name.upper()
                self._comments[key] = comments.get(key, "")

    def clear(self):
        with self._lock.writing():
            self._comments.clear()

    def __len__(self):
        with self._lock.reading():
            return len(self._comments)


def strip_decoration(column: str) -> str:
    """'comment(ORIGINAL)' -> 'ORIGINAL'; undecorated names are returned unchanged."""
    if column.endswith(")"):
        start = column.rfind("(")
        if start != -1:
            return column[start + 1:-1]
    return column


class SQLExecutor:
    def __init__(self, client: WarehouseClient, comment_cache: Optional[ColumnCommentCache] = None,
                 default_page_size: int = 50, max_page_size: int = 200,
                 default_timeout: float = 30.0, sensitive_columns: Optional[Iterable[str]] = None):
        self.client = client
        self.comment_cache = comment_cache or ColumnCommentCache()
        self.default_page_size = default_page_size
        self.max_page_size = max(max_page_size, default_page_size)
        self.default_timeout = default_timeout
        self.sensitive_columns = {c.strip().upper() for c in (sensitive_columns or []) if c and c.strip()}

    def _resolve_paging(self, page: Optional[int], page_size: Optional[int]) -> Tuple[int, int]:
        page = page if page and page > 0 else 1
        if not page_size or page_size <= 0:
            page_size = self.default_page_size
        page_size = max(1, min(page_size, self.max_page_size))
        return page, page_size

    def _resolve_timeout(self, timeout_seconds: Optional[float]) -> float:
        if timeout_seconds and 0 < timeout_seconds <= MAX_TIMEOUT_SECONDS:
            return float(timeout_seconds)
        return self.default_timeout

    def execute(self, sql: str, page: Optional[int] = None, page_size: Optional[int] = None,
                timeout_seconds: Optional[float] = None) -> ExecutionResult:
        """
        Validate and run a read query, returning one page of results.
        Validation and engine errors come back as success=False; only
        TransportFailure propagates.
        """
        page, page_size = self._resolve_paging(page, page_size)
        return self._run(sql, page, page_size, timeout_seconds)

    def fetch_for_export(self, sql: str, limit: int, timeout_seconds: Optional[float] = None) -> ExecutionResult:
        """First ``limit`` rows, ignoring max_page_size. has_more means the export was cut."""
        return self._run(sql, 1, max(1, limit), timeout_seconds)

    def _run(self, sql: str, page: int, page_size: int, timeout_seconds: Optional[float]) -> ExecutionResult:
        start = time.time()

        try:
            statement = ensure_safe(sql)
        except ValidationRejected as e:
            monitoring.inc_sql_rejection(e.message)
            monitoring.logger.info("SQL rejected by validator", extra={"reason": e.message})
            return ExecutionResult(success=False, error=e.message, error_code=e.error_code,
                                   page=page, page_size=page_size)

        offset = (page - 1) * page_size
        try:
            columns, rows, has_more = self.client.execute_window(
                statement, offset, page_size, self._resolve_timeout(timeout_seconds)
            )
        except ExecutionFailed as e:
            return ExecutionResult(
                success=False,
                error=e.message,
                error_code=e.error_code,
                page=page,
                page_size=page_size,
                exec_time_ms=int((time.time() - start) * 1000),
            )

        columns = self.decorate_columns(columns)
        masked = self.apply_masking(columns, rows)
        return ExecutionResult(
            success=True,
            columns=columns,
            rows=rows,
            row_count=len(rows),
            exec_time_ms=int((time.time() - start) * 1000),
            page=page,
            page_size=page_size,
            has_more=has_more,
            masked_columns=masked,
        )

    def decorate_columns(self, columns: List[str]) -> List[str]:
        if not columns:
            return columns
        known, missing = self.comment_cache.get_many(columns)
        if missing:
            try:
                fetched = self.client.fetch_column_comments(missing, timeout=self.default_timeout)
            except (ExecutionFailed, TransportFailure):
                monitoring.logger.warning("Column comment lookup failed", extra={"columns": missing[:20]}, exc_info=True)
                fetched = None
            if fetched is not None:
                self.comment_cache.store(missing, fetched)
                for key in missing:
                    known[key] = fetched.get(key, "")

        decorated = []
        for col in columns:
            comment = known.get(col.upper(), "")
            decorated.append(f"{comment}({col})" if comment else col)
        return decorated

    def _masking_keys(self, column: str) -> List[str]:
        keys = [column.upper()]
        original = strip_decoration(column)
        if original != column:
            keys.append(original.upper())
        return keys

    def apply_masking(self, columns: List[str], rows: List[List[Any]]) -> List[str]:
        if not self.sensitive_columns:
            return []
        masked_idx = [
            i for i, col in enumerate(columns)
            if any(k in self.sensitive_columns for k in self._masking_keys(col))
        ]
        for row in rows:
            for i in masked_idx:
                if row[i] is not None:
                    row[i] = MASK_TOKEN
        return [columns[i] for i in masked_idx]
