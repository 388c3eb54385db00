# sqlassist/processors/schema_context.py
"""
Builds the schema section of the generation prompt.

Cost is bounded three ways:
- max_tables: tables whose full column detail is embedded
- max_attempts: total metadata fetches, enforced once at least one table is in
- table_timeout: per-table fetch budget, independent of the caller's deadline,
  so one slow table cannot stall the whole build
and the whole build returns early once the caller's deadline elapses.
"""

from typing import List, Optional

from sqlassist import monitoring
from sqlassist.deadline import Deadline
from sqlassist.errors import ContextUnavailable, ExecutionFailed, TransportFailure
from sqlassist.schemas import TableSchema
from sqlassist.warehouse import WarehouseClient

HEADER = "Available tables in the database:\n"
UNAVAILABLE_NOTICE = "Database schema metadata is unavailable."
MORE_MARKER = "\n... and more\n"
RESTRICTED_NOTICE = "\nMetadata for specific tables is restricted. Known table names include:\n"


def parse_table_filter(table_filter: Optional[str], normalize=str.strip) -> List[str]:
    if not table_filter:
        return []
    names: List[str] = []
    for part in table_filter.split(","):
        part = part.strip()
        if not part:
            continue
        name = normalize(part)
        if name not in names:
            names.append(name)
    return names


def render_table(schema: TableSchema) -> str:
    parts = [f"\nTable: {schema.table_name}\n"]
    if schema.comment:
        parts.append(f"Comment: {schema.comment}\n")
    parts.append("Columns:\n")
    for col in schema.columns:
        line = f"  - {col.name} ({col.data_type})"
        if col.comment:
            line += f" - {col.comment}"
        parts.append(line + "\n")
    return "".join(parts)


class SchemaContextBuilder:
    def __init__(self, client: WarehouseClient, max_tables: int = 10, max_attempts: int = 40,
                 table_timeout: float = 2.0):
        self.client = client
        self.max_tables = max_tables
        self.max_attempts = max_attempts
        self.table_timeout = table_timeout

    def _candidates(self, table_filter: Optional[str], deadline: Deadline) -> List[str]:
        requested = parse_table_filter(table_filter, self.client.normalize_table_name)
        if requested:
            return requested
        try:
            return self.client.list_tables(timeout=deadline.remaining())
        except (ExecutionFailed, TransportFailure) as e:
            raise ContextUnavailable(f"could not list tables: {e}") from e

    def build(self, table_filter: Optional[str] = None, deadline: Optional[Deadline] = None) -> str:
        deadline = deadline or Deadline(self.table_timeout * self.max_attempts)
        candidates = self._candidates(table_filter, deadline)
        if not candidates:
            return UNAVAILABLE_NOTICE

        out = [HEADER]
        included = 0
        attempts = 0
        restricted: List[str] = []
        for name in candidates:
            if deadline.expired():
                break
            if attempts >= self.max_attempts and included > 0:
                break
            if included >= self.max_tables:
                out.append(MORE_MARKER)
                break
            attempts += 1
            try:
                schema = self.client.get_table_schema(name, timeout=min(self.table_timeout, deadline.remaining()))
            except (ExecutionFailed, TransportFailure) as e:
                monitoring.logger.debug("Skipping table in schema context", extra={"table": name, "error": str(e)})
                restricted.append(name)
                continue
            out.append(render_table(schema))
            included += 1

        if included == 0 and restricted:
            out.append(RESTRICTED_NOTICE)
            out.extend(f"  - {name}\n" for name in restricted[:self.max_tables])

        monitoring.set_schema_tables_included(included)
        monitoring.logger.info("Schema context built", extra={
            "tables_requested": len(candidates), "tables_included": included, "tables_attempted": attempts,
        })
        return "".join(out)
