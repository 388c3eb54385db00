# sqlassist/config.py
"""
Runtime settings, read from environment variables (a .env file is loaded by app.py first).
Values are validated on startup: a malformed number fails loudly instead of
falling back to the default.

Warehouse:
- WAREHOUSE_URL (default: sqlite:///./warehouse.db), e.g. oracle+oracledb://user:pw@host:1521/?service_name=ORCL
- WAREHOUSE_SCHEMA: owner whose tables are exposed (Oracle: defaults to the connected user)
- WAREHOUSE_POOL_SIZE (25), WAREHOUSE_POOL_IDLE (5), WAREHOUSE_POOL_TIMEOUT (30), WAREHOUSE_POOL_RECYCLE (300)

Execution:
- SQL_DEFAULT_PAGE_SIZE (50), SQL_MAX_PAGE_SIZE (200), SQL_EXEC_TIMEOUT (30)
- SQL_EXECUTE_REQUEST_TIMEOUT (60): overall limit for POST /api/sql/execute
- SENSITIVE_COLUMNS: comma-separated column names to mask
- SQL_EXPORT_MAX_ROWS (5000): row cap for POST /api/sql/export

Generation:
- SQL_GENERATE_TIMEOUT (120), GUIDANCE_TIMEOUT (30), SQL_DEBUG_TIMEOUT (30)
- SCHEMA_MAX_TABLES (10), SCHEMA_MAX_ATTEMPTS (40), SCHEMA_TABLE_TIMEOUT (2)
- MEMORY_RECENT_LIMIT (5), TEMPLATE_MIN_HITS (2), TEMPLATES_FILE

Housekeeping:
- DATABASE_URL (default: sqlite:///./sql_assistant.db): memory, chat and template stores
- PROGRESS_RETENTION_SECONDS (3600), PROGRESS_CLEANUP_INTERVAL (300)
"""

import pathlib
from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

ROOT = pathlib.Path(__file__).resolve().parents[1]
DEFAULT_TEMPLATES_FILE = str(ROOT / "schemas" / "default_templates.json")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    database_url: str = "sqlite:///./sql_assistant.db"

    warehouse_url: str = "sqlite:///./warehouse.db"
    warehouse_schema: Optional[str] = None
    warehouse_pool_size: int = Field(25, ge=1)
    warehouse_pool_idle: int = Field(5, ge=0)
    warehouse_pool_timeout: float = Field(30.0, gt=0)
    warehouse_pool_recycle: int = 300

    default_page_size: int = Field(50, ge=1, validation_alias="SQL_DEFAULT_PAGE_SIZE")
    max_page_size: int = Field(200, ge=1, validation_alias="SQL_MAX_PAGE_SIZE")
    exec_timeout: float = Field(30.0, gt=0, validation_alias="SQL_EXEC_TIMEOUT")
    execute_request_timeout: float = Field(60.0, gt=0, validation_alias="SQL_EXECUTE_REQUEST_TIMEOUT")
    sensitive_columns: Annotated[List[str], NoDecode] = Field(default_factory=list)
    export_max_rows: int = Field(5000, ge=1, validation_alias="SQL_EXPORT_MAX_ROWS")

    generate_timeout: float = Field(120.0, gt=0, validation_alias="SQL_GENERATE_TIMEOUT")
    guidance_timeout: float = Field(30.0, gt=0)
    debug_timeout: float = Field(30.0, gt=0, validation_alias="SQL_DEBUG_TIMEOUT")
    schema_max_tables: int = Field(10, ge=1)
    schema_max_attempts: int = Field(40, ge=1)
    schema_table_timeout: float = Field(2.0, gt=0)
    memory_recent_limit: int = Field(5, ge=0)
    template_min_hits: int = Field(2, ge=1)
    templates_file: str = DEFAULT_TEMPLATES_FILE

    progress_retention_seconds: int = Field(3600, ge=1)
    progress_cleanup_interval: int = Field(300, ge=1)

    @field_validator("warehouse_schema", mode="before")
    @classmethod
    def blank_schema_is_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("sensitive_columns", mode="before")
    @classmethod
    def parse_sensitive_columns(cls, value):
        if isinstance(value, str):
            return [p.strip() for p in value.split(",") if p.strip()]
        return value


def load_settings() -> Settings:
    return Settings()
