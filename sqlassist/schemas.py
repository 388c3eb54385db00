# sqlassist/schemas.py
from typing import List, Optional, Any, Literal
from datetime import datetime
from pydantic import BaseModel, Field, field_validator, ConfigDict

from sqlassist.validator import check_sql

SOURCE_TEMPLATE = "template"
SOURCE_LLM = "llm"
SOURCE_ASSISTANT_HINT = "assistant_hint"


class GenerateRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    query: str
    table_names: Optional[str] = None  # comma separated
    session_id: Optional[str] = None
    request_id: Optional[str] = None
    context: Optional[str] = None

    @field_validator("query")
    @classmethod
    def query_must_not_be_blank(cls, v):
        if not v or not v.strip():
            raise ValueError("query must not be empty")
        return v.strip()


class GenerationResult(BaseModel):
    sql: str
    reasoning: str = ""
    source: Literal["template", "llm", "assistant_hint"]
    template_id: Optional[str] = None
    used_memory: bool = False
    request_id: str


class MemoryEntry(BaseModel):
    query: str
    sql: str = ""
    reasoning: str = ""
    source: str = SOURCE_LLM
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ProgressEntry(BaseModel):
    request_id: str
    stage: str
    message: str = ""
    done: bool = False
    success: bool = False
    error: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ExecuteRequest(BaseModel):
    sql: str
    timeout_seconds: Optional[int] = Field(default=None, ge=1, le=300)
    page: Optional[int] = Field(default=None, ge=1)
    page_size: Optional[int] = Field(default=None, ge=1)


class ExecutionResult(BaseModel):
    success: bool
    columns: List[str] = Field(default_factory=list)
    rows: List[List[Any]] = Field(default_factory=list)
    row_count: int = 0
    exec_time_ms: int = 0
    page: int = 1
    page_size: int = 0
    has_more: bool = False
    masked_columns: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None


class SqlTemplate(BaseModel):
    template_id: str
    name: str
    keywords: List[str] = Field(default_factory=list)
    sql: str
    description: str = ""
    owner_id: Optional[str] = None
    is_system: bool = False


class TemplateUpsertRequest(BaseModel):
    name: str
    description: str = ""
    keywords: List[str] = Field(default_factory=list)
    sql: str

    @field_validator("name")
    @classmethod
    def name_must_not_be_blank(cls, v):
        if not v or not v.strip():
            raise ValueError("name must not be empty")
        return v.strip()

    @field_validator("keywords")
    @classmethod
    def drop_blank_keywords(cls, v):
        return [kw.strip() for kw in v if kw and kw.strip()]

    @field_validator("sql")
    @classmethod
    def sql_must_be_safe(cls, v):
        ok, reason = check_sql(v)
        if not ok:
            raise ValueError(reason)
        return v.strip()


class ExportRequest(BaseModel):
    sql: str
    format: Literal["excel", "word"] = "excel"
    filename: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)

    @field_validator("format", mode="before")
    @classmethod
    def normalize_format(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return "excel"
        return v.strip().lower() if isinstance(v, str) else v


class DebugRequest(BaseModel):
    sql: str
    error: str

    @field_validator("sql", "error")
    @classmethod
    def must_not_be_blank(cls, v):
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()


class DebugSuggestion(BaseModel):
    analysis_text: str = ""
    suggested_sql: str = ""
    explanation: str = ""


class ColumnInfo(BaseModel):
    name: str
    data_type: str = ""
    length: Optional[int] = None
    nullable: bool = True
    comment: str = ""
    primary_key: bool = False
    indexed: bool = False


class TableSchema(BaseModel):
    table_name: str
    comment: str = ""
    columns: List[ColumnInfo] = Field(default_factory=list)
