# sqlassist/processors/sql_generator.py
import os
import re
import json
import pathlib
from typing import Callable, Optional, Tuple

from jsonschema import validate as jsonschema_validate, ValidationError

from sqlassist.deadline import Deadline
from sqlassist.errors import GenerationFailed
from sqlassist.schemas import DebugSuggestion
from sqlassist.llm_wrapper import call_llm as _llm_call, stream_llm as _llm_stream, DEFAULT_MODEL as _WRAPPER_DEFAULT

# Load response schema (schemas/ lives at repo root, one level above sqlassist/)
_ROOT = pathlib.Path(__file__).resolve().parents[2]
_SCHEMA_PATH = _ROOT / "schemas" / "sql_generator_response_schema.json"
try:
    with open(_SCHEMA_PATH, "r", encoding="utf-8") as f:
        SQL_RESPONSE_SCHEMA = json.load(f)
except Exception:
    SQL_RESPONSE_SCHEMA = {
        "type": "object",
        "required": ["sql", "reasoning"]
    }

_DEBUG_SCHEMA_PATH = _ROOT / "schemas" / "sql_debug_response_schema.json"
try:
    with open(_DEBUG_SCHEMA_PATH, "r", encoding="utf-8") as f:
        SQL_DEBUG_SCHEMA = json.load(f)
except Exception:
    SQL_DEBUG_SCHEMA = {
        "type": "object",
        "required": ["analysis_text", "suggested_sql"]
    }

# Flags & defaults
MOCK_SQL_MODE = os.getenv("MOCK_SQL_GENERATOR", "true").lower() in ("1", "true", "yes")
SQL_LLM_MODEL = os.getenv("SQL_LLM_MODEL", _WRAPPER_DEFAULT)

STATUS_NEEDS_GUIDANCE = "needs_guidance"

SYSTEM_PROMPT = """
You translate analyst questions into a single read-only SQL query for the warehouse described below.

INPUT you will receive (structured)
- CONVERSATION_HISTORY: earlier questions in this session and the SQL that answered them (may be empty)
- DATABASE_SCHEMA: tables, columns, types and comments you may use
- EXTRA_CONTEXT: optional caller notes
- USER_QUERY: the current question

RULES
1. Emit exactly one SELECT statement (a WITH ... SELECT is fine). Never write INSERT, UPDATE, DELETE, DDL or procedure calls.
2. Use only tables and columns that appear in DATABASE_SCHEMA. Never invent names.
3. Resolve follow-ups ("same but for last month", "only the top 5") against CONVERSATION_HISTORY.
4. Do not end the statement with a semicolon. Do not wrap it in markdown.
5. If the question cannot be answered from the schema, return an empty "sql", set "status" to "needs_guidance" and explain what is missing in "reasoning".

OUTPUT (STRICT JSON ONLY, no markdown, no extra commentary):
{
  "sql": "SELECT ...",
  "reasoning": "1-3 sentences: which tables/columns were used and why",
  "status": "ok" | "needs_guidance"
}
"""

GUIDANCE_PROMPT = """
You help analysts phrase questions about a SQL warehouse. A query could not be generated for the question below.
Using the schema, explain briefly what data is available that is closest to what they asked, and suggest one or two
concrete rephrasings. Plain text, at most 5 sentences, no SQL.
"""

DEBUG_PROMPT = """
You fix failing read-only SQL for the warehouse described below. You get the statement, the error the
database raised and the schema. Explain the cause and propose a corrected single SELECT statement that uses
only tables and columns from the schema. Never propose INSERT, UPDATE, DELETE, DDL or procedure calls.

OUTPUT (STRICT JSON ONLY, no markdown, no extra commentary):
{
  "analysis_text": "what the error means for this statement",
  "suggested_sql": "SELECT ... (empty string if no fix is possible)",
  "explanation": "what was changed and why"
}
"""


def _build_user_prompt(query: str, schema_context: str, memory_context: str = "",
                       context: Optional[str] = None) -> str:
    parts = []
    # memory goes first so elliptical follow-ups are read against it
    if memory_context:
        parts.append("CONVERSATION_HISTORY:")
        parts.append(memory_context.rstrip())
        parts.append("")
    parts.append("DATABASE_SCHEMA:")
    parts.append(schema_context.rstrip() if schema_context else "(none)")
    if context:
        parts.append("\nEXTRA_CONTEXT:")
        parts.append(context.strip())
    parts.append("\nUSER_QUERY:")
    parts.append(query.strip())
    return "\n".join(parts)


def _build_guidance_prompt(query: str, schema_context: str, issue: str) -> str:
    return "\n".join([
        "DATABASE_SCHEMA:",
        schema_context.rstrip() if schema_context else "(none)",
        "\nPROBLEM:",
        issue or "no query could be generated",
        "\nUSER_QUERY:",
        query.strip(),
    ])


def _build_debug_prompt(sql: str, error: str, schema_context: str) -> str:
    return "\n".join([
        "DATABASE_SCHEMA:",
        schema_context.rstrip() if schema_context else "(none)",
        "\nFAILING_SQL:",
        sql.strip(),
        "\nDATABASE_ERROR:",
        error.strip(),
    ])


def _extract_first_json(text: str) -> str:
    """Defensive extraction: find first JSON object in text, remove surrounding fences if any."""
    s = text.strip()
    if s.startswith("```") and s.endswith("```"):
        lines = s.splitlines()
        if len(lines) >= 3:
            s = "\n".join(lines[1:-1]).strip()
    first = s.find('{')
    if first == -1:
        return s
    last = s.rfind('}')
    if last == -1:
        return s
    return s[first:last + 1]


_FENCE_REGEX = re.compile(r"^```(?:sql)?\s*|\s*```$", flags=re.I)


def _clean_sql(sql: str) -> str:
    return _FENCE_REGEX.sub("", (sql or "").strip()).strip()


def parse_model_response(resp_text: str) -> Tuple[str, str]:
    """
    Parse {"sql", "reasoning", "status"} out of the model text.

    A structured status of "needs_guidance" blanks the SQL so the caller's
    guardrail takes the guidance path. Text that is not JSON at all is treated
    as bare SQL (models sometimes answer "ERROR: ..." or a fenced query).
    """
    if not resp_text or not resp_text.strip():
        return "", ""
    payload_text = _extract_first_json(resp_text)
    try:
        parsed = json.loads(payload_text)
    except ValueError:
        return _clean_sql(resp_text), ""
    if not isinstance(parsed, dict):
        return _clean_sql(resp_text), ""
    try:
        jsonschema_validate(instance=parsed, schema=SQL_RESPONSE_SCHEMA)
    except ValidationError as ve:
        raise GenerationFailed(f"Response JSON failed schema validation: {ve.message}")
    reasoning = (parsed.get("reasoning") or "").strip()
    if parsed.get("status") == STATUS_NEEDS_GUIDANCE:
        return "", reasoning
    return _clean_sql(parsed.get("sql", "")), reasoning


def parse_debug_response(resp_text: str) -> DebugSuggestion:
    """Parse the repair answer. Unlike SQL generation there is no bare-text fallback."""
    payload_text = _extract_first_json(resp_text or "")
    try:
        parsed = json.loads(payload_text)
    except ValueError:
        raise GenerationFailed("Debug response was not JSON")
    if not isinstance(parsed, dict):
        raise GenerationFailed("Debug response was not a JSON object")
    try:
        jsonschema_validate(instance=parsed, schema=SQL_DEBUG_SCHEMA)
    except ValidationError as ve:
        raise GenerationFailed(f"Debug JSON failed schema validation: {ve.message}")
    return DebugSuggestion(
        analysis_text=parsed["analysis_text"].strip(),
        suggested_sql=_clean_sql(parsed["suggested_sql"]),
        explanation=(parsed.get("explanation") or "").strip(),
    )


# ---------------------------------------------------------------------------
# Mock responses (MOCK_SQL_GENERATOR=true)
# ---------------------------------------------------------------------------
_MOCK_TABLE_REGEX = re.compile(r"^Table: (\S+)", flags=re.M)


def _mock_response(prompt_text: str) -> str:
    m = _MOCK_TABLE_REGEX.search(prompt_text)
    if not m:
        return json.dumps({
            "sql": "",
            "reasoning": "Mock generator: no table found in the schema context.",
            "status": STATUS_NEEDS_GUIDANCE,
        })
    return json.dumps({
        "sql": f"SELECT * FROM {m.group(1)}",
        "reasoning": f"Mock generator: selected every column of {m.group(1)}.",
        "status": "ok",
    })


def _mock_guidance(prompt_text: str) -> str:
    tables = _MOCK_TABLE_REGEX.findall(prompt_text)
    if tables:
        return "I could not map this question to a query. Available tables include: " + ", ".join(tables[:5]) + "."
    return "I could not map this question to a query. Try naming the table or the metric you are interested in."


_MOCK_FAILING_SQL_REGEX = re.compile(r"FAILING_SQL:\n(.*?)\n\nDATABASE_ERROR:\n(.*)\Z", flags=re.S)


def _mock_debug(prompt_text: str) -> str:
    m = _MOCK_FAILING_SQL_REGEX.search(prompt_text)
    sql, error = (m.group(1).strip(), m.group(2).strip()) if m else ("", "")
    return json.dumps({
        "analysis_text": f"Mock debugger: the database reported '{error}'.",
        "suggested_sql": sql.rstrip(";").strip(),
        "explanation": "Mock debugger: removed the trailing semicolon and left the rest unchanged.",
    })


# ---------------------------------------------------------------------------
# LLM calls (isolated so tests can monkeypatch them)
# ---------------------------------------------------------------------------
def _call_llm(prompt_text: str, timeout: Optional[float] = None, system_prompt: str = SYSTEM_PROMPT,
              max_tokens: int = 2048) -> str:
    """
    Single LLM call. Returns raw content string.
    Uses the centralized llm_wrapper (supports OpenAI + Anthropic).
    """
    resp = _llm_call(
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt_text}
        ],
        model=SQL_LLM_MODEL,
        max_tokens=max_tokens,
        temperature=0.0,
        timeout=timeout,
    )
    return resp["text"]


def _stream_llm(prompt_text: str, on_chunk: Callable[[str], None], deadline: Deadline,
                max_tokens: int = 2048) -> str:
    resp = _llm_stream(
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt_text}
        ],
        on_text=on_chunk,
        should_stop=deadline.expired,
        model=SQL_LLM_MODEL,
        max_tokens=max_tokens,
        temperature=0.0,
        timeout=deadline.remaining(),
    )
    return resp["text"]


def generate_sql(query: str, schema_context: str, memory_context: str = "",
                 timeout: Optional[float] = None, context: Optional[str] = None) -> Tuple[str, str]:
    """Returns (sql, reasoning). Raises GenerationFailed / GenerationTimeout / TransportFailure."""
    prompt = _build_user_prompt(query, schema_context, memory_context, context)
    if MOCK_SQL_MODE:
        return parse_model_response(_mock_response(prompt))
    return parse_model_response(_call_llm(prompt, timeout=timeout))


def generate_sql_stream(query: str, schema_context: str, memory_context: str,
                        on_chunk: Callable[[str], None], deadline: Deadline,
                        context: Optional[str] = None) -> Tuple[str, str]:
    """Like generate_sql, but every text delta is passed to ``on_chunk`` as it arrives."""
    prompt = _build_user_prompt(query, schema_context, memory_context, context)
    if MOCK_SQL_MODE:
        text = _mock_response(prompt)
        for i in range(0, len(text), 32):
            deadline.check("llm stream")
            on_chunk(text[i:i + 32])
        return parse_model_response(text)
    return parse_model_response(_stream_llm(prompt, on_chunk, deadline))


def generate_guidance(query: str, schema_context: str, issue: str, timeout: Optional[float] = None) -> str:
    prompt = _build_guidance_prompt(query, schema_context, issue)
    if MOCK_SQL_MODE:
        return _mock_guidance(prompt)
    hint = _call_llm(prompt, timeout=timeout, system_prompt=GUIDANCE_PROMPT, max_tokens=512).strip()
    if not hint:
        raise GenerationFailed("guidance call returned no text")
    return hint


def debug_sql(sql: str, error: str, schema_context: str, timeout: Optional[float] = None) -> DebugSuggestion:
    prompt = _build_debug_prompt(sql, error, schema_context)
    if MOCK_SQL_MODE:
        return parse_debug_response(_mock_debug(prompt))
    return parse_debug_response(_call_llm(prompt, timeout=timeout, system_prompt=DEBUG_PROMPT, max_tokens=1024))


class LLMCapability:
    """The generator as the orchestrator sees it. Resolves module functions at call time."""

    def generate_sql(self, query: str, schema_context: str, memory_context: str = "",
                     timeout: Optional[float] = None, context: Optional[str] = None) -> Tuple[str, str]:
        return generate_sql(query, schema_context, memory_context, timeout=timeout, context=context)

    def generate_sql_stream(self, query: str, schema_context: str, memory_context: str,
                            on_chunk: Callable[[str], None], deadline: Deadline,
                            context: Optional[str] = None) -> Tuple[str, str]:
        return generate_sql_stream(query, schema_context, memory_context, on_chunk, deadline, context=context)

    def generate_guidance(self, query: str, schema_context: str, issue: str,
                          timeout: Optional[float] = None) -> str:
        return generate_guidance(query, schema_context, issue, timeout=timeout)

    def debug_sql(self, sql: str, error: str, schema_context: str,
                  timeout: Optional[float] = None) -> DebugSuggestion:
        return debug_sql(sql, error, schema_context, timeout=timeout)
