# sqlassist/validator.py
"""
Read-only SQL safety gate.

This module provides:
- check_sql(sql) -> (ok, reason)     pure check, first failure wins
- ensure_safe(sql)                    raises ValidationRejected(reason)

Checks, in order:
1. empty input
2. statement must be a read query (SELECT, WITH ... SELECT, or a parenthesised subquery)
3. denylisted verbs as standalone tokens, anywhere (also inside parentheses)
4. injection heuristics (quote-then-comment, OR tautologies, multi-root UNION, xp_/sp_ procedures)
5. stacked queries (semicolons outside literals and comments)

These are heuristics layered on a read-only database role. The role is the
real boundary; the regexes only catch the obvious cases early.
"""

import re
from typing import List, Optional, Tuple

from sqlassist.errors import ValidationRejected

REASON_EMPTY = "SQL query cannot be empty"
REASON_NOT_SELECT = "only SELECT queries are allowed"
REASON_FORBIDDEN = "query contains forbidden keywords"
REASON_INJECTION = "potential SQL injection detected"
REASON_STACKED = "stacked queries are not allowed"

FORBIDDEN_KEYWORDS = (
    "INSERT", "UPDATE", "DELETE", "MERGE",
    "DROP", "CREATE", "ALTER", "TRUNCATE",
    "GRANT", "REVOKE",
    "EXEC", "EXECUTE",
    # engine maintenance
    "PRAGMA", "VACUUM", "ANALYZE", "ATTACH", "DETACH",
)

FORBIDDEN_REGEX = re.compile(r"\b(?:" + "|".join(FORBIDDEN_KEYWORDS) + r")\b", flags=re.I)

QUOTE_THEN_COMMENT_REGEX = re.compile(r"'\s*(?:--|/\*)")

TAUTOLOGY_REGEX = re.compile(
    r"\bOR\s+(?:"
    r"(\d+)\s*=\s*\1\b"
    r"|'([^']*)'\s*=\s*'\2'"
    r"|\"([^\"]*)\"\s*=\s*\"\3\""
    r"|TRUE\b"
    r")",
    flags=re.I,
)

PROCEDURE_REGEX = re.compile(
    r"\b(?:XP_\w+|SP_(?:EXECUTESQL|OACREATE|OAMETHOD|CONFIGURE|ADDLOGIN|ADDSRVROLEMEMBER|PASSWORD|MAKEWEBTASK)\b)",
    flags=re.I,
)

_SELECT_TOKEN = re.compile(r"\bSELECT\b", flags=re.I)
_UNION_TOKEN = re.compile(r"\bUNION\b", flags=re.I)
_WITH_PREFIX = re.compile(r"^WITH\b", flags=re.I)
_SELECT_PREFIX = re.compile(r"^SELECT\b", flags=re.I)


def mask_literals_and_comments(sql: str) -> str:
    """
    Return a copy of ``sql`` of the same length where the contents of string
    literals, quoted identifiers and comments are blanked out. Quote characters
    themselves are kept; a backslash escapes the next character inside a literal.
    """
    out: List[str] = []
    i = 0
    n = len(sql)
    quote: Optional[str] = None
    while i < n:
        ch = sql[i]
        if quote:
            if ch == "\\" and i + 1 < n:
                out.append("  ")
                i += 2
                continue
            if ch == quote:
                quote = None
                out.append(ch)
            else:
                out.append("\n" if ch == "\n" else " ")
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            out.append(ch)
            i += 1
            continue
        if ch == "-" and sql.startswith("--", i):
            end = sql.find("\n", i)
            end = n if end == -1 else end
            out.append(" " * (end - i))
            i = end
            continue
        if ch == "/" and sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            end = n if end == -1 else end + 2
            out.append(" " * (end - i))
            i = end
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _top_level_select_count(masked: str) -> int:
    depth = 0
    depths = []
    for ch in masked:
        if ch == "(":
            depth += 1
        depths.append(depth)
        if ch == ")":
            depth = max(0, depth - 1)
    return sum(1 for m in _SELECT_TOKEN.finditer(masked) if depths[m.start()] == 0)


def _is_read_query(sql: str) -> bool:
    if _WITH_PREFIX.match(sql):
        return bool(_SELECT_TOKEN.search(sql))
    return bool(_SELECT_PREFIX.match(sql)) or sql.startswith("(")


def _has_forbidden_keyword(sql: str) -> bool:
    return bool(FORBIDDEN_REGEX.search(sql))


def _looks_like_injection(sql: str, masked: str) -> bool:
    if QUOTE_THEN_COMMENT_REGEX.search(sql):
        return True
    if TAUTOLOGY_REGEX.search(sql):
        return True
    if _UNION_TOKEN.search(masked) and _top_level_select_count(masked) > 1:
        return True
    if PROCEDURE_REGEX.search(masked):
        return True
    return False


def _has_stacked_queries(masked: str) -> bool:
    positions = [i for i, ch in enumerate(masked) if ch == ";"]
    if len(positions) > 1:
        return True
    if len(positions) == 1 and masked[positions[0] + 1:].strip():
        return True
    return False


def check_sql(sql: Optional[str]) -> Tuple[bool, Optional[str]]:
    """Return (True, None) for an acceptable read query, else (False, reason)."""
    if sql is None or not sql.strip():
        return False, REASON_EMPTY
    s = sql.strip()
    if not _is_read_query(s):
        return False, REASON_NOT_SELECT
    if _has_forbidden_keyword(s):
        return False, REASON_FORBIDDEN
    masked = mask_literals_and_comments(s)
    if _looks_like_injection(s, masked):
        return False, REASON_INJECTION
    if _has_stacked_queries(masked):
        return False, REASON_STACKED
    return True, None


def ensure_safe(sql: Optional[str]) -> str:
    """Return the trimmed statement or raise ValidationRejected with the reason."""
    ok, reason = check_sql(sql)
    if not ok:
        raise ValidationRejected(reason)
    return sql.strip()
