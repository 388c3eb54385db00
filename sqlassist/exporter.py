# sqlassist/exporter.py
"""
Renders a result table as a small HTML document. Spreadsheet and word
processors open it directly, so it is served as .xls or .doc.
"""
import html
import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence
from urllib.parse import quote

FORMATS = {
    "excel": (".xls", "application/vnd.ms-excel"),
    "word": (".doc", "application/msword"),
}
EMPTY_TEXT = "No data"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

_STYLE = """<style>
body{font-family:Arial,sans-serif;margin:24px;color:#222;}
h2{margin-bottom:4px;}
.meta{margin:2px 0;color:#555;font-size:13px;}
table{border-collapse:collapse;width:100%;margin-top:12px;}
th,td{border:1px solid #d0d7de;padding:8px;font-size:13px;vertical-align:top;}
th{background-color:#f6f8fa;text-align:left;}
tbody tr:nth-child(even){background-color:#fbfbfb;}
.empty{color:#888;text-align:center;font-style:italic;}
</style>"""


def format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime.datetime):
        return value.strftime(TIMESTAMP_FORMAT)
    if isinstance(value, datetime.date):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _escape_cell(text: str) -> str:
    return html.escape(text).replace("\n", "<br/>")


def build_table_document(title: str, notes: Iterable[str], columns: Sequence[str],
                         rows: Iterable[Sequence[Any]]) -> str:
    parts: List[str] = ['<!DOCTYPE html><html><head><meta charset="UTF-8">', _STYLE, "</head><body>"]
    if title:
        parts.append(f"<h2>{html.escape(title)}</h2>")
    for note in notes:
        if note and note.strip():
            parts.append(f'<p class="meta">{html.escape(note)}</p>')
    parts.append("<table><thead><tr>")
    parts.extend(f"<th>{html.escape(col)}</th>" for col in columns)
    parts.append("</tr></thead><tbody>")
    body_rows = 0
    for row in rows:
        body_rows += 1
        parts.append("<tr>")
        parts.extend(f"<td>{_escape_cell(format_cell(cell))}</td>" for cell in row)
        parts.append("</tr>")
    if body_rows == 0:
        parts.append(f'<tr><td class="empty" colspan="{max(1, len(columns))}">{EMPTY_TEXT}</td></tr>')
    parts.append("</tbody></table></body></html>")
    return "".join(parts)


def truncate(text: str, max_len: int) -> str:
    if max_len <= 0 or len(text) <= max_len:
        return text
    return text[:max_len] + "..."


def sanitize_filename(name: Optional[str], default_stem: str) -> str:
    name = (name or "").strip() or default_stem
    for ch in ('"', "\n", "\r", "/", "\\"):
        name = name.replace(ch, "" if ch == '"' else "_")
    return name


def attachment_filename(name: Optional[str], default_stem: str, ext: str) -> str:
    filename = sanitize_filename(name, default_stem)
    if not filename.lower().endswith(ext):
        filename += ext
    return filename


def attachment_headers(filename: str) -> Dict[str, str]:
    # plain ASCII fallback plus the RFC 5987 form for non-ASCII names
    ascii_name = filename.encode("ascii", errors="replace").decode("ascii")
    return {
        "Content-Disposition": f"attachment; filename=\"{ascii_name}\"; filename*=utf-8''{quote(filename)}",
    }


def timestamp_stem(prefix: str, now: Optional[datetime.datetime] = None) -> str:
    now = now or datetime.datetime.now()
    return f"{prefix}_{now.strftime('%Y%m%d_%H%M%S')}"
