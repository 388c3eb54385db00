# sqlassist/processors/memory_context.py
from typing import List, Tuple

from sqlassist.schemas import MemoryEntry


def chronological(entries: List[MemoryEntry]) -> List[MemoryEntry]:
    """Oldest first. Stable, so entries sharing a timestamp keep their relative order."""
    return sorted(entries, key=lambda e: e.created_at)


def build_memory_context(entries: List[MemoryEntry]) -> str:
    """
    Render prior turns as a compact numbered block:

        1) USER: <query>
           SQL: <sql>
    """
    lines = []
    for i, entry in enumerate(chronological(entries), start=1):
        lines.append(f"{i}) USER: {entry.query}\n   SQL: {entry.sql}\n")
    return "".join(lines)


def load_memory_context(memory_store, user_id: str, session_id: str, limit: int = 5) -> Tuple[List[MemoryEntry], str]:
    """Fetch the most recent ``limit`` turns for (user, session) and render them oldest first."""
    if limit <= 0:
        return [], ""
    entries = chronological(memory_store.get_recent(user_id, session_id, limit))
    return entries, build_memory_context(entries)
