# sqlassist/progress.py
import datetime
import threading
from typing import Dict, Optional

from sqlassist import monitoring
from sqlassist.schemas import ProgressEntry

STAGE_PENDING = "pending"
STAGE_RECEIVED = "received"
STAGE_TEMPLATE_MATCHED = "template_matched"
STAGE_PREPARE_CONTEXT = "prepare_context"
STAGE_MEMORY_LOADED = "memory_loaded"
STAGE_LLM_CALL = "llm_call"
STAGE_GUIDANCE = "guidance"
STAGE_COMPLETED = "completed"
STAGE_FAILED = "failed"


class ProgressTracker:
    """
    In-memory progress of generation requests, keyed by request id.

    A single lock guards the map; entries are tiny and written a handful of
    times per request, so polling readers never wait long. Once an entry is
    done it no longer changes.
    """

    def __init__(self):
        self._entries: Dict[str, ProgressEntry] = {}
        self._lock = threading.Lock()

    def _now(self) -> datetime.datetime:
        return datetime.datetime.utcnow()

    def init(self, request_id: str, message: str = "request received"):
        with self._lock:
            if request_id in self._entries:
                return
            self._entries[request_id] = ProgressEntry(
                request_id=request_id, stage=STAGE_RECEIVED, message=message, updated_at=self._now()
            )
            size = len(self._entries)
        monitoring.set_progress_entries(size)

    def update(self, request_id: str, stage: str, message: str = ""):
        with self._lock:
            entry = self._entries.get(request_id)
            if entry is None or entry.done:
                return
            entry.stage = stage
            entry.message = message
            entry.updated_at = self._now()

    def complete(self, request_id: str, message: str = "completed"):
        with self._lock:
            entry = self._entries.get(request_id)
            if entry is None or entry.done:
                return
            entry.stage = STAGE_COMPLETED
            entry.message = message
            entry.done = True
            entry.success = True
            entry.updated_at = self._now()

    def fail(self, request_id: str, error: str):
        with self._lock:
            entry = self._entries.get(request_id)
            if entry is None or entry.done:
                return
            entry.stage = STAGE_FAILED
            entry.message = "request failed"
            entry.done = True
            entry.success = False
            entry.error = error
            entry.updated_at = self._now()

    def get(self, request_id: str) -> ProgressEntry:
        """Copy of the entry; unknown ids get a synthetic pending entry (the poll may beat the first update)."""
        with self._lock:
            entry = self._entries.get(request_id)
            if entry is not None:
                return entry.model_copy()
        return ProgressEntry(request_id=request_id, stage=STAGE_PENDING, message="waiting for request to start",
                             updated_at=self._now())

    def cleanup(self, older_than_seconds: float) -> int:
        """Drop entries not touched for ``older_than_seconds``. Returns the number removed."""
        cutoff = self._now() - datetime.timedelta(seconds=older_than_seconds)
        with self._lock:
            stale = [rid for rid, e in self._entries.items() if e.updated_at < cutoff]
            for rid in stale:
                del self._entries[rid]
            size = len(self._entries)
        monitoring.set_progress_entries(size)
        return len(stale)

    def __len__(self):
        with self._lock:
            return len(self._entries)
