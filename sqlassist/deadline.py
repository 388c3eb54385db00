# sqlassist/deadline.py
import time
import threading
from typing import Optional

from sqlassist.errors import GenerationTimeout


class Deadline:
    """
    Absolute deadline on the monotonic clock, optionally tied to a cancel event
    (set when a WebSocket client goes away).

    Child deadlines never outlive their parent and share its cancel event.
    ``Deadline.fresh`` is the exception: it starts a new budget that ignores
    the parent's expiry (used for the guidance fallback).
    """

    def __init__(self, seconds: float, cancel_event: Optional[threading.Event] = None):
        self._expires_at = time.monotonic() + max(0.0, float(seconds))
        self.cancel_event = cancel_event or threading.Event()

    @classmethod
    def fresh(cls, seconds: float) -> "Deadline":
        return cls(seconds)

    def remaining(self) -> float:
        if self.cancel_event.is_set():
            return 0.0
        return max(0.0, self._expires_at - time.monotonic())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def child(self, max_seconds: float) -> "Deadline":
        return Deadline(min(max_seconds, self.remaining()), self.cancel_event)

    def check(self, stage: str):
        if self.cancelled:
            raise GenerationTimeout(f"request cancelled before {stage}")
        if self.expired():
            raise GenerationTimeout(f"deadline exceeded before {stage}")
