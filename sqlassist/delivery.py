# sqlassist/delivery.py
"""
Sinks: where the generation pipeline sends its events.

The orchestrator calls, from a worker thread:
  on_progress(stage, message)   zero or more times
  on_chunk(text)                zero or more times (streaming only)
  on_complete(result) | on_error(message, error_code)   exactly once

BufferedSink keeps the outcome for the REST handler; QueueSink turns events
into WebSocket frames on the event loop.
"""

import asyncio
from typing import Any, Dict, Optional

from sqlassist.monitoring import logger
from sqlassist.schemas import GenerationResult

TERMINAL_FRAMES = ("complete", "error")


class GenerationSink:
    streaming = False

    def on_progress(self, stage: str, message: str):
        pass

    def on_chunk(self, text: str):
        pass

    def on_complete(self, result: GenerationResult):
        pass

    def on_error(self, message: str, error_code: str):
        pass


class BufferedSink(GenerationSink):
    def __init__(self):
        self.result: Optional[GenerationResult] = None
        self.error: Optional[str] = None
        self.error_code: Optional[str] = None
        self.stages = []

    def on_progress(self, stage: str, message: str):
        self.stages.append(stage)

    def on_complete(self, result: GenerationResult):
        self.result = result

    def on_error(self, message: str, error_code: str):
        self.error = message
        self.error_code = error_code


class QueueSink(GenerationSink):
    """Thread-safe hand-off of frames to an asyncio.Queue owned by ``loop``."""
    streaming = True

    def __init__(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue):
        self._loop = loop
        self._queue = queue

    def _put(self, frame: Dict[str, Any]):
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, frame)
        except RuntimeError:
            # loop is closed: the connection ended before the pipeline did
            logger.debug("Dropping frame for closed connection", extra={"frame_type": frame.get("type")})

    def on_progress(self, stage: str, message: str):
        self._put({"type": "progress", "stage": stage, "message": message})

    def on_chunk(self, text: str):
        self._put({"type": "chunk", "text": text})

    def on_complete(self, result: GenerationResult):
        frame = {"type": "complete"}
        frame.update(result.model_dump())
        self._put(frame)

    def on_error(self, message: str, error_code: str):
        self._put({"type": "error", "message": message, "error_code": error_code})
