# sqlassist/orchestrator.py
import uuid
import time
import threading
from typing import Optional, List

# Import modules (not bare functions) so monkeypatching in tests works correctly
import sqlassist.processors.memory_context as _memory_context
import sqlassist.processors.template_matcher as _template_matcher
from sqlassist.processors.schema_context import SchemaContextBuilder
from sqlassist.processors.sql_generator import LLMCapability
from sqlassist import monitoring
from sqlassist.deadline import Deadline
from sqlassist.delivery import GenerationSink
from sqlassist.errors import (
    E_INTERNAL, GenerationFailed, TransportFailure, ContextUnavailable, ExecutionFailed,
)
from sqlassist.progress import (
    ProgressTracker, STAGE_RECEIVED, STAGE_TEMPLATE_MATCHED, STAGE_PREPARE_CONTEXT,
    STAGE_MEMORY_LOADED, STAGE_LLM_CALL, STAGE_GUIDANCE,
)
from sqlassist.schemas import (
    DebugRequest, DebugSuggestion, GenerateRequest, GenerationResult, MemoryEntry,
    SOURCE_TEMPLATE, SOURCE_LLM, SOURCE_ASSISTANT_HINT,
)
from sqlassist.stores import MemoryStore, ChatStore, TemplateStore

SCHEMA_ERROR_CONTEXT = "Error retrieving schema"
GUIDANCE_MARKERS = ("NOT FOUND", "DOES NOT CONTAIN", "NO TABLE")
EMPTY_CHAT_PLACEHOLDER = "SQL generated."


def needs_guidance(sql: Optional[str]) -> bool:
    """True when the model's answer is not something we should hand back as SQL."""
    s = (sql or "").strip().upper()
    if not s:
        return True
    if s.startswith("ERROR"):
        return True
    return any(marker in s for marker in GUIDANCE_MARKERS)


def format_chat_message(sql: str, reasoning: str) -> str:
    parts: List[str] = []
    if sql:
        parts.append(sql)
    if reasoning:
        parts.append("Reasoning:\n" + reasoning)
    if not parts:
        return EMPTY_CHAT_PLACEHOLDER
    return "\n\n".join(parts)


class GenerationOrchestrator:
    """
    One pipeline for both transports:

        received -> template_matched                          -> completed
                 -> prepare_context -> memory_loaded -> llm_call -> completed | failed
                                                      \\-> guidance -> completed

    The sink decides how events reach the caller; the pipeline itself does not
    know whether it is serving REST or a WebSocket.
    """

    def __init__(self, schema_builder: SchemaContextBuilder, template_store: TemplateStore,
                 memory_store: MemoryStore, chat_store: ChatStore, progress: ProgressTracker,
                 llm=None, generate_timeout: float = 120.0, guidance_timeout: float = 30.0,
                 memory_limit: int = 5, template_min_hits: int = 2, debug_timeout: float = 30.0):
        self.schema_builder = schema_builder
        self.template_store = template_store
        self.memory_store = memory_store
        self.chat_store = chat_store
        self.progress = progress
        self.llm = llm or LLMCapability()
        self.generate_timeout = generate_timeout
        self.guidance_timeout = guidance_timeout
        self.memory_limit = memory_limit
        self.template_min_hits = template_min_hits
        self.debug_timeout = debug_timeout

    def _make_request_id(self) -> str:
        return str(uuid.uuid4())

    # ------------------------------------------------------------------
    # best-effort side effects
    # ------------------------------------------------------------------
    def _save_chat(self, user_id: str, session_id: str, role: str, content: str):
        try:
            self.chat_store.save_message(user_id, session_id, role, content)
        except Exception:
            # Never fail the request if the transcript write fails
            monitoring.logger.warning("Chat transcript write failed", extra={"session_id": session_id}, exc_info=True)

    def _persist_result(self, user_id: str, session_id: str, query: str, result: GenerationResult):
        if result.source != SOURCE_ASSISTANT_HINT:
            try:
                self.memory_store.append(user_id, session_id, MemoryEntry(
                    query=query, sql=result.sql, reasoning=result.reasoning, source=result.source,
                ))
            except Exception:
                monitoring.logger.warning("Memory write failed", extra={"session_id": session_id}, exc_info=True)
        self._save_chat(user_id, session_id, "assistant", format_chat_message(result.sql, result.reasoning))

    def _stage(self, request_id: str, sink: GenerationSink, stage: str, message: str):
        self.progress.update(request_id, stage, message)
        sink.on_progress(stage, message)
        monitoring.logger.info("Generation stage", extra={"request_id": request_id, "stage": stage})

    # ------------------------------------------------------------------
    # pipeline
    # ------------------------------------------------------------------
    def run(self, request: GenerateRequest, user_id: str, sink: GenerationSink,
            channel: str = "rest", cancel_event: Optional[threading.Event] = None) -> Optional[GenerationResult]:
        """
        Run one generation request to completion. Calls exactly one of
        sink.on_complete / sink.on_error and returns the result (None on failure).
        """
        request_id = request.request_id or self._make_request_id()
        session_id = request.session_id or user_id
        event = "generate_ws" if channel == "ws" else "generate_rest"
        start = time.time()
        meta = {"session_id": session_id, "request_id": request_id}

        self.progress.init(request_id)
        sink.on_progress(STAGE_RECEIVED, "request received")
        self._save_chat(user_id, session_id, "user", request.query)

        deadline = Deadline(self.generate_timeout, cancel_event)
        try:
            result = self._generate(request, request_id, user_id, session_id, sink, deadline)
        except (GenerationFailed, TransportFailure) as e:
            return self._fail(request_id, user_id, session_id, sink, event, start, meta, e.message, e.error_code)
        except Exception as e:
            monitoring.logger.exception("Unexpected error in generation pipeline", extra=meta)
            return self._fail(request_id, user_id, session_id, sink, event, start, meta,
                              f"Internal error: {e}", E_INTERNAL)

        self.progress.complete(request_id)
        meta.update({"source": result.source, "template_id": result.template_id, "used_memory": result.used_memory})
        monitoring.record(event, time.time() - start, True, meta)
        sink.on_complete(result)
        return result

    def _fail(self, request_id, user_id, session_id, sink, event, start, meta, message, code) -> None:
        self.progress.fail(request_id, message)
        self._save_chat(user_id, session_id, "assistant", f"Generation failed: {message}")
        meta = dict(meta, error=message, error_code=code)
        monitoring.record(event, time.time() - start, False, meta)
        sink.on_error(message, code)
        return None

    def _generate(self, request: GenerateRequest, request_id: str, user_id: str, session_id: str,
                  sink: GenerationSink, deadline: Deadline) -> GenerationResult:
        # 1) template short-circuit
        match = _template_matcher.match_template(
            request.query, self.template_store.list_all(), min_hits=self.template_min_hits
        )
        if match:
            template, score = match
            self._stage(request_id, sink, STAGE_TEMPLATE_MATCHED, f"matched template {template.name} ({score} keywords)")
            result = GenerationResult(
                sql=template.sql,
                reasoning=template.description or f"Matched saved template {template.name}.",
                source=SOURCE_TEMPLATE,
                template_id=template.template_id,
                used_memory=False,
                request_id=request_id,
            )
            self._persist_result(user_id, session_id, request.query, result)
            return result

        schema_context = ""
        used_memory = False
        try:
            # 2) schema context
            deadline.check(STAGE_PREPARE_CONTEXT)
            self._stage(request_id, sink, STAGE_PREPARE_CONTEXT, "building schema context")
            schema_context = self._build_schema_context(request.table_names, deadline)

            # 3) conversation memory
            entries, memory_context = _memory_context.load_memory_context(
                self.memory_store, user_id, session_id, self.memory_limit
            )
            used_memory = bool(entries)
            self._stage(request_id, sink, STAGE_MEMORY_LOADED, f"loaded {len(entries)} prior turns")

            # 4) LLM
            deadline.check(STAGE_LLM_CALL)
            self._stage(request_id, sink, STAGE_LLM_CALL, "generating SQL")
            if sink.streaming:
                sql, reasoning = self.llm.generate_sql_stream(
                    request.query, schema_context, memory_context, sink.on_chunk, deadline,
                    context=request.context,
                )
            else:
                sql, reasoning = self.llm.generate_sql(
                    request.query, schema_context, memory_context,
                    timeout=deadline.remaining(), context=request.context,
                )
        except GenerationFailed as e:
            if deadline.cancelled:
                # caller went away, nobody is left to read a hint
                raise
            monitoring.logger.warning("SQL generation failed, falling back to guidance",
                                      extra={"request_id": request_id, "error": e.message})
            return self._guidance(request, request_id, user_id, session_id, sink, schema_context,
                                  used_memory, issue=e.message)

        # 5) guardrail re-check
        if needs_guidance(sql):
            return self._guidance(request, request_id, user_id, session_id, sink, schema_context,
                                  used_memory, issue=sql or reasoning or "no SQL was produced")

        result = GenerationResult(
            sql=sql,
            reasoning=reasoning,
            source=SOURCE_LLM,
            used_memory=used_memory,
            request_id=request_id,
        )
        self._persist_result(user_id, session_id, request.query, result)
        return result

    def _build_schema_context(self, table_names: Optional[str], deadline: Deadline) -> str:
        try:
            return self.schema_builder.build(table_names, deadline)
        except (ContextUnavailable, ExecutionFailed, TransportFailure) as e:
            monitoring.logger.warning("Schema context unavailable", extra={"error": str(e)})
            return SCHEMA_ERROR_CONTEXT

    def _guidance(self, request: GenerateRequest, request_id: str, user_id: str, session_id: str,
                  sink: GenerationSink, schema_context: str, used_memory: bool, issue: str) -> GenerationResult:
        # fresh budget: the parent deadline may already be gone
        guidance_deadline = Deadline.fresh(self.guidance_timeout)
        self._stage(request_id, sink, STAGE_GUIDANCE, "preparing guidance")
        try:
            hint = self.llm.generate_guidance(
                request.query, schema_context, issue, timeout=guidance_deadline.remaining()
            )
        except TransportFailure:
            raise
        except GenerationFailed as e:
            raise GenerationFailed(f"SQL generation failed ({issue}); guidance failed: {e.message}") from e

        result = GenerationResult(
            sql="",
            reasoning=hint,
            source=SOURCE_ASSISTANT_HINT,
            used_memory=used_memory,
            request_id=request_id,
        )
        self._persist_result(user_id, session_id, request.query, result)
        return result

    # ------------------------------------------------------------------
    # repair of failing SQL
    # ------------------------------------------------------------------
    def debug(self, request: DebugRequest, user_id: str) -> DebugSuggestion:
        """
        Ask the model why ``request.sql`` failed with ``request.error`` and for a fix.
        Raises GenerationFailed / TransportFailure like generation does.
        """
        start = time.time()
        deadline = Deadline(self.debug_timeout)
        schema_context = self._build_schema_context(None, deadline)
        try:
            suggestion = self.llm.debug_sql(request.sql, request.error, schema_context,
                                            timeout=deadline.remaining())
        except (GenerationFailed, TransportFailure) as e:
            monitoring.record("debug_sql", time.time() - start, False,
                              {"user_id": user_id, "error": e.message, "error_code": e.error_code})
            raise
        monitoring.record("debug_sql", time.time() - start, True,
                          {"user_id": user_id, "has_suggestion": bool(suggestion.suggested_sql)})
        return suggestion
