# sqlassist/app.py
import time
import uuid
import asyncio
import threading
from contextlib import asynccontextmanager

# Load .env BEFORE any sqlassist imports (they read env vars at import time)
from dotenv import load_dotenv
load_dotenv(override=True)

from fastapi import FastAPI, Request, Path, Query, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response, PlainTextResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from sqlassist import monitoring
from sqlassist import auth as authmod
from sqlassist import db as dbmod
from sqlassist import exporter
from sqlassist.config import load_settings
from sqlassist.delivery import BufferedSink, QueueSink, TERMINAL_FRAMES
from sqlassist.errors import (
    E_EXECUTION_FAILED, E_FORBIDDEN, E_INTERNAL, E_NOT_FOUND, E_TRANSPORT,
    ExecutionFailed, GenerationFailed, TransportFailure,
    error_envelope,
)
from sqlassist.executor import SQLExecutor, ColumnCommentCache
from sqlassist.orchestrator import GenerationOrchestrator
from sqlassist.processors.schema_context import SchemaContextBuilder
from sqlassist.progress import ProgressTracker
from sqlassist.schemas import (
    DebugRequest, ExecuteRequest, ExportRequest, GenerateRequest, SqlTemplate, TemplateUpsertRequest,
)
from sqlassist.stores import MemoryStore, ChatStore, TemplateStore
from sqlassist.warehouse import WarehouseClient, make_warehouse_engine

settings = load_settings()

# Application DB (memory, chat transcript, templates)
app_engine = dbmod.make_engine(settings.database_url)
dbmod.init_db(app_engine)
SessionLocal = dbmod.make_session_factory(app_engine)
memory_store = MemoryStore(SessionLocal)
chat_store = ChatStore(SessionLocal)
template_store = TemplateStore(SessionLocal)
template_store.seed_from_file(settings.templates_file)

# Warehouse: one bounded pool for the process, handed to everything that queries it
warehouse = WarehouseClient(
    make_warehouse_engine(
        settings.warehouse_url,
        pool_size=settings.warehouse_pool_size,
        pool_idle=settings.warehouse_pool_idle,
        pool_timeout=settings.warehouse_pool_timeout,
        pool_recycle=settings.warehouse_pool_recycle,
    ),
    schema=settings.warehouse_schema,
)

progress = ProgressTracker()
executor = SQLExecutor(
    warehouse,
    ColumnCommentCache(),
    default_page_size=settings.default_page_size,
    max_page_size=settings.max_page_size,
    default_timeout=settings.exec_timeout,
    sensitive_columns=settings.sensitive_columns,
)
orchestrator = GenerationOrchestrator(
    schema_builder=SchemaContextBuilder(
        warehouse,
        max_tables=settings.schema_max_tables,
        max_attempts=settings.schema_max_attempts,
        table_timeout=settings.schema_table_timeout,
    ),
    template_store=template_store,
    memory_store=memory_store,
    chat_store=chat_store,
    progress=progress,
    generate_timeout=settings.generate_timeout,
    guidance_timeout=settings.guidance_timeout,
    memory_limit=settings.memory_recent_limit,
    template_min_hits=settings.template_min_hits,
    debug_timeout=settings.debug_timeout,
)


async def _progress_cleanup_loop():
    while True:
        await asyncio.sleep(settings.progress_cleanup_interval)
        try:
            removed = progress.cleanup(settings.progress_retention_seconds)
            if removed:
                monitoring.logger.info("Progress entries cleaned up", extra={"removed": removed})
        except Exception:
            monitoring.logger.exception("Progress cleanup failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    cleanup_task = asyncio.create_task(_progress_cleanup_loop())
    try:
        yield
    finally:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
        warehouse.dispose()


app = FastAPI(title="SQL Assistant API", lifespan=lifespan)

API_KEY_HEADER = "x-api-key"
CLIENT_GONE = {"type": "client_gone"}
USER_ID_HEADER = "x-user-id"


# ---------------------------------------------------------------------------
# Auth + rate-limit middleware (runs first on /api/* paths)
# ---------------------------------------------------------------------------
@app.middleware("http")
async def api_key_and_rate_limit_middleware(request: Request, call_next):
    path = request.url.path
    if not path.startswith("/api/"):
        return await call_next(request)

    # Extract API key
    api_key = request.headers.get(API_KEY_HEADER)
    if not authmod.is_key_allowed(api_key):
        return JSONResponse(status_code=401, content={"detail": "Missing or invalid API key"})

    # Rate limit check (synchronous limiter, no await needed)
    allowed, remaining = authmod.check_rate_limit(api_key or "")
    if not allowed:
        resp = JSONResponse(
            status_code=429,
            content=error_envelope(None, "E_RATE_LIMIT", "Rate limit exceeded"),
        )
        resp.headers["Retry-After"] = "60"
        return resp

    request.state.user_id = authmod.resolve_user_id(api_key, request.headers.get(USER_ID_HEADER))
    return await call_next(request)


# ---------------------------------------------------------------------------
# Metrics middleware
# ---------------------------------------------------------------------------
@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    endpoint = request.url.path
    method = request.method
    status_code = "500"
    try:
        response = await call_next(request)
        status_code = str(response.status_code)
        return response
    except Exception:
        monitoring.logger.exception("Unhandled exception in request", extra={"path": endpoint})
        raise
    finally:
        monitoring.observe_request(start, endpoint, method, status_code)


def _caller_id(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return user_id
    return authmod.resolve_user_id(request.headers.get(API_KEY_HEADER), request.headers.get(USER_ID_HEADER))


def _with_request_id(req: GenerateRequest) -> GenerateRequest:
    if req.request_id:
        return req
    return req.model_copy(update={"request_id": str(uuid.uuid4())})


def _internal_error(request_id, e: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content=error_envelope(request_id, E_INTERNAL, "Internal server error", {"exception": str(e)}),
    )


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------
@app.post("/api/sql/generate")
async def generate_sql(req: GenerateRequest, request: Request):
    """
    POST /api/sql/generate
    Body: { "query": "...", "table_names": "ORDERS,STORES", "session_id": "...", "request_id": "..." }
    Business failures come back as 200 with status=error; 503 means the warehouse or LLM is unreachable.
    """
    req = _with_request_id(req)
    user_id = _caller_id(request)
    monitoring.logger.info("Received /api/sql/generate request", extra={
        "request_id": req.request_id, "session_id": req.session_id, "query_preview": req.query[:200],
    })
    sink = BufferedSink()
    try:
        await run_in_threadpool(orchestrator.run, req, user_id, sink, "rest")
    except Exception as e:
        monitoring.logger.exception("Unexpected error in /api/sql/generate handler")
        return _internal_error(req.request_id, e)

    if sink.result is not None:
        body = sink.result.model_dump()
        body["status"] = "success"
        return JSONResponse(status_code=200, content=body)

    code = sink.error_code or E_INTERNAL
    if code == E_TRANSPORT:
        http_status = 503
    elif code == E_INTERNAL:
        http_status = 500
    else:
        http_status = 200
    return JSONResponse(
        status_code=http_status,
        content=error_envelope(req.request_id, code, sink.error or "Generation failed"),
    )


@app.get("/api/sql/generate/status/{request_id}")
def get_generation_status(request_id: str = Path(..., description="Request ID to poll")):
    """Progress of a generation request. Unknown ids report a pending entry, never 404."""
    entry = progress.get(request_id)
    return JSONResponse(status_code=200, content=jsonable_encoder(entry))


@app.websocket("/api/ws/sql")
async def generate_sql_ws(websocket: WebSocket):
    """
    Single-shot streaming generation: the client sends one GenerateRequest JSON,
    then receives progress / chunk frames and exactly one complete or error frame.
    """
    api_key = websocket.query_params.get("api_key") or websocket.headers.get(API_KEY_HEADER)
    if not authmod.is_key_allowed(api_key):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    allowed, _ = authmod.check_rate_limit(api_key or "")
    if not allowed:
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
        return
    user_id = authmod.resolve_user_id(
        api_key, websocket.headers.get(USER_ID_HEADER) or websocket.query_params.get("user_id")
    )

    await websocket.accept()
    try:
        payload = await websocket.receive_json()
        req = _with_request_id(GenerateRequest.model_validate(payload))
    except WebSocketDisconnect:
        return
    except (ValidationError, ValueError, KeyError) as e:
        await websocket.send_json({"type": "error", "message": f"Invalid request: {e}", "error_code": "E_BAD_REQUEST"})
        await websocket.close()
        return

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    cancel_event = threading.Event()
    sink = QueueSink(loop, queue)
    task = asyncio.ensure_future(run_in_threadpool(orchestrator.run, req, user_id, sink, "ws", cancel_event))

    def _on_done(t: asyncio.Future):
        if t.cancelled() or t.exception() is not None:
            if not t.cancelled():
                monitoring.logger.error("WebSocket generation crashed", exc_info=t.exception())
            queue.put_nowait({"type": "error", "message": "Internal server error", "error_code": E_INTERNAL})

    task.add_done_callback(_on_done)

    async def _watch_disconnect():
        # the client sends nothing after the request, so any receive is either noise or the close
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        except (WebSocketDisconnect, RuntimeError):
            pass
        cancel_event.set()
        queue.put_nowait(CLIENT_GONE)

    watcher = asyncio.ensure_future(_watch_disconnect())
    try:
        while True:
            frame = await queue.get()
            if frame is CLIENT_GONE:
                break
            await websocket.send_json(jsonable_encoder(frame))
            if frame.get("type") in TERMINAL_FRAMES:
                break
    except (WebSocketDisconnect, RuntimeError):
        cancel_event.set()
    finally:
        watcher.cancel()

    if cancel_event.is_set():
        monitoring.logger.info("WebSocket client went away", extra={"request_id": req.request_id})
        return
    try:
        await websocket.close()
    except RuntimeError:
        pass


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------
@app.post("/api/sql/execute")
async def execute_sql(req: ExecuteRequest, request: Request):
    """
    POST /api/sql/execute
    Body: { "sql": "SELECT ...", "page": 1, "page_size": 50, "timeout_seconds": 30 }
    Validation and engine errors come back as 200 with success=false.
    """
    user_id = _caller_id(request)
    start = time.time()
    # the whole call is bounded by the request limit, whatever the caller asked for
    timeout = min(req.timeout_seconds or settings.exec_timeout, settings.execute_request_timeout)
    try:
        result = await run_in_threadpool(executor.execute, req.sql, req.page, req.page_size, timeout)
    except TransportFailure as e:
        monitoring.record("execute_sql", time.time() - start, False, {"user_id": user_id, "error": e.message})
        return JSONResponse(status_code=503, content=error_envelope(None, e.error_code, e.message))
    except Exception as e:
        monitoring.logger.exception("Unexpected error in /api/sql/execute handler")
        return _internal_error(None, e)

    elapsed = time.time() - start
    monitoring.record("execute_sql", elapsed, result.success, {"user_id": user_id, "row_count": result.row_count})
    monitoring.logger.info("SQL audit", extra={
        "user_id": user_id,
        "success": result.success,
        "row_count": result.row_count,
        "page": result.page,
        "elapsed_ms": int(elapsed * 1000),
        "sql_preview": req.sql[:500],
        "error": result.error,
    })
    return JSONResponse(status_code=200, content=jsonable_encoder(result))


DEFAULT_EXPORT_ROWS = 1000


@app.post("/api/sql/export")
async def export_sql(req: ExportRequest, request: Request):
    """
    POST /api/sql/export
    Body: { "sql": "SELECT ...", "format": "excel" | "word", "filename": "...", "limit": 1000 }
    Returns the first rows as a downloadable document. Rejected or failing SQL comes back as a 200 error envelope.
    """
    user_id = _caller_id(request)
    start = time.time()
    limit = min(req.limit or DEFAULT_EXPORT_ROWS, settings.export_max_rows)
    try:
        result = await run_in_threadpool(executor.fetch_for_export, req.sql, limit, settings.execute_request_timeout)
    except TransportFailure as e:
        monitoring.record("export_sql", time.time() - start, False, {"user_id": user_id, "error": e.message})
        return JSONResponse(status_code=503, content=error_envelope(None, e.error_code, e.message))
    except Exception as e:
        monitoring.logger.exception("Unexpected error in /api/sql/export handler")
        return _internal_error(None, e)

    monitoring.record("export_sql", time.time() - start, result.success,
                      {"user_id": user_id, "format": req.format, "row_count": result.row_count})
    if not result.success:
        return JSONResponse(status_code=200, content=error_envelope(
            None, result.error_code or E_EXECUTION_FAILED, result.error or "SQL execution failed"))

    rows_note = f"Rows: {result.row_count}"
    if result.has_more:
        rows_note += f" (limited to the first {limit})"
    notes = [
        f"Exported at: {time.strftime(exporter.TIMESTAMP_FORMAT)}",
        rows_note,
        "SQL: " + exporter.truncate(req.sql.strip(), 400),
    ]
    document = exporter.build_table_document("SQL query result", notes, result.columns, result.rows)
    ext, content_type = exporter.FORMATS[req.format]
    filename = exporter.attachment_filename(req.filename, exporter.timestamp_stem("sql_result"), ext)
    return Response(content=document, media_type=f"{content_type}; charset=utf-8",
                    headers=exporter.attachment_headers(filename))


@app.post("/api/sql/debug")
async def debug_sql(req: DebugRequest, request: Request):
    """
    POST /api/sql/debug
    Body: { "sql": "SELECT ...", "error": "ORA-00904: ..." }
    Asks the model for the cause of the error and a corrected statement.
    """
    user_id = _caller_id(request)
    try:
        suggestion = await run_in_threadpool(orchestrator.debug, req, user_id)
    except TransportFailure as e:
        return JSONResponse(status_code=503, content=error_envelope(None, e.error_code, e.message))
    except GenerationFailed as e:
        return JSONResponse(status_code=200, content=error_envelope(None, e.error_code, e.message))
    except Exception as e:
        monitoring.logger.exception("Unexpected error in /api/sql/debug handler")
        return _internal_error(None, e)
    return {"status": "success", "debug": suggestion.model_dump()}


# ---------------------------------------------------------------------------
# Sessions, templates, warehouse metadata
# ---------------------------------------------------------------------------
@app.get("/api/sql/sessions")
def list_sessions(request: Request):
    user_id = _caller_id(request)
    return {"status": "success", "sessions": memory_store.list_sessions(user_id)}


@app.get("/api/sql/sessions/{session_id}/history")
def get_session_history(request: Request, session_id: str = Path(..., description="Session to read")):
    user_id = _caller_id(request)
    entries = memory_store.get_session(user_id, session_id)
    return JSONResponse(status_code=200, content={
        "status": "success",
        "session_id": session_id,
        "history": jsonable_encoder(entries),
    })


def _template_view(template: SqlTemplate, user_id: str) -> dict:
    body = template.model_dump()
    body["editable"] = TemplateStore.is_editable(template, user_id)
    return body


def _templates_payload(user_id: str) -> list:
    return [_template_view(t, user_id) for t in template_store.list_all()]


def _editable_template_or_error(template_id: str, user_id: str):
    existing = template_store.get(template_id)
    if existing is None:
        return None, JSONResponse(status_code=404, content=error_envelope(None, E_NOT_FOUND, "Template not found"))
    if not TemplateStore.is_editable(existing, user_id):
        return None, JSONResponse(status_code=403, content=error_envelope(
            None, E_FORBIDDEN, "Template is not editable"))
    return existing, None


@app.get("/api/sql/templates")
def list_templates(request: Request):
    user_id = _caller_id(request)
    return {"status": "success", "templates": _templates_payload(user_id)}


@app.post("/api/sql/templates")
def create_template(req: TemplateUpsertRequest, request: Request):
    user_id = _caller_id(request)
    start = time.time()
    template = SqlTemplate(
        template_id=f"tpl_{uuid.uuid4().hex[:12]}",
        name=req.name,
        keywords=req.keywords,
        sql=req.sql,
        description=req.description,
        owner_id=user_id,
    )
    saved = template_store.add(template) is not None
    monitoring.record("template_create", time.time() - start, saved,
                      {"user_id": user_id, "template_id": template.template_id})
    if not saved:
        return _internal_error(None, RuntimeError("template could not be saved"))
    return JSONResponse(status_code=201, content={
        "status": "success",
        "template": _template_view(template, user_id),
        "templates": _templates_payload(user_id),
    })


@app.put("/api/sql/templates/{template_id}")
def update_template(req: TemplateUpsertRequest, request: Request,
                    template_id: str = Path(..., description="Template to replace")):
    user_id = _caller_id(request)
    start = time.time()
    existing, error = _editable_template_or_error(template_id, user_id)
    if error is not None:
        monitoring.record("template_update", time.time() - start, False, {"user_id": user_id, "template_id": template_id})
        return error
    updated = existing.model_copy(update={
        "name": req.name, "keywords": req.keywords, "sql": req.sql, "description": req.description,
    })
    saved = template_store.update(updated)
    monitoring.record("template_update", time.time() - start, saved, {"user_id": user_id, "template_id": template_id})
    if not saved:
        return _internal_error(None, RuntimeError("template could not be updated"))
    return {"status": "success", "template": _template_view(updated, user_id), "templates": _templates_payload(user_id)}


@app.delete("/api/sql/templates/{template_id}")
def delete_template(request: Request, template_id: str = Path(..., description="Template to delete")):
    user_id = _caller_id(request)
    start = time.time()
    _, error = _editable_template_or_error(template_id, user_id)
    if error is not None:
        monitoring.record("template_delete", time.time() - start, False, {"user_id": user_id, "template_id": template_id})
        return error
    deleted = template_store.delete(template_id)
    monitoring.record("template_delete", time.time() - start, deleted, {"user_id": user_id, "template_id": template_id})
    if not deleted:
        return _internal_error(None, RuntimeError("template could not be deleted"))
    return {"status": "success", "templates": _templates_payload(user_id)}


@app.get("/api/chat/sessions")
def list_chat_sessions(request: Request):
    user_id = _caller_id(request)
    return {"status": "success", "sessions": chat_store.list_sessions(user_id)}


@app.get("/api/chat/{session_id}/messages")
def get_chat_messages(request: Request, session_id: str = Path(..., description="Session to read"),
                      limit: int = Query(100, ge=1, le=1000), keyword: str = Query("")):
    user_id = _caller_id(request)
    messages = chat_store.get_messages(user_id, session_id, keyword=keyword.strip() or None, limit=limit)
    return {"status": "success", "session_id": session_id, "messages": messages}


CHAT_EXPORT_LIMIT = 1000


@app.get("/api/chat/{session_id}/export")
def export_chat_session(request: Request, session_id: str = Path(..., description="Session to export"),
                        fmt: str = Query("text", alias="format", pattern="^(text|excel|word)$")):
    user_id = _caller_id(request)
    start = time.time()
    messages = chat_store.get_messages(user_id, session_id, limit=CHAT_EXPORT_LIMIT)
    monitoring.record("chat_export", time.time() - start, True,
                      {"user_id": user_id, "session_id": session_id, "format": fmt, "messages": len(messages)})
    stem = exporter.sanitize_filename(f"chat_{session_id}", "chat")
    if fmt == "text":
        lines = "".join(f"[{m['created_at']}][{m['role']}] {m['content']}\n" for m in messages)
        return PlainTextResponse(lines, headers=exporter.attachment_headers(stem + ".txt"))

    rows = [[m["created_at"].replace("T", " ")[:19], m["role"].upper(), m["content"]] for m in messages]
    notes = [
        f"Session: {session_id}",
        f"Messages: {len(messages)}",
        f"Exported at: {time.strftime(exporter.TIMESTAMP_FORMAT)}",
    ]
    document = exporter.build_table_document("Conversation export", notes, ["Time", "Role", "Content"], rows)
    ext, content_type = exporter.FORMATS[fmt]
    return Response(content=document, media_type=f"{content_type}; charset=utf-8",
                    headers=exporter.attachment_headers(exporter.attachment_filename(stem, "chat", ext)))


@app.get("/api/database/tables")
async def list_tables():
    try:
        tables = await run_in_threadpool(warehouse.list_tables, settings.exec_timeout)
    except TransportFailure as e:
        return JSONResponse(status_code=503, content=error_envelope(None, e.error_code, e.message))
    except ExecutionFailed as e:
        return JSONResponse(status_code=200, content=error_envelope(None, e.error_code, e.message))
    return {"status": "success", "tables": tables}


@app.get("/api/database/tables/{table_name}")
async def get_table(table_name: str = Path(..., description="Table to describe")):
    name = warehouse.normalize_table_name(table_name)
    try:
        schema = await run_in_threadpool(warehouse.get_table_schema, name, settings.exec_timeout)
    except TransportFailure as e:
        return JSONResponse(status_code=503, content=error_envelope(None, e.error_code, e.message))
    except ExecutionFailed as e:
        return JSONResponse(status_code=200, content=error_envelope(None, e.error_code, e.message))
    return {"status": "success", "table": schema.model_dump()}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    if not monitoring.PROMETHEUS_ENABLED:
        return PlainTextResponse("Prometheus disabled", status_code=404)
    payload, content_type = monitoring.prometheus_metrics_response()
    return Response(content=payload, media_type=content_type)
