"""
A2W Runtime: API Server

FastAPI application serving, under /a2w/v1:
  GET  /manifest              agent identity, weight, permissions
  GET  /capabilities          ability listing
  POST /start                 submit a Task Context (idempotent on task_id)
  GET  /status?task_id=       execution state snapshot
  POST /stop                  graceful stop (checkpoint)
  POST /terminate             immediate terminate
  GET  /report?task_id=       report of a finished task
  GET  /logs?cursor=&limit=   action ledger page
  POST /insights              deliver data to a waiting task
  POST /weight                authorized weight update
  POST /unblock               blocked → waiting with a fresh need
  POST /retry                 resubmit an ended task
  POST /delegate              hand a running task to another agent
  POST /delegation/complete   apply the delegate's outcome
  GET  /stats                 runtime counters
  WS   /ws/{status,needs,errors,events}

plus GET /health (liveness) and GET /ready (readiness).

Every response body is an A2W envelope: a payload message on success,
an error message on failure. Request bodies may be plain JSON objects or
envelopes carrying a payload message.

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080

    # Development (synchronous handler execution)
    A2W_EXECUTION_DISPATCH_MODE=inline uvicorn api.server:app --reload

Requires: pip install fastapi uvicorn
"""

import asyncio
import json
import logging
import os
import time
from typing import Any

logger = logging.getLogger("a2w_runtime.api")

API_PREFIX = "/a2w/v1"


def create_app(
    runtime: Any = None,
    config: Any = None,
    handler: Any = None,
    config_path: str = "",
) -> Any:
    """
    Create and configure the FastAPI application.

    The runtime is built lazily from config (or config_path) on first
    use unless one is passed in, so tests can create fresh instances.
    """
    from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
    from fastapi.exceptions import RequestValidationError
    from fastapi.responses import Response
    from starlette.exceptions import HTTPException as StarletteHTTPException

    from a2w.envelope import A2W_VERSION, decode, to_bytes, to_json, wrap
    from a2w.errors import A2WError, ErrorCode, ErrorReporter, InvalidInput, MalformedEnvelope
    from a2w.types import DataPayload
    from api.models import (
        DelegateRequest,
        DelegationCompleteRequest,
        InsightRequest,
        RetryRequest,
        StopRequest,
        TerminateRequest,
        UnblockRequest,
        WeightRequest,
    )
    from runtime.broadcaster import Channel
    from runtime.config import RuntimeConfig
    from runtime.core import AgentRuntime
    from runtime.executor import InlineDispatcher

    app = FastAPI(
        title="A2W Agent Runtime",
        version="0.1.0",
        description="Agent-to-agent task runtime",
    )

    # ── State ────────────────────────────────────────────────

    _runtime: AgentRuntime | None = runtime
    _owned = runtime is None

    def get_runtime() -> AgentRuntime:
        nonlocal _runtime
        if _runtime is None:
            cfg = config or RuntimeConfig.load(base_path=config_path)
            _runtime = AgentRuntime.from_config(cfg, handler=handler)
        return _runtime

    def reporter() -> ErrorReporter:
        if _runtime is not None:
            return _runtime.errors
        return ErrorReporter("a2w-runtime", A2W_VERSION)

    def ok(data: dict[str, Any], status_code: int = 200) -> Response:
        rt = get_runtime()
        envelope = wrap(rt.agent.agent_id, DataPayload(data=data), rt.version)
        return Response(content=to_bytes(envelope), status_code=status_code,
                        media_type="application/json")

    def error_response(envelope) -> Response:
        return Response(content=to_bytes(envelope), status_code=envelope.payload.http_status,
                        media_type="application/json")

    async def read_body(request: Request) -> tuple[dict[str, Any], str]:
        """Body as a mapping plus the sender's agent id (envelope bodies only)."""
        raw = await request.body()
        if not raw.strip():
            return {}, ""
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedEnvelope(f"body is not valid JSON: {e}")
        if isinstance(data, dict) and "message_type" in data and "payload" in data:
            envelope = decode(data)
            if not isinstance(envelope.payload, DataPayload):
                raise InvalidInput(
                    f"request envelope must carry a payload message, "
                    f"not {envelope.message_type.value}"
                )
            return envelope.payload.data, envelope.agent_id
        if not isinstance(data, dict):
            raise InvalidInput("request body must be a JSON object")
        return data, ""

    def require_task_id(task_id: str | None) -> str:
        if not task_id:
            raise InvalidInput("task_id query parameter is required")
        return task_id

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("startup")
    async def startup():
        rt = get_runtime()
        if not isinstance(rt.dispatcher, InlineDispatcher):
            rt.start_background()

    @app.on_event("shutdown")
    async def shutdown():
        if _owned and _runtime is not None:
            _runtime.shutdown(wait=False)

    # ── Error envelopes ───────────────────────────────────────

    @app.exception_handler(A2WError)
    async def a2w_error_handler(request: Request, exc: A2WError):
        return error_response(reporter().report_exception(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        envelope = reporter().report(
            ErrorCode.INVALID_INPUT,
            message="Request validation failed",
            details={"errors": json.loads(json.dumps(exc.errors(), default=str))},
        )
        return error_response(envelope)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        code = ErrorCode.INTERNAL if exc.status_code >= 500 else ErrorCode.INVALID_INPUT
        envelope = reporter().report(code, http_status=exc.status_code, message=str(exc.detail))
        return error_response(envelope)

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception):
        return error_response(reporter().report_exception(exc))

    # ── Agent surface ─────────────────────────────────────────

    @app.get(f"{API_PREFIX}/manifest")
    async def manifest():
        return ok(get_runtime().manifest())

    @app.get(f"{API_PREFIX}/capabilities")
    async def capabilities():
        return ok(get_runtime().capabilities())

    @app.post(f"{API_PREFIX}/weight")
    async def update_weight(request: Request):
        body, sender = await read_body(request)
        body.setdefault("requested_by", sender)
        req = WeightRequest.parse(body)
        return ok(get_runtime().update_weight(req.weight, req.requested_by))

    # ── Task lifecycle ────────────────────────────────────────

    @app.post(f"{API_PREFIX}/start")
    async def start_task(request: Request):
        body, sender = await read_body(request)
        if sender and not body.get("caller_agent"):
            body["caller_agent"] = sender
        rt = get_runtime()
        result = rt.start(body)
        state = rt.registry.state_of(result.entry.task_id)
        return ok(
            {
                "task_id": result.entry.task_id,
                "handle": result.handle,
                "created": result.created,
                "state": state.value,
            },
            status_code=202 if result.created else 200,
        )

    @app.get(f"{API_PREFIX}/status")
    async def task_status(task_id: str | None = None):
        return ok(get_runtime().status(require_task_id(task_id)))

    @app.post(f"{API_PREFIX}/stop")
    async def stop_task(request: Request):
        body, _ = await read_body(request)
        req = StopRequest.parse(body)
        return ok(get_runtime().stop(req.task_id, override=req.override, reason=req.reason))

    @app.post(f"{API_PREFIX}/terminate")
    async def terminate_task(request: Request):
        body, _ = await read_body(request)
        req = TerminateRequest.parse(body)
        return ok(get_runtime().terminate(req.task_id, override=req.override, reason=req.reason))

    @app.get(f"{API_PREFIX}/report")
    async def task_report(task_id: str | None = None):
        return ok(get_runtime().report(require_task_id(task_id)))

    @app.get(f"{API_PREFIX}/logs")
    async def task_logs(cursor: str = "0", limit: str | None = None, task_id: str | None = None):
        return ok(get_runtime().logs(cursor, limit, task_id))

    @app.post(f"{API_PREFIX}/retry")
    async def retry_task(request: Request):
        body, _ = await read_body(request)
        req = RetryRequest.parse(body)
        result = get_runtime().retry(req.task_id, req.new_task_id)
        return ok(
            {
                "task_id": result.entry.task_id,
                "retry_of": req.task_id,
                "handle": result.handle,
                "created": result.created,
            },
            status_code=202 if result.created else 200,
        )

    # ── Need / insight ────────────────────────────────────────

    @app.post(f"{API_PREFIX}/insights")
    async def provide_insight(request: Request):
        body, _ = await read_body(request)
        req = InsightRequest.parse(body)
        result = get_runtime().provide_insight(req.task_id, req.payload, req.rating)
        return ok({
            "task_id": result.task_id,
            "resumed": result.resumed,
            "missing": result.missing,
            "state": result.state.value,
        })

    @app.post(f"{API_PREFIX}/unblock")
    async def unblock_task(request: Request):
        body, _ = await read_body(request)
        req = UnblockRequest.parse(body)
        continuation = get_runtime().unblock(req.task_id, req.required, req.urgency, req.description)
        return ok(continuation.to_dict())

    # ── Delegation ────────────────────────────────────────────

    @app.post(f"{API_PREFIX}/delegate")
    async def delegate_task(request: Request):
        body, _ = await read_body(request)
        req = DelegateRequest.parse(body)
        delegation = get_runtime().delegate(req.task_id, req.delegate_to, req.reason)
        return ok(delegation.to_dict(), status_code=202)

    @app.post(f"{API_PREFIX}/delegation/complete")
    async def complete_delegation(request: Request):
        body, _ = await read_body(request)
        req = DelegationCompleteRequest.parse(body)
        state = get_runtime().complete_delegation(req.task_id, req.outcome, req.result)
        return ok({"task_id": req.task_id, "state": state.value})

    # ── Stats / health ────────────────────────────────────────

    @app.get(f"{API_PREFIX}/stats")
    async def stats():
        return ok(get_runtime().stats())

    @app.get("/health")
    async def health():
        agent_id = _runtime.agent.agent_id if _runtime is not None else "a2w-runtime"
        envelope = wrap(agent_id, DataPayload(data={"status": "ok", "timestamp": time.time()}))
        return Response(content=to_bytes(envelope), media_type="application/json")

    @app.get("/ready")
    async def ready():
        try:
            rt = get_runtime()
            rt.stats()
            rt.store.read_logs(0, 1)
        except Exception as e:
            logger.warning("Readiness check failed: %s", e)
            envelope = reporter().report(
                ErrorCode.INTERNAL, http_status=503, message=f"not ready: {str(e)[:200]}",
            )
            return error_response(envelope)
        return ok({"status": "ok"})

    # ── WebSocket streams ─────────────────────────────────────

    async def forward(websocket: WebSocket, sub) -> None:
        while True:
            envelope = await sub.get()
            if envelope is None:
                return
            await websocket.send_text(to_json(envelope))

    async def listen(websocket: WebSocket, sub, rt: AgentRuntime) -> None:
        while True:
            try:
                text = await websocket.receive_text()
            except WebSocketDisconnect:
                return
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON websocket message")
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                # Replies go through the subscription so the socket has a single writer.
                sub.offer(wrap(rt.agent.agent_id, DataPayload(data={"type": "pong"}), rt.version))

    @app.websocket(API_PREFIX + "/ws/{channel}")
    async def stream(websocket: WebSocket, channel: str):
        try:
            selected = Channel(channel)
        except ValueError:
            await websocket.close(code=1008, reason=f"Unknown channel: {channel}")
            return

        rt = get_runtime()
        sub = rt.subscribe(selected)
        await websocket.accept()
        sender = asyncio.create_task(forward(websocket, sub))
        receiver = asyncio.create_task(listen(websocket, sub, rt))
        try:
            done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                if task.exception() is not None:
                    logger.debug("WebSocket %s stream ended: %s", channel, task.exception())
            if sender in done and receiver not in done:
                await websocket.close()
        finally:
            rt.broadcaster.unsubscribe(sub)

    return app


# ── Module-level app for uvicorn ──────────────────────────────

try:
    app = create_app(config_path=os.environ.get("A2W_CONFIG", ""))
except ImportError:
    # FastAPI not installed; app creation deferred
    app = None
