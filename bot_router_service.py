"""
Bot router service: persona chat requests -> first capable text-generation back-end.

Back-ends (priority order):
  OpenAI (streamed pass-through), Vapi, Retell, Bland, Free Fallback (synthetic)

Every success is streamed to the client in the same record framing
(0: text, d: completion, e: terminator), whichever back-end answered.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from config import load_config
from errors import (
    EndpointDisabledError,
    PayloadTooLargeError,
    RequestValidationError,
    RouterError,
    UpstreamError,
    error_response,
)
from failover import FailoverOrchestrator
from logger import setup_logging
from models import parse_chat_request, with_system_prompt
from registry import build_registry
from stream_handler import normalize
from upstream import OpenAIAdapter
from utils import dump_config, load_env_files

# Load environment
load_env_files()

# Load configuration
config = load_config()

# Initialize logging
log = setup_logging(config.log_path, config.log_level)
dump_config(config)

# Timeout names are checked against the lineup before the ceiling sum.
registry = build_registry(config)
config.validate()
orchestrator = FailoverOrchestrator()

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Log the back-end lineup at startup; nothing to tear down."""
    status = registry.status()
    log.info(
        "Back-ends registered=%s available=%s primary=%s",
        [d.name for d in registry.backends],
        status["availableServices"],
        status["primaryService"],
    )
    yield


app = FastAPI(
    title="bot-router-service",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RouterError)
async def router_error_handler(request: Request, exc: RouterError) -> Response:
    """Every RouterError leaves as a JSON body with an `error` string."""
    return error_response(exc, req_id=_request_id(request), expose_detail=config.expose_error_detail)


def _request_id(request: Request) -> str:
    return (
        (request.headers.get("x-request-id") or "").strip()
        or (request.headers.get("x-correlation-id") or "").strip()
        or uuid.uuid4().hex
    )


def _check_content_length(request: Request) -> None:
    """Reject bodies larger than MAX_REQUEST_BYTES before reading them."""
    cl = request.headers.get("content-length")
    if not cl:
        return
    try:
        n = int(cl)
    except ValueError:
        raise RequestValidationError(f"Invalid Content-Length header: {cl!r}")
    if n < 0:
        raise RequestValidationError("Invalid Content-Length: must be non-negative")
    if n > config.max_request_bytes:
        raise PayloadTooLargeError(f"Request too large: {n} bytes (max {config.max_request_bytes})")


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except Exception:
        raise RequestValidationError("Invalid JSON body")


@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/api/status")
async def api_status() -> Dict[str, Any]:
    """Which back-ends would serve a request right now."""
    return registry.status()


@app.post("/api/chat")
async def api_chat(request: Request) -> Response:
    """Answer one conversation turn from the first back-end that succeeds."""
    req_id = _request_id(request)
    _check_content_length(request)

    try:
        chat = parse_chat_request(await _read_json(request))
    except RequestValidationError as e:
        return error_response(e, req_id=req_id)

    client_ip = request.client.host if request.client else "unknown"
    log.info(
        "Incoming chat req_id=%s from=%s messages=%d bot=%r preferred=%r",
        req_id,
        client_ip,
        len(chat.messages),
        chat.persona.display_name,
        chat.preferred_service,
    )

    candidates = registry.candidates(chat.preferred_service)
    log.info("Candidates req_id=%s: %s", req_id, ", ".join(d.name for d in candidates) or "<none>")

    conversation = with_system_prompt(chat.messages, chat.persona)
    try:
        success = await orchestrator.run(candidates, conversation, chat.persona, req_id=req_id)
        body = normalize(success.result, success.source)
    except RouterError as e:
        return error_response(e, req_id=req_id, expose_detail=config.expose_error_detail)
    except Exception as e:
        log.exception("Chat handler failed req_id=%s", req_id)
        return error_response(e, req_id=req_id, expose_detail=config.expose_error_detail)

    log.info("Streaming reply req_id=%s source=%s", req_id, success.source)
    return StreamingResponse(body, media_type="text/plain; charset=utf-8", headers=STREAM_HEADERS)


def _require_diagnostics() -> None:
    if not config.enable_diagnostic_endpoints:
        raise EndpointDisabledError("Not Found")


@app.post("/api/test-timeout")
async def api_test_timeout(request: Request) -> Response:
    """Simulate a slow or failing upstream to exercise client-side handling."""
    _require_diagnostics()
    try:
        body = await request.json()
    except Exception:
        body = {}
    if not isinstance(body, dict):
        body = {}

    simulate_timeout = bool(body.get("simulateTimeout"))
    simulate_failure = bool(body.get("simulateFailure"))
    try:
        delay_ms = max(0, int(body.get("delayMs", 5000)))
    except (TypeError, ValueError):
        delay_ms = 5000
    log.info(
        "Test endpoint called simulateTimeout=%s simulateFailure=%s delayMs=%s",
        simulate_timeout,
        simulate_failure,
        delay_ms,
    )

    if simulate_timeout:
        await asyncio.sleep(delay_ms / 1000)
        return JSONResponse({"message": "This should have timed out"})

    if simulate_failure:
        log.warning("Test endpoint simulated failure")
        return JSONResponse(
            status_code=500,
            content={"error": "Test endpoint error", "details": "Simulated service failure"},
        )

    return JSONResponse(
        {
            "message": "Test endpoint working normally",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )


@app.post("/api/test-openai")
async def api_test_openai(request: Request) -> Response:
    """One direct, non-streaming OpenAI call, bypassing failover."""
    _require_diagnostics()
    req_id = _request_id(request)
    try:
        chat = parse_chat_request(await _read_json(request))
    except RequestValidationError as e:
        return error_response(e, req_id=req_id)

    adapter = OpenAIAdapter(config)
    try:
        result = await adapter.complete(with_system_prompt(chat.messages, chat.persona))
    except UpstreamError as e:
        log.error("Direct OpenAI call failed req_id=%s err=%s", req_id, e)
        return JSONResponse(status_code=500, content={"error": f"OpenAI API Error: {e.cause}"[:300]})
    return JSONResponse(result)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)
