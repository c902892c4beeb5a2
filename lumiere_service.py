"""
Lumiere relay service: thin proxy between the chat frontend and Groq.

Routes (served bare and under /api, which is what the bundled frontend calls):
  POST /chat              single-shot completion, upstream JSON mirrored
  POST /chat/stream       text/event-stream relay of the upstream SSE body
  POST /audio/transcribe  base64 audio -> multipart upload to Whisper
  GET  /models            upstream model list passthrough

Every error is answered as {"error": {"message": "..."}}. The one exception
is a failure in the middle of a stream: headers are already on the wire, so
it is logged and the connection is closed.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import json
import math
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Dict, Optional

import anyio
import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.datastructures import MutableHeaders
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from config import ConfigurationError, load_config
from logger import setup_logging
from rate_limiter import FixedWindowRateLimiter
from sse_handler import SSE_HEADERS, StreamRelay
from upstream import UpstreamClient
from utils import dump_config, load_env_files
from validation import sanitize_params, validate_chat_body

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
}

# Load environment
load_env_files()

# Load configuration; a missing key is fatal at startup, not at import
config = load_config()
config.validate(require_api_key=False)

# Initialize logging
log = setup_logging(config.log_level, config.log_path, color=config.log_color)
dump_config(config)

# Initialize components
upstream_client = UpstreamClient(config)
global_limiter = FixedWindowRateLimiter(
    config.global_rate_limit, config.global_rate_window_s, name="global"
)
chat_limiter = FixedWindowRateLimiter(config.chat_rate_limit, config.chat_rate_window_s, name="chat")
transcribe_limiter = FixedWindowRateLimiter(
    config.transcribe_rate_limit, config.transcribe_rate_window_s, name="transcribe"
)


def error_body(message: str) -> Dict[str, Any]:
    return {"error": {"message": message}}


def _client_key(request: Request) -> str:
    # Raw peer address, no X-Forwarded-For handling: clients behind one proxy share a window.
    return request.client.host if request.client else "unknown"


def _request_id(request: Request) -> str:
    return (
        (request.headers.get("x-request-id") or "").strip()
        or (request.headers.get("x-correlation-id") or "").strip()
        or uuid.uuid4().hex
    )


async def _sweep_rate_limits() -> None:
    """Periodically drop expired rate-limit windows so the tables stay bounded."""
    while True:
        await asyncio.sleep(config.rate_limit_sweep_s)
        for limiter in (global_limiter, chat_limiter, transcribe_limiter):
            limiter.evict_expired()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Lifespan context manager for FastAPI application.

    Refuses to start without GROQ_API_KEY, runs the rate-limit sweeper and
    closes the upstream connection pool on shutdown.
    """
    try:
        config.validate()
    except ConfigurationError as e:
        log.critical("%s - server cannot start.", e)
        raise

    sweeper = asyncio.create_task(_sweep_rate_limits(), name="lumiere.sweep_rate_limits")

    yield  # Application is running

    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await upstream_client.aclose()


class SecurityHeadersMiddleware:
    """Add conservative security headers to every HTTP response."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in SECURITY_HEADERS.items():
                    headers.setdefault(name, value)
            await send(message)

        await self.app(scope, receive, send_with_headers)


async def _wait_for_disconnect(receive: Receive) -> None:
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            return


class RelayResponse(StreamingResponse):
    """
    Event-stream response that owns a StreamRelay.

    Headers are sent once, before the first chunk. A client disconnect
    cancels the pump, which interrupts any pending upstream read, and the
    relay is released whichever way the response ends.
    """

    def __init__(self, relay: StreamRelay, headers: Optional[Dict[str, str]] = None) -> None:
        super().__init__(
            relay.iter_text(),
            media_type="text/event-stream",
            headers={**SSE_HEADERS, **(headers or {})},
        )
        self.relay = relay

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            async with anyio.create_task_group() as tg:

                async def pump() -> None:
                    try:
                        await self.stream_response(send)
                    except OSError as e:
                        log.info("Client write failed; treating as disconnect err=%r", e)
                    tg.cancel_scope.cancel()

                tg.start_soon(pump)
                await _wait_for_disconnect(receive)
                if not self.relay.finished:
                    log.info("Client disconnected mid-stream; cancelling upstream read")
                tg.cancel_scope.cancel()
        finally:
            with anyio.CancelScope(shield=True):
                await self.relay.aclose()


# ============================================================================
# Dependencies
# ============================================================================

async def require_upstream_key() -> None:
    if not config.groq_api_key:
        log.error("GROQ_API_KEY missing; refusing to forward request")
        raise HTTPException(status_code=500, detail="Server misconfigured")


def rate_limit_headers(limiter: FixedWindowRateLimiter, key: str) -> Dict[str, str]:
    """Standard RateLimit-* headers plus Retry-After for a rejected request."""
    remaining, reset_s = limiter.quota(key)
    reset = str(math.ceil(reset_s))
    return {
        "RateLimit-Limit": str(limiter.max_requests),
        "RateLimit-Remaining": str(remaining),
        "RateLimit-Reset": reset,
        "Retry-After": reset,
    }


def _enforce(limiter: FixedWindowRateLimiter, request: Request, message: str) -> None:
    key = _client_key(request)
    if limiter.is_limited(key):
        log.warning("Rate limited policy=%s client=%s path=%s", limiter.name, key, request.url.path)
        raise HTTPException(status_code=429, detail=message, headers=rate_limit_headers(limiter, key))


async def limit_global(request: Request) -> None:
    _enforce(global_limiter, request, "Request limit exceeded")


async def limit_chat(request: Request) -> None:
    _enforce(chat_limiter, request, "Too many requests. Please wait a minute.")


async def limit_transcribe(request: Request) -> None:
    _enforce(transcribe_limiter, request, "Too many requests. Please wait a minute.")


# ============================================================================
# Helpers
# ============================================================================

async def _read_json_body(request: Request) -> Any:
    """
    Read and decode the JSON body, enforcing the size cap.

    Returns None for undecodable bodies so validation reports "Invalid body".
    """
    cl = request.headers.get("content-length")
    if cl:
        try:
            n = int(cl)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid Content-Length header: {cl!r}")
        if n > config.max_request_bytes:
            raise HTTPException(status_code=413, detail="Request too large")

    raw = await request.body()
    if len(raw) > config.max_request_bytes:
        raise HTTPException(status_code=413, detail="Request too large")
    try:
        return json.loads(raw)
    except ValueError:
        return None


def _validated_payload(body: Any, req_id: str) -> Dict[str, Any]:
    err = validate_chat_body(body)
    if err:
        log.info("Rejected chat req_id=%s reason=%s", req_id, err)
        raise HTTPException(status_code=400, detail=err)
    payload = sanitize_params(body)
    log.info(
        "Incoming chat req_id=%s model=%s messages=%d max_tokens=%d",
        req_id,
        payload["model"],
        len(payload["messages"]),
        payload["max_tokens"],
    )
    return payload


async def _mirror_upstream(resp: httpx.Response, req_id: str, what: str) -> JSONResponse:
    """Pass the upstream JSON body and status through to the caller."""
    try:
        await resp.aread()
        data = resp.json()
    finally:
        await resp.aclose()
    if not resp.is_success:
        log.warning("Upstream %s error req_id=%s status=%s", what, req_id, resp.status_code)
    return JSONResponse(data, status_code=resp.status_code)


async def _with_timeout(work: Awaitable[Response], timeout_s: float, req_id: str) -> Response:
    try:
        return await asyncio.wait_for(work, timeout=timeout_s)
    except asyncio.TimeoutError:
        log.warning("Request timed out req_id=%s after=%.1fs", req_id, timeout_s)
        raise HTTPException(status_code=408, detail="Request timeout")


def _decode_audio(audio: str) -> bytes:
    """Decode base64 audio, tolerating a data: URL prefix."""
    if audio.startswith("data:") and "," in audio:
        audio = audio.split(",", 1)[1]
    data = base64.b64decode(audio)
    if not data:
        raise ValueError("empty audio payload")
    return data


# ============================================================================
# Routes
# ============================================================================

router = APIRouter(dependencies=[Depends(require_upstream_key), Depends(limit_global)])


@router.post("/chat", dependencies=[Depends(limit_chat)])
async def chat(request: Request) -> Response:
    """Single-shot chat completion."""
    req_id = _request_id(request)
    return await _with_timeout(_chat_once(request, req_id), config.chat_timeout_s, req_id)


async def _chat_once(request: Request, req_id: str) -> Response:
    payload = _validated_payload(await _read_json_body(request), req_id)
    try:
        resp = await upstream_client.chat_completion(payload)
        return await _mirror_upstream(resp, req_id, "chat")
    except (httpx.HTTPError, ValueError) as e:
        log.error("Chat failed req_id=%s err=%r", req_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/chat/stream", dependencies=[Depends(limit_chat)])
async def chat_stream(request: Request) -> Response:
    """
    Streaming chat completion.

    Everything that can fail before the first byte (validation, rate limits,
    upstream status) is answered as a JSON error. Once RelayResponse starts,
    the status is committed.
    """
    req_id = _request_id(request)
    payload = _validated_payload(await _read_json_body(request), req_id)
    try:
        resp = await upstream_client.chat_completion(payload, stream=True)
    except httpx.HTTPError as e:
        log.error("Chat stream upstream call failed req_id=%s err=%r", req_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")

    if not resp.is_success:
        try:
            return await _mirror_upstream(resp, req_id, "chat stream")
        except (httpx.HTTPError, ValueError) as e:
            log.error("Chat stream error body unreadable req_id=%s err=%r", req_id, e)
            raise HTTPException(status_code=500, detail="Internal server error")

    relay = StreamRelay.from_response(resp, req_id=req_id)
    return RelayResponse(relay, headers={"X-Request-Id": req_id})


@router.post("/audio/transcribe", dependencies=[Depends(limit_transcribe)])
async def transcribe(request: Request) -> Response:
    """Transcribe base64 audio ({audio, mimeType?, language?})."""
    req_id = _request_id(request)
    return await _with_timeout(
        _transcribe_once(request, req_id), config.transcribe_timeout_s, req_id
    )


async def _transcribe_once(request: Request, req_id: str) -> Response:
    body = await _read_json_body(request)
    audio = body.get("audio") if isinstance(body, dict) else None
    if not isinstance(audio, str) or not audio:
        raise HTTPException(status_code=400, detail="Audio data required")
    try:
        audio_bytes = _decode_audio(audio)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Invalid audio data")

    mime_type = body.get("mimeType")
    language = body.get("language")
    try:
        resp = await upstream_client.transcribe(
            audio_bytes,
            mime_type if isinstance(mime_type, str) else None,
            language if isinstance(language, str) else None,
        )
        return await _mirror_upstream(resp, req_id, "transcription")
    except (httpx.HTTPError, ValueError) as e:
        log.error("Transcription failed req_id=%s err=%r", req_id, e)
        raise HTTPException(status_code=500, detail="Transcription failed")


@router.get("/models")
async def list_models(request: Request) -> Response:
    """Upstream model list passthrough."""
    req_id = _request_id(request)
    return await _with_timeout(_models_once(req_id), config.models_timeout_s, req_id)


async def _models_once(req_id: str) -> Response:
    try:
        resp = await upstream_client.list_models()
        return await _mirror_upstream(resp, req_id, "models")
    except (httpx.HTTPError, ValueError) as e:
        log.error("Model list failed req_id=%s err=%r", req_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")


# ============================================================================
# Application
# ============================================================================

app = FastAPI(title="lumiere-relay", version="1.0.0", lifespan=lifespan)

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.cors_origins),
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type"],
    max_age=86400,
)

app.include_router(router, prefix="/api")
app.include_router(router, include_in_schema=False)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render every HTTP error, including unmatched routes, in the error envelope."""
    if exc.status_code == 404:
        message = "Not found"
    else:
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(error_body(message), status_code=exc.status_code, headers=exc.headers)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Unhandled error path=%s", request.url.path)
    return JSONResponse(error_body("Internal server error"), status_code=500)


@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    try:
        config.validate()
    except ConfigurationError as e:
        log.critical("%s - server cannot start.", e)
        raise SystemExit(1)

    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)
