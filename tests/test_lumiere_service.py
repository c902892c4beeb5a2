"""
Comprehensive test suite for the Lumiere relay service.

Tests cover:
- Configuration management
- API endpoints (chat, chat stream, transcription, models, health)
- Error envelope, size limit, timeouts and rate limits
- Security headers and CORS
"""

import asyncio
import base64
import json
from dataclasses import replace

import httpx
import pytest

import lumiere_service
from config import AppConfig, ConfigurationError, load_config
from lumiere_service import RelayResponse, app, lifespan
from rate_limiter import FixedWindowRateLimiter
from sse_handler import RelayState, StreamRelay

MODEL = "llama-3.1-8b-instant"
COMPLETION = {
    "id": "chatcmpl-1",
    "object": "chat.completion",
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hello!"}, "finish_reason": "stop"}],
}
SSE_BODY = (
    b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n'
    b'data: {"choices":[{"delta":{"content":"lo"}}]}\n\n'
    b"data: [DONE]\n\n"
)


def _chat_body(**overrides):
    body = {"model": MODEL, "messages": [{"role": "user", "content": "hi"}]}
    body.update(overrides)
    return body


class StalledUpstream:
    """Upstream body that sends one frame, then stalls until cancelled."""

    def __init__(self):
        self.reads = 0
        self.cancel_calls = 0

    async def body(self):
        self.reads += 1
        yield b"data: a\n\n"
        await asyncio.Event().wait()
        self.reads += 1
        yield b"data: b\n\n"

    async def cancel(self):
        self.cancel_calls += 1


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
async def client():
    """HTTP client wired straight to the relay app, without a server or lifespan."""
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


# ============================================================================
# Config Tests
# ============================================================================

class TestConfig:
    """Test configuration management."""

    def test_from_env_defaults(self, monkeypatch):
        for name in ("MAX_RETRIES", "CHAT_RATE_LIMIT", "PORT", "MAX_REQUEST_BYTES", "ORIGIN"):
            monkeypatch.delenv(name, raising=False)
        cfg = AppConfig.from_env()
        assert cfg.groq_base_url == "https://api.groq.com/openai/v1"
        assert cfg.max_retries == 5
        assert cfg.chat_rate_limit == 20
        assert cfg.port == 3001
        assert cfg.max_request_bytes == 25 * 1024 * 1024
        assert cfg.cors_origins == ("http://localhost:5173", "http://localhost:4173")

    def test_from_env_custom_values(self, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "  gsk_custom  ")
        monkeypatch.setenv("MAX_RETRIES", "2")
        monkeypatch.setenv("CHAT_RATE_WINDOW_S", "30")
        monkeypatch.setenv("PORT", "not-a-number")
        monkeypatch.setenv("ORIGIN", "https://lumiere.example, http://localhost:5173")
        cfg = load_config()
        assert cfg.groq_api_key == "gsk_custom"
        assert cfg.max_retries == 2
        assert cfg.chat_rate_window_s == 30.0
        assert cfg.port == 3001
        assert cfg.cors_origins[-1] == "https://lumiere.example"
        assert cfg.cors_origins.count("http://localhost:5173") == 1

    def test_validate_success(self):
        load_config().validate()

    def test_validate_missing_api_key(self):
        cfg = replace(load_config(), groq_api_key="")
        with pytest.raises(ConfigurationError, match="GROQ_API_KEY"):
            cfg.validate()
        cfg.validate(require_api_key=False)

    @pytest.mark.parametrize(
        "field,value",
        [("max_retries", -1), ("chat_rate_limit", 0), ("chat_timeout_s", 0), ("max_request_bytes", 0)],
    )
    def test_validate_invalid_values(self, field, value):
        with pytest.raises(ConfigurationError):
            replace(load_config(), **{field: value}).validate()


class TestLifespan:
    """Test startup and shutdown."""

    @pytest.mark.asyncio
    async def test_refuses_to_start_without_key(self, monkeypatch):
        monkeypatch.setattr(lumiere_service, "config", replace(lumiere_service.config, groq_api_key=""))
        with pytest.raises(ConfigurationError):
            async with lifespan(app):
                pass

    @pytest.mark.asyncio
    async def test_start_and_stop(self, mock_upstream):
        mock_upstream(lambda request: httpx.Response(200, json={}))
        async with lifespan(app):
            await asyncio.sleep(0)


# ============================================================================
# API Endpoint Tests
# ============================================================================

class TestAPIEndpoints:
    """Test FastAPI endpoints."""

    @pytest.mark.asyncio
    async def test_healthz(self, client):
        response = await client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_chat_unknown_model(self, client, mock_upstream):
        seen = mock_upstream(lambda request: httpx.Response(200, json=COMPLETION))
        response = await client.post(
            "/chat", json={"model": "invalid-model", "messages": [{"role": "user", "content": "hi"}]}
        )
        assert response.status_code == 400
        assert response.json() == {"error": {"message": "Unknown model"}}
        assert seen == []

    @pytest.mark.asyncio
    async def test_chat_no_messages_makes_no_upstream_call(self, client, mock_upstream):
        seen = mock_upstream(lambda request: httpx.Response(200, json=COMPLETION))
        response = await client.post("/api/chat", json=_chat_body(messages=[]))
        assert response.status_code == 400
        assert response.json() == {"error": {"message": "No messages"}}
        assert seen == []

    @pytest.mark.asyncio
    async def test_chat_invalid_json(self, client):
        response = await client.post(
            "/api/chat", content=b"{not json", headers={"content-type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json() == {"error": {"message": "Invalid body"}}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/chat", "/api/chat"])
    async def test_chat_mirrors_upstream(self, client, mock_upstream, path):
        seen = mock_upstream(lambda request: httpx.Response(200, json=COMPLETION))
        response = await client.post(path, json=_chat_body(temperature=9, stream=True, tools=[]))

        assert response.status_code == 200
        assert response.json() == COMPLETION

        sent = json.loads(seen[0].content)
        assert sent == {
            "model": MODEL,
            "messages": [{"role": "user", "content": "hi"}],
            "temperature": 2.0,
            "max_tokens": 4096,
        }
        assert seen[0].headers["authorization"] == "Bearer test-key"

    @pytest.mark.asyncio
    async def test_chat_upstream_error_passthrough(self, client, mock_upstream):
        error = {"error": {"message": "Invalid API Key", "type": "invalid_request_error"}}
        mock_upstream(lambda request: httpx.Response(401, json=error))
        response = await client.post("/api/chat", json=_chat_body())
        assert response.status_code == 401
        assert response.json() == error

    @pytest.mark.asyncio
    async def test_chat_upstream_rate_limit_exhausted(self, client, mock_upstream):
        seen = mock_upstream(lambda request: httpx.Response(429), max_retries=2)
        response = await client.post("/api/chat", json=_chat_body())
        assert response.status_code == 429
        assert response.json() == {"error": {"message": "Rate limit exceeded after max retries"}}
        assert len(seen) == 3

    @pytest.mark.asyncio
    async def test_chat_transport_error(self, client, mock_upstream):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        mock_upstream(handler)
        response = await client.post("/api/chat", json=_chat_body())
        assert response.status_code == 500
        assert response.json() == {"error": {"message": "Internal server error"}}

    @pytest.mark.asyncio
    async def test_chat_undecodable_upstream_body(self, client, mock_upstream):
        mock_upstream(lambda request: httpx.Response(200, content=b"<html>oops</html>"))
        response = await client.post("/api/chat", json=_chat_body())
        assert response.status_code == 500
        assert response.json() == {"error": {"message": "Internal server error"}}

    @pytest.mark.asyncio
    async def test_chat_timeout(self, client, mock_upstream, monkeypatch):
        async def slow(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json=COMPLETION)

        mock_upstream(slow)
        monkeypatch.setattr(
            lumiere_service, "config", replace(lumiere_service.config, chat_timeout_s=0.05)
        )
        response = await client.post("/api/chat", json=_chat_body())
        assert response.status_code == 408
        assert response.json() == {"error": {"message": "Request timeout"}}

    @pytest.mark.asyncio
    async def test_request_too_large(self, client, monkeypatch):
        monkeypatch.setattr(
            lumiere_service, "config", replace(lumiere_service.config, max_request_bytes=64)
        )
        response = await client.post("/api/chat", json=_chat_body(messages=[{"role": "user", "content": "x" * 200}]))
        assert response.status_code == 413
        assert response.json() == {"error": {"message": "Request too large"}}

    @pytest.mark.asyncio
    async def test_missing_api_key(self, client, mock_upstream, monkeypatch):
        seen = mock_upstream(lambda request: httpx.Response(200, json=COMPLETION))
        monkeypatch.setattr(lumiere_service, "config", replace(lumiere_service.config, groq_api_key=""))
        response = await client.post("/api/chat", json=_chat_body())
        assert response.status_code == 500
        assert response.json() == {"error": {"message": "Server misconfigured"}}
        assert seen == []

    @pytest.mark.asyncio
    async def test_unknown_route(self, client):
        response = await client.get("/api/does-not-exist")
        assert response.status_code == 404
        assert response.json() == {"error": {"message": "Not found"}}

    @pytest.mark.asyncio
    async def test_wrong_method(self, client):
        response = await client.get("/api/chat")
        assert response.status_code == 405
        assert "error" in response.json()

    @pytest.mark.asyncio
    async def test_security_headers(self, client):
        response = await client.get("/healthz")
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "SAMEORIGIN"
        assert response.headers["referrer-policy"] == "no-referrer"

    @pytest.mark.asyncio
    async def test_cors_preflight(self, client):
        response = await client.options(
            "/api/chat",
            headers={
                "Origin": "http://localhost:5173",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Content-Type",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://localhost:5173"
        assert response.headers["access-control-max-age"] == "86400"


class TestRateLimits:
    """Test per-route and global limits."""

    @pytest.mark.asyncio
    async def test_chat_limit(self, client, mock_upstream, monkeypatch):
        mock_upstream(lambda request: httpx.Response(200, json=COMPLETION))
        monkeypatch.setattr(lumiere_service, "chat_limiter", FixedWindowRateLimiter(2, 60, name="chat"))

        statuses = [(await client.post("/api/chat", json=_chat_body())).status_code for _ in range(3)]
        assert statuses == [200, 200, 429]

        response = await client.post("/api/chat/stream", json=_chat_body())
        assert response.status_code == 429
        assert response.json() == {"error": {"message": "Too many requests. Please wait a minute."}}

    @pytest.mark.asyncio
    async def test_limited_response_carries_rate_limit_headers(self, client, mock_upstream, monkeypatch):
        mock_upstream(lambda request: httpx.Response(200, json=COMPLETION))
        monkeypatch.setattr(lumiere_service, "chat_limiter", FixedWindowRateLimiter(1, 60, name="chat"))

        assert (await client.post("/api/chat", json=_chat_body())).status_code == 200
        response = await client.post("/api/chat", json=_chat_body())

        assert response.status_code == 429
        assert response.headers["ratelimit-limit"] == "1"
        assert response.headers["ratelimit-remaining"] == "0"
        assert 0 < int(response.headers["ratelimit-reset"]) <= 60
        assert response.headers["retry-after"] == response.headers["ratelimit-reset"]

    @pytest.mark.asyncio
    async def test_global_limit(self, client, mock_upstream, monkeypatch):
        mock_upstream(lambda request: httpx.Response(200, json={"data": []}))
        monkeypatch.setattr(lumiere_service, "global_limiter", FixedWindowRateLimiter(1, 900, name="global"))

        assert (await client.get("/api/models")).status_code == 200
        response = await client.get("/api/models")
        assert response.status_code == 429
        assert response.json() == {"error": {"message": "Request limit exceeded"}}

    @pytest.mark.asyncio
    async def test_chat_limit_leaves_transcription_alone(self, client, mock_upstream, monkeypatch):
        mock_upstream(lambda request: httpx.Response(200, json={"text": "hi"}))
        monkeypatch.setattr(lumiere_service, "chat_limiter", FixedWindowRateLimiter(1, 60, name="chat"))

        await client.post("/api/chat", json=_chat_body(model="invalid-model"))
        assert (await client.post("/api/chat", json=_chat_body())).status_code == 429

        audio = base64.b64encode(b"RIFF....").decode()
        assert (await client.post("/api/audio/transcribe", json={"audio": audio})).status_code == 200


class TestChatStream:
    """Test the streaming relay route."""

    @pytest.mark.asyncio
    async def test_stream_relays_upstream_bytes(self, client, mock_upstream):
        seen = mock_upstream(
            lambda request: httpx.Response(
                200, content=SSE_BODY, headers={"content-type": "text/event-stream"}
            )
        )
        response = await client.post(
            "/api/chat/stream", json=_chat_body(), headers={"x-request-id": "req-42"}
        )

        assert response.status_code == 200
        assert response.content == SSE_BODY
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["cache-control"] == "no-cache"
        assert response.headers["x-accel-buffering"] == "no"
        assert response.headers["x-request-id"] == "req-42"
        assert json.loads(seen[0].content)["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_validation_error_is_json(self, client, mock_upstream):
        seen = mock_upstream(lambda request: httpx.Response(200, content=SSE_BODY))
        response = await client.post("/api/chat/stream", json=_chat_body(model="invalid-model"))
        assert response.status_code == 400
        assert response.json() == {"error": {"message": "Unknown model"}}
        assert seen == []

    @pytest.mark.asyncio
    async def test_stream_upstream_error_is_json(self, client, mock_upstream):
        error = {"error": {"message": "model_decommissioned"}}
        mock_upstream(lambda request: httpx.Response(400, json=error))
        response = await client.post("/api/chat/stream", json=_chat_body())
        assert response.status_code == 400
        assert response.json() == error

    @pytest.mark.asyncio
    async def test_stream_transport_error(self, client, mock_upstream):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        mock_upstream(handler)
        response = await client.post("/api/chat/stream", json=_chat_body())
        assert response.status_code == 500
        assert response.json() == {"error": {"message": "Internal server error"}}

    @pytest.mark.asyncio
    async def test_disconnect_cancels_upstream(self):
        upstream = StalledUpstream()
        relay = StreamRelay(upstream.body(), upstream.cancel, req_id="disc")
        first_sent = asyncio.Event()
        bodies = []

        async def send(message):
            if message["type"] == "http.response.body" and message.get("body"):
                bodies.append(message["body"])
                first_sent.set()

        async def receive():
            await first_sent.wait()
            return {"type": "http.disconnect"}

        await asyncio.wait_for(RelayResponse(relay)({"type": "http"}, receive, send), timeout=2)

        assert bodies == [b"data: a\n\n"]
        assert upstream.reads == 1
        assert upstream.cancel_calls == 1
        assert relay.state is RelayState.ABORTED

    @pytest.mark.asyncio
    async def test_broken_client_pipe_is_a_disconnect(self):
        upstream = StalledUpstream()
        relay = StreamRelay(upstream.body(), upstream.cancel, req_id="pipe")

        async def send(message):
            if message["type"] == "http.response.body":
                raise OSError("broken pipe")

        async def receive():
            await asyncio.Event().wait()

        await asyncio.wait_for(RelayResponse(relay)({"type": "http"}, receive, send), timeout=2)

        assert upstream.cancel_calls == 1
        assert relay.state is RelayState.ABORTED


class TestTranscribe:
    """Test the transcription route."""

    @pytest.mark.asyncio
    async def test_transcribe(self, client, mock_upstream):
        seen = mock_upstream(lambda request: httpx.Response(200, json={"text": "hello world"}))
        audio = base64.b64encode(b"\x1aE\xdf\xa3webm-bytes").decode()
        response = await client.post(
            "/api/audio/transcribe", json={"audio": audio, "mimeType": "audio/webm", "language": "en"}
        )
        assert response.status_code == 200
        assert response.json() == {"text": "hello world"}
        assert seen[0].url.path.endswith("/audio/transcriptions")
        assert b"webm-bytes" in seen[0].content

    @pytest.mark.asyncio
    async def test_transcribe_data_url(self, client, mock_upstream):
        seen = mock_upstream(lambda request: httpx.Response(200, json={"text": "ok"}))
        audio = "data:audio/ogg;base64," + base64.b64encode(b"OggS-bytes").decode()
        response = await client.post("/audio/transcribe", json={"audio": audio, "mimeType": "audio/ogg"})
        assert response.status_code == 200
        assert b'filename="audio.ogg"' in seen[0].content

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{}, {"audio": ""}, {"audio": 12}, None])
    async def test_audio_required(self, client, body):
        response = await client.post("/api/audio/transcribe", json=body)
        assert response.status_code == 400
        assert response.json() == {"error": {"message": "Audio data required"}}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("audio", ["abc", "!!!!"])
    async def test_invalid_audio(self, client, audio):
        response = await client.post("/api/audio/transcribe", json={"audio": audio})
        assert response.status_code == 400
        assert response.json() == {"error": {"message": "Invalid audio data"}}

    @pytest.mark.asyncio
    async def test_transcription_failed(self, client, mock_upstream):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        mock_upstream(handler)
        audio = base64.b64encode(b"bytes").decode()
        response = await client.post("/api/audio/transcribe", json={"audio": audio})
        assert response.status_code == 500
        assert response.json() == {"error": {"message": "Transcription failed"}}


class TestModels:
    """Test the model list route."""

    @pytest.mark.asyncio
    async def test_models_passthrough(self, client, mock_upstream):
        models = {"object": "list", "data": [{"id": MODEL, "object": "model"}]}
        mock_upstream(lambda request: httpx.Response(200, json=models))
        response = await client.get("/api/models")
        assert response.status_code == 200
        assert response.json() == models

    @pytest.mark.asyncio
    async def test_models_failure(self, client, mock_upstream):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        mock_upstream(handler)
        response = await client.get("/models")
        assert response.status_code == 500
        assert response.json() == {"error": {"message": "Internal server error"}}
