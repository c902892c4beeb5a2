"""Upstream Groq API communication."""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from config import AppConfig

log = logging.getLogger("lumiere")

RATE_LIMIT_STATUS = 429
RATE_LIMIT_EXHAUSTED_MESSAGE = "Rate limit exceeded after max retries"


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header into seconds.

    Accepts delta-seconds ("2", "1.5") or an HTTP-date. Returns None when the
    header is missing or unparseable.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        if not math.isfinite(seconds):
            return None
        return max(seconds, 0.0)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def rate_limit_exhausted_response() -> httpx.Response:
    """Build the 429 returned once all retries were spent."""
    return httpx.Response(
        RATE_LIMIT_STATUS,
        json={"error": {"message": RATE_LIMIT_EXHAUSTED_MESSAGE}},
    )


def audio_extension(mime_type: str) -> str:
    """Pick the upload file extension the transcription endpoint expects."""
    mime_type = mime_type or ""
    if "ogg" in mime_type:
        return "ogg"
    if "mp4" in mime_type:
        return "mp4"
    return "webm"


class UpstreamClient:
    """Handle communication with the Groq API, retrying on rate limits."""

    def __init__(
        self,
        config: AppConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Shared connection pool, created on first use."""
        if self._client is None or self._client.is_closed:
            # No read timeout: streamed completions may pause for long stretches.
            timeout = self._config.connect_timeout_s
            self._client = httpx.AsyncClient(
                transport=self._transport,
                timeout=httpx.Timeout(connect=timeout, write=timeout, pool=timeout, read=None),
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def get_headers(self, content_type: str | None = "application/json") -> Dict[str, str]:
        """Get default headers for the Groq API."""
        headers = {
            "Authorization": f"Bearer {self._config.groq_api_key}",
            "User-Agent": self._config.user_agent,
        }
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def backoff_delay(self, attempt: int, retry_after: Optional[str] = None) -> float:
        """
        Seconds to wait before retry number attempt+1.

        A provider Retry-After hint is used as-is; otherwise exponential
        backoff with random jitter, capped at backoff_cap_s.
        """
        hinted = parse_retry_after(retry_after)
        if hinted is not None:
            return hinted
        jitter = self._rng.uniform(0, self._config.backoff_jitter_s)
        return min(self._config.backoff_base_s * (2 ** attempt) + jitter, self._config.backoff_cap_s)

    async def request_with_backoff(
        self,
        method: str,
        endpoint: str,
        *,
        json: Any = None,
        stream: bool = False,
        max_retries: int | None = None,
    ) -> httpx.Response:
        """
        Send a request to the upstream API, retrying only on 429.

        Any other status is returned immediately. When every retry is
        rate-limited a synthesized 429 response is returned instead of
        raising. Transport failures propagate as httpx.HTTPError.
        """
        retries = self._config.max_retries if max_retries is None else max_retries
        url = f"{self._config.groq_base_url}{endpoint}"

        for attempt in range(retries + 1):
            # Authorization is injected per attempt and never logged.
            req = self.client.build_request(method, url, headers=self.get_headers(), json=json)
            t0 = time.monotonic()
            resp = await self.client.send(req, stream=stream)
            dt = (time.monotonic() - t0) * 1000
            log.info(
                "Upstream %s %s status=%s ms=%.1f attempt=%d",
                method,
                endpoint,
                resp.status_code,
                dt,
                attempt + 1,
            )

            if resp.status_code != RATE_LIMIT_STATUS:
                return resp

            wait_s = self.backoff_delay(attempt, resp.headers.get("retry-after"))
            await resp.aclose()
            if attempt >= retries:
                break
            log.warning(
                "Upstream rate limited %s waiting %.2fs (attempt %d/%d)",
                endpoint,
                wait_s,
                attempt + 1,
                retries,
            )
            await self._sleep(wait_s)

        log.error("Upstream rate limit persisted %s retries=%d", endpoint, retries)
        return rate_limit_exhausted_response()

    async def chat_completion(self, payload: Dict[str, Any], *, stream: bool = False) -> httpx.Response:
        """
        Send a chat completion request.

        For streaming requests the response body is left unread so the caller
        can relay it chunk by chunk; the caller must close it.
        """
        body = dict(payload)
        if stream:
            body["stream"] = True
        return await self.request_with_backoff("POST", "/chat/completions", json=body, stream=stream)

    async def list_models(self) -> httpx.Response:
        return await self.request_with_backoff("GET", "/models")

    async def transcribe(
        self,
        audio: bytes,
        mime_type: str | None = None,
        language: str | None = None,
    ) -> httpx.Response:
        """Upload audio to the transcription endpoint as multipart form data (single attempt)."""
        mime_type = mime_type or "audio/webm"
        files = {"file": (f"audio.{audio_extension(mime_type)}", audio, mime_type)}
        data = {"model": self._config.transcription_model}
        if language:
            data["language"] = language

        t0 = time.monotonic()
        resp = await self.client.post(
            f"{self._config.groq_base_url}/audio/transcriptions",
            headers=self.get_headers(content_type=None),
            data=data,
            files=files,
        )
        dt = (time.monotonic() - t0) * 1000
        log.info(
            "Upstream transcription status=%s bytes=%d mime=%s ms=%.1f",
            resp.status_code,
            len(audio),
            mime_type,
            dt,
        )
        return resp
