"""
Caller-side client for the Lumiere relay.

stream_chat() exposes the relayed completion as an async iterator of text
increments. Breaking out of the loop (or cancelling the consuming task)
closes the HTTP stream, which the relay sees as a disconnect.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from models import supports_vision
from sse_handler import iter_sse_tokens

log = logging.getLogger("lumiere")

DEFAULT_BASE_URL = "http://localhost:3001"


class ApiError(Exception):
    """The relay answered with an error envelope or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass
class FileAttachment:
    """A file attached to a chat message."""

    name: str
    type: str  # "image" or "pdf"
    mime_type: str
    # data: URL for images, extracted text for PDFs
    data: str
    ocr_text: Optional[str] = None


def _pdf_text(files: Sequence[FileAttachment]) -> str:
    return "\n\n".join(f'📄 Contents of file "{f.name}":\n{f.data}' for f in files if f.type == "pdf")


def _ocr_text(files: Sequence[FileAttachment]) -> str:
    return "\n\n".join(
        f'🔍 OCR text from "{f.name}":\n{f.ocr_text}' for f in files if f.type == "image" and f.ocr_text
    )


def _join(*chunks: str) -> str:
    return "\n\n".join(c for c in chunks if c)


def build_api_message(message: Dict[str, Any], model: str) -> Dict[str, Any]:
    """
    Turn one chat message with attachments into the API message shape.

    Vision models get images as image_url parts (PDF text and OCR text go in
    leading text parts, the typed text last). Other models get a single
    string: PDF text, OCR text, a note about images without text, then the
    typed text.
    """
    role = message["role"]
    content = message.get("content") or ""
    files: List[FileAttachment] = list(message.get("files") or [])
    images = [f for f in files if f.type == "image"]
    has_pdfs = any(f.type == "pdf" for f in files)

    if not images and not has_pdfs:
        return {"role": role, "content": content}

    if images and supports_vision(model):
        parts: List[Dict[str, Any]] = []
        for text in (_pdf_text(files), _ocr_text(files)):
            if text:
                parts.append({"type": "text", "text": text})
        for f in images:
            parts.append({"type": "image_url", "image_url": {"url": f.data}})
        if content:
            parts.append({"type": "text", "text": content})
        return {"role": role, "content": parts}

    note = ""
    no_ocr = [f.name for f in images if not f.ocr_text]
    if no_ocr:
        note = (
            f"[Images attached without text: {', '.join(no_ocr)}. "
            "Use Llama 4 Scout 17B to analyze images.]"
        )
    return {"role": role, "content": _join(_pdf_text(files), _ocr_text(files), note, content)}


def build_api_messages(messages: Sequence[Dict[str, Any]], model: str) -> List[Dict[str, Any]]:
    return [build_api_message(m, model) for m in messages]


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        msg = data["error"].get("message")
        if isinstance(msg, str) and msg:
            return msg
    return f"Error {resp.status_code}"


class LumiereClient:
    """Async HTTP client for the relay's /api routes."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: httpx.Timeout | float | None = None,
    ) -> None:
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            transport=transport,
            timeout=timeout if timeout is not None else httpx.Timeout(30.0, read=None),
        )

    async def __aenter__(self) -> LumiereClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _chat_body(
        self, messages: Sequence[Dict[str, Any]], model: str, temperature: float, max_tokens: int
    ) -> Dict[str, Any]:
        return {
            "model": model,
            "messages": build_api_messages(messages, model),
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

    async def stream_chat(
        self,
        messages: Sequence[Dict[str, Any]],
        model: str,
        *,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> AsyncIterator[str]:
        """
        Yield token text as the relay streams it.

        Ends normally at [DONE] or end of stream; a non-2xx answer or a
        network failure raises ApiError instead.
        """
        body = self._chat_body(messages, model, temperature, max_tokens)
        try:
            async with self._http.stream("POST", "/api/chat/stream", json=body) as resp:
                if not resp.is_success:
                    await resp.aread()
                    raise ApiError(_error_message(resp), resp.status_code)
                async for token in iter_sse_tokens(resp.aiter_lines()):
                    yield token
        except httpx.HTTPError as e:
            log.debug("Stream request failed: %r", e)
            raise ApiError(str(e) or "Network error") from e

    async def _request_json(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ApiError(str(e) or "Network error") from e
        if not resp.is_success:
            raise ApiError(_error_message(resp), resp.status_code)
        try:
            return resp.json()
        except ValueError as e:
            raise ApiError("Invalid JSON response", resp.status_code) from e

    async def chat(
        self,
        messages: Sequence[Dict[str, Any]],
        model: str,
        *,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> Dict[str, Any]:
        body = self._chat_body(messages, model, temperature, max_tokens)
        return await self._request_json("POST", "/api/chat", json=body)

    async def list_models(self) -> Dict[str, Any]:
        return await self._request_json("GET", "/api/models")

    async def transcribe(
        self, audio: bytes, mime_type: str = "audio/webm", language: Optional[str] = None
    ) -> str:
        """Send recorded audio and return the transcribed text."""
        body: Dict[str, Any] = {"audio": base64.b64encode(audio).decode("ascii"), "mimeType": mime_type}
        if language:
            body["language"] = language
        data = await self._request_json("POST", "/api/audio/transcribe", json=body)
        return data.get("text", "") if isinstance(data, dict) else ""
