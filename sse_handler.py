"""Server-Sent Events (SSE) relaying and parsing for streaming responses."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import enum
import json
import logging
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, List, Optional

import anyio
import httpx

log = logging.getLogger("lumiere")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class RelayState(str, enum.Enum):
    OPEN = "open"
    STREAMING = "streaming"
    DONE = "done"
    ABORTED = "aborted"
    ERRORED = "errored"


TERMINAL_STATES = frozenset({RelayState.DONE, RelayState.ABORTED, RelayState.ERRORED})


class StreamRelay:
    """
    Byte-transparent pipe from one upstream SSE body to one downstream client.

    Chunks are decoded as UTF-8 incrementally (a multi-byte character split
    across chunks is held until complete) and forwarded in arrival order with
    no framing, buffering or coalescing. The upstream handle is released
    exactly once, whichever way the relay ends.

    Errors after the first byte cannot become an HTTP error any more: they
    are logged and the stream simply ends.
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        cancel_upstream: Callable[[], Awaitable[Any]],
        *,
        req_id: str = "-",
    ) -> None:
        self._chunks = chunks
        self._cancel_upstream = cancel_upstream
        self._req_id = req_id
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._stream: AsyncGenerator[str, None] | None = None
        self._released = False
        self.state = RelayState.OPEN
        self.chunks_relayed = 0
        self.bytes_relayed = 0

    @classmethod
    def from_response(cls, resp: httpx.Response, *, req_id: str = "-") -> StreamRelay:
        return cls(resp.aiter_bytes(), resp.aclose, req_id=req_id)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def iter_text(self) -> AsyncGenerator[str, None]:
        """Return the (single, non-restartable) text stream of this relay."""
        if self._stream is None:
            self._stream = self._pump()
        return self._stream

    async def _pump(self) -> AsyncGenerator[str, None]:
        self.state = RelayState.STREAMING
        final = RelayState.DONE
        try:
            async for chunk in self._chunks:
                self.chunks_relayed += 1
                self.bytes_relayed += len(chunk)
                text = self._decoder.decode(chunk)
                if text:
                    yield text
            tail = self._decoder.decode(b"", final=True)
            if tail:
                yield tail
        except (asyncio.CancelledError, GeneratorExit):
            final = RelayState.ABORTED
            raise
        except Exception as e:
            final = RelayState.ERRORED
            log.warning(
                "Upstream stream failed after headers were sent; closing connection req_id=%s err=%r",
                self._req_id,
                e,
            )
        finally:
            await self._finish(final)

    async def relay(
        self,
        sink: Callable[[str], Awaitable[Any]],
        cancel: asyncio.Event | None = None,
        *,
        close_sink: Callable[[], Awaitable[Any]] | None = None,
    ) -> RelayState:
        """
        Pump the upstream stream into sink until it ends or cancel is set.

        Every upstream read is raced against the cancellation event, so a
        cancel interrupts a pending read right away and no further read is
        issued. Cancellation is a normal outcome and is reported as ABORTED.
        close_sink, when given, is awaited exactly once at the end.
        """
        cancel = cancel if cancel is not None else asyncio.Event()
        stream = self.iter_text()
        cancelled = asyncio.create_task(cancel.wait())
        read: asyncio.Task[Optional[str]] | None = None
        try:
            while not cancel.is_set():
                read = asyncio.create_task(_read_next(stream))
                done, _ = await asyncio.wait({read, cancelled}, return_when=asyncio.FIRST_COMPLETED)
                if read not in done:
                    log.info("Client cancelled stream req_id=%s", self._req_id)
                    break
                text = read.result()
                if text is None:
                    break
                try:
                    await sink(text)
                except Exception as e:
                    log.info("Downstream write failed, stopping relay req_id=%s err=%r", self._req_id, e)
                    break
        finally:
            cancelled.cancel()
            if read is not None and not read.done():
                # Interrupts the pending upstream read; the pump releases upstream on the way out.
                read.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await read
            await self.aclose()
            if close_sink is not None:
                await close_sink()
        return self.state

    async def aclose(self) -> None:
        """Stop relaying and release the upstream handle (idempotent)."""
        if self._stream is not None:
            await self._stream.aclose()
        await self._finish(RelayState.ABORTED)

    async def _finish(self, state: RelayState) -> None:
        """Single finalization path for every way the relay can end."""
        if self._released:
            return
        self._released = True
        if not self.finished:
            self.state = state
        # Shielded: a disconnect may re-deliver cancellation while we release.
        with anyio.CancelScope(shield=True):
            with contextlib.suppress(Exception):
                await self._cancel_upstream()
        log.info(
            "Relay finished req_id=%s state=%s chunks=%d bytes=%d",
            self._req_id,
            self.state.value,
            self.chunks_relayed,
            self.bytes_relayed,
        )


async def _read_next(stream: AsyncGenerator[str, None]) -> Optional[str]:
    """Next relayed chunk, or None once the stream is exhausted."""
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


def is_done_data_line(line: str) -> bool:
    """
    Accept: "data:[DONE]" / "data: [DONE]" / "data:    [DONE]" (tolerate whitespace)
    """
    if not line.startswith("data:"):
        return False
    return line[len("data:"):].strip() == "[DONE]"


def extract_content_fragments(obj: Any) -> List[str]:
    """Extract content fragments from SSE data object."""
    out: List[str] = []
    if not isinstance(obj, dict):
        return out

    for ch in (obj.get("choices") or []):
        if not isinstance(ch, dict):
            continue
        d = ch.get("delta") or ch.get("message") or {}
        if isinstance(d, dict):
            c = d.get("content")
            if isinstance(c, str) and c:
                out.append(c)
    return out


async def iter_sse_tokens(lines: AsyncIterator[str]) -> AsyncGenerator[str, None]:
    """
    Turn relayed SSE lines into incremental token text.

    Only `data:` lines are considered; `[DONE]` ends the sequence and frames
    that are not valid JSON are skipped without aborting the stream.
    """
    async for raw in lines:
        line = raw.strip()
        if not line.startswith("data:"):
            continue
        if is_done_data_line(line):
            return
        payload = line[len("data:"):].strip()
        if not payload:
            continue
        try:
            obj = json.loads(payload)
        except json.JSONDecodeError:
            log.debug("Skipping malformed SSE frame: %r", payload[:200])
            continue
        for fragment in extract_content_fragments(obj):
            yield fragment
