"""Response capture for idempotent replay.

The downstream response is streamed through unchanged, one chunk in and one
chunk out, while a copy of the status, a small header subset and the body is
kept for the store. Capture is capped; once the cap is crossed the capture is
poisoned and must not be persisted.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping

import anyio
from starlette.responses import Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from owlverload.idempotency.config import DEFAULT_CAPTURE_MAX_BYTES

logger = logging.getLogger(__name__)

# Header names are matched case-insensitively and stored lowercased.
REPLAY_HEADERS = ("content-type", "content-language", "idempotency-ref")


def replay_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Pick the headers that are persisted and re-emitted on replay."""
    picked: dict[str, str] = {}
    for name, value in headers.items():
        lowered = name.lower()
        if lowered in REPLAY_HEADERS and lowered not in picked:
            picked[lowered] = value
    return picked


async def _single_chunk(body: bytes) -> AsyncIterator[bytes]:
    yield body


class ResponseCapture:
    """Tee of a downstream response: forwards every chunk and buffers a copy."""

    def __init__(self, response: Response, *, max_bytes: int = DEFAULT_CAPTURE_MAX_BYTES):
        self.status = response.status_code or 200
        self.raw_headers = list(response.raw_headers)
        self.headers = replay_headers(response.headers)
        self.max_bytes = max_bytes
        self.poisoned = False
        self.failed = False
        self.delivered = False
        self._buffer = bytearray()
        self._exhausted = False
        body_iterator = getattr(response, "body_iterator", None)
        if body_iterator is None:
            body_iterator = _single_chunk(bytes(response.body))
        self._source = body_iterator

    @property
    def body(self) -> bytes:
        return bytes(self._buffer)

    @property
    def cacheable(self) -> bool:
        """True when the capture is complete, intact and a 2xx."""
        return (
            self._exhausted
            and not self.poisoned
            and not self.failed
            and 200 <= self.status < 300
        )

    def _record(self, chunk: bytes | str) -> bytes:
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        if self.poisoned:
            return chunk
        if len(self._buffer) + len(chunk) > self.max_bytes:
            self.poisoned = True
            self._buffer.clear()
            logger.warning(
                "Response capture exceeded %d bytes, response will not be cached",
                self.max_bytes,
            )
            return chunk
        self._buffer.extend(chunk)
        return chunk

    async def stream(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._source:
                yield self._record(chunk)
        except GeneratorExit:
            # Closed at a yield: the source is intact and can still be drained.
            raise
        except BaseException:
            # Raised or cancelled inside the source; its remainder is lost.
            self.failed = True
            raise
        self._exhausted = True
        self.delivered = True

    async def drain(self) -> None:
        """Pull whatever the client did not receive into the buffer."""
        if self._exhausted or self.failed:
            return
        try:
            async for chunk in self._source:
                self._record(chunk)
        except Exception:
            self.failed = True
            logger.warning("Downstream body failed while draining capture", exc_info=True)
            return
        self._exhausted = True

    def wrap(
        self, on_finish: Callable[["ResponseCapture"], Awaitable[None]]
    ) -> "CapturedStreamingResponse":
        """Build the response to hand back to the server."""
        return CapturedStreamingResponse(self, on_finish)


class CapturedStreamingResponse(StreamingResponse):
    """Streams a ResponseCapture and runs on_finish once sending ends, however it ends."""

    def __init__(
        self,
        capture: ResponseCapture,
        on_finish: Callable[[ResponseCapture], Awaitable[None]],
    ):
        super().__init__(capture.stream(), status_code=capture.status)
        self.raw_headers = list(capture.raw_headers)
        self._capture = capture
        self._on_finish = on_finish

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            with anyio.CancelScope(shield=True):
                await self._capture.drain()
                await self._on_finish(self._capture)
