"""Writes translated records to the downstream ASGI connection."""

from __future__ import annotations

import json
import logging
from typing import Any

from starlette.types import Send

from ollama_proxy.core.types import DownstreamRecord

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"

STREAM_HEADERS: list[tuple[bytes, bytes]] = [
    (b"content-type", NDJSON_MEDIA_TYPE.encode("latin-1")),
    (b"transfer-encoding", b"chunked"),
    (b"cache-control", b"no-cache"),
    (b"connection", b"keep-alive"),
]


class StreamEmitter:
    """Owns the ``send`` side of one streaming response.

    Headers are held back until the first record so that a failure before any
    content can still be answered with a proper JSON error. Once the body has
    ended (or been abandoned) every further call is a no-op; transport errors
    while writing close the emitter instead of propagating.
    """

    def __init__(self, send: Send, *, headers: list[tuple[bytes, bytes]] | None = None) -> None:
        self._send = send
        self._headers = list(headers) if headers is not None else list(STREAM_HEADERS)
        self._headers_sent = False
        self._closed = False
        self._aborted = False
        self._records_written = 0

    @property
    def headers_sent(self) -> bool:
        return self._headers_sent

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def aborted(self) -> bool:
        """True if the body was abandoned after headers were sent."""
        return self._aborted

    @property
    def records_written(self) -> int:
        return self._records_written

    async def _emit(self, message: dict[str, Any]) -> bool:
        try:
            await self._send(message)
        except OSError as e:
            logger.info("Downstream connection lost while writing: %s", e)
            self._closed = True
            return False
        return True

    async def _start(self, status: int, headers: list[tuple[bytes, bytes]]) -> bool:
        self._headers_sent = True
        return await self._emit(
            {"type": "http.response.start", "status": status, "headers": headers}
        )

    async def write(self, record: DownstreamRecord) -> bool:
        """Write one record as a JSON line. Returns ``False`` if nothing was written."""
        if self._closed:
            return False
        if not self._headers_sent and not await self._start(200, self._headers):
            return False
        written = await self._emit(
            {"type": "http.response.body", "body": record.to_line(), "more_body": True}
        )
        if written:
            self._records_written += 1
        return written

    async def finish(self, terminal: DownstreamRecord) -> None:
        """Write the terminal record and end the response."""
        if self._closed:
            return
        if await self.write(terminal):
            await self.close()

    async def fail(self, status: int, body: dict[str, Any]) -> None:
        """Report an error: a JSON document if nothing was sent yet.

        Once headers are out the body is abandoned without its final chunk
        (``aborted`` is set); the caller is expected to raise so the server
        drops the connection and the client sees a truncated response.
        """
        if self._closed:
            return
        if self._headers_sent:
            self._aborted = True
            self._closed = True
            return
        payload = json.dumps(body).encode("utf-8")
        headers = [
            (b"content-type", b"application/json"),
            (b"content-length", str(len(payload)).encode("latin-1")),
        ]
        if await self._start(status, headers):
            await self._emit({"type": "http.response.body", "body": payload, "more_body": False})
        self._closed = True

    async def close(self) -> None:
        """End the body if the response is still open."""
        if self._closed:
            return
        if self._headers_sent:
            await self._emit({"type": "http.response.body", "body": b"", "more_body": False})
        self._closed = True
