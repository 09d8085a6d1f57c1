"""Per-request lifecycle of a translated chat stream.

A :class:`StreamSession` is an ASGI response. When the server calls it, two
tasks race:

- the *forwarding* task opens the upstream event stream and pumps it through
  reassembly, translation and emission until the terminal sentinel, the end of
  the upstream body, or an upstream error;
- the *listener* task waits for the client's ``http.disconnect``.

Whichever finishes first wins. A disconnect cancels the forwarding task,
which closes the upstream response on its way out, so no upstream bytes are
read for a client that is gone.

State machine::

    IDLE -> FORWARDING -> COMPLETING -> CLOSED
      \\            \\-> ABORTING  -> CLOSED
       \\-------------> ABORTING  -> CLOSED

``FORWARDING`` is entered only once the upstream stream is open; a failure
to open it goes straight from ``IDLE`` to ``ABORTING``. A failure after
content was written makes the session raise once cleanup is done, so the
server drops the connection instead of ending the body cleanly.
"""

from __future__ import annotations

import asyncio
import enum
import logging

import httpx
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from ollama_proxy.core.config import DEFAULT_MODEL
from ollama_proxy.core.errors import ProxyError, UpstreamStreamError, error_body, proxy_error_body
from ollama_proxy.upstream.client import UpstreamClient

from .emitter import NDJSON_MEDIA_TYPE, STREAM_HEADERS, StreamEmitter
from .reassembler import FrameReassembler
from .translator import Clock, RecordTranslator, utc_now

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    IDLE = "idle"
    FORWARDING = "forwarding"
    COMPLETING = "completing"
    ABORTING = "aborting"
    CLOSED = "closed"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.FORWARDING, SessionState.ABORTING}),
    SessionState.FORWARDING: frozenset({SessionState.COMPLETING, SessionState.ABORTING}),
    SessionState.COMPLETING: frozenset({SessionState.CLOSED}),
    SessionState.ABORTING: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


class StreamSession(Response):
    """Streams one upstream chat completion to the client as Ollama NDJSON."""

    media_type = NDJSON_MEDIA_TYPE

    def __init__(
        self,
        upstream: UpstreamClient,
        body: bytes,
        *,
        model: str | None = None,
        fallback_model: str = DEFAULT_MODEL,
        debug: bool = False,
        clock: Clock = utc_now,
    ) -> None:
        self.status_code = 200
        self.background = None
        self.raw_headers = list(STREAM_HEADERS)
        self._upstream = upstream
        self._body = body
        self._debug = debug
        self._translator = RecordTranslator(model, fallback_model=fallback_model, clock=clock)
        self._reassembler = FrameReassembler()
        self._upstream_response: httpx.Response | None = None
        self._failure: Exception | None = None
        self.state = SessionState.IDLE
        self.history: list[SessionState] = [SessionState.IDLE]

    @property
    def model(self) -> str:
        return self._translator.model

    def _transition(self, target: SessionState, reason: str = "") -> bool:
        """Move to ``target`` if allowed from the current state.

        Terminal triggers race; only the first one is applied.
        """
        if target not in _TRANSITIONS[self.state]:
            return False
        logger.debug("Session %s -> %s %s", self.state.value, target.value, reason)
        self.state = target
        self.history.append(target)
        return True

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        emitter = StreamEmitter(send, headers=self.raw_headers)
        forward = asyncio.create_task(self._forward(emitter))
        listener = asyncio.create_task(self._listen_for_disconnect(receive))
        try:
            done, _ = await asyncio.wait(
                {forward, listener}, return_when=asyncio.FIRST_COMPLETED,
            )
            if listener in done and not forward.done():
                if self._transition(SessionState.ABORTING, "client disconnected"):
                    logger.info("Client disconnected, closing upstream stream")
                forward.cancel()
        finally:
            for task in (forward, listener):
                if not task.done():
                    task.cancel()
            await asyncio.gather(forward, listener, return_exceptions=True)
            await self._close_upstream()
            self._transition(SessionState.CLOSED)
        if emitter.aborted and self._failure is not None:
            # Mid-body failure: the server must drop the connection rather
            # than end the chunked body cleanly.
            raise self._failure

    async def _listen_for_disconnect(self, receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                return

    async def _close_upstream(self) -> None:
        response, self._upstream_response = self._upstream_response, None
        if response is not None:
            await response.aclose()

    async def _abort(self, emitter: StreamEmitter, exc: ProxyError) -> None:
        self._transition(SessionState.ABORTING, exc.message)
        await emitter.fail(exc.status_code, proxy_error_body(exc, include_stack=self._debug))

    async def _forward(self, emitter: StreamEmitter) -> None:
        try:
            self._upstream_response = await self._upstream.open_stream(self._body)
        except ProxyError as e:
            logger.error("Chat request failed before streaming: %s", e.message)
            await self._abort(emitter, e)
            return
        except Exception as e:
            logger.exception("Unexpected error opening upstream stream")
            self._transition(SessionState.ABORTING, "unhandled fault")
            await emitter.fail(500, error_body(str(e), 500, exc=e, include_stack=self._debug))
            return

        self._transition(SessionState.FORWARDING)
        try:
            await self._pump(self._upstream_response, emitter)
        except httpx.HTTPError as e:
            logger.error("Streaming error: %s", e)
            self._failure = e
            await self._abort(
                emitter,
                UpstreamStreamError("An error occurred while streaming the response"),
            )
            return
        except Exception as e:
            logger.exception("Unexpected error while streaming")
            self._failure = e
            self._transition(SessionState.ABORTING, "unhandled fault")
            await emitter.fail(500, error_body(str(e), 500, exc=e, include_stack=self._debug))
            return
        finally:
            dropped = self._reassembler.close()
            if dropped:
                logger.debug("Discarded %d bytes of unterminated upstream data", dropped)
            await self._close_upstream()

        if emitter.closed:
            self._transition(SessionState.ABORTING, "downstream closed")
            logger.info("Downstream closed before completion")
            return

        self._transition(SessionState.COMPLETING)
        await emitter.finish(self._translator.terminal_record())
        logger.info(
            "Chat streaming completed successfully (%d records)", emitter.records_written,
        )

    async def _pump(self, response: httpx.Response, emitter: StreamEmitter) -> None:
        """Feed upstream bytes through the pipeline until the stream is over."""
        async for chunk in response.aiter_bytes():
            for raw in self._reassembler.feed(chunk):
                outcome = self._translator.translate(raw)
                if outcome.done:
                    return
                if outcome.record is not None:
                    await emitter.write(outcome.record)
                    if emitter.closed:
                        return
