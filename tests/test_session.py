"""Tests for StreamSession, driven directly over ASGI."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import httpx
from conftest import UPSTREAM_URL, FakeUpstream, parse_records, sse

from ollama_proxy.core.config import ProxyConfig
from ollama_proxy.proxy.session import SessionState, StreamSession
from ollama_proxy.upstream.client import UpstreamClient

FIXED = datetime(2025, 5, 22, 5, 17, 33, tzinfo=timezone.utc)
CHAT_BODY = json.dumps({
    "model": "qwen",
    "messages": [{"role": "user", "content": "Hi"}],
    "stream": True,
}).encode("utf-8")


class _Client:
    """ASGI receive/send pair recording everything sent downstream.

    With ``disconnect_after`` set, the client goes away once that many body
    messages have been received.
    """

    def __init__(self, disconnect_after: int | None = None) -> None:
        self.messages: list[dict] = []
        self.error: Exception | None = None
        self._disconnect_after = disconnect_after
        self._gone = asyncio.Event()

    async def receive(self) -> dict:
        await self._gone.wait()
        return {"type": "http.disconnect"}

    async def send(self, message: dict) -> None:
        self.messages.append(message)
        if self._disconnect_after is not None and len(self.bodies) >= self._disconnect_after:
            self._gone.set()

    @property
    def starts(self) -> list[dict]:
        return [m for m in self.messages if m["type"] == "http.response.start"]

    @property
    def bodies(self) -> list[dict]:
        return [m for m in self.messages if m["type"] == "http.response.body"]

    @property
    def payload(self) -> bytes:
        return b"".join(m["body"] for m in self.bodies)


def _run(
    fake: FakeUpstream,
    *,
    disconnect_after: int | None = None,
    cfg: ProxyConfig | None = None,
    debug: bool = True,
) -> tuple[StreamSession, _Client]:
    cfg = cfg or ProxyConfig(cloud_api_url=UPSTREAM_URL, api_key="sk-test")

    async def _go() -> tuple[StreamSession, _Client]:
        client = _Client(disconnect_after)
        upstream = UpstreamClient(cfg, transport=fake.transport)
        session = StreamSession(upstream, CHAT_BODY, model="qwen", debug=debug, clock=lambda: FIXED)
        scope = {"type": "http", "method": "POST", "path": "/api/chat", "headers": []}
        try:
            await asyncio.wait_for(session(scope, client.receive, client.send), timeout=5)
        except httpx.HTTPError as e:
            client.error = e
        finally:
            await upstream.aclose()
        return session, client

    return asyncio.run(_go())


class TestHappyPath:
    def test_content_then_terminal_record(self):
        session, client = _run(FakeUpstream([sse("Hi"), b"data: [DONE]\n"]))

        assert client.starts[0]["status"] == 200
        records = parse_records(client.payload)
        assert len(records) == 2
        assert records[0] == {
            "model": "qwen",
            "created_at": "2025-05-22T05:17:33Z",
            "message": {"role": "assistant", "content": "Hi"},
            "done": False,
        }
        assert records[1]["done"] is True
        assert records[1]["message"] == {"role": "assistant", "content": ""}
        assert records[1]["eval_count"] == 0
        assert client.bodies[-1]["more_body"] is False
        assert session.history == [
            SessionState.IDLE,
            SessionState.FORWARDING,
            SessionState.COMPLETING,
            SessionState.CLOSED,
        ]

    def test_line_split_across_chunks(self):
        event = sse("Hello")
        fake = FakeUpstream([event[:17], event[17:30], event[30:], b"data: [DONE]\n"])
        _, client = _run(fake)

        records = parse_records(client.payload)
        assert [r["message"]["content"] for r in records] == ["Hello", ""]

    def test_upstream_end_without_sentinel_still_terminates(self):
        _, client = _run(FakeUpstream([sse("a"), sse("b"), b'data: {"choices":[{"del']))

        records = parse_records(client.payload)
        assert [r["message"]["content"] for r in records] == ["a", "b", ""]
        assert records[-1]["done"] is True

    def test_records_after_sentinel_are_not_read(self):
        fake = FakeUpstream([sse("a") + b"data: [DONE]\n" + sse("late"), sse("later")])
        _, client = _run(fake)

        records = parse_records(client.payload)
        assert [r["message"]["content"] for r in records] == ["a", ""]
        assert fake.chunks_sent == 1

    def test_malformed_record_does_not_interrupt(self):
        fake = FakeUpstream([sse("a"), b"data: {not json}\n", sse("b"), b"data: [DONE]\n"])
        _, client = _run(fake)

        records = parse_records(client.payload)
        assert [r["message"]["content"] for r in records] == ["a", "b", ""]

    def test_request_forwarded_unchanged_with_auth(self):
        fake = FakeUpstream([b"data: [DONE]\n"])
        _run(fake)

        assert len(fake.requests) == 1
        sent = fake.requests[0]
        assert str(sent.url) == UPSTREAM_URL
        assert sent.method == "POST"
        assert sent.headers["authorization"] == "Bearer sk-test"
        assert sent.headers["accept"] == "text/event-stream"
        assert fake.request_bodies == [CHAT_BODY]

    def test_no_auth_header_without_key(self):
        fake = FakeUpstream([b"data: [DONE]\n"])
        _run(fake, cfg=ProxyConfig(cloud_api_url=UPSTREAM_URL))
        assert "authorization" not in fake.requests[0].headers


class TestDisconnect:
    def test_disconnect_cancels_upstream(self):
        fake = FakeUpstream([sse("Hi")], hang=True)
        session, client = _run(fake, disconnect_after=1)

        assert fake.chunks_sent == 1
        assert fake.cancelled is True
        assert len(parse_records(client.payload)) == 1
        assert SessionState.COMPLETING not in session.history
        assert session.history[-2:] == [SessionState.ABORTING, SessionState.CLOSED]

    def test_no_terminal_record_after_disconnect(self):
        fake = FakeUpstream([sse("Hi")], hang=True)
        _, client = _run(fake, disconnect_after=1)

        assert all(not r["done"] for r in parse_records(client.payload))


class TestUpstreamFailures:
    def test_connect_timeout_before_content(self):
        fake = FakeUpstream(connect_error=httpx.ConnectTimeout("timed out"))
        session, client = _run(fake)

        assert len(client.starts) == 1
        assert client.starts[0]["status"] == 500
        body = json.loads(client.payload)
        assert body["error"]["status"] == 500
        assert "upstream" in body["error"]["message"].lower()
        assert "stack" in body["error"]
        assert client.error is None
        assert session.history == [
            SessionState.IDLE,
            SessionState.ABORTING,
            SessionState.CLOSED,
        ]

    def test_connect_refused_without_stack_in_production(self):
        fake = FakeUpstream(connect_error=httpx.ConnectError("refused"))
        _, client = _run(fake, debug=False)

        body = json.loads(client.payload)
        assert client.starts[0]["status"] == 500
        assert "stack" not in body["error"]

    def test_upstream_error_status(self):
        fake = FakeUpstream(
            status_code=401,
            body=b'{"error":"invalid api key"}',
            content_type="application/json",
        )
        _, client = _run(fake)

        assert client.starts[0]["status"] == 502
        body = json.loads(client.payload)
        assert body["error"]["status"] == 502
        assert body["error"]["details"]["upstream_status"] == 401
        assert "invalid api key" in body["error"]["details"]["body"]

    def test_stream_error_before_content(self):
        fake = FakeUpstream([b": keep-alive\n"], fail_with=httpx.ReadError("reset"))
        _, client = _run(fake)

        assert client.starts[0]["status"] == 500
        body = json.loads(client.payload)
        assert body["error"]["message"] == "An error occurred while streaming the response"
        assert client.error is None

    def test_stream_error_after_content_drops_connection(self):
        fake = FakeUpstream([sse("partial")], fail_with=httpx.ReadError("reset"))
        session, client = _run(fake)

        assert len(client.starts) == 1
        assert client.starts[0]["status"] == 200
        records = parse_records(client.payload)
        assert [r["message"]["content"] for r in records] == ["partial"]
        assert all(b["more_body"] for b in client.bodies)
        assert isinstance(client.error, httpx.ReadError)
        assert session.history == [
            SessionState.IDLE,
            SessionState.FORWARDING,
            SessionState.ABORTING,
            SessionState.CLOSED,
        ]

    def test_missing_upstream_url(self):
        fake = FakeUpstream([b"data: [DONE]\n"])
        _, client = _run(fake, cfg=ProxyConfig())

        assert client.starts[0]["status"] == 500
        assert fake.requests == []
        assert "not configured" in json.loads(client.payload)["error"]["message"]
