"""Shared test fixtures for the proxy."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Iterable

import httpx
import pytest

from ollama_proxy.core.config import get_proxy_config

_CONFIG_ENV_VARS = (
    "HOST",
    "PORT",
    "NODE_ENV",
    "PROXY_ENV",
    "CLOUD_API_URL",
    "API_KEY",
    "MODELS",
    "LOG_LEVEL",
    "DEFAULT_MODEL",
    "UPSTREAM_CONNECT_TIMEOUT",
    "UPSTREAM_READ_TIMEOUT",
    "PROXY_VERSION",
)

UPSTREAM_URL = "https://cloud.example.com/v1/chat/completions"


@pytest.fixture(autouse=True)
def _clean_config_env(monkeypatch):
    """Run every test against default config, with no leakage from the shell."""
    for name in _CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    get_proxy_config.cache_clear()
    yield
    get_proxy_config.cache_clear()


def sse(content: str) -> bytes:
    """One upstream event carrying a content delta."""
    payload = {"choices": [{"index": 0, "delta": {"content": content}}]}
    return f"data: {json.dumps(payload)}\n".encode("utf-8")


class FakeUpstream:
    """Scripted cloud API served through ``httpx.MockTransport``.

    ``chunks`` are delivered exactly as given so tests control the network
    boundaries. After the last chunk the stream either ends, raises
    ``fail_with``, or (``hang=True``) blocks until cancelled.
    """

    def __init__(
        self,
        chunks: Iterable[bytes] = (),
        *,
        status_code: int = 200,
        body: bytes | None = None,
        content_type: str = "text/event-stream",
        fail_with: Exception | None = None,
        connect_error: Exception | None = None,
        hang: bool = False,
    ) -> None:
        self.chunks = list(chunks)
        self.status_code = status_code
        self.body = body
        self.content_type = content_type
        self.fail_with = fail_with
        self.connect_error = connect_error
        self.hang = hang
        self.requests: list[httpx.Request] = []
        self.request_bodies: list[bytes] = []
        self.chunks_sent = 0
        self.cancelled = False

    async def _stream(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            self.chunks_sent += 1
            yield chunk
        if self.fail_with is not None:
            raise self.fail_with
        if self.hang:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled = True
                raise

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        self.request_bodies.append(await request.aread())
        if self.connect_error is not None:
            raise self.connect_error
        headers = {"content-type": self.content_type}
        if self.body is not None:
            return httpx.Response(self.status_code, headers=headers, content=self.body)
        return httpx.Response(self.status_code, headers=headers, content=self._stream())

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def parse_records(payload: bytes) -> list[dict]:
    return [json.loads(line) for line in payload.decode("utf-8").splitlines() if line.strip()]
