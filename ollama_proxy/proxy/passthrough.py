"""Pass-through relay for requests that need no translation.

Used for non-streaming chat requests and for every other ``/api/*`` route.
The upstream status, content type and body are relayed as they arrive.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

import httpx
from fastapi import Request
from fastapi.responses import StreamingResponse

from ollama_proxy.upstream.client import UpstreamClient, filter_headers

logger = logging.getLogger(__name__)


def is_streaming_request(body: object) -> bool:
    """Ollama streams unless the client explicitly sends ``"stream": false``."""
    if isinstance(body, dict):
        return body.get("stream", True) is not False
    return True


def _relay(upstream: httpx.Response) -> StreamingResponse:
    async def _body() -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_bytes():
                yield chunk
        except httpx.HTTPError as e:
            # Headers are out already. Re-raising makes the server drop the
            # connection without the final chunk, so the truncation is visible.
            logger.error("Pass-through stream failed: %s", e)
            raise
        finally:
            await upstream.aclose()

    headers = filter_headers(upstream.headers)
    media_type = headers.pop("content-type", None)
    return StreamingResponse(
        _body(),
        status_code=upstream.status_code,
        headers=headers,
        media_type=media_type,
    )


async def relay_request(
    upstream: UpstreamClient,
    request: Request,
    path: str,
    *,
    body: bytes | None = None,
) -> StreamingResponse:
    """Forward ``request`` to ``path`` on the upstream and relay the answer.

    ``path`` may be absolute (the chat endpoint itself) or relative to the
    configured base URL.

    Raises:
        UpstreamUnreachable: The upstream could not be reached.
    """
    if body is None:
        body = await request.body()
    response = await upstream.forward(
        request.method,
        path,
        headers=request.headers,
        content=body,
        query=request.url.query,
    )
    return _relay(response)
