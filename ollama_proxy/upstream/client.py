"""Outbound HTTP client for the cloud inference API.

One :class:`UpstreamClient` is created at startup and shared by every request;
it owns a pooled ``httpx.AsyncClient``. Responses are always opened in
streaming mode so nothing is buffered in full, and the caller is responsible
for closing them.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

import httpx

from ollama_proxy.core.config import ProxyConfig
from ollama_proxy.core.errors import UpstreamStatusError, UpstreamUnreachable

logger = logging.getLogger(__name__)

# Error bodies from the upstream are relayed in the error details, truncated.
_MAX_ERROR_BODY = 2048

# Hop-by-hop and recomputed headers never forwarded in either direction.
HOP_BY_HOP = frozenset({
    "connection",
    "content-encoding",
    "content-length",
    "host",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})


# Negotiated by httpx itself, so the body is always one it can decode.
_OUTBOUND_DROPPED = HOP_BY_HOP | {"accept-encoding"}


def filter_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Drop hop-by-hop headers."""
    return {k: v for k, v in headers.items() if k.lower() not in HOP_BY_HOP}


class UpstreamClient:
    """Issues one outbound request per inbound request."""

    def __init__(
        self,
        cfg: ProxyConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._cfg = cfg
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(cfg.read_timeout_s, connect=cfg.connect_timeout_s),
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        """Return the upstream base URL (no trailing slash)."""
        return self._cfg.cloud_api_url.rstrip("/")

    def auth_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self._cfg.api_key:
            headers["Authorization"] = f"Bearer {self._cfg.api_key}"
        return headers

    def _require_base_url(self) -> str:
        url = self.base_url
        if not url:
            raise UpstreamUnreachable("Upstream API URL is not configured")
        return url

    def _build(
        self, method: str, url: str, *, headers: Mapping[str, str], content: bytes | None,
    ) -> httpx.Request:
        try:
            return self._client.build_request(method, url, headers=headers, content=content)
        except httpx.InvalidURL as e:
            raise UpstreamUnreachable(f"Invalid upstream URL: {url}") from e

    async def _send(self, request: httpx.Request) -> httpx.Response:
        try:
            return await self._client.send(request, stream=True)
        except httpx.TimeoutException as e:
            logger.error("Upstream timed out: %s %s", request.method, request.url)
            raise UpstreamUnreachable(
                "Timed out connecting to the upstream API",
                details={"url": str(request.url)},
            ) from e
        except httpx.TransportError as e:
            logger.error("Upstream unreachable: %s %s (%s)", request.method, request.url, e)
            raise UpstreamUnreachable(
                "Failed to connect to the upstream API",
                details={"url": str(request.url)},
            ) from e

    async def open_stream(self, content: bytes) -> httpx.Response:
        """POST a chat body to the upstream and return the open event stream.

        The body is forwarded byte for byte.

        Raises:
            UpstreamUnreachable: The request could not be established.
            UpstreamStatusError: The upstream answered with a 4xx/5xx status.
        """
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        headers.update(self.auth_headers())
        request = self._build("POST", self._require_base_url(), headers=headers, content=content)
        response = await self._send(request)
        if response.status_code >= 400:
            try:
                body = (await response.aread())[:_MAX_ERROR_BODY].decode("utf-8", "replace")
            except httpx.HTTPError:
                body = ""
            finally:
                await response.aclose()
            logger.warning("Upstream returned %d for chat stream", response.status_code)
            raise UpstreamStatusError(
                f"Upstream API returned status {response.status_code}",
                details={"upstream_status": response.status_code, "body": body},
            )
        logger.debug("Upstream stream opened: %d", response.status_code)
        return response

    async def forward(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str],
        content: bytes | None = None,
        query: str = "",
    ) -> httpx.Response:
        """Forward a request verbatim and return the open response.

        ``url`` is either an absolute URL or a path joined to the base URL.
        Upstream error statuses are returned, not raised.
        """
        if not url.startswith(("http://", "https://")):
            url = f"{self._require_base_url()}/{url.lstrip('/')}"
        if query:
            url = f"{url}?{query}"
        auth = self.auth_headers()
        out = {
            k: v for k, v in headers.items()
            if k.lower() not in _OUTBOUND_DROPPED and not (auth and k.lower() == "authorization")
        }
        out.update(auth)
        request = self._build(method, url, headers=out, content=content or None)
        logger.info("Proxying request: %s %s", method, url)
        response = await self._send(request)
        logger.info("Received response: %d for %s %s", response.status_code, method, url)
        return response

    async def aclose(self) -> None:
        await self._client.aclose()
