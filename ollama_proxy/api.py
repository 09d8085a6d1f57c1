"""Ollama-compatible HTTP surface backed by a cloud inference API.

Local tools that speak the Ollama API point at this server; chat requests are
forwarded to an OpenAI-compatible cloud endpoint and the event stream that
comes back is translated into Ollama's NDJSON records as it arrives.

Endpoints:
- GET  /health: Health check
- GET  /: Liveness string
- GET  /api/tags: Configured models, with placeholder metadata
- POST /api/chat: Streaming chat (translated), or pass-through when
  ``"stream": false``
- *    /api/{path}: Pass-through to ``{CLOUD_API_URL}/api/{path}``

Example usage::

    curl -N http://localhost:3000/api/chat \\
        -H "Content-Type: application/json" \\
        -d '{"model": "kimi-k2", "messages": [{"role": "user", "content": "Hi"}], "stream": true}'
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .core.config import ProxyConfig
from .core.errors import (
    InvalidRequest,
    ProxyError,
    RouteNotFound,
    error_body,
    proxy_error_body,
)
from .core.types import HealthResponse, ModelTag, TagsResponse
from .proxy.passthrough import is_streaming_request, relay_request
from .proxy.session import StreamSession
from .upstream.client import UpstreamClient

logger = logging.getLogger(__name__)

LIVENESS_TEXT = "Ollama is running"


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    cfg = getattr(app.state, "runtime_config", None)
    if isinstance(cfg, ProxyConfig):
        logger.info("Server running in %s mode on port %d", cfg.env, cfg.port)
    yield
    upstream = getattr(app.state, "upstream", None)
    if isinstance(upstream, UpstreamClient):
        await upstream.aclose()


web_app = FastAPI(
    title="Ollama Proxy",
    description="Ollama-compatible proxy for OpenAI-style cloud inference APIs",
    version=__version__,
    lifespan=_lifespan,
)
web_app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def configure_web_app(
    cfg: ProxyConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Inject runtime config and the upstream client into the process-local app."""
    web_app.state.runtime_config = cfg
    web_app.state.upstream = UpstreamClient(cfg, transport=transport)


def _runtime_config() -> ProxyConfig:
    cfg = getattr(web_app.state, "runtime_config", None)
    if isinstance(cfg, ProxyConfig):
        return cfg
    raise TypeError("Web app has not been configured; call configure_web_app() first")


def _upstream() -> UpstreamClient:
    upstream = getattr(web_app.state, "upstream", None)
    if isinstance(upstream, UpstreamClient):
        return upstream
    raise TypeError("Web app has not been configured; call configure_web_app() first")


def _include_stack() -> bool:
    cfg = getattr(web_app.state, "runtime_config", None)
    return not (isinstance(cfg, ProxyConfig) and cfg.is_production)


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


def _log_error(request: Request, status_code: int, message: str) -> None:
    level = logging.ERROR if status_code >= 500 else logging.WARNING
    logger.log(
        level, "%d - %s (%s %s)", status_code, message, request.method, request.url.path,
    )


@web_app.exception_handler(ProxyError)
async def _proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    _log_error(request, exc.status_code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=proxy_error_body(exc, include_stack=_include_stack()),
    )


@web_app.exception_handler(StarletteHTTPException)
async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 404:
        err: ProxyError = RouteNotFound(f"Not Found - {request.url.path}")
    else:
        err = ProxyError(str(exc.detail), status_code=exc.status_code)
    return await _proxy_error_handler(request, err)


@web_app.exception_handler(Exception)
async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler. The fault is scoped to this request; the process keeps serving."""
    logger.error(
        "500 - %s (%s %s)", exc, request.method, request.url.path, exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content=error_body(str(exc) or "Internal Server Error", 500, exc=exc,
                           include_stack=_include_stack()),
    )


# ---------------------------------------------------------------------------
# Static endpoints
# ---------------------------------------------------------------------------


@web_app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        version=_runtime_config().version,
    )


@web_app.get("/", response_class=PlainTextResponse)
async def root() -> str:
    return LIVENESS_TEXT


@web_app.get("/api/tags", response_model=TagsResponse)
async def list_tags() -> TagsResponse:
    """List configured models; size, digest and details are static placeholders."""
    return TagsResponse(
        models=[ModelTag.placeholder(name) for name in _runtime_config().models],
    )


# ---------------------------------------------------------------------------
# Translated chat stream
# ---------------------------------------------------------------------------


@web_app.post("/api/chat", response_model=None)
async def chat(request: Request) -> Response:
    raw = await request.body()
    try:
        body = json.loads(raw) if raw else {}
    except json.JSONDecodeError as e:
        raise InvalidRequest(f"Invalid JSON body: {e}") from None
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")

    cfg = _runtime_config()
    upstream = _upstream()

    if not is_streaming_request(body):
        logger.info("Forwarding non-streaming chat request")
        return await relay_request(upstream, request, upstream.base_url, body=raw)

    model = body.get("model")
    logger.info("Handling streaming chat request (model=%s)", model or cfg.default_model)
    return StreamSession(
        upstream,
        raw,
        model=model if isinstance(model, str) else None,
        fallback_model=cfg.default_model,
        debug=not cfg.is_production,
    )


# ---------------------------------------------------------------------------
# Catch-all pass-through for the rest of the Ollama API
# ---------------------------------------------------------------------------


@web_app.api_route(
    "/api/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD"],
)
async def passthrough(request: Request, path: str) -> Response:
    """Relay unhandled /api/* requests to the upstream unchanged."""
    return await relay_request(_upstream(), request, f"api/{path}")

