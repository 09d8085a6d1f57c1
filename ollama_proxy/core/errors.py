"""Error kinds surfaced to downstream clients.

Every error response shares one JSON document::

    {"error": {"message": "...", "status": 500, "details": ..., "stack": "..."}}

``details`` is present only when the error carries some, ``stack`` only
outside production mode.
"""

from __future__ import annotations

import traceback
from typing import Any

from .types import ErrorDetail, ErrorResponse


class ProxyError(Exception):
    """Base error with the HTTP status it maps to."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details


class InvalidRequest(ProxyError):
    status_code = 400


class RouteNotFound(ProxyError):
    status_code = 404


class UpstreamUnreachable(ProxyError):
    """The outbound call could not be established (refused, DNS, timeout)."""

    status_code = 500


class UpstreamStatusError(ProxyError):
    """The upstream answered, but with an error status."""

    status_code = 502


class UpstreamStreamError(ProxyError):
    """The upstream stream failed after the response began."""

    status_code = 500


def error_body(
    message: str,
    status_code: int,
    *,
    details: Any = None,
    exc: BaseException | None = None,
    include_stack: bool = False,
) -> dict[str, Any]:
    """Build the JSON error document for a response."""
    stack = None
    if include_stack and exc is not None:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    detail = ErrorDetail(message=message, status=status_code, details=details, stack=stack)
    return ErrorResponse(error=detail).model_dump(exclude_none=True)


def proxy_error_body(exc: ProxyError, *, include_stack: bool = False) -> dict[str, Any]:
    return error_body(
        exc.message,
        exc.status_code,
        details=exc.details,
        exc=exc,
        include_stack=include_stack,
    )
