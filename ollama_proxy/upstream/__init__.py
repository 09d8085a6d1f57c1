"""Outbound side of the proxy."""

from .client import UpstreamClient

__all__ = ["UpstreamClient"]
