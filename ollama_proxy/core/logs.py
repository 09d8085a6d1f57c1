"""Process-wide logging setup."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def resolve_level(name: str) -> int:
    """Map a ``LOG_LEVEL`` value to a :mod:`logging` level (unknown -> INFO)."""
    return _LEVELS.get(name.strip().lower(), logging.INFO)


def configure_logging(level: str = "info") -> int:
    """Configure the root logger and return the numeric level applied."""
    numeric = resolve_level(level)
    logging.basicConfig(level=numeric, format=LOG_FORMAT, force=True)
    logging.getLogger("httpx").setLevel(max(numeric, logging.WARNING))
    return numeric
