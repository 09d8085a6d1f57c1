"""Centralized configuration for the proxy.

Configuration is resolved from two sources:

1. **YAML config**: ``ollama_proxy/core/configs/proxy.yaml``, loaded via Hydra
2. **Environment variables**: override any YAML value; ``API_KEY`` is only
   ever read from the environment

The resolved :class:`ProxyConfig` is immutable. It is built once at startup
and handed to the web app explicitly; nothing in the streaming pipeline reads
the environment.

Usage::

    from ollama_proxy.core.config import get_proxy_config, validate_config

    cfg = get_proxy_config()
    for warning in validate_config(cfg):
        ...
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from ollama_proxy import __version__

logger = logging.getLogger(__name__)

_CONFIG_DIR = str(Path(__file__).parent / "configs")

DEFAULT_MODEL = "kimi-k2"
PRODUCTION = "production"

# ---------------------------------------------------------------------------
# YAML loading via Hydra Compose API
# ---------------------------------------------------------------------------


def _load_yaml_config(config_name: str) -> dict[str, object]:
    """Load a YAML config via Hydra Compose API.

    Returns an empty dict if Hydra is unavailable or the config file is missing.
    """
    try:
        from hydra import compose, initialize_config_dir
        from omegaconf import OmegaConf

        abs_dir = os.path.abspath(_CONFIG_DIR)
        with initialize_config_dir(version_base=None, config_dir=abs_dir):
            cfg = compose(config_name=config_name)
        container = OmegaConf.to_container(cfg, resolve=True)
        if isinstance(container, dict):
            return container  # type: ignore[return-value]
        return {}
    except Exception:
        logger.debug("Failed to load YAML config %r, falling back to defaults", config_name)
        return {}


# ---------------------------------------------------------------------------
# Value helpers: environment first, then YAML, then the default
# ---------------------------------------------------------------------------


def _raw(yaml: dict[str, object], key: str, env: tuple[str, ...]) -> object | None:
    for name in env:
        val = os.environ.get(name)
        if val is not None and val.strip():
            return val.strip()
    return yaml.get(key)


def _str(yaml: dict[str, object], key: str, *env: str, default: str = "") -> str:
    val = _raw(yaml, key, env)
    return str(val).strip() if val is not None else default


def _int(yaml: dict[str, object], key: str, *env: str, default: int = 0) -> int:
    val = _raw(yaml, key, env)
    if val is None or val == "":
        return default
    try:
        return int(str(val))
    except ValueError:
        raise ValueError(f"{key} must be an integer, got {val!r}") from None


def _float(yaml: dict[str, object], key: str, *env: str, default: float = 0.0) -> float:
    val = _raw(yaml, key, env)
    if val is None or val == "":
        return default
    try:
        return float(str(val))
    except ValueError:
        raise ValueError(f"{key} must be a number, got {val!r}") from None


def _csv(yaml: dict[str, object], key: str, *env: str) -> tuple[str, ...]:
    val = _raw(yaml, key, env)
    if val is None:
        return ()
    if isinstance(val, (list, tuple)):
        items = [str(item) for item in val]
    else:
        items = str(val).split(",")
    return tuple(item.strip() for item in items if item.strip())


def _secret(name: str, default: str = "") -> str:
    """Read a secret from an environment variable."""
    raw = os.environ.get(name)
    return raw.strip() if raw is not None else default


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProxyConfig:
    """Runtime configuration shared read-only by every request."""

    host: str = "0.0.0.0"
    port: int = 3000
    env: str = "development"
    cloud_api_url: str = ""
    api_key: str = ""
    models: tuple[str, ...] = ()
    log_level: str = "info"
    default_model: str = DEFAULT_MODEL
    connect_timeout_s: float = 30.0
    read_timeout_s: float = 120.0
    version: str = __version__

    @property
    def is_production(self) -> bool:
        return self.env == PRODUCTION


def load_proxy_config(config_name: str = "proxy") -> ProxyConfig:
    """Build a :class:`ProxyConfig` from YAML defaults and the environment.

    Raises:
        ValueError: If a numeric setting cannot be parsed.
    """
    yaml = _load_yaml_config(config_name)
    cfg = ProxyConfig(
        host=_str(yaml, "host", "HOST", default="0.0.0.0"),
        port=_int(yaml, "port", "PORT", default=3000),
        env=_str(yaml, "env", "PROXY_ENV", "NODE_ENV", default="development").lower(),
        cloud_api_url=_str(yaml, "cloud_api_url", "CLOUD_API_URL"),
        api_key=_secret("API_KEY"),
        models=_csv(yaml, "models", "MODELS"),
        log_level=_str(yaml, "log_level", "LOG_LEVEL", default="info").lower(),
        default_model=_str(yaml, "default_model", "DEFAULT_MODEL", default=DEFAULT_MODEL),
        connect_timeout_s=_float(
            yaml, "connect_timeout_s", "UPSTREAM_CONNECT_TIMEOUT", default=30.0,
        ),
        read_timeout_s=_float(yaml, "read_timeout_s", "UPSTREAM_READ_TIMEOUT", default=120.0),
        version=_str(yaml, "version", "PROXY_VERSION", default=__version__),
    )
    if not 0 < cfg.port < 65536:
        raise ValueError(f"port must be between 1 and 65535, got {cfg.port}")
    if cfg.connect_timeout_s <= 0:
        raise ValueError("connect_timeout_s must be positive")
    return cfg


@lru_cache(maxsize=1)
def get_proxy_config() -> ProxyConfig:
    """Return the process config.

    Cached; call ``get_proxy_config.cache_clear()`` to re-read (useful in tests).
    """
    return load_proxy_config()


def validate_config(cfg: ProxyConfig) -> list[str]:
    """Log and return non-fatal configuration warnings.

    Some deployments serve only the static endpoints, so a missing upstream
    URL or credential is reported but never refused.
    """
    warnings: list[str] = []
    if not cfg.cloud_api_url:
        warnings.append(
            "CLOUD_API_URL is not set. Chat requests will fail until an upstream is configured."
        )
    if not cfg.api_key:
        warnings.append(
            "API_KEY is not set. This might cause authentication issues with the cloud API."
        )
    if not cfg.models:
        warnings.append("MODELS is not set. /api/tags will return an empty list.")
    for message in warnings:
        logger.warning(message)
    return warnings
