"""ollama-proxy CLI.

Usage:
    ollama-proxy serve [--host 0.0.0.0] [--port 3000]
    ollama-proxy smoke [--url http://localhost:3000] [--model kimi-k2]
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys

import httpx

from .core.config import get_proxy_config, load_proxy_config, validate_config
from .core.logs import configure_logging

logger = logging.getLogger(__name__)


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the proxy server."""
    import uvicorn

    from .api import configure_web_app, web_app
    from .core.logs import resolve_level

    try:
        cfg = load_proxy_config()
    except ValueError as e:
        configure_logging("info")
        logger.critical("Invalid configuration: %s", e)
        logging.shutdown()
        return 1

    overrides: dict[str, object] = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if overrides:
        cfg = dataclasses.replace(cfg, **overrides)

    configure_logging(cfg.log_level)
    validate_config(cfg)
    configure_web_app(cfg)
    level = logging.getLevelName(resolve_level(cfg.log_level)).lower()
    try:
        uvicorn.run(web_app, host=cfg.host, port=cfg.port, log_level=level)
    except (OSError, SystemExit) as e:
        logger.critical("Server failed to start: %s", e)
        logging.shutdown()
        return 1
    return 0


def cmd_smoke(args: argparse.Namespace) -> int:
    """Exercise a running proxy: health, model list, then a streamed chat."""
    configure_logging("info")
    base = args.url.rstrip("/")
    try:
        with httpx.Client(base_url=base, timeout=args.timeout) as client:
            health = client.get("/health")
            health.raise_for_status()
            print(f"Health: {json.dumps(health.json())}")

            tags = client.get("/api/tags")
            tags.raise_for_status()
            names = [m.get("name") for m in tags.json().get("models", [])]
            print(f"Models ({tags.status_code}): {', '.join(names) or '<none>'}")

            body = {
                "model": args.model,
                "messages": [{"role": "user", "content": args.prompt}],
                "stream": True,
            }
            done = False
            with client.stream("POST", "/api/chat", json=body) as resp:
                print(f"Chat status: {resp.status_code}")
                if resp.status_code >= 400:
                    resp.read()
                    print(resp.text, file=sys.stderr)
                    return 1
                for line in resp.iter_lines():
                    if not line:
                        continue
                    record = json.loads(line)
                    if record.get("done"):
                        done = True
                        break
                    print(record.get("message", {}).get("content", ""), end="", flush=True)
            print()
    except httpx.HTTPError as e:
        logger.error("Smoke test failed: %s", e)
        return 1

    if not done:
        logger.error("Stream ended without a terminal record")
        return 1
    print("Smoke test completed successfully")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="ollama-proxy",
        description="Ollama-compatible proxy for OpenAI-style cloud inference APIs",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the proxy server")
    serve_parser.add_argument("--host", default=None, help="Bind address (default: HOST or 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=None, help="Port (default: PORT or 3000)")
    serve_parser.set_defaults(func=cmd_serve)

    smoke_parser = subparsers.add_parser("smoke", help="Smoke-test a running proxy")
    smoke_parser.add_argument(
        "--url",
        default=None,
        help="Proxy base URL (default: http://localhost:<PORT>)",
    )
    smoke_parser.add_argument("--model", default="kimi-k2", help="Model name to request")
    smoke_parser.add_argument("--prompt", default="Hello, how are you?", help="Prompt text")
    smoke_parser.add_argument("--timeout", type=float, default=60.0, help="Request timeout (s)")
    smoke_parser.set_defaults(func=cmd_smoke)

    args = parser.parse_args(argv)
    if args.command == "smoke" and args.url is None:
        args.url = f"http://localhost:{get_proxy_config().port}"
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
