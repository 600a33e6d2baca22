"""Command line utilities for the Envoy local service."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from typing import Any, Dict, Optional

from .app import _configure_logging  # reuse logging setup
from .config import build_config, load_environment
from .service import EnvoyService


def _poll_command(args: argparse.Namespace) -> int:
    load_environment(args.env_file)
    config = build_config()
    _configure_logging(config.log_level)

    async def _run() -> Dict[str, Any]:
        service = EnvoyService(config)
        try:
            result = await service.poll_once(emit=not args.no_emit, trigger="cli")
            payload: Dict[str, Any] = {
                "success": result.success,
                "duration": result.duration,
                "timestamp": result.timestamp.isoformat(),
                "error_kind": result.error_kind,
                "error": result.error,
                "status_code": result.status_code,
                "published": result.emission.published if result.emission else [],
                "rejected": result.emission.rejected if result.emission else {},
                "emit_error": result.emit_error,
            }
            if args.include_reading and result.reading is not None:
                payload["reading"] = result.reading.as_dict()
            return payload
        finally:
            await service.stop()

    payload = asyncio.run(_run())
    output = json.dumps(payload, indent=2 if args.pretty else None, default=str)
    print(output)
    return 0 if payload["success"] else 1


def _serve_command(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run(
        "envoy_service.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Utilities for the Envoy local service")
    subparsers = parser.add_subparsers(dest="command", required=True)

    poll = subparsers.add_parser("poll", help="Execute a single polling cycle")
    poll.add_argument("--env-file", help="Path to .env file overriding defaults")
    poll.add_argument(
        "--no-emit",
        action="store_true",
        help="Do not publish the reading to MQTT",
    )
    poll.add_argument(
        "--include-reading",
        action="store_true",
        help="Include the normalized reading in the output",
    )
    poll.add_argument(
        "--pretty",
        action="store_true",
        help="Pretty-print JSON output",
    )
    poll.set_defaults(func=_poll_command)

    serve = subparsers.add_parser("serve", help="Run the FastAPI service with uvicorn")
    serve.add_argument("--host", default="0.0.0.0", help="Bind address for uvicorn")
    serve.add_argument("--port", type=int, default=int(os.environ.get("PORT", "8000")))
    serve.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload (development only)",
    )
    serve.add_argument(
        "--log-level",
        default="info",
        choices=["critical", "error", "warning", "info", "debug", "trace"],
        help="Uvicorn log level",
    )
    serve.add_argument("--env-file", help="Path to .env file overriding defaults")

    def _serve_wrapper(args: argparse.Namespace) -> int:
        load_environment(args.env_file)
        config = build_config()
        _configure_logging(config.log_level)
        return _serve_command(args)

    serve.set_defaults(func=_serve_wrapper)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except Exception as exc:  # pragma: no cover - CLI surface
        logging.getLogger("envoy_service.cli").exception("Command failed: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
