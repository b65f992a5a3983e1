# ProxyStation
# Copyright (C) 2025 ProxyStation contributors
#
# This file is part of ProxyStation.
#
# ProxyStation is free software: you can redistribute it and/or modify it
# under the terms of the GNU Affero General Public License v3.0 (AGPL-3.0)
# as published by the Free Software Foundation.
#
# ProxyStation is distributed WITHOUT ANY WARRANTY. See the GNU Affero
# General Public License for more details.
"""ProxyStation CLI entry point.

Usage:
    proxystation [--config PATH] [--log-level LEVEL] serve [--host HOST] [--port PORT]
    proxystation preview MODE [--scope SCOPE] [--port PORT]
    proxystation set MODE [--scope SCOPE]
    proxystation clear
    proxystation status
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from proxystation.transparent.config import Mode, Scope, SettingsStore
from proxystation.transparent.controller import CODE_SUCCESS, TransparentModeController
from proxystation.transparent.ruleset import build_ruleset

logger = logging.getLogger("proxystation.cli")

MODE_CHOICES = [m.value for m in Mode]
SCOPE_CHOICES = [s.value for s in Scope]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proxystation",
        description="ProxyStation -- transparent proxy rule controller",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to proxy_settings.yaml (default: ~/.proxystation/proxy_settings.yaml)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the REST API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8090)

    preview = sub.add_parser("preview", help="Print the nftables ruleset for a mode")
    preview.add_argument("mode", choices=MODE_CHOICES)
    preview.add_argument("--scope", choices=SCOPE_CHOICES, default=Scope.LOCAL.value)
    preview.add_argument(
        "--port",
        type=int,
        default=None,
        help="Listen port (default: the configured port for MODE)",
    )

    set_cmd = sub.add_parser("set", help="Persist and apply a transparent mode")
    set_cmd.add_argument("mode", choices=MODE_CHOICES)
    set_cmd.add_argument("--scope", choices=SCOPE_CHOICES, default=Scope.LOCAL.value)

    sub.add_parser("clear", help="Remove rules and policy routes (keeps saved mode)")
    sub.add_parser("status", help="Show the saved mode, scope and ports")
    return parser


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    from proxystation.api.server import create_app

    store = SettingsStore(args.config)
    app = create_app(TransparentModeController(store))
    logger.info("=" * 60)
    logger.info("ProxyStation API")
    logger.info("=" * 60)
    logger.info("  Listen: %s:%d", args.host, args.port)
    logger.info("  Settings: %s", store.path)
    logger.info("  Transparent: %s", store.state.to_dict())
    logger.info("=" * 60)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``proxystation`` console script."""
    args = _build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "serve":
        return _serve(args)

    store = SettingsStore(args.config)

    if args.command == "preview":
        mode = Mode(args.mode)
        port = args.port if args.port else store.get().listen_port(mode)
        sys.stdout.write(build_ruleset(mode, args.scope, port))
        return 0

    controller = TransparentModeController(store)

    if args.command == "set":
        try:
            result = controller.set_mode(args.mode, args.scope)
        except OSError as exc:
            print(f"Failed to save settings: {exc}", file=sys.stderr)
            return 1
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
        return 0 if result.code == CODE_SUCCESS else 2

    if args.command == "clear":
        controller.clear_rules()
        print("Transparent proxy rules and policy routes cleared")
        return 0

    print(json.dumps(controller.get_status(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
