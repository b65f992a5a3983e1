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
"""
ProxyStation -- API Middleware (Request Logging + Optional Auth)

- Request logger: method, path, status and latency for every call
- Optional Bearer token auth (disabled when no api key is configured)

Changing transparent mode rewrites host firewall state, so anything other
than a localhost-only deployment should set ``api.key`` in the settings.
"""

import logging
import time
from typing import Callable

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("proxystation.api.middleware")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every HTTP request with method, path, status, and latency."""

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = int((time.monotonic() - start) * 1000)
        # Skip noisy health checks from log
        if request.url.path != "/health":
            logger.info(
                "%s %s -> %d (%dms)",
                request.method,
                request.url.path,
                response.status_code,
                latency_ms,
            )
        return response


class OptionalAuthMiddleware(BaseHTTPMiddleware):
    """
    Optional Bearer token authentication.

    If ``key_provider`` returns a non-empty key, all requests must include:
        Authorization: Bearer <key>

    If no key is configured, all requests pass through (localhost-safe default).
    """

    # Paths that never require auth
    _EXEMPT_PATHS = {"/health"}

    def __init__(self, app, key_provider: Callable[[], str]):
        super().__init__(app)
        self._key_provider = key_provider

    async def dispatch(self, request: Request, call_next):
        server_key = self._key_provider()

        # No key configured -> pass through (localhost default)
        if not server_key:
            return await call_next(request)

        if request.url.path in self._EXEMPT_PATHS:
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer ") and auth_header[7:] == server_key:
            return await call_next(request)

        logger.warning("Unauthorized request to %s from %s",
                       request.url.path,
                       request.client.host if request.client else "unknown")
        return JSONResponse(
            status_code=401,
            content={
                "code": 1,
                "message": "Authentication required. Set Authorization: Bearer <key> header.",
            },
        )
