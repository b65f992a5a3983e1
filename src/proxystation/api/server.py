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
ProxyStation -- API Server

FastAPI application exposing the transparent proxy controller.

Run with: uvicorn proxystation.api.server:app --port 8090
or:       proxystation serve
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from proxystation._version import __version__
from proxystation.api.middleware import OptionalAuthMiddleware, RequestLoggingMiddleware
from proxystation.api.routes import health, transparent
from proxystation.transparent.controller import (
    CODE_INVALID,
    TransparentModeController,
    get_controller,
)

logger = logging.getLogger("proxystation.api.server")


def _format_validation_errors(exc: RequestValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()) if item != "body")
        message = error.get("msg", "invalid")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "invalid request"


def create_app(controller: Optional[TransparentModeController] = None) -> FastAPI:
    """Build the API app.

    Args:
        controller: Use this controller instead of the process-wide one
            (tests inject one wired to recording backends).
    """

    def _controller() -> TransparentModeController:
        return controller or get_controller()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctl = _controller()
        if ctl.store.get().restore_on_start:
            result = await asyncio.to_thread(ctl.restore)
            if result is not None and not result.ok:
                logger.warning("Transparent mode restore incomplete: %s", result.message)
        yield

    app = FastAPI(
        title="ProxyStation API",
        description="Transparent proxy control (nftables + policy routing)",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "code": CODE_INVALID,
                "message": f"Invalid request: {_format_validation_errors(exc)}",
            },
        )

    app.add_middleware(
        OptionalAuthMiddleware,
        key_provider=lambda: _controller().store.get().api_key,
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health.router)
    app.include_router(transparent.router)

    if controller is not None:
        app.dependency_overrides[transparent.controller_dependency] = lambda: controller

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8090)
