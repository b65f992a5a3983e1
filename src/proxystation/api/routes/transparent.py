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
"""Transparent proxy control routes.

Provides endpoints for:
  - Viewing the current transparent mode, scope and ports
  - Switching mode/scope (persists, then applies nftables + policy routing)
  - Previewing the nftables ruleset for any mode/scope
  - Re-applying the persisted mode after an external flush
  - Reading/updating the proxy engine's listen ports

Handlers are plain ``def``: a transition runs several blocking external
commands, so FastAPI executes them in its threadpool.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from proxystation.transparent.config import Mode, Scope
from proxystation.transparent.controller import (
    CODE_INVALID,
    CODE_SUCCESS,
    TransparentModeController,
    get_controller,
)

logger = logging.getLogger("proxystation.api.routes.transparent")

router = APIRouter(prefix="/api/proxy", tags=["proxy"])


def controller_dependency() -> TransparentModeController:
    """Resolve the controller; overridden by ``create_app(controller=...)``."""
    return get_controller()


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class TransparentModeRequest(BaseModel):
    mode: Mode
    scope: Scope = Scope.LOCAL

    @field_validator("scope", mode="before")
    @classmethod
    def _empty_scope_is_local(cls, value):
        return value or Scope.LOCAL.value


class PortsRequest(BaseModel):
    tproxy_port: Optional[int] = Field(default=None, ge=1, le=65535)
    redir_port: Optional[int] = Field(default=None, ge=1, le=65535)


def _save_failed(exc: OSError) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"code": CODE_INVALID, "message": f"Failed to save settings: {exc}"},
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("/transparent")
def get_transparent_status(
    controller: TransparentModeController = Depends(controller_dependency),
) -> dict:
    """Current transparent mode, scope, ports and platform support."""
    return {"code": CODE_SUCCESS, "message": "success", "data": controller.get_status()}


@router.put("/transparent")
def set_transparent_mode(
    request: TransparentModeRequest,
    controller: TransparentModeController = Depends(controller_dependency),
):
    """Persist the requested mode/scope, then apply kernel rules.

    ``code`` is 0 on success and 2 when the mode was saved but the kernel
    rules could not be applied (``message`` carries the tool output).
    """
    try:
        result = controller.set_mode(request.mode, request.scope)
    except OSError as exc:
        return _save_failed(exc)
    return result.to_dict()


@router.get("/transparent/preview")
def preview_ruleset(
    mode: Optional[Mode] = None,
    scope: Optional[Scope] = None,
    controller: TransparentModeController = Depends(controller_dependency),
) -> dict:
    """Render the ruleset without touching the kernel."""
    state = controller.store.state
    mode = mode or state.mode
    scope = scope or state.scope
    return {
        "code": CODE_SUCCESS,
        "message": "success",
        "data": {
            "mode": mode.value,
            "scope": scope.value,
            "port": controller.store.get().listen_port(mode),
            "ruleset": controller.preview(mode, scope),
        },
    }


@router.post("/transparent/reapply")
def reapply_transparent_mode(
    controller: TransparentModeController = Depends(controller_dependency),
) -> dict:
    """Re-install kernel rules for the persisted mode/scope."""
    return controller.reapply().to_dict()


@router.get("/ports")
def get_ports(
    controller: TransparentModeController = Depends(controller_dependency),
) -> dict:
    settings = controller.store.get()
    return {
        "code": CODE_SUCCESS,
        "message": "success",
        "data": {"tproxy_port": settings.tproxy_port, "redir_port": settings.redir_port},
    }


@router.put("/ports")
def update_ports(
    request: PortsRequest,
    controller: TransparentModeController = Depends(controller_dependency),
):
    """Update listen ports. Takes effect on the next apply or reapply."""
    changes = {
        key: value
        for key, value in (
            ("tproxy_port", request.tproxy_port),
            ("redir_port", request.redir_port),
        )
        if value is not None
    }
    if not changes:
        return JSONResponse(
            status_code=400, content={"code": CODE_INVALID, "message": "No port given"}
        )

    try:
        settings = controller.store.update(**changes)
    except OSError as exc:
        return _save_failed(exc)

    logger.info("Listen ports updated: %s", changes)
    return {
        "code": CODE_SUCCESS,
        "message": "Ports updated; re-apply the transparent mode to use them",
        "data": {"tproxy_port": settings.tproxy_port, "redir_port": settings.redir_port},
    }
