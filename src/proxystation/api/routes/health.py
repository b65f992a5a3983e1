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
"""ProxyStation -- Health Route."""

from fastapi import APIRouter, Depends

from proxystation._version import __version__
from proxystation.api.routes.transparent import controller_dependency
from proxystation.transparent.controller import TransparentModeController

router = APIRouter()


@router.get("/health")
def health_check(
    controller: TransparentModeController = Depends(controller_dependency),
):
    """Health check endpoint (K8s compatible)."""
    status = controller.get_status()
    return {
        "status": "healthy",
        "version": __version__,
        "transparent": {
            "mode": status["mode"],
            "scope": status["scope"],
            "kernel_supported": status["kernel_supported"],
        },
    }
