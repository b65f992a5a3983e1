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
"""Transparent Mode Controller.

Turns a requested ``(mode, scope)`` into kernel state:

    persist -> platform gate -> clear -> build -> apply -> routes -> forwarding

Intent is persisted before anything touches the kernel, so a failed apply
still leaves the user's choice on disk and the request can be retried with
``reapply``. Every transition holds the controller lock for the whole
sequence; status and preview reads do not take it.

Result codes:
    0  success
    1  invalid request (raised by callers before reaching the controller)
    2  settings saved, kernel rules not (fully) applied
"""

from __future__ import annotations

import logging
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .commands import ExternalToolFailure, PolicyRouteFailure, TransparentProxyError
from .config import Mode, Scope, SettingsStore, TransparentProxyState
from .firewall import NftablesBackend
from .routing import IpRouteBackend, PolicyRouteManager
from .ruleset import build_ruleset
from .system import SysctlForwarding, kernel_rules_supported

logger = logging.getLogger("proxystation.transparent.controller")

CODE_SUCCESS = 0
CODE_INVALID = 1
CODE_PARTIAL = 2

MODE_MESSAGES: dict[Mode, str] = {
    Mode.OFF: "Transparent proxy disabled, nftables rules cleared",
    Mode.TPROXY: "TProxy mode enabled, nftables TPROXY rules applied",
    Mode.REDIRECT: "Redirect mode enabled, nftables REDIRECT rules applied",
}


@dataclass
class TransitionResult:
    """Outcome of one mode transition, shaped for the HTTP envelope."""

    code: int
    message: str
    mode: Mode
    scope: Scope
    port: int = 0
    note: str = ""
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.code == CODE_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"mode": self.mode.value, "scope": self.scope.value}
        if self.port:
            data["port"] = self.port
        if self.note:
            data["note"] = self.note
        if self.detail:
            data["detail"] = self.detail
        return {"code": self.code, "message": self.message, "data": data}


class TransparentModeController:
    """Serializes mode changes and drives the firewall/route backends."""

    def __init__(
        self,
        store: SettingsStore,
        *,
        firewall: NftablesBackend | None = None,
        routes: PolicyRouteManager | None = None,
        forwarding: SysctlForwarding | None = None,
        platform: str | None = None,
    ) -> None:
        settings = store.get()
        timeout = settings.command_timeout_seconds

        self.store = store
        self.firewall = firewall or NftablesBackend(timeout=timeout)
        self.routes = routes or PolicyRouteManager(
            IpRouteBackend(timeout=timeout),
            delete_attempts=settings.route_delete_attempts,
        )
        self.forwarding = forwarding or SysctlForwarding(timeout=timeout)
        self.platform = platform or sys.platform
        self._lock = threading.Lock()
        self._last_result: TransitionResult | None = None

    # ------------------------------------------------------------------
    # Read-only queries (no transition lock)
    # ------------------------------------------------------------------
    @property
    def kernel_supported(self) -> bool:
        return kernel_rules_supported(self.platform)

    def get_status(self) -> dict[str, Any]:
        settings = self.store.get()
        last = self._last_result
        return {
            **settings.state.to_dict(),
            "tproxy_port": settings.listen_port(Mode.TPROXY),
            "redir_port": settings.listen_port(Mode.REDIRECT),
            "active_port": settings.listen_port(settings.transparent_mode),
            "kernel_supported": self.kernel_supported,
            "last_result": last.to_dict() if last else None,
        }

    def preview(self, mode: Mode | str | None = None, scope: Scope | str | None = None) -> str:
        """Ruleset text for *mode*/*scope* (defaults: the persisted state)."""
        settings = self.store.get()
        mode = Mode(mode) if mode else settings.transparent_mode
        scope = Scope(scope) if scope else settings.proxy_scope
        return build_ruleset(mode, scope, settings.listen_port(mode))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def set_mode(self, mode: Mode | str, scope: Scope | str = Scope.LOCAL) -> TransitionResult:
        """Persist and apply a new ``(mode, scope)``.

        Raises:
            ValueError: unknown mode or scope (nothing is persisted).
            OSError: the settings file could not be written.
        """
        mode = Mode(mode)
        scope = Scope(scope)
        with self._lock:
            self.store.set_transparent(mode, scope)
            logger.info("Transparent mode set to %s (scope=%s)", mode.value, scope.value)
            return self._apply_locked(TransparentProxyState(mode=mode, scope=scope))

    def reapply(self) -> TransitionResult:
        """Re-install kernel state for the persisted ``(mode, scope)``."""
        with self._lock:
            return self._apply_locked(self.store.state)

    def restore(self) -> TransitionResult | None:
        """Startup hook: re-install rules unless the persisted mode is off."""
        state = self.store.state
        if state.mode is Mode.OFF:
            return None
        logger.info(
            "Restoring transparent mode %s (scope=%s)", state.mode.value, state.scope.value
        )
        return self.reapply()

    def clear_rules(self) -> None:
        """Remove the table and policy routes without touching persisted intent."""
        with self._lock:
            if self.kernel_supported:
                self._clear_locked()

    # ------------------------------------------------------------------
    # Internals (caller holds self._lock)
    # ------------------------------------------------------------------
    def _clear_locked(self) -> None:
        self.firewall.clear()
        self.routes.teardown()

    def _apply_locked(self, state: TransparentProxyState) -> TransitionResult:
        mode, scope = state.mode, state.scope

        if not self.kernel_supported:
            result = TransitionResult(
                code=CODE_SUCCESS,
                message=MODE_MESSAGES[mode],
                mode=mode,
                scope=scope,
                note=(
                    "kernel rules are only managed on Linux; "
                    f"nothing was changed on {self.platform}"
                ),
            )
            return self._finish(result)

        self._clear_locked()
        if mode is Mode.OFF:
            logger.info("Transparent proxy rules cleared")
            return self._finish(
                TransitionResult(
                    code=CODE_SUCCESS, message=MODE_MESSAGES[mode], mode=mode, scope=scope
                )
            )

        port = self.store.get().listen_port(mode)
        try:
            self.firewall.apply_ruleset(build_ruleset(mode, scope, port))
            if mode is Mode.TPROXY:
                self.routes.setup()
        except (ExternalToolFailure, PolicyRouteFailure) as exc:
            return self._finish(self._partial(state, port, exc))

        if scope is Scope.ROUTER:
            self.forwarding.enable()

        logger.info(
            "nftables %s rules applied (scope=%s, port=%d)", mode.value, scope.value, port
        )
        return self._finish(
            TransitionResult(
                code=CODE_SUCCESS, message=MODE_MESSAGES[mode], mode=mode, scope=scope, port=port
            )
        )

    def _partial(
        self, state: TransparentProxyState, port: int, exc: TransparentProxyError
    ) -> TransitionResult:
        logger.warning("Failed to apply nftables rules: %s", exc.detail)
        return TransitionResult(
            code=CODE_PARTIAL,
            message=f"Mode saved, but applying nftables rules failed: {exc.detail}",
            mode=state.mode,
            scope=state.scope,
            port=port,
            detail=exc.output,
        )

    def _finish(self, result: TransitionResult) -> TransitionResult:
        self._last_result = result
        return result


# ---------------------------------------------------------------------------
# Singleton (used by the HTTP layer and the CLI)
# ---------------------------------------------------------------------------
_instance: TransparentModeController | None = None
_instance_lock = threading.Lock()


def get_controller(settings_path: Path | str | None = None) -> TransparentModeController:
    """Get or create the process-wide controller."""
    global _instance
    if _instance is None:
        with _instance_lock:
            if _instance is None:
                _instance = TransparentModeController(SettingsStore(settings_path))
    return _instance


def reset_controller() -> None:
    """Drop the singleton (for testing only). Kernel state is left alone."""
    global _instance
    with _instance_lock:
        _instance = None
