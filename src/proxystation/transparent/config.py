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
"""Transparent proxy settings and persisted mode/scope state.

The settings file lives on the host filesystem and records the user's last
requested transparent mode, so that intent survives restarts even when the
kernel rules themselves do not (nftables state is lost on reboot).

Config location: ~/.proxystation/proxy_settings.yaml
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("proxystation.transparent.config")

# ---------------------------------------------------------------------------
# Default paths
# ---------------------------------------------------------------------------
_PROXYSTATION_HOME = Path(
    os.environ.get("PROXYSTATION_HOME", Path.home() / ".proxystation")
)
DEFAULT_SETTINGS_PATH = _PROXYSTATION_HOME / "proxy_settings.yaml"

# Listen ports of the proxy engine's inbound listeners
DEFAULT_TPROXY_PORT = 7893
DEFAULT_REDIR_PORT = 7892

DEFAULT_COMMAND_TIMEOUT_SECONDS = 10.0
DEFAULT_ROUTE_DELETE_ATTEMPTS = 5


class Mode(str, Enum):
    """Interception technique."""

    OFF = "off"
    TPROXY = "tproxy"
    REDIRECT = "redirect"


class Scope(str, Enum):
    """Which traffic is intercepted: host-only, or host plus LAN clients."""

    LOCAL = "local"
    ROUTER = "router"


@dataclass(frozen=True)
class TransparentProxyState:
    """The last requested ``(mode, scope)`` pair."""

    mode: Mode = Mode.OFF
    scope: Scope = Scope.LOCAL

    def to_dict(self) -> dict[str, str]:
        return {"mode": self.mode.value, "scope": self.scope.value}


def _valid_port(value: Any) -> int:
    """Return *value* as a port number, or 0 when it is unset/out of range."""
    try:
        port = int(value)
    except (TypeError, ValueError):
        return 0
    if 0 < port <= 65535:
        return port
    return 0


@dataclass
class ProxySettings:
    """Everything the transparent proxy controller reads from disk."""

    transparent_mode: Mode = Mode.OFF
    proxy_scope: Scope = Scope.LOCAL

    # 0 means "unset": the hard-coded default is used instead
    tproxy_port: int = DEFAULT_TPROXY_PORT
    redir_port: int = DEFAULT_REDIR_PORT

    # Upper bound for every nft / ip / sysctl invocation
    command_timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS

    # How many duplicate fwmark rules teardown will try to delete per family
    route_delete_attempts: int = DEFAULT_ROUTE_DELETE_ATTEMPTS

    # Re-install kernel rules for the persisted mode when the API starts
    restore_on_start: bool = True

    # Bearer token for the HTTP API (empty = auth disabled)
    api_key: str = ""

    @property
    def state(self) -> TransparentProxyState:
        return TransparentProxyState(mode=self.transparent_mode, scope=self.proxy_scope)

    def listen_port(self, mode: Mode | str) -> int:
        """Resolve the listen port for *mode*, falling back to the defaults."""
        mode = Mode(mode)
        if mode is Mode.TPROXY:
            return _valid_port(self.tproxy_port) or DEFAULT_TPROXY_PORT
        if mode is Mode.REDIRECT:
            return _valid_port(self.redir_port) or DEFAULT_REDIR_PORT
        return 0


def load_settings(path: Path | str | None = None) -> ProxySettings:
    """Load settings from YAML.

    A missing file yields the defaults (transparent proxy off). A corrupt
    file is logged and also yields the defaults rather than failing startup.
    """
    settings_path = Path(path) if path else DEFAULT_SETTINGS_PATH

    if not settings_path.exists():
        logger.info("No proxy settings at %s -- using defaults (mode=off)", settings_path)
        return ProxySettings()

    try:
        raw = yaml.safe_load(settings_path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.error("Failed to load proxy settings: %s -- using defaults", exc)
        return ProxySettings()

    if raw is None:
        return ProxySettings()
    if not isinstance(raw, dict):
        logger.warning("Invalid proxy settings (not a mapping) -- using defaults")
        return ProxySettings()
    return _parse_settings(raw)


def save_settings(settings: ProxySettings, path: Path | str | None = None) -> None:
    """Write settings to YAML. Raises ``OSError`` if the file cannot be written."""
    settings_path = Path(path) if path else DEFAULT_SETTINGS_PATH
    settings_path.parent.mkdir(parents=True, exist_ok=True)

    data: dict[str, Any] = {
        "transparent": {
            "mode": settings.transparent_mode.value,
            "scope": settings.proxy_scope.value,
        },
        "ports": {
            "tproxy": settings.tproxy_port,
            "redir": settings.redir_port,
        },
        "commands": {
            "timeout_seconds": settings.command_timeout_seconds,
            "route_delete_attempts": settings.route_delete_attempts,
        },
        "api": {
            "key": settings.api_key,
            "restore_on_start": settings.restore_on_start,
        },
    }
    settings_path.write_text(
        yaml.dump(data, default_flow_style=False, sort_keys=False), encoding="utf-8"
    )
    logger.debug("Saved proxy settings to %s", settings_path)


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name, {})
    return value if isinstance(value, dict) else {}


def _parse_settings(raw: dict) -> ProxySettings:
    """Parse a raw YAML mapping into ``ProxySettings``."""
    transparent = _section(raw, "transparent")
    ports = _section(raw, "ports")
    commands = _section(raw, "commands")
    api = _section(raw, "api")

    mode_raw = transparent.get("mode", Mode.OFF.value)
    try:
        mode = Mode(mode_raw)
    except ValueError:
        logger.warning("Unknown transparent mode %r in settings -- using 'off'", mode_raw)
        mode = Mode.OFF

    scope_raw = transparent.get("scope") or Scope.LOCAL.value
    try:
        scope = Scope(scope_raw)
    except ValueError:
        logger.warning("Unknown proxy scope %r in settings -- using 'local'", scope_raw)
        scope = Scope.LOCAL

    try:
        timeout = float(commands.get("timeout_seconds", DEFAULT_COMMAND_TIMEOUT_SECONDS))
    except (TypeError, ValueError):
        timeout = DEFAULT_COMMAND_TIMEOUT_SECONDS
    if timeout <= 0:
        timeout = DEFAULT_COMMAND_TIMEOUT_SECONDS

    try:
        attempts = int(commands.get("route_delete_attempts", DEFAULT_ROUTE_DELETE_ATTEMPTS))
    except (TypeError, ValueError):
        attempts = DEFAULT_ROUTE_DELETE_ATTEMPTS
    if attempts < 1:
        attempts = DEFAULT_ROUTE_DELETE_ATTEMPTS

    return ProxySettings(
        transparent_mode=mode,
        proxy_scope=scope,
        tproxy_port=_valid_port(ports.get("tproxy", DEFAULT_TPROXY_PORT)),
        redir_port=_valid_port(ports.get("redir", DEFAULT_REDIR_PORT)),
        command_timeout_seconds=timeout,
        route_delete_attempts=attempts,
        restore_on_start=bool(api.get("restore_on_start", True)),
        api_key=str(api.get("key") or ""),
    )


# ---------------------------------------------------------------------------
# SettingsStore
# ---------------------------------------------------------------------------
class SettingsStore:
    """Owns the in-memory settings and writes every change through to disk.

    Readers always get a copy, so a status query never observes a half-made
    update.
    """

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path) if path else DEFAULT_SETTINGS_PATH
        self._lock = threading.Lock()
        self._settings = load_settings(self.path)

    def get(self) -> ProxySettings:
        with self._lock:
            return replace(self._settings)

    @property
    def state(self) -> TransparentProxyState:
        with self._lock:
            return self._settings.state

    def update(self, **changes: Any) -> ProxySettings:
        """Apply *changes* and persist.

        Memory is only updated once the disk write succeeds; on ``OSError``
        the previous settings stay in effect and the error is re-raised.
        """
        with self._lock:
            candidate = replace(self._settings, **changes)
            try:
                save_settings(candidate, self.path)
            except OSError as exc:
                logger.error("Failed to persist proxy settings to %s: %s", self.path, exc)
                raise
            self._settings = candidate
            return replace(candidate)

    def set_transparent(self, mode: Mode | str, scope: Scope | str) -> TransparentProxyState:
        settings = self.update(transparent_mode=Mode(mode), proxy_scope=Scope(scope))
        return settings.state
