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
"""Host platform gate and IP forwarding toggles."""

from __future__ import annotations

import logging
import sys

from .commands import DEFAULT_COMMAND_TIMEOUT, CommandRunner, run_command

logger = logging.getLogger("proxystation.transparent.system")

FORWARDING_SYSCTLS: tuple[str, ...] = (
    "net.ipv4.ip_forward",
    "net.ipv6.conf.all.forwarding",
)


def kernel_rules_supported(platform: str | None = None) -> bool:
    """True when nftables and iproute2 management is possible (Linux only)."""
    return (platform or sys.platform).startswith("linux")


class SysctlForwarding:
    """Turns on IPv4/IPv6 forwarding for router scope. Never turns it off."""

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        sysctl_binary: str = "sysctl",
    ) -> None:
        self._runner: CommandRunner = runner or run_command
        self.timeout = timeout
        self.sysctl_binary = sysctl_binary

    def enable(self) -> list[str]:
        """Enable forwarding. Returns the keys that could not be set."""
        failed: list[str] = []
        for key in FORWARDING_SYSCTLS:
            result = self._runner(
                [self.sysctl_binary, "-w", f"{key}=1"], timeout=self.timeout
            )
            if not result.ok:
                failed.append(key)
                logger.warning("Could not enable %s: %s", key, result.output)
        if not failed:
            logger.info("IP forwarding enabled (router scope)")
        return failed
