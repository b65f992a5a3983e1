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
"""Mark-based policy routing for TPROXY mode.

TPROXY only acts on the prerouting hook, so the host's own outbound packets
have to be looped back into the inbound path. The output chain marks them
with fwmark 1; these routes send everything carrying that mark to a local
route via ``lo`` in table 100, where prerouting sees it again.

    ip rule add fwmark 1 lookup 100
    ip route add local 0.0.0.0/0 dev lo table 100
    (and the same for -6 with ::/0)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .commands import (
    DEFAULT_COMMAND_TIMEOUT,
    CommandResult,
    CommandRunner,
    PolicyRouteFailure,
    run_command,
)
from .config import DEFAULT_ROUTE_DELETE_ATTEMPTS
from .ruleset import PROXY_MARK

logger = logging.getLogger("proxystation.transparent.routing")

POLICY_TABLE_ID = 100


@dataclass(frozen=True)
class PolicyRoute:
    """One address family's fwmark rule plus its local catch-all route."""

    family: str  # "v4" | "v6"
    mark: int = PROXY_MARK
    table_id: int = POLICY_TABLE_ID

    @property
    def destination(self) -> str:
        return "0.0.0.0/0" if self.family == "v4" else "::/0"

    @property
    def family_args(self) -> list[str]:
        return [] if self.family == "v4" else ["-6"]


POLICY_ROUTES: tuple[PolicyRoute, ...] = (PolicyRoute("v4"), PolicyRoute("v6"))


def _already_exists(result: CommandResult) -> bool:
    return "File exists" in result.output or "already exists" in result.output


class IpRouteBackend:
    """Route backend that shells out to iproute2."""

    def __init__(
        self,
        runner: CommandRunner | None = None,
        *,
        timeout: float = DEFAULT_COMMAND_TIMEOUT,
        ip_binary: str = "ip",
    ) -> None:
        self._runner: CommandRunner = runner or run_command
        self.timeout = timeout
        self.ip_binary = ip_binary

    def _rule(self, action: str, route: PolicyRoute) -> CommandResult:
        return self._runner(
            [
                self.ip_binary, *route.family_args, "rule", action,
                "fwmark", str(route.mark), "lookup", str(route.table_id),
            ],
            timeout=self.timeout,
        )

    def _route(self, action: str, route: PolicyRoute) -> CommandResult:
        return self._runner(
            [
                self.ip_binary, *route.family_args, "route", action,
                "local", route.destination, "dev", "lo", "table", str(route.table_id),
            ],
            timeout=self.timeout,
        )

    def add_rule(self, route: PolicyRoute) -> CommandResult:
        return self._rule("add", route)

    def del_rule(self, route: PolicyRoute) -> CommandResult:
        return self._rule("del", route)

    def add_route(self, route: PolicyRoute) -> CommandResult:
        return self._route("add", route)

    def del_route(self, route: PolicyRoute) -> CommandResult:
        return self._route("del", route)


class PolicyRouteManager:
    """Installs and removes the fwmark policy routes for both families."""

    def __init__(
        self,
        backend: IpRouteBackend,
        *,
        delete_attempts: int = DEFAULT_ROUTE_DELETE_ATTEMPTS,
        routes: tuple[PolicyRoute, ...] = POLICY_ROUTES,
    ) -> None:
        self.backend = backend
        self.delete_attempts = max(1, int(delete_attempts))
        self.routes = routes

    def setup(self) -> None:
        """Add rule and route for every family; existing entries are fine.

        Raises:
            PolicyRouteFailure: any other failure, including a timeout.
        """
        for route in self.routes:
            result = self.backend.add_rule(route)
            if not result.ok and not _already_exists(result):
                raise PolicyRouteFailure.from_result(
                    f"failed to add {route.family} fwmark rule", result
                )

            result = self.backend.add_route(route)
            if not result.ok and not _already_exists(result):
                raise PolicyRouteFailure.from_result(
                    f"failed to add {route.family} local route", result
                )

        logger.info(
            "Policy routing configured (fwmark %d -> table %d)",
            PROXY_MARK,
            POLICY_TABLE_ID,
        )

    def teardown(self) -> int:
        """Best-effort removal of rules and routes. Returns rules deleted.

        ``ip rule add`` happily stacks duplicates, so each family's rule is
        deleted repeatedly until a delete fails or the attempt bound is hit.
        """
        removed = 0
        for route in self.routes:
            for _ in range(self.delete_attempts):
                if not self.backend.del_rule(route).ok:
                    break
                removed += 1

            result = self.backend.del_route(route)
            if not result.ok:
                logger.debug(
                    "No %s local route to remove from table %d: %s",
                    route.family,
                    route.table_id,
                    result.output,
                )

        if removed:
            logger.info("Removed %d fwmark rule(s) from policy routing", removed)
        return removed
