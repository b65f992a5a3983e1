"""Pytest configuration and recording backends for proxystation tests.

The recording backends stand in for nft / iproute2 / sysctl: they keep an
in-memory picture of what the kernel would hold so tests can assert on
state (table present, duplicate fwmark rules, ...) instead of argv lists.
"""

import sys
from pathlib import Path

import pytest

# Ensure src/proxystation is importable
src_path = str(Path(__file__).parent.parent / "src")
if src_path not in sys.path:
    sys.path.insert(0, src_path)

from proxystation.transparent.commands import CommandResult, ExternalToolFailure  # noqa: E402
from proxystation.transparent.config import SettingsStore  # noqa: E402
from proxystation.transparent.controller import TransparentModeController  # noqa: E402
from proxystation.transparent.routing import PolicyRouteManager  # noqa: E402


class RecordingFirewall:
    """Firewall backend double: records calls, holds the loaded ruleset."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.table: str | None = None
        self.fail_output: str | None = None

    def apply_ruleset(self, ruleset: str) -> None:
        self.calls.append(("apply", ruleset))
        if self.fail_output is not None:
            raise ExternalToolFailure(
                f"nft failed to load the ruleset: {self.fail_output}",
                command=["nft", "-f", "-"],
                returncode=1,
                output=self.fail_output,
            )
        self.table = ruleset

    def clear(self) -> None:
        self.calls.append(("clear",))
        self.table = None

    @property
    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]


class RecordingRouteBackend:
    """Route backend double with iproute2-like duplicate/EEXIST behaviour."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.rules: list[str] = []  # one entry per fwmark rule, duplicates allowed
        self.routes: set[str] = set()
        self.fail_add_route: str | None = None

    def _ok(self, argv: list[str]) -> CommandResult:
        return CommandResult(argv=argv, returncode=0)

    def _err(self, argv: list[str], output: str) -> CommandResult:
        return CommandResult(argv=argv, returncode=2, output=output)

    def add_rule(self, route):
        self.calls.append(("add_rule", route.family))
        self.rules.append(route.family)
        return self._ok(["ip", "rule", "add"])

    def del_rule(self, route):
        self.calls.append(("del_rule", route.family))
        if route.family in self.rules:
            self.rules.remove(route.family)
            return self._ok(["ip", "rule", "del"])
        return self._err(["ip", "rule", "del"], "RTNETLINK answers: No such file or directory")

    def add_route(self, route):
        self.calls.append(("add_route", route.family))
        if self.fail_add_route is not None:
            return self._err(["ip", "route", "add"], self.fail_add_route)
        if route.family in self.routes:
            return self._err(["ip", "route", "add"], "RTNETLINK answers: File exists")
        self.routes.add(route.family)
        return self._ok(["ip", "route", "add"])

    def del_route(self, route):
        self.calls.append(("del_route", route.family))
        if route.family in self.routes:
            self.routes.discard(route.family)
            return self._ok(["ip", "route", "del"])
        return self._err(["ip", "route", "del"], "RTNETLINK answers: No such process")


class RecordingForwarding:
    """Forwarding double: counts enable() calls, optionally reports failures."""

    def __init__(self) -> None:
        self.enabled_calls = 0
        self.failed_keys: list[str] = []

    def enable(self) -> list[str]:
        self.enabled_calls += 1
        return list(self.failed_keys)


@pytest.fixture
def settings_path(tmp_path):
    return tmp_path / "proxy_settings.yaml"


@pytest.fixture
def store(settings_path):
    return SettingsStore(settings_path)


@pytest.fixture
def firewall():
    return RecordingFirewall()


@pytest.fixture
def route_backend():
    return RecordingRouteBackend()


@pytest.fixture
def forwarding():
    return RecordingForwarding()


@pytest.fixture
def controller(store, firewall, route_backend, forwarding):
    """Controller on a pretend Linux host wired to the recording backends."""
    return TransparentModeController(
        store,
        firewall=firewall,
        routes=PolicyRouteManager(route_backend),
        forwarding=forwarding,
        platform="linux",
    )
