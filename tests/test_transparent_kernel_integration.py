# ProxyStation
# Copyright (C) 2025 ProxyStation contributors
"""Integration tests against the real kernel (nft + iproute2).

These mutate host firewall/routing state, so they only run when explicitly
requested with PROXYSTATION_KERNEL_TESTS=1 as root on Linux with ``nft``
and ``ip`` installed. They always finish by clearing the private table.
"""

import os
import shutil
import sys

import pytest

from proxystation.transparent.commands import run_command
from proxystation.transparent.config import SettingsStore
from proxystation.transparent.controller import TransparentModeController


def _kernel_reason() -> str:
    if os.environ.get("PROXYSTATION_KERNEL_TESTS") != "1":
        return "set PROXYSTATION_KERNEL_TESTS=1 to run kernel tests"
    if not sys.platform.startswith("linux"):
        return "Linux only"
    if os.geteuid() != 0:
        return "requires root"
    if not shutil.which("nft") or not shutil.which("ip"):
        return "nft and ip binaries required"
    return ""


_reason = _kernel_reason()
pytestmark = [
    pytest.mark.kernel,
    pytest.mark.skipif(bool(_reason), reason=_reason or "kernel available"),
]


def _table_exists() -> bool:
    return run_command(["nft", "list", "table", "inet", "proxystation"]).ok


def _fwmark_rules(family_args) -> int:
    result = run_command(["ip", *family_args, "rule", "show"])
    return sum(1 for line in result.output.splitlines() if "fwmark 0x1 lookup 100" in line)


@pytest.fixture
def kernel_controller(tmp_path):
    controller = TransparentModeController(SettingsStore(tmp_path / "proxy_settings.yaml"))
    yield controller
    controller.set_mode("off")


def test_tproxy_router_then_off(kernel_controller):
    result = kernel_controller.set_mode("tproxy", "router")
    assert result.ok, result.message
    assert _table_exists()
    assert _fwmark_rules([]) == 1

    assert kernel_controller.set_mode("off").ok
    assert not _table_exists()
    assert _fwmark_rules([]) == 0
    assert _fwmark_rules(["-6"]) == 0


def test_reapply_does_not_duplicate(kernel_controller):
    kernel_controller.set_mode("tproxy", "local")
    kernel_controller.set_mode("tproxy", "local")
    assert _fwmark_rules([]) == 1


def test_redirect_loads(kernel_controller):
    result = kernel_controller.set_mode("redirect", "router")
    assert result.ok, result.message
    listing = run_command(["nft", "list", "table", "inet", "proxystation"]).output
    assert "redirect to :7892" in listing


def test_clear_is_idempotent(kernel_controller):
    kernel_controller.clear_rules()
    kernel_controller.clear_rules()
    assert not _table_exists()
