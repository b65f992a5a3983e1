# ProxyStation
# Copyright (C) 2025 ProxyStation contributors
"""Tests for the proxystation CLI (no kernel access: non-Linux gate or preview)."""

import json
import sys

import pytest

from proxystation.cli import main
from proxystation.transparent.config import Mode, Scope, SettingsStore
from proxystation.transparent.ruleset import build_ruleset


class TestPreview:
    def test_prints_ruleset(self, settings_path, capsys):
        assert main(["--config", str(settings_path), "preview", "tproxy", "--scope", "router"]) == 0
        assert capsys.readouterr().out == build_ruleset("tproxy", "router", 7893)

    def test_port_override(self, settings_path, capsys):
        main(["--config", str(settings_path), "preview", "redirect", "--port", "9000"])
        assert "redirect to :9000" in capsys.readouterr().out

    def test_configured_port(self, settings_path, capsys):
        SettingsStore(settings_path).update(redir_port=9100)
        main(["--config", str(settings_path), "preview", "redirect"])
        assert "redirect to :9100" in capsys.readouterr().out

    def test_unknown_mode_exits(self, settings_path):
        with pytest.raises(SystemExit):
            main(["--config", str(settings_path), "preview", "tun"])


class TestSetAndStatus:
    def test_set_on_unsupported_platform(self, settings_path, capsys, monkeypatch):
        monkeypatch.setattr(sys, "platform", "darwin")
        code = main(["--config", str(settings_path), "set", "tproxy", "--scope", "router"])
        assert code == 0

        payload = json.loads(capsys.readouterr().out)
        assert payload["code"] == 0
        assert payload["data"]["note"]
        state = SettingsStore(settings_path).state
        assert state.mode is Mode.TPROXY
        assert state.scope is Scope.ROUTER

    def test_status(self, settings_path, capsys):
        SettingsStore(settings_path).set_transparent("redirect", "local")
        assert main(["--config", str(settings_path), "status"]) == 0
        payload = json.loads(capsys.readouterr().out)
        assert payload["mode"] == "redirect"
        assert payload["active_port"] == 7892

    def test_command_required(self):
        with pytest.raises(SystemExit):
            main([])

    def test_set_settings_write_failure_exits_1(self, settings_path, capsys, monkeypatch):
        monkeypatch.setattr(sys, "platform", "darwin")
        SettingsStore(settings_path).set_transparent("redirect", "local")

        def _boom(settings, path=None):
            raise PermissionError("read-only filesystem")

        monkeypatch.setattr("proxystation.transparent.config.save_settings", _boom)
        code = main(["--config", str(settings_path), "set", "tproxy", "--scope", "router"])

        assert code == 1
        captured = capsys.readouterr()
        assert "read-only filesystem" in captured.err
        assert captured.out == ""
        monkeypatch.undo()
        assert SettingsStore(settings_path).state.mode is Mode.REDIRECT
