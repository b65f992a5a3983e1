# ProxyStation
# Copyright (C) 2025 ProxyStation contributors
"""Tests for proxy settings persistence and the SettingsStore."""

import pytest
import yaml

from proxystation.transparent.config import (
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_REDIR_PORT,
    DEFAULT_ROUTE_DELETE_ATTEMPTS,
    DEFAULT_TPROXY_PORT,
    Mode,
    ProxySettings,
    Scope,
    SettingsStore,
    TransparentProxyState,
    load_settings,
    save_settings,
)


class TestProxySettings:
    def test_defaults(self):
        settings = ProxySettings()
        assert settings.state == TransparentProxyState(Mode.OFF, Scope.LOCAL)
        assert settings.tproxy_port == DEFAULT_TPROXY_PORT == 7893
        assert settings.redir_port == DEFAULT_REDIR_PORT == 7892
        assert settings.api_key == ""

    def test_listen_port_per_mode(self):
        settings = ProxySettings(tproxy_port=9000, redir_port=9001)
        assert settings.listen_port(Mode.TPROXY) == 9000
        assert settings.listen_port("redirect") == 9001
        assert settings.listen_port(Mode.OFF) == 0

    @pytest.mark.parametrize("bad", [0, -1, 70000, None])
    def test_listen_port_falls_back_to_default(self, bad):
        settings = ProxySettings(tproxy_port=bad, redir_port=bad)
        assert settings.listen_port(Mode.TPROXY) == DEFAULT_TPROXY_PORT
        assert settings.listen_port(Mode.REDIRECT) == DEFAULT_REDIR_PORT

    def test_state_to_dict_uses_plain_strings(self):
        state = TransparentProxyState(Mode.TPROXY, Scope.ROUTER)
        assert state.to_dict() == {"mode": "tproxy", "scope": "router"}


class TestLoadSave:
    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_settings(tmp_path / "nope.yaml") == ProxySettings()

    def test_save_then_load(self, tmp_path):
        path = tmp_path / "proxy_settings.yaml"
        original = ProxySettings(
            transparent_mode=Mode.REDIRECT,
            proxy_scope=Scope.ROUTER,
            tproxy_port=17893,
            redir_port=17892,
            command_timeout_seconds=3.5,
            route_delete_attempts=8,
            restore_on_start=False,
            api_key="secret",
        )
        save_settings(original, path)
        assert load_settings(path) == original

    def test_saved_layout(self, tmp_path):
        path = tmp_path / "proxy_settings.yaml"
        save_settings(ProxySettings(transparent_mode=Mode.TPROXY), path)
        raw = yaml.safe_load(path.read_text())
        assert raw["transparent"] == {"mode": "tproxy", "scope": "local"}
        assert raw["ports"] == {"tproxy": 7893, "redir": 7892}

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "proxy_settings.yaml"
        save_settings(ProxySettings(), path)
        assert path.exists()

    def test_corrupt_yaml_gives_defaults(self, tmp_path):
        path = tmp_path / "proxy_settings.yaml"
        path.write_text("transparent: [unclosed")
        assert load_settings(path) == ProxySettings()

    def test_non_mapping_gives_defaults(self, tmp_path):
        path = tmp_path / "proxy_settings.yaml"
        path.write_text("- just\n- a list\n")
        assert load_settings(path) == ProxySettings()

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "proxy_settings.yaml"
        path.write_text("")
        assert load_settings(path) == ProxySettings()

    def test_unknown_mode_and_scope_fall_back(self, tmp_path):
        path = tmp_path / "proxy_settings.yaml"
        path.write_text("transparent:\n  mode: tun\n  scope: galaxy\n")
        settings = load_settings(path)
        assert settings.transparent_mode is Mode.OFF
        assert settings.proxy_scope is Scope.LOCAL

    def test_empty_scope_means_local(self, tmp_path):
        path = tmp_path / "proxy_settings.yaml"
        path.write_text("transparent:\n  mode: tproxy\n  scope: ''\n")
        settings = load_settings(path)
        assert settings.transparent_mode is Mode.TPROXY
        assert settings.proxy_scope is Scope.LOCAL

    def test_invalid_numbers_are_sanitised(self, tmp_path):
        path = tmp_path / "proxy_settings.yaml"
        path.write_text(
            "ports:\n  tproxy: 0\n  redir: banana\n"
            "commands:\n  timeout_seconds: -4\n  route_delete_attempts: 0\n"
        )
        settings = load_settings(path)
        assert settings.tproxy_port == 0
        assert settings.redir_port == 0
        assert settings.listen_port(Mode.TPROXY) == DEFAULT_TPROXY_PORT
        assert settings.command_timeout_seconds == DEFAULT_COMMAND_TIMEOUT_SECONDS
        assert settings.route_delete_attempts == DEFAULT_ROUTE_DELETE_ATTEMPTS


class TestSettingsStore:
    def test_starts_off_local(self, store):
        assert store.state == TransparentProxyState(Mode.OFF, Scope.LOCAL)

    def test_set_transparent_persists(self, store, settings_path):
        state = store.set_transparent("tproxy", "router")
        assert state == TransparentProxyState(Mode.TPROXY, Scope.ROUTER)
        assert SettingsStore(settings_path).state == state

    def test_get_returns_a_copy(self, store):
        copy = store.get()
        copy.tproxy_port = 1
        assert store.get().tproxy_port == DEFAULT_TPROXY_PORT

    def test_update_persists_ports(self, store, settings_path):
        store.update(tproxy_port=10000)
        assert load_settings(settings_path).tproxy_port == 10000

    def test_invalid_mode_rejected_before_write(self, store, settings_path):
        with pytest.raises(ValueError):
            store.set_transparent("bogus", "local")
        assert not settings_path.exists()

    def test_write_failure_raises_and_keeps_previous_state(self, store, settings_path, monkeypatch):
        store.set_transparent(Mode.REDIRECT, Scope.LOCAL)

        def _boom(settings, path=None):
            raise PermissionError("read-only filesystem")

        monkeypatch.setattr("proxystation.transparent.config.save_settings", _boom)
        with pytest.raises(OSError):
            store.set_transparent(Mode.TPROXY, Scope.ROUTER)
        assert store.state == TransparentProxyState(Mode.REDIRECT, Scope.LOCAL)
        assert store.get().transparent_mode is Mode.REDIRECT
        monkeypatch.undo()
        assert load_settings(settings_path).transparent_mode is Mode.REDIRECT
