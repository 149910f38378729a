"""Tests for the login-item manager."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from rmount.autostart import AutoStart, AutoStartError, render_plist, render_unit
from rmount.errors import ValidationError

COMMAND = ["/usr/local/bin/rmount", "watch", "--remount"]


def ok(stdout: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess([], 0, stdout=stdout, stderr="")


class TestRender:
    """Unit and plist contents."""

    def test_unit(self) -> None:
        unit = render_unit(["/opt/my tools/rmount", "watch"])
        assert "ExecStart='/opt/my tools/rmount' watch" in unit
        assert "WantedBy=default.target" in unit

    def test_plist_escapes(self) -> None:
        plist = render_plist(["/bin/rmount", "a&b"])
        assert "<string>a&amp;b</string>" in plist
        assert "<key>RunAtLoad</key>" in plist


class TestLinux:
    """systemd user unit."""

    def test_enable_disable(self, tmp_path: Path) -> None:
        auto = AutoStart(platform="linux", unit_dir=tmp_path)
        with patch("rmount.autostart._run", return_value=ok()) as run:
            path = auto.enable(COMMAND)
        assert path == tmp_path / "rmount.service"
        assert "ExecStart=/usr/local/bin/rmount watch --remount" in path.read_text()
        commands = [c.args[0] for c in run.call_args_list]
        assert ["systemctl", "--user", "enable", "rmount.service"] in commands

        with patch("rmount.autostart._run", return_value=ok()):
            auto.disable()
        assert not path.exists()

    def test_is_enabled(self, tmp_path: Path) -> None:
        auto = AutoStart(platform="linux", unit_dir=tmp_path)
        assert auto.is_enabled() is False
        (tmp_path / "rmount.service").write_text("x")
        with patch("rmount.autostart._run", return_value=ok("enabled\n")):
            assert auto.is_enabled() is True
        with patch("rmount.autostart._run", return_value=ok("disabled\n")):
            assert auto.is_enabled() is False

    def test_systemctl_failure(self, tmp_path: Path) -> None:
        auto = AutoStart(platform="linux", unit_dir=tmp_path)
        failed = subprocess.CompletedProcess([], 1, stdout="", stderr="no user bus")
        with patch("rmount.autostart._run", return_value=failed):
            with pytest.raises(AutoStartError, match="no user bus"):
                auto.enable(COMMAND)

    def test_disable_when_absent(self, tmp_path: Path) -> None:
        with patch("rmount.autostart._run") as run:
            AutoStart(platform="linux", unit_dir=tmp_path).disable()
        run.assert_not_called()


class TestMacOS:
    """LaunchAgent plist."""

    def test_enable_loads_plist(self, tmp_path: Path) -> None:
        auto = AutoStart(platform="darwin", agents_dir=tmp_path)
        with patch("rmount.autostart._run", return_value=ok()) as run:
            path = auto.enable(COMMAND)
        assert path.name == "io.rmount.agent.plist"
        assert "<string>--remount</string>" in path.read_text()
        run.assert_called_once_with(["launchctl", "load", str(path)])

    def test_disable_unloads(self, tmp_path: Path) -> None:
        auto = AutoStart(platform="darwin", agents_dir=tmp_path)
        auto.path.write_text("x")
        with patch("rmount.autostart._run", return_value=ok()) as run:
            auto.disable()
        run.assert_called_once_with(["launchctl", "unload", str(auto.path)])
        assert not auto.path.exists()


def test_unsupported_platform(tmp_path: Path) -> None:
    with pytest.raises(ValidationError):
        AutoStart(platform="win32", unit_dir=tmp_path).enable(COMMAND)
