"""Start rmount at login.

Linux: a systemd user unit (``systemctl --user``, no root needed).
macOS: a LaunchAgent plist loaded with ``launchctl``.

Usage:
    from rmount.autostart import enable, is_enabled
    enable(["/usr/bin/rmount", "watch", "--remount"])
    is_enabled()
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Optional
from xml.sax.saxutils import escape

from .errors import RMountError, ValidationError

logger = logging.getLogger("rmount.autostart")

LABEL = "io.rmount.agent"
SERVICE_NAME = "rmount.service"

SYSTEMD_USER_DIR = Path.home() / ".config" / "systemd" / "user"
LAUNCH_AGENTS_DIR = Path.home() / "Library" / "LaunchAgents"

UNIT_TEMPLATE = """\
[Unit]
Description=rmount object-store mounts
After=network-online.target

[Service]
Type=simple
ExecStart={exec_start}
Restart=on-failure
RestartSec=10

[Install]
WantedBy=default.target
"""

PLIST_TEMPLATE = """\
<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>Label</key>
    <string>{label}</string>
    <key>ProgramArguments</key>
    <array>
{arguments}
    </array>
    <key>RunAtLoad</key>
    <true/>
    <key>KeepAlive</key>
    <false/>
</dict>
</plist>
"""


class AutoStartError(RMountError):
    """The login item could not be installed or removed."""


def _run(cmd: list[str]) -> subprocess.CompletedProcess:
    """Run a command and capture output."""
    return subprocess.run(cmd, capture_output=True, text=True, timeout=30, check=False)


def default_command() -> list[str]:
    """The command the login item runs."""
    exe = shutil.which("rmount")
    base = [exe] if exe else [sys.executable, "-m", "rmount"]
    return base + ["watch", "--remount"]


def render_unit(command: list[str]) -> str:
    return UNIT_TEMPLATE.format(exec_start=shlex.join(command))


def render_plist(command: list[str], label: str = LABEL) -> str:
    arguments = "\n".join(f"        <string>{escape(arg)}</string>" for arg in command)
    return PLIST_TEMPLATE.format(label=escape(label), arguments=arguments)


class AutoStart:
    """Login item for the current platform.

    Args:
        platform: ``sys.platform`` value; tests pass one explicitly.
        unit_dir: Override for the systemd user unit directory.
        agents_dir: Override for the LaunchAgents directory.
    """

    def __init__(
        self,
        platform: Optional[str] = None,
        unit_dir: Optional[Path] = None,
        agents_dir: Optional[Path] = None,
    ):
        self.platform = platform or sys.platform
        self.unit_dir = unit_dir or SYSTEMD_USER_DIR
        self.agents_dir = agents_dir or LAUNCH_AGENTS_DIR

    @property
    def is_macos(self) -> bool:
        return self.platform == "darwin"

    @property
    def path(self) -> Path:
        if self.is_macos:
            return self.agents_dir / f"{LABEL}.plist"
        return self.unit_dir / SERVICE_NAME

    def supported(self) -> bool:
        return self.is_macos or self.platform.startswith("linux")

    def is_enabled(self) -> bool:
        if not self.path.exists():
            return False
        if self.is_macos:
            return _run(["launchctl", "list", LABEL]).returncode == 0
        return _run(["systemctl", "--user", "is-enabled", SERVICE_NAME]).stdout.strip() == "enabled"

    def enable(self, command: Optional[list[str]] = None) -> Path:
        """Install and activate the login item.

        Returns:
            Path of the written unit or plist.

        Raises:
            ValidationError: Unsupported platform.
            AutoStartError: The service manager rejected the item.
        """
        if not self.supported():
            raise ValidationError(f"Auto-start is not supported on {self.platform}")
        command = command or default_command()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.is_macos:
            self.path.write_text(render_plist(command), encoding="utf-8")
            self._check(["launchctl", "load", str(self.path)])
        else:
            self.path.write_text(render_unit(command), encoding="utf-8")
            self._check(["systemctl", "--user", "daemon-reload"])
            self._check(["systemctl", "--user", "enable", SERVICE_NAME])

        logger.info("Auto-start enabled: %s", self.path)
        return self.path

    def disable(self) -> None:
        """Deactivate and remove the login item. A no-op if absent."""
        if not self.path.exists():
            return
        if self.is_macos:
            self._check(["launchctl", "unload", str(self.path)])
        else:
            self._check(["systemctl", "--user", "disable", SERVICE_NAME])
        self.path.unlink()
        if not self.is_macos:
            _run(["systemctl", "--user", "daemon-reload"])
        logger.info("Auto-start disabled")

    def _check(self, cmd: list[str]) -> None:
        try:
            result = _run(cmd)
        except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
            raise AutoStartError(f"{cmd[0]} failed: {exc}") from exc
        if result.returncode != 0:
            raise AutoStartError(
                f"{' '.join(cmd[:3])} failed (rc={result.returncode}): {result.stderr.strip()}"
            )
