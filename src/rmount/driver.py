"""
Mount driver -- projects a remote store onto a local directory.

The supervisor talks to a :class:`MountDriver`; the shipped one,
:class:`RcloneDriver`, runs ``rclone mount`` as a child process in its
own session. Credentials reach rclone only through environment
variables of that child (``RCLONE_CONFIG_<REMOTE>_*``); no rclone
config file is written and nothing secret is logged.

Readiness is detected by watching the mount table, liveness by
signalling the pid. Stopping follows the usual escalation: unmount the
path, SIGTERM, wait out the grace period, SIGKILL.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import signal
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from .errors import DriverError
from .models import DataSourceConfig

logger = logging.getLogger("rmount.driver")

REMOTE_NAME = "rmount"
_ENV_PREFIX = f"RCLONE_CONFIG_{REMOTE_NAME.upper()}_"
_READY_POLL_SECONDS = 0.2
_KILL_WAIT_SECONDS = 3.0
_LOG_TAIL_BYTES = 2048
_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")
PROC_ROOT = Path("/proc")
PROC_MOUNTS = PROC_ROOT / "mounts"


class MountDriver(ABC):
    """Abstract mount-driver capability."""

    @abstractmethod
    def launch(self, config: DataSourceConfig, remote_path: str, local_path: Path) -> int:
        """Start projecting ``config`` at ``local_path``.

        Returns:
            The driver process id.

        Raises:
            DriverError: If the process could not be started.
        """

    @abstractmethod
    def wait_ready(self, pid: int, local_path: Path, timeout: float) -> None:
        """Block until the mount is live.

        Raises:
            DriverError: If the process exits or ``timeout`` elapses first.
        """

    @abstractmethod
    def is_alive(self, pid: int) -> bool:
        """Whether the driver process still runs."""

    def is_mount_process(self, pid: int, local_path: Path) -> bool:
        """Whether ``pid`` is alive and is the driver serving ``local_path``.

        A pid read back from disk must pass this before it is signalled.
        """
        return self.is_alive(pid)

    @abstractmethod
    def is_mounted(self, local_path: Path) -> bool:
        """Whether ``local_path`` is currently a mount point."""

    @abstractmethod
    def release(self, local_path: Path) -> bool:
        """Detach the filesystem at ``local_path``. True if it is no longer mounted."""

    @abstractmethod
    def terminate(self, pid: int, grace: float) -> bool:
        """SIGTERM, wait ``grace`` seconds, then SIGKILL. True if the process is gone."""

    def available(self) -> bool:
        return True


def pid_is_alive(pid: int) -> bool:
    """Check whether a process is alive via signal 0.

    Args:
        pid: Process ID to check.

    Returns:
        True if the process exists and is accessible.
    """
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except OSError:
        # EPERM: exists, owned by someone else
        return True


def process_argv(pid: int) -> Optional[list[str]]:
    """Arguments of a running process, or None if they cannot be read.

    Reads ``/proc/<pid>/cmdline`` on Linux, asks ``ps`` elsewhere.
    """
    if PROC_ROOT.is_dir():
        try:
            raw = (PROC_ROOT / str(pid) / "cmdline").read_bytes()
        except OSError:
            return None
        argv = [a.decode("utf-8", errors="replace") for a in raw.split(b"\0") if a]
        return argv or None

    try:
        result = subprocess.run(
            ["ps", "-p", str(pid), "-o", "command="],
            capture_output=True, text=True, timeout=5, check=False,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError):
        return None
    if result.returncode != 0:
        return None
    # ps joins arguments with spaces; paths containing spaces will not match
    return result.stdout.split() or None


def mount_points() -> set[str]:
    """Currently mounted paths.

    Uses ``/proc/mounts`` on Linux, the ``mount`` command elsewhere.
    """
    if PROC_MOUNTS.exists():
        try:
            lines = PROC_MOUNTS.read_text(encoding="utf-8").splitlines()
        except OSError:
            return set()
        points = set()
        for line in lines:
            parts = line.split()
            if len(parts) >= 2:
                points.add(_OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), parts[1]))
        return points

    try:
        result = subprocess.run(
            ["mount"], capture_output=True, text=True, timeout=5, check=False
        )
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError):
        return set()
    points = set()
    for line in result.stdout.splitlines():
        # macOS: "<dev> on <path> (<opts>)"
        if " on " in line:
            points.add(line.split(" on ", 1)[1].rsplit(" (", 1)[0])
    return points


def build_remote(config: DataSourceConfig, remote_path: str) -> str:
    """rclone remote string for ``config`` and a subpath, e.g. ``rmount:bucket/dir``."""
    sub = remote_path.strip("/")
    if config.bucket:
        sub = f"{config.bucket}/{sub}" if sub else config.bucket
    return f"{REMOTE_NAME}:{sub}"


def build_env(config: DataSourceConfig, base: Optional[dict[str, str]] = None) -> dict[str, str]:
    """Child environment carrying the rclone remote definition."""
    env = dict(os.environ if base is None else base)
    # drop definitions of the same remote inherited from the parent
    for key in [k for k in env if k.startswith(_ENV_PREFIX)]:
        del env[key]
    env.update({
        _ENV_PREFIX + "TYPE": "s3",
        _ENV_PREFIX + "PROVIDER": "Other" if config.endpoint else "AWS",
        _ENV_PREFIX + "ENV_AUTH": "false",
        _ENV_PREFIX + "ACCESS_KEY_ID": config.access_key,
        _ENV_PREFIX + "SECRET_ACCESS_KEY": config.secret_key.get_secret_value(),
        _ENV_PREFIX + "REGION": config.region,
    })
    if config.endpoint:
        env[_ENV_PREFIX + "ENDPOINT"] = config.endpoint
    return env


class RcloneDriver(MountDriver):
    """``rclone mount`` as a supervised child process.

    Args:
        binary: rclone executable name or path.
        log_dir: Where each mount's stderr goes (``mount-<name>.log``).
        cache_dir: Root for per-mount VFS caches.
        vfs_cache_mode: rclone ``--vfs-cache-mode`` value.
    """

    def __init__(
        self,
        binary: str = "rclone",
        log_dir: Optional[Path] = None,
        cache_dir: Optional[Path] = None,
        vfs_cache_mode: str = "full",
    ):
        self.binary = binary
        self.log_dir = log_dir
        self.cache_dir = cache_dir
        self.vfs_cache_mode = vfs_cache_mode
        self._procs: dict[int, subprocess.Popen] = {}
        self._logs: dict[int, Path] = {}

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def build_args(self, config: DataSourceConfig, remote_path: str, local_path: Path) -> list[str]:
        args = [
            self.binary,
            "mount",
            build_remote(config, remote_path),
            str(local_path),
            "--vfs-cache-mode",
            self.vfs_cache_mode,
            "--log-level",
            "NOTICE",
        ]
        if self.cache_dir is not None:
            args += ["--cache-dir", str(self.cache_dir / config.name)]
        return args

    def launch(self, config: DataSourceConfig, remote_path: str, local_path: Path) -> int:
        args = self.build_args(config, remote_path, local_path)
        log_path = None
        log_fh = subprocess.DEVNULL
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            log_path = self.log_dir / f"mount-{config.name}.log"
            log_fh = open(log_path, "wb")

        try:
            proc = subprocess.Popen(
                args,
                env=build_env(config),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=log_fh,
                start_new_session=True,
            )
        except OSError as exc:
            raise DriverError(f"Could not start {self.binary}: {exc}", cause=exc) from exc
        finally:
            if log_path is not None:
                log_fh.close()

        self._procs[proc.pid] = proc
        if log_path is not None:
            self._logs[proc.pid] = log_path
        logger.info("Started %s for %s at %s (pid %d)", self.binary, config.name, local_path, proc.pid)
        return proc.pid

    def wait_ready(self, pid: int, local_path: Path, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        mount_str = str(local_path)
        while True:
            proc = self._procs.get(pid)
            if proc is not None and proc.poll() is not None:
                raise DriverError(
                    f"{self.binary} exited with code {proc.returncode}",
                    cause=self._log_tail(pid),
                )
            if proc is None and not pid_is_alive(pid):
                raise DriverError(f"Mount process {pid} is gone")
            if mount_str in mount_points():
                return
            if time.monotonic() >= deadline:
                raise DriverError(
                    f"Mount not ready after {timeout:g}s",
                    cause=self._log_tail(pid),
                )
            time.sleep(_READY_POLL_SECONDS)

    def is_alive(self, pid: int) -> bool:
        proc = self._procs.get(pid)
        if proc is not None:
            return proc.poll() is None
        return pid_is_alive(pid)

    def is_mount_process(self, pid: int, local_path: Path) -> bool:
        proc = self._procs.get(pid)
        if proc is not None:
            return proc.poll() is None
        # not started by this process: match binary and mount point
        argv = process_argv(pid)
        if not argv:
            return False
        return Path(argv[0]).name == Path(self.binary).name and str(local_path) in argv

    def is_mounted(self, local_path: Path) -> bool:
        return str(local_path) in mount_points()

    def release(self, local_path: Path) -> bool:
        if not self.is_mounted(local_path):
            return True

        mount_str = str(local_path)
        for cmd in (["fusermount", "-u", mount_str], ["umount", mount_str]):
            try:
                result = subprocess.run(
                    cmd, capture_output=True, text=True, timeout=10, check=False
                )
            except (FileNotFoundError, subprocess.TimeoutExpired, OSError) as exc:
                logger.debug("Unmount command %s failed: %s", cmd[0], exc)
                continue
            if result.returncode == 0:
                logger.info("Unmounted %s", mount_str)
                return True
            logger.debug(
                "%s failed (rc=%d): %s", cmd[0], result.returncode, result.stderr.strip()
            )
        return not self.is_mounted(local_path)

    def terminate(self, pid: int, grace: float) -> bool:
        if not self.is_alive(pid):
            self._forget(pid)
            return True

        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            self._forget(pid)
            return True
        except OSError as exc:
            logger.warning("SIGTERM failed for pid %d: %s", pid, exc)
            return False

        if not self._wait_exit(pid, grace):
            logger.warning("pid %d did not exit after %gs, sending SIGKILL", pid, grace)
            try:
                os.kill(pid, signal.SIGKILL)
            except OSError:
                pass
            self._wait_exit(pid, _KILL_WAIT_SECONDS)

        stopped = not self.is_alive(pid)
        if stopped:
            self._forget(pid)
        return stopped

    def _wait_exit(self, pid: int, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not self.is_alive(pid):
                return True
            time.sleep(0.2)
        return not self.is_alive(pid)

    def _forget(self, pid: int) -> None:
        proc = self._procs.pop(pid, None)
        if proc is not None:
            try:
                proc.wait(timeout=1)
            except subprocess.TimeoutExpired:
                pass
        self._logs.pop(pid, None)

    def _log_tail(self, pid: int) -> str:
        log_path = self._logs.get(pid)
        if log_path is None or not log_path.exists():
            return ""
        try:
            with open(log_path, "rb") as fh:
                fh.seek(0, os.SEEK_END)
                size = fh.tell()
                fh.seek(max(0, size - _LOG_TAIL_BYTES))
                return fh.read().decode("utf-8", errors="replace").strip()
        except OSError:
            return ""
