"""Tests for the rclone mount driver."""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from rmount import driver as driver_mod
from rmount.driver import (
    RcloneDriver,
    build_env,
    build_remote,
    mount_points,
    pid_is_alive,
    process_argv,
)
from rmount.errors import DriverError

from conftest import make_config

PREFIX = "RCLONE_CONFIG_RMOUNT_"


class TestBuildEnv:
    """Credentials reach rclone only through the child environment."""

    def test_custom_endpoint(self) -> None:
        env = build_env(make_config(secret_key="SK"), base={"PATH": "/bin"})
        assert env["PATH"] == "/bin"
        assert env[PREFIX + "TYPE"] == "s3"
        assert env[PREFIX + "PROVIDER"] == "Other"
        assert env[PREFIX + "ENDPOINT"] == "https://minio.local"
        assert env[PREFIX + "ACCESS_KEY_ID"] == "AK"
        assert env[PREFIX + "SECRET_ACCESS_KEY"] == "SK"
        assert env[PREFIX + "REGION"] == "us-east-1"
        assert env[PREFIX + "ENV_AUTH"] == "false"

    def test_aws_without_endpoint(self) -> None:
        env = build_env(make_config(endpoint=None), base={})
        assert env[PREFIX + "PROVIDER"] == "AWS"
        assert PREFIX + "ENDPOINT" not in env

    def test_inherited_definitions_dropped(self) -> None:
        base = {PREFIX + "ENDPOINT": "http://evil", PREFIX + "SESSION_TOKEN": "x"}
        env = build_env(make_config(endpoint=None), base=base)
        assert PREFIX + "ENDPOINT" not in env
        assert PREFIX + "SESSION_TOKEN" not in env

    def test_parent_environment_untouched(self) -> None:
        before = dict(os.environ)
        build_env(make_config())
        assert dict(os.environ) == before


class TestBuildRemote:
    """Remote strings."""

    def test_no_bucket(self) -> None:
        assert build_remote(make_config(), "") == "rmount:"
        assert build_remote(make_config(), "bucket/dir/") == "rmount:bucket/dir"

    def test_with_bucket(self) -> None:
        cfg = make_config(bucket="photos")
        assert build_remote(cfg, "") == "rmount:photos"
        assert build_remote(cfg, "/2024") == "rmount:photos/2024"


class TestBuildArgs:
    """Command line for rclone mount."""

    def test_args(self, tmp_path: Path) -> None:
        drv = RcloneDriver(binary="rclone", cache_dir=tmp_path / "cache", vfs_cache_mode="writes")
        args = drv.build_args(make_config(bucket="b"), "", tmp_path / "m")
        assert args[:4] == ["rclone", "mount", "rmount:b", str(tmp_path / "m")]
        assert args[args.index("--vfs-cache-mode") + 1] == "writes"
        assert args[args.index("--cache-dir") + 1] == str(tmp_path / "cache" / "minio-1")

    def test_no_secret_on_command_line(self, tmp_path: Path) -> None:
        drv = RcloneDriver()
        args = drv.build_args(make_config(secret_key="TOPSECRET"), "", tmp_path / "m")
        assert not any("TOPSECRET" in a for a in args)


class TestMountPoints:
    """Mount table parsing."""

    def test_proc_mounts(self, tmp_path: Path) -> None:
        table = tmp_path / "mounts"
        table.write_text(
            "proc /proc proc rw 0 0\n"
            "rmount: /home/u/mounts/minio-1 fuse.rclone rw 0 0\n"
            "rmount: /home/u/my\\040files fuse.rclone rw 0 0\n",
            encoding="utf-8",
        )
        with patch.object(driver_mod, "PROC_MOUNTS", table):
            points = mount_points()
        assert "/home/u/mounts/minio-1" in points
        assert "/home/u/my files" in points

    def test_mount_command_fallback(self, tmp_path: Path) -> None:
        output = "rmount: on /Users/u/mounts/minio-1 (macfuse, nodev)\n"
        completed = subprocess.CompletedProcess(["mount"], 0, stdout=output, stderr="")
        with patch.object(driver_mod, "PROC_MOUNTS", tmp_path / "absent"), \
                patch("rmount.driver.subprocess.run", return_value=completed):
            assert mount_points() == {"/Users/u/mounts/minio-1"}


class TestProcessControl:
    """launch / wait_ready / terminate against real processes."""

    def test_pid_is_alive(self) -> None:
        assert pid_is_alive(os.getpid())

    def test_launch_missing_binary(self, tmp_path: Path) -> None:
        drv = RcloneDriver(binary=str(tmp_path / "no-such-rclone"), log_dir=tmp_path / "logs")
        with pytest.raises(DriverError) as exc_info:
            drv.launch(make_config(), "", tmp_path / "m")
        assert exc_info.value.cause is not None

    @pytest.mark.skipif(shutil.which("false") is None, reason="needs 'false'")
    def test_wait_ready_reports_exit(self, tmp_path: Path) -> None:
        drv = RcloneDriver(binary=shutil.which("false"), log_dir=tmp_path / "logs")
        pid = drv.launch(make_config(), "", tmp_path / "m")
        with pytest.raises(DriverError, match="exited with code"):
            drv.wait_ready(pid, tmp_path / "m", timeout=5)
        assert (tmp_path / "logs" / "mount-minio-1.log").exists()

    @pytest.mark.skipif(shutil.which("sleep") is None, reason="needs 'sleep'")
    def test_terminate(self) -> None:
        drv = RcloneDriver()
        proc = subprocess.Popen(["sleep", "30"])
        drv._procs[proc.pid] = proc
        assert drv.is_alive(proc.pid)
        assert drv.terminate(proc.pid, grace=2) is True
        assert not drv.is_alive(proc.pid)

    def test_terminate_dead_pid(self) -> None:
        drv = RcloneDriver()
        with patch("rmount.driver.pid_is_alive", return_value=False):
            assert drv.terminate(999999, grace=0) is True


class TestProcessIdentity:
    """Pids from disk are matched against the rclone command line."""

    def _proc(self, tmp_path: Path, pid: int, *argv: str) -> Path:
        root = tmp_path / "proc"
        (root / str(pid)).mkdir(parents=True)
        (root / str(pid) / "cmdline").write_bytes(b"\0".join(a.encode() for a in argv) + b"\0")
        return root

    def test_process_argv(self, tmp_path: Path) -> None:
        root = self._proc(tmp_path, 4242, "rclone", "mount", "rmount:", "/home/u/mounts/a")
        with patch.object(driver_mod, "PROC_ROOT", root):
            assert process_argv(4242) == ["rclone", "mount", "rmount:", "/home/u/mounts/a"]
            assert process_argv(4243) is None

    def test_matches_binary_and_mount_point(self, tmp_path: Path) -> None:
        root = self._proc(tmp_path, 4242, "/usr/bin/rclone", "mount", "rmount:", "/m/a")
        drv = RcloneDriver()
        with patch.object(driver_mod, "PROC_ROOT", root):
            assert drv.is_mount_process(4242, Path("/m/a")) is True
            assert drv.is_mount_process(4242, Path("/m/b")) is False
            assert drv.is_mount_process(4242, Path("/m")) is False

    def test_reused_pid_is_not_ours(self, tmp_path: Path) -> None:
        root = self._proc(tmp_path, 4242, "sleep", "60")
        with patch.object(driver_mod, "PROC_ROOT", root):
            assert RcloneDriver().is_mount_process(4242, Path("/m/a")) is False

    @pytest.mark.skipif(shutil.which("sleep") is None, reason="needs 'sleep'")
    def test_own_child_by_handle(self, tmp_path: Path) -> None:
        drv = RcloneDriver()
        proc = subprocess.Popen(["sleep", "30"])
        drv._procs[proc.pid] = proc
        try:
            assert drv.is_mount_process(proc.pid, tmp_path) is True
        finally:
            drv.terminate(proc.pid, grace=1)
        assert drv.is_mount_process(proc.pid, tmp_path) is False


class TestRelease:
    """Unmount commands."""

    def test_not_mounted_is_noop(self, tmp_path: Path) -> None:
        drv = RcloneDriver()
        run = MagicMock()
        with patch("rmount.driver.mount_points", return_value=set()), \
                patch("rmount.driver.subprocess.run", run):
            assert drv.release(tmp_path) is True
        run.assert_not_called()

    def test_fusermount_then_umount(self, tmp_path: Path) -> None:
        drv = RcloneDriver()
        results = [
            subprocess.CompletedProcess([], 1, stdout="", stderr="not found"),
            subprocess.CompletedProcess([], 0, stdout="", stderr=""),
        ]
        with patch("rmount.driver.mount_points", return_value={str(tmp_path)}), \
                patch("rmount.driver.subprocess.run", side_effect=results) as run:
            assert drv.release(tmp_path) is True
        assert run.call_args_list[0].args[0][0] == "fusermount"
        assert run.call_args_list[1].args[0][0] == "umount"
