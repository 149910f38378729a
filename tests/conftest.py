"""Shared test fixtures for rmount."""

from __future__ import annotations

import itertools
import threading
from pathlib import Path
from typing import Optional

import pytest

from rmount.crypto import KdfParams
from rmount.driver import MountDriver
from rmount.errors import DriverError, TransportError
from rmount.models import DataSourceConfig, RemoteEntry, parse_config
from rmount.objectstore import ObjectStoreClient
from rmount.registry import MountRegistry
from rmount.vault import CredentialVault

PASSWORD = "correct horse battery"
FAST_KDF = KdfParams(time_cost=1, memory_cost=8192, parallelism=1)


class FakeDriver(MountDriver):
    """In-memory mount driver with switches for failure and blocking.

    ``launch_gate`` / ``ready_gate``: when set to an Event, the call
    blocks until the event is set. ``fail_launch`` / ``fail_ready``
    make the call raise DriverError. ``unkillable`` pids survive
    ``terminate``. ``foreign`` pids are alive but belong to some other
    program (a reused pid).
    """

    def __init__(self) -> None:
        self._pids = itertools.count(40000)
        self.alive: set[int] = set()
        self.mounted: set[str] = set()
        self.unkillable: set[int] = set()
        self.foreign: set[int] = set()
        self.launches: list[tuple[str, str, str]] = []
        self.terminated: list[tuple[int, float]] = []
        self.launch_gate: Optional[threading.Event] = None
        self.ready_gate: Optional[threading.Event] = None
        self.fail_launch = False
        self.fail_ready = False
        self._lock = threading.Lock()

    def launch(self, config: DataSourceConfig, remote_path: str, local_path: Path) -> int:
        if self.launch_gate is not None:
            self.launch_gate.wait(5)
        if self.fail_launch:
            raise DriverError("Could not start rclone", cause="no such file")
        with self._lock:
            pid = next(self._pids)
            self.alive.add(pid)
            self.launches.append((config.name, remote_path, str(local_path)))
        return pid

    def wait_ready(self, pid: int, local_path: Path, timeout: float) -> None:
        if self.ready_gate is not None:
            self.ready_gate.wait(5)
        if self.fail_ready:
            self.alive.discard(pid)
            raise DriverError("rclone exited with code 1", cause="bucket not found")
        if pid not in self.alive:
            raise DriverError(f"Mount process {pid} is gone")
        self.mounted.add(str(local_path))

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def is_mount_process(self, pid: int, local_path: Path) -> bool:
        return pid in self.alive and pid not in self.foreign

    def is_mounted(self, local_path: Path) -> bool:
        return str(local_path) in self.mounted

    def release(self, local_path: Path) -> bool:
        self.mounted.discard(str(local_path))
        return True

    def terminate(self, pid: int, grace: float) -> bool:
        self.terminated.append((pid, grace))
        if pid in self.unkillable:
            return False
        self.alive.discard(pid)
        return True

    def crash(self, pid: int) -> None:
        """Simulate the driver process dying on its own."""
        self.alive.discard(pid)


class FakeObjectStore(ObjectStoreClient):
    """Object store that accepts every config except ones named ``bad-*``."""

    def __init__(self) -> None:
        self.tested: list[str] = []

    def test_connection(self, config: DataSourceConfig) -> None:
        self.tested.append(config.name)
        if config.name.startswith("bad"):
            raise TransportError(f"Connection test failed for '{config.name}': refused")

    def list_entries(self, config: DataSourceConfig, path: str = "") -> list[RemoteEntry]:
        return [
            RemoteEntry(name="photos", path="photos", is_dir=True, mime_type="inode/directory"),
            RemoteEntry(name="notes.txt", path="notes.txt", size=12, mime_type="text/plain"),
        ]


def make_config(name: str = "minio-1", **overrides) -> DataSourceConfig:
    data = {
        "name": name,
        "endpoint": "https://minio.local",
        "access_key": "AK",
        "secret_key": "SK",
        "region": "us-east-1",
        "bucket": "",
    }
    data.update(overrides)
    return parse_config(data)


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """Provide a temporary rmount home directory."""
    home = tmp_path / ".rmount"
    home.mkdir()
    return home


@pytest.fixture
def mounts_root(tmp_path: Path) -> Path:
    return tmp_path / "mounts"


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def registry(tmp_home: Path) -> MountRegistry:
    return MountRegistry(tmp_home / "mounts.json")


@pytest.fixture
def vault(tmp_home: Path, object_store: FakeObjectStore) -> CredentialVault:
    """Provide an initialized, unlocked vault with cheap KDF settings."""
    v = CredentialVault(
        tmp_home / "vault.enc",
        kdf=FAST_KDF,
        object_store=object_store,
        home=tmp_home,
    )
    v.initialize(PASSWORD)
    return v
