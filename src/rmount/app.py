"""
RMountApp -- one object for every front end.

Owns the vault, the mount registry, the driver and (after unlock) the
supervisor and sync agent, all rooted in one home directory. The CLI
builds one per invocation; a long-running front end keeps one alive
and calls :meth:`RMountApp.close` on exit.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .autostart import AutoStart
from .config import (
    CACHE_DIR,
    LOG_DIR,
    MOUNTS_FILE,
    VAULT_FILE,
    Settings,
    load_settings,
    resolve_home,
    save_settings,
)
from .crypto import KdfParams
from .driver import MountDriver, RcloneDriver
from .errors import RMountError, VaultLocked
from .models import DataSourceConfig, MountRecord, MountStatus, RemoteEntry
from .objectstore import ObjectStoreClient, S3ObjectStore
from .registry import MountRegistry
from .supervisor import Listener, MountSupervisor
from .sync import SyncAgent
from .sync.backends import BlobStore
from .vault import CredentialVault

logger = logging.getLogger("rmount.app")


class RMountApp:
    """Facade over vault, supervisor and sync.

    Args:
        home: rmount home; defaults to ``RMOUNT_HOME`` / ``~/.rmount``.
        settings: Overrides ``config.yaml``.
        driver: Mount driver; defaults to :class:`RcloneDriver`.
        object_store: Object-store client; defaults to :class:`S3ObjectStore`.
        blob_store: Sync store override; defaults to the configured backend.
        autostart: Login-item manager override.
        on_change: Mount status listener, see :class:`MountSupervisor`.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        settings: Optional[Settings] = None,
        driver: Optional[MountDriver] = None,
        object_store: Optional[ObjectStoreClient] = None,
        blob_store: Optional[BlobStore] = None,
        autostart: Optional[AutoStart] = None,
        on_change: Optional[Listener] = None,
    ):
        self.home = resolve_home(home)
        self.settings = settings or load_settings(self.home)
        self.object_store = object_store or S3ObjectStore()
        self.driver = driver or RcloneDriver(
            binary=self.settings.rclone_binary,
            log_dir=self.home / LOG_DIR,
            cache_dir=self.home / CACHE_DIR,
            vfs_cache_mode=self.settings.vfs_cache_mode,
        )
        self.autostart = autostart or AutoStart()
        self.on_change = on_change
        self._blob_store = blob_store

        self.registry = MountRegistry(self.home / MOUNTS_FILE)
        kdf = self.settings.kdf
        self.vault = CredentialVault(
            self.home / VAULT_FILE,
            kdf=KdfParams(kdf.time_cost, kdf.memory_cost, kdf.parallelism),
            object_store=self.object_store,
            in_use=self.registry.is_active,
            home=self.home,
        )
        self._supervisor: Optional[MountSupervisor] = None
        self._sync: Optional[SyncAgent] = None

    # -- vault ---------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self.vault.is_initialized

    def initialize(self, password: str) -> None:
        self.vault.initialize(password)
        self._start_session()

    def unlock(self, password: str) -> None:
        self.vault.unlock(password)
        self._start_session()

    def lock(self) -> None:
        """Lock the vault. Mounts keep running; the monitor stops."""
        if self._supervisor is not None:
            self._supervisor.stop_monitor()
        self._supervisor = None
        self._sync = None
        self.vault.lock()

    def change_password(self, old_password: str, new_password: str) -> None:
        self.vault.change_password(old_password, new_password)

    def _start_session(self) -> None:
        self._supervisor = MountSupervisor(
            self.registry,
            self.vault,
            self.driver,
            self.settings.mounts_root,
            mount_timeout=self.settings.mount_timeout,
            unmount_grace=self.settings.unmount_grace,
            on_change=self.on_change,
            home=self.home,
        )

    # -- data sources ----------------------------------------------------------

    def add_source(self, config: DataSourceConfig) -> DataSourceConfig:
        return self.vault.add(config)

    def update_source(self, name: str, config: DataSourceConfig) -> DataSourceConfig:
        return self.vault.update(name, config)

    def remove_source(self, name: str) -> None:
        self.vault.remove(name)

    def list_sources(self) -> list[DataSourceConfig]:
        return self.vault.list()

    def get_source(self, name: str) -> DataSourceConfig:
        """Redacted config for display."""
        return self.vault.get(name).redacted()

    def test_connection(self, config_or_name) -> None:
        """Test a config, or a stored source by name."""
        if isinstance(config_or_name, str):
            config_or_name = self.vault.get(config_or_name)
        self.vault.test_connection(config_or_name)

    def list_files(self, name: str, path: str = "") -> list[RemoteEntry]:
        return self.object_store.list_entries(self.vault.get(name), path)

    # -- mounts ----------------------------------------------------------------

    @property
    def supervisor(self) -> MountSupervisor:
        if self._supervisor is None:
            raise VaultLocked("Vault is locked; unlock it with the master password first")
        return self._supervisor

    def mount(self, name: str, remote_path: str = "", wait: bool = False) -> MountRecord:
        record = self.supervisor.mount(name, remote_path)
        if wait:
            record = self.supervisor.wait_for(name, timeout=self.settings.mount_timeout + 5)
        return record

    def unmount(self, name: str) -> MountRecord:
        return self.supervisor.unmount(name)

    def list_mounts(self) -> list[MountRecord]:
        return self.registry.all()

    def reconcile(self) -> list[MountRecord]:
        return self.supervisor.reconcile()

    def remount_failed(self) -> list[MountRecord]:
        """Start a new mount for every record left in ``error``.

        Used after a reboot or crash. A source that cannot be restarted
        is logged and skipped.

        Returns:
            Records of the mounts that were started.
        """
        started = []
        for rec in self.list_mounts():
            if rec.status != MountStatus.ERROR:
                continue
            try:
                started.append(self.supervisor.mount(rec.name, rec.remote_path))
            except RMountError as exc:
                logger.error("Remount of %s failed: %s", rec.name, exc)
        return started

    def start_monitor(self) -> None:
        self.supervisor.start_monitor(self.settings.reconcile_interval)

    # -- sync ------------------------------------------------------------------

    @property
    def sync(self) -> SyncAgent:
        if self._sync is None:
            if not self.vault.is_unlocked:
                raise VaultLocked("Vault is locked; unlock it with the master password first")
            self._sync = SyncAgent(
                self.vault,
                self.settings.sync,
                self.home,
                store=self._blob_store,
                on_config_change=lambda _cfg: self.save_settings(),
            )
        return self._sync

    def push(self) -> str:
        return self.sync.push()

    def pull(self) -> bool:
        return self.sync.pull()

    def sync_status(self) -> dict:
        return self.sync.status()

    # -- settings --------------------------------------------------------------

    def save_settings(self) -> None:
        save_settings(self.home, self.settings)

    def get_auto_start(self) -> bool:
        return self.autostart.is_enabled()

    def set_auto_start(self, enabled: bool) -> None:
        if enabled:
            self.autostart.enable()
        else:
            self.autostart.disable()
        self.settings.auto_start = enabled
        self.save_settings()

    def close(self, unmount_all: bool = False) -> None:
        """Stop background work; optionally unmount everything first."""
        if self._supervisor is not None:
            self._supervisor.shutdown(unmount_all=unmount_all)
        self.lock()
