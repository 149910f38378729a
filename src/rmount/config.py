"""
Non-secret settings and the on-disk layout of the rmount home.

Everything sensitive lives in the encrypted vault. This file only
holds knobs a user may want to edit by hand::

    ~/.rmount/
    ├── config.yaml        # Settings (this module)
    ├── vault.enc          # encrypted data sources
    ├── mounts.json        # mount registry
    ├── sync/state.json    # last backup revision
    ├── logs/              # mount driver output
    ├── cache/             # driver VFS cache
    └── security/audit.log
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import RMOUNT_HOME
from .atomic import atomic_write_text
from .sync.models import SyncConfig

logger = logging.getLogger("rmount.config")

CONFIG_FILE = "config.yaml"
VAULT_FILE = "vault.enc"
MOUNTS_FILE = "mounts.json"
SYNC_DIR = "sync"
LOG_DIR = "logs"
CACHE_DIR = "cache"


class KdfSettings(BaseModel):
    """Argon2id cost parameters used when a vault is (re)keyed."""

    time_cost: int = Field(default=3, ge=1, le=64)
    memory_cost: int = Field(default=65536, ge=8, le=4 * 1024 * 1024, description="KiB")
    parallelism: int = Field(default=4, ge=1, le=64)


class Settings(BaseModel):
    """User-editable settings from ``config.yaml``."""

    mount_directory: Path = Path("~/mounts")
    mount_timeout: float = Field(default=20.0, gt=0)
    unmount_grace: float = Field(default=10.0, ge=0)
    reconcile_interval: float = Field(default=30.0, gt=0)
    rclone_binary: str = "rclone"
    vfs_cache_mode: str = "full"
    auto_start: bool = False
    kdf: KdfSettings = Field(default_factory=KdfSettings)
    sync: SyncConfig = Field(default_factory=SyncConfig)

    @property
    def mounts_root(self) -> Path:
        return self.mount_directory.expanduser()


def resolve_home(home: Optional[Path] = None) -> Path:
    """Return the rmount home, creating it with private permissions."""
    path = (home or Path(RMOUNT_HOME)).expanduser()
    path.mkdir(parents=True, exist_ok=True, mode=0o700)
    return path


def load_settings(home: Path) -> Settings:
    """Load settings from disk, falling back to defaults.

    A missing file is normal on first run. An unreadable or invalid
    file is logged and replaced by defaults in memory (the file itself
    is left alone so the user can fix it).
    """
    config_file = home / CONFIG_FILE
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            return Settings(**data)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            logger.warning("Failed to load %s, using defaults: %s", config_file, exc)
    return Settings()


def save_settings(home: Path, settings: Settings) -> None:
    """Persist settings to ``config.yaml``."""
    data = settings.model_dump(mode="json")
    atomic_write_text(
        home / CONFIG_FILE,
        yaml.dump(data, default_flow_style=False, sort_keys=False),
        mode=0o644,
    )
