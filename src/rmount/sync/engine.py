"""
Sync agent -- backs the encrypted vault up to a remote blob store.

    rmount sync push  ->  vault.enc bytes -> blob store (revision recorded)
    rmount sync pull  ->  blob store -> decrypt check -> replace vault.enc

The blob is uploaded exactly as it sits on disk, so the remote copy is
protected by the same master password as the local one. There is no
merge: the last push wins, and a pull overwrites every local change
made since. Both directions hold the vault's write lock, so they never
interleave with an add/update/remove.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from ..atomic import atomic_write_text
from ..audit import audit_event
from ..errors import RMountError
from .backends import BlobStore, create_backend
from .models import SyncConfig, SyncState

logger = logging.getLogger("rmount.sync.engine")


class SyncAgent:
    """Pushes and pulls the vault blob.

    Args:
        vault: The unlocked :class:`CredentialVault`.
        config: Which blob store to use.
        home: rmount home (state lives in ``<home>/sync/state.json``).
        store: Blob store override; defaults to :func:`create_backend`.
        on_config_change: Called after a push changed ``config`` (a new
            gist id) so the caller can persist it.
    """

    def __init__(
        self,
        vault,
        config: SyncConfig,
        home: Path,
        store: Optional[BlobStore] = None,
        on_config_change: Optional[Callable[[SyncConfig], None]] = None,
    ):
        self.vault = vault
        self.config = config
        self.home = home
        self.sync_dir = home / "sync"
        self.sync_dir.mkdir(parents=True, exist_ok=True)
        self.store = store or create_backend(config, home)
        self.on_config_change = on_config_change
        self.state = self._load_state()

    def _load_state(self) -> SyncState:
        """Load sync state from disk."""
        state_file = self.sync_dir / "state.json"
        if state_file.exists():
            try:
                data = json.loads(state_file.read_text(encoding="utf-8"))
                return SyncState(**data)
            except (json.JSONDecodeError, ValueError) as exc:
                logger.warning("Failed to load sync state: %s", exc)
        return SyncState()

    def _save_state(self) -> None:
        atomic_write_text(
            self.sync_dir / "state.json",
            self.state.model_dump_json(indent=2),
        )

    def push(self) -> str:
        """Upload the current vault blob.

        Returns:
            The new remote revision.

        Raises:
            VaultLocked: The vault is not unlocked.
            RemoteUnavailable: The store could not be reached.
        """
        with self.vault.write_lock:
            blob = self.vault.export_blob()
            gist_before = self.config.gist_id
            try:
                revision = self.store.push(blob)
            except RMountError as exc:
                self._record_error(exc)
                raise

        if self.config.gist_id != gist_before and self.on_config_change is not None:
            self.on_config_change(self.config)

        self.state.last_revision = revision
        self.state.last_push = datetime.now(timezone.utc)
        self.state.push_count += 1
        self.state.last_error = None
        self._save_state()
        audit_event(self.home, "SYNC_PUSH", f"Pushed to {self.store.name} ({revision[:12]})")
        return revision

    def pull(self) -> bool:
        """Replace the local vault with the remote one if it changed.

        Returns:
            True if the local vault was replaced, False if the remote
            revision matches the last one seen.

        Raises:
            RemoteUnavailable: The store could not be reached.
            DecryptionFailed: The remote blob does not open with the
                master password. The local vault is untouched.
        """
        with self.vault.write_lock:
            try:
                remote = self.store.pull()
                if remote.revision and remote.revision == self.state.last_revision:
                    logger.info("Remote vault unchanged (revision %s)", remote.revision[:12])
                    return False
                count = self.vault.replace_from_blob(remote.data)
            except RMountError as exc:
                self._record_error(exc)
                raise

        self.state.last_revision = remote.revision
        self.state.last_pull = datetime.now(timezone.utc)
        self.state.pull_count += 1
        self.state.last_error = None
        self._save_state()
        audit_event(
            self.home,
            "SYNC_PULL",
            f"Restored {count} data sources from {self.store.name} ({remote.revision[:12]})",
        )
        return True

    def status(self) -> dict:
        """Get current sync status."""
        return {
            "backend": self.store.name,
            "target": self.store.describe(),
            "available": self.store.available(),
            "state": self.state.model_dump(mode="json"),
        }

    def _record_error(self, exc: Exception) -> None:
        logger.warning("Sync with %s failed: %s", self.store.name, exc)
        self.state.last_error = str(exc)
        self._save_state()
