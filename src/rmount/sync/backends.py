"""
Remote blob stores -- where the encrypted vault travels.

Each store keeps exactly one blob, the vault file as it sits on disk,
and reports an opaque revision for it. The engine compares revisions
to skip pulls that would change nothing. The blob is already encrypted
under the master password, so stores never see a secret.

Gist: a private GitHub gist holding a JSON envelope with the base64
vault. Revision is the gist history version.
Local: a plain file in a directory. For USB drives, NAS, etc.
Revision is the SHA-256 of the content.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
import socket
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..atomic import atomic_write_bytes
from ..errors import (
    CorruptState,
    NotFoundError,
    RemoteUnavailable,
    TransportError,
    ValidationError,
)
from .models import BlobBackendType, BlobEnvelope, RemoteBlob, SyncConfig

logger = logging.getLogger("rmount.sync.backends")

LOCAL_BLOB_NAME = "rmount-vault.enc"
HTTP_TIMEOUT = 30


def mask_token(token: str) -> str:
    """Show only the ends of a token, e.g. ``ghp_...x9Qz``."""
    if len(token) <= 8:
        return "*" * len(token)
    return f"{token[:4]}...{token[-4:]}"


class BlobStore(ABC):
    """Abstract remote blob store."""

    @abstractmethod
    def push(self, blob: bytes) -> str:
        """Upload ``blob``, replacing whatever the store held.

        Returns:
            The revision of the stored blob.

        Raises:
            RemoteUnavailable: If the store cannot be reached.
        """

    @abstractmethod
    def pull(self) -> RemoteBlob:
        """Download the stored blob.

        Raises:
            RemoteUnavailable: If the store cannot be reached.
            NotFoundError: If nothing was pushed yet.
        """

    @abstractmethod
    def available(self) -> bool:
        """Check if this store is currently usable."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable store name."""

    def describe(self) -> str:
        """Where the blob lives, safe to print."""
        return self.name


class GistBlobStore(BlobStore):
    """Private GitHub gist holding the vault envelope.

    The first push creates the gist and records its id on ``config``;
    the caller is expected to persist the config afterwards.
    """

    def __init__(self, config: SyncConfig):
        self.config = config

    @property
    def name(self) -> str:
        return "gist"

    @property
    def token(self) -> str:
        return os.environ.get(self.config.token_env_var, "")

    def describe(self) -> str:
        target = self.config.gist_id or "(new gist on first push)"
        token = mask_token(self.token) if self.token else "not set"
        return f"gist {target} (token {self.config.token_env_var}: {token})"

    def available(self) -> bool:
        """True if the token is set and GitHub accepts it."""
        if not self.token:
            return False
        try:
            self.check_access()
        except (TransportError, NotFoundError) as exc:
            logger.warning("Gist store unavailable: %s", exc)
            return False
        return True

    def check_access(self) -> str:
        """Authenticate against the API and return the account login.

        Raises:
            TransportError: The token is rejected or GitHub is unreachable.
        """
        user = self._request("GET", "/user")
        return user.get("login", "")

    def _request(self, method: str, endpoint: str, data: Optional[dict] = None) -> dict[str, Any]:
        """Call the GitHub API.

        Raises:
            ValidationError: No token configured.
            RemoteUnavailable: Connection failure or a 5xx answer.
            NotFoundError: 404.
            TransportError: Any other HTTP error.
        """
        try:
            import requests
        except ImportError:
            raise TransportError("Gist sync requires 'requests': pip install requests")

        if not self.token:
            raise ValidationError(
                f"Gist sync not configured. Set {self.config.token_env_var}."
            )

        url = f"{self.config.api_url.rstrip('/')}{endpoint}"
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
        }

        try:
            resp = requests.request(
                method, url, headers=headers, json=data, timeout=HTTP_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise RemoteUnavailable(f"GitHub unreachable: {exc}") from exc

        if resp.status_code >= 500:
            raise RemoteUnavailable(f"GitHub API {method} {endpoint}: {resp.status_code}")
        if resp.status_code == 401:
            raise TransportError(
                f"GitHub rejected the token in {self.config.token_env_var}"
            )
        if resp.status_code == 404:
            raise NotFoundError(f"Gist {self.config.gist_id} not found")
        if resp.status_code >= 400:
            raise TransportError(
                f"GitHub API {method} {endpoint}: {resp.status_code} {resp.text}"
            )
        return resp.json()

    def push(self, blob: bytes) -> str:
        envelope = BlobEnvelope(
            vault=base64.b64encode(blob).decode("ascii"),
            timestamp=datetime.now(timezone.utc),
            source_host=socket.gethostname(),
        )
        body = {
            "description": "rmount encrypted vault",
            "files": {
                self.config.gist_filename: {
                    "content": envelope.model_dump_json(indent=2),
                },
            },
        }

        if self.config.gist_id:
            gist = self._request("PATCH", f"/gists/{self.config.gist_id}", body)
        else:
            body["public"] = False
            gist = self._request("POST", "/gists", body)
            self.config.gist_id = gist["id"]
            logger.info("Created private gist %s", gist["id"])

        revision = _gist_revision(gist)
        logger.info("Vault pushed to gist %s (revision %s)", self.config.gist_id, revision[:8])
        return revision

    def pull(self) -> RemoteBlob:
        if not self.config.gist_id:
            raise NotFoundError("No gist configured; push first or run 'rmount sync setup'")

        gist = self._request("GET", f"/gists/{self.config.gist_id}")
        entry = gist.get("files", {}).get(self.config.gist_filename)
        if entry is None:
            raise NotFoundError(
                f"Gist {self.config.gist_id} has no file {self.config.gist_filename}"
            )

        content = entry.get("content", "")
        if entry.get("truncated"):
            content = self._fetch_raw(entry["raw_url"])

        try:
            envelope = BlobEnvelope.model_validate_json(content)
            data = base64.b64decode(envelope.vault, validate=True)
        except (ValueError, binascii.Error) as exc:
            raise CorruptState(f"Gist {self.config.gist_id} holds no valid vault: {exc}") from exc

        logger.info(
            "Vault pulled from gist %s (written %s by %s)",
            self.config.gist_id, envelope.timestamp.isoformat(), envelope.source_host or "?",
        )
        return RemoteBlob(data=data, revision=_gist_revision(gist))

    def _fetch_raw(self, raw_url: str) -> str:
        import requests

        try:
            resp = requests.get(raw_url, timeout=HTTP_TIMEOUT)
        except requests.RequestException as exc:
            raise RemoteUnavailable(f"GitHub unreachable: {exc}") from exc
        if resp.status_code >= 400:
            raise RemoteUnavailable(f"Gist raw download failed: {resp.status_code}")
        return resp.text


def _gist_revision(gist: dict[str, Any]) -> str:
    history = gist.get("history") or []
    if history and history[0].get("version"):
        return history[0]["version"]
    return gist.get("updated_at", "")


class LocalBlobStore(BlobStore):
    """Local filesystem store for USB, NAS, or mounted drives."""

    def __init__(self, config: SyncConfig, home: Path):
        self.config = config
        self.target = (
            config.local_path.expanduser()
            if config.local_path
            else home / "sync" / "local-backup"
        )

    @property
    def name(self) -> str:
        return "local"

    @property
    def blob_path(self) -> Path:
        return self.target / LOCAL_BLOB_NAME

    def describe(self) -> str:
        return f"local {self.blob_path}"

    def available(self) -> bool:
        return self.target.exists() or self.target.parent.exists()

    def push(self, blob: bytes) -> str:
        try:
            self.target.mkdir(parents=True, exist_ok=True)
            atomic_write_bytes(self.blob_path, blob)
        except OSError as exc:
            raise RemoteUnavailable(f"Cannot write {self.blob_path}: {exc}") from exc
        logger.info("Vault pushed to local: %s", self.blob_path)
        return hashlib.sha256(blob).hexdigest()

    def pull(self) -> RemoteBlob:
        if not self.blob_path.exists():
            if not self.target.exists():
                raise RemoteUnavailable(f"{self.target} is not reachable")
            raise NotFoundError(f"No vault at {self.blob_path}; push first")
        try:
            data = self.blob_path.read_bytes()
        except OSError as exc:
            raise RemoteUnavailable(f"Cannot read {self.blob_path}: {exc}") from exc
        logger.info("Vault pulled from local: %s", self.blob_path)
        return RemoteBlob(data=data, revision=hashlib.sha256(data).hexdigest())


def create_backend(config: SyncConfig, home: Path) -> BlobStore:
    """Factory function to create the configured blob store.

    Raises:
        ValidationError: If the backend type is not supported.
    """
    if config.backend == BlobBackendType.GIST:
        return GistBlobStore(config)
    if config.backend == BlobBackendType.LOCAL:
        return LocalBlobStore(config, home)
    raise ValidationError(f"Unsupported sync backend: {config.backend}")
