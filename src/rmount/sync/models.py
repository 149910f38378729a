"""
Sync data models -- configuration and state for vault backup.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

ENVELOPE_VERSION = "1.0"


class BlobBackendType(str, Enum):
    """Supported remote blob stores."""

    GIST = "gist"
    LOCAL = "local"


class SyncConfig(BaseModel):
    """Where the encrypted vault is backed up."""

    backend: BlobBackendType = BlobBackendType.GIST

    # GitHub Gist
    gist_id: Optional[str] = None
    token_env_var: str = "RMOUNT_GIST_TOKEN"
    gist_filename: str = "rmount-vault.json"
    api_url: str = "https://api.github.com"

    # Local filesystem (USB drive, NAS mount)
    local_path: Optional[Path] = None


class SyncState(BaseModel):
    """Sync bookkeeping persisted to disk."""

    last_revision: Optional[str] = None
    last_push: Optional[datetime] = None
    last_pull: Optional[datetime] = None
    push_count: int = 0
    pull_count: int = 0
    last_error: Optional[str] = None


class BlobEnvelope(BaseModel):
    """JSON wrapper the encrypted vault travels in.

    ``vault`` is the base64 of the binary vault file, unchanged.
    """

    vault: str
    timestamp: datetime
    version: str = ENVELOPE_VERSION
    source_host: str = ""


class RemoteBlob(BaseModel):
    """A downloaded vault blob with its remote revision."""

    data: bytes
    revision: str
