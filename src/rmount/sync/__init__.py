"""
Vault sync -- the encrypted vault, backed up to a remote blob store.

The blob never travels decrypted. Every push uploads the vault file as
is; every pull decrypts with the master password before replacing the
local copy.

Backends: private GitHub gist, local filesystem.
"""

from .backends import BlobStore, GistBlobStore, LocalBlobStore, create_backend
from .engine import SyncAgent

__all__ = ["BlobStore", "GistBlobStore", "LocalBlobStore", "SyncAgent", "create_backend"]
