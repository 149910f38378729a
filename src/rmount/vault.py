"""
Credential vault -- the encrypted registry of data sources.

The vault file is a single authenticated-encrypted blob (see
:mod:`rmount.crypto`). Once unlocked, the decrypted registry lives in a
:class:`VaultSession` owned by the :class:`CredentialVault`; locking
destroys the session. Every mutation re-encrypts the whole registry and
atomically replaces the file, under one writer lock.

Secrets leave the vault only through :meth:`CredentialVault.get`, which
the mount and connection-test paths use. :meth:`CredentialVault.list`
always redacts.
"""

from __future__ import annotations

import hmac
import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Callable, Optional

from .atomic import atomic_write_bytes
from .audit import audit_event
from .crypto import (
    KdfParams,
    derive_key,
    new_salt,
    open_blob,
    seal,
)
from .errors import (
    AlreadyInitialized,
    AuthError,
    CorruptState,
    CorruptVault,
    DecryptionFailed,
    DuplicateName,
    InUse,
    InvalidPassword,
    NotFound,
    ValidationError,
    VaultLocked,
)
from .models import DataSourceConfig

logger = logging.getLogger("rmount.vault")

PAYLOAD_VERSION = 1
MIN_PASSWORD_LENGTH = 8


class VaultSession:
    """Decrypted state of an unlocked vault.

    Created by :meth:`CredentialVault.unlock` or
    :meth:`CredentialVault.initialize`, destroyed by
    :meth:`CredentialVault.lock`. Holds the derived key (so mutations
    do not re-run the KDF) and the password (so a pulled blob with a
    different salt can be opened).
    """

    def __init__(
        self,
        key: bytes,
        salt: bytes,
        params: KdfParams,
        password: str,
        sources: dict[str, DataSourceConfig],
        blob: bytes,
    ):
        self.key = key
        self.salt = salt
        self.params = params
        self.password = password
        self.sources = sources
        self.blob = blob

    def __repr__(self) -> str:
        return f"VaultSession(sources={len(self.sources)})"


def _encode_payload(sources: dict[str, DataSourceConfig]) -> bytes:
    payload = {
        "version": PAYLOAD_VERSION,
        "data_sources": [cfg.to_payload() for cfg in sources.values()],
    }
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def _decode_payload(plaintext: bytes) -> dict[str, DataSourceConfig]:
    """Parse decrypted vault JSON into an ordered name -> config map.

    Raises:
        CorruptVault: If the payload authenticates but does not parse.
    """
    try:
        payload = json.loads(plaintext.decode("utf-8"))
        if payload.get("version") != PAYLOAD_VERSION:
            raise CorruptVault(f"Unsupported vault payload version {payload.get('version')}")
        sources: dict[str, DataSourceConfig] = {}
        for item in payload.get("data_sources", []):
            cfg = DataSourceConfig.model_validate(item)
            if cfg.name in sources:
                raise CorruptVault(f"Vault holds duplicate data source '{cfg.name}'")
            sources[cfg.name] = cfg
        return sources
    except (UnicodeDecodeError, json.JSONDecodeError, ValueError, AttributeError) as exc:
        raise CorruptVault(f"Vault payload is unreadable: {exc}") from None


class CredentialVault:
    """Encrypted-at-rest registry of data-source configurations.

    Args:
        path: Vault file location (``~/.rmount/vault.enc``).
        kdf: Argon2id parameters for new keys (initialize, change_password).
        object_store: Client used by :meth:`test_connection`. Defaults to
            :class:`rmount.objectstore.S3ObjectStore`.
        in_use: Predicate telling whether a name has an active mount;
            wired to :meth:`MountRegistry.is_active` by the app.
        home: Directory for the audit log. Defaults to the vault's parent.
    """

    def __init__(
        self,
        path: Path,
        kdf: Optional[KdfParams] = None,
        object_store=None,
        in_use: Optional[Callable[[str], bool]] = None,
        home: Optional[Path] = None,
    ):
        self.path = path.expanduser()
        self.kdf = kdf or KdfParams()
        self.home = home or self.path.parent
        self.in_use: Callable[[str], bool] = in_use or (lambda name: False)
        self._object_store = object_store
        self._lock = threading.RLock()
        self._session: Optional[VaultSession] = None

    # -- lifecycle ---------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self.path.exists()

    @property
    def is_unlocked(self) -> bool:
        return self._session is not None

    @property
    def write_lock(self) -> threading.RLock:
        """Held by every mutation. Sync holds it across a push or pull."""
        return self._lock

    def initialize(self, password: str) -> VaultSession:
        """Create an empty vault under a new master password.

        Raises:
            AlreadyInitialized: If a vault file already exists.
            ValidationError: If the password is too short.
        """
        with self._lock:
            if self.path.exists():
                raise AlreadyInitialized(f"A vault already exists at {self.path}")
            _check_password(password)

            salt = new_salt()
            key = derive_key(password, salt, self.kdf)
            session = VaultSession(key, salt, self.kdf, password, {}, b"")
            self._persist(session)
            self._session = session

        logger.info("Initialized new vault at %s", self.path)
        audit_event(self.home, "VAULT_INIT", f"Vault created at {self.path}")
        return session

    def unlock(self, password: str) -> VaultSession:
        """Open the vault with the master password.

        Raises:
            InvalidPassword: Wrong password (canary mismatch).
            CorruptVault: File missing structure or failing authentication.
            CorruptState: Vault file missing or unreadable.
        """
        with self._lock:
            blob = self._read_file()
            try:
                key, header, plaintext = open_blob(password, blob)
            except InvalidPassword:
                audit_event(self.home, "VAULT_UNLOCK_FAILED", "Wrong master password")
                raise
            sources = _decode_payload(plaintext)
            self._session = VaultSession(
                key, header.salt, header.params, password, sources, blob
            )

        logger.info("Vault unlocked (%d data sources)", len(sources))
        return self._session

    def lock(self) -> None:
        """Drop the decrypted session from memory."""
        with self._lock:
            self._session = None
        logger.debug("Vault locked")

    def change_password(self, old_password: str, new_password: str) -> None:
        """Re-key the vault under a new password with a fresh salt.

        Raises:
            InvalidPassword: If ``old_password`` is not the current one.
        """
        with self._lock:
            session = self._require_session()
            if not hmac.compare_digest(
                old_password.encode("utf-8"), session.password.encode("utf-8")
            ):
                raise InvalidPassword("Current master password is incorrect")
            _check_password(new_password)

            salt = new_salt()
            rekeyed = VaultSession(
                derive_key(new_password, salt, self.kdf),
                salt,
                self.kdf,
                new_password,
                dict(session.sources),
                b"",
            )
            self._persist(rekeyed)
            self._session = rekeyed

        audit_event(self.home, "VAULT_REKEY", "Master password changed")

    # -- registry ----------------------------------------------------------

    def add(self, config: DataSourceConfig) -> DataSourceConfig:
        """Register a new data source and persist the vault.

        Returns:
            Redacted copy of the stored config, with its assigned id.

        Raises:
            DuplicateName: If the name is taken.
        """
        with self._lock:
            session = self._require_session()
            if config.name in session.sources:
                raise DuplicateName(config.name)

            stored = config.model_copy(update={"id": uuid.uuid4().hex})
            sources = dict(session.sources)
            sources[stored.name] = stored
            self._commit(session, sources)

        logger.info("Added data source %s", stored.name)
        audit_event(self.home, "SOURCE_ADD", f"Data source added: {stored.name}")
        return stored.redacted()

    def update(self, name: str, config: DataSourceConfig) -> DataSourceConfig:
        """Replace the config stored under ``name``.

        The id is preserved. ``config.name`` may differ to rename the
        source; the order of entries is kept.

        Raises:
            NotFound: If ``name`` is not registered.
            DuplicateName: If renaming onto an existing name.
            InUse: If ``name`` has an active mount.
        """
        with self._lock:
            session = self._require_session()
            current = session.sources.get(name)
            if current is None:
                raise NotFound(name)
            if config.name != name and config.name in session.sources:
                raise DuplicateName(config.name)
            if self.in_use(name):
                raise InUse(name)

            stored = config.model_copy(update={"id": current.id})
            sources = {
                (stored.name if key == name else key): (stored if key == name else cfg)
                for key, cfg in session.sources.items()
            }
            self._commit(session, sources)

        logger.info("Updated data source %s", name)
        audit_event(self.home, "SOURCE_UPDATE", f"Data source updated: {name}")
        return stored.redacted()

    def remove(self, name: str) -> None:
        """Delete a data source.

        Raises:
            NotFound: If ``name`` is not registered.
            InUse: If a mount record for ``name`` is not unmounted.
        """
        with self._lock:
            session = self._require_session()
            if name not in session.sources:
                raise NotFound(name)
            if self.in_use(name):
                raise InUse(name)

            sources = {k: v for k, v in session.sources.items() if k != name}
            self._commit(session, sources)

        logger.info("Removed data source %s", name)
        audit_event(self.home, "SOURCE_REMOVE", f"Data source removed: {name}")

    def list(self) -> list[DataSourceConfig]:
        """All data sources in insertion order, secrets redacted."""
        with self._lock:
            session = self._require_session()
            return [cfg.redacted() for cfg in session.sources.values()]

    def get(self, name: str) -> DataSourceConfig:
        """Unredacted config for the mount and connection-test paths.

        Raises:
            NotFound: If ``name`` is not registered.
        """
        with self._lock:
            session = self._require_session()
            cfg = session.sources.get(name)
            if cfg is None:
                raise NotFound(name)
            return cfg

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._require_session().sources

    def test_connection(self, config: DataSourceConfig) -> None:
        """Check that ``config`` can reach its endpoint. Nothing is stored.

        Raises:
            TransportError: If the endpoint rejects or cannot be reached.
        """
        self.object_store.test_connection(config)

    @property
    def object_store(self):
        if self._object_store is None:
            from .objectstore import S3ObjectStore

            self._object_store = S3ObjectStore()
        return self._object_store

    # -- serialized form (sync) ---------------------------------------------

    def export_blob(self) -> bytes:
        """The current encrypted vault, byte for byte as on disk."""
        with self._lock:
            return self._require_session().blob

    def replace_from_blob(self, blob: bytes, password: Optional[str] = None) -> int:
        """Replace the whole local vault with a foreign encrypted blob.

        The blob is decrypted with ``password`` (default: the session's
        master password) before anything local is touched.

        Returns:
            Number of data sources in the new vault.

        Raises:
            DecryptionFailed: Wrong password, tampered or malformed blob.
                The local vault is left untouched.
            InUse: The blob lacks a source that has an active mount.
                The local vault is left untouched.
        """
        with self._lock:
            session = self._require_session()
            secret = password if password is not None else session.password
            try:
                key, header, plaintext = open_blob(secret, blob)
                sources = _decode_payload(plaintext)
            except (AuthError, CorruptState) as exc:
                audit_event(self.home, "VAULT_REPLACE_FAILED", str(exc))
                raise DecryptionFailed(f"Cannot decrypt remote vault: {exc}") from exc

            dropped = [n for n in session.sources if n not in sources and self.in_use(n)]
            if dropped:
                audit_event(
                    self.home, "VAULT_REPLACE_FAILED",
                    f"Remote vault drops mounted sources: {', '.join(dropped)}",
                )
                raise InUse(dropped[0])

            atomic_write_bytes(self.path, blob)
            self._session = VaultSession(
                key, header.salt, header.params, secret, sources, blob
            )

        logger.info("Vault replaced from remote blob (%d data sources)", len(sources))
        audit_event(self.home, "VAULT_REPLACE", f"Vault replaced ({len(sources)} sources)")
        return len(sources)

    # -- internals -----------------------------------------------------------

    def _require_session(self) -> VaultSession:
        if self._session is None:
            raise VaultLocked("Vault is locked; unlock it with the master password first")
        return self._session

    def _read_file(self) -> bytes:
        if not self.path.exists():
            raise CorruptState(f"No vault at {self.path}; initialize one first")
        try:
            return self.path.read_bytes()
        except OSError as exc:
            raise CorruptState(f"Cannot read vault {self.path}: {exc}") from exc

    def _commit(self, session: VaultSession, sources: dict[str, DataSourceConfig]) -> None:
        """Persist ``sources`` and only then swap them into the session."""
        staged = VaultSession(
            session.key, session.salt, session.params, session.password, sources, b""
        )
        self._persist(staged)
        session.sources = staged.sources
        session.blob = staged.blob

    def _persist(self, session: VaultSession) -> None:
        blob = seal(session.key, session.salt, session.params, _encode_payload(session.sources))
        atomic_write_bytes(self.path, blob)
        session.blob = blob


def _check_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Master password must be at least {MIN_PASSWORD_LENGTH} characters"
        )
