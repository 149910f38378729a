"""Tests for the CredentialVault."""

from __future__ import annotations

import json
import stat
import threading
from pathlib import Path

import pytest

from rmount.crypto import derive_key, new_salt, seal
from rmount.errors import (
    AlreadyInitialized,
    AuthError,
    CorruptState,
    CorruptVault,
    DecryptionFailed,
    DuplicateName,
    InUse,
    InvalidPassword,
    NotFound,
    TransportError,
    ValidationError,
    VaultLocked,
)
from rmount.models import REDACTED
from rmount.vault import CredentialVault

from conftest import FAST_KDF, PASSWORD, make_config


def reopen(vault: CredentialVault) -> CredentialVault:
    """A second vault object on the same file, as after a restart."""
    return CredentialVault(vault.path, kdf=FAST_KDF, home=vault.home)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    """initialize / unlock / lock / change_password."""

    def test_initialize_creates_private_file(self, vault: CredentialVault) -> None:
        assert vault.is_initialized
        assert vault.is_unlocked
        assert stat.S_IMODE(vault.path.stat().st_mode) == 0o600

    def test_initialize_twice_fails(self, vault: CredentialVault) -> None:
        with pytest.raises(AlreadyInitialized):
            reopen(vault).initialize(PASSWORD)

    def test_short_password_rejected(self, tmp_home: Path) -> None:
        v = CredentialVault(tmp_home / "vault.enc", kdf=FAST_KDF, home=tmp_home)
        with pytest.raises(ValidationError):
            v.initialize("short")
        assert not v.is_initialized

    def test_unlock_after_restart(self, vault: CredentialVault) -> None:
        """Unlocking a fresh instance returns the identical unredacted config."""
        original = make_config(secret_key="SK-123")
        vault.add(original)
        stored = vault.get("minio-1")

        again = reopen(vault)
        again.unlock(PASSWORD)
        assert again.get("minio-1") == stored
        assert again.get("minio-1").secret_key.get_secret_value() == "SK-123"

    def test_wrong_password_returns_nothing(self, vault: CredentialVault) -> None:
        vault.add(make_config())
        again = reopen(vault)
        with pytest.raises(InvalidPassword):
            again.unlock("wrong password!")
        assert not again.is_unlocked
        with pytest.raises(VaultLocked):
            again.list()

    def test_wrong_password_is_auth_error(self, vault: CredentialVault) -> None:
        with pytest.raises(AuthError):
            reopen(vault).unlock("wrong password!")

    def test_unlock_missing_vault(self, tmp_home: Path) -> None:
        v = CredentialVault(tmp_home / "nope.enc", kdf=FAST_KDF, home=tmp_home)
        with pytest.raises(CorruptState):
            v.unlock(PASSWORD)

    def test_damaged_file_is_corrupt_not_auth(self, vault: CredentialVault) -> None:
        """A damaged file is CorruptVault, so re-entering the password is pointless."""
        data = bytearray(vault.path.read_bytes())
        data[-3] ^= 0xFF
        vault.path.write_bytes(bytes(data))
        with pytest.raises(CorruptVault):
            reopen(vault).unlock(PASSWORD)

    def test_lock_drops_session(self, vault: CredentialVault) -> None:
        vault.lock()
        assert not vault.is_unlocked
        with pytest.raises(VaultLocked):
            vault.add(make_config())

    def test_change_password(self, vault: CredentialVault) -> None:
        vault.add(make_config())
        vault.change_password(PASSWORD, "a brand new pass")

        with pytest.raises(InvalidPassword):
            reopen(vault).unlock(PASSWORD)
        again = reopen(vault)
        again.unlock("a brand new pass")
        assert [c.name for c in again.list()] == ["minio-1"]

    def test_change_password_checks_old(self, vault: CredentialVault) -> None:
        with pytest.raises(InvalidPassword):
            vault.change_password("not it at all", "a brand new pass")


# ---------------------------------------------------------------------------
# Registry operations
# ---------------------------------------------------------------------------


class TestSources:
    """add / update / remove / list / get."""

    def test_add_then_list_redacts(self, vault: CredentialVault) -> None:
        returned = vault.add(make_config())
        assert returned.id
        assert returned.secret_key.get_secret_value() == REDACTED

        listed = vault.list()
        assert len(listed) == 1
        cfg = listed[0]
        assert cfg.name == "minio-1"
        assert cfg.endpoint == "https://minio.local"
        assert cfg.access_key == "AK"
        assert cfg.region == "us-east-1"
        assert cfg.bucket is None
        assert cfg.secret_key.get_secret_value() == REDACTED

    def test_secret_not_on_disk_in_clear(self, vault: CredentialVault) -> None:
        vault.add(make_config(secret_key="very-distinctive-secret"))
        raw = vault.path.read_bytes()
        assert b"very-distinctive-secret" not in raw
        assert b"minio-1" not in raw

    def test_duplicate_name(self, vault: CredentialVault) -> None:
        vault.add(make_config())
        with pytest.raises(DuplicateName):
            vault.add(make_config())

    def test_list_keeps_insertion_order(self, vault: CredentialVault) -> None:
        for name in ("zeta", "alpha", "mid"):
            vault.add(make_config(name))
        assert [c.name for c in vault.list()] == ["zeta", "alpha", "mid"]

    def test_update_keeps_id(self, vault: CredentialVault) -> None:
        added = vault.add(make_config())
        vault.update("minio-1", make_config(region="eu-west-1"))
        cfg = vault.get("minio-1")
        assert cfg.id == added.id
        assert cfg.region == "eu-west-1"

    def test_update_rename_keeps_position(self, vault: CredentialVault) -> None:
        for name in ("a", "b", "c"):
            vault.add(make_config(name))
        vault.update("b", make_config("bee"))
        assert [c.name for c in vault.list()] == ["a", "bee", "c"]
        with pytest.raises(NotFound):
            vault.get("b")

    def test_update_rename_onto_existing(self, vault: CredentialVault) -> None:
        vault.add(make_config("a"))
        vault.add(make_config("b"))
        with pytest.raises(DuplicateName):
            vault.update("a", make_config("b"))

    def test_update_unknown(self, vault: CredentialVault) -> None:
        with pytest.raises(NotFound):
            vault.update("ghost", make_config("ghost"))

    def test_remove(self, vault: CredentialVault) -> None:
        vault.add(make_config())
        vault.remove("minio-1")
        assert vault.list() == []
        assert not vault.exists("minio-1")

    def test_remove_unknown(self, vault: CredentialVault) -> None:
        with pytest.raises(NotFound):
            vault.remove("ghost")

    def test_remove_and_update_blocked_while_in_use(self, vault: CredentialVault) -> None:
        """A source with an active mount cannot be changed until it is unmounted."""
        active = {"minio-1"}
        vault.in_use = lambda name: name in active
        vault.add(make_config())

        with pytest.raises(InUse):
            vault.remove("minio-1")
        with pytest.raises(InUse):
            vault.update("minio-1", make_config(region="eu-west-1"))

        active.clear()
        vault.remove("minio-1")
        assert vault.list() == []

    def test_failed_write_leaves_session_unchanged(self, vault: CredentialVault, monkeypatch) -> None:
        vault.add(make_config("a"))

        def boom(*args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr("rmount.vault.atomic_write_bytes", boom)
        with pytest.raises(OSError):
            vault.add(make_config("b"))
        assert [c.name for c in vault.list()] == ["a"]

    def test_concurrent_adds_all_persist(self, vault: CredentialVault) -> None:
        names = [f"src-{i}" for i in range(8)]
        threads = [threading.Thread(target=vault.add, args=(make_config(n),)) for n in names]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        again = reopen(vault)
        again.unlock(PASSWORD)
        assert sorted(c.name for c in again.list()) == sorted(names)


class TestConnection:
    """test_connection delegates to the object store and stores nothing."""

    def test_success(self, vault: CredentialVault, object_store) -> None:
        vault.test_connection(make_config("good"))
        assert object_store.tested == ["good"]
        assert vault.list() == []

    def test_failure(self, vault: CredentialVault) -> None:
        with pytest.raises(TransportError):
            vault.test_connection(make_config("bad-endpoint"))


# ---------------------------------------------------------------------------
# Blob exchange
# ---------------------------------------------------------------------------


class TestBlobs:
    """export_blob / replace_from_blob."""

    def test_export_matches_file(self, vault: CredentialVault) -> None:
        vault.add(make_config())
        assert vault.export_blob() == vault.path.read_bytes()

    def test_replace_from_blob(self, vault: CredentialVault, tmp_path: Path) -> None:
        other = CredentialVault(tmp_path / "other.enc", kdf=FAST_KDF, home=tmp_path)
        other.initialize(PASSWORD)
        other.add(make_config("remote-one"))

        assert vault.replace_from_blob(other.export_blob()) == 1
        assert [c.name for c in vault.list()] == ["remote-one"]
        assert vault.path.read_bytes() == other.path.read_bytes()

    def test_replace_with_other_password_leaves_vault(self, vault: CredentialVault) -> None:
        vault.add(make_config())
        before = vault.path.read_bytes()

        salt = new_salt()
        key = derive_key("someone else entirely", salt, FAST_KDF)
        foreign = seal(key, salt, FAST_KDF, json.dumps({"version": 1, "data_sources": []}).encode())

        with pytest.raises(DecryptionFailed):
            vault.replace_from_blob(foreign)
        assert vault.path.read_bytes() == before
        assert [c.name for c in vault.list()] == ["minio-1"]

    def test_replace_with_garbage(self, vault: CredentialVault) -> None:
        with pytest.raises(DecryptionFailed):
            vault.replace_from_blob(b"definitely not a vault")

    def test_replace_keeps_mounted_source(self, vault: CredentialVault, tmp_path: Path) -> None:
        vault.add(make_config("minio-1"))
        vault.add(make_config("idle"))
        vault.in_use = lambda name: name == "minio-1"
        before = vault.path.read_bytes()

        other = CredentialVault(tmp_path / "other.enc", kdf=FAST_KDF, home=tmp_path)
        other.initialize(PASSWORD)
        other.add(make_config("remote-one"))

        with pytest.raises(InUse, match="minio-1"):
            vault.replace_from_blob(other.export_blob())
        assert vault.path.read_bytes() == before
        assert [c.name for c in vault.list()] == ["minio-1", "idle"]

    def test_replace_may_drop_unmounted_sources(self, vault: CredentialVault, tmp_path: Path) -> None:
        vault.add(make_config("minio-1"))
        vault.add(make_config("idle"))
        vault.in_use = lambda name: name == "minio-1"

        other = CredentialVault(tmp_path / "other.enc", kdf=FAST_KDF, home=tmp_path)
        other.initialize(PASSWORD)
        other.add(make_config("minio-1", region="eu-west-1"))

        assert vault.replace_from_blob(other.export_blob()) == 1
        assert vault.get("minio-1").region == "eu-west-1"
