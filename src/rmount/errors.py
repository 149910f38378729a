"""
Error taxonomy for rmount.

Every failure a caller can act on maps to one family below. The CLI
and any other front end only need to catch the family to decide how
to react: re-prompt (AuthError), retry later (ConflictError,
TransportError), fix input (ValidationError), or stop and inspect the
files on disk (CorruptState).
"""

from __future__ import annotations

from typing import Optional


class RMountError(Exception):
    """Base class for all rmount errors."""


# -- validation ----------------------------------------------------------


class ValidationError(RMountError, ValueError):
    """A field is missing or invalid. Reported immediately, never retried."""


class DuplicateName(ValidationError):
    """A data source with this name already exists."""

    def __init__(self, name: str):
        super().__init__(f"Data source '{name}' already exists")
        self.name = name


# -- authentication ------------------------------------------------------


class AuthError(RMountError):
    """The vault could not be opened with the given password."""


class InvalidPassword(AuthError):
    """Master password does not match the vault canary."""


class DecryptionFailed(AuthError):
    """A vault blob could not be decrypted with the available password."""


class VaultLocked(AuthError):
    """The vault has not been unlocked in this process."""


# -- lookup --------------------------------------------------------------


class NotFoundError(RMountError):
    """Unknown data source or mount name."""


class NotFound(NotFoundError):
    def __init__(self, name: str, what: str = "data source"):
        super().__init__(f"No {what} named '{name}'")
        self.name = name


# -- conflicts -----------------------------------------------------------


class ConflictError(RMountError):
    """Another operation holds the resource. Retry once it settles."""


class AlreadyInitialized(ConflictError):
    """A vault file already exists at the target path."""


class AlreadyMounted(ConflictError):
    def __init__(self, name: str):
        super().__init__(f"'{name}' is already mounted")
        self.name = name


class OperationInProgress(ConflictError):
    def __init__(self, name: str):
        super().__init__(f"A mount transition for '{name}' is already in progress")
        self.name = name


class InUse(ConflictError):
    def __init__(self, name: str):
        super().__init__(f"'{name}' has an active mount; unmount it first")
        self.name = name


# -- collaborators -------------------------------------------------------


class DriverError(RMountError):
    """The mount driver failed to start, stay up, or stop.

    The underlying exception (or driver output) is kept on ``cause``
    so it can be shown verbatim.
    """

    def __init__(self, message: str, cause: Optional[object] = None):
        super().__init__(message)
        self.cause = cause


class TransportError(RMountError):
    """Network failure talking to the object store or the blob store."""


class RemoteUnavailable(TransportError):
    """The remote blob store could not be reached. Recoverable."""


# -- on-disk state -------------------------------------------------------


class CorruptState(RMountError):
    """A file on disk is unreadable or has been tampered with.

    Distinct from AuthError: re-entering the password will not help.
    """


class CorruptVault(CorruptState):
    """The vault file failed structural or authentication checks."""
