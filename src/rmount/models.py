"""
Pydantic models for data sources, mounts, and remote listings.

Fixed schemas with explicit optional fields: whatever comes off disk or
over the wire is validated here before the rest of the package sees it.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import pydantic
from pydantic import BaseModel, Field, SecretStr, field_validator

from .errors import ValidationError

REDACTED = "********"
DEFAULT_REGION = "us-east-1"

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DataSourceConfig(BaseModel):
    """One S3-compatible endpoint and the credentials to reach it.

    ``name`` doubles as the mount directory name and the rclone remote
    name, so it is restricted to a filesystem-safe alphabet.
    """

    id: str = ""
    name: str
    endpoint: Optional[str] = None
    access_key: str
    secret_key: SecretStr
    region: str = DEFAULT_REGION
    bucket: Optional[str] = None
    description: str = ""

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        v = v.strip()
        if not _NAME_RE.match(v):
            raise ValueError(
                "name must start with a letter or digit and contain only "
                "letters, digits, '.', '_' or '-' (max 64 chars)"
            )
        return v

    @field_validator("endpoint", "bucket", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v.strip() if isinstance(v, str) else v

    @field_validator("endpoint")
    @classmethod
    def _check_endpoint(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError("endpoint must be an http:// or https:// URL")
        return v

    @field_validator("access_key")
    @classmethod
    def _check_access_key(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("access_key is required")
        return v.strip()

    @field_validator("secret_key")
    @classmethod
    def _check_secret_key(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value():
            raise ValueError("secret_key is required")
        return v

    @field_validator("region", mode="before")
    @classmethod
    def _default_region(cls, v: Any) -> Any:
        if v is None or (isinstance(v, str) and not v.strip()):
            return DEFAULT_REGION
        return v

    def redacted(self) -> "DataSourceConfig":
        """Copy of this config safe to hand to the presentation layer."""
        return self.model_copy(update={"secret_key": SecretStr(REDACTED)})

    def to_payload(self) -> dict[str, Any]:
        """Plain dict including the real secret, for the encrypted vault only."""
        data = self.model_dump(mode="json")
        data["secret_key"] = self.secret_key.get_secret_value()
        return data


def parse_config(data: dict[str, Any]) -> DataSourceConfig:
    """Build a DataSourceConfig, raising rmount's ValidationError on bad input.

    Args:
        data: Raw field values (from a form, CLI options, or JSON).

    Returns:
        Validated DataSourceConfig.

    Raises:
        ValidationError: With every field problem joined in the message.
    """
    try:
        return DataSourceConfig.model_validate(data)
    except pydantic.ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValidationError(problems) from None


class MountStatus(str, Enum):
    """Lifecycle state of a mount."""

    UNMOUNTED = "unmounted"
    MOUNTING = "mounting"
    MOUNTED = "mounted"
    UNMOUNTING = "unmounting"
    ERROR = "error"


class MountRecord(BaseModel):
    """Bookkeeping for one mount, persisted across restarts."""

    name: str
    remote_path: str = ""
    local_path: str
    pid: Optional[int] = None
    status: MountStatus = MountStatus.UNMOUNTED
    error: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def settled(self) -> bool:
        """True when no transition is under way."""
        return self.status in (
            MountStatus.MOUNTED,
            MountStatus.ERROR,
            MountStatus.UNMOUNTED,
        )


class RemoteEntry(BaseModel):
    """One file or directory in a remote listing."""

    name: str
    path: str
    size: int = 0
    mod_time: Optional[datetime] = None
    is_dir: bool = False
    mime_type: str = ""
