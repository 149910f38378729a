"""
Security audit trail.

Append-only JSONL log of vault, mount and sync events. Each line is one
AuditEntry: timestamp, event type, detail, and the host that wrote it.
Entries name data sources and paths, never credentials.
"""

from __future__ import annotations

import json
import logging
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("rmount.audit")

AUDIT_DIR = "security"
AUDIT_LOG_NAME = "audit.log"


class AuditEntry(BaseModel):
    """A single structured audit log entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    event_type: str
    detail: str
    host: str = Field(default_factory=socket.gethostname)
    metadata: Optional[dict] = None


def audit_event(
    home: Path,
    event_type: str,
    detail: str,
    metadata: Optional[dict] = None,
) -> Optional[AuditEntry]:
    """Append an event to ``<home>/security/audit.log``.

    Audit failures are logged and swallowed; they must never block the
    operation being audited.

    Args:
        home: rmount home directory.
        event_type: Category, e.g. VAULT_INIT, SOURCE_ADD, MOUNT, SYNC_PUSH.
        detail: Human-readable description.
        metadata: Optional structured extras.

    Returns:
        The entry written, or None if the log could not be written.
    """
    entry = AuditEntry(event_type=event_type, detail=detail, metadata=metadata)
    try:
        security_dir = home / AUDIT_DIR
        security_dir.mkdir(parents=True, exist_ok=True)
        with open(security_dir / AUDIT_LOG_NAME, "a", encoding="utf-8") as fh:
            fh.write(entry.model_dump_json() + "\n")
    except OSError as exc:
        logger.warning("Could not write audit entry %s: %s", event_type, exc)
        return None
    return entry


def read_audit_log(home: Path, limit: int = 50) -> list[AuditEntry]:
    """Return the most recent audit entries, oldest first."""
    audit_log = home / AUDIT_DIR / AUDIT_LOG_NAME
    if not audit_log.exists():
        return []

    entries: list[AuditEntry] = []
    for line in audit_log.read_text(encoding="utf-8").splitlines()[-limit:]:
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(AuditEntry(**json.loads(line)))
        except (json.JSONDecodeError, ValueError):
            continue
    return entries
