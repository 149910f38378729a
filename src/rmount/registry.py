"""
Mount registry -- which names are mounted where, by which process.

Kept in memory for the supervisor and mirrored to ``mounts.json`` after
every change so a restarted process can pick up its own leftovers.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Optional

from .atomic import atomic_write_text
from .errors import CorruptState
from .models import MountRecord, MountStatus

logger = logging.getLogger("rmount.registry")


class MountRegistry:
    """Thread-safe table of :class:`MountRecord` keyed by name.

    Args:
        path: Registry file (``~/.rmount/mounts.json``).
    """

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()
        self._records: dict[str, MountRecord] = self._load()

    def _load(self) -> dict[str, MountRecord]:
        """Read the registry file.

        Raises:
            CorruptState: If the file exists but cannot be parsed.
        """
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            records = {
                name: MountRecord.model_validate(raw)
                for name, raw in data.get("mounts", {}).items()
            }
        except (OSError, json.JSONDecodeError, ValueError, AttributeError) as exc:
            raise CorruptState(f"Mount registry {self.path} is unreadable: {exc}") from exc
        logger.debug("Loaded %d mount records from %s", len(records), self.path)
        return records

    def _save(self) -> None:
        data = {
            "mounts": {
                name: rec.model_dump(mode="json")
                for name, rec in self._records.items()
            }
        }
        atomic_write_text(self.path, json.dumps(data, indent=2))

    def get(self, name: str) -> Optional[MountRecord]:
        with self._lock:
            rec = self._records.get(name)
            return rec.model_copy() if rec else None

    def put(self, record: MountRecord) -> MountRecord:
        with self._lock:
            self._records[record.name] = record
            self._save()
            return record.model_copy()

    def remove(self, name: str) -> bool:
        with self._lock:
            if self._records.pop(name, None) is None:
                return False
            self._save()
            return True

    def all(self) -> list[MountRecord]:
        with self._lock:
            return [rec.model_copy() for rec in self._records.values()]

    def is_active(self, name: str) -> bool:
        """True if ``name`` has a record in any state but unmounted."""
        with self._lock:
            rec = self._records.get(name)
            return rec is not None and rec.status != MountStatus.UNMOUNTED
