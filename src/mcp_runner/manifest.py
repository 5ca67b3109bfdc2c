"""Durable record of the server processes this runner started."""

import json
from datetime import datetime, timezone
from pathlib import Path

import structlog
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .exceptions import ManifestWriteError
from .store import atomic_write_text

logger = structlog.get_logger()


class ManifestEntry(BaseModel):
    """A process started by some invocation of the runner."""

    name: str
    pid: int
    started_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


_ENTRIES = TypeAdapter(list[ManifestEntry])


class ProcessManifest:
    """Ordered list of manifest entries, persisted after every mutation.

    The runner exits while its servers keep running, so a later invocation
    finds them again through this file.
    """

    def __init__(self, path: Path):
        self.path = path
        self._entries: list[ManifestEntry] = []

    @property
    def entries(self) -> list[ManifestEntry]:
        return list(self._entries)

    def load(self) -> "ProcessManifest":
        """Read entries from disk; a missing or unreadable file yields none."""
        self._entries = []
        if not self.path.exists():
            return self

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            self._entries = _ENTRIES.validate_python(raw)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning("manifest_unreadable", path=str(self.path), error=str(e))
            self._entries = []

        return self

    def entries_for(self, name: str) -> list[ManifestEntry]:
        return [entry for entry in self._entries if entry.name == name]

    def names(self) -> list[str]:
        """Server names in first-seen order."""
        return list(dict.fromkeys(entry.name for entry in self._entries))

    def add(self, name: str, pid: int) -> ManifestEntry:
        entry = ManifestEntry(name=name, pid=pid)
        self._entries.append(entry)
        self.save()
        return entry

    def remove(self, name: str, pid: int | None = None) -> int:
        """Drop entries for ``name`` (optionally only ``pid``); returns count removed."""
        before = len(self._entries)
        self._entries = [
            entry
            for entry in self._entries
            if not (entry.name == name and (pid is None or entry.pid == pid))
        ]
        removed = before - len(self._entries)
        if removed:
            self.save()
        return removed

    def save(self) -> None:
        """Write the manifest atomically.

        Raises:
            ManifestWriteError: If the file cannot be written.
        """
        payload = [entry.model_dump() for entry in self._entries]
        try:
            atomic_write_text(self.path, json.dumps(payload, indent=2) + "\n")
        except OSError as e:
            raise ManifestWriteError(f"Could not write manifest {self.path}: {e}") from e
        logger.debug("manifest_saved", path=str(self.path), entries=len(payload))
