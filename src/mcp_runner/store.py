"""Persistent IDE config document (``mcp.json``).

The document is owned by the IDE and the user; the runner only adds or
updates the server entries it generates and must round-trip everything else
unchanged.
"""

import json
import os
import shutil
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from .config import ServerDefinition
from .exceptions import ConfigCorruptError, ConfigWriteError

logger = structlog.get_logger()

SERVERS_KEY = "mcpServers"

# Fields of a server entry owned by the runner; everything else belongs to the user.
MANAGED_FIELDS = ("command", "args", "env", "type")


@dataclass
class ConfigDocument:
    """The parsed config document plus load diagnostics."""

    data: dict[str, Any] = field(default_factory=dict)
    corrupt: bool = False
    error: str | None = None

    @property
    def servers(self) -> dict[str, Any]:
        """The ``mcpServers`` mapping (empty if absent)."""
        servers = self.data.get(SERVERS_KEY)
        return servers if isinstance(servers, dict) else {}

    def get_server(self, name: str) -> dict[str, Any] | None:
        entry = self.servers.get(name)
        return entry if isinstance(entry, dict) else None

    def definitions(self) -> dict[str, ServerDefinition]:
        """Parse server entries, skipping ones that are not valid definitions."""
        definitions = {}
        for name, entry in self.servers.items():
            if not isinstance(entry, dict):
                logger.warning("config_entry_skipped", name=name, reason="not an object")
                continue
            try:
                definitions[name] = ServerDefinition.from_entry(name, entry)
            except ValidationError as e:
                logger.warning(
                    "config_entry_skipped",
                    name=name,
                    reason=str(e.errors()[0]["msg"]),
                )
        return definitions


class ConfigStore:
    """Loads, merges and atomically saves the config document."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> ConfigDocument:
        """Read the persisted document.

        A missing file yields an empty document. Unparseable content (including
        an empty file) also yields an empty document, flagged ``corrupt`` with a
        warning, so callers can continue.
        """
        if not self.path.exists():
            logger.debug("config_missing", path=str(self.path))
            return ConfigDocument()

        try:
            data = self._parse(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ConfigCorruptError) as e:
            logger.warning("config_corrupt", path=str(self.path), error=str(e))
            return ConfigDocument(corrupt=True, error=str(e))

        doc = ConfigDocument(data=data)
        logger.debug("config_loaded", path=str(self.path), servers=len(doc.servers))
        return doc

    @staticmethod
    def _parse(text: str) -> dict[str, Any]:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigCorruptError(f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigCorruptError("top-level value is not an object")
        servers = data.get(SERVERS_KEY)
        if servers is not None and not isinstance(servers, dict):
            raise ConfigCorruptError(f"'{SERVERS_KEY}' is not an object")
        return data

    @staticmethod
    def merge(
        existing: ConfigDocument,
        incoming: Mapping[str, ServerDefinition] | Iterable[ServerDefinition],
    ) -> ConfigDocument:
        """Merge server definitions into a copy of ``existing``.

        New names are inserted. For names already present only the managed
        fields (``command``, ``args``, ``env``, ``type``) are overwritten; any
        other key stored under that name is kept. Top-level keys and servers
        not mentioned in ``incoming`` are untouched. Merging the same input
        twice gives the same result as merging it once.
        """
        if isinstance(incoming, Mapping):
            definitions = list(incoming.values())
        else:
            definitions = list(incoming)

        data = deepcopy(existing.data)
        servers = data.get(SERVERS_KEY)
        if not isinstance(servers, dict):
            servers = {}
            data[SERVERS_KEY] = servers

        for definition in definitions:
            entry = servers.get(definition.name)
            if not isinstance(entry, dict):
                entry = {}
                servers[definition.name] = entry
            entry.update(definition.to_entry())

        return ConfigDocument(data=data)

    def preserve_corrupt(self) -> Path | None:
        """Copy an unparseable config aside before it is overwritten."""
        if not self.path.exists():
            return None
        backup = self.path.with_name(f"{self.path.name}.corrupt")
        try:
            shutil.copy2(self.path, backup)
        except OSError as e:
            raise ConfigWriteError(f"Could not back up corrupt config {self.path}: {e}") from e
        logger.warning("config_corrupt_preserved", backup=str(backup))
        return backup

    def save(self, doc: ConfigDocument) -> None:
        """Write the document with sorted keys via temp file and rename.

        Raises:
            ConfigWriteError: If the directory or file cannot be written.
        """
        text = json.dumps(doc.data, indent=2, sort_keys=True) + "\n"
        try:
            atomic_write_text(self.path, text)
        except OSError as e:
            raise ConfigWriteError(f"Could not write config {self.path}: {e}") from e
        logger.info("config_saved", path=str(self.path), servers=len(doc.servers))


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` so readers never see a partial file.

    Raises:
        OSError: If the write or rename fails.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        tmp_path.replace(path)
    finally:
        tmp_path.unlink(missing_ok=True)
