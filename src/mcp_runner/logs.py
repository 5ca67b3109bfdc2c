"""Per-server stdout/stderr log files."""

import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import IO

import structlog

logger = structlog.get_logger()

BACKUP_PREFIX = "backup-"

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_name(name: str) -> str:
    return _UNSAFE.sub("_", name) or "server"


class LogManager:
    """Hands out append-mode log files and archives them on shutdown.

    Layout::

        <log_dir>/<name>-out.log
        <log_dir>/<name>-err.log
        <log_dir>/backup-<timestamp>/<name>-out.log
    """

    def __init__(self, log_dir: Path):
        self.log_dir = log_dir

    def paths_for(self, name: str) -> tuple[Path, Path]:
        safe = _safe_name(name)
        return (
            self.log_dir / f"{safe}-out.log",
            self.log_dir / f"{safe}-err.log",
        )

    def sinks_for(self, name: str) -> tuple[IO, IO]:
        """Open the stdout and stderr files for ``name`` in append mode.

        The caller owns the returned handles and must close them.
        """
        self.log_dir.mkdir(parents=True, exist_ok=True)
        out_path, err_path = self.paths_for(name)
        out_sink = open(out_path, "ab")
        try:
            err_sink = open(err_path, "ab")
        except OSError:
            out_sink.close()
            raise
        return out_sink, err_sink

    def archive_and_clear(self, name: str, backup_dir: Path | None = None) -> Path | None:
        """Copy ``name``'s log files into a timestamped backup, then truncate them.

        Returns the backup directory, or None if there was nothing to archive.
        """
        existing = [path for path in self.paths_for(name) if path.exists()]
        if not existing:
            return None

        backup_dir = backup_dir or self._new_backup_dir()
        backup_dir.mkdir(parents=True, exist_ok=True)
        for path in existing:
            shutil.copy2(path, backup_dir / path.name)
            path.write_bytes(b"")

        logger.info("logs_archived", name=name, backup_dir=str(backup_dir))
        return backup_dir

    def archive_all(self) -> Path | None:
        """Archive and truncate every live log file into one backup directory."""
        if not self.log_dir.is_dir():
            return None

        live = sorted(p for p in self.log_dir.glob("*.log") if p.is_file())
        if not live:
            return None

        backup_dir = self._new_backup_dir()
        backup_dir.mkdir(parents=True, exist_ok=True)
        for path in live:
            shutil.copy2(path, backup_dir / path.name)
            path.write_bytes(b"")

        logger.info("logs_archived", files=len(live), backup_dir=str(backup_dir))
        return backup_dir

    def _new_backup_dir(self) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        return self.log_dir / f"{BACKUP_PREFIX}{stamp}"
