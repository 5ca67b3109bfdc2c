"""Explicit process environment passed to every component."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class Environment:
    """Environment variables and well-known directories for one invocation.

    Components receive this instead of reading ``os.environ`` or
    ``Path.home()`` directly, so tests can run against a temp directory.
    """

    variables: dict[str, str] = field(default_factory=dict)
    home: Path = field(default_factory=Path.home)
    cwd: Path = field(default_factory=Path.cwd)

    @classmethod
    def from_os(cls) -> "Environment":
        """Snapshot the current process environment."""
        return cls(
            variables=dict(os.environ),
            home=Path.home(),
            cwd=Path.cwd(),
        )

    def get(self, name: str) -> str | None:
        """Get a variable, treating empty strings as unset."""
        value = self.variables.get(name)
        return value or None

    def mirror(self, names: list[str] | tuple[str, ...], value: str) -> None:
        """Set every name in ``names`` to ``value`` where it is unset.

        Used to keep synonymous variables (e.g. ``GITHUB_TOKEN`` and
        ``GITHUB_PERSONAL_ACCESS_TOKEN``) in sync once either is known.
        """
        for name in names:
            if not self.get(name):
                self.variables[name] = value

    def resolve_path(self, path: str | Path) -> Path:
        """Expand ``~`` against ``home`` and relative paths against ``cwd``."""
        text = str(path)
        if text == "~" or text.startswith("~/"):
            return self.home / text[2:]
        resolved = Path(text)
        if not resolved.is_absolute():
            resolved = self.cwd / resolved
        return resolved
