"""Credential lookup across environment, config document and shell profiles."""

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import structlog

from .config import ServerDefinition
from .environment import Environment
from .exceptions import CredentialMissingError
from .store import ConfigDocument

logger = structlog.get_logger()

PLACEHOLDER_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

SHELL_PROFILES = (".zshrc", ".bashrc", ".bash_profile")


class CredentialSource(Protocol):
    """A single place a secret might be found."""

    label: str

    def lookup(self) -> str | None:
        """Return the secret, or None if this source has none."""
        ...


@dataclass
class EnvironmentSource:
    """Reads one environment variable."""

    environment: Environment
    name: str

    @property
    def label(self) -> str:
        return f"env:{self.name}"

    def lookup(self) -> str | None:
        return self.environment.get(self.name)


@dataclass
class ConfigDocumentSource:
    """Reads a value embedded in a server's ``env`` block of the config document."""

    document: ConfigDocument
    server: str
    keys: tuple[str, ...]

    @property
    def label(self) -> str:
        return f"config:{self.server}"

    def lookup(self) -> str | None:
        entry = self.document.get_server(self.server)
        if entry is None:
            return None
        env = entry.get("env")
        if not isinstance(env, dict):
            return None
        for key in self.keys:
            value = env.get(key)
            # An unexpanded placeholder is not a credential.
            if isinstance(value, str) and value and not PLACEHOLDER_RE.search(value):
                return value
        return None


@dataclass
class ShellProfileSource:
    """Scrapes ``export NAME=value`` lines out of shell profile files.

    This is a heuristic: it only understands single-line exports with an
    optionally quoted literal value.
    """

    paths: list[Path]
    names: tuple[str, ...]
    _patterns: list[re.Pattern] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._patterns = [
            re.compile(
                rf"^\s*export\s+{re.escape(name)}=(['\"]?)([^'\"\s]+)\1\s*$",
                re.MULTILINE,
            )
            for name in self.names
        ]

    @property
    def label(self) -> str:
        return "shell-profile"

    def lookup(self) -> str | None:
        for path in self.paths:
            try:
                content = path.read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            for pattern in self._patterns:
                match = pattern.search(content)
                if match:
                    logger.debug("credential_profile_match", path=str(path))
                    return match.group(2)
        return None


class CredentialResolver:
    """Returns the first value found in an ordered list of sources.

    Never raises for a missing credential; ``has_credential`` and
    ``source_label`` record the outcome of the last ``resolve`` call.
    """

    def __init__(self) -> None:
        self.has_credential = False
        self.source_label: str | None = None

    def resolve(self, sources: Iterable[CredentialSource]) -> str | None:
        self.has_credential = False
        self.source_label = None

        for source in sources:
            value = source.lookup()
            if value:
                self.has_credential = True
                self.source_label = source.label
                logger.info("credential_found", source=source.label)
                return value

        logger.info("credential_not_found")
        return None


@dataclass(frozen=True)
class CredentialSpec:
    """A credential with synonymous variable names and the server that embeds it."""

    names: tuple[str, ...]
    server: str


GITHUB_TOKEN = CredentialSpec(
    names=("GITHUB_TOKEN", "GITHUB_PERSONAL_ACCESS_TOKEN"),
    server="github",
)


def default_sources(
    spec: CredentialSpec,
    environment: Environment,
    document: ConfigDocument,
) -> list[CredentialSource]:
    """Lookup order: each env name, then the config document, then shell profiles."""
    sources: list[CredentialSource] = [
        EnvironmentSource(environment, name) for name in spec.names
    ]
    sources.append(ConfigDocumentSource(document, spec.server, spec.names))
    sources.append(
        ShellProfileSource(
            paths=[environment.home / profile for profile in SHELL_PROFILES],
            names=spec.names,
        )
    )
    return sources


def resolve_credential(
    spec: CredentialSpec,
    environment: Environment,
    document: ConfigDocument,
    resolver: CredentialResolver | None = None,
) -> str | None:
    """Resolve ``spec`` and mirror the value into every synonym in ``environment``."""
    resolver = resolver or CredentialResolver()
    value = resolver.resolve(default_sources(spec, environment, document))
    if value:
        environment.mirror(spec.names, value)
    return value


def required_credentials(definition: ServerDefinition) -> set[str]:
    """Names referenced by ``${NAME}`` placeholders in a definition."""
    names: set[str] = set()
    for text in [*definition.args, *definition.env.values()]:
        names.update(PLACEHOLDER_RE.findall(text))
    return names


def fill_placeholders(
    definition: ServerDefinition,
    values: Mapping[str, str],
) -> ServerDefinition:
    """Return a copy of ``definition`` with every ``${NAME}`` replaced.

    Raises:
        CredentialMissingError: If a referenced name has no non-empty value.
    """
    for name in sorted(required_credentials(definition)):
        if not values.get(name):
            raise CredentialMissingError(definition.name, name)

    def substitute(text: str) -> str:
        return PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], text)

    return definition.model_copy(
        update={
            "args": [substitute(arg) for arg in definition.args],
            "env": {key: substitute(value) for key, value in definition.env.items()},
        }
    )


def strip_placeholders(definition: ServerDefinition) -> ServerDefinition:
    """Drop env entries whose value still contains a placeholder."""
    env = {
        key: value
        for key, value in definition.env.items()
        if not PLACEHOLDER_RE.search(value)
    }
    return definition.model_copy(update={"env": env})
