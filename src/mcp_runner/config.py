"""Runner configuration from TOML files and server definitions."""

import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

STDIO = "stdio"
TCP_PREFIX = "tcp:"


class ServerDefinition(BaseModel):
    """One logical helper server the runner manages.

    Immutable for the duration of a run. ``match`` is only used to find the
    server in the process table and is never written to the IDE config.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    transport: str = STDIO  # "stdio" or "tcp:<port>"
    match: str | None = None

    @field_validator("transport")
    @classmethod
    def _check_transport(cls, value: str) -> str:
        if value == STDIO:
            return value
        if value.startswith(TCP_PREFIX):
            port = value[len(TCP_PREFIX):]
            if port.isdigit() and 0 < int(port) < 65536:
                return value
        raise ValueError(f"transport must be 'stdio' or 'tcp:<port>', got '{value}'")

    @property
    def port(self) -> int | None:
        """TCP port for ``tcp:<port>`` servers, None for stdio."""
        if self.transport.startswith(TCP_PREFIX):
            return int(self.transport[len(TCP_PREFIX):])
        return None

    @property
    def process_pattern(self) -> str:
        """Command-line substring used to find this server's processes.

        Defaults to the basename of the first package-like argument
        (``@modelcontextprotocol/server-github`` -> ``server-github``), which
        matches both the npx invocation and the installed binary name. Two
        servers sharing that substring cannot be told apart.
        """
        if self.match:
            return self.match
        for arg in self.args:
            if arg.startswith("-"):
                continue
            if "/" in arg and not arg.startswith("@"):
                continue  # a path argument, not a package
            return arg.rsplit("/", 1)[-1]
        return Path(self.command).name

    def to_entry(self) -> dict[str, Any]:
        """Render the fields persisted under ``mcpServers.<name>``."""
        return {
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
            "type": self.transport,
        }

    @classmethod
    def from_entry(cls, name: str, entry: dict[str, Any]) -> "ServerDefinition":
        """Parse a persisted ``mcpServers.<name>`` entry.

        Raises:
            pydantic.ValidationError: If the entry is missing ``command`` or
                has fields of the wrong type.
        """
        return cls(
            name=name,
            command=entry.get("command"),
            args=entry.get("args") or [],
            env=entry.get("env") or {},
            transport=entry.get("type") or STDIO,
        )


class ServerConfig(BaseModel):
    """Extra server declared in the runner TOML file."""

    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    transport: str = STDIO
    match: str | None = None

    def to_definition(self, name: str) -> ServerDefinition:
        return ServerDefinition(name=name, **self.model_dump())


class RunnerSettings(BaseModel):
    """Runner settings."""

    config_path: str = "~/.cursor/mcp.json"
    log_dir: str = "mcp-logs"
    manifest_path: str = "mcp-pids.json"
    workspace_dir: str | None = None
    probe_timeout_ms: int = 2000
    stop_timeout_ms: int = 5000
    startup_grace_ms: int = 500
    include_defaults: bool = True


class Config(BaseModel):
    """Complete runner configuration."""

    runner: RunnerSettings = Field(default_factory=RunnerSettings)
    servers: dict[str, ServerConfig] = Field(default_factory=dict)

    def server_definitions(self) -> list[ServerDefinition]:
        """Definitions for the servers declared in this config file."""
        return [
            server.to_definition(name) for name, server in self.servers.items()
        ]


def load_config(config_path: Path) -> Config:
    """Load configuration from a TOML file.

    Args:
        config_path: Path to the TOML config file.

    Returns:
        Parsed Config object.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        tomllib.TOMLDecodeError: If TOML is malformed.
    """
    with open(config_path, "rb") as f:
        data = tomllib.load(f)
    return Config.model_validate(data)


def find_config(name: str) -> Path:
    """Find a config file by name.

    Searches in the following order:
    1. Exact path if name contains path separator or ends in .toml
    2. configs/{name}.toml
    3. configs/{name}

    Args:
        name: Config name or path.

    Returns:
        Path to the config file.

    Raises:
        FileNotFoundError: If config file is not found.
    """
    if "/" in name or name.endswith(".toml"):
        path = Path(name)
        if path.exists():
            return path
        raise FileNotFoundError(f"Config file not found: {name}")

    configs_dir = _configs_dir()

    config_path = configs_dir / f"{name}.toml"
    if config_path.exists():
        return config_path

    config_path = configs_dir / name
    if config_path.exists():
        return config_path

    raise FileNotFoundError(
        f"Config '{name}' not found in {configs_dir}. "
        f"Available configs: {list_configs()}"
    )


def list_configs() -> list[str]:
    """List available config names."""
    configs_dir = _configs_dir()
    if not configs_dir.exists():
        return []
    return sorted(p.stem for p in configs_dir.glob("*.toml"))


def _configs_dir() -> Path:
    return Path(__file__).parent.parent.parent / "configs"
