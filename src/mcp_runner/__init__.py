"""MCP Runner - configures, starts and stops the IDE's MCP helper servers."""

from .config import Config, RunnerSettings, ServerConfig, ServerDefinition, load_config, find_config
from .credentials import CredentialResolver, resolve_credential
from .environment import Environment
from .logs import LogManager
from .manager import ProcessSupervisor, Report, ServerState, ServerStatus
from .manifest import ManifestEntry, ProcessManifest
from .orchestrator import Orchestrator
from .probe import HealthProber
from .process import ProcessHandle, ProcessState, ServerProcess
from .store import ConfigDocument, ConfigStore

__all__ = [
    "Config",
    "RunnerSettings",
    "ServerConfig",
    "ServerDefinition",
    "load_config",
    "find_config",
    "CredentialResolver",
    "resolve_credential",
    "Environment",
    "LogManager",
    "ProcessSupervisor",
    "Report",
    "ServerState",
    "ServerStatus",
    "ManifestEntry",
    "ProcessManifest",
    "Orchestrator",
    "HealthProber",
    "ProcessHandle",
    "ProcessState",
    "ServerProcess",
    "ConfigDocument",
    "ConfigStore",
]
