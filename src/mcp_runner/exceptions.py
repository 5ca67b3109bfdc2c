"""Custom exceptions for the MCP runner."""


class RunnerError(Exception):
    """Base exception for runner errors."""

    pass


class ConfigCorruptError(RunnerError):
    """Raised when the persisted config document cannot be parsed."""

    pass


class ConfigWriteError(RunnerError):
    """Raised when the config document cannot be written to disk."""

    pass


class ManifestWriteError(RunnerError):
    """Raised when the process manifest cannot be written to disk."""

    pass


class SpawnFailedError(RunnerError):
    """Raised when a server process could not be started."""

    pass


class CredentialMissingError(RunnerError):
    """Raised when a server needs a credential that no source provides."""

    def __init__(self, server: str, credential: str):
        super().__init__(f"No value for '{credential}' required by server '{server}'")
        self.server = server
        self.credential = credential
