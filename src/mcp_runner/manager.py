"""Process supervisor: spawns, stops and restarts the managed servers."""

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

import psutil
import structlog

from .config import ServerDefinition
from .environment import Environment
from .exceptions import SpawnFailedError
from .logs import LogManager
from .manifest import ProcessManifest
from .probe import HealthProber, cmdline_matches, find_processes
from .process import ProcessHandle, ServerProcess, terminate_pid

logger = structlog.get_logger()


class ServerState(str, Enum):
    """Per-server states reached during one invocation."""

    UNKNOWN = "unknown"
    PROBED = "probed"
    ALREADY_RUNNING = "already-running"
    NEEDS_START = "needs-start"
    STARTED = "started"
    FAILED = "failed"
    SKIPPED = "skipped"  # A required credential is missing
    STOPPED = "stopped"
    NOT_RUNNING = "not-running"
    ALIVE = "alive"
    DOWN = "down"


ERROR_STATES = frozenset({ServerState.FAILED, ServerState.DOWN})


@dataclass
class ServerStatus:
    """Terminal outcome for one server."""

    name: str
    state: ServerState = ServerState.UNKNOWN
    reason: str | None = None
    pid: int | None = None

    @property
    def is_error(self) -> bool:
        return self.state in ERROR_STATES

    def describe(self) -> str:
        if self.reason:
            return f"{self.state.value}: {self.reason}"
        return self.state.value


@dataclass
class Report:
    """Aggregate of per-server outcomes for one command."""

    statuses: dict[str, ServerStatus] = field(default_factory=dict)

    def record(self, status: ServerStatus) -> ServerStatus:
        self.statuses[status.name] = status
        return status

    def __getitem__(self, name: str) -> ServerStatus:
        return self.statuses[name]

    def __contains__(self, name: str) -> bool:
        return name in self.statuses

    def states(self) -> dict[str, str]:
        """Name -> state value, convenient for summaries and assertions."""
        return {name: status.state.value for name, status in self.statuses.items()}

    @property
    def failed(self) -> list[str]:
        return [name for name, status in self.statuses.items() if status.is_error]

    @property
    def exit_code(self) -> int:
        """0 if every server reached a non-error state, otherwise 1."""
        return 1 if self.failed else 0


@dataclass
class ProcessSupervisor:
    """Starts and stops detached server processes tracked by a manifest."""

    environment: Environment
    manifest: ProcessManifest
    log_manager: LogManager
    prober: HealthProber = field(default_factory=HealthProber)
    probe_timeout: float = 2.0
    stop_timeout: float = 5.0
    startup_grace: float = 0.5

    # Known server identities, used by stop() and the stop_all() sweep
    _definitions: dict[str, ServerDefinition] = field(default_factory=dict, init=False)

    def register(self, definitions: Iterable[ServerDefinition]) -> None:
        """Make servers known for pattern-based stops without starting them."""
        for definition in definitions:
            self._definitions[definition.name] = definition

    def is_alive(self, definition: ServerDefinition) -> bool:
        return self.prober.probe(definition, self.probe_timeout)

    def spawn(self, definition: ServerDefinition) -> ProcessHandle:
        """Start ``definition`` and record it in the manifest.

        Raises:
            SpawnFailedError: If the process could not be started.
            ManifestWriteError: If the manifest could not be persisted.
        """
        self._definitions[definition.name] = definition
        process = ServerProcess(
            definition=definition,
            environment=self.environment,
            log_manager=self.log_manager,
            startup_grace=self.startup_grace,
        )
        handle = process.start()
        self.manifest.add(handle.name, handle.pid)
        return handle

    def stop(self, name: str) -> bool:
        """Stop the processes recorded for ``name``.

        Without manifest entries (e.g. the manifest was lost in a crash) the
        process table is searched for the server's command pattern instead.
        Entries whose process is gone, or whose PID now belongs to an
        unrelated command, are dropped without signalling anything.

        Returns:
            True if a running process was stopped, False if none was found.
        """
        definition = self._definitions.get(name)
        entries = self.manifest.entries_for(name)
        stopped = False

        if entries:
            for entry in entries:
                if definition is None or cmdline_matches(entry.pid, definition.process_pattern):
                    stopped = terminate_pid(entry.pid, self.stop_timeout) or stopped
                else:
                    logger.info("stale_manifest_entry", name=name, pid=entry.pid)
                self.manifest.remove(name, entry.pid)
        elif definition is not None:
            stopped = self._sweep(definition)

        logger.info("server_stop", name=name, stopped=stopped)
        return stopped

    def _sweep(self, definition: ServerDefinition) -> bool:
        """Terminate every process matching the server's command pattern."""
        stopped = False
        for proc in find_processes(definition.process_pattern):
            logger.info("sweeping_process", name=definition.name, pid=proc.pid)
            stopped = terminate_pid(proc.pid, self.stop_timeout) or stopped
        return stopped

    def _stop_everywhere(self, definition: ServerDefinition) -> bool:
        stopped = self.stop(definition.name)
        return self._sweep(definition) or stopped

    def ensure_running(
        self,
        definitions: Iterable[ServerDefinition],
        force: bool = False,
    ) -> Report:
        """Bring every definition to a running state.

        Without ``force`` only servers that fail their probe are started. With
        ``force`` every server is stopped (manifest entries and any matching
        stray processes) before any is started again, so each ends up with a
        single instance. A spawn failure is recorded for that server only.
        """
        definitions = list(definitions)
        self.register(definitions)
        report = Report()
        statuses = {d.name: ServerStatus(name=d.name) for d in definitions}

        if force:
            for definition in definitions:
                try:
                    self._stop_everywhere(definition)
                except psutil.Error as e:
                    logger.warning("restart_stop_failed", name=definition.name, error=str(e))
                statuses[definition.name].state = ServerState.NEEDS_START
        else:
            alive = self.prober.probe_all(definitions, self.probe_timeout)
            for definition in definitions:
                status = statuses[definition.name]
                status.state = ServerState.PROBED
                if alive.get(definition.name):
                    status.state = ServerState.ALREADY_RUNNING
                    logger.info("server_already_running", name=definition.name)
                else:
                    status.state = ServerState.NEEDS_START

        for definition in definitions:
            status = statuses[definition.name]
            if status.state == ServerState.NEEDS_START:
                try:
                    handle = self.spawn(definition)
                except SpawnFailedError as e:
                    status.state = ServerState.FAILED
                    status.reason = str(e)
                    logger.error("server_start_failed", name=definition.name, reason=str(e))
                else:
                    status.state = ServerState.STARTED
                    status.pid = handle.pid
            report.record(status)

        return report

    def stop_all(self) -> Report:
        """Stop every manifest entry, then sweep for known servers' patterns.

        Safe to repeat: targets come from the manifest on disk and the
        process table, not from in-memory state.
        """
        report = Report()
        names = list(dict.fromkeys([*self.manifest.names(), *self._definitions]))

        for name in names:
            status = ServerStatus(name=name)
            try:
                stopped = self.stop(name)
                definition = self._definitions.get(name)
                if definition is not None:
                    stopped = self._sweep(definition) or stopped
            except psutil.Error as e:
                status.state = ServerState.FAILED
                status.reason = str(e) or type(e).__name__
                logger.error("server_stop_failed", name=name, reason=status.reason)
            else:
                status.state = ServerState.STOPPED if stopped else ServerState.NOT_RUNNING
            report.record(status)

        return report
