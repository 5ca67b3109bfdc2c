"""Server process lifecycle: detached spawn and termination by PID."""

import shutil
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, auto

import psutil
import structlog

from .config import ServerDefinition
from .environment import Environment
from .exceptions import SpawnFailedError
from .logs import LogManager

logger = structlog.get_logger()


class ProcessState(Enum):
    """Server process states."""

    PENDING = auto()  # Not yet started
    RUNNING = auto()  # Process is running
    STOPPED = auto()  # Exited or terminated
    FAILED = auto()  # Could not be started, or exited during startup


@dataclass(frozen=True)
class ProcessHandle:
    """A started server process.

    Only carries the PID: the process outlives the runner, so later
    invocations rebuild handles from the manifest rather than a Popen.
    """

    name: str
    pid: int
    started_at: str


@dataclass
class ServerProcess:
    """Starts a single server as a detached subprocess."""

    definition: ServerDefinition
    environment: Environment
    log_manager: LogManager | None = None
    startup_grace: float = 0.0  # Seconds to wait for an early exit

    # Internal state
    _process: subprocess.Popen | None = field(default=None, init=False, repr=False)
    _state: ProcessState = field(default=ProcessState.PENDING, init=False)
    _exit_code: int | None = field(default=None, init=False)

    @property
    def state(self) -> ProcessState:
        """Current process state."""
        return self._state

    @property
    def pid(self) -> int | None:
        """Process ID if started."""
        return self._process.pid if self._process else None

    @property
    def exit_code(self) -> int | None:
        """Exit code if the process exited during startup."""
        return self._exit_code

    def build_env(self) -> dict[str, str]:
        """Definition env layered over the invocation environment."""
        env = dict(self.environment.variables)
        env.update(self.definition.env)
        return env

    def resolve_command(self, env: dict[str, str]) -> str:
        """Find the executable on the child's PATH.

        Raises:
            SpawnFailedError: If the command cannot be found.
        """
        command = self.definition.command
        resolved = shutil.which(command, path=env.get("PATH"))
        if resolved is None:
            raise SpawnFailedError(f"executable not found: {command}")
        return resolved

    def start(self) -> ProcessHandle:
        """Start the server detached from the runner's session.

        Raises:
            RuntimeError: If this process was already started.
            SpawnFailedError: If the executable is missing, not runnable, or
                exits within the startup grace period.
        """
        if self._state == ProcessState.RUNNING:
            raise RuntimeError(f"Server {self.definition.name} is already running")

        env = self.build_env()
        try:
            executable = self.resolve_command(env)
        except SpawnFailedError:
            self._state = ProcessState.FAILED
            raise
        cmd = [executable, *self.definition.args]

        stdout = stderr = subprocess.DEVNULL
        if self.log_manager:
            try:
                stdout, stderr = self.log_manager.sinks_for(self.definition.name)
            except OSError as e:
                self._state = ProcessState.FAILED
                raise SpawnFailedError(f"cannot open log files: {e}") from e

        logger.info(
            "starting_server",
            name=self.definition.name,
            command=self.definition.command,
            args=self.definition.args,
        )

        try:
            self._process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            self._state = ProcessState.FAILED
            raise SpawnFailedError(f"{self.definition.command}: {e.strerror or e}") from e
        finally:
            # The child holds its own copies of the log descriptors.
            if self.log_manager:
                stdout.close()
                stderr.close()

        self._state = ProcessState.RUNNING
        started_at = datetime.now(timezone.utc).isoformat()

        if self.startup_grace > 0:
            time.sleep(self.startup_grace)
        exit_code = self._process.poll()
        if exit_code is not None:
            self._exit_code = exit_code
            self._state = ProcessState.FAILED
            raise SpawnFailedError(f"exited during startup with code {exit_code}")

        logger.info("server_started", name=self.definition.name, pid=self._process.pid)
        return ProcessHandle(
            name=self.definition.name,
            pid=self._process.pid,
            started_at=started_at,
        )


def terminate_pid(pid: int, timeout: float = 5.0) -> bool:
    """Stop a process and its descendants gracefully, then forcefully if needed.

    ``npx`` launches the real server as a grandchild, so the whole tree is
    signalled.

    Args:
        pid: Process to stop.
        timeout: Seconds to wait after SIGTERM before SIGKILL.

    Returns:
        True if the process was running and has been stopped, False if it was
        already gone.
    """
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return False
        family = [proc, *proc.children(recursive=True)]
    except psutil.NoSuchProcess:
        return False

    logger.info("terminating_process", pid=pid, children=len(family) - 1)
    for member in family:
        try:
            member.terminate()
        except psutil.NoSuchProcess:
            continue

    _, alive = psutil.wait_procs(family, timeout=timeout)
    for member in alive:
        logger.warning("force_killing_process", pid=member.pid)
        try:
            member.kill()
        except psutil.NoSuchProcess:
            continue
    psutil.wait_procs(alive, timeout=2.0)
    return True
