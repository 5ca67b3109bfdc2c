"""Liveness checks for managed servers."""

import os
import socket
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, wait

import psutil
import structlog

from .config import ServerDefinition

logger = structlog.get_logger()

LOCALHOST = "127.0.0.1"


def find_processes(pattern: str) -> list[psutil.Process]:
    """Live processes whose command line contains ``pattern``.

    This is a fuzzy match against arbitrary command lines: it ignores the
    current process and zombies but cannot tell apart two servers whose
    commands share ``pattern``.
    """
    own_pid = os.getpid()
    matches = []
    for proc in psutil.process_iter(["pid", "cmdline", "status"]):
        try:
            info = proc.info
            if info["pid"] == own_pid or info["status"] == psutil.STATUS_ZOMBIE:
                continue
            cmdline = " ".join(info["cmdline"] or [])
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        if pattern in cmdline:
            matches.append(proc)
    return matches


def cmdline_matches(pid: int, pattern: str) -> bool:
    """Whether ``pid`` is alive and its command line contains ``pattern``."""
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return False
        return pattern in " ".join(proc.cmdline())
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def tcp_connect(port: int, timeout: float, host: str = LOCALHOST) -> bool:
    """Open and immediately close a TCP connection; False on refusal or timeout."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class HealthProber:
    """Answers "is this server alive?" within a bounded time."""

    def __init__(self, max_workers: int = 8):
        self.max_workers = max_workers

    def check(self, definition: ServerDefinition, timeout: float) -> bool:
        """Unbounded check; callers go through ``probe``/``probe_all``."""
        port = definition.port
        if port is not None:
            return tcp_connect(port, timeout)
        return bool(find_processes(definition.process_pattern))

    def probe(self, definition: ServerDefinition, timeout: float) -> bool:
        """Check one server, returning False if no answer arrives within ``timeout``."""
        return self.probe_all([definition], timeout)[definition.name]

    def probe_all(
        self,
        definitions: Iterable[ServerDefinition],
        timeout: float,
    ) -> dict[str, bool]:
        """Probe servers concurrently, joined with a shared ``timeout``.

        A probe that has not finished by the deadline counts as not alive and
        does not hold up the others.
        """
        definitions = list(definitions)
        if not definitions:
            return {}

        executor = ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(definitions)),
            thread_name_prefix="probe",
        )
        try:
            futures = {
                executor.submit(self.check, definition, timeout): definition
                for definition in definitions
            }
            wait(futures, timeout=timeout)

            results: dict[str, bool] = {}
            for future, definition in futures.items():
                if not future.done():
                    logger.warning("probe_timeout", name=definition.name, timeout=timeout)
                    results[definition.name] = False
                elif future.exception() is not None:
                    logger.warning(
                        "probe_error",
                        name=definition.name,
                        error=str(future.exception()),
                    )
                    results[definition.name] = False
                else:
                    results[definition.name] = future.result()
            return results
        finally:
            # Don't join hung probes; their threads finish on their own.
            executor.shutdown(wait=False, cancel_futures=True)
