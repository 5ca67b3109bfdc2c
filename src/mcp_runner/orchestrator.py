"""Top-level commands: configure, start, stop, test and status."""

from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

from .config import Config, ServerDefinition
from .credentials import (
    GITHUB_TOKEN,
    CredentialResolver,
    fill_placeholders,
    resolve_credential,
    strip_placeholders,
)
from .defaults import default_servers, detect_workspace
from .environment import Environment
from .exceptions import CredentialMissingError
from .logs import LogManager
from .manager import ProcessSupervisor, Report, ServerState, ServerStatus
from .manifest import ManifestEntry, ProcessManifest
from .probe import HealthProber, cmdline_matches
from .store import ConfigDocument, ConfigStore

logger = structlog.get_logger()


@dataclass
class Reconciliation:
    """Outcome of merging the desired servers into the config document."""

    document: ConfigDocument
    runnable: list[ServerDefinition] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)  # name -> reason
    has_credential: bool = False


@dataclass
class Orchestrator:
    """Wires the config store, credentials and supervisor together."""

    config: Config
    environment: Environment
    store: ConfigStore
    supervisor: ProcessSupervisor
    prober: HealthProber

    @classmethod
    def from_config(cls, config: Config, environment: Environment) -> "Orchestrator":
        settings = config.runner
        prober = HealthProber()
        supervisor = ProcessSupervisor(
            environment=environment,
            manifest=ProcessManifest(environment.resolve_path(settings.manifest_path)).load(),
            log_manager=LogManager(environment.resolve_path(settings.log_dir)),
            prober=prober,
            probe_timeout=settings.probe_timeout_ms / 1000.0,
            stop_timeout=settings.stop_timeout_ms / 1000.0,
            startup_grace=settings.startup_grace_ms / 1000.0,
        )
        return cls(
            config=config,
            environment=environment,
            store=ConfigStore(environment.resolve_path(settings.config_path)),
            supervisor=supervisor,
            prober=prober,
        )

    @property
    def probe_timeout(self) -> float:
        return self.config.runner.probe_timeout_ms / 1000.0

    def desired_servers(self) -> list[ServerDefinition]:
        """Built-in servers (unless disabled) plus those declared in the runner config.

        A declared server replaces a built-in one of the same name.
        """
        servers: dict[str, ServerDefinition] = {}
        if self.config.runner.include_defaults:
            settings = self.config.runner
            if settings.workspace_dir:
                workspace = self.environment.resolve_path(settings.workspace_dir)
            else:
                workspace = detect_workspace(self.environment)
            for definition in default_servers(workspace):
                servers[definition.name] = definition
        for definition in self.config.server_definitions():
            servers[definition.name] = definition
        return list(servers.values())

    def reconcile(self, prompt: Callable[[], str | None] | None = None) -> Reconciliation:
        """Resolve credentials and merge the desired servers into the config file.

        Args:
            prompt: Called for a token when no source has one; its answer is
                used like any other resolved value.

        Raises:
            ConfigWriteError: If the merged document cannot be saved.
        """
        document = self.store.load()

        resolver = CredentialResolver()
        token = resolve_credential(GITHUB_TOKEN, self.environment, document, resolver)
        if token is None and prompt is not None:
            token = prompt()
            if token:
                self.environment.mirror(GITHUB_TOKEN.names, token)

        result = Reconciliation(document=document, has_credential=bool(token))
        persisted = []
        for definition in self.desired_servers():
            try:
                filled = fill_placeholders(definition, self.environment.variables)
            except CredentialMissingError as e:
                logger.warning("server_skipped", name=definition.name, credential=e.credential)
                result.skipped[definition.name] = f"missing credential {e.credential}"
                persisted.append(strip_placeholders(definition))
            else:
                result.runnable.append(filled)
                persisted.append(filled)

        if document.corrupt:
            self.store.preserve_corrupt()
        result.document = self.store.merge(document, persisted)
        self.store.save(result.document)
        return result

    def start(self, force: bool = False) -> Report:
        """Ensure every runnable server is up; ``force`` restarts them all."""
        reconciliation = self.reconcile()
        report = self.supervisor.ensure_running(reconciliation.runnable, force=force)
        for name, reason in reconciliation.skipped.items():
            report.record(ServerStatus(name=name, state=ServerState.SKIPPED, reason=reason))
        self._log_report("start_complete", report)
        return report

    def stop(self) -> Report:
        """Stop all servers, including strays from earlier crashed runs, and archive logs."""
        self.supervisor.register(self.desired_servers())
        report = self.supervisor.stop_all()
        self.supervisor.log_manager.archive_all()
        self._log_report("stop_complete", report)
        return report

    def test(self) -> Report:
        """Probe every desired server concurrently."""
        servers = self.desired_servers()
        alive = self.prober.probe_all(servers, self.probe_timeout)
        report = Report()
        for definition in servers:
            state = ServerState.ALIVE if alive.get(definition.name) else ServerState.DOWN
            report.record(ServerStatus(name=definition.name, state=state))
        self._log_report("test_complete", report)
        return report

    def status(self) -> list[tuple[ManifestEntry, bool]]:
        """Manifest entries paired with whether their PID still runs that server."""
        patterns = {d.name: d.process_pattern for d in self.desired_servers()}
        rows = []
        for entry in self.supervisor.manifest.load().entries:
            pattern = patterns.get(entry.name, "")
            rows.append((entry, cmdline_matches(entry.pid, pattern)))
        return rows

    @staticmethod
    def _log_report(event: str, report: Report) -> None:
        logger.info(event, servers=report.states(), failed=report.failed)
