"""Tests for the command-line entry point."""

import json
from unittest.mock import MagicMock, patch

import pytest

from mcp_runner.__main__ import build_parser, load_runner_config, main, run
from mcp_runner.exceptions import ConfigWriteError
from mcp_runner.manager import Report, ServerState, ServerStatus
from mcp_runner.manifest import ManifestEntry
from mcp_runner.orchestrator import Reconciliation
from mcp_runner.store import ConfigDocument


@pytest.fixture
def os_environment(environment):
    """Make Environment.from_os return the temp-rooted environment."""
    environment.variables["CURSOR_WORKSPACE_DIR"] = "/srv/work"
    with patch("mcp_runner.__main__.Environment.from_os", return_value=environment):
        yield environment


def make_report(**states):
    report = Report()
    for name, state in states.items():
        report.record(ServerStatus(name=name, state=state))
    return report


class TestParser:
    """Tests for build_parser."""

    def test_start_force(self):
        args = build_parser().parse_args(["start", "--force"])
        assert args.command == "start"
        assert args.force is True

    def test_global_overrides(self):
        args = build_parser().parse_args(
            ["--config-path", "/tmp/mcp.json", "--log-dir", "logs", "-v", "test"]
        )
        assert args.config_path == "/tmp/mcp.json"
        assert args.log_dir == "logs"
        assert args.verbose is True
        assert args.command == "test"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestLoadRunnerConfig:
    """Tests for load_runner_config."""

    def test_defaults_without_file(self):
        args = build_parser().parse_args(["test"])
        config = load_runner_config(args)
        assert config.runner.config_path == "~/.cursor/mcp.json"

    def test_file_and_overrides(self, config_file):
        args = build_parser().parse_args(
            ["--config", str(config_file), "--manifest", "other.json", "test"]
        )
        config = load_runner_config(args)
        assert config.runner.log_dir == "test_logs"
        assert config.runner.manifest_path == "other.json"
        assert "docs" in config.servers

    def test_named_config(self):
        args = build_parser().parse_args(["--config", "default", "test"])
        config = load_runner_config(args)
        assert config.runner.include_defaults is True


class TestRun:
    """Tests for command dispatch and exit codes."""

    def test_test_exit_code_down(self, capsys):
        orchestrator = MagicMock()
        orchestrator.test.return_value = make_report(
            fetch=ServerState.ALIVE, github=ServerState.DOWN
        )

        code = run(build_parser().parse_args(["test"]), orchestrator)

        assert code == 1
        out = capsys.readouterr().out
        assert "fetch" in out and "alive" in out
        assert "down" in out

    def test_start_all_ok(self):
        orchestrator = MagicMock()
        orchestrator.start.return_value = make_report(
            fetch=ServerState.STARTED, github=ServerState.SKIPPED
        )

        code = run(build_parser().parse_args(["start", "-f"]), orchestrator)

        orchestrator.start.assert_called_once_with(force=True)
        assert code == 0

    def test_stop_failure(self):
        orchestrator = MagicMock()
        orchestrator.stop.return_value = make_report(fetch=ServerState.FAILED)

        assert run(build_parser().parse_args(["stop"]), orchestrator) == 1

    def test_configure_without_token(self, capsys):
        orchestrator = MagicMock()
        orchestrator.reconcile.return_value = Reconciliation(
            document=ConfigDocument(),
            skipped={"github": "missing credential GITHUB_PERSONAL_ACCESS_TOKEN"},
        )

        code = run(build_parser().parse_args(["configure"]), orchestrator)

        orchestrator.reconcile.assert_called_once_with(prompt=None)
        assert code == 0
        assert "github" in capsys.readouterr().out

    def test_configure_prompt(self):
        orchestrator = MagicMock()
        orchestrator.reconcile.return_value = Reconciliation(
            document=ConfigDocument(), has_credential=True
        )

        run(build_parser().parse_args(["configure", "--prompt"]), orchestrator)

        assert orchestrator.reconcile.call_args.kwargs["prompt"] is not None

    def test_status(self, capsys):
        orchestrator = MagicMock()
        orchestrator.status.return_value = [
            (ManifestEntry(name="fetch", pid=42, started_at="2024-01-01T00:00:00+00:00"), True),
        ]

        assert run(build_parser().parse_args(["status"]), orchestrator) == 0
        assert "pid=42" in capsys.readouterr().out


class TestMain:
    """End-to-end tests through main()."""

    def test_missing_config_is_hard_error(self, temp_dir):
        assert main(["--config", str(temp_dir / "absent.toml"), "test"]) == 2

    def test_invalid_config_is_hard_error(self, temp_dir):
        path = temp_dir / "bad.toml"
        path.write_text("[runner]\nprobe_timeout_ms = 'soon'\n")
        assert main(["--config", str(path), "test"]) == 2

    def test_configure_writes_config(self, os_environment, temp_dir):
        mcp_json = temp_dir / "out" / "mcp.json"
        os_environment.variables["GITHUB_TOKEN"] = "ghp_cli"

        code = main(["--config-path", str(mcp_json), "configure"])

        assert code == 0
        servers = json.loads(mcp_json.read_text())["mcpServers"]
        assert servers["github"]["env"]["GITHUB_PERSONAL_ACCESS_TOKEN"] == "ghp_cli"
        assert "/srv/work/**/*" in servers["filesystem"]["args"]

    def test_write_error_is_hard_error(self, os_environment, temp_dir):
        with patch(
            "mcp_runner.orchestrator.ConfigStore.save",
            side_effect=ConfigWriteError("read-only"),
        ):
            code = main(["--config-path", str(temp_dir / "mcp.json"), "configure"])

        assert code == 2

    def test_test_command_exit_code(self, os_environment, temp_dir):
        with patch("mcp_runner.orchestrator.HealthProber.probe_all", return_value={}):
            code = main(["--config-path", str(temp_dir / "mcp.json"), "test"])

        assert code == 1
