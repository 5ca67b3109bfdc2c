"""Tests for server process management."""

import subprocess
from unittest.mock import MagicMock, patch

import psutil
import pytest

from mcp_runner.config import ServerDefinition
from mcp_runner.exceptions import SpawnFailedError
from mcp_runner.logs import LogManager
from mcp_runner.process import ProcessState, ServerProcess, terminate_pid


@pytest.fixture
def github():
    return ServerDefinition(
        name="github",
        command="npx",
        args=["-y", "@modelcontextprotocol/server-github"],
        env={"GITHUB_PERSONAL_ACCESS_TOKEN": "tok"},
    )


@pytest.fixture
def mock_popen():
    with (
        patch("mcp_runner.process.shutil.which", return_value="/usr/bin/npx"),
        patch("mcp_runner.process.subprocess.Popen") as mock_popen,
    ):
        mock_process = MagicMock()
        mock_process.pid = 12345
        mock_process.poll.return_value = None
        mock_popen.return_value = mock_process
        yield mock_popen


class TestServerProcess:
    """Tests for ServerProcess."""

    def test_initial_state(self, github, environment):
        """Test initial state is PENDING."""
        process = ServerProcess(definition=github, environment=environment)
        assert process.state == ProcessState.PENDING
        assert process.pid is None
        assert process.exit_code is None

    def test_start_builds_correct_command(self, github, environment, mock_popen):
        """Test that start runs the resolved command with its args."""
        ServerProcess(definition=github, environment=environment).start()

        cmd = mock_popen.call_args[0][0]
        assert cmd == ["/usr/bin/npx", "-y", "@modelcontextprotocol/server-github"]

    def test_start_detaches(self, github, environment, mock_popen):
        """Test that the child gets its own session and no stdin."""
        ServerProcess(definition=github, environment=environment).start()

        kwargs = mock_popen.call_args.kwargs
        assert kwargs["start_new_session"] is True
        assert kwargs["stdin"] == subprocess.DEVNULL

    def test_env_layered_over_environment(self, github, environment, mock_popen):
        """Test that definition env overrides the invocation environment."""
        environment.variables["GITHUB_PERSONAL_ACCESS_TOKEN"] = "old"
        environment.variables["HOME_HINT"] = "kept"

        ServerProcess(definition=github, environment=environment).start()

        env = mock_popen.call_args.kwargs["env"]
        assert env["GITHUB_PERSONAL_ACCESS_TOKEN"] == "tok"
        assert env["HOME_HINT"] == "kept"
        assert "PATH" in env

    def test_start_returns_handle(self, github, environment, mock_popen):
        """Test that start sets RUNNING and returns the PID."""
        process = ServerProcess(definition=github, environment=environment)

        handle = process.start()

        assert process.state == ProcessState.RUNNING
        assert handle.name == "github"
        assert handle.pid == 12345
        assert handle.started_at

    def test_start_raises_if_already_running(self, github, environment, mock_popen):
        """Test that start raises if process is already running."""
        process = ServerProcess(definition=github, environment=environment)
        process.start()

        with pytest.raises(RuntimeError, match="already running"):
            process.start()

    def test_logs_redirected_to_files(self, github, environment, temp_dir, mock_popen):
        """Test that stdout/stderr go to the server's log files."""
        log_manager = LogManager(temp_dir / "logs")

        ServerProcess(definition=github, environment=environment, log_manager=log_manager).start()

        kwargs = mock_popen.call_args.kwargs
        assert kwargs["stdout"].name.endswith("github-out.log")
        assert kwargs["stderr"].name.endswith("github-err.log")
        assert kwargs["stdout"].closed

    def test_missing_executable(self, environment):
        """Test that an unknown command is a spawn failure."""
        definition = ServerDefinition(name="ghost", command="definitely-not-installed-mcp")
        process = ServerProcess(definition=definition, environment=environment)

        with pytest.raises(SpawnFailedError, match="executable not found"):
            process.start()
        assert process.state == ProcessState.FAILED

    def test_permission_denied(self, github, environment, mock_popen):
        """Test that OS errors from Popen become spawn failures."""
        mock_popen.side_effect = PermissionError(13, "Permission denied")
        process = ServerProcess(definition=github, environment=environment)

        with pytest.raises(SpawnFailedError, match="Permission denied"):
            process.start()
        assert process.state == ProcessState.FAILED

    def test_early_exit_is_failure(self, github, environment, mock_popen):
        """Test that a process dying during the grace period is reported."""
        mock_popen.return_value.poll.return_value = 1
        process = ServerProcess(definition=github, environment=environment, startup_grace=0.01)

        with pytest.raises(SpawnFailedError, match="code 1"):
            process.start()
        assert process.exit_code == 1
        assert process.state == ProcessState.FAILED


class TestTerminatePid:
    """Tests for terminate_pid."""

    def test_no_such_process(self):
        """Test that a vanished PID is reported as already gone."""
        with patch("mcp_runner.process.psutil.Process", side_effect=psutil.NoSuchProcess(99)):
            assert terminate_pid(99) is False

    def test_terminates_tree(self):
        """Test that the process and its children are signalled."""
        parent, child = MagicMock(), MagicMock()
        parent.status.return_value = psutil.STATUS_SLEEPING
        parent.children.return_value = [child]

        with (
            patch("mcp_runner.process.psutil.Process", return_value=parent),
            patch("mcp_runner.process.psutil.wait_procs", return_value=([parent, child], [])),
        ):
            assert terminate_pid(100, timeout=1.0) is True

        parent.terminate.assert_called_once()
        child.terminate.assert_called_once()
        parent.kill.assert_not_called()

    def test_force_kills_survivors(self):
        """Test that processes ignoring SIGTERM are killed."""
        parent = MagicMock()
        parent.status.return_value = psutil.STATUS_SLEEPING
        parent.children.return_value = []

        with (
            patch("mcp_runner.process.psutil.Process", return_value=parent),
            patch(
                "mcp_runner.process.psutil.wait_procs",
                side_effect=[([], [parent]), ([parent], [])],
            ),
        ):
            assert terminate_pid(100, timeout=0.1) is True

        parent.kill.assert_called_once()

    def test_real_process(self, sleeper):
        """Test stopping a real child process."""
        proc = subprocess.Popen([sleeper.command, *sleeper.args])

        assert terminate_pid(proc.pid, timeout=5.0) is True
        assert not psutil.pid_exists(proc.pid) or psutil.Process(proc.pid).status() == psutil.STATUS_ZOMBIE
