"""Pytest configuration and fixtures for runner tests."""

import os
import sys
import tempfile
import uuid
from pathlib import Path

import pytest

from mcp_runner.config import ServerDefinition
from mcp_runner.environment import Environment


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def environment(temp_dir):
    """Environment rooted in the temp directory, with the real PATH."""
    home = temp_dir / "home"
    home.mkdir()
    return Environment(
        variables={"PATH": os.environ.get("PATH", "")},
        home=home,
        cwd=temp_dir,
    )


@pytest.fixture
def sample_config_toml():
    """Sample runner config as TOML string."""
    return """
[runner]
config_path = "~/.cursor/mcp.json"
log_dir = "test_logs"
manifest_path = "test-pids.json"
workspace_dir = "/srv/work"
probe_timeout_ms = 500
stop_timeout_ms = 1000
startup_grace_ms = 0

[servers.docs]
command = "npx"
args = ["-y", "@example/docs-server"]
transport = "tcp:3001"

[servers.notes]
command = "notes-server"
env = { NOTES_DIR = "/tmp/notes" }
"""


@pytest.fixture
def config_file(temp_dir, sample_config_toml):
    """Create a temporary config file."""
    config_path = temp_dir / "test_config.toml"
    config_path.write_text(sample_config_toml)
    return config_path


@pytest.fixture
def sleeper():
    """A real, uniquely identifiable long-running server definition."""
    marker = f"mcp-runner-test-{uuid.uuid4().hex}"
    return ServerDefinition(
        name="sleeper",
        command=sys.executable,
        args=["-c", "import time; time.sleep(60)", marker],
        match=marker,
    )
