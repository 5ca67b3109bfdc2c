"""Default MCP server set and workspace detection."""

import subprocess
from pathlib import Path

import structlog

from .config import ServerDefinition
from .environment import Environment

logger = structlog.get_logger()

WORKSPACE_ENV = "CURSOR_WORKSPACE_DIR"

# Tried in order when the workspace cannot be derived from a git checkout.
WORKSPACE_CANDIDATES = (
    ("Desktop", "Work"),
    ("Documents", "Projects"),
    ("Projects",),
    ("code",),
)

PUPPETEER_LAUNCH_OPTIONS = '{ "headless": true, "args": ["--no-sandbox"] }'


def find_git_root(directory: Path, timeout: float = 5.0) -> Path | None:
    """Return the top level of the git checkout containing ``directory``."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            cwd=directory,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("git_root_lookup_failed", error=str(e))
        return None
    if result.returncode != 0:
        return None
    root = result.stdout.strip()
    return Path(root) if root else None


def detect_workspace(environment: Environment) -> Path:
    """Pick the directory the filesystem server should expose.

    Order: ``CURSOR_WORKSPACE_DIR``; the parent of the current git checkout;
    the first existing well-known project directory; ``~/Desktop``.
    """
    override = environment.get(WORKSPACE_ENV)
    if override:
        return environment.resolve_path(override)

    git_root = find_git_root(environment.cwd)
    if git_root is not None:
        return git_root.parent

    for parts in WORKSPACE_CANDIDATES:
        candidate = environment.home.joinpath(*parts)
        if candidate.is_dir():
            return candidate

    return environment.home / "Desktop"


def default_servers(workspace: Path) -> list[ServerDefinition]:
    """The helper servers the runner manages out of the box."""
    return [
        ServerDefinition(
            name="filesystem",
            command="npx",
            args=["-y", "@modelcontextprotocol/server-filesystem", f"{workspace}/**/*"],
        ),
        ServerDefinition(
            name="puppeteer",
            command="npx",
            args=["-y", "@modelcontextprotocol/server-puppeteer"],
            env={
                "PUPPETEER_LAUNCH_OPTIONS": PUPPETEER_LAUNCH_OPTIONS,
                "ALLOW_DANGEROUS": "true",
            },
        ),
        ServerDefinition(
            name="github",
            command="npx",
            args=["-y", "@modelcontextprotocol/server-github"],
            env={"GITHUB_PERSONAL_ACCESS_TOKEN": "${GITHUB_PERSONAL_ACCESS_TOKEN}"},
        ),
        ServerDefinition(
            name="webresearch",
            command="npx",
            args=["-y", "@mzxrai/mcp-webresearch"],
        ),
        # fetch and sequentialthinking run the same binary and differ only by
        # SERVER_KEY, so the process table cannot tell them apart.
        ServerDefinition(
            name="fetch",
            command="npx",
            args=["-y", "mcprouter"],
            env={"SERVER_KEY": "928gi2m8xwtay9"},
        ),
        ServerDefinition(
            name="sequentialthinking",
            command="npx",
            args=["-y", "mcprouter"],
            env={"SERVER_KEY": "76e32um8xwucnc"},
        ),
    ]
