"""CLI entry point for the runner."""

import argparse
import getpass
import logging
import sys
import tomllib
from pathlib import Path

import structlog
from pydantic import ValidationError

from .config import Config, find_config, load_config
from .environment import Environment
from .exceptions import ConfigWriteError, ManifestWriteError
from .manager import Report
from .orchestrator import Orchestrator

EXIT_HARD_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-runner",
        description="Configure, start, test and stop the IDE's MCP helper servers",
    )
    parser.add_argument(
        "--config",
        type=str,
        help="Path or name of runner TOML config file",
    )
    parser.add_argument(
        "--config-path",
        type=str,
        default=None,
        help="IDE MCP config JSON file (overrides config)",
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default=None,
        help="Server log directory (overrides config)",
    )
    parser.add_argument(
        "--manifest",
        type=str,
        default=None,
        help="PID manifest file (overrides config)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    configure = commands.add_parser("configure", help="Merge server definitions into the IDE config")
    configure.add_argument(
        "--prompt",
        action="store_true",
        help="Ask for a GitHub token if none can be found",
    )

    start = commands.add_parser("start", help="Start servers that are not already running")
    start.add_argument(
        "-f",
        "--force",
        action="store_true",
        help="Restart every server even if it is running",
    )

    commands.add_parser("stop", help="Stop all servers and archive their logs")
    commands.add_parser("test", help="Check which servers are alive")
    commands.add_parser("status", help="List processes recorded in the manifest")
    return parser


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )


def load_runner_config(args: argparse.Namespace) -> Config:
    """Load the runner config named on the command line and apply overrides.

    Raises:
        FileNotFoundError: If ``--config`` names nothing that exists.
    """
    if args.config:
        try:
            config_path = find_config(args.config)
        except FileNotFoundError:
            # Try as direct path
            config_path = Path(args.config)
            if not config_path.exists():
                raise
        config = load_config(config_path)
    else:
        config = Config()

    if args.config_path:
        config.runner.config_path = args.config_path
    if args.log_dir:
        config.runner.log_dir = args.log_dir
    if args.manifest:
        config.runner.manifest_path = args.manifest
    return config


def prompt_for_token() -> str | None:
    """Ask for a GitHub token with hidden input; None when not interactive."""
    if not sys.stdin.isatty():
        return None
    print("A GitHub personal access token is needed for the github server.")
    print("Create one at https://github.com/settings/tokens (scopes: repo, workflow, read:org).")
    token = getpass.getpass("GitHub token (leave empty to skip): ").strip()
    return token or None


def print_report(title: str, report: Report) -> None:
    print(f"{title}:")
    for name, status in report.statuses.items():
        print(f"  {name:<20} {status.describe()}")


def run(args: argparse.Namespace, orchestrator: Orchestrator) -> int:
    if args.command == "configure":
        prompt = prompt_for_token if args.prompt else None
        result = orchestrator.reconcile(prompt=prompt)
        print(f"Updated {orchestrator.store.path}")
        if not result.has_credential:
            print("No GitHub token found; the github server will be skipped.")
        for name, reason in result.skipped.items():
            print(f"  {name:<20} skipped: {reason}")
        return 0

    if args.command == "start":
        report = orchestrator.start(force=args.force)
        print_report("Start", report)
        return report.exit_code

    if args.command == "stop":
        report = orchestrator.stop()
        print_report("Stop", report)
        return report.exit_code

    if args.command == "test":
        report = orchestrator.test()
        print_report("Test", report)
        return report.exit_code

    if args.command == "status":
        rows = orchestrator.status()
        if not rows:
            print("No processes recorded.")
        for entry, alive in rows:
            state = "running" if alive else "gone"
            print(f"  {entry.name:<20} pid={entry.pid:<8} {state:<8} since {entry.started_at}")
        return 0

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    """Run the MCP runner."""
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    logger = structlog.get_logger()

    try:
        config = load_runner_config(args)
    except FileNotFoundError:
        logger.error("config_not_found", path=args.config)
        return EXIT_HARD_ERROR
    except (tomllib.TOMLDecodeError, ValidationError) as e:
        logger.error("config_invalid", path=args.config, error=str(e))
        return EXIT_HARD_ERROR

    orchestrator = Orchestrator.from_config(config, Environment.from_os())

    try:
        return run(args, orchestrator)
    except (ConfigWriteError, ManifestWriteError) as e:
        logger.error("runner_error", error=str(e))
        return EXIT_HARD_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
