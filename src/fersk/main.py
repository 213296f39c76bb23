"""Command-line entry point for fersk.

    fersk run [-C PATH] [options] -- COMMAND [ARGS...]
    fersk generate-config [--force]

``run`` executes COMMAND inside a disposable copy of the repository that
contains PATH and exits with the command's exit code. Logs are written to
stderr so the command's own output passes through untouched.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional, Sequence

import structlog
from pydantic import ValidationError

from fersk import __version__
from fersk.config import FerskSettings, default_config_path, get_settings, write_default_config
from fersk.orchestrator import LifecycleOrchestrator
from fersk.provisioner.git import Git
from fersk.provisioner.workspace import SnapshotMode, WorkspaceProvisioner
from fersk.runner.command import CommandRunner, CommandSpec
from fersk.state.models import InvocationOutcome

logger = structlog.get_logger(__name__)

EXIT_USAGE = 2

HANDLED_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGINT", "SIGTERM", "SIGHUP") if hasattr(signal, name)
)


class InvocationInterrupted(Exception):
    """Raised when a signal stopped the invocation before it finished."""

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"Interrupted by {signal.Signals(signum).name}")


def configure_logging(level: str = "INFO", log_format: str = "console") -> None:
    """Route structlog through stdlib logging to stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        stream=sys.stderr,
        force=True,
    )

    if log_format == "json":
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            *renderers,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fersk",
        description="Run a command in a fresh, disposable copy of a git repository.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"configuration file (default: {default_config_path()})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="only log errors")
    parser.add_argument(
        "--log-format",
        choices=("console", "json"),
        default=None,
        help="log output format",
    )

    subparsers = parser.add_subparsers(dest="subcommand", metavar="COMMAND")

    run_parser = subparsers.add_parser(
        "run",
        help="run a command in a clean copy of the repository",
        description="Run COMMAND in a clean copy of the repository's current commit.",
    )
    run_parser.add_argument(
        "-C",
        "--source",
        type=Path,
        default=Path.cwd(),
        help="path inside the source repository (default: current directory)",
    )
    run_parser.add_argument(
        "--include-uncommitted",
        dest="snapshot_mode",
        action="store_const",
        const=SnapshotMode.WORKING_TREE,
        default=None,
        help="carry staged and unstaged changes to tracked files into the copy",
    )
    run_parser.add_argument(
        "--no-submodules",
        dest="submodules",
        action="store_const",
        const=False,
        default=None,
        help="do not check out submodules",
    )
    run_parser.add_argument(
        "--work-path",
        type=Path,
        default=None,
        help="directory under which workspaces are created",
    )
    run_parser.add_argument(
        "--timeout",
        dest="command_timeout_seconds",
        type=int,
        default=None,
        help="stop the command after this many seconds",
    )
    run_parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="command and arguments, usually after --",
    )

    config_parser = subparsers.add_parser(
        "generate-config",
        help="write the default configuration file",
    )
    config_parser.add_argument(
        "--force",
        action="store_true",
        help="overwrite an existing configuration file",
    )

    return parser


def build_orchestrator(settings: FerskSettings) -> LifecycleOrchestrator:
    """Wire provisioner and runner from settings."""
    git = Git(git_path=settings.git_path, quiet=settings.quiet_git)
    provisioner = WorkspaceProvisioner(config=settings.workspace_config(), git=git)
    runner = CommandRunner(config=settings.runner_config())
    return LifecycleOrchestrator(provisioner=provisioner, runner=runner)


async def run_invocation(
    orchestrator: LifecycleOrchestrator,
    source_path: Path,
    spec: CommandSpec,
) -> InvocationOutcome:
    """Run one invocation, turning termination signals into cancellation.

    SIGINT while the command is running is left to the command: it shares
    the terminal's foreground process group and received the signal too, so
    it alone decides whether to exit, exactly as when run directly. SIGINT
    at any other time, and SIGTERM or SIGHUP at any time, cancel the
    invocation.

    Raises:
        InvocationInterrupted: If a handled signal arrived. The workspace
            has already been removed.
    """
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    received: List[int] = []

    def _on_signal(signum: int) -> None:
        name = signal.Signals(signum).name
        if signum == signal.SIGINT and not received and orchestrator.runner.has_active_command:
            logger.info("Leaving signal to the running command", signal=name)
            return
        logger.warning("Received signal", signal=name)
        received.append(signum)
        task.cancel()

    installed = []
    for signum in HANDLED_SIGNALS:
        try:
            loop.add_signal_handler(signum, _on_signal, signum)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(signum)

    try:
        return await orchestrator.run(source_path, spec)
    except asyncio.CancelledError:
        if not received:
            raise
        for _ in received:
            task.uncancel()
        raise InvocationInterrupted(received[0]) from None
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def _settings_overrides(args: argparse.Namespace) -> dict:
    overrides = {"log_format": args.log_format}
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    elif args.quiet:
        overrides["log_level"] = "ERROR"
    if args.subcommand == "run":
        overrides.update(
            work_path=args.work_path.expanduser().absolute() if args.work_path else None,
            snapshot_mode=args.snapshot_mode,
            submodules=args.submodules,
            command_timeout_seconds=args.command_timeout_seconds,
        )
    return overrides


def _command_argv(raw: Sequence[str]) -> List[str]:
    argv = list(raw)
    if argv and argv[0] == "--":
        argv = argv[1:]
    return argv


def _run(settings: FerskSettings, source_path: Path, spec: CommandSpec) -> int:
    orchestrator = build_orchestrator(settings)

    logger.debug(
        "Configuration",
        work_path=str(settings.work_path),
        snapshot_mode=settings.snapshot_mode.value,
        submodules=settings.submodules,
        command_timeout_seconds=settings.command_timeout_seconds,
    )

    try:
        outcome = asyncio.run(run_invocation(orchestrator, source_path, spec))
    except InvocationInterrupted as exc:
        logger.error(str(exc))
        return 128 + exc.signum
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 128 + signal.SIGINT

    logger.debug(
        "Invocation finished",
        status=outcome.status.value,
        exit_code=outcome.exit_code,
        workspace=outcome.workspace_path,
    )
    return outcome.exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Parse arguments, load settings and dispatch the subcommand.

    Returns:
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.subcommand is None:
        parser.print_help(sys.stderr)
        return EXIT_USAGE

    try:
        settings = get_settings(config_file=args.config, **_settings_overrides(args))
    except ValidationError as exc:
        configure_logging()
        logger.error("Invalid configuration", error=str(exc))
        return EXIT_USAGE

    configure_logging(settings.log_level, settings.log_format)

    if args.subcommand == "generate-config":
        try:
            path = write_default_config(args.config, force=args.force)
        except FileExistsError as exc:
            logger.info("Leaving existing configuration in place", path=exc.filename)
            return 0
        except OSError as exc:
            logger.error("Failed to write configuration", error=str(exc))
            return 1
        print(path)
        return 0

    command = _command_argv(args.command)
    try:
        spec = CommandSpec.from_argv(command)
    except ValueError:
        parser.error("run: a command to execute is required, e.g. fersk run -- make test")

    return _run(settings, args.source, spec)
