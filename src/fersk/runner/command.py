"""Command subprocess management.

Runs the caller's command as an asyncio subprocess inside a provisioned
workspace. Standard input, output and error are inherited so the command
behaves exactly as if it had been started directly from the caller's shell.
The environment is inherited too, minus the variables that bind git to a
repository, so git commands inside the workspace act on the workspace.

A command that starts and exits non-zero is a normal result. Only a failure
to start the process is an error.
"""

import asyncio
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

import structlog

from fersk.provisioner.git import repository_free_environment

logger = structlog.get_logger(__name__)

DEFAULT_TERMINATION_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class CommandSpec:
    """The executable and arguments supplied by the caller.

    Attributes:
        program: Executable name, looked up on PATH, or a path to it.
            Relative paths resolve against the workspace.
        args: Arguments passed to the program.
    """

    program: str
    args: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_argv(cls, argv: Sequence[str]) -> "CommandSpec":
        """Build a spec from a full argument vector.

        Raises:
            ValueError: If argv is empty or the program name is blank.
        """
        if not argv or not argv[0].strip():
            raise ValueError("command cannot be empty")
        return cls(program=argv[0], args=tuple(argv[1:]))

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    def __str__(self) -> str:
        return shlex.join(self.argv)


@dataclass
class RunnerConfig:
    """Configuration for command execution.

    Attributes:
        timeout_seconds: Maximum run time before the command is terminated.
            None waits indefinitely.
        termination_grace_seconds: Time between SIGTERM and SIGKILL when
            the command has to be stopped.
    """

    timeout_seconds: Optional[float] = None
    termination_grace_seconds: float = DEFAULT_TERMINATION_GRACE_SECONDS


@dataclass
class CommandResult:
    """Exit status of a command that was started successfully.

    Attributes:
        exit_code: Process return code. Negative values mean the process
            was terminated by that signal number.
        duration_seconds: Wall-clock execution time.
        timed_out: True when the runner stopped the command on timeout.
    """

    exit_code: int
    duration_seconds: float = 0.0
    timed_out: bool = False

    @property
    def signal(self) -> Optional[int]:
        if self.exit_code < 0:
            return -self.exit_code
        return None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def shell_exit_code(self) -> int:
        """Exit code a POSIX shell would report for this result."""
        if self.signal is not None:
            return 128 + self.signal
        return self.exit_code


class CommandLaunchError(Exception):
    """Raised when the command process cannot be started.

    Attributes:
        spec: The command that failed to launch.
        cause: Underlying OS error.
    """

    def __init__(self, spec: CommandSpec, message: str, cause: Optional[Exception] = None):
        self.spec = spec
        self.cause = cause
        super().__init__(message)


class ExecutableNotFoundError(CommandLaunchError):
    """Raised when the program does not exist."""

    def __init__(self, spec: CommandSpec, cause: Optional[Exception] = None):
        super().__init__(spec, f"Command not found: {spec.program}", cause)


class PermissionDeniedError(CommandLaunchError):
    """Raised when the program exists but may not be executed."""

    def __init__(self, spec: CommandSpec, cause: Optional[Exception] = None):
        super().__init__(spec, f"Permission denied: {spec.program}", cause)


class SpawnFailedError(CommandLaunchError):
    """Raised for any other OS-level failure to start the program."""

    def __init__(self, spec: CommandSpec, reason: str, cause: Optional[Exception] = None):
        super().__init__(spec, f"Failed to start {spec.program}: {reason}", cause)


class CommandRunner:
    """Starts a command in a working directory and waits for it to exit.

    Attributes:
        config: Timeout and termination settings.
    """

    def __init__(self, config: Optional[RunnerConfig] = None):
        self.config = config or RunnerConfig()
        self._active: set[asyncio.subprocess.Process] = set()

    @property
    def has_active_command(self) -> bool:
        """True while a started command has not yet been reaped."""
        return bool(self._active)

    async def run(self, spec: CommandSpec, working_dir: Path) -> CommandResult:
        """Execute spec with working_dir as its current directory.

        If the awaiting task is cancelled, the child is terminated before
        the cancellation propagates. A further cancellation while it is being
        terminated escalates to SIGKILL; the child is always reaped first.

        Args:
            spec: Command to run.
            working_dir: Existing directory used as the child's cwd.

        Returns:
            CommandResult with the exit status.

        Raises:
            ExecutableNotFoundError: If the program cannot be found.
            PermissionDeniedError: If the program is not executable.
            SpawnFailedError: If the process cannot be started otherwise.
        """
        start_time = time.monotonic()
        process = await self._start_process(spec, working_dir)
        self._active.add(process)

        try:
            timed_out = await self._wait_with_timeout(process)
        except asyncio.CancelledError:
            logger.warning("Interrupted, stopping command", command=str(spec), pid=process.pid)
            await self._stop_uninterruptibly(process)
            raise
        finally:
            self._active.discard(process)

        duration = time.monotonic() - start_time
        return self._build_result(spec, process.returncode, duration, timed_out)

    async def _start_process(
        self, spec: CommandSpec, working_dir: Path
    ) -> asyncio.subprocess.Process:
        """Launch the command with inherited standard streams.

        Raises:
            CommandLaunchError: If the process cannot be started.
        """
        if not Path(working_dir).is_dir():
            raise SpawnFailedError(spec, f"working directory does not exist: {working_dir}")

        logger.info("Starting command", command=str(spec), cwd=str(working_dir))

        try:
            return await asyncio.create_subprocess_exec(
                spec.program,
                *spec.args,
                cwd=str(working_dir),
                env=repository_free_environment(),
            )
        except FileNotFoundError as exc:
            raise ExecutableNotFoundError(spec, exc) from exc
        except PermissionError as exc:
            raise PermissionDeniedError(spec, exc) from exc
        except OSError as exc:
            raise SpawnFailedError(spec, str(exc), exc) from exc

    async def _wait_with_timeout(self, process: asyncio.subprocess.Process) -> bool:
        """Wait for the process, stopping it if the timeout expires.

        Returns:
            True if the process was stopped because of the timeout.
        """
        if self.config.timeout_seconds is None:
            await process.wait()
            return False

        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.timeout_seconds)
            return False
        except asyncio.TimeoutError:
            logger.error("Command timed out after %ss", self.config.timeout_seconds)
            await self._terminate(process)
            return True

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Send SIGTERM, then SIGKILL after the grace period, and reap."""
        if process.returncode is not None:
            return

        try:
            process.terminate()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(
                process.wait(), timeout=self.config.termination_grace_seconds
            )
        except asyncio.TimeoutError:
            logger.warning("Command ignored SIGTERM, killing", pid=process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def _stop_uninterruptibly(self, process: asyncio.subprocess.Process) -> None:
        """Run _terminate to completion even if cancelled again meanwhile.

        A repeated cancellation kills the child immediately instead of
        waiting out the grace period.
        """
        termination = asyncio.ensure_future(self._terminate(process))
        while not termination.done():
            try:
                await asyncio.shield(termination)
            except asyncio.CancelledError:
                if process.returncode is None:
                    logger.warning("Interrupted again, killing command", pid=process.pid)
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass

    def _build_result(
        self,
        spec: CommandSpec,
        exit_code: Optional[int],
        duration: float,
        timed_out: bool,
    ) -> CommandResult:
        result = CommandResult(
            exit_code=exit_code if exit_code is not None else -1,
            duration_seconds=duration,
            timed_out=timed_out,
        )

        if result.success:
            logger.info("Command completed in %.1fs", duration, command=str(spec))
        elif result.signal is not None:
            logger.warning(
                "Command terminated by signal %d after %.1fs",
                result.signal,
                duration,
                command=str(spec),
            )
        else:
            logger.warning(
                "Command exited with code %d after %.1fs",
                result.exit_code,
                duration,
                command=str(spec),
            )

        return result
