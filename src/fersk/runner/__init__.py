"""Command subprocess runner.

This module manages execution of the caller's command:
- Subprocess invocation with the workspace as working directory
- Inherited stdin/stdout/stderr for transparent passthrough
- Exit status capture, including signal termination
- Optional timeout and termination on interruption
"""

from fersk.runner.command import (
    CommandLaunchError,
    CommandResult,
    CommandRunner,
    CommandSpec,
    ExecutableNotFoundError,
    PermissionDeniedError,
    RunnerConfig,
    SpawnFailedError,
)

__all__ = [
    "CommandLaunchError",
    "CommandResult",
    "CommandRunner",
    "CommandSpec",
    "ExecutableNotFoundError",
    "PermissionDeniedError",
    "RunnerConfig",
    "SpawnFailedError",
]
