"""Invocation orchestrator driving provision → execute → cleanup.

Allocates a workspace, provisions it from the source repository, runs the
caller's command inside it and removes it again. Removal happens in a single
``finally`` block, so the workspace is deleted on success, on command
failure, on provisioning or launch failure, and when the invocation is
cancelled by a signal.

Provisioning and launch errors become the invocation's result. A cleanup
failure is attached to the result as an advisory error and never replaces it.

Source:
- fersk/provisioner/workspace.py (WorkspaceProvisioner)
- fersk/runner/command.py (CommandRunner)
- fersk/state/machine.py (InvocationStateMachine)
"""

import os
import shutil
import stat
import sys
from pathlib import Path
from typing import Optional

import structlog

from fersk.provisioner.workspace import (
    TargetUnavailableError,
    WorkspaceProvisioner,
    WorkspaceProvisionError,
)
from fersk.runner.command import CommandLaunchError, CommandResult, CommandRunner, CommandSpec
from fersk.state.machine import InvocationStateMachine
from fersk.state.models import InvocationOutcome, InvocationStage, OutcomeStatus

logger = structlog.get_logger(__name__)


class WorkspaceCleanupError(Exception):
    """Raised when a workspace directory cannot be removed.

    Attributes:
        path: The workspace directory.
        cause: Underlying OS error, if any.
    """

    def __init__(self, path: Path, cause: Optional[Exception] = None):
        self.path = path
        self.cause = cause
        message = f"Failed to remove workspace {path}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class LifecycleOrchestrator:
    """Runs one command in a disposable copy of a repository.

    Holds no state between invocations; concurrent calls to run() on the
    same instance use independent workspaces.

    Attributes:
        provisioner: Creates workspaces from the source repository.
        runner: Executes the command inside the workspace.
    """

    def __init__(self, provisioner: WorkspaceProvisioner, runner: CommandRunner):
        self.provisioner = provisioner
        self.runner = runner

    async def run(self, source_path: Path, spec: CommandSpec) -> InvocationOutcome:
        """Provision a workspace from source_path, run spec in it, clean up.

        Args:
            source_path: Any path inside the source repository.
            spec: The command to execute.

        Returns:
            InvocationOutcome with the command's exit status, or the
            provisioning or launch error.

        Raises:
            asyncio.CancelledError: If the invocation was interrupted. The
                workspace has been removed by the time this propagates.
        """
        source_path = Path(source_path)
        workspace_path = self.provisioner.build_workspace_path(source_path)
        machine = InvocationStateMachine(invocation_id=workspace_path.name)

        machine.transition(
            InvocationStage.PROVISIONING,
            details={"workspace": str(workspace_path), "source": str(source_path)},
        )

        cleanup_error: Optional[WorkspaceCleanupError] = None
        error: Optional[Exception] = None
        try:
            status, result, error = await self._provision_and_execute(
                machine, source_path, workspace_path, spec
            )
        finally:
            # A target rejected as unavailable was never ours to delete.
            owned = not isinstance(error, TargetUnavailableError)
            cleanup_error = self._clean_up(machine, workspace_path, remove=owned)

        return InvocationOutcome(
            status=status,
            source_path=str(source_path),
            workspace_path=str(workspace_path),
            command=spec.argv,
            result=result,
            error=error,
            cleanup_error=cleanup_error,
            stage=machine.stage,
            state_history=machine.history,
        )

    async def _provision_and_execute(
        self,
        machine: InvocationStateMachine,
        source_path: Path,
        workspace_path: Path,
        spec: CommandSpec,
    ) -> tuple[OutcomeStatus, Optional[CommandResult], Optional[Exception]]:
        """Run the provisioning and executing stages.

        Leaves the machine in CLEANING on every normal return.
        """
        try:
            workspace = await self.provisioner.provision(source_path, workspace_path)
        except WorkspaceProvisionError as exc:
            logger.error("Provisioning failed", error=str(exc), workspace=str(workspace_path))
            machine.transition(
                InvocationStage.CLEANING,
                details={"error": str(exc), "error_type": type(exc).__name__},
            )
            return OutcomeStatus.PROVISION_FAILED, None, exc

        machine.transition(
            InvocationStage.EXECUTING,
            details={"head": workspace.head.commit, "command": spec.argv},
        )

        try:
            result = await self.runner.run(spec, workspace.path)
        except CommandLaunchError as exc:
            logger.error("Command could not be started", error=str(exc))
            machine.transition(
                InvocationStage.CLEANING,
                details={"error": str(exc), "error_type": type(exc).__name__},
            )
            return OutcomeStatus.LAUNCH_FAILED, None, exc

        machine.transition(
            InvocationStage.CLEANING,
            details={"exit_code": result.exit_code, "timed_out": result.timed_out},
        )
        return OutcomeStatus.COMPLETED, result, None

    def _clean_up(
        self, machine: InvocationStateMachine, workspace_path: Path, remove: bool = True
    ) -> Optional[WorkspaceCleanupError]:
        """Remove the workspace and finish the state machine.

        Reached on every exit path, including cancellation, in which case
        the machine is still in PROVISIONING or EXECUTING. With remove=False
        the directory is left untouched.
        """
        if machine.stage is not InvocationStage.CLEANING:
            logger.warning(
                "Invocation interrupted, cleaning up",
                stage=machine.stage.value,
                workspace=str(workspace_path),
            )
            machine.transition(InvocationStage.CLEANING, details={"interrupted": True})

        cleanup_error: Optional[WorkspaceCleanupError] = None
        if not remove:
            logger.info("Leaving pre-existing target in place", workspace=str(workspace_path))
        else:
            try:
                remove_workspace(workspace_path)
            except WorkspaceCleanupError as exc:
                logger.warning(
                    "Workspace cleanup failed", error=str(exc), workspace=str(workspace_path)
                )
                cleanup_error = exc

        machine.transition(
            InvocationStage.DONE,
            details={"cleanup_error": str(cleanup_error)} if cleanup_error else None,
        )
        return cleanup_error


def remove_workspace(workspace_path: Path) -> None:
    """Recursively delete a workspace directory.

    Read-only entries (git marks object files read-only) are made writable
    and removal is retried. A missing directory is not an error.

    Raises:
        WorkspaceCleanupError: If the directory still exists afterwards.
    """
    if not os.path.lexists(workspace_path):
        return

    try:
        if sys.version_info >= (3, 12):
            shutil.rmtree(workspace_path, onexc=_make_writable_and_retry)
        else:
            shutil.rmtree(workspace_path, onerror=_make_writable_and_retry)
    except OSError as exc:
        raise WorkspaceCleanupError(workspace_path, exc) from exc

    if os.path.lexists(workspace_path):
        raise WorkspaceCleanupError(workspace_path)

    logger.debug("Removed workspace", workspace=str(workspace_path))


def _make_writable_and_retry(func, path, _exc) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.chmod(parent, os.stat(parent).st_mode | stat.S_IWUSR | stat.S_IXUSR)
    if not os.path.islink(path):
        os.chmod(path, os.stat(path).st_mode | stat.S_IRWXU)
    func(path)
