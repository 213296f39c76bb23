"""Invocation state machine models.

This module defines the data models for one invocation's lifecycle:
- InvocationStage: Enum of lifecycle stages
- StageTransition: Record of a transition with timestamp and details
- InvocationOutcome: The single result an invocation produces
- VALID_TRANSITIONS: Map defining allowed stage transitions

The models use Pydantic for validation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from fersk.runner.command import CommandResult, ExecutableNotFoundError

EXIT_TIMED_OUT = 124
EXIT_PROVISION_FAILED = 125
EXIT_COMMAND_NOT_EXECUTABLE = 126
EXIT_COMMAND_NOT_FOUND = 127


class InvocationStage(str, Enum):
    """Stages an invocation passes through.

    Stage Flow:
        idle → provisioning → executing → cleaning → done

    Provisioning may skip straight to cleaning on failure or interruption.
    Cleaning always runs before done.

    Attributes:
        IDLE: Nothing allocated yet.
        PROVISIONING: Workspace path allocated, repository being extracted.
        EXECUTING: Command running inside the workspace.
        CLEANING: Workspace being removed.
        DONE: Invocation finished; workspace gone unless cleanup failed.
    """

    IDLE = "idle"
    PROVISIONING = "provisioning"
    EXECUTING = "executing"
    CLEANING = "cleaning"
    DONE = "done"


class OutcomeStatus(str, Enum):
    """Which of the mutually exclusive results an invocation produced.

    Attributes:
        COMPLETED: The command ran; its exit status is the result.
        LAUNCH_FAILED: The workspace was ready but the command could not start.
        PROVISION_FAILED: The workspace could not be provisioned.
    """

    COMPLETED = "completed"
    LAUNCH_FAILED = "launch_failed"
    PROVISION_FAILED = "provision_failed"


class StageTransition(BaseModel):
    """Record of a stage transition within one invocation.

    Attributes:
        from_stage: The stage before the transition.
        to_stage: The stage after the transition.
        timestamp: When the transition occurred (UTC).
        details: Optional metadata about the transition (error info,
            workspace path, exit code).
    """

    from_stage: InvocationStage = Field(
        ...,
        description="The stage before this transition",
    )

    to_stage: InvocationStage = Field(
        ...,
        description="The stage after this transition",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the transition occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Optional metadata about the transition",
    )


class InvocationOutcome(BaseModel):
    """The result of one invocation.

    Exactly one of ``result``, a launch error or a provisioning error is
    present, as selected by ``status``. ``cleanup_error`` is advisory and
    never changes the primary result.

    Attributes:
        status: Which kind of result this is.
        source_path: Source path the invocation was started with.
        workspace_path: Workspace directory allocated for the invocation.
        command: Argument vector of the executed command.
        result: Exit status of the command when it ran.
        error: The provisioning or launch error when it did not.
        cleanup_error: Failure to remove the workspace, if any.
        stage: Final stage reached.
        state_history: Ordered list of stage transitions.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    status: OutcomeStatus

    source_path: str = Field(..., min_length=1)

    workspace_path: str = Field(..., min_length=1)

    command: List[str] = Field(default_factory=list)

    result: Optional[CommandResult] = None

    error: Optional[Exception] = None

    cleanup_error: Optional[Exception] = None

    stage: InvocationStage = InvocationStage.DONE

    state_history: List[StageTransition] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_single_result(self) -> "InvocationOutcome":
        """Ensure the populated fields match the status."""
        if self.status is OutcomeStatus.COMPLETED:
            if self.result is None or self.error is not None:
                raise ValueError("completed outcome requires a result and no error")
        elif self.error is None or self.result is not None:
            raise ValueError(f"{self.status.value} outcome requires an error and no result")
        return self

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.COMPLETED and self.result.success

    @property
    def exit_code(self) -> int:
        """Exit code the invoking process should terminate with.

        The command's own status is forwarded unchanged. Failures before
        the command ran map to distinguished codes.
        """
        if self.status is OutcomeStatus.PROVISION_FAILED:
            return EXIT_PROVISION_FAILED
        if self.status is OutcomeStatus.LAUNCH_FAILED:
            if isinstance(self.error, ExecutableNotFoundError):
                return EXIT_COMMAND_NOT_FOUND
            return EXIT_COMMAND_NOT_EXECUTABLE
        if self.result.timed_out:
            return EXIT_TIMED_OUT
        return self.result.shell_exit_code


# Valid stage transitions map
#
# - PROVISIONING → CLEANING covers provisioning failure and interruption
# - EXECUTING always ends in CLEANING
# - DONE is terminal
VALID_TRANSITIONS: Dict[InvocationStage, List[InvocationStage]] = {
    InvocationStage.IDLE: [
        InvocationStage.PROVISIONING,
    ],
    InvocationStage.PROVISIONING: [
        InvocationStage.EXECUTING,
        InvocationStage.CLEANING,
    ],
    InvocationStage.EXECUTING: [
        InvocationStage.CLEANING,
    ],
    InvocationStage.CLEANING: [
        InvocationStage.DONE,
    ],
    InvocationStage.DONE: [],
}


def is_valid_transition(from_stage: InvocationStage, to_stage: InvocationStage) -> bool:
    """Check if a stage transition is allowed.

    Example:
        >>> is_valid_transition(InvocationStage.IDLE, InvocationStage.PROVISIONING)
        True
        >>> is_valid_transition(InvocationStage.EXECUTING, InvocationStage.DONE)
        False
    """
    valid_targets = VALID_TRANSITIONS.get(from_stage, [])
    return to_stage in valid_targets


def is_terminal_stage(stage: InvocationStage) -> bool:
    """Check if a stage has no outgoing transitions."""
    return len(VALID_TRANSITIONS.get(stage, [])) == 0
