"""Invocation state machine.

This module tracks one invocation through its lifecycle:
- idle → provisioning → executing → cleaning → done
- provisioning → cleaning on failure or interruption

History is kept in memory for the duration of the invocation only.
"""

from fersk.state.machine import InvalidTransitionError, InvocationStateMachine
from fersk.state.models import (
    EXIT_COMMAND_NOT_EXECUTABLE,
    EXIT_COMMAND_NOT_FOUND,
    EXIT_PROVISION_FAILED,
    EXIT_TIMED_OUT,
    VALID_TRANSITIONS,
    InvocationOutcome,
    InvocationStage,
    OutcomeStatus,
    StageTransition,
    is_terminal_stage,
    is_valid_transition,
)

__all__ = [
    # Models
    "InvocationOutcome",
    "InvocationStage",
    "OutcomeStatus",
    "StageTransition",
    "VALID_TRANSITIONS",
    "is_terminal_stage",
    "is_valid_transition",
    # Exit codes
    "EXIT_COMMAND_NOT_EXECUTABLE",
    "EXIT_COMMAND_NOT_FOUND",
    "EXIT_PROVISION_FAILED",
    "EXIT_TIMED_OUT",
    # State machine
    "InvalidTransitionError",
    "InvocationStateMachine",
]
