"""Invocation state machine implementation.

Tracks one invocation through its lifecycle stages, rejecting transitions
that are not in VALID_TRANSITIONS and recording a timestamped history.
The machine lives only as long as its invocation; nothing is persisted.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from fersk.state.models import (
    InvocationStage,
    StageTransition,
    is_terminal_stage,
    is_valid_transition,
)

logger = structlog.get_logger(__name__)


class InvalidTransitionError(Exception):
    """Raised when an invalid stage transition is attempted.

    Attributes:
        from_stage: The current stage.
        to_stage: The attempted target stage.
        message: Human-readable error message.
    """

    def __init__(
        self,
        from_stage: InvocationStage,
        to_stage: InvocationStage,
        message: Optional[str] = None,
    ):
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.message = message or (
            f"Invalid transition from {from_stage.value} to {to_stage.value}"
        )
        super().__init__(self.message)


class InvocationStateMachine:
    """State machine for a single invocation.

    Invariants:
    - Only transitions listed in VALID_TRANSITIONS are accepted
    - Every transition is appended to history with a UTC timestamp
    - DONE is final

    Example:
        >>> machine = InvocationStateMachine()
        >>> _ = machine.transition(InvocationStage.PROVISIONING)
        >>> machine.stage
        <InvocationStage.PROVISIONING: 'provisioning'>
    """

    def __init__(self, invocation_id: Optional[str] = None):
        self.invocation_id = invocation_id
        self._stage = InvocationStage.IDLE
        self._history: List[StageTransition] = []

    @property
    def stage(self) -> InvocationStage:
        return self._stage

    @property
    def history(self) -> List[StageTransition]:
        return list(self._history)

    @property
    def is_done(self) -> bool:
        return is_terminal_stage(self._stage)

    def can_transition(self, to_stage: InvocationStage) -> bool:
        return is_valid_transition(self._stage, to_stage)

    def transition(
        self,
        to_stage: InvocationStage,
        details: Optional[Dict[str, Any]] = None,
    ) -> StageTransition:
        """Move the invocation to to_stage.

        Args:
            to_stage: The target stage.
            details: Optional metadata stored with the transition.

        Returns:
            The recorded transition.

        Raises:
            InvalidTransitionError: If the transition is not allowed.
        """
        from_stage = self._stage

        if not is_valid_transition(from_stage, to_stage):
            logger.warning(
                "Invalid stage transition attempted",
                invocation_id=self.invocation_id,
                from_stage=from_stage.value,
                to_stage=to_stage.value,
            )
            raise InvalidTransitionError(from_stage, to_stage)

        record = StageTransition(
            from_stage=from_stage,
            to_stage=to_stage,
            timestamp=datetime.now(timezone.utc),
            details=details or {},
        )
        self._history.append(record)
        self._stage = to_stage

        logger.debug(
            "Invocation stage changed",
            invocation_id=self.invocation_id,
            from_stage=from_stage.value,
            to_stage=to_stage.value,
        )

        return record
