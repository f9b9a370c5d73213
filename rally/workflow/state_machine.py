"""Rally states.

RallyState is the typed view of the FSM state strings in fsm.py. Every state
is either active (the rally can still move) or finished (terminal).

Usage:
    from rally.workflow.state_machine import RallyState, parse_state

    state = parse_state(session_json["state"])
    if state and state.is_finished():
        ...
"""

from enum import Enum

from rally.lib.errors import RallyError


class RallyState(Enum):
    """All valid rally states.

    Values match FSM state strings for compatibility.
    """

    INITIALIZING = "initializing"
    REVIEWER_REVIEWING = "reviewer_reviewing"
    REVIEWEE_FIX = "reviewee_fix"

    # Human-in-the-loop waits
    WAITING_FOR_CLARIFICATION = "waiting_for_clarification"
    WAITING_FOR_PERMISSION = "waiting_for_permission"

    # Terminal states
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERROR = "error"

    def is_finished(self) -> bool:
        return self in TERMINAL_STATES

    def is_active(self) -> bool:
        return not self.is_finished()


TERMINAL_STATES = frozenset({RallyState.COMPLETED, RallyState.ABORTED, RallyState.ERROR})


class InvalidTransition(RallyError):
    """Raised when attempting a transition the rally FSM does not allow."""

    def __init__(self, from_state: str, trigger: str, rally_id: str = ""):
        self.from_state = from_state
        self.trigger = trigger
        self.rally_id = rally_id
        super().__init__(
            f"Invalid transition: '{trigger}' from {from_state}"
            + (f" (rally: {rally_id})" if rally_id else "")
        )


def parse_state(status_str: str | None) -> RallyState | None:
    """Parse a state string into RallyState.

    Returns None if the state is unknown.
    """
    if status_str is None:
        return None
    for state in RallyState:
        if state.value == status_str:
            return state
    return None
