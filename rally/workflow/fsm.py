"""Rally state machine using transitions library.

Encodes which rally states can follow which, and persists the session after
every transition. The orchestrator drives it with named triggers:

    fsm = RallyFSM(session, store)
    fsm.start_review()       # initializing -> reviewer_reviewing
    fsm.request_fix()        # reviewer_reviewing -> reviewee_fix
    fsm.need_clarification() # reviewee_fix -> waiting_for_clarification
    fsm.resume_fix()         # waiting_for_clarification -> reviewee_fix
    fsm.start_review()       # reviewee_fix -> reviewer_reviewing
    fsm.approve()            # reviewer_reviewing -> completed
"""

import logging
from typing import Callable

from transitions import Machine, MachineError

from rally.lib.session import RallySession, SessionStore
from rally.workflow.state_machine import InvalidTransition, RallyState

logger = logging.getLogger(__name__)


STATES = [state.value for state in RallyState]

ACTIVE_STATES = [state.value for state in RallyState if state.is_active()]

TRANSITIONS = [
    # Review turn: first iteration, or after the reviewee is done
    {"trigger": "start_review", "source": "initializing", "dest": "reviewer_reviewing"},
    {"trigger": "start_review", "source": "reviewee_fix", "dest": "reviewer_reviewing"},

    # Review outcomes
    {"trigger": "approve", "source": "reviewer_reviewing", "dest": "completed"},
    {"trigger": "request_fix", "source": "reviewer_reviewing", "dest": "reviewee_fix"},

    # Reviewee needs a human
    {"trigger": "need_clarification", "source": "reviewee_fix", "dest": "waiting_for_clarification"},
    {"trigger": "need_permission", "source": "reviewee_fix", "dest": "waiting_for_permission"},
    {"trigger": "resume_fix", "source": "waiting_for_clarification", "dest": "reviewee_fix"},
    {"trigger": "resume_fix", "source": "waiting_for_permission", "dest": "reviewee_fix"},

    # Terminal exits from any active state
    {"trigger": "abort", "source": ACTIVE_STATES, "dest": "aborted"},
    {"trigger": "fail", "source": ACTIVE_STATES, "dest": "error"},
]


class RallyFSM:
    """State machine for one rally session.

    Wraps the transitions library with rally-specific logic:
    - Starts from the session's current state
    - Mirrors every transition into the session and persists it
    - Logs all transitions
    """

    def __init__(
        self,
        session: RallySession,
        store: SessionStore | None = None,
        on_transition: Callable[[RallyState, RallyState, str], None] | None = None,
        on_persist_error: Callable[[Exception], None] | None = None,
    ):
        """
        Args:
            session: Session to mirror state into
            store: Where to persist the session (None disables persistence)
            on_transition: Optional callback(from_state, to_state, trigger) called after transitions
            on_persist_error: Optional callback for a failed session write (never raised)
        """
        self.session = session
        self.store = store
        self.on_transition = on_transition
        self.on_persist_error = on_persist_error
        self.rally_id = f"{session.repo}#{session.pr_number}"

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=session.state.value,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    @property
    def current(self) -> RallyState:
        return RallyState(self.state)

    def save_state(self) -> bool:
        """Persist the session. Failures are logged and reported, never raised."""
        if self.store is None:
            return True
        try:
            self.store.write_session(self.session)
            return True
        except (OSError, ValueError) as e:
            logger.warning(f"[FSM] {self.rally_id}: Failed to write session: {e}")
            if self.on_persist_error:
                self.on_persist_error(e)
            return False

    def on_state_change(self, event) -> None:
        """Runs after every transition.

        Mirrors the new state into the session, persists it and logs the transition.
        """
        from_state = RallyState(event.transition.source)
        to_state = RallyState(event.transition.dest)
        trigger = event.event.name

        logger.info(f"[FSM] {self.rally_id}: {from_state.value} -> {to_state.value} ({trigger})")

        self.session.update_state(to_state)
        self.save_state()

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    def fire(self, trigger: str) -> RallyState:
        """Run a trigger by name.

        Raises:
            InvalidTransition: If the trigger isn't allowed from the current state
        """
        if not self.can(trigger):
            raise InvalidTransition(self.state, trigger, self.rally_id)
        try:
            getattr(self, trigger)()
        except MachineError as e:
            raise InvalidTransition(self.state, trigger, self.rally_id) from e
        return self.current

    def can(self, trigger: str) -> bool:
        """True if `trigger` is valid from the current state."""
        return trigger in self.machine.get_triggers(self.state)

    def get_available_triggers(self) -> list[str]:
        """Triggers valid from the current state."""
        return self.machine.get_triggers(self.state)
