"""Tests for rally.workflow.fsm module."""

import logging
from unittest.mock import MagicMock

import pytest

from rally.lib.session import RallySession, SessionStore
from rally.workflow.fsm import ACTIVE_STATES, STATES, TRANSITIONS, RallyFSM
from rally.workflow.state_machine import InvalidTransition, RallyState


def _fsm(tmp_path=None, state=RallyState.INITIALIZING, **kwargs):
    session = RallySession.new("octo/widgets", 42)
    session.state = state
    store = SessionStore(tmp_path) if tmp_path is not None else None
    return RallyFSM(session, store, **kwargs)


class TestFSMStates:
    """Tests for FSM state definitions."""

    def test_states_match_enum(self):
        assert set(STATES) == {s.value for s in RallyState}

    def test_terminal_states_have_no_exits(self):
        terminal = {"completed", "aborted", "error"}
        assert not terminal & set(ACTIVE_STATES)
        for t in TRANSITIONS:
            sources = t["source"] if isinstance(t["source"], list) else [t["source"]]
            assert not terminal & set(sources)


class TestFSMTransitions:
    """Tests for legal and illegal transitions."""

    def test_happy_path(self):
        fsm = _fsm()
        fsm.fire("start_review")
        fsm.fire("request_fix")
        fsm.fire("start_review")
        assert fsm.fire("approve") is RallyState.COMPLETED

    def test_clarification_round_trip(self):
        fsm = _fsm(state=RallyState.REVIEWEE_FIX)
        fsm.fire("need_clarification")
        assert fsm.current is RallyState.WAITING_FOR_CLARIFICATION
        fsm.fire("resume_fix")
        assert fsm.current is RallyState.REVIEWEE_FIX

    def test_permission_round_trip(self):
        fsm = _fsm(state=RallyState.REVIEWEE_FIX)
        fsm.fire("need_permission")
        assert fsm.current is RallyState.WAITING_FOR_PERMISSION
        assert fsm.fire("abort") is RallyState.ABORTED

    @pytest.mark.parametrize("state", [
        RallyState.INITIALIZING,
        RallyState.REVIEWER_REVIEWING,
        RallyState.REVIEWEE_FIX,
        RallyState.WAITING_FOR_CLARIFICATION,
        RallyState.WAITING_FOR_PERMISSION,
    ])
    def test_fail_from_any_active_state(self, state):
        assert _fsm(state=state).fire("fail") is RallyState.ERROR

    def test_cannot_approve_before_review(self):
        fsm = _fsm()
        with pytest.raises(InvalidTransition):
            fsm.fire("approve")
        assert fsm.current is RallyState.INITIALIZING

    def test_terminal_state_is_final(self):
        fsm = _fsm(state=RallyState.COMPLETED)
        assert fsm.get_available_triggers() == []
        with pytest.raises(InvalidTransition):
            fsm.fire("start_review")

    def test_no_auto_transitions(self):
        fsm = _fsm()
        assert not hasattr(fsm, "to_completed")

    def test_can(self):
        fsm = _fsm(state=RallyState.REVIEWER_REVIEWING)
        assert fsm.can("approve")
        assert fsm.can("request_fix")
        assert not fsm.can("resume_fix")


class TestFSMPersistence:
    """Tests for session mirroring and persistence."""

    def test_transition_updates_and_persists_session(self, tmp_path):
        fsm = _fsm(tmp_path)
        before = fsm.session.updated_at
        fsm.fire("start_review")

        assert fsm.session.state is RallyState.REVIEWER_REVIEWING
        assert fsm.session.updated_at > before
        stored = SessionStore(tmp_path).read_session("octo/widgets", 42)
        assert stored.state is RallyState.REVIEWER_REVIEWING

    def test_on_transition_callback(self):
        callback = MagicMock()
        fsm = _fsm(on_transition=callback)
        fsm.fire("start_review")
        callback.assert_called_once_with(RallyState.INITIALIZING, RallyState.REVIEWER_REVIEWING, "start_review")

    def test_persist_failure_is_not_raised(self, tmp_path, caplog):
        store = MagicMock()
        store.write_session.side_effect = OSError("read-only filesystem")
        on_error = MagicMock()
        session = RallySession.new("o/r", 1)
        fsm = RallyFSM(session, store, on_persist_error=on_error)

        with caplog.at_level(logging.WARNING):
            fsm.fire("start_review")

        assert fsm.current is RallyState.REVIEWER_REVIEWING
        assert "Failed to write session" in caplog.text
        on_error.assert_called_once()

    def test_save_state_without_store(self):
        assert _fsm().save_state() is True
