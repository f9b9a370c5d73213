"""Tests for rally.workflow.state_machine module."""

from rally.workflow.state_machine import (
    TERMINAL_STATES,
    InvalidTransition,
    RallyState,
    parse_state,
)


class TestRallyState:
    """Tests for RallyState enum."""

    def test_terminal_states(self):
        assert TERMINAL_STATES == {RallyState.COMPLETED, RallyState.ABORTED, RallyState.ERROR}

    def test_finished_and_active_are_complementary(self):
        for state in RallyState:
            assert state.is_finished() != state.is_active()

    def test_waits_are_active(self):
        assert RallyState.WAITING_FOR_CLARIFICATION.is_active()
        assert RallyState.WAITING_FOR_PERMISSION.is_active()

    def test_values_are_snake_case(self):
        assert RallyState.REVIEWER_REVIEWING.value == "reviewer_reviewing"
        assert RallyState.REVIEWEE_FIX.value == "reviewee_fix"


class TestParseState:
    """Tests for parse_state."""

    def test_known(self):
        assert parse_state("completed") is RallyState.COMPLETED

    def test_unknown(self):
        assert parse_state("bogus") is None

    def test_none(self):
        assert parse_state(None) is None


class TestInvalidTransition:
    """Tests for InvalidTransition message."""

    def test_message_includes_rally(self):
        error = InvalidTransition("completed", "start_review", "o/r#1")
        assert "start_review" in str(error)
        assert "o/r#1" in str(error)
        assert error.from_state == "completed"
