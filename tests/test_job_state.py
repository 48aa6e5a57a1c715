"""
Tests for the JobStateMachine.

Covers forward transitions, the two reset paths, and the cancel/delete
rules derived from them.
"""

import pytest

from api.enums import JobStatus
from api.job_state import (
    ACTIVE_STATES,
    DELETABLE_STATES,
    NON_TERMINAL_STATES,
    TERMINAL_STATES,
    InvalidTransitionError,
    JobStateMachine,
    state_machine,
)


class TestStateSets:
    """Tests for the status groupings."""

    def test_state_sets_partition_statuses(self):
        """Test every status is either non-terminal or terminal, never both."""
        assert NON_TERMINAL_STATES | TERMINAL_STATES == set(JobStatus)
        assert not NON_TERMINAL_STATES & TERMINAL_STATES
        assert ACTIVE_STATES < NON_TERMINAL_STATES


class TestForwardTransitions:
    """Tests for the normal lifecycle."""

    def test_happy_path_in_order(self):
        """Test each stage leads to the next."""
        path = [
            JobStatus.PENDING,
            JobStatus.DOWNLOADING,
            JobStatus.PROCESSING,
            JobStatus.UPLOADING,
            JobStatus.COMPLETED,
        ]
        for current, target in zip(path, path[1:]):
            state_machine.validate_transition(current, target)

    def test_stages_cannot_be_skipped(self):
        """Test DOWNLOADING cannot jump to UPLOADING and PENDING cannot jump to PROCESSING."""
        assert not state_machine.can_transition(JobStatus.DOWNLOADING, JobStatus.UPLOADING)
        assert not state_machine.can_transition(JobStatus.PENDING, JobStatus.PROCESSING)
        assert not state_machine.can_transition(JobStatus.PROCESSING, JobStatus.COMPLETED)

    @pytest.mark.parametrize("status", ["PENDING", "DOWNLOADING", "PROCESSING", "UPLOADING"])
    def test_failed_reachable_from_non_terminal(self, status):
        """Test FAILED is reachable from any non-terminal state."""
        assert state_machine.can_transition(status, JobStatus.FAILED)

    @pytest.mark.parametrize("status", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED])
    def test_terminal_states_are_final(self, status):
        """Test no forward transition leaves a terminal state."""
        for target in JobStatus:
            if target == JobStatus.PENDING:
                continue
            assert not state_machine.can_transition(status, target)

    def test_invalid_transition_raises(self):
        """Test validate_transition raises with both states attached."""
        with pytest.raises(InvalidTransitionError) as exc_info:
            state_machine.validate_transition(JobStatus.COMPLETED, JobStatus.PROCESSING)
        assert exc_info.value.current == JobStatus.COMPLETED
        assert exc_info.value.target == JobStatus.PROCESSING
        assert "COMPLETED -> PROCESSING" in str(exc_info.value)


class TestResetPaths:
    """Tests for the stuck-job sweep and the admin restart."""

    @pytest.mark.parametrize("status", ["DOWNLOADING", "PROCESSING", "UPLOADING", "FAILED"])
    def test_reset_allowed(self, status):
        """Test active and FAILED jobs can go back to PENDING."""
        assert state_machine.can_reset(status)
        state_machine.validate_transition(status, JobStatus.PENDING)

    @pytest.mark.parametrize("status", ["PENDING", "COMPLETED", "CANCELLED"])
    def test_reset_rejected(self, status):
        """Test COMPLETED and CANCELLED are never reset."""
        assert not state_machine.can_reset(status)
        with pytest.raises(InvalidTransitionError):
            state_machine.validate_transition(status, JobStatus.PENDING)

    def test_predecessors_of_pending_are_reset_sources(self):
        """Test predecessors() reports the reset sources for PENDING."""
        assert state_machine.predecessors(JobStatus.PENDING) == ACTIVE_STATES | {JobStatus.FAILED}

    def test_predecessors_of_processing(self):
        assert state_machine.predecessors(JobStatus.PROCESSING) == {JobStatus.DOWNLOADING}


class TestCancelAndDelete:
    """Tests for the rules used by JobService."""

    @pytest.mark.parametrize("status", ["PENDING", "DOWNLOADING", "PROCESSING", "UPLOADING"])
    def test_cancel_allowed_before_terminal(self, status):
        assert state_machine.can_cancel(status)

    @pytest.mark.parametrize("status", ["COMPLETED", "FAILED", "CANCELLED"])
    def test_cancel_rejected_when_terminal(self, status):
        assert not state_machine.can_cancel(status)

    def test_delete_disallowed_while_active(self):
        """Test deleting an in-flight job is not allowed."""
        for status in ACTIVE_STATES:
            assert not state_machine.can_delete(status)

    def test_delete_allowed_otherwise(self):
        assert DELETABLE_STATES == {
            JobStatus.PENDING,
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.CANCELLED,
        }
        for status in DELETABLE_STATES:
            assert JobStateMachine().can_delete(status)

    def test_unknown_status_raises_value_error(self):
        with pytest.raises(ValueError):
            state_machine.can_delete("ARCHIVED")
