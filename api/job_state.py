"""
Job State Machine - explicit lifecycle rules for processing jobs.

State Transition Diagram:
    PENDING ──> DOWNLOADING ──> PROCESSING ──> UPLOADING ──> COMPLETED
       │             │               │              │
       │             └───────────────┴──────────────┴──> FAILED
       └──────────────────────────────────────────────> FAILED
    PENDING/DOWNLOADING/PROCESSING/UPLOADING ──> CANCELLED (user action)

Reset paths (not normal transitions):
    DOWNLOADING/PROCESSING/UPLOADING ──> PENDING (stuck-job sweep)
    FAILED ──> PENDING (admin restart)

Usage:
    from api.job_state import state_machine

    state_machine.validate_transition(JobStatus.PENDING, JobStatus.DOWNLOADING)

JobRepository.transition() validates every requested move here, then re-checks
the current status in the same UPDATE statement.
"""

from typing import FrozenSet, Union

from api.enums import JobStatus

ACTIVE_STATES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.DOWNLOADING, JobStatus.PROCESSING, JobStatus.UPLOADING}
)
TERMINAL_STATES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)
NON_TERMINAL_STATES: FrozenSet[JobStatus] = frozenset({JobStatus.PENDING}) | ACTIVE_STATES

# Deleting an in-flight job would race the pipeline's writes
DELETABLE_STATES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.PENDING, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

_FORWARD_TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.DOWNLOADING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.DOWNLOADING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.UPLOADING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.UPLOADING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

_RESET_SOURCES = ACTIVE_STATES | frozenset({JobStatus.FAILED})


class InvalidTransitionError(Exception):
    """Raised when a requested status change is not allowed by the lifecycle."""

    def __init__(self, current: JobStatus, target: JobStatus):
        super().__init__(f"Invalid job transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def _as_status(value: Union[JobStatus, str]) -> JobStatus:
    return value if isinstance(value, JobStatus) else JobStatus(value)


class JobStateMachine:
    """
    Lifecycle rules for jobs.

    This class is stateless; all methods are pure functions over status values.
    """

    # =========================================================================
    # Transition Validation
    # =========================================================================

    def can_transition(self, current: Union[JobStatus, str], target: Union[JobStatus, str]) -> bool:
        """Check a normal forward transition (reset paths excluded)."""
        return _as_status(target) in _FORWARD_TRANSITIONS[_as_status(current)]

    def can_reset(self, current: Union[JobStatus, str]) -> bool:
        """Check whether a job may be put back to PENDING (stuck sweep or admin restart)."""
        return _as_status(current) in _RESET_SOURCES

    def can_delete(self, current: Union[JobStatus, str]) -> bool:
        return _as_status(current) in DELETABLE_STATES

    def can_cancel(self, current: Union[JobStatus, str]) -> bool:
        return self.can_transition(current, JobStatus.CANCELLED)

    def validate_transition(self, current: Union[JobStatus, str], target: Union[JobStatus, str]) -> None:
        """
        Raise InvalidTransitionError unless current -> target is allowed.

        PENDING as a target is accepted only from a reset source.
        """
        current = _as_status(current)
        target = _as_status(target)
        if target == JobStatus.PENDING:
            if not self.can_reset(current):
                raise InvalidTransitionError(current, target)
            return
        if not self.can_transition(current, target):
            raise InvalidTransitionError(current, target)

    def predecessors(self, target: Union[JobStatus, str]) -> FrozenSet[JobStatus]:
        """States from which target is reachable; used to build guarded UPDATEs."""
        target = _as_status(target)
        if target == JobStatus.PENDING:
            return _RESET_SOURCES
        return frozenset(s for s, allowed in _FORWARD_TRANSITIONS.items() if target in allowed)


# Module-level instance; the class holds no state
state_machine = JobStateMachine()
