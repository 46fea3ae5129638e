"""Batch job lifecycle finite state machine.

Each status change of a batch job is validated here before
:class:`~adbulk.bulk.state.AsyncBulkStateManager` persists it. The FSM
performs no DB writes and has no callbacks.
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from adbulk.bulk.exceptions import InvalidJobTransitionError
from adbulk.models import JobStatus


class BatchJobSM(StateMachine):
    """Four-state lifecycle of a remote batch job.

    States:
        pending_result       -- Submitted; waiting for the platform to finish.
        pending_cancellation -- Platform reports it never started running.
        complete             -- Results reconciled for every submitted item.
        error                -- Submission, polling or reconciliation failed.

    The three settled states are final; an instance can still be created
    at any stored status with ``start_value``.
    """

    pending_result = State("pending_result", initial=True, value="pending_result")
    pending_cancellation = State("pending_cancellation", value="pending_cancellation", final=True)
    complete = State("complete", value="complete", final=True)
    error = State("error", value="error", final=True)

    finish = pending_result.to(complete)
    fail = pending_result.to(error)
    cancel = pending_result.to(pending_cancellation)


_EVENT_FOR_TARGET: dict[JobStatus, str] = {
    JobStatus.COMPLETE: "finish",
    JobStatus.ERROR: "fail",
    JobStatus.PENDING_CANCELLATION: "cancel",
}


def create_fsm(current_status: str) -> BatchJobSM:
    """Create an FSM instance at the given status value."""
    return BatchJobSM(start_value=current_status)


def validate_transition(current: JobStatus, target: JobStatus) -> None:
    """Check that a job may move from *current* to *target*.

    Raises:
        InvalidJobTransitionError: If the lifecycle forbids the change.
    """
    event = _EVENT_FOR_TARGET.get(target)
    if event is None:
        raise InvalidJobTransitionError(f"No transition leads to '{target.value}'")
    sm = create_fsm(current.value)
    try:
        sm.send(event)
    except TransitionNotAllowed as exc:
        raise InvalidJobTransitionError(
            f"Cannot move batch job from '{current.value}' to '{target.value}'"
        ) from exc
