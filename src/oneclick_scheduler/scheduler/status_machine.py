"""
Status Machine

Legal job-state transitions. The store builds its conditional writes from
this table, so a transition not listed here can never be persisted.
"""
from typing import FrozenSet, Union

from .errors import ConflictError
from .models import JobStatus

TERMINAL_STATES: FrozenSet[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)

TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.EXECUTING, JobStatus.CANCELLED}),
    JobStatus.EXECUTING: frozenset({JobStatus.COMPLETED, JobStatus.PENDING, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

StatusLike = Union[JobStatus, str]


def _coerce(status: StatusLike) -> JobStatus:
    return status if isinstance(status, JobStatus) else JobStatus(status)


def can_transition(src: StatusLike, dst: StatusLike) -> bool:
    """Return True if src -> dst is an edge of the state machine."""
    return _coerce(dst) in TRANSITIONS[_coerce(src)]


def is_terminal(status: StatusLike) -> bool:
    return _coerce(status) in TERMINAL_STATES


def ensure_transition(src: StatusLike, dst: StatusLike) -> None:
    """Raise ConflictError unless src -> dst is allowed."""
    src, dst = _coerce(src), _coerce(dst)
    if dst not in TRANSITIONS[src]:
        raise ConflictError(f"Cannot move schedule from {src.value} to {dst.value}")


def sources_for(dst: StatusLike) -> FrozenSet[JobStatus]:
    """States from which dst can be entered."""
    dst = _coerce(dst)
    return frozenset(src for src, targets in TRANSITIONS.items() if dst in targets)
