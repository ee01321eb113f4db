"""Transition tables for tasks and change requests."""

from __future__ import annotations

from typing import Dict, FrozenSet

from taskweave.exceptions_unified import InvalidTransitionError
from taskweave.models import ChangeRequestStatus, TaskStatus

_T = TaskStatus
_C = ChangeRequestStatus

TASK_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    _T.PENDING: frozenset({_T.READY, _T.BLOCKED, _T.CANCELLED}),
    _T.READY: frozenset({_T.IN_PROGRESS, _T.PENDING, _T.BLOCKED, _T.CANCELLED}),
    _T.IN_PROGRESS: frozenset({_T.IN_REVIEW, _T.READY, _T.BLOCKED, _T.CANCELLED}),
    _T.IN_REVIEW: frozenset({_T.COMPLETED, _T.READY, _T.BLOCKED, _T.CANCELLED}),
    _T.BLOCKED: frozenset({_T.READY, _T.PENDING, _T.CANCELLED}),
    _T.COMPLETED: frozenset(),
    _T.CANCELLED: frozenset(),
}

CHANGE_REQUEST_TRANSITIONS: Dict[ChangeRequestStatus, FrozenSet[ChangeRequestStatus]] = {
    _C.DRAFT: frozenset({_C.READY_FOR_REVIEW, _C.CHANGES_REQUESTED, _C.CLOSED}),
    _C.READY_FOR_REVIEW: frozenset({_C.APPROVED, _C.CHANGES_REQUESTED, _C.CLOSED}),
    # APPROVED → READY_FOR_REVIEW: the branch changed under an approval
    _C.APPROVED: frozenset({_C.MERGED, _C.READY_FOR_REVIEW, _C.CHANGES_REQUESTED, _C.CLOSED}),
    _C.CHANGES_REQUESTED: frozenset({_C.READY_FOR_REVIEW, _C.CLOSED}),
    _C.MERGED: frozenset(),
    _C.CLOSED: frozenset(),
}


def can_transition_task(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TASK_TRANSITIONS[current]


def can_transition_change_request(current: ChangeRequestStatus, target: ChangeRequestStatus) -> bool:
    return target in CHANGE_REQUEST_TRANSITIONS[current]


def validate_task_transition(task_id: str, current: TaskStatus, target: TaskStatus) -> None:
    if not can_transition_task(current, target):
        raise InvalidTransitionError(
            f"Task {task_id}: {current.value} -> {target.value} is not allowed",
            details={"task_id": task_id, "from": current.value, "to": target.value},
        )


def validate_change_request_transition(
    cr_id: str, current: ChangeRequestStatus, target: ChangeRequestStatus
) -> None:
    if not can_transition_change_request(current, target):
        raise InvalidTransitionError(
            f"Change request {cr_id}: {current.value} -> {target.value} is not allowed",
            details={"change_request_id": cr_id, "from": current.value, "to": target.value},
        )
