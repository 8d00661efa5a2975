"""
Decision table for the submission lifecycle.

Given the current state of a submission, the requested action and the actor,
``decide`` returns either ``Allowed`` (with the status the submission will
have afterwards) or ``Rejected`` (with an error kind). It does no I/O and
raises only when the stored state itself is corrupt.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from refverify.kernel.errors import CorruptSubmissionState, ErrorKind
from refverify.kernel.models.submission import FINAL_STATUSES, SubmissionStatus
from refverify.kernel.models.user import REVIEWER_ROLES, UserRole


class Action(str, Enum):
    """Lifecycle actions that can be requested on a submission."""
    APPROVE = "approve"
    REJECT = "reject"
    UPDATE_NOTES = "update_notes"
    DELETE = "delete"


# Actions that finalize a pending submission -> resulting status
_FINALIZING = {
    Action.APPROVE: SubmissionStatus.APPROVED,
    Action.REJECT: SubmissionStatus.REJECTED,
}


@dataclass(frozen=True)
class Actor:
    """The authenticated principal requesting an action."""

    user_id: uuid.UUID
    role: UserRole
    country: str


@dataclass(frozen=True)
class SubmissionState:
    """The slice of a submission the engine needs to decide."""

    status: SubmissionStatus
    country: str
    submitter_id: uuid.UUID


@dataclass(frozen=True)
class Allowed:
    next_status: SubmissionStatus


@dataclass(frozen=True)
class Rejected:
    kind: ErrorKind
    message: str


Decision = Union[Allowed, Rejected]


def _status_of(state: SubmissionState) -> SubmissionStatus:
    try:
        return SubmissionStatus(state.status)
    except ValueError:
        raise CorruptSubmissionState(f"unknown submission status {state.status!r}") from None


def can_review(actor: Actor, country: str) -> bool:
    """Admins review everything; verifiers only their own country."""
    role = UserRole(actor.role)
    if role == UserRole.ADMIN:
        return True
    return role == UserRole.VERIFIER and actor.country == country


def decide(state: Optional[SubmissionState], action: Action, actor: Actor) -> Decision:
    """Decide whether ``actor`` may perform ``action`` on a submission in ``state``."""
    if state is None:
        return Rejected(ErrorKind.NOT_FOUND, "Submission not found")

    current = _status_of(state)
    action = Action(action)

    if action in _FINALIZING:
        # Finality wins over scope: nobody may re-finalize.
        if current in FINAL_STATUSES:
            return Rejected(
                ErrorKind.ALREADY_FINALIZED,
                f"Submission has already been {current.value}",
            )
        if not can_review(actor, state.country):
            return Rejected(ErrorKind.FORBIDDEN, _scope_message(actor, state.country))
        return Allowed(_FINALIZING[action])

    if action == Action.UPDATE_NOTES:
        if not can_review(actor, state.country):
            return Rejected(ErrorKind.FORBIDDEN, _scope_message(actor, state.country))
        return Allowed(current)

    if action == Action.DELETE:
        if UserRole(actor.role) == UserRole.ADMIN:
            return Allowed(current)
        if actor.user_id == state.submitter_id and current == SubmissionStatus.PENDING:
            return Allowed(current)
        return Rejected(ErrorKind.FORBIDDEN, "Not authorized to delete this submission")

    raise CorruptSubmissionState(f"unhandled action {action!r}")


def _scope_message(actor: Actor, country: str) -> str:
    if UserRole(actor.role) in REVIEWER_ROLES:
        return f"Verifiers may only review submissions from their own country ({actor.country}), not {country}"
    return "Only verifiers and admins may review submissions"
