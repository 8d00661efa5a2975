"""Orchestration layer - transition decisions and the submission lifecycle."""

from refverify.orchestration.transition_engine import (
    Action,
    Actor,
    Allowed,
    Rejected,
    SubmissionState,
    decide,
)
from refverify.orchestration.lifecycle_service import (
    LifecycleService,
    RequestContext,
    TransitionOutcome,
)

__all__ = [
    "Action",
    "Actor",
    "Allowed",
    "Rejected",
    "SubmissionState",
    "decide",
    "LifecycleService",
    "RequestContext",
    "TransitionOutcome",
]
