"""
Audit trail and domain events.

The audit store is the durable record of lifecycle changes; domain events are
the transient notifications published after a change commits.
"""

from refverify.kernel.events.audit_store import AuditLogStore
from refverify.kernel.events.event_types import (
    ActorSnapshot,
    BaseEvent,
    SubmissionCreated,
    SubmissionDeleted,
    SubmissionEvent,
    SubmissionSnapshot,
    SubmissionTransitioned,
    SubmissionUpdated,
    SystemNotice,
)

__all__ = [
    "AuditLogStore",
    "ActorSnapshot",
    "BaseEvent",
    "SubmissionCreated",
    "SubmissionDeleted",
    "SubmissionEvent",
    "SubmissionSnapshot",
    "SubmissionTransitioned",
    "SubmissionUpdated",
    "SystemNotice",
]
