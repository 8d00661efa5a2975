"""
Kernel Data Models

Core SQLAlchemy models: users, submissions and the append-only audit log.
"""

from refverify.kernel.models.base import Base, TimestampMixin, SoftDeleteMixin, generate_uuid, enum_value
from refverify.kernel.models.user import User, UserRole, REVIEWER_ROLES
from refverify.kernel.models.submission import (
    Submission,
    SubmissionStatus,
    SourceCategory,
    MediaType,
    Credibility,
    FINAL_STATUSES,
)
from refverify.kernel.models.audit_log import AuditLogEntry, AuditAction, AuditLogImmutableError

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "SoftDeleteMixin",
    "generate_uuid",
    "enum_value",
    # User
    "User",
    "UserRole",
    "REVIEWER_ROLES",
    # Submission
    "Submission",
    "SubmissionStatus",
    "SourceCategory",
    "MediaType",
    "Credibility",
    "FINAL_STATUSES",
    # Audit
    "AuditLogEntry",
    "AuditAction",
    "AuditLogImmutableError",
]
