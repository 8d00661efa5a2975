"""
Immutable audit log for submission lifecycle changes.

One row per committed change, written in the same transaction as the change
itself. Rows are never updated or deleted; the mapper events below make the
ORM refuse to try.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, JSON, String, Uuid, event, func
from sqlalchemy.orm import Mapped, mapped_column

from refverify.kernel.models.base import Base


class AuditAction(str, Enum):
    """Actions recorded in the audit log."""
    CREATED = "created"
    APPROVED = "approved"
    REJECTED = "rejected"
    UPDATED = "updated"
    DELETED = "deleted"


class AuditLogEntry(Base):
    """
    Append-only audit record.

    ``id`` is assigned by the database in insertion order, so ordering by it
    gives the causal order of committed changes.
    """

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    # Actor
    actor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        nullable=False,
        index=True,
    )

    action: Mapped[AuditAction] = mapped_column(
        String(20),
        nullable=False,
    )

    # Resource reference
    resource_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="submission",
    )
    resource_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(),
        nullable=False,
    )

    # Request metadata
    method: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(
        String(45),  # IPv6 max length
        nullable=True,
    )

    details: Mapped[dict] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    __table_args__ = (
        Index("ix_audit_log_resource", "resource_type", "resource_id"),
        Index("ix_audit_log_actor_time", "actor_id", "created_at"),
    )

    def __repr__(self) -> str:
        action = self.action.value if hasattr(self.action, "value") else self.action
        return f"<AuditLogEntry #{self.id} {action} {self.resource_type}:{self.resource_id}>"


class AuditLogImmutableError(RuntimeError):
    """Raised when code attempts to modify or remove an audit entry."""


@event.listens_for(AuditLogEntry, "before_update")
def _reject_update(mapper, connection, target):
    raise AuditLogImmutableError(f"audit entry {target.id} is append-only")


@event.listens_for(AuditLogEntry, "before_delete")
def _reject_delete(mapper, connection, target):
    raise AuditLogImmutableError(f"audit entry {target.id} is append-only")
