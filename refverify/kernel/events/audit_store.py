"""
Audit log store: append-only writes, per-resource history and filtered browsing.

Entries are added to the caller's session and become visible only when the
caller's transaction commits, so a lifecycle change and its audit entry land
together or not at all.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from refverify.kernel.models.audit_log import AuditAction, AuditLogEntry


def _utc(moment: datetime, naive: bool) -> datetime:
    if moment.tzinfo is None:
        return moment
    moment = moment.astimezone(timezone.utc)
    return moment.replace(tzinfo=None) if naive else moment


class AuditLogStore:
    """
    Service for the immutable audit log.

    Usage:
        audit = AuditLogStore(session)
        audit.append(
            action=AuditAction.APPROVED,
            resource_id=submission.id,
            actor_id=actor.user_id,
            method="PATCH",
            details={"from_status": "pending", "to_status": "approved"},
        )
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    def append(
        self,
        action: AuditAction,
        resource_id: uuid.UUID,
        actor_id: uuid.UUID,
        method: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        resource_type: str = "submission",
    ) -> AuditLogEntry:
        """
        Stage one audit entry in the current transaction.

        Caller commits; nothing is written if the transaction rolls back.
        """
        entry = AuditLogEntry(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            actor_id=actor_id,
            method=method,
            ip_address=ip_address,
            details=self._serialize(details or {}),
        )
        self.session.add(entry)
        return entry

    async def history(
        self,
        resource_id: uuid.UUID,
        resource_type: str = "submission",
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        """Entries for one resource, oldest first (causal order)."""
        query = (
            select(AuditLogEntry)
            .where(
                AuditLogEntry.resource_type == resource_type,
                AuditLogEntry.resource_id == resource_id,
            )
            .order_by(AuditLogEntry.id)
            .limit(limit)
        )
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def search(
        self,
        action: Optional[AuditAction] = None,
        actor_id: Optional[uuid.UUID] = None,
        resource_id: Optional[uuid.UUID] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[AuditLogEntry], int]:
        """
        Browse the whole log, newest first.

        ``since`` is inclusive and ``until`` exclusive. Returns the page of
        entries and the total number of matches.
        """
        # SQLite stores server timestamps as naive UTC text
        naive = self.session.bind.dialect.name == "sqlite"
        conditions = []
        if action:
            conditions.append(AuditLogEntry.action == action.value)
        if actor_id:
            conditions.append(AuditLogEntry.actor_id == actor_id)
        if resource_id:
            conditions.append(AuditLogEntry.resource_id == resource_id)
        if since:
            conditions.append(AuditLogEntry.created_at >= _utc(since, naive))
        if until:
            conditions.append(AuditLogEntry.created_at < _utc(until, naive))

        total = (
            await self.session.execute(select(func.count(AuditLogEntry.id)).where(*conditions))
        ).scalar() or 0
        result = await self.session.execute(
            select(AuditLogEntry)
            .where(*conditions)
            .order_by(AuditLogEntry.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def count(
        self,
        resource_id: Optional[uuid.UUID] = None,
        action: Optional[AuditAction] = None,
        actor_id: Optional[uuid.UUID] = None,
    ) -> int:
        """Count entries matching the given criteria."""
        query = select(func.count(AuditLogEntry.id))
        if resource_id:
            query = query.where(AuditLogEntry.resource_id == resource_id)
        if action:
            query = query.where(AuditLogEntry.action == action)
        if actor_id:
            query = query.where(AuditLogEntry.actor_id == actor_id)
        result = await self.session.execute(query)
        return result.scalar() or 0

    def _serialize(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Convert payload values to JSON-serializable types."""
        result = {}
        for key, value in payload.items():
            if isinstance(value, uuid.UUID):
                result[key] = str(value)
            elif isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, dict):
                result[key] = self._serialize(value)
            elif hasattr(value, "value"):
                result[key] = value.value
            else:
                result[key] = value
        return result
