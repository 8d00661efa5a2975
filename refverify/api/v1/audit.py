"""
Audit log browsing (admin only).
"""

import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from refverify.api.deps import AdminUser, DbSession
from refverify.kernel.errors import ErrorKind
from refverify.kernel.events.audit_store import AuditLogStore
from refverify.kernel.models.audit_log import AuditAction
from refverify.schemas.common import ErrorResponse, PaginatedResponse
from refverify.schemas.submission import AuditEntryResponse

router = APIRouter(
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
    },
)


@router.get("", response_model=PaginatedResponse[AuditEntryResponse])
async def list_audit_entries(
    admin: AdminUser,
    db: DbSession,
    action: Optional[AuditAction] = None,
    actor_id: Optional[uuid.UUID] = None,
    resource_id: Optional[uuid.UUID] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
):
    """Every recorded change, newest first, filtered by action, actor, resource and time window."""
    if since and until and until <= since:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"detail": "'until' must be later than 'since'", "code": ErrorKind.VALIDATION_ERROR.value},
        )

    entries, total = await AuditLogStore(db).search(
        action=action,
        actor_id=actor_id,
        resource_id=resource_id,
        since=since,
        until=until,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    items = [AuditEntryResponse.model_validate(e) for e in entries]
    return PaginatedResponse.create(items=items, total=total, page=page, page_size=page_size)
