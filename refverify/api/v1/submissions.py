"""
Submission endpoints: the public directory, the review queue and lifecycle
actions.

Every state change goes through the lifecycle service, which owns its own
unit of work; the request session is only used for reads here.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Query, status
from sqlalchemy import func, select

from refverify.api.deps import (
    AuditContext,
    CurrentActor,
    CurrentUser,
    DbSession,
    Lifecycle,
    ReviewerUser,
    raise_failure,
)
from refverify.kernel.events.audit_store import AuditLogStore
from refverify.kernel.models.base import enum_value
from refverify.kernel.models.submission import SourceCategory, Submission, SubmissionStatus
from refverify.kernel.models.user import UserRole
from refverify.orchestration.lifecycle_service import TransitionOutcome
from refverify.schemas.common import ErrorResponse, PaginatedResponse, SuccessResponse
from refverify.schemas.submission import (
    ApproveRequest,
    AuditEntryResponse,
    BatchItemResult,
    BatchRequest,
    BatchResponse,
    CountryCount,
    NotesUpdate,
    RejectRequest,
    SubmissionCreate,
    SubmissionResponse,
    SubmissionStats,
)

router = APIRouter(
    responses={
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)

TOP_COUNTRIES = 10


def _submission_or_raise(outcome: TransitionOutcome) -> SubmissionResponse:
    if not outcome.ok:
        raise_failure(outcome.failure)
    return SubmissionResponse.model_validate(outcome.submission)


@router.post("", response_model=SubmissionResponse, status_code=status.HTTP_201_CREATED)
async def create_submission(
    data: SubmissionCreate,
    actor: CurrentActor,
    lifecycle: Lifecycle,
    context: AuditContext,
):
    """Propose a new reference source. It starts out pending review."""
    submission = await lifecycle.create_submission(data, actor, context)
    return SubmissionResponse.model_validate(submission)


@router.get("", response_model=PaginatedResponse[SubmissionResponse])
async def list_submissions(
    db: DbSession,
    country: Optional[str] = Query(None, min_length=2, max_length=8),
    category: Optional[SourceCategory] = None,
    status_filter: SubmissionStatus = Query(SubmissionStatus.APPROVED, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    """Browse the directory. Defaults to approved sources."""
    conditions = [
        Submission.deleted_at.is_(None),
        Submission.status == status_filter.value,
    ]
    if country:
        conditions.append(Submission.country == country.upper())
    if category:
        conditions.append(Submission.category == category.value)

    total = (
        await db.execute(select(func.count(Submission.id)).where(*conditions))
    ).scalar() or 0
    result = await db.execute(
        select(Submission)
        .where(*conditions)
        .order_by(Submission.created_at.desc(), Submission.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = [SubmissionResponse.model_validate(s) for s in result.scalars().all()]
    return PaginatedResponse.create(items=items, total=total, page=page, page_size=page_size)


@router.get("/stats", response_model=SubmissionStats)
async def submission_stats(db: DbSession):
    """Directory totals by status and category, plus the busiest countries."""
    live = Submission.deleted_at.is_(None)

    by_status = {
        row[0]: row[1]
        for row in await db.execute(
            select(Submission.status, func.count(Submission.id)).where(live).group_by(Submission.status)
        )
    }
    by_category = {
        row[0]: row[1]
        for row in await db.execute(
            select(Submission.category, func.count(Submission.id)).where(live).group_by(Submission.category)
        )
    }
    count = func.count(Submission.id).label("count")
    top = await db.execute(
        select(Submission.country, count)
        .where(live)
        .group_by(Submission.country)
        .order_by(count.desc(), Submission.country)
        .limit(TOP_COUNTRIES)
    )

    return SubmissionStats(
        total=sum(by_status.values()),
        by_status=by_status,
        by_category=by_category,
        top_countries=[CountryCount(country=row[0], count=row[1]) for row in top],
    )


@router.get("/pending", response_model=PaginatedResponse[SubmissionResponse])
async def pending_queue(
    user: ReviewerUser,
    db: DbSession,
    country: Optional[str] = Query(None, min_length=2, max_length=8),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
):
    """
    Review queue, oldest first.

    Verifiers only ever see their own country; admins see every country or
    the one they filter on.
    """
    if enum_value(user.role) == UserRole.VERIFIER.value:
        country = user.country
    conditions = [
        Submission.deleted_at.is_(None),
        Submission.status == SubmissionStatus.PENDING.value,
    ]
    if country:
        conditions.append(Submission.country == country.upper())

    total = (
        await db.execute(select(func.count(Submission.id)).where(*conditions))
    ).scalar() or 0
    result = await db.execute(
        select(Submission)
        .where(*conditions)
        .order_by(Submission.created_at, Submission.id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = [SubmissionResponse.model_validate(s) for s in result.scalars().all()]
    return PaginatedResponse.create(items=items, total=total, page=page, page_size=page_size)


@router.post("/batch", response_model=BatchResponse)
async def batch_review(
    data: BatchRequest,
    actor: CurrentActor,
    lifecycle: Lifecycle,
    context: AuditContext,
):
    """
    Approve or reject many submissions at once.

    The request fails as a whole only for malformed input; otherwise every
    distinct id gets its own outcome.
    """
    outcomes = await lifecycle.batch_transition(data.ids, data.action, actor, data.notes, context)
    if not isinstance(outcomes, list):
        raise_failure(outcomes)

    results: List[BatchItemResult] = []
    for outcome in outcomes:
        if outcome.ok:
            results.append(BatchItemResult(
                id=outcome.submission_id,
                success=True,
                status=enum_value(outcome.submission.status),
            ))
        else:
            results.append(BatchItemResult(
                id=outcome.submission_id,
                success=False,
                error=outcome.failure.kind.value,
                message=outcome.failure.message,
            ))

    succeeded = sum(1 for r in results if r.success)
    return BatchResponse(
        action=data.action,
        requested=len(results),
        succeeded=succeeded,
        failed=len(results) - succeeded,
        results=results,
    )


@router.get("/{submission_id}", response_model=SubmissionResponse)
async def get_submission(
    submission_id: uuid.UUID,
    user: CurrentUser,
    db: DbSession,
):
    """Get one submission."""
    submission = await db.get(Submission, submission_id)
    if submission is None or submission.is_deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Submission not found",
        )
    return SubmissionResponse.model_validate(submission)


@router.get("/{submission_id}/history", response_model=List[AuditEntryResponse])
async def submission_history(
    submission_id: uuid.UUID,
    user: ReviewerUser,
    db: DbSession,
    limit: int = Query(100, ge=1, le=500),
):
    """Audit trail of a submission, oldest first. Includes deleted submissions."""
    if await db.get(Submission, submission_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Submission not found",
        )
    entries = await AuditLogStore(db).history(submission_id, limit=limit)
    return [AuditEntryResponse.model_validate(e) for e in entries]


@router.patch("/{submission_id}/approve", response_model=SubmissionResponse)
async def approve_submission(
    submission_id: uuid.UUID,
    data: ApproveRequest,
    actor: CurrentActor,
    lifecycle: Lifecycle,
    context: AuditContext,
):
    """Approve a pending submission (verifier of its country, or admin)."""
    outcome = await lifecycle.approve(
        submission_id, actor, notes=data.notes, credibility=data.credibility, context=context
    )
    return _submission_or_raise(outcome)


@router.patch("/{submission_id}/reject", response_model=SubmissionResponse)
async def reject_submission(
    submission_id: uuid.UUID,
    data: RejectRequest,
    actor: CurrentActor,
    lifecycle: Lifecycle,
    context: AuditContext,
):
    """Reject a pending submission (verifier of its country, or admin)."""
    outcome = await lifecycle.reject(submission_id, actor, notes=data.notes, context=context)
    return _submission_or_raise(outcome)


@router.patch("/{submission_id}/notes", response_model=SubmissionResponse)
async def update_notes(
    submission_id: uuid.UUID,
    data: NotesUpdate,
    actor: CurrentActor,
    lifecycle: Lifecycle,
    context: AuditContext,
):
    """Replace the verifier notes. Status is unchanged."""
    outcome = await lifecycle.update_notes(submission_id, actor, data.notes, context=context)
    return _submission_or_raise(outcome)


@router.delete("/{submission_id}", response_model=SuccessResponse)
async def delete_submission(
    submission_id: uuid.UUID,
    actor: CurrentActor,
    lifecycle: Lifecycle,
    context: AuditContext,
):
    """Soft-delete a submission (admin, or its submitter while still pending)."""
    outcome = await lifecycle.delete_submission(submission_id, actor, context=context)
    if not outcome.ok:
        raise_failure(outcome.failure)
    return SuccessResponse(message="Submission deleted", data={"id": str(submission_id)})
