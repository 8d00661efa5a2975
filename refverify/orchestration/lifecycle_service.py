"""
Submission lifecycle service.

Every operation runs as one unit of work: load, decide, conditional update,
audit entry and points side effects share a single transaction, and the
domain event is handed to the fan-out only after that transaction commits.

Transitions on the same submission are serialised in-process with a per-id
lock; across processes the update is conditioned on the status and version
that were read, so a concurrent writer is detected instead of overwritten.
"""

import asyncio
import uuid
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from refverify.kernel.errors import ConflictError, ErrorKind, LifecycleFailure
from refverify.kernel.events.audit_store import AuditLogStore
from refverify.kernel.events.event_types import (
    ActorSnapshot,
    SubmissionCreated,
    SubmissionDeleted,
    SubmissionEvent,
    SubmissionSnapshot,
    SubmissionTransitioned,
    SubmissionUpdated,
)
from refverify.kernel.models.audit_log import AuditAction
from refverify.kernel.models.base import enum_value
from refverify.kernel.models.submission import (
    Credibility,
    MediaType,
    Submission,
    SubmissionStatus,
)
from refverify.kernel.models.user import User
from refverify.logging_config import get_logger
from refverify.orchestration.transition_engine import (
    Action,
    Actor,
    Rejected,
    SubmissionState,
    decide,
)

logger = get_logger(__name__)

MAX_NOTES_LENGTH = 500

# Points awarded inside the same transaction as the change that earns them
POINTS_FOR_SUBMISSION = 10
POINTS_FOR_CREDIBLE_APPROVAL = 25
POINTS_FOR_APPROVAL = 10
POINTS_FOR_REVIEW = 5

_AUDIT_ACTION = {
    Action.APPROVE: AuditAction.APPROVED,
    Action.REJECT: AuditAction.REJECTED,
    Action.UPDATE_NOTES: AuditAction.UPDATED,
    Action.DELETE: AuditAction.DELETED,
}

_EVENT_TYPE = {
    Action.APPROVE: SubmissionTransitioned,
    Action.REJECT: SubmissionTransitioned,
    Action.UPDATE_NOTES: SubmissionUpdated,
    Action.DELETE: SubmissionDeleted,
}

BATCH_ACTIONS = frozenset({Action.APPROVE, Action.REJECT})


@dataclass(frozen=True)
class RequestContext:
    """Request metadata recorded on audit entries."""

    method: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class TransitionOutcome:
    """Result of one lifecycle operation on one submission."""

    submission_id: uuid.UUID
    submission: Optional[Submission] = None
    failure: Optional[LifecycleFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


class SubmissionLocks:
    """Per-submission asyncio locks, dropped once nobody holds or waits on them."""

    def __init__(self):
        self._locks: Dict[uuid.UUID, asyncio.Lock] = {}
        self._users: Counter = Counter()

    @asynccontextmanager
    async def hold(self, submission_id: uuid.UUID) -> AsyncIterator[None]:
        lock = self._locks.setdefault(submission_id, asyncio.Lock())
        self._users[submission_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[submission_id] -= 1
            if self._users[submission_id] <= 0:
                del self._users[submission_id]
                self._locks.pop(submission_id, None)

    def __len__(self) -> int:
        return len(self._locks)


def _state_of(submission: Optional[Submission]) -> Optional[SubmissionState]:
    if submission is None:
        return None
    return SubmissionState(
        status=submission.status,
        country=submission.country,
        submitter_id=submission.submitter_id,
    )


def _actor_snapshot(actor: Actor) -> ActorSnapshot:
    return ActorSnapshot(id=actor.user_id, role=enum_value(actor.role), country=actor.country)


class LifecycleService:
    """
    Orchestrates transition decisions, the submission store and the audit log.

    One instance is owned by the running application (its lock table must be
    shared by every request). ``fanout`` may be None, in which case nothing
    is published.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        fanout=None,
        batch_max_size: int = 1000,
        batch_concurrency: int = 8,
    ):
        self.session_maker = session_maker
        self.fanout = fanout
        self.batch_max_size = batch_max_size
        self.batch_concurrency = max(1, batch_concurrency)
        self.locks = SubmissionLocks()

    # Creation

    async def create_submission(
        self,
        data,
        submitter: Actor,
        context: RequestContext = RequestContext(),
    ) -> Submission:
        """
        Record a new pending submission, its ``created`` audit entry and the
        submitter's points, then announce it to reviewers.

        ``data`` is a validated ``SubmissionCreate``.
        """
        async with self.session_maker() as session:
            async with session.begin():
                submission = Submission(
                    url=str(data.url),
                    title=data.title.strip(),
                    publisher=data.publisher.strip(),
                    country=data.country.upper().strip(),
                    category=data.category,
                    media_type=data.media_type or MediaType.URL,
                    wikipedia_article=data.wikipedia_article,
                    submitter_id=submitter.user_id,
                    status=SubmissionStatus.PENDING,
                    version=1,
                )
                session.add(submission)
                await session.flush()

                AuditLogStore(session).append(
                    action=AuditAction.CREATED,
                    resource_id=submission.id,
                    actor_id=submitter.user_id,
                    method=context.method,
                    ip_address=context.ip_address,
                    details={
                        "country": submission.country,
                        "category": submission.category,
                        "url": submission.url,
                    },
                )
                await self._award(session, submitter.user_id, POINTS_FOR_SUBMISSION)
                await session.flush()
                await session.refresh(submission)
                event = SubmissionCreated(
                    submission=SubmissionSnapshot.from_model(submission),
                    actor=_actor_snapshot(submitter),
                )

        logger.info(
            "Submission created",
            extra={"submission_id": str(submission.id), "country": submission.country},
        )
        self._notify(event)
        return submission

    # Transitions

    async def transition(
        self,
        submission_id: uuid.UUID,
        action: Union[Action, str],
        actor: Actor,
        notes: Optional[str] = None,
        credibility: Optional[Union[Credibility, str]] = None,
        context: RequestContext = RequestContext(),
    ) -> TransitionOutcome:
        """
        Apply one lifecycle action to one submission.

        Expected business outcomes (not found, forbidden, already finalized,
        invalid input, lost race) come back as a failed outcome with nothing
        written and nothing published.
        """
        try:
            action = Action(action)
        except ValueError:
            return self._failed(submission_id, ErrorKind.VALIDATION_ERROR, f"Unknown action: {action}")

        invalid = self._validate_input(action, notes, credibility)
        if invalid:
            return self._failed(submission_id, ErrorKind.VALIDATION_ERROR, invalid)
        if credibility is not None:
            credibility = Credibility(credibility)

        async with self.locks.hold(submission_id):
            try:
                result = await self._apply(submission_id, action, actor, notes, credibility, context)
            except ConflictError as exc:
                # One retry with a fresh read; a second loss is surfaced
                logger.info("Retrying after concurrent update", extra={"submission_id": str(submission_id)})
                try:
                    result = await self._apply(submission_id, action, actor, notes, credibility, context)
                except ConflictError:
                    logger.warning(
                        "Concurrent update conflict persisted",
                        extra={"submission_id": str(submission_id), "expected_version": exc.expected_version},
                    )
                    return self._failed(
                        submission_id,
                        ErrorKind.CONFLICT,
                        "Submission was modified concurrently, please retry",
                    )

        if isinstance(result, LifecycleFailure):
            return TransitionOutcome(submission_id=submission_id, failure=result)

        submission, event = result
        logger.info(
            "Submission %s", _AUDIT_ACTION[action].value,
            extra={
                "submission_id": str(submission_id),
                "actor_id": str(actor.user_id),
                "status": enum_value(submission.status),
            },
        )
        self._notify(event)
        return TransitionOutcome(submission_id=submission_id, submission=submission)

    async def approve(self, submission_id, actor, notes=None, credibility=None, context=RequestContext()):
        return await self.transition(submission_id, Action.APPROVE, actor, notes, credibility, context)

    async def reject(self, submission_id, actor, notes=None, context=RequestContext()):
        return await self.transition(submission_id, Action.REJECT, actor, notes, None, context)

    async def update_notes(self, submission_id, actor, notes, context=RequestContext()):
        return await self.transition(submission_id, Action.UPDATE_NOTES, actor, notes, None, context)

    async def delete_submission(self, submission_id, actor, context=RequestContext()):
        return await self.transition(submission_id, Action.DELETE, actor, None, None, context)

    async def _apply(
        self,
        submission_id: uuid.UUID,
        action: Action,
        actor: Actor,
        notes: Optional[str],
        credibility: Optional[Credibility],
        context: RequestContext,
    ) -> Union[LifecycleFailure, tuple[Submission, SubmissionEvent]]:
        async with self.session_maker() as session:
            async with session.begin():
                submission = await self._load(session, submission_id)
                decision = decide(_state_of(submission), action, actor)
                if isinstance(decision, Rejected):
                    return LifecycleFailure(decision.kind, decision.message)

                previous_status = SubmissionStatus(submission.status)
                previous_version = submission.version
                values = self._changes(action, actor, notes, credibility)

                result = await session.execute(
                    update(Submission)
                    .where(
                        Submission.id == submission_id,
                        Submission.status == previous_status.value,
                        Submission.version == previous_version,
                        Submission.deleted_at.is_(None),
                    )
                    .values(version=previous_version + 1, **values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConflictError(submission_id, previous_version)

                details: Dict[str, Any] = {
                    "from_status": previous_status.value,
                    "to_status": decision.next_status.value,
                    "version": previous_version + 1,
                }
                if notes is not None:
                    details["notes"] = notes
                if "credibility" in values:
                    details["credibility"] = values["credibility"]
                AuditLogStore(session).append(
                    action=_AUDIT_ACTION[action],
                    resource_id=submission_id,
                    actor_id=actor.user_id,
                    method=context.method,
                    ip_address=context.ip_address,
                    details=details,
                )
                await self._award_for(session, action, actor, submission, values)

                await session.flush()
                await session.refresh(submission)
                event = _EVENT_TYPE[action](
                    submission=SubmissionSnapshot.from_model(submission),
                    actor=_actor_snapshot(actor),
                )
        return submission, event

    @staticmethod
    def _changes(
        action: Action,
        actor: Actor,
        notes: Optional[str],
        credibility: Optional[Credibility],
    ) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        values: Dict[str, Any] = {}
        if action == Action.APPROVE:
            values.update(
                status=SubmissionStatus.APPROVED.value,
                verifier_id=actor.user_id,
                verified_at=now,
                credibility=(credibility or Credibility.CREDIBLE).value,
            )
        elif action == Action.REJECT:
            values.update(
                status=SubmissionStatus.REJECTED.value,
                verifier_id=actor.user_id,
                verified_at=now,
                credibility=Credibility.NOT_CREDIBLE.value,
            )
        elif action == Action.DELETE:
            values["deleted_at"] = now
        if notes is not None:
            values["verifier_notes"] = notes
        return values

    async def _award_for(self, session, action, actor, submission, values) -> None:
        if action == Action.APPROVE:
            bonus = (
                POINTS_FOR_CREDIBLE_APPROVAL
                if values["credibility"] == Credibility.CREDIBLE.value
                else POINTS_FOR_APPROVAL
            )
            await self._award(session, submission.submitter_id, bonus)
        if action in BATCH_ACTIONS:
            await self._award(session, actor.user_id, POINTS_FOR_REVIEW)

    @staticmethod
    async def _award(session: AsyncSession, user_id: uuid.UUID, points: int) -> None:
        await session.execute(
            update(User)
            .where(User.id == user_id)
            .values(points=User.points + points)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def _load(session: AsyncSession, submission_id: uuid.UUID) -> Optional[Submission]:
        query = select(Submission).where(
            Submission.id == submission_id,
            Submission.deleted_at.is_(None),
        )
        result = await session.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    def _validate_input(action: Action, notes: Optional[str], credibility) -> Optional[str]:
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            return f"Notes cannot exceed {MAX_NOTES_LENGTH} characters"
        if action == Action.UPDATE_NOTES and notes is None:
            return "Notes are required"
        if credibility is not None:
            if action != Action.APPROVE:
                return "Credibility can only be chosen when approving"
            try:
                chosen = Credibility(credibility)
            except ValueError:
                return f"Unknown credibility: {credibility}"
            if chosen == Credibility.NOT_CREDIBLE:
                return "Approved submissions cannot be rated not_credible"
        return None

    # Batch

    async def batch_transition(
        self,
        ids: Sequence[str],
        action: Union[Action, str],
        actor: Actor,
        notes: Optional[str] = None,
        context: RequestContext = RequestContext(),
    ) -> Union[LifecycleFailure, List[TransitionOutcome]]:
        """
        Approve or reject many submissions, each in its own unit of work.

        The whole batch is refused up front when it is empty, too large,
        names an unsupported action or contains a malformed id. Otherwise one
        outcome is returned per distinct id, in request order; a failure for
        one id never undoes another id's success.
        """
        try:
            action = Action(action)
        except ValueError:
            return LifecycleFailure(ErrorKind.VALIDATION_ERROR, f"Unknown action: {action}")
        if action not in BATCH_ACTIONS:
            return LifecycleFailure(ErrorKind.VALIDATION_ERROR, "Batch action must be approve or reject")
        if not ids:
            return LifecycleFailure(ErrorKind.VALIDATION_ERROR, "Submission IDs array is required")
        if len(ids) > self.batch_max_size:
            return LifecycleFailure(
                ErrorKind.VALIDATION_ERROR,
                f"Batch operation cannot process more than {self.batch_max_size} submissions at once",
            )

        parsed: List[uuid.UUID] = []
        for raw in ids:
            try:
                parsed.append(uuid.UUID(str(raw)))
            except ValueError:
                return LifecycleFailure(ErrorKind.VALIDATION_ERROR, f"Invalid submission ID format: {raw}")
        parsed = list(dict.fromkeys(parsed))

        batch_context = RequestContext(method=context.method or "BATCH", ip_address=context.ip_address)
        semaphore = asyncio.Semaphore(self.batch_concurrency)

        async def run(submission_id: uuid.UUID) -> TransitionOutcome:
            async with semaphore:
                return await self.transition(submission_id, action, actor, notes, None, batch_context)

        results = await asyncio.gather(*(run(sid) for sid in parsed), return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            # Items that finished are committed; the storage fault fails the request
            raise errors[0]

        succeeded = sum(1 for r in results if r.ok)
        logger.info(
            "Batch %s processed", action.value,
            extra={"requested": len(parsed), "succeeded": succeeded, "actor_id": str(actor.user_id)},
        )
        return list(results)

    # Helpers

    def _notify(self, event: SubmissionEvent) -> None:
        if self.fanout is None:
            return
        try:
            self.fanout.dispatch(event)
        except Exception:
            logger.exception("Could not schedule notification", extra={"event": event.wire_name})

    @staticmethod
    def _failed(submission_id, kind: ErrorKind, message: str) -> TransitionOutcome:
        return TransitionOutcome(submission_id=submission_id, failure=LifecycleFailure(kind, message))
