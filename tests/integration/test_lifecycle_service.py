"""
Integration tests for the submission lifecycle against SQLite.

Each test gets a fresh schema; notifications go to in-memory transports so
delivery can be asserted after ``drain()``.
"""

import asyncio
import random
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import select

from conftest import FakeTransport
from refverify.database import async_session_maker
from refverify.kernel.errors import ErrorKind
from refverify.kernel.events.audit_store import AuditLogStore
from refverify.kernel.identity.identity_service import actor_for
from refverify.kernel.models import (
    AuditAction,
    AuditLogEntry,
    AuditLogImmutableError,
    Submission,
    SubmissionStatus,
    User,
    UserRole,
)
from refverify.orchestration.lifecycle_service import (
    POINTS_FOR_CREDIBLE_APPROVAL,
    POINTS_FOR_REVIEW,
    POINTS_FOR_SUBMISSION,
    LifecycleService,
    RequestContext,
)
from refverify.orchestration.transition_engine import Action
from refverify.realtime.fanout import NotificationFanout
from refverify.realtime.registry import ConnectionRegistry
from refverify.schemas.submission import SubmissionCreate


async def _no_resolver(token):
    raise AssertionError("not used")


def submission_data(country: str = "GH", title: str = "Budget statement 2024") -> SubmissionCreate:
    return SubmissionCreate(
        url="https://www.myjoyonline.com/budget-2024",
        title=title,
        publisher="Joy News",
        country=country,
        category="secondary",
    )


@pytest.fixture
def registry():
    return ConnectionRegistry(resolve=_no_resolver)


@pytest.fixture
def fanout(registry):
    return NotificationFanout(registry)


@pytest.fixture
def service(db, fanout):
    return LifecycleService(async_session_maker, fanout=fanout, batch_max_size=50, batch_concurrency=4)


@pytest_asyncio.fixture
async def pending(service, contributor):
    return await service.create_submission(submission_data(), actor_for(contributor))


async def audit_entries(submission_id) -> list:
    async with async_session_maker() as session:
        return await AuditLogStore(session).history(submission_id)


async def points_of(user_id) -> int:
    async with async_session_maker() as session:
        return (await session.get(User, user_id)).points


@pytest.mark.asyncio
async def test_gh_review_end_to_end(service, registry, fanout, contributor, gh_verifier, fr_verifier):
    """A Ghanaian source goes from submission to approval with scoped notifications."""
    submitter_tab = FakeTransport()
    gh_tab = FakeTransport()
    fr_tab = FakeTransport()
    registry.admit(submitter_tab, actor_for(contributor))
    registry.admit(gh_tab, actor_for(gh_verifier))
    registry.admit(fr_tab, actor_for(fr_verifier))

    created = await service.create_submission(
        submission_data(country="gh"),
        actor_for(contributor),
        RequestContext(method="POST", ip_address="10.0.0.1"),
    )
    await fanout.drain()
    assert created.status == SubmissionStatus.PENDING
    assert created.country == "GH"
    # Verifiers of other countries are still in role:verifier
    assert gh_tab.events() == ["submission:created"]
    assert fr_tab.events() == ["submission:created"]
    assert submitter_tab.sent == []

    outcome = await service.approve(
        created.id, actor_for(gh_verifier), notes="Reputable outlet", credibility="credible",
        context=RequestContext(method="PATCH"),
    )
    await fanout.drain()

    assert outcome.ok
    assert outcome.submission.status == "approved"
    assert outcome.submission.verifier_id == gh_verifier.id
    assert outcome.submission.verified_at is not None
    assert outcome.submission.credibility == "credible"
    assert outcome.submission.version == 2

    assert submitter_tab.events() == ["submission:verified"]
    assert submitter_tab.sent[0]["data"]["submission"]["verifier_notes"] == "Reputable outlet"
    assert gh_tab.events() == ["submission:created", "submission:verified"]
    assert fr_tab.events() == ["submission:created"]

    entries = await audit_entries(created.id)
    assert [e.action for e in entries] == ["created", "approved"]
    assert entries[0].ip_address == "10.0.0.1"
    assert entries[1].actor_id == gh_verifier.id
    assert entries[1].method == "PATCH"
    assert entries[1].details["from_status"] == "pending"
    assert entries[1].details["to_status"] == "approved"

    assert await points_of(contributor.id) == POINTS_FOR_SUBMISSION + POINTS_FOR_CREDIBLE_APPROVAL
    assert await points_of(gh_verifier.id) == POINTS_FOR_REVIEW


@pytest.mark.asyncio
async def test_cross_country_verifier_changes_nothing(service, fanout, registry, pending, fr_verifier, admin):
    admin_tab = FakeTransport()
    registry.admit(admin_tab, actor_for(admin))

    outcome = await service.approve(pending.id, actor_for(fr_verifier))
    await fanout.drain()

    assert not outcome.ok
    assert outcome.failure.kind == ErrorKind.FORBIDDEN
    assert outcome.failure.http_status == 403
    assert [e.action for e in await audit_entries(pending.id)] == ["created"]
    assert admin_tab.sent == []


@pytest.mark.asyncio
async def test_finalized_cannot_be_reviewed_again(service, pending, gh_verifier, admin):
    assert (await service.reject(pending.id, actor_for(gh_verifier), notes="Paywalled blog")).ok

    again = await service.approve(pending.id, actor_for(admin))
    assert again.failure.kind == ErrorKind.ALREADY_FINALIZED

    async with async_session_maker() as session:
        row = await session.get(Submission, pending.id)
    assert row.status == "rejected"
    assert row.credibility == "not_credible"
    assert row.verifier_notes == "Paywalled blog"


@pytest.mark.asyncio
async def test_missing_submission(service, gh_verifier):
    outcome = await service.approve(uuid.uuid4(), actor_for(gh_verifier))
    assert outcome.failure.kind == ErrorKind.NOT_FOUND


@pytest.mark.asyncio
async def test_concurrent_approve_and_reject_one_wins(service, pending, gh_verifier, admin):
    results = await asyncio.gather(
        service.approve(pending.id, actor_for(gh_verifier)),
        service.reject(pending.id, actor_for(admin)),
    )
    assert sum(1 for r in results if r.ok) == 1
    loser = next(r for r in results if not r.ok)
    assert loser.failure.kind == ErrorKind.ALREADY_FINALIZED
    assert len(await audit_entries(pending.id)) == 2

    winner = next(r for r in results if r.ok)
    action = AuditAction.APPROVED if winner.submission.status == "approved" else AuditAction.REJECTED
    async with async_session_maker() as session:
        store = AuditLogStore(session)
        assert await store.count(resource_id=pending.id, action=action) == 1
        assert await store.count(actor_id=winner.submission.verifier_id) == 1


@pytest.mark.asyncio
async def test_concurrent_writers_without_shared_locks(db, pending, gh_verifier, admin):
    """Two service instances stand in for two processes racing on one row."""
    first = LifecycleService(async_session_maker)
    second = LifecycleService(async_session_maker)

    results = await asyncio.gather(
        first.approve(pending.id, actor_for(gh_verifier)),
        second.reject(pending.id, actor_for(admin)),
    )

    assert sum(1 for r in results if r.ok) == 1
    loser = next(r for r in results if not r.ok)
    assert loser.failure.kind in (ErrorKind.ALREADY_FINALIZED, ErrorKind.CONFLICT)
    entries = await audit_entries(pending.id)
    assert [e.action for e in entries].count("created") == 1
    assert len(entries) == 2


@pytest.mark.asyncio
async def test_input_validation(service, pending, gh_verifier):
    too_long = await service.approve(pending.id, actor_for(gh_verifier), notes="x" * 501)
    assert too_long.failure.kind == ErrorKind.VALIDATION_ERROR

    bad_rating = await service.approve(pending.id, actor_for(gh_verifier), credibility="not_credible")
    assert bad_rating.failure.kind == ErrorKind.VALIDATION_ERROR

    unknown = await service.transition(pending.id, "archive", actor_for(gh_verifier))
    assert unknown.failure.kind == ErrorKind.VALIDATION_ERROR

    assert len(await audit_entries(pending.id)) == 1


@pytest.mark.asyncio
async def test_update_notes_keeps_status(service, registry, fanout, pending, gh_verifier, contributor):
    submitter_tab = FakeTransport()
    gh_tab = FakeTransport()
    registry.admit(submitter_tab, actor_for(contributor))
    registry.admit(gh_tab, actor_for(gh_verifier))

    outcome = await service.update_notes(pending.id, actor_for(gh_verifier), "Checked the masthead")
    await fanout.drain()

    assert outcome.ok
    assert outcome.submission.status == "pending"
    assert outcome.submission.verifier_notes == "Checked the masthead"
    assert outcome.submission.verifier_id is None
    assert outcome.submission.version == 2
    assert gh_tab.events() == ["submission:updated"]
    assert submitter_tab.sent == []
    assert [e.action for e in await audit_entries(pending.id)] == ["created", "updated"]


@pytest.mark.asyncio
async def test_soft_delete_hides_submission(service, pending, contributor, gh_verifier):
    outcome = await service.delete_submission(pending.id, actor_for(contributor))
    assert outcome.ok

    after = await service.approve(pending.id, actor_for(gh_verifier))
    assert after.failure.kind == ErrorKind.NOT_FOUND

    async with async_session_maker() as session:
        row = await session.get(Submission, pending.id)
    assert row is not None
    assert row.deleted_at is not None
    assert [e.action for e in await audit_entries(pending.id)] == ["created", "deleted"]


class TestBatch:

    @pytest.mark.asyncio
    async def test_one_of_three_already_approved(self, service, contributor, gh_verifier):
        submitter = actor_for(contributor)
        subs = [
            await service.create_submission(submission_data(title=f"Source {i}"), submitter)
            for i in range(3)
        ]
        assert (await service.approve(subs[1].id, actor_for(gh_verifier))).ok

        outcomes = await service.batch_transition(
            [str(s.id) for s in subs], Action.APPROVE, actor_for(gh_verifier), notes="Batch review"
        )

        assert [o.submission_id for o in outcomes] == [s.id for s in subs]
        assert [o.ok for o in outcomes] == [True, False, True]
        assert outcomes[1].failure.kind == ErrorKind.ALREADY_FINALIZED
        for sub in (subs[0], subs[2]):
            entries = await audit_entries(sub.id)
            assert [e.action for e in entries] == ["created", "approved"]
            assert entries[1].method == "BATCH"
        assert await points_of(gh_verifier.id) == 3 * POINTS_FOR_REVIEW

    @pytest.mark.asyncio
    async def test_duplicates_collapsed(self, service, pending, gh_verifier):
        outcomes = await service.batch_transition(
            [str(pending.id), str(pending.id).upper()], "reject", actor_for(gh_verifier)
        )
        assert len(outcomes) == 1
        assert outcomes[0].ok

    @pytest.mark.asyncio
    async def test_malformed_id_fails_whole_batch(self, service, pending, gh_verifier):
        failure = await service.batch_transition([str(pending.id), "not-a-uuid"], "approve", actor_for(gh_verifier))
        assert failure.kind == ErrorKind.VALIDATION_ERROR
        assert len(await audit_entries(pending.id)) == 1

    @pytest.mark.asyncio
    async def test_size_limits(self, service, gh_verifier):
        empty = await service.batch_transition([], "approve", actor_for(gh_verifier))
        assert empty.kind == ErrorKind.VALIDATION_ERROR

        too_many = await service.batch_transition(
            [str(uuid.uuid4()) for _ in range(51)], "approve", actor_for(gh_verifier)
        )
        assert too_many.kind == ErrorKind.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_only_review_actions(self, service, pending, admin):
        failure = await service.batch_transition([str(pending.id)], "delete", actor_for(admin))
        assert failure.kind == ErrorKind.VALIDATION_ERROR


@pytest.mark.asyncio
async def test_random_sequences_keep_invariants(service, contributor, gh_verifier, fr_verifier, admin):
    rng = random.Random(20240611)
    actors = [actor_for(u) for u in (contributor, gh_verifier, fr_verifier, admin)]
    subs = [
        await service.create_submission(submission_data(title=f"Source {i}"), actors[0])
        for i in range(4)
    ]
    successes = {s.id: 0 for s in subs}
    finalized = {s.id: 0 for s in subs}

    for step in range(40):
        sub = rng.choice(subs)
        actor = rng.choice(actors)
        action = rng.choice([Action.APPROVE, Action.REJECT, Action.UPDATE_NOTES])
        notes = f"step {step}" if action == Action.UPDATE_NOTES else None
        outcome = await service.transition(sub.id, action, actor, notes=notes)
        if outcome.ok:
            successes[sub.id] += 1
            if action != Action.UPDATE_NOTES:
                finalized[sub.id] += 1

    async with async_session_maker() as session:
        rows = (await session.execute(select(Submission))).scalars().all()
        for row in rows:
            is_pending = row.status == SubmissionStatus.PENDING.value
            assert is_pending == (row.verifier_id is None and row.verified_at is None)
            assert finalized[row.id] == (0 if is_pending else 1)
            assert row.version == 1 + successes[row.id]
            entries = await AuditLogStore(session).history(row.id)
            assert len(entries) == 1 + successes[row.id]


@pytest.mark.asyncio
async def test_audit_entries_are_immutable(service, pending):
    async with async_session_maker() as session:
        entry = (await session.execute(
            select(AuditLogEntry).where(AuditLogEntry.resource_id == pending.id)
        )).scalar_one()
        assert entry.action == AuditAction.CREATED.value

        entry.details = {"tampered": True}
        with pytest.raises(AuditLogImmutableError):
            await session.flush()
        await session.rollback()

    async with async_session_maker() as session:
        entry = (await session.execute(
            select(AuditLogEntry).where(AuditLogEntry.resource_id == pending.id)
        )).scalar_one()
        with pytest.raises(AuditLogImmutableError):
            await session.delete(entry)
            await session.flush()
        await session.rollback()


@pytest.mark.asyncio
async def test_audit_search_filters_and_pages(service, contributor, gh_verifier):
    submitter = actor_for(contributor)
    verifier = actor_for(gh_verifier)
    subs = [
        await service.create_submission(submission_data(title=f"Source {i}"), submitter)
        for i in range(3)
    ]
    assert (await service.approve(subs[0].id, verifier)).ok
    assert (await service.reject(subs[1].id, verifier)).ok

    async with async_session_maker() as session:
        store = AuditLogStore(session)

        everything, total = await store.search()
        assert total == 5
        # Newest first
        assert [e.id for e in everything] == sorted((e.id for e in everything), reverse=True)

        by_verifier, total = await store.search(actor_id=gh_verifier.id)
        assert total == 2
        assert {e.action for e in by_verifier} == {AuditAction.APPROVED.value, AuditAction.REJECTED.value}

        created, total = await store.search(action=AuditAction.CREATED, limit=2, offset=2)
        assert total == 3
        assert len(created) == 1

        one, total = await store.search(resource_id=subs[0].id)
        assert total == 2

        hour = timedelta(hours=1)
        now = datetime.now(timezone.utc)
        assert (await store.search(since=now - hour))[1] == 5
        assert (await store.search(until=now - hour))[1] == 0
        assert (await store.search(since=now + hour))[1] == 0
