from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enrichr.db.base import utcnow
from enrichr.db.models import JobKind, JobStatus
from enrichr.services.jobs.store import SqlJobStore, requeue_job
from enrichr.services.jobs.types import ProgressUpdate
from tests.integration.helpers import insert_project, insert_user


async def _queued_job(db_session: AsyncSession, store: SqlJobStore, *, kind: JobKind = JobKind.EMBEDDING):
    user_id = await insert_user(db_session, email=f"{kind.value}@example.com")
    project_id = await insert_project(db_session, owner_id=user_id)
    return await store.create_job(
        project_id=project_id,
        user_id=user_id,
        kind=kind,
        scope={"kind": kind.value, "articleIds": None},
    )


@pytest.mark.integration
@pytest.mark.db
@pytest.mark.asyncio
async def test_job_runs_through_guarded_lifecycle(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    store = SqlJobStore(session_factory)
    job = await _queued_job(db_session, store)
    assert job.status == JobStatus.QUEUED

    now = utcnow()
    running = await store.mark_running(job.id, now=now)
    assert running is not None and running.status == JobStatus.RUNNING
    assert await store.mark_running(job.id, now=now) is None

    await store.set_total(job.id, 10, now=now)
    assert await store.save_progress(
        job.id,
        ProgressUpdate(processed=6, errors=1, total=10, phase="embedding", phase_progress="7/10"),
        now=now,
    )
    assert await store.finalize(job.id, JobStatus.COMPLETED, now=now)

    finished = await store.load(job.id)
    assert finished.status == JobStatus.COMPLETED
    assert (finished.processed, finished.errors, finished.total) == (6, 1, 10)
    assert finished.completed_at is not None

    assert not await store.save_progress(
        job.id,
        ProgressUpdate(processed=9, errors=1, total=10),
        now=now,
    )
    assert not await store.finalize(job.id, JobStatus.FAILED, now=now, error_message="late")
    assert (await store.load(job.id)).status == JobStatus.COMPLETED


@pytest.mark.integration
@pytest.mark.db
@pytest.mark.asyncio
async def test_cancelling_queued_job_is_immediate(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    store = SqlJobStore(session_factory)
    job = await _queued_job(db_session, store)

    cancelled = await store.request_cancellation(job.id, now=utcnow())

    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.cancel_requested
    assert await store.mark_running(job.id, now=utcnow()) is None


@pytest.mark.integration
@pytest.mark.db
@pytest.mark.asyncio
async def test_cancelling_running_job_only_sets_flag(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    store = SqlJobStore(session_factory)
    job = await _queued_job(db_session, store)
    await store.mark_running(job.id, now=utcnow())

    flagged = await store.request_cancellation(job.id, now=utcnow())
    control = await store.read_control(job.id)

    assert flagged.status == JobStatus.RUNNING
    assert control.cancel_requested and control.should_stop


@pytest.mark.integration
@pytest.mark.db
@pytest.mark.asyncio
async def test_next_queued_and_stalled_listing(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    store = SqlJobStore(session_factory)
    job = await _queued_job(db_session, store, kind=JobKind.GRAPH_FETCH)

    assert (await store.next_queued(JobKind.GRAPH_FETCH)).id == job.id
    assert await store.next_queued(JobKind.EMBEDDING) is None

    long_ago = utcnow() - timedelta(minutes=30)
    await store.mark_running(job.id, now=long_ago)
    stalled = await store.list_stalled(
        kind=JobKind.GRAPH_FETCH,
        progress_before=utcnow() - timedelta(minutes=5),
    )
    assert [record.id for record in stalled] == [job.id]


@pytest.mark.integration
@pytest.mark.db
@pytest.mark.asyncio
async def test_requeue_copies_scope_and_links_source(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    store = SqlJobStore(session_factory)
    job = await _queued_job(db_session, store)
    await store.request_cancellation(job.id, now=utcnow())

    fresh = await requeue_job(store, job.id)

    assert fresh.id != job.id
    assert fresh.status == JobStatus.QUEUED
    assert fresh.scope == job.scope
    assert fresh.requeued_from_id == job.id
