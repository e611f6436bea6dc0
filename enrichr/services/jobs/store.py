from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enrichr.db.base import utcnow
from enrichr.db.models import EnrichmentJob, JobKind, JobStatus
from enrichr.services.jobs.errors import JobNotFoundError
from enrichr.services.jobs.types import JobControl, JobRecord, ProgressUpdate


class JobStore(Protocol):
    async def load(self, job_id: str) -> JobRecord: ...

    async def create_job(
        self,
        *,
        project_id: str,
        user_id: str,
        kind: JobKind,
        scope: dict[str, Any],
        requeued_from_id: str | None = None,
    ) -> JobRecord: ...

    async def mark_running(self, job_id: str, *, now: datetime) -> JobRecord | None: ...

    async def set_total(self, job_id: str, total: int, *, now: datetime) -> None: ...

    async def save_progress(self, job_id: str, progress: ProgressUpdate, *, now: datetime) -> bool: ...

    async def read_control(self, job_id: str) -> JobControl: ...

    async def finalize(
        self,
        job_id: str,
        status: JobStatus,
        *,
        now: datetime,
        error_message: str | None = None,
    ) -> bool: ...

    async def request_cancellation(self, job_id: str, *, now: datetime) -> JobRecord: ...

    async def next_queued(self, kind: JobKind) -> JobRecord | None: ...

    async def list_stalled(self, *, kind: JobKind, progress_before: datetime) -> list[JobRecord]: ...


def job_record_from_row(job: EnrichmentJob) -> JobRecord:
    return JobRecord(
        id=str(job.id),
        project_id=str(job.project_id),
        user_id=str(job.user_id),
        kind=JobKind(job.kind),
        status=JobStatus(job.status),
        scope=dict(job.scope or {}),
        total=job.total,
        processed=int(job.processed or 0),
        errors=int(job.errors or 0),
        phase=job.phase,
        phase_progress=job.phase_progress,
        cancel_requested=bool(job.cancel_requested),
        error_message=job.error_message,
        requeued_from_id=str(job.requeued_from_id) if job.requeued_from_id else None,
        created_at=job.created_at,
        started_at=job.started_at,
        last_progress_at=job.last_progress_at,
        completed_at=job.completed_at,
        cancelled_at=job.cancelled_at,
    )


class SqlJobStore:
    """Job-record persistence with status transitions guarded in the WHERE clause."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def load(self, job_id: str) -> JobRecord:
        async with self._session_factory() as session:
            job = await session.get(EnrichmentJob, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job_record_from_row(job)

    async def create_job(
        self,
        *,
        project_id: str,
        user_id: str,
        kind: JobKind,
        scope: dict[str, Any],
        requeued_from_id: str | None = None,
    ) -> JobRecord:
        async with self._session_factory() as session:
            job = EnrichmentJob(
                project_id=project_id,
                user_id=user_id,
                kind=kind,
                status=JobStatus.QUEUED,
                scope=dict(scope),
                processed=0,
                errors=0,
                cancel_requested=False,
                requeued_from_id=requeued_from_id,
            )
            session.add(job)
            await session.commit()
            await session.refresh(job)
            return job_record_from_row(job)

    async def mark_running(self, job_id: str, *, now: datetime) -> JobRecord | None:
        async with self._session_factory() as session:
            result = await session.execute(
                update(EnrichmentJob)
                .where(
                    EnrichmentJob.id == job_id,
                    EnrichmentJob.status == JobStatus.QUEUED,
                    EnrichmentJob.cancel_requested.is_(False),
                )
                .values(
                    status=JobStatus.RUNNING,
                    started_at=now,
                    last_progress_at=now,
                    processed=0,
                    errors=0,
                    total=None,
                    phase=None,
                    phase_progress=None,
                    updated_at=now,
                )
                .returning(EnrichmentJob)
            )
            job = result.scalar_one_or_none()
            await session.commit()
            return job_record_from_row(job) if job is not None else None

    async def set_total(self, job_id: str, total: int, *, now: datetime) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(EnrichmentJob)
                .where(
                    EnrichmentJob.id == job_id,
                    EnrichmentJob.status == JobStatus.RUNNING,
                )
                .values(total=total, last_progress_at=now, updated_at=now)
            )
            await session.commit()

    async def save_progress(self, job_id: str, progress: ProgressUpdate, *, now: datetime) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(EnrichmentJob)
                .where(
                    EnrichmentJob.id == job_id,
                    EnrichmentJob.status == JobStatus.RUNNING,
                )
                .values(
                    processed=progress.processed,
                    errors=progress.errors,
                    phase=progress.phase,
                    phase_progress=progress.phase_progress,
                    last_progress_at=now,
                    updated_at=now,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def read_control(self, job_id: str) -> JobControl:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(EnrichmentJob.status, EnrichmentJob.cancel_requested).where(
                        EnrichmentJob.id == job_id
                    )
                )
            ).one_or_none()
        if row is None:
            raise JobNotFoundError(job_id)
        status, cancel_requested = row
        return JobControl(status=JobStatus(status), cancel_requested=bool(cancel_requested))

    async def finalize(
        self,
        job_id: str,
        status: JobStatus,
        *,
        now: datetime,
        error_message: str | None = None,
    ) -> bool:
        allowed_from = [JobStatus.RUNNING]
        if status == JobStatus.CANCELLED:
            allowed_from.append(JobStatus.QUEUED)
        values: dict[str, Any] = {
            "status": status,
            "phase": None,
            "completed_at": now,
            "updated_at": now,
            "error_message": error_message,
        }
        if status == JobStatus.CANCELLED:
            values["cancelled_at"] = now
        async with self._session_factory() as session:
            result = await session.execute(
                update(EnrichmentJob)
                .where(
                    EnrichmentJob.id == job_id,
                    EnrichmentJob.status.in_(allowed_from),
                )
                .values(**values)
            )
            await session.commit()
            return result.rowcount > 0

    async def request_cancellation(self, job_id: str, *, now: datetime) -> JobRecord:
        async with self._session_factory() as session:
            await session.execute(
                update(EnrichmentJob)
                .where(
                    EnrichmentJob.id == job_id,
                    EnrichmentJob.status == JobStatus.QUEUED,
                )
                .values(
                    status=JobStatus.CANCELLED,
                    cancel_requested=True,
                    cancelled_at=now,
                    completed_at=now,
                    updated_at=now,
                )
            )
            await session.execute(
                update(EnrichmentJob)
                .where(
                    EnrichmentJob.id == job_id,
                    EnrichmentJob.status == JobStatus.RUNNING,
                )
                .values(cancel_requested=True, updated_at=now)
            )
            await session.commit()
        return await self.load(job_id)

    async def next_queued(self, kind: JobKind) -> JobRecord | None:
        async with self._session_factory() as session:
            job = (
                await session.execute(
                    select(EnrichmentJob)
                    .where(
                        EnrichmentJob.kind == kind,
                        EnrichmentJob.status == JobStatus.QUEUED,
                    )
                    .order_by(EnrichmentJob.created_at.asc(), EnrichmentJob.id.asc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            return job_record_from_row(job) if job is not None else None

    async def list_stalled(self, *, kind: JobKind, progress_before: datetime) -> list[JobRecord]:
        last_seen = func.coalesce(EnrichmentJob.last_progress_at, EnrichmentJob.started_at)
        async with self._session_factory() as session:
            jobs = (
                await session.execute(
                    select(EnrichmentJob)
                    .where(
                        EnrichmentJob.kind == kind,
                        EnrichmentJob.status == JobStatus.RUNNING,
                        last_seen < progress_before,
                    )
                    .order_by(last_seen.asc())
                )
            ).scalars().all()
        return [job_record_from_row(job) for job in jobs]


async def requeue_job(store: JobStore, job_id: str) -> JobRecord:
    """Create a fresh queued job with the same scope as a terminal one."""
    job = await store.load(job_id)
    if not job.is_terminal:
        raise ValueError(f"Job {job_id} is {job.status.value}; only finished jobs can be requeued.")
    return await store.create_job(
        project_id=job.project_id,
        user_id=job.user_id,
        kind=job.kind,
        scope=job.scope,
        requeued_from_id=job.id,
    )


async def request_cancellation(store: JobStore, job_id: str) -> JobRecord:
    return await store.request_cancellation(job_id, now=utcnow())
