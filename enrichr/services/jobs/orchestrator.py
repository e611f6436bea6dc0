from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
import logging
import time
from typing import Protocol

from enrichr.db.base import utcnow
from enrichr.db.models import JobKind, JobStatus
from enrichr.logging_context import job_log_context
from enrichr.logging_utils import structured_log
from enrichr.services.jobs.errors import JobCancelled, JobTimedOut
from enrichr.services.jobs.events import (
    CancelledEvent,
    CompletedEvent,
    FailedEvent,
    JobEvent,
    ProjectEventPublisher,
    TimeoutEvent,
)
from enrichr.services.jobs.store import JobStore
from enrichr.services.jobs.supervisor import (
    DEFAULT_PROGRESS_EVERY,
    CancellationToken,
    JobSupervisor,
)
from enrichr.services.jobs.types import JobCounters, JobRecord

logger = logging.getLogger(__name__)

DEFAULT_WATCHDOG_INTERVAL_SECONDS = 10.0


@dataclass
class JobContext:
    job: JobRecord
    supervisor: JobSupervisor

    @property
    def counters(self) -> JobCounters:
        return self.supervisor.counters

    async def checkpoint(self) -> None:
        await self.supervisor.checkpoint()


class JobDefinition(Protocol):
    kind: JobKind
    max_duration_seconds: float
    stall_timeout_seconds: float

    async def run(self, context: JobContext) -> None: ...


class JobOrchestrator:
    """Runs one job through its lifecycle and maps the outcome to a terminal status."""

    def __init__(
        self,
        *,
        store: JobStore,
        publisher: ProjectEventPublisher,
        progress_every: int = DEFAULT_PROGRESS_EVERY,
        watchdog_interval_seconds: float = DEFAULT_WATCHDOG_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._progress_every = progress_every
        self._watchdog_interval_seconds = max(0.001, float(watchdog_interval_seconds))
        self._clock = clock

    async def run(
        self,
        job_id: str,
        definition: JobDefinition,
        *,
        token: CancellationToken | None = None,
    ) -> JobStatus:
        with job_log_context(job_id):
            return await self._run(job_id, definition, token=token)

    async def _run(
        self,
        job_id: str,
        definition: JobDefinition,
        *,
        token: CancellationToken | None,
    ) -> JobStatus:
        job = await self._store.load(job_id)
        if job.is_terminal:
            structured_log(logger, "info", "jobs.skipped_terminal", status=job.status.value)
            return job.status
        if job.status == JobStatus.QUEUED and (job.cancel_requested or (token and token.cancelled)):
            await self._finish(job, JobStatus.CANCELLED, JobCounters(total=job.total))
            return JobStatus.CANCELLED

        started = await self._store.mark_running(job_id, now=utcnow())
        if started is None:
            current = await self._store.load(job_id)
            structured_log(
                logger,
                "info",
                "jobs.start_skipped",
                status=current.status.value,
            )
            return current.status

        supervisor = JobSupervisor(
            job_id=started.id,
            project_id=started.project_id,
            store=self._store,
            publisher=self._publisher,
            max_duration_seconds=definition.max_duration_seconds,
            stall_timeout_seconds=definition.stall_timeout_seconds,
            token=token,
            progress_every=self._progress_every,
            clock=self._clock,
        )
        supervisor.start()
        structured_log(
            logger,
            "info",
            "jobs.started",
            kind=started.kind.value,
            project_id=started.project_id,
            scope=started.scope,
        )

        context = JobContext(job=started, supervisor=supervisor)
        work = asyncio.create_task(definition.run(context), name=f"enrichment-job-{job_id}")
        watchdog = asyncio.create_task(
            self._watch(work, supervisor), name=f"enrichment-watchdog-{job_id}"
        )
        try:
            await work
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if supervisor.expired is None or (current is not None and current.cancelling()):
                raise
            return await self._timed_out(started, supervisor, supervisor.expired)
        except JobCancelled:
            structured_log(logger, "info", "jobs.cancelled", phase=supervisor.phase)
            return await self._finish(started, JobStatus.CANCELLED, supervisor.persisted)
        except JobTimedOut as exc:
            return await self._timed_out(started, supervisor, exc)
        except Exception as exc:
            structured_log(
                logger,
                "error",
                "jobs.failed",
                phase=supervisor.phase,
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=True,
            )
            return await self._finish(
                started,
                JobStatus.FAILED,
                supervisor.persisted,
                error_message=str(exc) or type(exc).__name__,
            )
        finally:
            watchdog.cancel()
            await asyncio.gather(watchdog, return_exceptions=True)

        try:
            await supervisor.report(force=True)
            return await self._finish(started, JobStatus.COMPLETED, supervisor.persisted)
        except Exception as exc:
            structured_log(
                logger,
                "error",
                "jobs.completion_failed",
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=True,
            )
            return await self._finish(
                started,
                JobStatus.FAILED,
                supervisor.persisted,
                error_message=str(exc) or type(exc).__name__,
            )

    async def _timed_out(
        self,
        job: JobRecord,
        supervisor: JobSupervisor,
        reason: JobTimedOut,
    ) -> JobStatus:
        structured_log(
            logger,
            "warning",
            "jobs.timed_out",
            reason=reason.reason,
            limit_seconds=reason.limit_seconds,
            phase=supervisor.phase,
        )
        return await self._finish(
            job,
            JobStatus.TIMEOUT,
            supervisor.persisted,
            error_message=reason.describe(),
        )

    async def _watch(self, work: asyncio.Task[None], supervisor: JobSupervisor) -> None:
        while not work.done():
            await asyncio.sleep(self._watchdog_interval_seconds)
            expired = supervisor.time_budget_exceeded()
            if expired is not None and not work.done():
                supervisor.expire(expired)
                work.cancel()
                return

    async def _finish(
        self,
        job: JobRecord,
        status: JobStatus,
        counters: JobCounters,
        *,
        error_message: str | None = None,
    ) -> JobStatus:
        finalized = await self._store.finalize(
            job.id,
            status,
            now=utcnow(),
            error_message=error_message,
        )
        if not finalized:
            current = await self._store.load(job.id)
            structured_log(
                logger,
                "warning",
                "jobs.finalize_skipped",
                attempted_status=status.value,
                status=current.status.value,
            )
            return current.status

        structured_log(
            logger,
            "info",
            "jobs.finished",
            status=status.value,
            processed=counters.processed,
            errors=counters.errors,
            total=counters.total,
        )
        await self._publisher.publish(job.project_id, _terminal_event(job.id, status, counters, error_message))
        return status


def _terminal_event(
    job_id: str,
    status: JobStatus,
    counters: JobCounters,
    error_message: str | None,
) -> JobEvent:
    fields = {
        "job_id": job_id,
        "processed": counters.processed,
        "total": counters.total,
        "errors": counters.errors,
    }
    if status == JobStatus.COMPLETED:
        return CompletedEvent(**fields)
    if status == JobStatus.CANCELLED:
        return CancelledEvent(**fields)
    if status == JobStatus.TIMEOUT:
        return TimeoutEvent(**fields, error=error_message or "timeout")
    return FailedEvent(**fields, error=error_message or "failed")
