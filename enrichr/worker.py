from __future__ import annotations

import argparse
import asyncio
from collections.abc import Mapping
from datetime import timedelta
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_exponential

from enrichr.db.base import utcnow
from enrichr.db.models import JobKind, JobStatus
from enrichr.db.session import close_engine, get_session_factory, ping_database
from enrichr.logging_config import configure_logging, parse_redact_fields
from enrichr.logging_context import job_log_context
from enrichr.logging_utils import structured_log
from enrichr.services.credentials.application import (
    PROVIDER_OPENROUTER,
    PROVIDER_PUBMED,
    SqlCredentialLookup,
)
from enrichr.services.embeddings.application import EmbeddingJob, EmbeddingJobConfig
from enrichr.services.embeddings.repository import SqlEmbeddingRepository
from enrichr.services.graph.application import GraphFetchJob, GraphFetchJobConfig
from enrichr.services.graph.repository import SqlGraphRepository
from enrichr.services.jobs.dispatch import DefinitionFactory, JobDispatcher
from enrichr.services.jobs.events import ProjectEventPublisher, TimeoutEvent
from enrichr.services.jobs.orchestrator import JobOrchestrator
from enrichr.services.jobs.store import JobStore, SqlJobStore
from enrichr.services.jobs.types import JobRecord
from enrichr.settings import Settings, settings

logger = logging.getLogger(__name__)

WORKER_LOST_MESSAGE = "stalled: no progress (worker lost)"


def stall_timeouts_from_settings(config: Settings) -> dict[JobKind, float]:
    return {
        JobKind.EMBEDDING: float(config.embedding_stall_timeout_seconds),
        JobKind.GRAPH_FETCH: float(config.graph_stall_timeout_seconds),
    }


def build_definition_factories(
    session_factory: async_sessionmaker[AsyncSession],
    config: Settings,
) -> dict[JobKind, DefinitionFactory]:
    credentials = SqlCredentialLookup(
        session_factory,
        fallback_keys={
            PROVIDER_OPENROUTER: config.openrouter_api_key,
            PROVIDER_PUBMED: config.pubmed_api_key,
        },
    )
    embedding_repository = SqlEmbeddingRepository(session_factory)
    graph_repository = SqlGraphRepository(session_factory)
    embedding_config = EmbeddingJobConfig.from_settings(config)
    graph_config = GraphFetchJobConfig.from_settings(config)

    def embedding_factory(_: JobRecord) -> EmbeddingJob:
        return EmbeddingJob(
            repository=embedding_repository,
            credentials=credentials,
            config=embedding_config,
        )

    def graph_factory(_: JobRecord) -> GraphFetchJob:
        return GraphFetchJob(
            repository=graph_repository,
            credentials=credentials,
            config=graph_config,
        )

    return {
        JobKind.EMBEDDING: embedding_factory,
        JobKind.GRAPH_FETCH: graph_factory,
    }


class JobWorker:
    """Polls for queued jobs, runs at most one per kind, and reaps jobs whose worker vanished."""

    def __init__(
        self,
        *,
        store: JobStore,
        dispatcher: JobDispatcher,
        publisher: ProjectEventPublisher,
        stall_timeouts: Mapping[JobKind, float],
        enabled: bool = True,
        tick_seconds: int = 5,
        watchdog_enabled: bool = True,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._publisher = publisher
        self._stall_timeouts = dict(stall_timeouts)
        self._enabled = enabled
        self._tick_seconds = max(1, int(tick_seconds))
        self._watchdog_enabled = watchdog_enabled
        self._task: asyncio.Task[None] | None = None
        self._running: dict[JobKind, asyncio.Task[JobStatus]] = {}

    @property
    def running_kinds(self) -> frozenset[JobKind]:
        return frozenset(kind for kind, task in self._running.items() if not task.done())

    async def start(self) -> None:
        if not self._enabled:
            structured_log(logger, "info", "worker.disabled")
            return
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run_loop(), name="enrichr-worker")
        structured_log(
            logger,
            "info",
            "worker.started",
            tick_seconds=self._tick_seconds,
            watchdog_enabled=self._watchdog_enabled,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
        jobs = [task for task in self._running.values() if not task.done()]
        for task in jobs:
            task.cancel()
        await asyncio.gather(*jobs, return_exceptions=True)
        self._running.clear()
        structured_log(logger, "info", "worker.stopped", interrupted_jobs=len(jobs))

    async def wait_idle(self) -> None:
        while self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.tick_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("worker.tick_failed", extra={"event": "worker.tick_failed"})
            await asyncio.sleep(float(self._tick_seconds))

    async def tick_once(self) -> None:
        if self._watchdog_enabled:
            await self.reap_stalled_jobs()
        for kind in JobKind:
            if kind in self.running_kinds:
                continue
            job = await self._store.next_queued(kind)
            if job is None:
                continue
            self._launch(job)

    def _launch(self, job: JobRecord) -> None:
        task = asyncio.create_task(self._dispatcher.run_job(job), name=f"enrichr-job-{job.id}")
        self._running[job.kind] = task
        task.add_done_callback(lambda finished, kind=job.kind: self._on_job_done(kind, finished))
        structured_log(logger, "info", "worker.job_launched", job_id=job.id, kind=job.kind.value)

    def _on_job_done(self, kind: JobKind, task: asyncio.Task[JobStatus]) -> None:
        if self._running.get(kind) is task:
            del self._running[kind]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            structured_log(
                logger,
                "error",
                "worker.job_crashed",
                kind=kind.value,
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=exc,
            )

    async def reap_stalled_jobs(self) -> list[str]:
        """Time out running jobs that no live orchestrator in this process owns."""
        now = utcnow()
        active = self._dispatcher.active_job_ids
        reaped: list[str] = []
        for kind, stall_seconds in self._stall_timeouts.items():
            stalled = await self._store.list_stalled(
                kind=kind,
                progress_before=now - timedelta(seconds=stall_seconds),
            )
            for job in stalled:
                if job.id in active:
                    continue
                with job_log_context(job.id):
                    finalized = await self._store.finalize(
                        job.id,
                        JobStatus.TIMEOUT,
                        now=now,
                        error_message=WORKER_LOST_MESSAGE,
                    )
                    if not finalized:
                        continue
                    structured_log(
                        logger,
                        "warning",
                        "jobs.reaped_stalled",
                        kind=kind.value,
                        processed=job.processed,
                        errors=job.errors,
                        total=job.total,
                        last_progress_at=job.last_progress_at,
                    )
                await self._publisher.publish(
                    job.project_id,
                    TimeoutEvent(
                        job_id=job.id,
                        processed=job.processed,
                        total=job.total,
                        errors=job.errors,
                        error=WORKER_LOST_MESSAGE,
                    ),
                )
                reaped.append(job.id)
        return reaped


async def wait_for_database(*, attempts: int) -> None:
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, attempts)),
            wait=wait_exponential(multiplier=1, min=1, max=10),
        ):
            with attempt:
                await ping_database()
    except RetryError as exc:
        structured_log(logger, "error", "worker.database_unavailable", attempts=attempts)
        raise RuntimeError("Database is unreachable.") from exc.last_attempt.exception()


def build_worker(config: Settings = settings) -> JobWorker:
    session_factory = get_session_factory()
    store = SqlJobStore(session_factory)
    publisher = ProjectEventPublisher()
    orchestrator = JobOrchestrator(
        store=store,
        publisher=publisher,
        progress_every=config.job_progress_every_items,
        watchdog_interval_seconds=config.job_stall_check_interval_seconds,
    )
    dispatcher = JobDispatcher(
        store=store,
        orchestrator=orchestrator,
        factories=build_definition_factories(session_factory, config),
    )
    return JobWorker(
        store=store,
        dispatcher=dispatcher,
        publisher=publisher,
        stall_timeouts=stall_timeouts_from_settings(config),
        enabled=config.worker_enabled,
        tick_seconds=config.worker_tick_seconds,
        watchdog_enabled=config.worker_watchdog_enabled,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the enrichment job worker.")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single poll tick, wait for launched jobs, then exit.",
    )
    return parser


async def _run(args: argparse.Namespace) -> None:
    await wait_for_database(attempts=settings.database_connect_attempts)
    worker = build_worker()
    try:
        if args.once:
            await worker.tick_once()
            await worker.wait_idle()
            return
        await worker.start()
        await asyncio.Event().wait()
    finally:
        await worker.stop()
        await close_engine()


def main() -> int:
    args = build_parser().parse_args()
    configure_logging(
        level=settings.log_level,
        log_format=settings.log_format,
        redact_fields=parse_redact_fields(settings.log_redact_fields),
    )
    try:
        asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130
    except RuntimeError as exc:
        structured_log(logger, "error", "worker.exited", error=str(exc))
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
