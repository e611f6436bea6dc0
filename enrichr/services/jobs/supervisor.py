from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
import logging
import time

from enrichr.db.base import utcnow
from enrichr.logging_utils import structured_log
from enrichr.services.jobs.errors import JobCancelled, JobTimedOut
from enrichr.services.jobs.events import ProgressEvent, ProjectEventPublisher
from enrichr.services.jobs.store import JobStore
from enrichr.services.jobs.types import JobCounters, ProgressUpdate

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
WallClock = Callable[[], datetime]

DEFAULT_PROGRESS_EVERY = 10


class CancellationToken:
    """In-process cancellation flag shared between a job and its controller."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class JobSupervisor:
    def __init__(
        self,
        *,
        job_id: str,
        project_id: str,
        store: JobStore,
        publisher: ProjectEventPublisher,
        max_duration_seconds: float,
        stall_timeout_seconds: float,
        token: CancellationToken | None = None,
        progress_every: int = DEFAULT_PROGRESS_EVERY,
        clock: Clock = time.monotonic,
        wall_clock: WallClock = utcnow,
    ) -> None:
        self.job_id = job_id
        self.project_id = project_id
        self.token = token or CancellationToken()
        self.counters = JobCounters()
        self._store = store
        self._publisher = publisher
        self._max_duration_seconds = float(max_duration_seconds)
        self._stall_timeout_seconds = float(stall_timeout_seconds)
        self._progress_every = max(1, int(progress_every))
        self._clock = clock
        self._wall_clock = wall_clock
        self._started_at: float | None = None
        self._last_persist_at: float | None = None
        self._persisted = JobCounters()
        self._persisted_phase: str | None = None
        self._pending_items = 0
        self._phase: str | None = None
        self._phase_progress: str | None = None
        self._expired: JobTimedOut | None = None

    def start(self) -> None:
        now = self._clock()
        self._started_at = now
        self._last_persist_at = now

    @property
    def phase(self) -> str | None:
        return self._phase

    @property
    def persisted(self) -> JobCounters:
        """Counters as of the last successful progress persist."""
        return self._persisted.snapshot()

    @property
    def expired(self) -> JobTimedOut | None:
        return self._expired

    def expire(self, reason: JobTimedOut) -> None:
        self._expired = reason

    def time_budget_exceeded(self) -> JobTimedOut | None:
        """Return the budget that expired first, if any."""
        if self._started_at is None or self._last_persist_at is None:
            return None
        now = self._clock()
        max_deadline = self._started_at + self._max_duration_seconds
        stall_deadline = self._last_persist_at + self._stall_timeout_seconds
        expired: list[tuple[float, JobTimedOut]] = []
        if now > max_deadline:
            expired.append(
                (max_deadline, JobTimedOut("max_duration", limit_seconds=self._max_duration_seconds))
            )
        if now > stall_deadline:
            expired.append(
                (stall_deadline, JobTimedOut("stalled", limit_seconds=self._stall_timeout_seconds))
            )
        if not expired:
            return None
        return min(expired, key=lambda entry: entry[0])[1]

    async def checkpoint(self) -> None:
        if self._expired is not None:
            raise self._expired
        expired = self.time_budget_exceeded()
        if expired is not None:
            self._expired = expired
            raise expired
        if self.token.cancelled:
            raise JobCancelled()
        control = await self._store.read_control(self.job_id)
        if control.should_stop:
            self.token.cancel()
            raise JobCancelled()

    async def set_total(self, total: int) -> None:
        self.counters.set_total(total)
        await self._store.set_total(self.job_id, total, now=self._wall_clock())
        self._persisted.total = total
        self._last_persist_at = self._clock()

    async def report(
        self,
        *,
        phase: str | None = None,
        phase_progress: str | None = None,
        items_done: int = 0,
        force: bool = False,
    ) -> bool:
        """Persist and publish progress when the cadence allows it.

        Returns True when a persist happened.
        """
        if phase is not None:
            self._phase = phase
        if phase_progress is not None:
            self._phase_progress = phase_progress
        self._pending_items += max(0, items_done)

        counted = (self.counters.processed + self.counters.errors) - (
            self._persisted.processed + self._persisted.errors
        )
        phase_changed = self._phase != self._persisted_phase
        if not (force or phase_changed or counted + self._pending_items >= self._progress_every):
            return False
        return await self._persist()

    async def _persist(self) -> bool:
        snapshot = self.counters.snapshot()
        update = ProgressUpdate(
            processed=snapshot.processed,
            errors=snapshot.errors,
            total=snapshot.total,
            phase=self._phase,
            phase_progress=self._phase_progress,
        )
        saved = await self._store.save_progress(self.job_id, update, now=self._wall_clock())
        if not saved:
            structured_log(
                logger,
                "info",
                "jobs.progress_not_saved",
                job_id=self.job_id,
                processed=snapshot.processed,
                errors=snapshot.errors,
            )
            return False
        self._persisted = snapshot
        self._persisted_phase = self._phase
        self._pending_items = 0
        self._last_persist_at = self._clock()
        await self._publisher.publish(
            self.project_id,
            ProgressEvent(
                job_id=self.job_id,
                processed=snapshot.processed,
                total=snapshot.total,
                errors=snapshot.errors,
                phase=self._phase,
            ),
        )
        return True
