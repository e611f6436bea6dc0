from __future__ import annotations

import pytest

from enrichr.db.base import utcnow
from enrichr.db.models import JobStatus
from enrichr.services.jobs.errors import JobCancelled, JobTimedOut
from enrichr.services.jobs.events import ProjectEventPublisher
from enrichr.services.jobs.supervisor import CancellationToken, JobSupervisor
from enrichr.services.jobs.types import JobCounters
from tests.unit.job_fakes import InMemoryJobStore, ManualClock


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


def _supervisor(
    store: InMemoryJobStore,
    clock: ManualClock,
    *,
    publisher: ProjectEventPublisher | None = None,
    max_duration_seconds: float = 100.0,
    stall_timeout_seconds: float = 30.0,
    progress_every: int = 10,
    token: CancellationToken | None = None,
) -> JobSupervisor:
    job = store.add_job(status=JobStatus.RUNNING, started_at=utcnow())
    supervisor = JobSupervisor(
        job_id=job.id,
        project_id=job.project_id,
        store=store,
        publisher=publisher or ProjectEventPublisher(),
        max_duration_seconds=max_duration_seconds,
        stall_timeout_seconds=stall_timeout_seconds,
        token=token,
        progress_every=progress_every,
        clock=clock,
    )
    supervisor.start()
    return supervisor


@pytest.mark.asyncio
async def test_checkpoint_passes_when_nothing_changed(store, clock) -> None:
    supervisor = _supervisor(store, clock)
    await supervisor.checkpoint()
    assert store.control_reads == 1


@pytest.mark.asyncio
async def test_in_process_token_cancels_without_store_read(store, clock) -> None:
    token = CancellationToken()
    supervisor = _supervisor(store, clock, token=token)
    token.cancel()

    with pytest.raises(JobCancelled):
        await supervisor.checkpoint()
    assert store.control_reads == 0


@pytest.mark.asyncio
async def test_store_cancel_flag_is_observed_at_checkpoint(store, clock) -> None:
    supervisor = _supervisor(store, clock)
    store.cancel_externally(supervisor.job_id)

    with pytest.raises(JobCancelled):
        await supervisor.checkpoint()
    assert supervisor.token.cancelled


@pytest.mark.asyncio
async def test_stall_timeout_fires_when_no_progress_is_persisted(store, clock) -> None:
    supervisor = _supervisor(store, clock, stall_timeout_seconds=5.0)
    clock.advance(6)

    with pytest.raises(JobTimedOut) as exc_info:
        await supervisor.checkpoint()
    assert exc_info.value.reason == "stalled"
    assert str(exc_info.value) == "stalled: no progress for 5s"


@pytest.mark.asyncio
async def test_persisted_progress_resets_stall_clock(store, clock) -> None:
    supervisor = _supervisor(store, clock, stall_timeout_seconds=5.0)
    await supervisor.set_total(10)
    clock.advance(4)
    supervisor.counters.add(processed=2)
    await supervisor.report(force=True)
    clock.advance(4)

    await supervisor.checkpoint()


@pytest.mark.asyncio
async def test_earliest_expired_budget_wins(store, clock) -> None:
    supervisor = _supervisor(store, clock, max_duration_seconds=10.0, stall_timeout_seconds=5.0)
    clock.advance(12)
    assert supervisor.time_budget_exceeded().reason == "stalled"

    other = _supervisor(store, clock, max_duration_seconds=10.0, stall_timeout_seconds=5.0)
    clock.advance(8)
    await other.report(force=True)
    clock.advance(3)
    expired = other.time_budget_exceeded()
    assert expired.reason == "max_duration"
    assert expired.describe() == "max_duration: exceeded 10s"


@pytest.mark.asyncio
async def test_expired_budget_keeps_raising(store, clock) -> None:
    supervisor = _supervisor(store, clock)
    supervisor.expire(JobTimedOut("max_duration", limit_seconds=100))
    for _ in range(2):
        with pytest.raises(JobTimedOut):
            await supervisor.checkpoint()


@pytest.mark.asyncio
async def test_report_cadence_waits_for_progress_every_items(store, clock) -> None:
    supervisor = _supervisor(store, clock, progress_every=10)
    await supervisor.set_total(20)
    assert await supervisor.report(phase="embedding") is True

    supervisor.counters.add(processed=3)
    assert await supervisor.report() is False
    supervisor.counters.add(processed=6, errors=1)
    assert await supervisor.report() is True
    assert store.jobs[supervisor.job_id].processed == 9
    assert store.jobs[supervisor.job_id].errors == 1
    assert supervisor.persisted.processed == 9


@pytest.mark.asyncio
async def test_report_counts_phase_items_toward_cadence(store, clock) -> None:
    supervisor = _supervisor(store, clock, progress_every=10)
    await supervisor.report(phase="metadata", force=True)

    assert await supervisor.report(phase_progress="5/40 PMIDs", items_done=5) is False
    assert await supervisor.report(phase_progress="10/40 PMIDs", items_done=5) is True
    assert store.jobs[supervisor.job_id].phase_progress == "10/40 PMIDs"


@pytest.mark.asyncio
async def test_report_publishes_progress_event(store, clock) -> None:
    publisher = ProjectEventPublisher()
    supervisor = _supervisor(store, clock, publisher=publisher)
    queue = publisher.subscribe(supervisor.project_id)
    await supervisor.set_total(4)
    supervisor.counters.add(processed=1, errors=1)

    await supervisor.report(phase="embedding", force=True)

    assert queue.get_nowait() == {
        "jobId": supervisor.job_id,
        "type": "progress",
        "processed": 1,
        "total": 4,
        "errors": 1,
        "phase": "embedding",
    }


@pytest.mark.asyncio
async def test_progress_is_not_saved_after_job_left_running(store, clock) -> None:
    supervisor = _supervisor(store, clock)
    await supervisor.set_total(5)
    await store.finalize(supervisor.job_id, JobStatus.CANCELLED, now=utcnow())
    supervisor.counters.add(processed=2)

    assert await supervisor.report(force=True) is False
    assert supervisor.persisted.processed == 0
    assert store.jobs[supervisor.job_id].status == JobStatus.CANCELLED


@pytest.mark.asyncio
async def test_total_cannot_drop_below_counted_items(store, clock) -> None:
    supervisor = _supervisor(store, clock)
    await supervisor.set_total(5)
    supervisor.counters.add(processed=4)
    with pytest.raises(ValueError):
        supervisor.counters.add(processed=2)
    with pytest.raises(ValueError):
        await supervisor.set_total(3)


def test_counters_reject_increment_past_total_and_keep_values() -> None:
    counters = JobCounters()
    counters.set_total(10)
    counters.add(processed=6, errors=3)

    with pytest.raises(ValueError, match="exceed total"):
        counters.add(processed=1, errors=1)
    with pytest.raises(ValueError):
        counters.add(processed=-1)

    assert (counters.processed, counters.errors) == (6, 3)
    counters.add(errors=1)
    assert counters.processed + counters.errors == counters.total
