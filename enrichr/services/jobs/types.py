from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generic, TypeVar

from enrichr.db.models import JobKind, JobStatus

PayloadT = TypeVar("PayloadT")

TERMINAL_STATUSES = frozenset(
    {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
        JobStatus.TIMEOUT,
    }
)

_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: TERMINAL_STATUSES,
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class WorkItem(Generic[PayloadT]):
    record_id: str
    payload: PayloadT


@dataclass
class JobCounters:
    total: int | None = None
    processed: int = 0
    errors: int = 0

    def set_total(self, total: int) -> None:
        if total < self.processed + self.errors:
            raise ValueError("total cannot be below processed + errors")
        self.total = total

    def add(self, *, processed: int = 0, errors: int = 0) -> None:
        if processed < 0 or errors < 0:
            raise ValueError("counter increments must be non-negative")
        next_processed = self.processed + processed
        next_errors = self.errors + errors
        if self.total is not None and next_processed + next_errors > self.total:
            raise ValueError(
                f"processed + errors would exceed total "
                f"({next_processed} + {next_errors} > {self.total})"
            )
        self.processed = next_processed
        self.errors = next_errors

    def snapshot(self) -> JobCounters:
        return JobCounters(total=self.total, processed=self.processed, errors=self.errors)


@dataclass(frozen=True)
class JobControl:
    """Point-in-time read of the fields an external actor may change."""

    status: JobStatus
    cancel_requested: bool

    @property
    def should_stop(self) -> bool:
        return self.cancel_requested or self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class JobRecord:
    id: str
    project_id: str
    user_id: str
    kind: JobKind
    status: JobStatus
    scope: dict[str, Any] = field(default_factory=dict)
    total: int | None = None
    processed: int = 0
    errors: int = 0
    phase: str | None = None
    phase_progress: str | None = None
    cancel_requested: bool = False
    error_message: str | None = None
    requeued_from_id: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    last_progress_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class ProgressUpdate:
    processed: int
    errors: int
    total: int | None
    phase: str | None = None
    phase_progress: str | None = None
