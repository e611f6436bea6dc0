from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
import logging
from typing import Any, ClassVar

from enrichr.logging_utils import structured_log

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIBER_QUEUE_SIZE = 256


@dataclass(frozen=True)
class ProgressEvent:
    type: ClassVar[str] = "progress"

    job_id: str
    processed: int
    total: int | None
    errors: int
    phase: str | None = None


@dataclass(frozen=True)
class CompletedEvent:
    type: ClassVar[str] = "completed"

    job_id: str
    processed: int
    total: int | None
    errors: int


@dataclass(frozen=True)
class FailedEvent:
    type: ClassVar[str] = "error"

    job_id: str
    processed: int
    total: int | None
    errors: int
    error: str


@dataclass(frozen=True)
class CancelledEvent:
    type: ClassVar[str] = "cancelled"

    job_id: str
    processed: int
    total: int | None
    errors: int


@dataclass(frozen=True)
class TimeoutEvent:
    type: ClassVar[str] = "timeout"

    job_id: str
    processed: int
    total: int | None
    errors: int
    error: str


JobEvent = ProgressEvent | CompletedEvent | FailedEvent | CancelledEvent | TimeoutEvent


def event_payload(event: JobEvent) -> dict[str, Any]:
    """Serialize an event to the wire shape observers receive."""
    payload: dict[str, Any] = {
        "jobId": event.job_id,
        "type": event.type,
        "processed": event.processed,
        "total": event.total,
        "errors": event.errors,
    }
    phase = getattr(event, "phase", None)
    if phase is not None:
        payload["phase"] = phase
    error = getattr(event, "error", None)
    if error is not None:
        payload["error"] = error
    return payload


class ProjectEventPublisher:
    """In-process fan-out of job events to subscribers of a project channel."""

    def __init__(self, *, queue_size: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE) -> None:
        self._queue_size = max(1, int(queue_size))
        self._subscribers: dict[str, set[asyncio.Queue[dict[str, Any]]]] = {}

    def subscribe(self, project_id: str) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.setdefault(project_id, set()).add(queue)
        return queue

    def unsubscribe(self, project_id: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        subscribers = self._subscribers.get(project_id)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            self._subscribers.pop(project_id, None)

    def subscriber_count(self, project_id: str) -> int:
        return len(self._subscribers.get(project_id, ()))

    async def publish(self, project_id: str, event: JobEvent) -> None:
        subscribers = self._subscribers.get(project_id)
        if not subscribers:
            return
        message = event_payload(event)
        for queue in list(subscribers):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                structured_log(
                    logger,
                    "warning",
                    "jobs.event_dropped",
                    project_id=project_id,
                    event_type=event.type,
                )

    async def stream(self, project_id: str) -> AsyncIterator[dict[str, Any]]:
        queue = self.subscribe(project_id)
        try:
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe(project_id, queue)
