from __future__ import annotations

import asyncio
import logging

import pytest

from enrichr.services.jobs.events import (
    CancelledEvent,
    CompletedEvent,
    FailedEvent,
    ProgressEvent,
    ProjectEventPublisher,
    TimeoutEvent,
    event_payload,
)


def test_event_payload_uses_camel_case_and_omits_empty_optionals() -> None:
    assert event_payload(ProgressEvent(job_id="j1", processed=5, total=10, errors=1)) == {
        "jobId": "j1",
        "type": "progress",
        "processed": 5,
        "total": 10,
        "errors": 1,
    }
    assert event_payload(ProgressEvent(job_id="j1", processed=5, total=10, errors=1, phase="metadata"))[
        "phase"
    ] == "metadata"


@pytest.mark.parametrize(
    ("event", "expected_type", "error"),
    [
        (CompletedEvent(job_id="j", processed=3, total=3, errors=0), "completed", None),
        (CancelledEvent(job_id="j", processed=1, total=3, errors=0), "cancelled", None),
        (FailedEvent(job_id="j", processed=0, total=3, errors=0, error="boom"), "error", "boom"),
        (
            TimeoutEvent(job_id="j", processed=2, total=3, errors=0, error="stalled: no progress for 60s"),
            "timeout",
            "stalled: no progress for 60s",
        ),
    ],
)
def test_terminal_event_types(event, expected_type, error) -> None:
    payload = event_payload(event)
    assert payload["type"] == expected_type
    assert payload.get("error") == error
    assert "phase" not in payload


@pytest.mark.asyncio
async def test_publisher_fans_out_to_project_subscribers_only() -> None:
    publisher = ProjectEventPublisher()
    first = publisher.subscribe("project-a")
    second = publisher.subscribe("project-a")
    other = publisher.subscribe("project-b")

    await publisher.publish("project-a", CompletedEvent(job_id="j", processed=1, total=1, errors=0))

    assert first.get_nowait()["type"] == "completed"
    assert second.get_nowait()["type"] == "completed"
    assert other.empty()


@pytest.mark.asyncio
async def test_publisher_drops_events_for_full_subscriber(caplog) -> None:
    publisher = ProjectEventPublisher(queue_size=1)
    queue = publisher.subscribe("project-a")

    with caplog.at_level(logging.WARNING, logger="enrichr.services.jobs.events"):
        await publisher.publish("project-a", ProgressEvent(job_id="j", processed=1, total=5, errors=0))
        await publisher.publish("project-a", ProgressEvent(job_id="j", processed=2, total=5, errors=0))

    assert queue.qsize() == 1
    assert queue.get_nowait()["processed"] == 1
    assert any(record.getMessage() == "jobs.event_dropped" for record in caplog.records)


@pytest.mark.asyncio
async def test_stream_unsubscribes_when_closed() -> None:
    publisher = ProjectEventPublisher()
    stream = publisher.stream("project-a")
    next_event = asyncio.ensure_future(stream.__anext__())
    await asyncio.sleep(0)
    assert publisher.subscriber_count("project-a") == 1

    await publisher.publish("project-a", CancelledEvent(job_id="j", processed=0, total=None, errors=0))
    assert (await next_event)["type"] == "cancelled"

    await stream.aclose()
    assert publisher.subscriber_count("project-a") == 0
