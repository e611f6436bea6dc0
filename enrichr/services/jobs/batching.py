"""Bounded-concurrency batch execution.

A work list is split into chunks of at most ``batch_size`` items. Chunks run in
groups of at most ``concurrency``; inside a group, chunk ``i`` starts after
``i * stagger_seconds``. After a group finishes, the executor waits
``group_delay_seconds`` before starting the next one. A chunk that raises is
counted as errors in full and the run continues; job-level decisions belong to
the caller, which consumes one ``GroupTick`` per group.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
import logging
from typing import Generic, TypeVar

from enrichr.logging_utils import structured_log
from enrichr.services.jobs.errors import FetchError
from enrichr.services.jobs.types import WorkItem

logger = logging.getLogger(__name__)

T = TypeVar("T")
PayloadT = TypeVar("PayloadT")
ResultT = TypeVar("ResultT")

ChunkRunner = Callable[[list[WorkItem[PayloadT]]], Awaitable[Sequence[ResultT]]]
SleepFn = Callable[[float], Awaitable[None]]
GroupHook = Callable[[], Awaitable[None]]

DEFAULT_STAGGER_SECONDS = 0.05


@dataclass(frozen=True)
class BatchPolicy:
    batch_size: int
    concurrency: int = 1
    group_delay_seconds: float = 0.0
    stagger_seconds: float = DEFAULT_STAGGER_SECONDS

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.group_delay_seconds < 0 or self.stagger_seconds < 0:
            raise ValueError("delays must be >= 0")


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    if size < 1:
        raise ValueError("size must be >= 1")
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


@dataclass(frozen=True)
class ChunkOutcome(Generic[PayloadT, ResultT]):
    index: int
    items: list[WorkItem[PayloadT]]
    outputs: list[ResultT] | None = None
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class GroupTick(Generic[PayloadT, ResultT]):
    group_index: int
    group_count: int
    outcomes: tuple[ChunkOutcome[PayloadT, ResultT], ...]
    processed: int
    errors: int

    @property
    def group_processed(self) -> int:
        return sum(len(outcome.items) for outcome in self.outcomes if outcome.succeeded)

    @property
    def group_errors(self) -> int:
        return sum(len(outcome.items) for outcome in self.outcomes if not outcome.succeeded)

    @property
    def is_last(self) -> bool:
        return self.group_index + 1 >= self.group_count


@dataclass
class ExecutionSummary(Generic[PayloadT, ResultT]):
    processed: int = 0
    errors: int = 0
    results: list[tuple[WorkItem[PayloadT], ResultT]] = field(default_factory=list)
    failed_chunks: int = 0


class BatchExecutor(Generic[PayloadT, ResultT]):
    def __init__(self, policy: BatchPolicy, *, sleep: SleepFn | None = None) -> None:
        self._policy = policy
        self._sleep = sleep or asyncio.sleep

    @property
    def policy(self) -> BatchPolicy:
        return self._policy

    async def iter_groups(
        self,
        items: Sequence[WorkItem[PayloadT]],
        run_chunk: ChunkRunner[PayloadT, ResultT],
        *,
        before_group: GroupHook | None = None,
    ) -> AsyncIterator[GroupTick[PayloadT, ResultT]]:
        """Yield one tick per completed group.

        ``before_group`` runs ahead of every group, after the inter-group delay,
        and may raise to stop the run before any further external call.
        """
        chunks = chunked(items, self._policy.batch_size)
        groups = chunked(list(enumerate(chunks)), self._policy.concurrency)
        processed = 0
        errors = 0
        for group_index, group in enumerate(groups):
            if group_index > 0 and self._policy.group_delay_seconds > 0:
                await self._sleep(self._policy.group_delay_seconds)
            if before_group is not None:
                await before_group()
            outcomes = await asyncio.gather(
                *(
                    self._run_chunk(
                        chunk_index,
                        chunk,
                        run_chunk,
                        offset=position * self._policy.stagger_seconds,
                    )
                    for position, (chunk_index, chunk) in enumerate(group)
                )
            )
            for outcome in outcomes:
                if outcome.succeeded:
                    processed += len(outcome.items)
                else:
                    errors += len(outcome.items)
            yield GroupTick(
                group_index=group_index,
                group_count=len(groups),
                outcomes=tuple(outcomes),
                processed=processed,
                errors=errors,
            )

    async def execute(
        self,
        items: Sequence[WorkItem[PayloadT]],
        run_chunk: ChunkRunner[PayloadT, ResultT],
        *,
        before_group: GroupHook | None = None,
        on_group: Callable[[GroupTick[PayloadT, ResultT]], Awaitable[None]] | None = None,
    ) -> ExecutionSummary[PayloadT, ResultT]:
        summary: ExecutionSummary[PayloadT, ResultT] = ExecutionSummary()
        async with aclosing(self.iter_groups(items, run_chunk, before_group=before_group)) as ticks:
            async for tick in ticks:
                summary.processed = tick.processed
                summary.errors = tick.errors
                for outcome in tick.outcomes:
                    if not outcome.succeeded:
                        summary.failed_chunks += 1
                        continue
                    summary.results.extend(zip(outcome.items, outcome.outputs or []))
                if on_group is not None:
                    await on_group(tick)
        return summary

    async def _run_chunk(
        self,
        chunk_index: int,
        chunk: list[WorkItem[PayloadT]],
        run_chunk: ChunkRunner[PayloadT, ResultT],
        *,
        offset: float,
    ) -> ChunkOutcome[PayloadT, ResultT]:
        if offset > 0:
            await self._sleep(offset)
        try:
            outputs = list(await run_chunk(chunk))
            if len(outputs) != len(chunk):
                raise ValueError(
                    f"chunk returned {len(outputs)} results for {len(chunk)} items"
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            structured_log(
                logger,
                "warning",
                "jobs.batch_failed",
                chunk_index=chunk_index,
                batch_size=exc.batch_size if isinstance(exc, FetchError) else len(chunk),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return ChunkOutcome(index=chunk_index, items=chunk, error=exc)
        return ChunkOutcome(index=chunk_index, items=chunk, outputs=outputs)
