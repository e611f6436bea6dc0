from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass
import logging
from typing import Protocol

import httpx
from sqlalchemy.exc import SQLAlchemyError

from enrichr.db.models import JobKind
from enrichr.logging_utils import structured_log
from enrichr.services.credentials.application import (
    PROVIDER_OPENROUTER,
    CredentialLookup,
    require_api_key,
)
from enrichr.services.embeddings.client import OpenRouterEmbeddingClient
from enrichr.services.embeddings.repository import EmbeddingRepository
from enrichr.services.jobs.batching import BatchExecutor, BatchPolicy, GroupTick
from enrichr.services.jobs.dispatch import EmbeddingScope, scope_article_ids
from enrichr.services.jobs.errors import WorkSetQueryError
from enrichr.services.jobs.orchestrator import JobContext
from enrichr.services.jobs.types import WorkItem
from enrichr.settings import Settings

logger = logging.getLogger(__name__)

EMBEDDING_PHASE = "embedding"


class Embedder(Protocol):
    async def embed(self, texts: Sequence[str], *, throttle_seconds: float = 0.0) -> list[list[float]]: ...


EmbedderFactory = Callable[[str, httpx.AsyncClient], Embedder]


@dataclass(frozen=True)
class EmbeddingJobConfig:
    max_duration_seconds: float
    stall_timeout_seconds: float
    default_batch_size: int
    max_batch_size: int
    parallel_batches: int
    group_delay_seconds: float
    stagger_seconds: float
    model: str
    model_label: str
    base_url: str
    timeout_seconds: float
    referer: str | None
    max_input_chars: int

    @classmethod
    def from_settings(cls, settings: Settings) -> EmbeddingJobConfig:
        return cls(
            max_duration_seconds=settings.embedding_max_job_seconds,
            stall_timeout_seconds=settings.embedding_stall_timeout_seconds,
            default_batch_size=settings.embedding_batch_size,
            max_batch_size=settings.embedding_max_batch_size,
            parallel_batches=settings.embedding_parallel_batches,
            group_delay_seconds=settings.embedding_group_delay_seconds,
            stagger_seconds=settings.job_stagger_seconds,
            model=settings.embedding_model,
            model_label=settings.embedding_model_label,
            base_url=settings.openrouter_base_url,
            timeout_seconds=settings.openrouter_timeout_seconds,
            referer=settings.openrouter_referer,
            max_input_chars=settings.embedding_max_input_chars,
        )


def clamp_batch_size(requested: int | None, *, default: int, maximum: int) -> int:
    value = default if requested is None else int(requested)
    return min(max(value, 1), maximum)


class EmbeddingJob:
    kind = JobKind.EMBEDDING

    def __init__(
        self,
        *,
        repository: EmbeddingRepository,
        credentials: CredentialLookup,
        config: EmbeddingJobConfig,
        http_client_factory: Callable[[], httpx.AsyncClient] | None = None,
        embedder_factory: EmbedderFactory | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._repository = repository
        self._credentials = credentials
        self._config = config
        self._http_client_factory = http_client_factory or self._default_http_client
        self._embedder_factory = embedder_factory or self._default_embedder
        self._sleep = sleep or asyncio.sleep
        self.max_duration_seconds = config.max_duration_seconds
        self.stall_timeout_seconds = config.stall_timeout_seconds

    def _default_http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._config.timeout_seconds)

    def _default_embedder(self, api_key: str, http_client: httpx.AsyncClient) -> Embedder:
        return OpenRouterEmbeddingClient(
            http_client=http_client,
            api_key=api_key,
            base_url=self._config.base_url,
            model=self._config.model,
            referer=self._config.referer,
            max_input_chars=self._config.max_input_chars,
            sleep=self._sleep,
        )

    async def run(self, context: JobContext) -> None:
        job = context.job
        supervisor = context.supervisor
        scope = EmbeddingScope.model_validate(job.scope)
        batch_size = clamp_batch_size(
            scope.batch_size,
            default=self._config.default_batch_size,
            maximum=self._config.max_batch_size,
        )

        await context.checkpoint()
        api_key = await require_api_key(
            self._credentials,
            user_id=job.user_id,
            provider=PROVIDER_OPENROUTER,
        )
        try:
            candidates = await self._repository.select_candidates(
                project_id=job.project_id,
                article_ids=scope_article_ids(scope.article_ids),
                include_references=scope.include_references,
                include_cited_by=scope.include_cited_by,
            )
        except SQLAlchemyError as exc:
            raise WorkSetQueryError(f"Selecting embedding candidates failed: {exc}") from exc

        await supervisor.set_total(len(candidates))
        items = [
            WorkItem(record_id=candidate.article_id, payload=text)
            for candidate in candidates
            if (text := candidate.embedding_text())
        ]
        empty_count = len(candidates) - len(items)
        if empty_count:
            context.counters.add(errors=empty_count)
            structured_log(logger, "info", "embeddings.empty_text_skipped", count=empty_count)

        structured_log(
            logger,
            "info",
            "embeddings.work_set_selected",
            total=len(candidates),
            with_text=len(items),
            batch_size=batch_size,
            parallel_batches=self._config.parallel_batches,
        )
        await supervisor.report(
            phase=EMBEDDING_PHASE,
            phase_progress=_progress_text(context),
            force=True,
        )
        if not items:
            return

        policy = BatchPolicy(
            batch_size=batch_size,
            concurrency=self._config.parallel_batches,
            group_delay_seconds=self._config.group_delay_seconds,
            stagger_seconds=self._config.stagger_seconds,
        )
        async with self._http_client_factory() as http_client:
            embedder = self._embedder_factory(api_key, http_client)

            async def embed_chunk(chunk: list[WorkItem[str]]) -> list[str]:
                vectors = await embedder.embed([item.payload for item in chunk])
                if len(vectors) != len(chunk):
                    raise ValueError(f"embedder returned {len(vectors)} vectors for {len(chunk)} texts")
                await self._repository.store_embeddings(
                    [(item.record_id, vector) for item, vector in zip(chunk, vectors)],
                    model=self._config.model_label,
                )
                return [item.record_id for item in chunk]

            executor: BatchExecutor[str, str] = BatchExecutor(policy, sleep=self._sleep)
            async with aclosing(
                executor.iter_groups(items, embed_chunk, before_group=context.checkpoint)
            ) as ticks:
                async for tick in ticks:
                    await self._record_group(context, tick)

        structured_log(
            logger,
            "info",
            "embeddings.job_summary",
            processed=context.counters.processed,
            errors=context.counters.errors,
            total=context.counters.total,
        )

    async def _record_group(self, context: JobContext, tick: GroupTick[str, str]) -> None:
        context.counters.add(processed=tick.group_processed, errors=tick.group_errors)
        await context.supervisor.report(phase_progress=_progress_text(context), force=True)
        await context.checkpoint()


def _progress_text(context: JobContext) -> str:
    counters = context.counters
    return f"{counters.processed + counters.errors}/{counters.total or 0} articles ({counters.errors} errors)"
