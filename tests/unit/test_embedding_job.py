from __future__ import annotations

from collections.abc import Sequence
from dataclasses import replace

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from enrichr.db.models import JobKind, JobStatus
from enrichr.services.embeddings.application import EmbeddingJob, EmbeddingJobConfig, clamp_batch_size
from enrichr.services.embeddings.repository import ArticleText
from enrichr.services.jobs.errors import EmbeddingProviderError
from enrichr.services.jobs.events import ProjectEventPublisher
from enrichr.services.jobs.orchestrator import JobOrchestrator
from enrichr.settings import settings
from tests.unit.job_fakes import (
    InMemoryJobStore,
    RecordingSleep,
    StaticCredentials,
    assert_progress_within_total,
)


class FakeEmbeddingRepository:
    def __init__(self, articles: list[ArticleText]) -> None:
        self.articles = articles
        self.embeddings: dict[str, list[float]] = {}
        self.models: set[str] = set()
        self.selections: list[dict] = []
        self.fail_selection = False

    async def select_candidates(self, **kwargs) -> list[ArticleText]:
        self.selections.append(kwargs)
        if self.fail_selection:
            raise OperationalError("SELECT", {}, Exception("connection reset"))
        wanted = set(kwargs["article_ids"] or [])
        return [
            article
            for article in self.articles
            if article.article_id not in self.embeddings and (not wanted or article.article_id in wanted)
        ]

    async def store_embeddings(self, rows: Sequence[tuple[str, list[float]]], *, model: str) -> None:
        self.models.add(model)
        for article_id, vector in rows:
            self.embeddings[article_id] = vector


class FakeEmbedder:
    def __init__(self, *, fail_on_call: set[int] | None = None, on_call=None) -> None:
        self.batches: list[list[str]] = []
        self._fail_on_call = fail_on_call or set()
        self._on_call = on_call

    async def embed(self, texts: Sequence[str], *, throttle_seconds: float = 0.0) -> list[list[float]]:
        self.batches.append(list(texts))
        call_number = len(self.batches)
        if self._on_call is not None:
            self._on_call(call_number)
        if call_number in self._fail_on_call:
            raise EmbeddingProviderError("OpenRouter API error: 500", batch_size=len(texts))
        return [[float(len(text)), 1.0] for text in texts]


def _articles(count: int) -> list[ArticleText]:
    return [
        ArticleText(article_id=f"00000000-0000-0000-0000-{index:012d}", title=f"Title {index}", abstract="Abstract")
        for index in range(count)
    ]


def _config(**overrides) -> EmbeddingJobConfig:
    config = EmbeddingJobConfig.from_settings(settings)
    return replace(config, group_delay_seconds=0.0, stagger_seconds=0.0, **overrides)


def _mock_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))


@pytest.fixture
def store() -> InMemoryJobStore:
    return InMemoryJobStore()


@pytest.fixture
def orchestrator(store) -> JobOrchestrator:
    return JobOrchestrator(store=store, publisher=ProjectEventPublisher(), watchdog_interval_seconds=0.05)


def _job(repository, embedder, *, credentials=None, **config_overrides) -> EmbeddingJob:
    return EmbeddingJob(
        repository=repository,
        credentials=credentials or StaticCredentials({"openrouter": "sk-or-test"}),
        config=_config(**config_overrides),
        http_client_factory=_mock_http_client,
        embedder_factory=lambda api_key, http_client: embedder,
        sleep=RecordingSleep(),
    )


def test_clamp_batch_size_uses_default_and_bounds() -> None:
    assert clamp_batch_size(None, default=50, maximum=2048) == 50
    assert clamp_batch_size(0, default=50, maximum=2048) == 1
    assert clamp_batch_size(10_000, default=50, maximum=2048) == 2048


@pytest.mark.asyncio
async def test_137_articles_embed_in_three_batches(store, orchestrator) -> None:
    repository = FakeEmbeddingRepository(_articles(137))
    embedder = FakeEmbedder()
    job = store.add_job(kind=JobKind.EMBEDDING)

    status = await orchestrator.run(job.id, _job(repository, embedder, default_batch_size=50, parallel_batches=3))

    assert status == JobStatus.COMPLETED
    assert sorted(len(batch) for batch in embedder.batches) == [37, 50, 50]
    stored = store.jobs[job.id]
    assert (stored.total, stored.processed, stored.errors) == (137, 137, 0)
    assert len(repository.embeddings) == 137
    assert repository.models == {settings.embedding_model_label}
    assert_progress_within_total(store.progress_saves)


@pytest.mark.asyncio
async def test_failed_batch_counts_errors_and_job_still_completes(store, orchestrator) -> None:
    repository = FakeEmbeddingRepository(_articles(6))
    embedder = FakeEmbedder(fail_on_call={2})
    job = store.add_job(kind=JobKind.EMBEDDING, scope={"batchSize": 2})

    status = await orchestrator.run(job.id, _job(repository, embedder, parallel_batches=1))

    assert status == JobStatus.COMPLETED
    stored = store.jobs[job.id]
    assert (stored.total, stored.processed, stored.errors) == (6, 4, 2)
    assert len(repository.embeddings) == 4
    assert_progress_within_total(store.progress_saves)


@pytest.mark.asyncio
async def test_articles_without_text_are_counted_as_errors(store, orchestrator) -> None:
    articles = _articles(3) + [ArticleText(article_id="empty-1", title=None, abstract="  ")]
    repository = FakeEmbeddingRepository(articles)
    embedder = FakeEmbedder()
    job = store.add_job(kind=JobKind.EMBEDDING)

    await orchestrator.run(job.id, _job(repository, embedder))

    stored = store.jobs[job.id]
    assert (stored.total, stored.processed, stored.errors) == (4, 3, 1)
    assert "empty-1" not in repository.embeddings


@pytest.mark.asyncio
async def test_rerun_after_completion_has_nothing_left(store, orchestrator) -> None:
    repository = FakeEmbeddingRepository(_articles(5))
    first = store.add_job(kind=JobKind.EMBEDDING)
    await orchestrator.run(first.id, _job(repository, FakeEmbedder()))

    embedder = FakeEmbedder()
    second = store.add_job(kind=JobKind.EMBEDDING)
    status = await orchestrator.run(second.id, _job(repository, embedder))

    assert status == JobStatus.COMPLETED
    assert embedder.batches == []
    assert store.jobs[second.id].total == 0


@pytest.mark.asyncio
async def test_missing_api_key_fails_before_selecting_work(store, orchestrator) -> None:
    repository = FakeEmbeddingRepository(_articles(2))
    job = store.add_job(kind=JobKind.EMBEDDING)

    status = await orchestrator.run(
        job.id,
        _job(repository, FakeEmbedder(), credentials=StaticCredentials()),
    )

    assert status == JobStatus.FAILED
    assert store.jobs[job.id].error_message == "No openrouter API key is configured for this user."
    assert repository.selections == []


@pytest.mark.asyncio
async def test_work_set_query_failure_fails_job(store, orchestrator) -> None:
    repository = FakeEmbeddingRepository(_articles(2))
    repository.fail_selection = True
    job = store.add_job(kind=JobKind.EMBEDDING)

    assert await orchestrator.run(job.id, _job(repository, FakeEmbedder())) == JobStatus.FAILED
    assert store.jobs[job.id].error_message.startswith("Selecting embedding candidates failed")


@pytest.mark.asyncio
async def test_cancel_during_first_batch_stops_further_provider_calls(store, orchestrator) -> None:
    repository = FakeEmbeddingRepository(_articles(5))
    job = store.add_job(kind=JobKind.EMBEDDING, scope={"batchSize": 1})
    embedder = FakeEmbedder(on_call=lambda call: store.cancel_externally(job.id))

    status = await orchestrator.run(job.id, _job(repository, embedder, parallel_batches=1))

    assert status == JobStatus.CANCELLED
    assert len(embedder.batches) == 1
    assert store.jobs[job.id].processed == 1
    assert_progress_within_total(store.progress_saves)


@pytest.mark.asyncio
async def test_explicit_article_ids_restrict_work_set(store, orchestrator) -> None:
    articles = _articles(4)
    repository = FakeEmbeddingRepository(articles)
    embedder = FakeEmbedder()
    wanted = [articles[1].article_id, articles[3].article_id]
    job = store.add_job(kind=JobKind.EMBEDDING, scope={"articleIds": wanted, "includeReferences": False})

    await orchestrator.run(job.id, _job(repository, embedder))

    assert repository.selections[0]["article_ids"] == wanted
    assert repository.selections[0]["include_references"] is False
    assert set(repository.embeddings) == set(wanted)
