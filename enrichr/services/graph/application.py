"""Citation-graph fetch job.

Four phases run in order against the project's records:

1. references and cited-by PMIDs from PubMed eLink, stored on each record;
2. metadata for every related PMID, cached in ``graph_cache``;
3. Europe PMC citation counts for the first records of phase 1;
4. Crossref reference DOIs for records that have a DOI but no PMID.

Job counters track phase 1 only. Phases 2-4 report through ``phase_progress``
and absorb their own batch and item failures.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager, aclosing, asynccontextmanager
from dataclasses import asdict, dataclass
import logging
from typing import Protocol

import httpx
from sqlalchemy.exc import SQLAlchemyError

from enrichr.db.models import JobKind
from enrichr.logging_utils import structured_log
from enrichr.services.credentials.application import PROVIDER_PUBMED, CredentialLookup
from enrichr.services.crossref.client import CrossrefClient, CrossrefReferences
from enrichr.services.europepmc.client import EuropePmcClient
from enrichr.services.graph.cache import GraphMetadataCache
from enrichr.services.graph.repository import GraphRepository, PmidArticle
from enrichr.services.jobs.batching import BatchExecutor, BatchPolicy, GroupTick, chunked
from enrichr.services.jobs.dispatch import GraphFetchScope, scope_article_ids
from enrichr.services.jobs.errors import WorkSetQueryError
from enrichr.services.jobs.orchestrator import JobContext
from enrichr.services.jobs.types import WorkItem
from enrichr.services.pubmed.client import PubMedClient
from enrichr.services.pubmed.types import PubMedLinks, PubMedSummary
from enrichr.settings import Settings

logger = logging.getLogger(__name__)

PHASE_LINKS = "references"
PHASE_METADATA = "metadata"
PHASE_CITATION_COUNTS = "citation_counts"
PHASE_CROSSREF = "crossref_references"


class LinkAdapter(Protocol):
    async def fetch_links(self, pmids: Sequence[str], *, throttle_seconds: float = 0.0) -> list[PubMedLinks]: ...

    async def fetch_summaries(
        self,
        pmids: Sequence[str],
        *,
        throttle_seconds: float = 0.0,
    ) -> list[PubMedSummary | None]: ...


class CitationCountAdapter(Protocol):
    async def get_citation_count(self, pmid: str, *, throttle_seconds: float = 0.0) -> int: ...


class ReferenceAdapter(Protocol):
    async def get_references(self, doi: str, *, throttle_seconds: float = 0.0) -> CrossrefReferences | None: ...


@dataclass(frozen=True)
class GraphAdapters:
    pubmed: LinkAdapter
    europepmc: CitationCountAdapter
    crossref: ReferenceAdapter


AdaptersFactory = Callable[[str | None], AbstractAsyncContextManager[GraphAdapters]]


@dataclass(frozen=True)
class GraphFetchJobConfig:
    max_duration_seconds: float
    stall_timeout_seconds: float
    link_batch_size: int
    link_parallel_batches: int
    metadata_batch_size: int
    cache_ttl_days: int
    citation_count_limit: int
    citation_count_batch_size: int
    crossref_record_limit: int
    crossref_batch_size: int
    stagger_seconds: float
    pubmed_base_url: str
    pubmed_timeout_seconds: float
    link_throttle_seconds: float
    link_throttle_with_key_seconds: float
    fetch_throttle_seconds: float
    fetch_throttle_with_key_seconds: float
    europepmc_base_url: str
    europepmc_timeout_seconds: float
    europepmc_throttle_seconds: float
    crossref_app_name: str
    crossref_timeout_seconds: float
    crossref_throttle_seconds: float
    crossref_mailto: str | None

    @classmethod
    def from_settings(cls, settings: Settings) -> GraphFetchJobConfig:
        return cls(
            max_duration_seconds=settings.graph_max_job_seconds,
            stall_timeout_seconds=settings.graph_stall_timeout_seconds,
            link_batch_size=settings.graph_link_batch_size,
            link_parallel_batches=settings.graph_link_parallel_batches,
            metadata_batch_size=settings.graph_metadata_batch_size,
            cache_ttl_days=settings.graph_cache_ttl_days,
            citation_count_limit=settings.graph_citation_count_limit,
            citation_count_batch_size=settings.graph_citation_count_batch_size,
            crossref_record_limit=settings.graph_crossref_record_limit,
            crossref_batch_size=settings.graph_crossref_batch_size,
            stagger_seconds=settings.job_stagger_seconds,
            pubmed_base_url=settings.pubmed_base_url,
            pubmed_timeout_seconds=settings.pubmed_timeout_seconds,
            link_throttle_seconds=settings.pubmed_link_throttle_seconds,
            link_throttle_with_key_seconds=settings.pubmed_link_throttle_with_key_seconds,
            fetch_throttle_seconds=settings.pubmed_fetch_throttle_seconds,
            fetch_throttle_with_key_seconds=settings.pubmed_fetch_throttle_with_key_seconds,
            europepmc_base_url=settings.europepmc_base_url,
            europepmc_timeout_seconds=settings.europepmc_timeout_seconds,
            europepmc_throttle_seconds=settings.europepmc_throttle_seconds,
            crossref_app_name=settings.app_name,
            crossref_timeout_seconds=settings.crossref_timeout_seconds,
            crossref_throttle_seconds=settings.crossref_throttle_seconds,
            crossref_mailto=settings.crossref_api_mailto,
        )

    def link_throttle(self, has_api_key: bool) -> float:
        return self.link_throttle_with_key_seconds if has_api_key else self.link_throttle_seconds

    def fetch_throttle(self, has_api_key: bool) -> float:
        return self.fetch_throttle_with_key_seconds if has_api_key else self.fetch_throttle_seconds


@dataclass
class GraphFetchStats:
    articles_with_references: int = 0
    reference_total: int = 0
    articles_with_cited_by: int = 0
    cited_by_total: int = 0
    related_pmids: int = 0
    cache_hits: int = 0
    cache_fetched: int = 0
    cache_missing: int = 0
    metadata_failed_batches: int = 0
    citation_updates: int = 0
    citation_failures: int = 0
    crossref_records: int = 0
    crossref_with_references: int = 0
    crossref_reference_total: int = 0
    crossref_failures: int = 0


def dedupe_articles(articles: Sequence[PmidArticle]) -> list[PmidArticle]:
    seen: set[str] = set()
    unique: list[PmidArticle] = []
    for article in articles:
        if article.article_id in seen:
            continue
        seen.add(article.article_id)
        unique.append(article)
    return unique


def open_graph_adapters(
    config: GraphFetchJobConfig,
    *,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> AdaptersFactory:
    @asynccontextmanager
    async def factory(pubmed_api_key: str | None) -> AsyncIterator[GraphAdapters]:
        async with (
            httpx.AsyncClient(timeout=config.pubmed_timeout_seconds) as pubmed_http,
            httpx.AsyncClient(timeout=config.europepmc_timeout_seconds) as europepmc_http,
        ):
            yield GraphAdapters(
                pubmed=PubMedClient(
                    http_client=pubmed_http,
                    base_url=config.pubmed_base_url,
                    api_key=pubmed_api_key,
                    sleep=sleep,
                ),
                europepmc=EuropePmcClient(
                    http_client=europepmc_http,
                    base_url=config.europepmc_base_url,
                    sleep=sleep,
                ),
                crossref=CrossrefClient(
                    app_name=config.crossref_app_name,
                    mailto=config.crossref_mailto,
                    timeout_seconds=config.crossref_timeout_seconds,
                    sleep=sleep,
                ),
            )

    return factory


class GraphFetchJob:
    kind = JobKind.GRAPH_FETCH

    def __init__(
        self,
        *,
        repository: GraphRepository,
        credentials: CredentialLookup,
        config: GraphFetchJobConfig,
        adapters_factory: AdaptersFactory | None = None,
        cache: GraphMetadataCache | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._repository = repository
        self._credentials = credentials
        self._config = config
        self._sleep = sleep or asyncio.sleep
        self._adapters_factory = adapters_factory or open_graph_adapters(config, sleep=self._sleep)
        self._cache = cache or GraphMetadataCache(repository, ttl_days=config.cache_ttl_days)
        self.max_duration_seconds = config.max_duration_seconds
        self.stall_timeout_seconds = config.stall_timeout_seconds

    async def run(self, context: JobContext) -> None:
        job = context.job
        scope = GraphFetchScope.model_validate(job.scope)
        article_ids = scope_article_ids(scope.article_ids)

        await context.checkpoint()
        pubmed_api_key = await self._credentials.get_api_key(job.user_id, PROVIDER_PUBMED)
        try:
            articles = await self._repository.select_pmid_articles(
                project_id=job.project_id,
                selected_only=scope.selected_only,
                article_ids=article_ids,
            )
        except SQLAlchemyError as exc:
            raise WorkSetQueryError(f"Selecting graph articles failed: {exc}") from exc

        articles = dedupe_articles(articles)
        await context.supervisor.set_total(len(articles))
        structured_log(
            logger,
            "info",
            "graph.work_set_selected",
            total=len(articles),
            selected_only=scope.selected_only,
            has_pubmed_key=pubmed_api_key is not None,
        )
        if not articles:
            return

        stats = GraphFetchStats()
        has_key = pubmed_api_key is not None
        async with self._adapters_factory(pubmed_api_key) as adapters:
            related = await self._fetch_links(context, adapters, articles, stats, has_key=has_key)
            await context.checkpoint()
            await self._cache_metadata(context, adapters, related, stats, has_key=has_key)
            await context.checkpoint()
            await self._fetch_citation_counts(context, adapters, articles, stats)
            await context.checkpoint()
            await self._fetch_crossref_references(
                context,
                adapters,
                stats,
                selected_only=scope.selected_only,
                article_ids=article_ids,
            )

        structured_log(
            logger,
            "info",
            "graph.job_summary",
            processed=context.counters.processed,
            errors=context.counters.errors,
            total=context.counters.total,
            **asdict(stats),
        )

    async def _fetch_links(
        self,
        context: JobContext,
        adapters: GraphAdapters,
        articles: list[PmidArticle],
        stats: GraphFetchStats,
        *,
        has_key: bool,
    ) -> list[str]:
        supervisor = context.supervisor
        total = len(articles)
        await supervisor.report(phase=PHASE_LINKS, phase_progress=f"0/{total} articles", force=True)

        throttle = self._config.link_throttle(has_key)

        async def fetch_chunk(chunk: list[WorkItem[str]]) -> list[PubMedLinks]:
            links = await adapters.pubmed.fetch_links(
                [item.payload for item in chunk],
                throttle_seconds=throttle,
            )
            await self._repository.store_links(
                [(item.record_id, item_links) for item, item_links in zip(chunk, links)]
            )
            return links

        policy = BatchPolicy(
            batch_size=self._config.link_batch_size,
            concurrency=self._config.link_parallel_batches,
            stagger_seconds=self._config.stagger_seconds,
        )
        executor: BatchExecutor[str, PubMedLinks] = BatchExecutor(policy, sleep=self._sleep)
        items = [WorkItem(record_id=article.article_id, payload=article.pmid) for article in articles]
        related: dict[str, None] = {}
        async with aclosing(
            executor.iter_groups(items, fetch_chunk, before_group=context.checkpoint)
        ) as ticks:
            async for tick in ticks:
                _collect_links(tick, related, stats)
                context.counters.add(processed=tick.group_processed, errors=tick.group_errors)
                done = context.counters.processed + context.counters.errors
                await supervisor.report(
                    phase_progress=f"{done}/{total} articles ({context.counters.errors} failed)",
                    force=True,
                )
                await context.checkpoint()

        stats.related_pmids = len(related)
        structured_log(
            logger,
            "info",
            "graph.links_completed",
            articles_with_references=stats.articles_with_references,
            reference_total=stats.reference_total,
            articles_with_cited_by=stats.articles_with_cited_by,
            cited_by_total=stats.cited_by_total,
            related_pmids=stats.related_pmids,
        )
        return list(related)

    async def _cache_metadata(
        self,
        context: JobContext,
        adapters: GraphAdapters,
        related: list[str],
        stats: GraphFetchStats,
        *,
        has_key: bool,
    ) -> None:
        supervisor = context.supervisor
        total = len(related)
        await supervisor.report(phase=PHASE_METADATA, phase_progress=f"0/{total} PMIDs", force=True)
        throttle = self._config.fetch_throttle(has_key)

        async def fetch_summaries(pmids: list[str]) -> list[PubMedSummary | None]:
            return await adapters.pubmed.fetch_summaries(pmids, throttle_seconds=throttle)

        done = 0
        for batch_index, batch in enumerate(chunked(related, self._config.metadata_batch_size)):
            await context.checkpoint()
            try:
                result = await self._cache.get_or_fetch(
                    batch,
                    fetch_summaries,
                    project_id=context.job.project_id,
                )
            except Exception as exc:
                stats.metadata_failed_batches += 1
                structured_log(
                    logger,
                    "warning",
                    "graph.metadata_batch_failed",
                    batch_index=batch_index,
                    batch_size=len(batch),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            else:
                stats.cache_hits += result.hits
                stats.cache_fetched += result.fetched
                stats.cache_missing += result.missing
            done += len(batch)
            await supervisor.report(
                phase_progress=(
                    f"{done}/{total} PMIDs ({stats.cache_hits} cached, {stats.cache_fetched} fetched)"
                ),
                items_done=len(batch),
                force=True,
            )

        structured_log(
            logger,
            "info",
            "graph.metadata_completed",
            related_pmids=total,
            cache_hits=stats.cache_hits,
            cache_fetched=stats.cache_fetched,
            failed_batches=stats.metadata_failed_batches,
        )

    async def _fetch_citation_counts(
        self,
        context: JobContext,
        adapters: GraphAdapters,
        articles: list[PmidArticle],
        stats: GraphFetchStats,
    ) -> None:
        supervisor = context.supervisor
        targets = articles[: self._config.citation_count_limit]
        total = len(targets)
        await supervisor.report(
            phase=PHASE_CITATION_COUNTS,
            phase_progress=f"0/{total} articles",
            force=True,
        )
        done = 0
        for batch in chunked(targets, self._config.citation_count_batch_size):
            await context.checkpoint()
            for article in batch:
                try:
                    count = await adapters.europepmc.get_citation_count(
                        article.pmid,
                        throttle_seconds=self._config.europepmc_throttle_seconds,
                    )
                    if count > 0:
                        await self._repository.store_citation_count(article.article_id, count)
                        stats.citation_updates += 1
                except Exception as exc:
                    stats.citation_failures += 1
                    structured_log(
                        logger,
                        "warning",
                        "graph.citation_count_failed",
                        pmid=article.pmid,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                done += 1
                await supervisor.report(
                    phase_progress=f"{done}/{total} articles ({stats.citation_updates} updated)",
                    items_done=1,
                    force=True,
                )

        structured_log(
            logger,
            "info",
            "graph.citation_counts_completed",
            requested=total,
            citation_updates=stats.citation_updates,
            failures=stats.citation_failures,
        )

    async def _fetch_crossref_references(
        self,
        context: JobContext,
        adapters: GraphAdapters,
        stats: GraphFetchStats,
        *,
        selected_only: bool,
        article_ids: list[str] | None,
    ) -> None:
        supervisor = context.supervisor
        await supervisor.report(
            phase=PHASE_CROSSREF,
            phase_progress="selecting records without PMID",
            force=True,
        )
        try:
            records = await self._repository.select_doi_articles(
                project_id=context.job.project_id,
                selected_only=selected_only,
                article_ids=article_ids,
                limit=self._config.crossref_record_limit,
            )
        except SQLAlchemyError as exc:
            structured_log(
                logger,
                "warning",
                "graph.crossref_selection_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return

        total = len(records)
        done = 0
        for batch in chunked(records, self._config.crossref_batch_size):
            await context.checkpoint()
            for record in batch:
                try:
                    references = await adapters.crossref.get_references(
                        record.doi,
                        throttle_seconds=self._config.crossref_throttle_seconds,
                    )
                    if references is not None:
                        await self._repository.store_crossref(record.article_id, references)
                        stats.crossref_records += 1
                        if references.reference_dois:
                            stats.crossref_with_references += 1
                            stats.crossref_reference_total += len(references.reference_dois)
                except Exception as exc:
                    stats.crossref_failures += 1
                    structured_log(
                        logger,
                        "warning",
                        "graph.crossref_lookup_failed",
                        doi=record.doi,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                done += 1
                await supervisor.report(
                    phase_progress=f"{done}/{total} records ({stats.crossref_with_references} with references)",
                    items_done=1,
                    force=True,
                )

        structured_log(
            logger,
            "info",
            "graph.crossref_completed",
            records=total,
            with_references=stats.crossref_with_references,
            reference_total=stats.crossref_reference_total,
            failures=stats.crossref_failures,
        )


def _collect_links(
    tick: GroupTick[str, PubMedLinks],
    related: dict[str, None],
    stats: GraphFetchStats,
) -> None:
    for outcome in tick.outcomes:
        if not outcome.succeeded:
            continue
        for links in outcome.outputs or []:
            if links.references:
                stats.articles_with_references += 1
                stats.reference_total += len(links.references)
            if links.cited_by:
                stats.articles_with_cited_by += 1
                stats.cited_by_total += len(links.cited_by)
            for pmid in (*links.references, *links.cited_by):
                if pmid != links.pmid:
                    related.setdefault(pmid, None)
