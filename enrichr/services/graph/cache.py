from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from enrichr.db.base import utcnow
from enrichr.services.graph.repository import GraphRepository
from enrichr.services.pubmed.types import PubMedSummary

SummaryFetcher = Callable[[list[str]], Awaitable[Sequence[PubMedSummary | None]]]


@dataclass(frozen=True)
class CacheBatchResult:
    hits: int
    fetched: int
    missing: int


class GraphMetadataCache:
    """Get-or-fetch cache of related-article metadata keyed by PMID.

    Rows past ``expires_at`` count as misses and are overwritten on refetch.
    """

    def __init__(
        self,
        repository: GraphRepository,
        *,
        ttl_days: int,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._ttl = timedelta(days=ttl_days)
        self._now = now

    async def get_or_fetch(
        self,
        pmids: Sequence[str],
        fetch: SummaryFetcher,
        *,
        project_id: str,
    ) -> CacheBatchResult:
        now = self._now()
        cached = await self._repository.cached_pmids(pmids, now=now)
        misses = [pmid for pmid in pmids if pmid not in cached]
        if not misses:
            return CacheBatchResult(hits=len(pmids), fetched=0, missing=0)

        summaries = [summary for summary in await fetch(misses) if summary is not None]
        fetched_at = self._now()
        await self._repository.upsert_cache(
            summaries,
            project_id=project_id,
            fetched_at=fetched_at,
            expires_at=fetched_at + self._ttl,
        )
        return CacheBatchResult(
            hits=len(pmids) - len(misses),
            fetched=len(summaries),
            missing=len(misses) - len(summaries),
        )
