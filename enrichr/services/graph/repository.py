from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import bindparam, func, literal, or_, select, text, update
from sqlalchemy.dialects.postgresql import JSONB, insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enrichr.db.models import Article, GraphCacheEntry, ProjectArticle, ProjectArticleStatus
from enrichr.services.crossref.client import CrossrefReferences
from enrichr.services.pubmed.types import PubMedLinks, PubMedSummary


@dataclass(frozen=True)
class PmidArticle:
    article_id: str
    pmid: str


@dataclass(frozen=True)
class DoiArticle:
    article_id: str
    doi: str


class GraphRepository(Protocol):
    async def select_pmid_articles(
        self,
        *,
        project_id: str,
        selected_only: bool,
        article_ids: Sequence[str] | None,
    ) -> list[PmidArticle]: ...

    async def store_links(self, rows: Sequence[tuple[str, PubMedLinks]]) -> None: ...

    async def cached_pmids(self, pmids: Sequence[str], *, now: datetime) -> set[str]: ...

    async def upsert_cache(
        self,
        summaries: Sequence[PubMedSummary],
        *,
        project_id: str,
        fetched_at: datetime,
        expires_at: datetime,
    ) -> None: ...

    async def store_citation_count(self, article_id: str, count: int) -> None: ...

    async def select_doi_articles(
        self,
        *,
        project_id: str,
        selected_only: bool,
        article_ids: Sequence[str] | None,
        limit: int,
    ) -> list[DoiArticle]: ...

    async def store_crossref(self, article_id: str, references: CrossrefReferences) -> None: ...


def _merged_raw_json(patch: dict[str, Any]):
    return func.coalesce(Article.raw_json, text("'{}'::jsonb")).op("||")(literal(patch, JSONB))


def _project_scope(stmt, *, project_id: str, selected_only: bool, article_ids: Sequence[str] | None):
    stmt = stmt.join(ProjectArticle, ProjectArticle.article_id == Article.id).where(
        ProjectArticle.project_id == project_id
    )
    if selected_only:
        stmt = stmt.where(ProjectArticle.status == ProjectArticleStatus.SELECTED.value)
    if article_ids:
        stmt = stmt.where(Article.id.in_(list(article_ids)))
    return stmt


class SqlGraphRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def select_pmid_articles(
        self,
        *,
        project_id: str,
        selected_only: bool,
        article_ids: Sequence[str] | None,
    ) -> list[PmidArticle]:
        stmt = _project_scope(
            select(Article.id, Article.pmid).where(Article.pmid.is_not(None)),
            project_id=project_id,
            selected_only=selected_only,
            article_ids=article_ids,
        ).order_by(Article.created_at.asc(), Article.id.asc())
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [PmidArticle(article_id=str(article_id), pmid=str(pmid)) for article_id, pmid in rows]

    async def store_links(self, rows: Sequence[tuple[str, PubMedLinks]]) -> None:
        if not rows:
            return
        articles = Article.__table__
        stmt = (
            update(articles)
            .where(articles.c.id == bindparam("target_id"))
            .values(
                reference_pmids=bindparam("references"),
                cited_by_pmids=bindparam("cited_by"),
                references_fetched_at=func.now(),
                updated_at=func.now(),
            )
        )
        params = [
            {
                "target_id": article_id,
                "references": list(links.references),
                "cited_by": list(links.cited_by),
            }
            for article_id, links in rows
        ]
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(stmt, params)

    async def cached_pmids(self, pmids: Sequence[str], *, now: datetime) -> set[str]:
        if not pmids:
            return set()
        async with self._session_factory() as session:
            rows = await session.execute(
                select(GraphCacheEntry.pmid).where(
                    GraphCacheEntry.pmid.in_(list(pmids)),
                    GraphCacheEntry.expires_at > now,
                )
            )
            return {str(pmid) for pmid in rows.scalars()}

    async def upsert_cache(
        self,
        summaries: Sequence[PubMedSummary],
        *,
        project_id: str,
        fetched_at: datetime,
        expires_at: datetime,
    ) -> None:
        if not summaries:
            return
        insert_stmt = pg_insert(GraphCacheEntry).values(
            [
                {
                    "pmid": summary.pmid,
                    "title": summary.title,
                    "authors": summary.first_author,
                    "year": summary.year,
                    "doi": summary.doi,
                    "project_id": project_id,
                    "fetched_at": fetched_at,
                    "expires_at": expires_at,
                }
                for summary in summaries
            ]
        )
        upsert = insert_stmt.on_conflict_do_update(
            index_elements=[GraphCacheEntry.pmid],
            set_={
                "title": insert_stmt.excluded.title,
                "authors": insert_stmt.excluded.authors,
                "year": insert_stmt.excluded.year,
                "doi": insert_stmt.excluded.doi,
                "fetched_at": insert_stmt.excluded.fetched_at,
                "expires_at": insert_stmt.excluded.expires_at,
            },
        )
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(upsert)

    async def store_citation_count(self, article_id: str, count: int) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Article)
                    .where(Article.id == article_id)
                    .values(
                        raw_json=_merged_raw_json({"europePMCCitations": count}),
                        updated_at=func.now(),
                    )
                )

    async def select_doi_articles(
        self,
        *,
        project_id: str,
        selected_only: bool,
        article_ids: Sequence[str] | None,
        limit: int,
    ) -> list[DoiArticle]:
        stmt = (
            _project_scope(
                select(Article.id, Article.doi).where(
                    Article.pmid.is_(None),
                    Article.doi.is_not(None),
                    or_(
                        func.coalesce(func.array_length(Article.reference_dois, 1), 0) == 0,
                        Article.references_fetched_at.is_(None),
                    ),
                ),
                project_id=project_id,
                selected_only=selected_only,
                article_ids=article_ids,
            )
            .order_by(Article.created_at.asc(), Article.id.asc())
            .limit(max(0, limit))
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [DoiArticle(article_id=str(article_id), doi=str(doi)) for article_id, doi in rows]

    async def store_crossref(self, article_id: str, references: CrossrefReferences) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Article)
                    .where(Article.id == article_id)
                    .values(
                        reference_dois=list(references.reference_dois),
                        crossref_cited_by_count=references.cited_by_count,
                        references_fetched_at=func.now(),
                        raw_json=_merged_raw_json(
                            {
                                "crossref": references.details(),
                                "crossrefCitedByCount": references.cited_by_count,
                            }
                        ),
                        updated_at=func.now(),
                    )
                )
