from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import any_, exists, func, select, union, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from enrichr.db.models import (
    EMBEDDING_STATUS_COMPLETED,
    Article,
    ArticleEmbedding,
    ProjectArticle,
    ProjectArticleStatus,
)


@dataclass(frozen=True)
class ArticleText:
    article_id: str
    title: str | None
    abstract: str | None

    def embedding_text(self) -> str:
        return " ".join(part for part in (self.title, self.abstract) if part).strip()


class EmbeddingRepository(Protocol):
    async def select_candidates(
        self,
        *,
        project_id: str,
        article_ids: Sequence[str] | None,
        include_references: bool,
        include_cited_by: bool,
    ) -> list[ArticleText]: ...

    async def store_embeddings(
        self,
        rows: Sequence[tuple[str, list[float]]],
        *,
        model: str,
    ) -> None: ...


def _without_embedding():
    return ~exists().where(ArticleEmbedding.article_id == Article.id)


def _project_article_ids(project_id: str):
    return (
        select(Article.id.label("id"))
        .join(ProjectArticle, ProjectArticle.article_id == Article.id)
        .where(
            ProjectArticle.project_id == project_id,
            ProjectArticle.status != ProjectArticleStatus.DELETED.value,
        )
    )


def _linked_article_ids(project_id: str, link_column_name: str):
    linked = aliased(Article, name="linked_article")
    link_column = getattr(Article, link_column_name)
    return (
        select(linked.id.label("id"))
        .select_from(Article)
        .join(ProjectArticle, ProjectArticle.article_id == Article.id)
        .join(linked, linked.pmid == any_(link_column))
        .where(
            ProjectArticle.project_id == project_id,
            ProjectArticle.status != ProjectArticleStatus.DELETED.value,
        )
    )


class SqlEmbeddingRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def select_candidates(
        self,
        *,
        project_id: str,
        article_ids: Sequence[str] | None,
        include_references: bool,
        include_cited_by: bool,
    ) -> list[ArticleText]:
        columns = (Article.id, Article.title_en, Article.abstract_en)
        if article_ids:
            stmt = select(*columns).where(Article.id.in_(list(article_ids)), _without_embedding())
        else:
            scoped = [_project_article_ids(project_id)]
            if include_references:
                scoped.append(_linked_article_ids(project_id, "reference_pmids"))
            if include_cited_by:
                scoped.append(_linked_article_ids(project_id, "cited_by_pmids"))
            scope_query = union(*scoped) if len(scoped) > 1 else scoped[0]
            scope_ids = scope_query.subquery("scope_ids")
            stmt = (
                select(*columns)
                .join(scope_ids, scope_ids.c.id == Article.id)
                .where(_without_embedding())
            )
        stmt = stmt.order_by(Article.created_at.asc(), Article.id.asc())

        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).all()
        return [
            ArticleText(article_id=str(article_id), title=title, abstract=abstract)
            for article_id, title, abstract in rows
        ]

    async def store_embeddings(
        self,
        rows: Sequence[tuple[str, list[float]]],
        *,
        model: str,
    ) -> None:
        if not rows:
            return
        insert_stmt = pg_insert(ArticleEmbedding).values(
            [
                {"article_id": article_id, "model": model, "embedding": vector}
                for article_id, vector in rows
            ]
        )
        upsert = insert_stmt.on_conflict_do_update(
            index_elements=[ArticleEmbedding.article_id],
            set_={
                "embedding": insert_stmt.excluded.embedding,
                "model": insert_stmt.excluded.model,
                "updated_at": func.now(),
            },
        )
        article_ids = [article_id for article_id, _vector in rows]
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(upsert)
                await session.execute(
                    update(Article)
                    .where(Article.id.in_(article_ids))
                    .values(embedding_status=EMBEDDING_STATUS_COMPLETED, updated_at=func.now())
                )
