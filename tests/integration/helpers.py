from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


async def insert_user(db_session: AsyncSession, *, email: str) -> str:
    result = await db_session.execute(
        text("INSERT INTO users (email) VALUES (:email) RETURNING id"),
        {"email": email},
    )
    user_id = str(result.scalar_one())
    await db_session.commit()
    return user_id


async def insert_project(db_session: AsyncSession, *, owner_id: str, name: str = "Review") -> str:
    result = await db_session.execute(
        text("INSERT INTO projects (owner_id, name) VALUES (:owner_id, :name) RETURNING id"),
        {"owner_id": owner_id, "name": name},
    )
    project_id = str(result.scalar_one())
    await db_session.commit()
    return project_id


async def insert_article(
    db_session: AsyncSession,
    *,
    project_id: str | None = None,
    status: str = "selected",
    pmid: str | None = None,
    doi: str | None = None,
    title: str | None = None,
    abstract: str | None = None,
    reference_pmids: list[str] | None = None,
) -> str:
    result = await db_session.execute(
        text(
            """
            INSERT INTO articles (pmid, doi, title_en, abstract_en, reference_pmids)
            VALUES (:pmid, :doi, :title, :abstract, :reference_pmids)
            RETURNING id
            """
        ),
        {
            "pmid": pmid,
            "doi": doi,
            "title": title,
            "abstract": abstract,
            "reference_pmids": reference_pmids,
        },
    )
    article_id = str(result.scalar_one())
    if project_id is not None:
        await db_session.execute(
            text(
                """
                INSERT INTO project_articles (project_id, article_id, status)
                VALUES (:project_id, :article_id, :status)
                """
            ),
            {"project_id": project_id, "article_id": article_id, "status": status},
        )
    await db_session.commit()
    return article_id
