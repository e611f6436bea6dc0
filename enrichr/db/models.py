from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from enrichr.db.base import Base
from enrichr.settings import settings


class JobKind(StrEnum):
    EMBEDDING = "embedding"
    GRAPH_FETCH = "graph_fetch"


class JobStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


class ProjectArticleStatus(StrEnum):
    CANDIDATE = "candidate"
    SELECTED = "selected"
    EXCLUDED = "excluded"
    DELETED = "deleted"


EMBEDDING_STATUS_PENDING = "pending"
EMBEDDING_STATUS_COMPLETED = "completed"

JOB_STATUS_DB_ENUM = Enum(
    JobStatus,
    name="job_status",
    values_callable=lambda members: [member.value for member in members],
)
JOB_KIND_DB_ENUM = Enum(
    JobKind,
    name="job_kind",
    values_callable=lambda members: [member.value for member in members],
)


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), primary_key=True, server_default=text("gen_random_uuid()")
    )
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class UserApiKey(Base):
    __tablename__ = "user_api_keys"

    user_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    provider: Mapped[str] = mapped_column(String(32), primary_key=True)
    api_key: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), primary_key=True, server_default=text("gen_random_uuid()")
    )
    owner_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class Article(Base):
    __tablename__ = "articles"
    __table_args__ = (
        Index(
            "uq_articles_pmid_not_null",
            "pmid",
            unique=True,
            postgresql_where=text("pmid IS NOT NULL"),
        ),
        Index("ix_articles_doi", "doi"),
        Index("ix_articles_embedding_status", "embedding_status"),
    )

    id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), primary_key=True, server_default=text("gen_random_uuid()")
    )
    pmid: Mapped[str | None] = mapped_column(String(32))
    doi: Mapped[str | None] = mapped_column(Text)
    title_en: Mapped[str | None] = mapped_column(Text)
    abstract_en: Mapped[str | None] = mapped_column(Text)
    reference_pmids: Mapped[list[str] | None] = mapped_column(ARRAY(Text))
    cited_by_pmids: Mapped[list[str] | None] = mapped_column(ARRAY(Text))
    reference_dois: Mapped[list[str] | None] = mapped_column(ARRAY(Text))
    references_fetched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    crossref_cited_by_count: Mapped[int | None] = mapped_column(Integer)
    embedding_status: Mapped[str] = mapped_column(
        String(16), nullable=False, server_default=text("'pending'")
    )
    raw_json: Mapped[dict | None] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class ProjectArticle(Base):
    __tablename__ = "project_articles"
    __table_args__ = (
        CheckConstraint(
            "status IN ('candidate', 'selected', 'excluded', 'deleted')",
            name="project_articles_status_valid",
        ),
        Index("ix_project_articles_project_status", "project_id", "status"),
    )

    project_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True
    )
    article_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("articles.id", ondelete="CASCADE"), primary_key=True
    )
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, server_default=text("'candidate'")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class ArticleEmbedding(Base):
    __tablename__ = "article_embeddings"

    article_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("articles.id", ondelete="CASCADE"), primary_key=True
    )
    model: Mapped[str] = mapped_column(String(64), nullable=False)
    embedding: Mapped[list[float]] = mapped_column(Vector(settings.embedding_dimensions), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class GraphCacheEntry(Base):
    __tablename__ = "graph_cache"
    __table_args__ = (
        Index("ix_graph_cache_expires_at", "expires_at"),
        Index("ix_graph_cache_project_id", "project_id"),
    )

    pmid: Mapped[str] = mapped_column(String(32), primary_key=True)
    title: Mapped[str | None] = mapped_column(Text)
    authors: Mapped[str | None] = mapped_column(Text)
    year: Mapped[int | None] = mapped_column(Integer)
    doi: Mapped[str | None] = mapped_column(Text)
    project_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False))
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class EnrichmentJob(Base):
    __tablename__ = "enrichment_jobs"
    __table_args__ = (
        CheckConstraint(
            "processed >= 0 AND errors >= 0",
            name="enrichment_jobs_counters_non_negative",
        ),
        CheckConstraint(
            "total IS NULL OR processed + errors <= total",
            name="enrichment_jobs_counters_within_total",
        ),
        Index("ix_enrichment_jobs_project_created", "project_id", "created_at"),
        Index("ix_enrichment_jobs_kind_status_created", "kind", "status", "created_at"),
        Index(
            "ix_enrichment_jobs_running_progress",
            "last_progress_at",
            postgresql_where=text("status = 'running'::job_status"),
        ),
    )

    id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), primary_key=True, server_default=text("gen_random_uuid()")
    )
    project_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[JobKind] = mapped_column(JOB_KIND_DB_ENUM, nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        JOB_STATUS_DB_ENUM, nullable=False, server_default=text("'queued'")
    )
    phase: Mapped[str | None] = mapped_column(String(128))
    phase_progress: Mapped[str | None] = mapped_column(Text)
    total: Mapped[int | None] = mapped_column(Integer)
    processed: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    errors: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    scope: Mapped[dict] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb")
    )
    cancel_requested: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("false")
    )
    error_message: Mapped[str | None] = mapped_column(Text)
    requeued_from_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_progress_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
