"""Enrichment schema: projects, articles, embeddings, graph cache and jobs.

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from collections.abc import Sequence

from pgvector.sqlalchemy import Vector
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

revision: str = "20261019_0001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

EMBEDDING_DIMENSIONS = 1536

JOB_STATUS = postgresql.ENUM(
    "queued",
    "running",
    "completed",
    "failed",
    "cancelled",
    "timeout",
    name="job_status",
    create_type=False,
)
JOB_KIND = postgresql.ENUM("embedding", "graph_fetch", name="job_kind", create_type=False)


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        sa.Uuid(),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def _create_core_tables() -> None:
    op.create_table(
        "users",
        _uuid_pk(),
        sa.Column("email", sa.String(length=255), nullable=False),
        _timestamp("created_at"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    op.create_table(
        "user_api_keys",
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE", name="fk_user_api_keys_user_id_users"),
            primary_key=True,
        ),
        sa.Column("provider", sa.String(length=32), primary_key=True),
        sa.Column("api_key", sa.Text(), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_table(
        "projects",
        _uuid_pk(),
        sa.Column(
            "owner_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE", name="fk_projects_owner_id_users"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )


def _create_article_tables() -> None:
    op.create_table(
        "articles",
        _uuid_pk(),
        sa.Column("pmid", sa.String(length=32), nullable=True),
        sa.Column("doi", sa.Text(), nullable=True),
        sa.Column("title_en", sa.Text(), nullable=True),
        sa.Column("abstract_en", sa.Text(), nullable=True),
        sa.Column("reference_pmids", postgresql.ARRAY(sa.Text()), nullable=True),
        sa.Column("cited_by_pmids", postgresql.ARRAY(sa.Text()), nullable=True),
        sa.Column("reference_dois", postgresql.ARRAY(sa.Text()), nullable=True),
        sa.Column("references_fetched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("crossref_cited_by_count", sa.Integer(), nullable=True),
        sa.Column(
            "embedding_status",
            sa.String(length=16),
            nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column("raw_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "uq_articles_pmid_not_null",
        "articles",
        ["pmid"],
        unique=True,
        postgresql_where=sa.text("pmid IS NOT NULL"),
    )
    op.create_index("ix_articles_doi", "articles", ["doi"])
    op.create_index("ix_articles_embedding_status", "articles", ["embedding_status"])

    op.create_table(
        "project_articles",
        sa.Column(
            "project_id",
            sa.Uuid(),
            sa.ForeignKey("projects.id", ondelete="CASCADE", name="fk_project_articles_project_id_projects"),
            primary_key=True,
        ),
        sa.Column(
            "article_id",
            sa.Uuid(),
            sa.ForeignKey("articles.id", ondelete="CASCADE", name="fk_project_articles_article_id_articles"),
            primary_key=True,
        ),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'candidate'")),
        _timestamp("created_at"),
        sa.CheckConstraint(
            "status IN ('candidate', 'selected', 'excluded', 'deleted')",
            name="project_articles_status_valid",
        ),
    )
    op.create_index(
        "ix_project_articles_project_status",
        "project_articles",
        ["project_id", "status"],
    )

    op.create_table(
        "article_embeddings",
        sa.Column(
            "article_id",
            sa.Uuid(),
            sa.ForeignKey("articles.id", ondelete="CASCADE", name="fk_article_embeddings_article_id_articles"),
            primary_key=True,
        ),
        sa.Column("model", sa.String(length=64), nullable=False),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSIONS), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )

    op.create_table(
        "graph_cache",
        sa.Column("pmid", sa.String(length=32), primary_key=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("authors", sa.Text(), nullable=True),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("doi", sa.Text(), nullable=True),
        sa.Column("project_id", sa.Uuid(), nullable=True),
        _timestamp("fetched_at"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_graph_cache_expires_at", "graph_cache", ["expires_at"])
    op.create_index("ix_graph_cache_project_id", "graph_cache", ["project_id"])


def _create_jobs_table() -> None:
    op.create_table(
        "enrichment_jobs",
        _uuid_pk(),
        sa.Column(
            "project_id",
            sa.Uuid(),
            sa.ForeignKey("projects.id", ondelete="CASCADE", name="fk_enrichment_jobs_project_id_projects"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id", ondelete="CASCADE", name="fk_enrichment_jobs_user_id_users"),
            nullable=False,
        ),
        sa.Column("kind", JOB_KIND, nullable=False),
        sa.Column("status", JOB_STATUS, nullable=False, server_default=sa.text("'queued'")),
        sa.Column("phase", sa.String(length=128), nullable=True),
        sa.Column("phase_progress", sa.Text(), nullable=True),
        sa.Column("total", sa.Integer(), nullable=True),
        sa.Column("processed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("errors", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column(
            "scope",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("requeued_from_id", sa.Uuid(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_progress_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "processed >= 0 AND errors >= 0",
            name="enrichment_jobs_counters_non_negative",
        ),
        sa.CheckConstraint(
            "total IS NULL OR processed + errors <= total",
            name="enrichment_jobs_counters_within_total",
        ),
    )
    op.create_index(
        "ix_enrichment_jobs_project_created",
        "enrichment_jobs",
        ["project_id", "created_at"],
    )
    op.create_index(
        "ix_enrichment_jobs_kind_status_created",
        "enrichment_jobs",
        ["kind", "status", "created_at"],
    )
    op.create_index(
        "ix_enrichment_jobs_running_progress",
        "enrichment_jobs",
        ["last_progress_at"],
        postgresql_where=sa.text("status = 'running'::job_status"),
    )


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")
    op.execute("CREATE EXTENSION IF NOT EXISTS vector")
    bind = op.get_bind()
    JOB_STATUS.create(bind, checkfirst=True)
    JOB_KIND.create(bind, checkfirst=True)

    _create_core_tables()
    _create_article_tables()
    _create_jobs_table()


def downgrade() -> None:
    op.drop_index("ix_enrichment_jobs_running_progress", table_name="enrichment_jobs")
    op.drop_index("ix_enrichment_jobs_kind_status_created", table_name="enrichment_jobs")
    op.drop_index("ix_enrichment_jobs_project_created", table_name="enrichment_jobs")
    op.drop_table("enrichment_jobs")
    op.drop_index("ix_graph_cache_project_id", table_name="graph_cache")
    op.drop_index("ix_graph_cache_expires_at", table_name="graph_cache")
    op.drop_table("graph_cache")
    op.drop_table("article_embeddings")
    op.drop_index("ix_project_articles_project_status", table_name="project_articles")
    op.drop_table("project_articles")
    op.drop_index("ix_articles_embedding_status", table_name="articles")
    op.drop_index("ix_articles_doi", table_name="articles")
    op.drop_index("uq_articles_pmid_not_null", table_name="articles")
    op.drop_table("articles")
    op.drop_table("projects")
    op.drop_table("user_api_keys")
    op.drop_table("users")

    bind = op.get_bind()
    JOB_KIND.drop(bind, checkfirst=True)
    JOB_STATUS.drop(bind, checkfirst=True)
