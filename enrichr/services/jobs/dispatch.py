from __future__ import annotations

from collections.abc import Callable, Mapping
import logging
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from enrichr.db.models import JobKind, JobStatus
from enrichr.logging_utils import structured_log
from enrichr.services.jobs.orchestrator import JobDefinition, JobOrchestrator
from enrichr.services.jobs.store import JobStore
from enrichr.services.jobs.supervisor import CancellationToken
from enrichr.services.jobs.types import JobRecord

logger = logging.getLogger(__name__)

DefinitionFactory = Callable[[JobRecord], JobDefinition]


class EmbeddingScope(BaseModel):
    article_ids: list[UUID] | None = Field(default=None, alias="articleIds")
    include_references: bool = Field(default=True, alias="includeReferences")
    include_cited_by: bool = Field(default=True, alias="includeCitedBy")
    batch_size: int | None = Field(default=None, alias="batchSize")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class GraphFetchScope(BaseModel):
    selected_only: bool = Field(default=False, alias="selectedOnly")
    article_ids: list[UUID] | None = Field(default=None, alias="articleIds")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


_SCOPE_MODELS: dict[JobKind, type[BaseModel]] = {
    JobKind.EMBEDDING: EmbeddingScope,
    JobKind.GRAPH_FETCH: GraphFetchScope,
}


def parse_scope(kind: JobKind, scope: Mapping[str, Any] | None) -> EmbeddingScope | GraphFetchScope:
    return _SCOPE_MODELS[kind].model_validate(dict(scope or {}))


def scope_article_ids(article_ids: list[UUID] | None) -> list[str] | None:
    if not article_ids:
        return None
    return [str(article_id) for article_id in article_ids]


class JobEnvelope(BaseModel):
    job_kind: JobKind = Field(alias="jobKind")
    job_id: UUID = Field(alias="jobId")
    project_id: UUID = Field(alias="projectId")
    user_id: UUID = Field(alias="userId")
    scope_parameters: dict[str, Any] = Field(default_factory=dict, alias="scopeParameters")

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    def scope(self) -> EmbeddingScope | GraphFetchScope:
        return parse_scope(self.job_kind, self.scope_parameters)


class EnvelopeMismatchError(ValueError):
    """The envelope does not describe the stored job record."""


class JobDispatcher:
    """Routes jobs to their definitions and owns in-process cancellation tokens."""

    def __init__(
        self,
        *,
        store: JobStore,
        orchestrator: JobOrchestrator,
        factories: Mapping[JobKind, DefinitionFactory],
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._factories = dict(factories)
        self._tokens: dict[str, CancellationToken] = {}

    @property
    def active_job_ids(self) -> frozenset[str]:
        return frozenset(self._tokens)

    async def dispatch(self, raw_envelope: Mapping[str, Any]) -> JobStatus:
        envelope = JobEnvelope.model_validate(dict(raw_envelope))
        envelope.scope()
        job = await self._store.load(str(envelope.job_id))
        if (
            job.kind != envelope.job_kind
            or job.project_id != str(envelope.project_id)
            or job.user_id != str(envelope.user_id)
        ):
            raise EnvelopeMismatchError(
                f"Envelope for job {envelope.job_id} does not match the stored job."
            )
        return await self.run_job(job)

    async def run_job(self, job: JobRecord) -> JobStatus:
        factory = self._factories.get(job.kind)
        if factory is None:
            raise KeyError(f"No job definition registered for kind {job.kind.value!r}")
        token = self._tokens.setdefault(job.id, CancellationToken())
        try:
            return await self._orchestrator.run(job.id, factory(job), token=token)
        finally:
            self._tokens.pop(job.id, None)

    def cancel(self, job_id: str) -> bool:
        token = self._tokens.get(job_id)
        if token is None:
            return False
        token.cancel()
        structured_log(logger, "info", "jobs.cancel_signalled", job_id=job_id)
        return True
