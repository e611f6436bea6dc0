from __future__ import annotations

from typing import Literal

TimeoutReason = Literal["max_duration", "stalled"]


class JobError(Exception):
    """Base class for job-engine errors."""


class JobNotFoundError(JobError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Enrichment job {job_id} does not exist.")
        self.job_id = job_id


class JobFatalError(JobError):
    """Unrecoverable error outside item and batch handling; the job fails."""


class CredentialMissingError(JobFatalError):
    def __init__(self, provider: str) -> None:
        super().__init__(f"No {provider} API key is configured for this user.")
        self.provider = provider


class WorkSetQueryError(JobFatalError):
    """Selecting the job's work set failed."""


class JobInterrupted(JobError):
    """Raised at a checkpoint to stop the job without failing it."""


class JobCancelled(JobInterrupted):
    def __init__(self) -> None:
        super().__init__("cancelled")


class JobTimedOut(JobInterrupted):
    def __init__(self, reason: TimeoutReason, *, limit_seconds: float) -> None:
        self.reason: TimeoutReason = reason
        self.limit_seconds = limit_seconds
        super().__init__(self.describe())

    def describe(self) -> str:
        if self.reason == "stalled":
            return f"stalled: no progress for {self.limit_seconds:g}s"
        return f"max_duration: exceeded {self.limit_seconds:g}s"


class FetchError(Exception):
    """An external call failed for a whole batch."""

    provider = "external"

    def __init__(self, message: str, *, batch_size: int) -> None:
        super().__init__(message)
        self.batch_size = batch_size


class EmbeddingProviderError(FetchError):
    provider = "openrouter"


class PubMedError(FetchError):
    provider = "pubmed"


class EuropePmcError(FetchError):
    provider = "europepmc"


class CrossrefError(FetchError):
    provider = "crossref"
