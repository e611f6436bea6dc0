from __future__ import annotations

from dataclasses import dataclass, field

UNKNOWN_AUTHOR = "Unknown"


@dataclass(frozen=True)
class PubMedLinks:
    pmid: str
    references: list[str] = field(default_factory=list)
    cited_by: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PubMedSummary:
    pmid: str
    title: str
    authors: str | None = None
    year: int | None = None
    doi: str | None = None
    journal: str | None = None

    @property
    def first_author(self) -> str:
        if not self.authors:
            return UNKNOWN_AUTHOR
        return self.authors.split(",")[0].strip() or UNKNOWN_AUTHOR
