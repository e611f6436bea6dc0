from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Any

from crossref.restful import Etiquette, Works

from enrichr.services.doi.normalize import normalize_doi, normalize_dois
from enrichr.services.jobs.errors import CrossrefError

_APP_URL = "https://enrichr.local"

WorksFactory = Callable[[], Works]


@dataclass(frozen=True)
class CrossrefReferences:
    doi: str
    reference_dois: list[str] = field(default_factory=list)
    cited_by_count: int = 0
    references_count: int | None = None
    publisher: str | None = None
    subjects: list[str] = field(default_factory=list)

    def details(self) -> dict[str, Any]:
        return {
            "referencesCount": self.references_count,
            "publisher": self.publisher,
            "subjects": list(self.subjects),
        }


def _app_version() -> str:
    try:
        return pkg_version("enrichr")
    except PackageNotFoundError:
        return "0.0.0"


def _optional_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def extract_references(doi: str, work: dict[str, Any]) -> CrossrefReferences:
    references = work.get("reference")
    raw_dois = [
        str(reference.get("DOI") or "")
        for reference in (references if isinstance(references, list) else [])
        if isinstance(reference, dict)
    ]
    subjects = work.get("subject")
    return CrossrefReferences(
        doi=normalize_doi(str(work.get("DOI") or "")) or doi,
        reference_dois=normalize_dois(raw_dois),
        cited_by_count=_optional_int(work.get("is-referenced-by-count")) or 0,
        references_count=_optional_int(work.get("references-count")),
        publisher=str(work["publisher"]) if work.get("publisher") else None,
        subjects=[str(subject) for subject in subjects] if isinstance(subjects, list) else [],
    )


class CrossrefClient:
    """DOI lookups through ``crossrefapi``; the blocking call runs in a worker thread."""

    def __init__(
        self,
        *,
        app_name: str = "enrichr",
        mailto: str | None = None,
        timeout_seconds: float = 8.0,
        works_factory: WorksFactory | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._app_name = app_name
        self._mailto = mailto
        self._timeout_seconds = max(float(timeout_seconds), 0.5)
        self._works_factory = works_factory or self._default_works
        self._sleep = sleep or asyncio.sleep

    def _default_works(self) -> Works:
        if self._mailto:
            etiquette = Etiquette(self._app_name, _app_version(), _APP_URL, self._mailto)
            return Works(etiquette=etiquette)
        return Works()

    def _lookup_sync(self, doi: str) -> dict[str, Any] | None:
        result = self._works_factory().doi(doi)
        return result if isinstance(result, dict) else None

    async def get_references(self, doi: str, *, throttle_seconds: float = 0.0) -> CrossrefReferences | None:
        normalized = normalize_doi(doi)
        if normalized is None:
            return None
        if throttle_seconds > 0:
            await self._sleep(throttle_seconds)
        try:
            work = await asyncio.wait_for(
                asyncio.to_thread(self._lookup_sync, normalized),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as exc:
            raise CrossrefError(f"Crossref lookup timed out for {normalized}", batch_size=1) from exc
        except Exception as exc:
            raise CrossrefError(
                f"Crossref lookup failed for {normalized}: {type(exc).__name__}: {exc}",
                batch_size=1,
            ) from exc
        if work is None:
            return None
        return extract_references(normalized, work)
