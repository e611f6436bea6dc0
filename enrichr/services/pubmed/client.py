from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
import logging

import httpx

from enrichr.logging_utils import structured_log
from enrichr.services.jobs.errors import PubMedError
from enrichr.services.pubmed.parser import (
    PubMedParseError,
    parse_efetch_articles,
    parse_elink_result,
)
from enrichr.services.pubmed.types import PubMedLinks, PubMedSummary

logger = logging.getLogger(__name__)

LINKNAME_REFERENCES = "pubmed_pubmed_refs"
LINKNAME_CITED_BY = "pubmed_pubmed_citedin"
_ERROR_BODY_PREVIEW_CHARS = 200


class PubMedClient:
    """E-utilities eLink and eFetch over a caller-owned ``httpx.AsyncClient``."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        base_url: str,
        api_key: str | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._http_client = http_client
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key or None
        self._sleep = sleep or asyncio.sleep

    @property
    def has_api_key(self) -> bool:
        return self._api_key is not None

    async def fetch_links(self, pmids: Sequence[str], *, throttle_seconds: float = 0.0) -> list[PubMedLinks]:
        """References and cited-by PMIDs for each input, in input order."""
        if not pmids:
            return []
        references = await self._elink(pmids, LINKNAME_REFERENCES, throttle_seconds=throttle_seconds)
        cited_by = await self._elink(pmids, LINKNAME_CITED_BY, throttle_seconds=throttle_seconds)
        return [
            PubMedLinks(
                pmid=pmid,
                references=list(references.get(pmid, [])),
                cited_by=list(cited_by.get(pmid, [])),
            )
            for pmid in pmids
        ]

    async def fetch_summaries(
        self,
        pmids: Sequence[str],
        *,
        throttle_seconds: float = 0.0,
    ) -> list[PubMedSummary | None]:
        """Article metadata for each input, in input order; None when PubMed has no record."""
        if not pmids:
            return []
        params = [
            ("db", "pubmed"),
            ("id", ",".join(pmids)),
            ("retmode", "xml"),
        ]
        payload = await self._get("efetch.fcgi", params, batch_size=len(pmids), throttle_seconds=throttle_seconds)
        try:
            summaries = parse_efetch_articles(payload)
        except PubMedParseError as exc:
            raise PubMedError(str(exc), batch_size=len(pmids)) from exc
        by_pmid = {summary.pmid: summary for summary in summaries}
        return [by_pmid.get(pmid) for pmid in pmids]

    async def _elink(
        self,
        pmids: Sequence[str],
        linkname: str,
        *,
        throttle_seconds: float,
    ) -> dict[str, list[str]]:
        params = [
            ("dbfrom", "pubmed"),
            ("db", "pubmed"),
            ("linkname", linkname),
            ("retmode", "xml"),
        ]
        params.extend(("id", pmid) for pmid in pmids)
        payload = await self._get("elink.fcgi", params, batch_size=len(pmids), throttle_seconds=throttle_seconds)
        try:
            return parse_elink_result(payload)
        except PubMedParseError as exc:
            raise PubMedError(str(exc), batch_size=len(pmids)) from exc

    async def _get(
        self,
        endpoint: str,
        params: list[tuple[str, str]],
        *,
        batch_size: int,
        throttle_seconds: float,
    ) -> str:
        if throttle_seconds > 0:
            await self._sleep(throttle_seconds)
        if self._api_key:
            params = [*params, ("api_key", self._api_key)]
        try:
            response = await self._http_client.get(f"{self._base_url}/{endpoint}", params=params)
        except httpx.HTTPError as exc:
            raise PubMedError(
                f"PubMed {endpoint} request failed: {type(exc).__name__}",
                batch_size=batch_size,
            ) from exc
        if response.status_code >= 400:
            structured_log(
                logger,
                "warning",
                "pubmed.http_error",
                endpoint=endpoint,
                status_code=response.status_code,
                batch_size=batch_size,
                body=response.text[:_ERROR_BODY_PREVIEW_CHARS],
            )
            raise PubMedError(
                f"PubMed {endpoint} HTTP {response.status_code}",
                batch_size=batch_size,
            )
        return response.text
