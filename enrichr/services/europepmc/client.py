from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import httpx

from enrichr.services.jobs.errors import EuropePmcError


class EuropePmcClient:
    """Citation counts from the Europe PMC REST API, one PMID per request."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        base_url: str,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._http_client = http_client
        self._base_url = base_url.rstrip("/")
        self._sleep = sleep or asyncio.sleep

    async def get_citation_count(self, pmid: str, *, throttle_seconds: float = 0.0) -> int:
        if throttle_seconds > 0:
            await self._sleep(throttle_seconds)
        url = f"{self._base_url}/MED/{pmid}/citations"
        try:
            response = await self._http_client.get(url, params={"format": "json", "pageSize": "1"})
        except httpx.HTTPError as exc:
            raise EuropePmcError(
                f"Europe PMC request failed for {pmid}: {type(exc).__name__}",
                batch_size=1,
            ) from exc
        if response.status_code >= 400:
            raise EuropePmcError(f"Europe PMC HTTP {response.status_code} for {pmid}", batch_size=1)
        try:
            payload = response.json()
        except ValueError as exc:
            raise EuropePmcError(f"Europe PMC returned invalid JSON for {pmid}", batch_size=1) from exc
        hit_count = payload.get("hitCount") if isinstance(payload, dict) else None
        try:
            return max(0, int(hit_count or 0))
        except (TypeError, ValueError):
            return 0
