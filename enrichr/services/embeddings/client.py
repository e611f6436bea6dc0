from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
import logging
from typing import Any

import httpx

from enrichr.logging_utils import structured_log
from enrichr.services.jobs.errors import EmbeddingProviderError

logger = logging.getLogger(__name__)

DEFAULT_MAX_INPUT_CHARS = 8000
_ERROR_BODY_PREVIEW_CHARS = 300


def prepare_embedding_input(text: str, *, max_chars: int = DEFAULT_MAX_INPUT_CHARS) -> str:
    return text.strip()[:max_chars]


class OpenRouterEmbeddingClient:
    """Batch embeddings through the OpenRouter ``/embeddings`` endpoint.

    One instance is built per job run around an ``httpx.AsyncClient`` owned by
    the caller. Failures surface as ``EmbeddingProviderError`` for the whole
    batch; nothing is retried here.
    """

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        api_key: str,
        base_url: str,
        model: str,
        referer: str | None = None,
        title: str = "enrichr",
        max_input_chars: int = DEFAULT_MAX_INPUT_CHARS,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._http_client = http_client
        self._api_key = api_key
        self._url = f"{base_url.rstrip('/')}/embeddings"
        self._model = model
        self._referer = referer
        self._title = title
        self._max_input_chars = max_input_chars
        self._sleep = sleep or asyncio.sleep

    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "X-Title": self._title,
        }
        if self._referer:
            headers["HTTP-Referer"] = self._referer
        return headers

    async def embed(self, texts: Sequence[str], *, throttle_seconds: float = 0.0) -> list[list[float]]:
        if not texts:
            return []
        batch_size = len(texts)
        if throttle_seconds > 0:
            await self._sleep(throttle_seconds)
        body = {
            "model": self._model,
            "input": [prepare_embedding_input(text, max_chars=self._max_input_chars) for text in texts],
        }
        try:
            response = await self._http_client.post(self._url, json=body, headers=self._headers())
        except httpx.HTTPError as exc:
            raise EmbeddingProviderError(
                f"OpenRouter request failed: {type(exc).__name__}: {exc}",
                batch_size=batch_size,
            ) from exc

        if response.status_code >= 400:
            structured_log(
                logger,
                "warning",
                "embeddings.provider_http_error",
                status_code=response.status_code,
                batch_size=batch_size,
                body=response.text[:_ERROR_BODY_PREVIEW_CHARS],
            )
            raise EmbeddingProviderError(
                f"OpenRouter API error: {response.status_code}",
                batch_size=batch_size,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise EmbeddingProviderError("OpenRouter returned invalid JSON", batch_size=batch_size) from exc
        return _ordered_vectors(payload, expected=batch_size)


def _ordered_vectors(payload: Any, *, expected: int) -> list[list[float]]:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, list):
        raise EmbeddingProviderError("OpenRouter response has no data list", batch_size=expected)
    if len(data) != expected:
        raise EmbeddingProviderError(
            f"OpenRouter returned {len(data)} embeddings for {expected} inputs",
            batch_size=expected,
        )
    try:
        entries = sorted(data, key=lambda entry: int(entry["index"]))
        vectors = [[float(value) for value in entry["embedding"]] for entry in entries]
    except (KeyError, TypeError, ValueError) as exc:
        raise EmbeddingProviderError(
            f"OpenRouter response entry is malformed: {exc}",
            batch_size=expected,
        ) from exc
    indexes = [int(entry["index"]) for entry in entries]
    if indexes != list(range(expected)):
        raise EmbeddingProviderError(
            "OpenRouter response indexes do not cover the input batch",
            batch_size=expected,
        )
    return vectors
