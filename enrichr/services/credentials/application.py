from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from enrichr.db.models import UserApiKey
from enrichr.services.jobs.errors import CredentialMissingError

PROVIDER_OPENROUTER = "openrouter"
PROVIDER_PUBMED = "pubmed"


class CredentialLookup(Protocol):
    async def get_api_key(self, user_id: str, provider: str) -> str | None: ...


class SqlCredentialLookup:
    """Per-user API keys with an optional deployment-wide fallback per provider."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        fallback_keys: Mapping[str, str | None] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._fallback_keys = dict(fallback_keys or {})

    async def get_api_key(self, user_id: str, provider: str) -> str | None:
        async with self._session_factory() as session:
            stored = (
                await session.execute(
                    select(UserApiKey.api_key).where(
                        UserApiKey.user_id == user_id,
                        UserApiKey.provider == provider,
                    )
                )
            ).scalar_one_or_none()
        stored = (stored or "").strip()
        if stored:
            return stored
        fallback = (self._fallback_keys.get(provider) or "").strip()
        return fallback or None


async def require_api_key(lookup: CredentialLookup, *, user_id: str, provider: str) -> str:
    api_key = await lookup.get_api_key(user_id, provider)
    if not api_key:
        raise CredentialMissingError(provider)
    return api_key
