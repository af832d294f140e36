"""Factory: build a ProviderAdapter from provider id + session."""

from __future__ import annotations

import asyncio
import weakref
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from abacus.config import Settings, settings
from abacus.core.domain.schemas import ProviderId
from abacus.infra.db.commit_repository import CommitRepository
from abacus.infra.db.identity import IdentityMappingRepository
from abacus.infra.db.usage_repository import UsageRepository

from .anthropic import AnthropicAdapter
from .base import ProviderAdapter
from .cursor import CursorAdapter
from .github import CommitIngestor, GitHubAdapter, GitHubClient, GitHubTokenProvider, Sleep

_PROVIDER_IDS = [p.value for p in ProviderId]

# token cache lives as long as the http client it was issued through
_token_providers: "weakref.WeakKeyDictionary[httpx.AsyncClient, GitHubTokenProvider]" = weakref.WeakKeyDictionary()

_shared_client: Optional[httpx.AsyncClient] = None


def github_token_provider(client: httpx.AsyncClient, cfg: Settings) -> GitHubTokenProvider:
    tokens = _token_providers.get(client)
    if tokens is None or tokens.cfg is not cfg:
        tokens = GitHubTokenProvider(client, cfg)
        _token_providers[client] = tokens
    return tokens


def create_http_client(cfg: Optional[Settings] = None) -> httpx.AsyncClient:
    cfg = cfg or settings
    return httpx.AsyncClient(timeout=cfg.http_timeout_s)


def shared_http_client() -> httpx.AsyncClient:
    """Process-wide client for scheduled jobs, so installation tokens are reused between runs."""
    global _shared_client
    if _shared_client is None or _shared_client.is_closed:
        _shared_client = create_http_client(settings)
    return _shared_client


async def close_shared_http_client() -> None:
    global _shared_client
    if _shared_client is not None:
        await _shared_client.aclose()
        _shared_client = None


def build_commit_ingestor(session: AsyncSession, cfg: Optional[Settings] = None) -> CommitIngestor:
    cfg = cfg or settings
    return CommitIngestor(
        CommitRepository(session), IdentityMappingRepository(session), cfg.work_email_domain,
    )


def create_adapter(
    provider: str,
    session: AsyncSession,
    client: httpx.AsyncClient,
    cfg: Optional[Settings] = None,
    *,
    sleep: Sleep = asyncio.sleep,
) -> ProviderAdapter:
    cfg = cfg or settings
    if provider == ProviderId.ANTHROPIC.value:
        return AnthropicAdapter(client, UsageRepository(session), IdentityMappingRepository(session), cfg)
    if provider == ProviderId.CURSOR.value:
        return CursorAdapter(client, UsageRepository(session), cfg)
    if provider == ProviderId.GITHUB.value:
        tokens = github_token_provider(client, cfg)
        return GitHubAdapter(
            GitHubClient(client, tokens, cfg), tokens, build_commit_ingestor(session, cfg), cfg, sleep=sleep,
        )
    raise ValueError(f"Unknown provider: {provider!r}. Known: {_PROVIDER_IDS}")
