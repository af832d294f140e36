"""Org member email sync: verified domain emails become GitHub identity mappings."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from abacus.config import Settings, settings
from abacus.core.domain.exceptions import ConfigMissingError, ProviderError
from abacus.core.domain.schemas import COMMIT_SOURCE_GITHUB
from abacus.infra.db.identity import IdentityMappingRepository
from abacus.infra.providers.factory import create_http_client, github_token_provider
from abacus.infra.providers.github import GitHubClient, Sleep

logger = logging.getLogger(__name__)


class MemberSyncResult(BaseModel):
    members_with_email: int = 0
    mappings_changed: int = 0
    commits_updated: int = 0
    errors: list[str] = Field(default_factory=list)


async def sync_member_emails(
    session: AsyncSession,
    *,
    client: Optional[httpx.AsyncClient] = None,
    cfg: Optional[Settings] = None,
    sleep: Sleep = asyncio.sleep,
) -> MemberSyncResult:
    cfg = cfg or settings
    result = MemberSyncResult()
    own_client = client is None
    client = client or create_http_client(cfg)
    try:
        tokens = github_token_provider(client, cfg)
        api = GitHubClient(client, tokens, cfg)
        try:
            tokens.check_config()
            emails = await api.org_member_emails(cfg.github_org, sleep=sleep, delay_s=cfg.github_page_delay_s)
        except (ConfigMissingError, ProviderError) as exc:
            logger.error("Member email sync failed: %s", exc)
            result.errors.append(str(exc))
            return result
    finally:
        if own_client:
            await client.aclose()

    identities = IdentityMappingRepository(session)
    existing = await identities.all_for_source(COMMIT_SOURCE_GITHUB)
    result.members_with_email = len(emails)
    for user_id, email in emails.items():
        if existing.get(user_id) == email:
            continue
        result.mappings_changed += 1
        result.commits_updated += await identities.set_mapping(COMMIT_SOURCE_GITHUB, user_id, email)
    await session.commit()

    logger.info(
        "Member sync: %d members with verified email, %d mappings changed, %d commits re-attributed",
        result.members_with_email, result.mappings_changed, result.commits_updated,
    )
    return result
