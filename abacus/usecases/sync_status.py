"""Per-provider sync status: forward cursor, last run and backfill progress."""

from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from abacus.core.domain.schemas import COMMIT_SOURCE_GITHUB, BackfillState, ProviderId, Tool
from abacus.infra.db.commit_repository import CommitRepository
from abacus.infra.db.sync_state import SyncStateStore
from abacus.infra.db.usage_repository import UsageRepository


class ProviderStatus(BaseModel):
    provider: str
    last_sync_at: Optional[datetime] = None
    cursor: Optional[datetime] = None
    oldest_data_date: Optional[date] = None
    backfill: BackfillState = BackfillState.NOT_STARTED


async def _oldest(session: AsyncSession, provider: ProviderId) -> Optional[date]:
    if provider is ProviderId.GITHUB:
        oldest = await CommitRepository(session).oldest_commit_at(COMMIT_SOURCE_GITHUB)
        return oldest.date() if oldest else None
    tool = Tool.CLAUDE_CODE if provider is ProviderId.ANTHROPIC else Tool.CURSOR
    return await UsageRepository(session).oldest_date(tool.value)


async def get_sync_status(session: AsyncSession) -> list[ProviderStatus]:
    store = SyncStateStore(session)
    statuses = []
    for provider in ProviderId:
        oldest = await _oldest(session, provider)
        statuses.append(ProviderStatus(
            provider=provider.value,
            last_sync_at=await store.last_sync_at(provider.value),
            cursor=await store.get_cursor(provider.value),
            oldest_data_date=oldest,
            backfill=await store.backfill_state(provider.value, has_data=oldest is not None),
        ))
    return statuses
