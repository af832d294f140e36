"""Per-provider sync bookkeeping: forward cursor and backfill-complete flag."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from abacus.core.domain.schemas import BackfillState

from .models import SyncStateRow, _utcnow


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _to_aware_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SyncStateStore:
    """Key-value store keyed by provider id; one row per provider.

    The backfill frontier is never stored here, callers derive it from data.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._s = session

    async def _row(self, provider: str) -> SyncStateRow:
        row = await self._s.get(SyncStateRow, provider)
        if row is None:
            row = SyncStateRow(id=provider, backfill_complete=False)
            self._s.add(row)
            await self._s.flush()
        return row

    async def get_cursor(self, provider: str) -> Optional[datetime]:
        row = await self._s.get(SyncStateRow, provider)
        return _to_aware_utc(row.last_sync_cursor) if row else None

    async def set_cursor(self, provider: str, cursor: datetime) -> None:
        row = await self._row(provider)
        row.last_sync_cursor = _to_naive_utc(cursor)
        row.last_sync_at = _utcnow()
        await self._s.flush()

    async def last_sync_at(self, provider: str) -> Optional[datetime]:
        row = await self._s.get(SyncStateRow, provider)
        return _to_aware_utc(row.last_sync_at) if row else None

    async def is_backfill_complete(self, provider: str) -> bool:
        row = await self._s.get(SyncStateRow, provider)
        return bool(row and row.backfill_complete)

    async def mark_backfill_complete(self, provider: str) -> None:
        row = await self._row(provider)
        row.backfill_complete = True
        row.last_sync_at = _utcnow()
        await self._s.flush()

    async def reset_backfill_complete(self, provider: str) -> None:
        await self._s.execute(
            update(SyncStateRow)
            .where(SyncStateRow.id == provider)
            .values(backfill_complete=False)
            .execution_options(synchronize_session="fetch")
        )

    async def backfill_state(self, provider: str, *, has_data: bool) -> BackfillState:
        if await self.is_backfill_complete(provider):
            return BackfillState.COMPLETE
        return BackfillState.IN_PROGRESS if has_data else BackfillState.NOT_STARTED
