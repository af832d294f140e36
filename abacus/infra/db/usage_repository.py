"""Usage record persistence -- idempotent upserts under two dedup regimes."""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, timedelta
from typing import Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from abacus.core.domain.exceptions import InsertError
from abacus.core.domain.schemas import (
    DailyUsage,
    DedupRegime,
    StoreOutcome,
    ToolCompleteness,
    UsageRecord,
)

from .dialect import insert_for
from .models import UsageRecordRow

logger = logging.getLogger(__name__)

_DEDUP_COLUMNS = ["date", "email", "tool", "raw_model", "provider_record_id", "event_key"]
_NUMERIC_COLUMNS = [
    "model", "input_tokens", "cache_write_tokens",
    "cache_read_tokens", "output_tokens", "cost",
]


def _row_values(record: UsageRecord) -> dict:
    return {
        "date": record.date,
        "email": record.email,
        "tool": record.tool,
        "model": record.model,
        "raw_model": record.raw_model or "",
        "input_tokens": record.input_tokens,
        "cache_write_tokens": record.cache_write_tokens,
        "cache_read_tokens": record.cache_read_tokens,
        "output_tokens": record.output_tokens,
        "cost": record.cost_usd,
        "provider_record_id": record.provider_record_id or "",
        "event_key": "" if record.event_timestamp_ms is None else str(record.event_timestamp_ms),
        "event_timestamp_ms": record.event_timestamp_ms,
    }


def aggregate_records(records: Iterable[UsageRecord]) -> list[UsageRecord]:
    """Sum records sharing (date, email, tool, raw_model).

    Several API keys can belong to one user; written one by one they would
    overwrite each other under the aggregated dedup key.
    """
    merged: dict[tuple, UsageRecord] = {}
    for rec in records:
        key = (rec.date, rec.email, rec.tool, rec.raw_model or "")
        existing = merged.get(key)
        if existing is None:
            merged[key] = UsageRecord(**vars(rec))
            continue
        existing.input_tokens += rec.input_tokens
        existing.cache_write_tokens += rec.cache_write_tokens
        existing.cache_read_tokens += rec.cache_read_tokens
        existing.output_tokens += rec.output_tokens
        existing.cost_usd += rec.cost_usd
    return list(merged.values())


class UsageRepository:

    def __init__(self, session: AsyncSession) -> None:
        self._s = session

    async def upsert(self, record: UsageRecord, regime: DedupRegime) -> None:
        """Write one record inside a savepoint; raise InsertError on failure."""
        stmt = insert_for(self._s, UsageRecordRow).values(**_row_values(record))
        if regime is DedupRegime.AGGREGATED:
            stmt = stmt.on_conflict_do_update(
                index_elements=_DEDUP_COLUMNS,
                set_={col: stmt.excluded[col] for col in _NUMERIC_COLUMNS},
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=_DEDUP_COLUMNS)

        try:
            async with self._s.begin_nested():
                await self._s.execute(stmt)
        except SQLAlchemyError as exc:
            raise InsertError(UsageRecordRow.__tablename__, str(getattr(exc, "orig", None) or exc)) from exc

    async def upsert_many(self, records: Iterable[UsageRecord], regime: DedupRegime) -> StoreOutcome:
        outcome = StoreOutcome()
        for record in records:
            try:
                await self.upsert(record, regime)
            except InsertError as exc:
                logger.warning("Skipping usage record %s/%s on %s: %s",
                               record.tool, record.email, record.date, exc.detail)
                outcome.skipped += 1
                outcome.errors.append(str(exc))
                continue
            outcome.imported += 1
        return outcome

    async def delete_legacy_records(self, tool: str, day: date) -> int:
        """Drop rows of an older sync that keyed records by provider id."""
        stmt = delete(UsageRecordRow).where(
            UsageRecordRow.tool == tool,
            UsageRecordRow.date == day,
            UsageRecordRow.provider_record_id != "",
        )
        result = await self._s.execute(stmt)
        return result.rowcount or 0

    async def oldest_date(self, tool: str) -> Optional[date]:
        stmt = select(func.min(UsageRecordRow.date)).where(UsageRecordRow.tool == tool)
        return (await self._s.execute(stmt)).scalar_one_or_none()

    async def last_data_dates(self, tools: Iterable[str]) -> dict[str, ToolCompleteness]:
        tools = list(tools)
        stmt = (
            select(UsageRecordRow.tool, func.max(UsageRecordRow.date))
            .where(UsageRecordRow.tool.in_(tools))
            .group_by(UsageRecordRow.tool)
        )
        found = {tool: last for tool, last in (await self._s.execute(stmt)).all()}
        return {tool: ToolCompleteness(last_data_date=found.get(tool)) for tool in tools}

    async def daily_totals(self, start: date, end: date, tools: Iterable[str]) -> list[DailyUsage]:
        """Token totals per tool and cost per day, every day in [start, end] present."""
        tools = list(tools)
        token_sum = func.sum(
            UsageRecordRow.input_tokens + UsageRecordRow.cache_write_tokens
            + UsageRecordRow.cache_read_tokens + UsageRecordRow.output_tokens
        )
        stmt = (
            select(UsageRecordRow.date, UsageRecordRow.tool, token_sum, func.sum(UsageRecordRow.cost))
            .where(UsageRecordRow.date >= start, UsageRecordRow.date <= end)
            .group_by(UsageRecordRow.date, UsageRecordRow.tool)
        )
        tokens: dict[date, dict[str, int]] = defaultdict(dict)
        costs: dict[date, float] = defaultdict(float)
        for day, tool, total, cost in (await self._s.execute(stmt)).all():
            # cost covers every tool; totals only the charted ones
            costs[day] += float(cost or 0)
            if tool in tools:
                tokens[day][tool] = int(total or 0)

        series: list[DailyUsage] = []
        day = start
        while day <= end:
            totals = {tool: tokens[day].get(tool, 0) for tool in tools}
            series.append(DailyUsage(date=day, totals=totals, cost=round(costs[day], 6)))
            day += timedelta(days=1)
        return series
