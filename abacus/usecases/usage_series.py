"""Daily usage series for charts, with completeness flags and projections."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional, Sequence

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from abacus.core.domain.projection import (
    apply_projections,
    has_estimated_data,
    has_extrapolated_data,
    has_incomplete_data,
)
from abacus.core.domain.schemas import DailyUsage, Tool, ToolCompleteness
from abacus.infra.db.usage_repository import UsageRepository

USAGE_TOOLS: tuple[str, ...] = (Tool.CLAUDE_CODE.value, Tool.CURSOR.value)


class UsageChart(BaseModel):
    series: list[DailyUsage]
    completeness: dict[str, ToolCompleteness]
    has_incomplete_data: bool = False
    has_estimated_data: bool = False
    has_extrapolated_data: bool = False


async def load_daily_usage(
    session: AsyncSession, start: date, end: date, tools: Sequence[str] = USAGE_TOOLS,
) -> list[DailyUsage]:
    return await UsageRepository(session).daily_totals(start, end, tools)


async def get_data_completeness(
    session: AsyncSession, tools: Sequence[str] = USAGE_TOOLS,
) -> dict[str, ToolCompleteness]:
    return await UsageRepository(session).last_data_dates(tools)


async def build_usage_chart(
    session: AsyncSession,
    start: date,
    end: date,
    *,
    tools: Sequence[str] = USAGE_TOOLS,
    now: Optional[datetime] = None,
) -> UsageChart:
    now = now or datetime.now(timezone.utc)
    raw = await load_daily_usage(session, start, end, tools)
    completeness = await get_data_completeness(session, tools)
    series = apply_projections(raw, completeness, now.date(), now=now)
    return UsageChart(
        series=series,
        completeness=completeness,
        has_incomplete_data=has_incomplete_data(series),
        has_estimated_data=has_estimated_data(series),
        has_extrapolated_data=has_extrapolated_data(series),
    )
