from datetime import date, datetime, timezone

import pytest

from abacus.core.domain.schemas import DedupRegime, UsageRecord
from abacus.infra.db.usage_repository import UsageRepository
from abacus.usecases.usage_series import build_usage_chart, get_data_completeness


def _record(day: date, tool: str, tokens: int, ts: int | None = None) -> UsageRecord:
    return UsageRecord(
        date=day, email="dev@acme.com", tool=tool, model="sonnet-4", raw_model="claude-sonnet-4",
        input_tokens=tokens, cost_usd=tokens / 1000, event_timestamp_ms=ts,
    )


class TestUsageChart:
    @pytest.mark.asyncio
    async def test_chart_flags_lagging_tool(self, session):
        repo = UsageRepository(session)
        await repo.upsert(_record(date(2025, 6, 9), "claude_code", 1000), DedupRegime.AGGREGATED)
        await repo.upsert(_record(date(2025, 6, 10), "claude_code", 3000), DedupRegime.AGGREGATED)
        await repo.upsert(_record(date(2025, 6, 10), "cursor", 200, ts=1), DedupRegime.PER_EVENT)
        await repo.upsert(_record(date(2025, 6, 11), "cursor", 100, ts=2), DedupRegime.PER_EVENT)
        await session.commit()

        now = datetime(2025, 6, 11, 12, tzinfo=timezone.utc)
        chart = await build_usage_chart(session, date(2025, 6, 9), date(2025, 6, 11), now=now)

        assert [d.is_incomplete for d in chart.series] == [False, False, True]
        today = chart.series[-1]
        assert today.totals == {"claude_code": 2000, "cursor": 200}
        assert today.projected == {"claude_code": 0, "cursor": 100}
        assert chart.has_estimated_data
        assert chart.has_extrapolated_data

    @pytest.mark.asyncio
    async def test_completeness_for_tool_without_data(self, session):
        completeness = await get_data_completeness(session)
        assert completeness["claude_code"].last_data_date is None
        assert completeness["cursor"].last_data_date is None
