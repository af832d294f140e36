from datetime import date, datetime, timezone

import httpx
import pytest
from sqlalchemy import select

from abacus.core.domain.model_names import MODEL_DEFAULT
from abacus.infra.db.models import UsageRecordRow
from abacus.infra.db.usage_repository import UsageRepository
from abacus.infra.providers.cursor import CursorAdapter

EVENT_MS = int(datetime(2025, 6, 11, 10, tzinfo=timezone.utc).timestamp() * 1000)


def _event(**overrides) -> dict:
    event = {
        "timestamp": str(EVENT_MS),
        "userEmail": "dev@acme.com",
        "model": "claude-4-sonnet",
        "tokenUsage": {"inputTokens": 120, "outputTokens": 30, "cacheReadTokens": 500, "totalCents": 7},
    }
    event.update(overrides)
    return event


def _adapter(session, cfg) -> CursorAdapter:
    return CursorAdapter(httpx.AsyncClient(), UsageRepository(session), cfg)


class TestNormalize:
    @pytest.mark.asyncio
    async def test_event_fields(self, session, cfg):
        record = _adapter(session, cfg).normalize(_event())

        assert record.date == date(2025, 6, 11)
        assert record.email == "dev@acme.com"
        assert record.tool == "cursor"
        assert (record.input_tokens, record.output_tokens, record.cache_read_tokens) == (120, 30, 500)
        assert record.cost_usd == pytest.approx(0.07)
        assert record.event_timestamp_ms == EVENT_MS

    @pytest.mark.asyncio
    async def test_zero_token_event_dropped(self, session, cfg):
        event = _event(tokenUsage={"inputTokens": 0, "outputTokens": 0, "totalCents": 0})
        assert _adapter(session, cfg).normalize(event) is None

    @pytest.mark.asyncio
    async def test_event_without_usage_dropped(self, session, cfg):
        event = _event()
        del event["tokenUsage"]
        assert _adapter(session, cfg).normalize(event) is None

    @pytest.mark.asyncio
    async def test_default_model_stored_as_auto(self, session, cfg):
        record = _adapter(session, cfg).normalize(_event(model="default"))

        assert record.raw_model == "auto"
        assert record.model == MODEL_DEFAULT

    @pytest.mark.asyncio
    async def test_iso_timestamp_is_rejected(self, session, cfg):
        with pytest.raises(ValueError):
            _adapter(session, cfg).normalize(_event(timestamp="2025-06-11T10:00:00Z"))


class TestStore:
    @pytest.mark.asyncio
    async def test_skips_are_counted(self, session, cfg):
        adapter = _adapter(session, cfg)
        events = [
            _event(),
            _event(timestamp=str(EVENT_MS + 1), tokenUsage={"inputTokens": 0}),
            _event(timestamp="2025-06-11T10:00:00Z"),
            _event(timestamp=str(EVENT_MS + 2), userEmail=""),
            _event(timestamp=str(EVENT_MS + 3), tokenUsage={"inputTokens": "many"}),
        ]
        start = datetime(2025, 6, 11, tzinfo=timezone.utc)

        outcome = await adapter.store(events, start, start)
        await session.commit()

        assert outcome.imported == 1
        assert outcome.skipped == 4
        rows = (await session.execute(select(UsageRecordRow))).scalars().all()
        assert [r.event_timestamp_ms for r in rows] == [EVENT_MS]
