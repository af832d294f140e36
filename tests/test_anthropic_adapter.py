from datetime import date, datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import select

from abacus.core.domain.schemas import Tool
from abacus.infra.db.identity import IdentityMappingRepository
from abacus.infra.db.models import UsageRecordRow
from abacus.infra.db.usage_repository import UsageRepository
from abacus.infra.providers.anthropic import AnthropicAdapter
from abacus.usecases.sync_engine import SyncEngine

from conftest import MockUpstream

DAY = date(2025, 6, 11)


def _usage_item(actor: dict, tokens: int, cents: int, *, day: date = DAY, model: str = "claude-sonnet-4-20250514") -> dict:
    return {
        "date": f"{day.isoformat()}T00:00:00Z",
        "actor": actor,
        "model_breakdown": [{
            "model": model,
            "tokens": {"input": tokens, "output": 0, "cache_read": 0, "cache_creation": 0},
            "estimated_cost": {"amount": cents, "currency": "USD"},
        }],
    }


def _api_actor(name: str) -> dict:
    return {"type": "api_actor", "api_key_name": name}


class FakeAnthropic:
    """Admin + usage endpoints; usage items keyed by ``starting_at`` day."""

    def __init__(self, usage: dict[str, list[dict]], *, active_keys=None, archived_keys=None, users=None):
        self.usage = usage
        self.active_keys = active_keys or []
        self.archived_keys = archived_keys or []
        self.users = users or [{"id": "u1", "email": "dev@acme.com"}]
        self.key_status: int = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v1/organizations/users":
            return httpx.Response(200, json={"data": self.users, "has_more": False})
        if path == "/v1/organizations/api_keys":
            if self.key_status != 200:
                return httpx.Response(self.key_status, text="nope")
            keys = self.archived_keys if request.url.params.get("status") == "archived" else self.active_keys
            return httpx.Response(200, json={"data": keys, "has_more": False})
        if path == "/v1/organizations/usage_report/claude_code":
            items = self.usage.get(request.url.params["starting_at"], [])
            return httpx.Response(200, json={"data": items, "has_more": False, "next_page": None})
        return httpx.Response(404)


def _adapter(session, upstream: MockUpstream, cfg) -> AnthropicAdapter:
    return AnthropicAdapter(
        upstream.client(), UsageRepository(session), IdentityMappingRepository(session), cfg,
    )


async def _claude_rows(session) -> list[UsageRecordRow]:
    stmt = select(UsageRecordRow).where(UsageRecordRow.tool == Tool.CLAUDE_CODE.value)
    return list((await session.execute(stmt)).scalars().all())


class TestKeyNameMap:
    @pytest.mark.asyncio
    async def test_active_keys_win_over_archived(self, session, cfg):
        fake = FakeAnthropic(
            {},
            users=[{"id": "u1", "email": "old@acme.com"}, {"id": "u2", "email": "new@acme.com"}],
            archived_keys=[{"name": "laptop", "created_by": {"id": "u1"}}],
            active_keys=[{"name": "laptop", "created_by": {"id": "u2"}}],
        )
        mapping = await _adapter(session, MockUpstream(fake), cfg).fetch_key_name_map()
        assert mapping == {"laptop": "new@acme.com"}

    @pytest.mark.asyncio
    async def test_admin_failure_yields_empty_map(self, session, cfg):
        fake = FakeAnthropic({})
        fake.key_status = 500
        mapping = await _adapter(session, MockUpstream(fake), cfg).fetch_key_name_map()
        assert mapping == {}


class TestNormalize:
    @pytest.mark.asyncio
    async def test_user_actor_and_cost_in_dollars(self, session, cfg):
        adapter = _adapter(session, MockUpstream(FakeAnthropic({})), cfg)
        item = _usage_item({"type": "user_actor", "email_address": "a@acme.com"}, 10, 250)
        records, unattributed, malformed = await adapter.normalize([item])
        assert unattributed == 0
        assert malformed == 0
        assert records[0].email == "a@acme.com"
        assert records[0].model == "sonnet-4"
        assert records[0].raw_model == "claude-sonnet-4-20250514"
        assert records[0].cost_usd == pytest.approx(2.5)

    @pytest.mark.asyncio
    async def test_api_actor_falls_back_to_identity_mapping(self, session, cfg):
        await IdentityMappingRepository(session).remember(Tool.CLAUDE_CODE.value, "ci-key", "ci@acme.com")
        adapter = _adapter(session, MockUpstream(FakeAnthropic({})), cfg)
        records, unattributed, _ = await adapter.normalize([
            _usage_item(_api_actor("ci-key"), 10, 1),
            _usage_item(_api_actor("mystery"), 10, 1),
        ])
        assert [r.email for r in records] == ["ci@acme.com"]
        assert unattributed == 1

    @pytest.mark.asyncio
    async def test_unreadable_item_is_counted_not_raised(self, session, cfg):
        adapter = _adapter(session, MockUpstream(FakeAnthropic({})), cfg)
        good = _usage_item({"email_address": "a@acme.com"}, 10, 1)
        no_date = {k: v for k, v in good.items() if k != "date"}
        bad_tokens = _usage_item({"email_address": "a@acme.com"}, 10, 1)
        bad_tokens["model_breakdown"][0]["tokens"]["input"] = "lots"

        records, unattributed, malformed = await adapter.normalize([no_date, bad_tokens, good])

        assert len(records) == 1
        assert unattributed == 0
        assert malformed == 2


class TestSync:
    @pytest.mark.asyncio
    async def test_keys_of_one_user_are_summed(self, session, cfg, clock, sleep):
        fake = FakeAnthropic(
            {DAY.isoformat(): [
                _usage_item(_api_actor("laptop"), 1000, 100),
                _usage_item(_api_actor("desktop"), 2000, 200),
                _usage_item(_api_actor("orphan"), 5, 1),
            ]},
            active_keys=[
                {"name": "laptop", "created_by": {"id": "u1"}},
                {"name": "desktop", "created_by": {"id": "u1"}},
            ],
        )
        upstream = MockUpstream(fake)
        engine = SyncEngine(_adapter(session, upstream, cfg), session, cfg, sleep=sleep, clock=clock)

        result = await engine.sync_forward()

        assert result.success
        assert result.imported == 1
        assert result.skipped == 1
        rows = await _claude_rows(session)
        assert len(rows) == 1
        assert rows[0].email == "dev@acme.com"
        assert rows[0].input_tokens == 3000
        assert rows[0].cost == pytest.approx(3.0)
        # today is re-read until the day is over
        assert result.window_end == datetime(2025, 6, 12, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_reread_overwrites_instead_of_adding(self, session, cfg, clock, sleep):
        fake = FakeAnthropic(
            {DAY.isoformat(): [_usage_item({"email_address": "dev@acme.com"}, 1000, 100)]},
        )
        upstream = MockUpstream(fake)
        engine = SyncEngine(_adapter(session, upstream, cfg), session, cfg, sleep=sleep, clock=clock)
        await engine.sync_forward()

        # more usage reported for the same day, read again through the overlap
        fake.usage[DAY.isoformat()] = [_usage_item({"email_address": "dev@acme.com"}, 1500, 150)]
        clock.now += timedelta(days=1)
        result = await engine.sync_forward()

        requested = [r.url.params["starting_at"] for r in upstream.requests if r.url.path.endswith("claude_code")]
        assert requested == ["2025-06-11", "2025-06-11", "2025-06-12"]
        assert result.cursor_advanced
        rows = await _claude_rows(session)
        assert len(rows) == 1
        assert rows[0].input_tokens == 1500

    @pytest.mark.asyncio
    async def test_legacy_rows_cleared_after_successful_import(self, session, cfg, clock, sleep):
        legacy = UsageRecordRow(
            date=DAY, email="dev@acme.com", tool=Tool.CLAUDE_CODE.value, model="sonnet-4",
            raw_model="", provider_record_id="legacy-1", input_tokens=7,
        )
        session.add(legacy)
        await session.commit()
        fake = FakeAnthropic({DAY.isoformat(): [_usage_item({"email_address": "dev@acme.com"}, 10, 1)]})
        engine = SyncEngine(_adapter(session, MockUpstream(fake), cfg), session, cfg, sleep=sleep, clock=clock)

        await engine.sync_forward()

        rows = await _claude_rows(session)
        assert [r.provider_record_id for r in rows] == [""]
