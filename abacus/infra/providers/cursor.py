"""Cursor team usage adapter (per-event regime)."""

from __future__ import annotations

import base64
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional, Sequence

import httpx

from abacus.config import Settings
from abacus.core.domain.exceptions import ConfigMissingError
from abacus.core.domain.model_names import normalize_model_name
from abacus.core.domain.schemas import (
    DedupRegime,
    Page,
    ProviderId,
    StoreOutcome,
    Tool,
    UsageRecord,
)
from abacus.infra.db.usage_repository import UsageRepository
from abacus.infra.time_windows import hour_floor

from .http import request_json

logger = logging.getLogger(__name__)

PAGE_SIZE = 1000


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class CursorAdapter:
    provider_id = ProviderId.CURSOR.value
    tool = Tool.CURSOR.value
    regime = DedupRegime.PER_EVENT
    chunk = timedelta(days=1)
    overlap = timedelta(0)

    def __init__(self, client: httpx.AsyncClient, usage: UsageRepository, cfg: Settings) -> None:
        self._client = client
        self._usage = usage
        self._cfg = cfg
        self.page_delay_s = cfg.cursor_page_delay_s

    def _auth_header(self) -> str:
        # Basic auth, admin key as username with an empty password
        credentials = f"{self._cfg.cursor_admin_key}:".encode()
        return f"Basic {base64.b64encode(credentials).decode()}"

    def check_config(self) -> None:
        if not self._cfg.cursor_admin_key:
            raise ConfigMissingError(self.provider_id, "CURSOR_ADMIN_KEY")

    async def prepare(self) -> None:
        return None

    def forward_target(self, now: datetime) -> datetime:
        # only whole hours are synced
        return hour_floor(now)

    async def oldest_data_date(self) -> Optional[date]:
        return await self._usage.oldest_date(self.tool)

    async def fetch_page(self, start: datetime, end: datetime, token: Any) -> Page:
        page = token or 1
        data = await request_json(
            self._client, self.provider_id, "POST",
            f"{self._cfg.cursor_base_url.rstrip('/')}/teams/filtered-usage-events",
            headers={"Authorization": self._auth_header(), "Content-Type": "application/json"},
            json={
                "startDate": _epoch_ms(start),
                "endDate": _epoch_ms(end),
                "page": page,
                "pageSize": PAGE_SIZE,
            },
        )
        events = list(data.get("usageEvents") or [])
        has_next = bool((data.get("pagination") or {}).get("hasNextPage"))
        return Page(items=events, next_token=page + 1 if has_next else None)

    def normalize(self, event: dict) -> Optional[UsageRecord]:
        """None for events that carry no tokens at all or no timestamp.

        Raises for an event it cannot parse (bad timestamp, non-numeric tokens).
        """
        usage = event.get("tokenUsage") or {}
        input_tokens = int(usage.get("inputTokens") or 0)
        output_tokens = int(usage.get("outputTokens") or 0)
        cache_write = int(usage.get("cacheWriteTokens") or 0)
        cache_read = int(usage.get("cacheReadTokens") or 0)
        if input_tokens + output_tokens + cache_write + cache_read == 0:
            return None
        if not event.get("timestamp"):
            logger.warning("Cursor event without timestamp for %s", event.get("userEmail"))
            return None

        timestamp_ms = int(event["timestamp"])
        # the API says "default" where CSV exports say "auto"
        raw_model = event.get("model")
        if raw_model == "default":
            raw_model = "auto"
        return UsageRecord(
            date=datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).date(),
            email=event.get("userEmail") or "",
            tool=self.tool,
            model=normalize_model_name(raw_model),
            raw_model=raw_model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cache_write_tokens=cache_write,
            cache_read_tokens=cache_read,
            cost_usd=(usage.get("totalCents") or 0) / 100,
            event_timestamp_ms=timestamp_ms,
        )

    async def store(self, items: Sequence[dict], start: datetime, end: datetime) -> StoreOutcome:
        records: list[UsageRecord] = []
        skipped = 0
        for event in items:
            try:
                record = self.normalize(event)
            except (KeyError, TypeError, ValueError, OverflowError) as exc:
                logger.warning("Unreadable Cursor event for %s: %r", event.get("userEmail"), exc)
                skipped += 1
                continue
            if record is None or not record.email:
                skipped += 1
                continue
            records.append(record)
        outcome = await self._usage.upsert_many(records, self.regime)
        outcome.skipped += skipped
        return outcome
