"""Claude Code analytics adapter (aggregated regime).

Endpoint: GET /v1/organizations/usage_report/claude_code, one day per
request window. Each record carries an actor (user email or API key name)
and a per-model breakdown; costs are reported in cents.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional, Sequence

import httpx

from abacus.config import Settings
from abacus.core.domain.exceptions import (
    ConfigMissingError,
    IdentityUnresolvedError,
    RateLimitedError,
    UpstreamError,
)
from abacus.core.domain.model_names import normalize_model_name
from abacus.core.domain.schemas import (
    DedupRegime,
    Page,
    ProviderId,
    StoreOutcome,
    Tool,
    UsageRecord,
)
from abacus.infra.db.identity import IdentityResolver
from abacus.infra.db.usage_repository import UsageRepository, aggregate_records
from abacus.infra.time_windows import day_start

from .http import request_json

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
PAGE_LIMIT = 1000
ADMIN_PAGE_LIMIT = 100
UNKNOWN_MODEL = "unknown"


class AnthropicAdapter:
    provider_id = ProviderId.ANTHROPIC.value
    tool = Tool.CLAUDE_CODE.value
    regime = DedupRegime.AGGREGATED
    chunk = timedelta(days=1)
    overlap = timedelta(days=1)

    def __init__(
        self,
        client: httpx.AsyncClient,
        usage: UsageRepository,
        identities: IdentityResolver,
        cfg: Settings,
    ) -> None:
        self._client = client
        self._usage = usage
        self._identities = identities
        self._cfg = cfg
        self.page_delay_s = cfg.anthropic_page_delay_s
        self.key_name_to_email: dict[str, str] = {}

    def _headers(self) -> dict[str, str]:
        return {
            "X-Api-Key": self._cfg.anthropic_admin_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _url(self, path: str) -> str:
        return f"{self._cfg.anthropic_base_url.rstrip('/')}{path}"

    def check_config(self) -> None:
        if not self._cfg.anthropic_admin_key:
            raise ConfigMissingError(self.provider_id, "ANTHROPIC_ADMIN_KEY")

    async def prepare(self) -> None:
        self.key_name_to_email = await self.fetch_key_name_map()

    def forward_target(self, now: datetime) -> datetime:
        # today is re-read until the day is over
        return day_start(now.astimezone(timezone.utc).date() + timedelta(days=1))

    async def oldest_data_date(self) -> Optional[date]:
        return await self._usage.oldest_date(self.tool)

    # --- key name -> email ---

    async def _paginate_admin(self, path: str, params: dict[str, Any]) -> list[dict]:
        items: list[dict] = []
        after_id: Optional[str] = None
        while True:
            query = {"limit": ADMIN_PAGE_LIMIT, **params}
            if after_id:
                query["after_id"] = after_id
            data = await request_json(
                self._client, self.provider_id, "GET", self._url(path),
                params=query, headers=self._headers(),
            )
            items.extend(data.get("data") or [])
            if not data.get("has_more") or not data.get("last_id"):
                return items
            after_id = data["last_id"]

    async def fetch_key_name_map(self) -> dict[str, str]:
        """API key name -> creator email; active keys win over archived ones.

        Failures other than rate limiting leave the map empty, api_actor
        records then fall back to stored identity mappings.
        """
        try:
            users = await self._paginate_admin("/v1/organizations/users", {})
            archived = await self._paginate_admin("/v1/organizations/api_keys", {"status": "archived"})
            active = await self._paginate_admin("/v1/organizations/api_keys", {"status": "active"})
        except RateLimitedError:
            raise
        except UpstreamError as exc:
            logger.error("Failed to fetch API key mappings, api_actor records fall back to stored mappings: %s", exc)
            return {}

        user_emails = {u["id"]: u["email"] for u in users if u.get("id") and u.get("email")}
        mapping: dict[str, str] = {}
        for key in [*archived, *active]:
            email = user_emails.get((key.get("created_by") or {}).get("id"))
            name = key.get("name")
            if not email or not name:
                continue
            previous = mapping.get(name)
            if previous and previous != email:
                logger.warning("API key name %r maps to %s and %s, using %s", name, previous, email, email)
            mapping[name] = email
        logger.info("Resolved %d API key names to emails", len(mapping))
        return mapping

    # --- usage ---

    async def fetch_page(self, start: datetime, end: datetime, token: Any) -> Page:
        params: dict[str, Any] = {"starting_at": start.date().isoformat(), "limit": PAGE_LIMIT}
        if token:
            params["page"] = token
        data = await request_json(
            self._client, self.provider_id, "GET",
            self._url("/v1/organizations/usage_report/claude_code"),
            params=params, headers=self._headers(),
        )
        next_page = data.get("next_page") if data.get("has_more") else None
        return Page(items=list(data.get("data") or []), next_token=next_page or None)

    async def _email_for(self, actor: dict) -> str:
        """Raises IdentityUnresolvedError when neither the actor nor a mapping yields an email."""
        if actor.get("email_address"):
            return actor["email_address"]
        key_name = actor.get("api_key_name")
        if actor.get("type") != "api_actor" or not key_name:
            raise IdentityUnresolvedError(self.tool, key_name)
        email = self.key_name_to_email.get(key_name) or await self._identities.resolve(self.tool, key_name)
        if not email:
            raise IdentityUnresolvedError(self.tool, key_name)
        return email

    def _item_records(self, item: dict, email: str) -> list[UsageRecord]:
        day = date.fromisoformat(str(item["date"])[:10])
        records = []
        for breakdown in item.get("model_breakdown") or []:
            raw_model = breakdown.get("model") or None
            tokens = breakdown.get("tokens") or {}
            cost = breakdown.get("estimated_cost") or {}
            records.append(UsageRecord(
                date=day,
                email=email,
                tool=self.tool,
                model=normalize_model_name(raw_model or UNKNOWN_MODEL),
                raw_model=raw_model,
                input_tokens=int(tokens.get("input") or 0),
                output_tokens=int(tokens.get("output") or 0),
                cache_read_tokens=int(tokens.get("cache_read") or 0),
                cache_write_tokens=int(tokens.get("cache_creation") or 0),
                cost_usd=(cost.get("amount") or 0) / 100,
            ))
        return records

    async def normalize(self, items: Sequence[dict]) -> tuple[list[UsageRecord], int, int]:
        """Flatten model breakdowns into records.

        Returns ``(records, unattributed, malformed)``; unattributed items have
        no resolvable email, malformed ones could not be parsed.
        """
        records: list[UsageRecord] = []
        unattributed = malformed = 0
        for item in items:
            try:
                email = await self._email_for(item.get("actor") or {})
            except IdentityUnresolvedError as exc:
                logger.debug("%s", exc)
                unattributed += 1
                continue
            try:
                records.extend(self._item_records(item, email))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Unreadable Claude Code usage record for %s: %r", email, exc)
                malformed += 1
        return records, unattributed, malformed

    async def store(self, items: Sequence[dict], start: datetime, end: datetime) -> StoreOutcome:
        records, unattributed, malformed = await self.normalize(items)
        outcome = await self._usage.upsert_many(aggregate_records(records), self.regime)
        outcome.skipped += unattributed + malformed
        if unattributed:
            logger.info("Skipped %d Claude Code records without email attribution", unattributed)

        # a partially unreadable day keeps its legacy rows
        if outcome.imported > 0 and not outcome.errors and not malformed:
            day = start.date()
            last = max(day, (end - timedelta(microseconds=1)).date())
            while day <= last:
                removed = await self._usage.delete_legacy_records(self.tool, day)
                if removed:
                    logger.info("Removed %d legacy %s rows for %s", removed, self.tool, day)
                day += timedelta(days=1)
        return outcome
