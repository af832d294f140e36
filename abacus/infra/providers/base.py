"""ProviderAdapter Protocol -- core contract for every upstream adapter.

The sync engine owns pagination, pacing, rate-limit aborts and cursor
bookkeeping. An adapter only knows how to fetch one page of its upstream for
a time window and how to store what it fetched.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Optional, Protocol, Sequence

from abacus.core.domain.schemas import Page, StoreOutcome


class ProviderAdapter(Protocol):
    provider_id: str
    # backfill walks in chunks of this size, forward windows are split by it
    chunk: timedelta
    # re-read this far behind the forward cursor
    overlap: timedelta
    page_delay_s: float

    def check_config(self) -> None:
        """Raise ConfigMissingError before any request when credentials are absent."""
        ...

    async def prepare(self) -> None:
        """One-time lookups needed before fetching (repo lists, key maps)."""
        ...

    def forward_target(self, now: datetime) -> datetime:
        """Exclusive end of the forward window for ``now``."""
        ...

    async def oldest_data_date(self) -> Optional[date]:
        """Oldest stored day for this provider; the backfill frontier."""
        ...

    async def fetch_page(self, start: datetime, end: datetime, token: Any) -> Page:
        """Fetch one page of ``[start, end)``; ``token`` is None for the first page."""
        ...

    async def store(self, items: Sequence[Any], start: datetime, end: datetime) -> StoreOutcome:
        """Normalize and persist every item fetched for one fully-read chunk."""
        ...
