"""Generic sync engine: forward sync and resumable backfill over any ProviderAdapter.

Forward sync reads ``[cursor - overlap, target)`` oldest chunk first and
only advances the cursor when the whole window was fetched cleanly.
Backfill walks backward chunk by chunk from the oldest stored day toward a
target date; the frontier is re-derived from data on every call, so an
aborted run simply resumes where the data ends.

Rate limits abort immediately and are never retried here; the next
scheduled run picks up from the persisted state.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from abacus.config import Settings, settings
from abacus.core.domain.exceptions import (
    ConfigMissingError,
    RateLimitedError,
    UpstreamError,
)
from abacus.core.domain.schemas import BackfillResult, Page, StoreOutcome, SyncResult
from abacus.infra.db.sync_state import SyncStateStore
from abacus.infra.providers.base import ProviderAdapter
from abacus.infra.providers.factory import create_adapter, create_http_client
from abacus.infra.time_windows import day_start, hour_floor

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], datetime]

# in-process single-flight guard, one lock per provider
_provider_locks: dict[str, asyncio.Lock] = {}


def _provider_lock(provider: str) -> asyncio.Lock:
    if provider not in _provider_locks:
        _provider_locks[provider] = asyncio.Lock()
    return _provider_locks[provider]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _DeadlineExceeded(Exception):
    pass


class SyncEngine:

    def __init__(
        self,
        adapter: ProviderAdapter,
        session: AsyncSession,
        cfg: Optional[Settings] = None,
        *,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = _utcnow,
    ) -> None:
        self.adapter = adapter
        self._s = session
        self._state = SyncStateStore(session)
        self._cfg = cfg or settings
        self._sleep = sleep
        self._clock = clock
        self.requests_made = 0

    @property
    def provider(self) -> str:
        return self.adapter.provider_id

    def _check_deadline(self, deadline: Optional[datetime]) -> None:
        if deadline is not None and self._clock() >= deadline:
            raise _DeadlineExceeded()

    async def _fetch_chunk(self, start: datetime, end: datetime, deadline: Optional[datetime]) -> Page:
        """All pages of one chunk merged into one Page (raw_count is the upstream total)."""
        chunk = Page(items=[], raw_count=0)
        token: Any = None
        while True:
            self._check_deadline(deadline)
            self.requests_made += 1
            page = await self.adapter.fetch_page(start, end, token)
            chunk.items.extend(page.items)
            chunk.raw_count += page.upstream_count
            chunk.errors.extend(page.errors)
            chunk.skipped += page.skipped
            token = page.next_token
            if token is None:
                return chunk
            if self.adapter.page_delay_s:
                await self._sleep(self.adapter.page_delay_s)

    @staticmethod
    def _add_outcome(result: SyncResult, outcome: StoreOutcome, unreadable: int) -> None:
        result.imported += outcome.imported
        result.skipped += outcome.skipped + unreadable
        result.attributed += outcome.attributed
        result.errors.extend(outcome.errors)

    # --- forward ---

    async def sync_forward(self, *, deadline: Optional[datetime] = None) -> SyncResult:
        lock = _provider_lock(self.provider)
        if lock.locked():
            logger.info("[%s] forward sync skipped, another run is in progress", self.provider)
            return SyncResult(provider=self.provider, skipped_run=True)
        async with lock:
            return await self._sync_forward(deadline)

    async def _sync_forward(self, deadline: Optional[datetime]) -> SyncResult:
        result = SyncResult(provider=self.provider)
        try:
            self.adapter.check_config()
        except ConfigMissingError as exc:
            result.errors.append(str(exc))
            return result

        fetch_errors: list[str] = []
        try:
            target = self.adapter.forward_target(self._clock())
            cursor = await self._state.get_cursor(self.provider)
            if cursor is not None and cursor >= target:
                logger.debug("[%s] already synced through %s", self.provider, cursor.isoformat())
                return result

            if cursor is None:
                start = target - timedelta(hours=self._cfg.first_sync_lookback_hours)
            else:
                start = cursor - self.adapter.overlap
            result.window_start, result.window_end = start, target
            logger.info("[%s] forward sync %s -> %s", self.provider, start.isoformat(), target.isoformat())

            self._check_deadline(deadline)
            await self.adapter.prepare()
            chunk_start = start
            while chunk_start < target:
                chunk_end = min(chunk_start + self.adapter.chunk, target)
                chunk = await self._fetch_chunk(chunk_start, chunk_end, deadline)
                fetch_errors.extend(chunk.errors)
                outcome = await self.adapter.store(chunk.items, chunk_start, chunk_end)
                await self._s.commit()
                self._add_outcome(result, outcome, chunk.skipped)
                chunk_start = chunk_end
        except RateLimitedError as exc:
            await self._s.rollback()
            logger.warning("[%s] rate limited, will retry on next run: %s", self.provider, exc.detail)
            result.rate_limited = True
            result.errors.append(str(exc))
            return result
        except UpstreamError as exc:
            await self._s.rollback()
            logger.error("[%s] forward sync aborted: %s", self.provider, exc.detail)
            result.errors.append(str(exc))
            return result
        except _DeadlineExceeded:
            await self._s.rollback()
            logger.warning("[%s] forward sync stopped at deadline", self.provider)
            result.deadline_exceeded = True
            return result
        except Exception as exc:
            await self._s.rollback()
            logger.exception("[%s] forward sync failed", self.provider)
            result.errors.append(f"Sync error: {exc!r}")
            return result

        result.errors.extend(fetch_errors)
        if fetch_errors:
            logger.warning("[%s] %d fetch error(s), cursor stays at %s", self.provider, len(fetch_errors), cursor)
            return result

        await self._state.set_cursor(self.provider, target)
        await self._s.commit()
        result.cursor_advanced = True
        logger.info("[%s] forward sync done: %d imported, %d skipped",
                    self.provider, result.imported, result.skipped)
        return result

    # --- backfill ---

    async def backfill(
        self,
        target_date: date,
        *,
        deadline: Optional[datetime] = None,
        stop_on_empty_chunks: Optional[int] = None,
    ) -> BackfillResult:
        lock = _provider_lock(self.provider)
        if lock.locked():
            logger.info("[%s] backfill skipped, another run is in progress", self.provider)
            return BackfillResult(provider=self.provider, skipped_run=True)
        async with lock:
            return await self._backfill(
                target_date, deadline,
                stop_on_empty_chunks or self._cfg.backfill_stop_on_empty_chunks,
            )

    async def _backfill_chunk(
        self, result: BackfillResult, start: datetime, end: datetime, deadline: Optional[datetime],
    ) -> bool:
        """Fetch and store one chunk; True when upstream had nothing for it."""
        chunk = await self._fetch_chunk(start, end, deadline)
        outcome = await self.adapter.store(chunk.items, start, end)
        await self._s.commit()
        self._add_outcome(result, outcome, chunk.skipped)
        result.errors.extend(chunk.errors)
        result.last_processed_date = start.date()
        logger.info("[%s] %s: %d upstream, %d imported, %d skipped",
                    self.provider, start.date(), chunk.upstream_count, outcome.imported, outcome.skipped)
        return chunk.upstream_count == 0 and not chunk.errors

    async def _backfill(
        self, target_date: date, deadline: Optional[datetime], stop_on_empty: int,
    ) -> BackfillResult:
        result = BackfillResult(provider=self.provider)
        try:
            self.adapter.check_config()
        except ConfigMissingError as exc:
            result.errors.append(str(exc))
            return result

        empty_streak = 0
        try:
            if await self._state.is_backfill_complete(self.provider):
                logger.info("[%s] backfill already marked complete, skipping", self.provider)
                result.complete = True
                return result

            oldest = await self.adapter.oldest_data_date()
            if oldest is not None and oldest <= target_date:
                logger.info("[%s] data reaches %s, target is %s; nothing to do", self.provider, oldest, target_date)
                return result

            floor = day_start(target_date)
            end = day_start(oldest) if oldest is not None else hour_floor(self._clock())
            result.window_start, result.window_end = floor, end
            logger.info("[%s] backfill %s -> %s", self.provider, end.isoformat(), floor.isoformat())

            self._check_deadline(deadline)
            await self.adapter.prepare()
            while end > floor:
                start = max(end - self.adapter.chunk, floor)
                try:
                    empty = await self._backfill_chunk(result, start, end, deadline)
                except (RateLimitedError, _DeadlineExceeded):
                    raise
                except UpstreamError as exc:
                    await self._s.rollback()
                    logger.error("[%s] chunk %s skipped: %s", self.provider, start.date(), exc.detail)
                    result.errors.append(f"{start.date()}: {exc}")
                    empty_streak = 0
                except Exception as exc:
                    await self._s.rollback()
                    logger.exception("[%s] chunk %s failed", self.provider, start.date())
                    result.errors.append(f"{start.date()}: {exc!r}")
                    empty_streak = 0
                else:
                    if empty:
                        empty_streak += 1
                        if empty_streak >= stop_on_empty:
                            logger.info("[%s] %d consecutive empty chunks, marking backfill complete",
                                        self.provider, empty_streak)
                            await self._state.mark_backfill_complete(self.provider)
                            await self._s.commit()
                            result.complete = True
                            break
                    else:
                        empty_streak = 0

                end = start
                if end > floor and self._cfg.backfill_chunk_delay_s:
                    await self._sleep(self._cfg.backfill_chunk_delay_s)
        except RateLimitedError as exc:
            await self._s.rollback()
            logger.warning("[%s] rate limited during backfill, resuming next run: %s", self.provider, exc.detail)
            result.rate_limited = True
            result.errors.append(str(exc))
        except _DeadlineExceeded:
            await self._s.rollback()
            logger.warning("[%s] backfill stopped at deadline", self.provider)
            result.deadline_exceeded = True
        except Exception as exc:
            await self._s.rollback()
            logger.exception("[%s] backfill failed", self.provider)
            result.errors.append(f"Backfill error: {exc!r}")

        return result

    async def reset_backfill_complete(self) -> None:
        await self._state.reset_backfill_complete(self.provider)
        await self._s.commit()
        logger.info("[%s] backfill-complete flag reset", self.provider)


# --- entry points for jobs and scripts ---

async def _with_engine(
    provider: str,
    session: AsyncSession,
    client: Optional[httpx.AsyncClient],
    cfg: Optional[Settings],
    run: Callable[[SyncEngine], Awaitable[Any]],
) -> Any:
    cfg = cfg or settings
    own_client = client is None
    client = client or create_http_client(cfg)
    try:
        engine = SyncEngine(create_adapter(provider, session, client, cfg), session, cfg)
        return await run(engine)
    finally:
        if own_client:
            await client.aclose()


async def run_forward_sync(
    session: AsyncSession,
    provider: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
    cfg: Optional[Settings] = None,
    deadline: Optional[datetime] = None,
) -> SyncResult:
    return await _with_engine(
        provider, session, client, cfg, lambda engine: engine.sync_forward(deadline=deadline),
    )


async def run_backfill(
    session: AsyncSession,
    provider: str,
    target_date: Optional[date] = None,
    *,
    client: Optional[httpx.AsyncClient] = None,
    cfg: Optional[Settings] = None,
    deadline: Optional[datetime] = None,
) -> BackfillResult:
    target = target_date or (cfg or settings).backfill_target_date
    return await _with_engine(
        provider, session, client, cfg, lambda engine: engine.backfill(target, deadline=deadline),
    )


async def reset_backfill(session: AsyncSession, provider: str) -> None:
    await SyncStateStore(session).reset_backfill_complete(provider)
    await session.commit()
