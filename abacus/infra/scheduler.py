"""APScheduler wrapper for sync jobs.

Jobs:
- Forward sync per provider (every forward_sync_interval_minutes)
- Backfill per provider (daily, backfill_cron_hour UTC)
- GitHub member email sync (daily, member_sync_cron_hour UTC)
"""

from __future__ import annotations

import logging
from datetime import timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from abacus.config import settings
from abacus.core.domain.schemas import ProviderId
from abacus.infra.providers.factory import shared_http_client

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None

_FORWARD_JOB_ID = "abacus_forward_sync_{}"
_BACKFILL_JOB_ID = "abacus_backfill_{}"
_MEMBER_JOB_ID = "abacus_member_email_sync"


async def _forward_sync_job(provider: str) -> None:
    from abacus.infra.db.session import session_scope
    from abacus.usecases.sync_engine import run_forward_sync

    try:
        async with session_scope() as session:
            result = await run_forward_sync(session, provider, client=shared_http_client())
            logger.info(
                "Scheduled forward sync [%s]: %d imported, %d errors",
                provider, result.imported, len(result.errors),
            )
    except Exception:
        logger.exception("Scheduled forward sync [%s] failed", provider)


async def _backfill_job(provider: str) -> None:
    from abacus.infra.db.session import session_scope
    from abacus.usecases.sync_engine import run_backfill

    try:
        async with session_scope() as session:
            result = await run_backfill(session, provider, client=shared_http_client())
            logger.info(
                "Scheduled backfill [%s]: %d imported, reached %s, complete=%s",
                provider, result.imported, result.last_processed_date, result.complete,
            )
    except Exception:
        logger.exception("Scheduled backfill [%s] failed", provider)


async def _member_sync_job() -> None:
    from abacus.infra.db.session import session_scope
    from abacus.usecases.identity_sync import sync_member_emails

    try:
        async with session_scope() as session:
            result = await sync_member_emails(session, client=shared_http_client())
            logger.info("Member email sync result: %s", result.model_dump())
    except Exception:
        logger.exception("Member email sync job failed")


def start_scheduler() -> None:
    global _scheduler
    if not settings.scheduler_enabled:
        logger.info("Scheduler disabled")
        return
    if _scheduler is not None:
        return

    _scheduler = AsyncIOScheduler(timezone=timezone.utc)

    for provider in ProviderId:
        _scheduler.add_job(
            _forward_sync_job,
            trigger=IntervalTrigger(minutes=settings.forward_sync_interval_minutes),
            args=[provider.value],
            id=_FORWARD_JOB_ID.format(provider.value),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        _scheduler.add_job(
            _backfill_job,
            trigger=CronTrigger(hour=settings.backfill_cron_hour, minute=0, timezone=timezone.utc),
            args=[provider.value],
            id=_BACKFILL_JOB_ID.format(provider.value),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
    logger.info(
        "Sync jobs scheduled: forward every %d min, backfill daily at %02d:00 UTC",
        settings.forward_sync_interval_minutes,
        settings.backfill_cron_hour,
    )

    _scheduler.add_job(
        _member_sync_job,
        trigger=CronTrigger(hour=settings.member_sync_cron_hour, minute=0, timezone=timezone.utc),
        id=_MEMBER_JOB_ID,
        replace_existing=True,
        max_instances=1,
    )
    logger.info("Member email sync scheduled (daily at %02d:00 UTC)", settings.member_sync_cron_hour)

    _scheduler.start()


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Scheduler stopped")
