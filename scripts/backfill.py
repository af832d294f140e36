"""
Run forward sync or backfill for one or all providers, outside the scheduler.

Usage:
    python scripts/backfill.py                       # backfill every provider
    python scripts/backfill.py --provider cursor --target 2025-01-01
    python scripts/backfill.py --provider github --forward
    python scripts/backfill.py --provider anthropic --reset
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import date
from pathlib import Path

# Add repo root to sys.path so the package imports without installation
_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from abacus.config import settings  # noqa: E402
from abacus.core.domain.schemas import ProviderId  # noqa: E402
from abacus.infra.db.session import engine, init_db, session_scope  # noqa: E402
from abacus.infra.logging_config import configure_logging  # noqa: E402
from abacus.usecases.sync_engine import reset_backfill, run_backfill, run_forward_sync  # noqa: E402

log = logging.getLogger("backfill")


async def _run(args: argparse.Namespace) -> int:
    await init_db()
    providers = [args.provider] if args.provider else [p.value for p in ProviderId]
    failed = 0
    for provider in providers:
        async with session_scope() as session:
            if args.reset:
                await reset_backfill(session, provider)
                log.info("%s: backfill flag reset", provider)
            if args.forward:
                result = await run_forward_sync(session, provider)
            else:
                result = await run_backfill(session, provider, args.target)
        log.info("%s: %s", provider, result.model_dump_json(exclude={"finished_at"}))
        if not result.success:
            failed += 1
    await engine.dispose()
    return 1 if failed else 0


def main() -> None:
    p = argparse.ArgumentParser(description="Sync AI usage and commit data")
    p.add_argument("--provider", choices=[x.value for x in ProviderId])
    p.add_argument("--target", type=date.fromisoformat, default=settings.backfill_target_date)
    p.add_argument("--forward", action="store_true", help="Forward sync instead of backfill")
    p.add_argument("--reset", action="store_true", help="Clear the backfill-complete flag first")
    args = p.parse_args()

    configure_logging(settings.log_level_int)
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
