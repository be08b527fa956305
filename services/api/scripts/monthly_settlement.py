#!/usr/bin/env python3
"""Monthly settlement job for Railway Cron.

Schedule:
- Run once on the 1st of each month; it settles the previous month.

Behavior:
- Pays upgrade differences, ordinary like bonuses, content conversion and
  post-purchase verification bonuses for the month
- Safe to re-run: every payout is keyed and settled at most once
- A second concurrent run for the same month fails fast on the lock

Run (local / Railway):
  cd services/api
  python -m scripts.monthly_settlement

Optional env vars:
  SETTLE_MONTH="2026-09"   (default: previous calendar month, UTC)
  SETTLE_DRY_RUN=1         (compute totals, write nothing)
"""

import asyncio
import os
import sys
from datetime import timedelta

# Ensure imports work when executed as a script/module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from repair_engine.services.engine_config import load_config_snapshot  # noqa: E402
from repair_engine.services.settlement import settle_month  # noqa: E402
from repair_engine.services.timeutil import month_key, utcnow  # noqa: E402
from repair_engine.stores.postgres import close_db, get_session, init_db, ping_db  # noqa: E402
from repair_engine.stores.redis import close_redis, init_redis  # noqa: E402


def _previous_month() -> str:
    first_of_this_month = utcnow().replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return month_key(first_of_this_month - timedelta(days=1))


async def main() -> None:
    await init_db()
    await ping_db()
    try:
        await init_redis()
    except Exception as e:
        # Single cron container: the in-process lock is enough.
        print(f"redis unavailable, using in-process locks: {e}")

    try:
        month = os.getenv("SETTLE_MONTH", "").strip() or _previous_month()
        dry_run = os.getenv("SETTLE_DRY_RUN", "").strip().lower() in ("1", "true", "yes")

        async with get_session() as session:
            snapshot = await load_config_snapshot(session)
        result = await settle_month(month, snapshot, dry_run=dry_run)

        print(
            {
                "ok": result.status == "completed",
                "run_id": result.run_id,
                "month": result.month,
                "dry_run": result.dry_run,
                "status": result.status,
                "summary": result.summary(),
                "errors": result.errors[:20],
                "config_version": snapshot.version,
            }
        )
    finally:
        await close_redis()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
