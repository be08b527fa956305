#!/usr/bin/env python3
"""Hourly housekeeping job for Railway Cron.

Behavior:
- Deliver tier-2/3 bidding notifications whose window has opened
  (shops that never pull their list still get told)
- Close biddings past their expiry
- Release staged review rewards (1m / 3m) that have come due
- Put AI tasks stuck in processing back to pending

Run (local / Railway):
  cd services/api
  python -m scripts.hourly_jobs
"""

import asyncio
import os
import sys

# Ensure imports work when executed as a script/module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from repair_engine.services.bidding_distribution import sweep_pending_notifications  # noqa: E402
from repair_engine.services.biddings import close_expired_biddings  # noqa: E402
from repair_engine.services.engine_config import load_config_snapshot  # noqa: E402
from repair_engine.services.settlement import release_due_stages  # noqa: E402
from repair_engine.services.vision_tasks import reset_stale_tasks  # noqa: E402
from repair_engine.stores.postgres import close_db, get_session, init_db, ping_db  # noqa: E402
from repair_engine.stores.redis import close_redis, init_redis  # noqa: E402


async def main() -> None:
    await init_db()
    await ping_db()
    try:
        await init_redis()
    except Exception as e:
        print(f"redis unavailable, using in-process locks: {e}")

    try:
        async with get_session() as session:
            snapshot = await load_config_snapshot(session)
            notified = await sweep_pending_notifications(session, snapshot)

        async with get_session() as session:
            closed = await close_expired_biddings(session)

        stages = await release_due_stages(snapshot)

        async with get_session() as session:
            stale = await reset_stale_tasks(session)

        print(
            {
                "ok": True,
                "config_version": snapshot.version,
                "notified": notified,
                "closed_biddings": closed,
                "stages_released": stages.count,
                "stages_amount": stages.amount,
                "stale_tasks_reset": stale,
            }
        )
    finally:
        await close_redis()
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
