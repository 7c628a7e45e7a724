#!/usr/bin/env python3
"""
Diagnose per-watch evaluation locks and provide recovery recommendations.

Pass --clear-stale to force-unlock locks held on watches that are no longer
monitored.
"""

import asyncio
import sys

from sqlalchemy import select

from pricewatch.db.models import Watch, WatchStatus
from pricewatch.db.session import AsyncSessionLocal
from pricewatch.worker.watch_lock import LOCK_KEY_PREFIX, WatchLockManager


async def diagnose(clear_stale: bool = False) -> None:
    lock_manager = WatchLockManager()
    try:
        locked_ids = await lock_manager.list_locked()

        print("Watch Lock Diagnosis")
        print("====================")
        print(f"LOCK_KEY_PREFIX: {LOCK_KEY_PREFIX}")
        print(f"Locked watches: {len(locked_ids)}")
        print("")

        async with AsyncSessionLocal() as db:
            result = await db.execute(select(Watch).where(Watch.id.in_(locked_ids)))
            watches = {watch.id: watch for watch in result.scalars().all()}

        stale = []
        no_ttl = []
        for watch_id in locked_ids:
            info = await lock_manager.get_lock_info(watch_id)
            watch = watches.get(watch_id)
            status = watch.status if watch else "missing"
            ttl = info.get("ttl_seconds") if info else None
            print(f"  - watch={watch_id} status={status} ttl_seconds={ttl}")
            if info and ttl is None:
                no_ttl.append(watch_id)
            if watch is None or watch.status not in WatchStatus.MONITORED:
                stale.append(watch_id)

        print("")
        print("Recommendations")
        print("----------------")
        if stale and clear_stale:
            for watch_id in stale:
                await lock_manager.force_unlock(watch_id)
            print(f"- Cleared {len(stale)} locks on watches that are no longer monitored.")
        elif stale:
            print(
                f"- {len(stale)} locks are held on watches that are no longer monitored. "
                "Re-run with --clear-stale to remove them."
            )
        if no_ttl:
            print("- Some locks have no TTL and will never expire. Force-unlock them.")
        if not locked_ids:
            print("- No issues detected.")
    finally:
        await lock_manager.close()


if __name__ == "__main__":
    asyncio.run(diagnose(clear_stale="--clear-stale" in sys.argv))
