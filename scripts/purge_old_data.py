#!/usr/bin/env python3
"""
Purge provider records and price observations past their retention window.

Runs the same retention rules as the daily cleanup sweep, on demand.
Pass --yes to skip the confirmation prompt.
"""

import asyncio
import sys
from datetime import datetime, timedelta

from sqlalchemy import func, select

from pricewatch.config import settings
from pricewatch.db.models import PriceObservation, ProviderRecord
from pricewatch.db.session import AsyncSessionLocal
from pricewatch.ingest.observation_store import observation_store


async def purge_old_data(interactive: bool = True):
    """Delete rows older than the configured retention."""
    now = datetime.utcnow()
    record_cutoff = now - timedelta(hours=settings.provider_data_retention_hours)
    observation_cutoff = now - timedelta(days=settings.price_history_retention_days)

    async with AsyncSessionLocal() as db:
        result = await db.execute(
            select(func.count(ProviderRecord.id)).where(ProviderRecord.captured_at < record_cutoff)
        )
        record_count = result.scalar()

        result = await db.execute(
            select(func.count(PriceObservation.id)).where(
                PriceObservation.captured_at < observation_cutoff
            )
        )
        observation_count = result.scalar()

        print("Rows past retention:")
        print(f"  - Provider records (before {record_cutoff:%Y-%m-%d %H:%M}): {record_count}")
        print(f"  - Price observations (before {observation_cutoff:%Y-%m-%d}): {observation_count}")

        if record_count == 0 and observation_count == 0:
            print("\nNothing to purge.")
            return

        if interactive:
            confirm = input("\nDelete these rows? (yes/no): ")
            if confirm.lower() != "yes":
                print("Purge cancelled.")
                return

        purged_records = await observation_store.purge_older_than(db, record_cutoff)
        purged_observations = await observation_store.purge_observations_older_than(
            db, observation_cutoff
        )

        print("\n[OK] Purge complete!")
        print(f"  - Provider records deleted: {purged_records}")
        print(f"  - Price observations deleted: {purged_observations}")


if __name__ == "__main__":
    asyncio.run(purge_old_data(interactive="--yes" not in sys.argv))
