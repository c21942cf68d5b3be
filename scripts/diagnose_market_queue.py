#!/usr/bin/env python3
"""
Diagnose market job queue state: counts, stale running jobs and budgets.
"""

import asyncio
from datetime import timedelta
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from marketsync.config import settings
from marketsync.db.models import JobStatus, MarketJob, utcnow
from marketsync.db.session import AsyncSessionLocal, engine
from marketsync.ingest import job_queue
from marketsync.ingest.budget import budget_ledger, hour_window


async def diagnose() -> None:
    now = utcnow()
    stale_cutoff = now - timedelta(minutes=settings.orphan_timeout_minutes)

    async with AsyncSessionLocal() as db:
        counts = await job_queue.count_by_status(db)

        print("Market Queue Diagnosis")
        print("======================")
        for status in JobStatus.ALL:
            print(f"{status:>10}: {counts[status]}")
        print("")

        result = await db.execute(
            select(MarketJob)
            .where(MarketJob.status == JobStatus.RUNNING)
            .order_by(MarketJob.started_at.asc())
            .limit(25)
        )
        running = result.scalars().all()
        stale = [job for job in running if job.started_at and job.started_at < stale_cutoff]
        print(f"Running jobs: {len(running)} shown, {len(stale)} older than {settings.orphan_timeout_minutes}m")
        for job in stale:
            age = (now - job.started_at).total_seconds() / 60
            print(f"  #{job.id} {job.provider}:{job.subject}/{job.variant or '*'} running {age:.0f}m")
        print("")

        window = hour_window(now)
        budgets = await budget_ledger.list_budgets(db, window=window)
        print(f"Budgets for {window.isoformat()}Z")
        if not budgets:
            print("  none yet (created on the next tick)")
        for budget in budgets:
            print(f"  {budget.provider}: {budget.used}/{budget.rate_limit} used, {budget.remaining} left")

    print("")
    if stale:
        print("Recommendation: stale jobs are reclaimed by the orphan sweep; run a tick or wait for the sweep.")
    else:
        print("Recommendation: no action required.")


async def main() -> None:
    try:
        await diagnose()
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
