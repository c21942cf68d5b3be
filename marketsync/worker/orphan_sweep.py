"""Recover jobs left running by a crashed worker and retry transient failures."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketsync.config import settings
from marketsync.db.session import AsyncSessionLocal
from marketsync.ingest import job_queue

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    reclaimed: int = 0
    requeued: int = 0


async def sweep_orphans(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    timeout_minutes: Optional[int] = None,
    max_retries: Optional[int] = None,
    now: Optional[datetime] = None,
) -> SweepResult:
    """
    Reclaim orphaned running jobs, then re-enqueue retryable failures.

    Logic:
    1. Jobs running longer than the orphan timeout go back to pending
       with their priority and retry count untouched
    2. Failed jobs flagged retryable and below the retry ceiling go back
       to pending, unless their key already has an active job

    Args:
        session_factory: Session factory (tests pass their own)
        timeout_minutes: Orphan threshold, defaults to settings.orphan_timeout_minutes
        max_retries: Retry ceiling, defaults to settings.max_job_retries
        now: Reference time

    Returns:
        SweepResult with counts for both steps
    """
    timeout = timedelta(
        minutes=settings.orphan_timeout_minutes if timeout_minutes is None else timeout_minutes
    )
    ceiling = settings.max_job_retries if max_retries is None else max_retries
    result = SweepResult()

    async with session_factory() as session:
        result.reclaimed = await job_queue.reclaim_orphans(session, timeout, now=now)
        await session.commit()

    async with session_factory() as session:
        try:
            result.requeued = await job_queue.requeue_retryable(session, ceiling)
            await session.commit()
        except IntegrityError:
            # A concurrent enqueue took the key first; the failed job is picked up next sweep
            await session.rollback()
            logger.warning("Retry re-enqueue collided with a concurrent enqueue; skipped this sweep")

    if result.reclaimed or result.requeued:
        logger.info(f"Orphan sweep: reclaimed={result.reclaimed} requeued={result.requeued}")
    return result
