"""Scheduler tick and the background task entrypoints."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketsync import metrics
from marketsync.config import settings
from marketsync.db.models import MarketJob, MarketJobRun, utcnow
from marketsync.db.session import AsyncSessionLocal
from marketsync.ingest import job_queue
from marketsync.ingest.budget import BudgetLedger, budget_ledger, hour_window
from marketsync.ingest.registry import ProviderRegistry, provider_registry
from marketsync.logging_config import get_logger
from marketsync.market.latest_view import LatestPriceView, latest_price_view
from marketsync.worker.batch_worker import BatchResult, BatchWorker
from marketsync.worker.orphan_sweep import sweep_orphans

logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    """Result of one scheduler tick."""

    run_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: int = 0
    reclaimed: int = 0
    requeued: int = 0
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    deferred: int = 0
    providers: dict[str, dict] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)

    def add_batch(self, batch: BatchResult) -> None:
        self.succeeded += batch.succeeded
        self.failed += batch.failed
        self.deferred += batch.deferred
        self.providers.setdefault(batch.provider, {}).update(batch.to_dict())

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
            "reclaimed": self.reclaimed,
            "requeued": self.requeued,
            "selected": self.selected,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "deferred": self.deferred,
            "providers": self.providers,
            "errors": self.errors,
        }


class MarketScheduler:
    """
    Stateless scheduler tick; safe to run from cron or APScheduler.

    Each tick:
    1. Reclaims orphaned jobs and re-enqueues retryable failures
    2. Ensures a budget row for the current hour for every provider
    3. Admits min(remaining budget, max batch size) jobs per provider,
       where remaining also discounts jobs still running
    4. Claims them atomically and runs provider batches concurrently
    5. Records a market_job_runs summary
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        registry: Optional[ProviderRegistry] = None,
        ledger: Optional[BudgetLedger] = None,
        worker: Optional[BatchWorker] = None,
        max_batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry or provider_registry
        self.ledger = ledger or budget_ledger
        self.worker = worker or BatchWorker(session_factory=session_factory, registry=self.registry)
        self.max_batch_size = settings.max_batch_size if max_batch_size is None else max_batch_size

    async def run_tick(self, now: Optional[datetime] = None) -> TickSummary:
        """Run one scheduling pass and return its summary."""
        run_id = uuid4().hex
        log = get_logger(__name__, run_id=run_id)
        summary = TickSummary(run_id=run_id, started_at=utcnow())
        started = time.monotonic()

        async with self.session_factory() as session:
            session.add(MarketJobRun(run_id=run_id, started_at=summary.started_at))
            await session.commit()

        sweep = await sweep_orphans(self.session_factory, now=now)
        summary.reclaimed = sweep.reclaimed
        summary.requeued = sweep.requeued

        batches = await self._admit(now, summary)
        summary.selected = sum(len(jobs) for jobs in batches.values())

        if batches:
            providers = list(batches)
            results = await asyncio.gather(
                *(self.worker.execute_batch(p, batches[p], run_id=run_id) for p in providers),
                return_exceptions=True,
            )
            for provider, result in zip(providers, results):
                if isinstance(result, BaseException):
                    # Jobs stay running; the orphan sweep returns them to pending
                    log.error(f"{provider} batch crashed: {result}", exc_info=result)
                    summary.errors[provider] = f"{type(result).__name__}: {result}"
                else:
                    summary.add_batch(result)

        summary.completed_at = utcnow()
        summary.duration_ms = int((time.monotonic() - started) * 1000)
        await self._finish_run(summary)

        metrics.record_scheduler_run("market_tick", success=not summary.errors)
        log.info(
            f"Tick {run_id[:8]}: selected={summary.selected} ok={summary.succeeded} "
            f"failed={summary.failed} deferred={summary.deferred} reclaimed={summary.reclaimed}"
        )
        return summary

    async def _admit(self, now: Optional[datetime], summary: TickSummary) -> dict[str, list[MarketJob]]:
        """Ensure budgets and claim each provider's batch."""
        window = hour_window(now)
        batches: dict[str, list[MarketJob]] = {}

        async with self.session_factory() as session:
            for provider in self.registry.list_providers():
                await self.ledger.ensure_budget(session, provider, window, self.registry.rate_limit(provider))
            await session.commit()

            for provider in self.registry.list_providers():
                budget = await self.ledger.get_budget(session, provider, window)
                in_flight = await job_queue.count_running(session, provider)
                remaining = max(budget.rate_limit - budget.used - in_flight, 0) if budget else 0
                take = min(remaining, self.max_batch_size)
                summary.providers[provider] = {
                    "budget_remaining": remaining,
                    "in_flight": in_flight,
                    "selected": 0,
                }
                metrics.update_budget(provider, budget.used if budget else 0, remaining)

                if take <= 0:
                    logger.info(f"{provider}: budget exhausted for window {window.isoformat()}")
                    continue

                jobs = await job_queue.claim_pending(session, provider, take, now=now)
                await session.commit()
                summary.providers[provider]["selected"] = len(jobs)
                if jobs:
                    batches[provider] = jobs

        return batches

    async def _finish_run(self, summary: TickSummary) -> None:
        async with self.session_factory() as session:
            run = (
                await session.execute(select(MarketJobRun).where(MarketJobRun.run_id == summary.run_id))
            ).scalar_one()
            run.completed_at = summary.completed_at
            run.duration_ms = summary.duration_ms
            run.jobs_reclaimed = summary.reclaimed
            run.jobs_selected = summary.selected
            run.jobs_succeeded = summary.succeeded
            run.jobs_failed = summary.failed
            run.jobs_deferred = summary.deferred
            run.provider_breakdown = summary.providers
            run.error_message = "; ".join(f"{p}: {e}" for p, e in summary.errors.items()) or None
            await session.commit()


class TaskRunner:
    """Entrypoints wired into APScheduler; each logs and records its own metrics."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        registry: Optional[ProviderRegistry] = None,
        view: Optional[LatestPriceView] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry or provider_registry
        self.view = view or latest_price_view
        self.scheduler = MarketScheduler(session_factory=session_factory, registry=self.registry)

    async def close(self):
        """Clean up provider HTTP clients."""
        await self.registry.close()

    async def run_market_tick(self) -> Optional[TickSummary]:
        try:
            return await self.scheduler.run_tick()
        except Exception:
            logger.exception("Market scheduler tick failed")
            metrics.record_scheduler_run("market_tick", success=False)
            return None

    async def refresh_latest_view(self) -> Optional[int]:
        try:
            async with self.session_factory() as session:
                count = await self.view.refresh(session)
            metrics.record_scheduler_run("latest_view_refresh", success=True)
            return count
        except Exception:
            logger.exception("Latest-price view refresh failed")
            metrics.record_scheduler_run("latest_view_refresh", success=False)
            return None

    async def sweep_orphans(self):
        try:
            result = await sweep_orphans(self.session_factory)
            metrics.record_scheduler_run("orphan_sweep", success=True)
            return result
        except Exception:
            logger.exception("Orphan sweep failed")
            metrics.record_scheduler_run("orphan_sweep", success=False)
            return None


task_runner = TaskRunner()
