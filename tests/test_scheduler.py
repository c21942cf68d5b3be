"""Tests for the scheduler tick."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from conftest import FakeProviderClient, fake_spec
from marketsync.db.models import JobStatus, MarketJob, MarketJobRun, ProviderBatchMetric, utcnow
from marketsync.ingest import job_queue
from marketsync.ingest.budget import budget_ledger, hour_window
from marketsync.ingest.providers.base import ProviderContext
from marketsync.ingest.registry import ProviderRegistry, ProviderSpec
from marketsync.market.latest_view import LatestPriceView
from marketsync.normalize.stockx import StockXNormalizer
from marketsync.worker.batch_worker import BatchWorker
from marketsync.worker.scheduler import setup_scheduler
from marketsync.worker.tasks import MarketScheduler, TaskRunner


def _scheduler(session_factory, registry, max_batch_size=20) -> MarketScheduler:
    worker = BatchWorker(session_factory=session_factory, registry=registry, call_delay_seconds=0)
    return MarketScheduler(
        session_factory=session_factory,
        registry=registry,
        worker=worker,
        max_batch_size=max_batch_size,
    )


async def _enqueue_many(session, provider, count, prefix="sku"):
    await job_queue.enqueue_many(session, provider, [f"{prefix}-{i}" for i in range(count)])
    await session.commit()


class TestMarketScheduler:

    @pytest.mark.asyncio
    async def test_budget_exhaustion_across_ticks(self, session_factory, db_session):
        client = FakeProviderClient("stockx")
        registry = ProviderRegistry([fake_spec("stockx", client, rate_limit=5)])
        scheduler = _scheduler(session_factory, registry)
        await _enqueue_many(db_session, "stockx", 8)

        first = await scheduler.run_tick()
        assert first.selected == 5
        assert first.succeeded == 5
        counts = await job_queue.count_by_status(db_session, "stockx")
        assert counts[JobStatus.PENDING] == 3
        assert counts[JobStatus.COMPLETED] == 5

        # Same hour: nothing left to spend
        second = await scheduler.run_tick()
        assert second.selected == 0
        assert second.providers["stockx"]["budget_remaining"] == 0
        assert len(client.calls) == 5

        # Next hour gets a fresh budget
        third = await scheduler.run_tick(now=utcnow() + timedelta(hours=1))
        assert third.selected == 3
        assert third.succeeded == 3
        assert (await job_queue.count_by_status(db_session, "stockx"))[JobStatus.PENDING] == 0

    @pytest.mark.asyncio
    async def test_running_jobs_count_against_budget(self, session_factory, db_session):
        registry = ProviderRegistry([fake_spec("stockx", FakeProviderClient("stockx"), rate_limit=5)])
        scheduler = _scheduler(session_factory, registry)
        await _enqueue_many(db_session, "stockx", 10)
        # Claimed by another scheduler that has not finished yet
        await job_queue.claim_pending(db_session, "stockx", 2)
        await db_session.commit()

        summary = await scheduler.run_tick()

        assert summary.providers["stockx"]["in_flight"] == 2
        assert summary.selected == 3

    @pytest.mark.asyncio
    async def test_batch_size_caps_admission(self, session_factory, db_session):
        registry = ProviderRegistry([fake_spec("stockx", FakeProviderClient("stockx"), rate_limit=100)])
        scheduler = _scheduler(session_factory, registry, max_batch_size=4)
        await _enqueue_many(db_session, "stockx", 10)

        summary = await scheduler.run_tick()

        assert summary.selected == 4

    @pytest.mark.asyncio
    async def test_providers_run_independently(self, session_factory, db_session):
        stockx = FakeProviderClient("stockx")
        alias = FakeProviderClient("alias")
        registry = ProviderRegistry([fake_spec("stockx", stockx), fake_spec("alias", alias)])
        scheduler = _scheduler(session_factory, registry)
        await _enqueue_many(db_session, "stockx", 2)
        await _enqueue_many(db_session, "alias", 3)

        summary = await scheduler.run_tick()

        assert summary.selected == 5
        assert summary.succeeded == 5
        assert summary.providers["stockx"]["succeeded"] == 2
        assert summary.providers["alias"]["succeeded"] == 3
        assert len(stockx.calls) == 2
        assert len(alias.calls) == 3

        window = hour_window()
        assert (await budget_ledger.get_budget(db_session, "alias", window)).used == 3
        assert (await budget_ledger.get_budget(db_session, "stockx", window)).used == 2

    @pytest.mark.asyncio
    async def test_crashed_batch_is_isolated(self, session_factory, db_session):
        def broken_client():
            raise RuntimeError("credentials missing")

        registry = ProviderRegistry(
            [
                fake_spec("stockx", FakeProviderClient("stockx")),
                ProviderSpec(
                    name="alias",
                    client_factory=broken_client,
                    normalizer=StockXNormalizer(),
                    context_factory=lambda: ProviderContext(provider="alias"),
                    rate_limit=10,
                ),
            ]
        )
        scheduler = _scheduler(session_factory, registry)
        await _enqueue_many(db_session, "stockx", 1)
        await _enqueue_many(db_session, "alias", 2)

        summary = await scheduler.run_tick()

        assert summary.succeeded == 1
        assert "alias" in summary.errors
        # Left running for the orphan sweep
        assert await job_queue.count_running(db_session, "alias") == 2

        run = (
            await db_session.execute(select(MarketJobRun).where(MarketJobRun.run_id == summary.run_id))
        ).scalar_one()
        assert "credentials missing" in run.error_message

    @pytest.mark.asyncio
    async def test_run_is_recorded(self, session_factory, db_session, registry):
        scheduler = _scheduler(session_factory, registry)
        await _enqueue_many(db_session, "stockx", 2)

        summary = await scheduler.run_tick()

        run = (
            await db_session.execute(select(MarketJobRun).where(MarketJobRun.run_id == summary.run_id))
        ).scalar_one()
        assert run.completed_at is not None
        assert run.jobs_selected == 2
        assert run.jobs_succeeded == 2
        assert run.jobs_failed == 0
        assert run.provider_breakdown["stockx"]["selected"] == 2
        assert run.error_message is None

        metric = (
            await db_session.execute(
                select(ProviderBatchMetric).where(ProviderBatchMetric.run_id == summary.run_id)
            )
        ).scalar_one()
        assert metric.succeeded == 2

        payload = summary.to_dict()
        assert payload["run_id"] == summary.run_id
        assert payload["selected"] == 2

    @pytest.mark.asyncio
    async def test_tick_reclaims_orphans_first(self, session_factory, db_session, registry):
        scheduler = _scheduler(session_factory, registry)
        await _enqueue_many(db_session, "stockx", 1)
        [job] = await job_queue.claim_pending(db_session, "stockx", 1, now=utcnow() - timedelta(hours=1))
        await db_session.commit()

        summary = await scheduler.run_tick()

        assert summary.reclaimed == 1
        assert summary.succeeded == 1
        stored = await db_session.get(MarketJob, job.id, populate_existing=True)
        assert stored.status == JobStatus.COMPLETED


class TestTaskRunner:

    @pytest.mark.asyncio
    async def test_entrypoints(self, session_factory, db_session, registry, stockx_client):
        runner = TaskRunner(session_factory=session_factory, registry=registry, view=LatestPriceView(lookback_days=0))
        runner.scheduler.worker.call_delay_seconds = 0
        await _enqueue_many(db_session, "stockx", 1)

        summary = await runner.run_market_tick()
        assert summary.succeeded == 1

        assert await runner.refresh_latest_view() == 1

        sweep = await runner.sweep_orphans()
        assert sweep.reclaimed == 0

        await runner.close()
        assert stockx_client.closed is True

    @pytest.mark.asyncio
    async def test_tick_failure_is_logged_not_raised(self, session_factory, registry, monkeypatch):
        runner = TaskRunner(session_factory=session_factory, registry=registry)

        async def explode(now=None):
            raise RuntimeError("database down")

        monkeypatch.setattr(runner.scheduler, "run_tick", explode)

        assert await runner.run_market_tick() is None


@pytest.mark.asyncio
async def test_setup_scheduler_registers_jobs(session_factory, registry):
    runner = TaskRunner(session_factory=session_factory, registry=registry)

    scheduler = setup_scheduler(runner)

    jobs = {job.id: job for job in scheduler.get_jobs()}
    assert set(jobs) == {"market_tick", "latest_view_refresh", "orphan_sweep"}
    assert jobs["market_tick"].max_instances == 1
    assert scheduler.running is False
