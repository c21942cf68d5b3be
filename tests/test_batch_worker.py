"""Tests for provider batch execution."""

import pytest
from sqlalchemy import select

from conftest import count_rows, ok_result, reload, status_result, stockx_result, stockx_variant
from marketsync.db.models import (
    JobStatus,
    MarketJob,
    MasterMarketRecord,
    ProviderBatchMetric,
    RawSnapshot,
)
from marketsync.ingest import job_queue
from marketsync.ingest.budget import budget_ledger, hour_window
from marketsync.ingest.snapshot_store import payload_of
from marketsync.worker.batch_worker import COMPLETED, DEFERRED, FAILED, BatchWorker


@pytest.fixture
def worker(session_factory, registry):
    return BatchWorker(session_factory=session_factory, registry=registry, call_delay_seconds=0, max_retries=3)


async def _claim(session, *subjects):
    for subject in subjects:
        await job_queue.enqueue(session, "stockx", subject)
    await session.commit()
    jobs = await job_queue.claim_pending(session, "stockx", len(subjects))
    await session.commit()
    return jobs


async def _budget_used(session) -> int:
    budget = await budget_ledger.get_budget(session, "stockx", hour_window())
    return budget.used if budget else 0


class TestBatchWorker:

    @pytest.mark.asyncio
    async def test_successful_batch(self, db_session, worker, stockx_client):
        jobs = await _claim(db_session, "a", "b", "c")

        result = await worker.execute_batch("stockx", jobs, run_id="run-1")

        assert result.succeeded == 3
        assert result.failed == 0
        assert [outcome.status for outcome in result.outcomes] == [COMPLETED] * 3
        assert stockx_client.calls == ["a", "b", "c"]

        for job in jobs:
            assert (await reload(db_session, MarketJob, job.id)).status == JobStatus.COMPLETED
        assert await count_rows(db_session, MasterMarketRecord) == 3
        # Market data and variants listing per job
        assert await count_rows(db_session, RawSnapshot) == 6
        assert await _budget_used(db_session) == 3

        record = (await db_session.execute(select(MasterMarketRecord).where(MasterMarketRecord.subject == "a"))).scalar_one()
        snapshot = await db_session.get(RawSnapshot, record.raw_snapshot_id)
        assert snapshot.job_id == jobs[0].id
        assert snapshot.http_status == 200

        metric = (await db_session.execute(select(ProviderBatchMetric))).scalar_one()
        assert metric.run_id == "run-1"
        assert metric.succeeded == 3
        assert metric.batch_size == 3

    @pytest.mark.asyncio
    async def test_rate_limit_defers_rest_of_batch(self, db_session, worker, stockx_client):
        stockx_client.script("b", status_result(429))
        jobs = await _claim(db_session, "a", "b", "c")

        result = await worker.execute_batch("stockx", jobs)

        assert result.succeeded == 1
        assert result.deferred == 2
        assert result.attempted == 1
        assert stockx_client.calls == ["a", "b"]

        a, b, c = [await reload(db_session, MarketJob, job.id) for job in jobs]
        assert a.status == JobStatus.COMPLETED
        for job in (b, c):
            assert job.status == JobStatus.PENDING
            assert job.retry_count == 0
            assert job.started_at is None

        # The 429 response is kept; only the successful call used budget
        assert await count_rows(db_session, RawSnapshot) == 3
        assert await _budget_used(db_session) == 1

    @pytest.mark.asyncio
    async def test_not_found_is_permanent(self, db_session, worker, stockx_client):
        stockx_client.script("gone", status_result(404))
        [job] = await _claim(db_session, "gone")

        result = await worker.execute_batch("stockx", [job])

        assert result.outcomes[0].status == FAILED
        job = await reload(db_session, MarketJob, job.id)
        assert job.status == JobStatus.FAILED
        assert job.retryable is False
        assert job.error_message == "not found"
        assert await _budget_used(db_session) == 0
        assert await job_queue.requeue_retryable(db_session, max_retries=3) == 0

    @pytest.mark.asyncio
    async def test_transient_errors_retry_until_ceiling(self, db_session, worker, stockx_client):
        stockx_client.script("flaky", status_result(503))
        [job] = await _claim(db_session, "flaky")

        for attempt in range(1, 4):
            result = await worker.execute_batch("stockx", [job])
            assert result.failed == 1
            stored = await reload(db_session, MarketJob, job.id)
            assert stored.retry_count == attempt
            assert stored.retryable is (attempt < 3)

            requeued = await job_queue.requeue_retryable(db_session, max_retries=3)
            await db_session.commit()
            assert requeued == (1 if attempt < 3 else 0)
            if requeued:
                [job] = await job_queue.claim_pending(db_session, "stockx", 1)
                await db_session.commit()

        assert stockx_client.calls == ["flaky"] * 3
        assert "attempt 3/3" in result.outcomes[0].message

    @pytest.mark.asyncio
    async def test_normalization_failure_keeps_snapshot(self, db_session, worker, stockx_client):
        stockx_client.script("weird", ok_result("not a list"))
        [job] = await _claim(db_session, "weird")

        result = await worker.execute_batch("stockx", [job])

        assert result.failed == 1
        job = await reload(db_session, MarketJob, job.id)
        assert job.status == JobStatus.FAILED
        assert job.retryable is False
        assert job.error_message.startswith("normalization failed")

        snapshot = (await db_session.execute(select(RawSnapshot))).scalar_one()
        assert payload_of(snapshot) == "not a list"
        assert await count_rows(db_session, MasterMarketRecord) == 0
        # The call itself succeeded and counts against the budget
        assert await _budget_used(db_session) == 1

    @pytest.mark.asyncio
    async def test_malformed_tier_block_is_not_refetched(self, db_session, worker, stockx_client):
        variant = stockx_variant("v-10", "10")
        variant["standardMarketData"] = [{"lowestAsk": "210"}]
        stockx_client.script("odd", ok_result([variant]))
        [job] = await _claim(db_session, "odd")

        result = await worker.execute_batch("stockx", [job])

        assert result.failed == 1
        job = await reload(db_session, MarketJob, job.id)
        assert job.retryable is False
        assert job.retry_count == 0
        assert "standardMarketData" in job.error_message
        assert stockx_client.calls == ["odd"]

    @pytest.mark.asyncio
    async def test_normalizer_crash_fails_without_retry(self, db_session, worker, registry, monkeypatch):
        def crash(payloads, context):
            raise KeyError("lowestAskAmount")

        monkeypatch.setattr(registry.get_normalizer("stockx"), "normalize", crash)
        [job] = await _claim(db_session, "a")

        result = await worker.execute_batch("stockx", [job])

        assert result.failed == 1
        job = await reload(db_session, MarketJob, job.id)
        assert job.status == JobStatus.FAILED
        assert job.retryable is False
        assert job.error_message.startswith("normalization failed: KeyError")

    @pytest.mark.asyncio
    async def test_sizes_come_from_variants_listing(self, db_session, worker, stockx_client):
        market = [stockx_variant(f"v-{size}", None) for size in ("9", "10", "11")]
        listing = [{"variantId": f"v-{size}", "variantValue": size} for size in ("9", "10", "11")]
        stockx_client.script("SKU-1", stockx_result(market, listing))
        await job_queue.enqueue(db_session, "stockx", "SKU-1", "10", job_queue.PRIORITY_HOT)
        await db_session.commit()
        [job] = await job_queue.claim_pending(db_session, "stockx", 1)
        await db_session.commit()

        result = await worker.execute_batch("stockx", [job])

        assert result.succeeded == 1
        assert result.outcomes[0].records_written == 1
        record = (await db_session.execute(select(MasterMarketRecord))).scalar_one()
        assert record.size_key == "10"
        assert record.provider_variant_id == "v-10"

    @pytest.mark.asyncio
    async def test_sizeless_variants_keep_separate_rows(self, db_session, worker, stockx_client):
        market = [stockx_variant(f"v-{n}", None) for n in range(3)]
        stockx_client.script("SKU-2", ok_result(market))
        [job] = await _claim(db_session, "SKU-2")

        result = await worker.execute_batch("stockx", [job])

        assert result.outcomes[0].records_written == 3
        rows = (await db_session.execute(select(MasterMarketRecord))).scalars().all()
        assert sorted(row.size_key for row in rows) == ["v-0", "v-1", "v-2"]

    @pytest.mark.asyncio
    async def test_unresolvable_size_fails_job(self, db_session, worker, stockx_client):
        stockx_client.script("SKU-3", ok_result([stockx_variant("v-a", None), stockx_variant("v-b", None)]))
        await job_queue.enqueue(db_session, "stockx", "SKU-3", "10")
        await db_session.commit()
        [job] = await job_queue.claim_pending(db_session, "stockx", 1)
        await db_session.commit()

        result = await worker.execute_batch("stockx", [job])

        assert result.failed == 1
        job = await reload(db_session, MarketJob, job.id)
        assert job.status == JobStatus.FAILED
        assert "Cannot resolve size 10" in job.error_message
        assert await count_rows(db_session, MasterMarketRecord) == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_is_retryable(self, db_session, worker, stockx_client):
        stockx_client.script("boom", RuntimeError("connection pool exploded"))
        jobs = await _claim(db_session, "boom", "fine")

        result = await worker.execute_batch("stockx", jobs)

        assert [outcome.status for outcome in result.outcomes] == [FAILED, COMPLETED]
        job = await reload(db_session, MarketJob, jobs[0].id)
        assert job.status == JobStatus.FAILED
        assert job.retryable is True
        assert job.retry_count == 1
        assert "RuntimeError" in job.error_message

    @pytest.mark.asyncio
    async def test_duplicate_observation_still_completes(self, db_session, worker):
        # Two jobs for the same subject in the same minute write one set of rows
        await job_queue.enqueue(db_session, "stockx", "a")
        await db_session.commit()
        [first] = await job_queue.claim_pending(db_session, "stockx", 1)
        await db_session.commit()
        await worker.execute_batch("stockx", [first])

        [second] = await _claim(db_session, "a")
        result = await worker.execute_batch("stockx", [second])

        assert result.succeeded == 1
        assert result.outcomes[0].records_written in (0, 1)
        assert (await reload(db_session, MarketJob, second.id)).status == JobStatus.COMPLETED
