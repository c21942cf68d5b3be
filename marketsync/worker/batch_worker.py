"""Executes one provider's batch of claimed jobs."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from marketsync import metrics
from marketsync.config import settings
from marketsync.db.models import MarketJob, ProviderBatchMetric, utcnow
from marketsync.db.session import AsyncSessionLocal
from marketsync.errors import NormalizationError
from marketsync.ingest import job_queue
from marketsync.ingest.budget import BudgetLedger, budget_ledger, hour_window
from marketsync.ingest.providers.base import (
    FetchOutcome,
    FetchRequest,
    FetchResult,
    ProviderClient,
    ProviderContext,
)
from marketsync.ingest.registry import ProviderRegistry, provider_registry
from marketsync.ingest.snapshot_store import SnapshotStore, snapshot_store
from marketsync.logging_config import get_logger
from marketsync.normalize.base import NormalizationContext, Normalizer
from marketsync.normalize.writer import MarketRecordWriter, market_record_writer

logger = logging.getLogger(__name__)

COMPLETED = "completed"
FAILED = "failed"
DEFERRED = "deferred"


@dataclass
class JobOutcome:
    """What happened to one job in a batch."""

    job_id: int
    status: str
    message: Optional[str] = None
    records_written: int = 0


@dataclass
class BatchResult:
    """Per-batch summary returned to the scheduler."""

    provider: str
    run_id: Optional[str] = None
    outcomes: list[JobOutcome] = field(default_factory=list)
    duration_ms: int = 0

    def _count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def succeeded(self) -> int:
        return self._count(COMPLETED)

    @property
    def failed(self) -> int:
        return self._count(FAILED)

    @property
    def deferred(self) -> int:
        return self._count(DEFERRED)

    @property
    def attempted(self) -> int:
        return self.succeeded + self.failed

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "deferred": self.deferred,
            "duration_ms": self.duration_ms,
        }


class BatchWorker:
    """
    Runs claimed jobs for a single provider, one call at a time.

    Per job: fetch, snapshot every response, reserve a budget token,
    normalize, write master rows and settle the job. A 429 defers this
    job and the rest of the batch. Each state change commits on its own;
    no transaction is held open across a provider call.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        registry: Optional[ProviderRegistry] = None,
        ledger: Optional[BudgetLedger] = None,
        snapshots: Optional[SnapshotStore] = None,
        writer: Optional[MarketRecordWriter] = None,
        call_delay_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.registry = registry or provider_registry
        self.ledger = ledger or budget_ledger
        self.snapshots = snapshots or snapshot_store
        self.writer = writer or market_record_writer
        self.call_delay_seconds = (
            settings.worker_call_delay_seconds if call_delay_seconds is None else call_delay_seconds
        )
        self.max_retries = settings.max_job_retries if max_retries is None else max_retries

    async def execute_batch(
        self,
        provider: str,
        jobs: Sequence[MarketJob],
        run_id: Optional[str] = None,
        context: Optional[ProviderContext] = None,
    ) -> BatchResult:
        """
        Execute claimed jobs in order.

        Args:
            provider: Provider every job in the batch belongs to
            jobs: Jobs already moved to running by the scheduler
            run_id: Scheduler run identifier for metrics and logs
            context: Credentials/currency/region; built from the registry if omitted

        Returns:
            BatchResult with one outcome per job
        """
        log = get_logger(__name__, provider=provider, run_id=run_id)
        started = time.monotonic()
        result = BatchResult(provider=provider, run_id=run_id)

        client = self.registry.get_client(provider)
        normalizer = self.registry.get_normalizer(provider)
        context = context or self.registry.context_for(provider)

        for index, job in enumerate(jobs):
            if index and self.call_delay_seconds:
                await asyncio.sleep(self.call_delay_seconds)

            try:
                outcome = await self._execute_job(job, client, normalizer, context)
            except Exception as e:
                log.exception(f"Job {job.id} ({job.subject}) failed unexpectedly")
                outcome = await self._fail(
                    job, f"{type(e).__name__}: {e}", retryable=True, increment_retry=True
                )

            if outcome.status == DEFERRED:
                remaining = list(jobs[index:])
                await self._defer(remaining)
                result.outcomes.extend(
                    JobOutcome(job_id=j.id, status=DEFERRED, message=outcome.message)
                    for j in remaining
                )
                log.warning(f"Rate limited by {provider}; deferred {len(remaining)} jobs")
                break

            result.outcomes.append(outcome)
            metrics.record_job_finished(provider, outcome.status)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        await self._record_batch_metric(result)
        log.info(
            f"{provider} batch done: {result.succeeded} ok, {result.failed} failed, "
            f"{result.deferred} deferred in {result.duration_ms}ms"
        )
        return result

    async def _execute_job(
        self,
        job: MarketJob,
        client: ProviderClient,
        normalizer: Normalizer,
        context: ProviderContext,
    ) -> JobOutcome:
        provider = job.provider
        requested_at = utcnow()
        started = time.monotonic()
        fetched = await client.fetch(FetchRequest(subject=job.subject, variant=job.variant), context)
        metrics.record_fetch(provider, fetched.outcome.value, time.monotonic() - started)

        snapshot_ids = await self._store_snapshots(job, fetched, requested_at)

        if fetched.outcome == FetchOutcome.RATE_LIMITED:
            return JobOutcome(job_id=job.id, status=DEFERRED, message="provider rate limited")

        if fetched.outcome == FetchOutcome.NOT_FOUND:
            return await self._fail(job, "not found", retryable=False)

        if fetched.outcome == FetchOutcome.TRANSIENT:
            return await self._fail(
                job, fetched.error or "transient provider error", retryable=True, increment_retry=True
            )

        await self._consume_budget(provider, requested_at)

        norm_context = NormalizationContext(
            provider=provider,
            subject=job.subject,
            variant=job.variant,
            currency_code=context.currency_code,
            region_code=context.region_code,
            region_id=context.region_id,
            observed_at=requested_at,
            raw_snapshot_id=snapshot_ids[0] if snapshot_ids else None,
            provider_product_id=job.subject,
        )
        try:
            observations = normalizer.normalize(fetched.payloads(), norm_context)
        except NormalizationError as e:
            # Snapshot stays; the payload can be re-normalized once the mapping is fixed
            metrics.record_normalization_error(provider)
            logger.warning(f"Normalization failed for {provider}:{job.subject}: {e}")
            return await self._fail(job, f"normalization failed: {e}", retryable=False)
        except Exception as e:
            # Re-fetching cannot fix a payload the mapping does not understand
            metrics.record_normalization_error(provider)
            logger.exception(f"Normalizer crashed on {provider}:{job.subject}")
            return await self._fail(
                job, f"normalization failed: {type(e).__name__}: {e}", retryable=False
            )

        async with self.session_factory() as session:
            written = await self.writer.write(session, observations)
            await job_queue.mark_completed(session, job.id)
            await session.commit()

        return JobOutcome(
            job_id=job.id,
            status=COMPLETED,
            message=f"{len(observations)} observations",
            records_written=written,
        )

    async def _store_snapshots(
        self,
        job: MarketJob,
        fetched: FetchResult,
        requested_at,
    ) -> list[int]:
        if not fetched.responses:
            return []
        async with self.session_factory() as session:
            ids = []
            for response in fetched.responses:
                snapshot = await self.snapshots.record(
                    session,
                    provider=job.provider,
                    subject=job.subject,
                    response=response,
                    variant=job.variant,
                    job_id=job.id,
                    requested_at=requested_at,
                )
                ids.append(snapshot.id)
            await session.commit()
        return ids

    async def _consume_budget(self, provider: str, requested_at) -> None:
        window = hour_window(requested_at)
        async with self.session_factory() as session:
            # The window may have rolled over since the scheduler created it
            await self.ledger.ensure_budget(session, provider, window, self.registry.rate_limit(provider))
            await self.ledger.try_reserve(session, provider, window, 1)
            await session.commit()

    async def _fail(
        self,
        job: MarketJob,
        message: str,
        retryable: bool,
        increment_retry: bool = False,
    ) -> JobOutcome:
        async with self.session_factory() as session:
            state = await job_queue.mark_failed(
                session,
                job.id,
                message,
                retryable=retryable,
                increment_retry=increment_retry,
                max_retries=self.max_retries,
            )
            await session.commit()

        if state is not None:
            retry_count, still_retryable = state
            if increment_retry:
                message = f"{message} (attempt {retry_count}/{self.max_retries})"
            if increment_retry and not still_retryable:
                logger.warning(f"Job {job.id} exhausted {self.max_retries} retries: {message}")
        return JobOutcome(job_id=job.id, status=FAILED, message=message)

    async def _defer(self, jobs: Sequence[MarketJob]) -> None:
        async with self.session_factory() as session:
            await job_queue.defer(session, [job.id for job in jobs])
            await session.commit()
        for job in jobs:
            metrics.record_job_finished(job.provider, DEFERRED)

    async def _record_batch_metric(self, result: BatchResult) -> None:
        async with self.session_factory() as session:
            session.add(
                ProviderBatchMetric(
                    provider=result.provider,
                    run_id=result.run_id,
                    batch_size=result.attempted,
                    succeeded=result.succeeded,
                    failed=result.failed,
                    deferred=result.deferred,
                    duration_ms=result.duration_ms,
                )
            )
            await session.commit()
