"""Durable, deduplicated, prioritized job queue over the market_jobs table.

All coordination happens in the database: enqueue relies on the partial
unique index over active dedupe keys, and claiming is a single
UPDATE ... RETURNING so two schedulers can never claim the same job.
Functions here never commit; the caller owns the transaction.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Mapping, Optional, Sequence

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from marketsync import metrics
from marketsync.db.models import JobStatus, MarketJob, utcnow
from marketsync.db.session import dialect_insert
from marketsync.errors import MarketSyncError
from marketsync.ingest.registry import ProviderRegistry, provider_registry

logger = logging.getLogger(__name__)

# Priority levels
PRIORITY_USER_REFRESH = 200
PRIORITY_HOT = 150
PRIORITY_BACKGROUND = 100

MIN_PRIORITY = 0
MAX_PRIORITY = 1000

_ENQUEUE_ATTEMPTS = 3


@dataclass
class EnqueueResult:
    """Outcome of an enqueue request."""

    job_id: int
    created: bool  # False when an active job already covered the key
    priority: int  # effective priority of the active job


def dedupe_key(provider: str, subject: str, variant: Optional[str] = None) -> str:
    """Deterministic key identifying equivalent work."""
    raw = "|".join((provider.strip().lower(), subject.strip(), (variant or "").strip()))
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def _clamp_priority(priority: int) -> int:
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(priority)))


def _bulk(stmt):
    return stmt.execution_options(synchronize_session=False)


async def enqueue(
    session: AsyncSession,
    provider: str,
    subject: str,
    variant: Optional[str] = None,
    priority: int = PRIORITY_BACKGROUND,
    registry: Optional[ProviderRegistry] = None,
) -> EnqueueResult:
    """
    Add a job unless equivalent work is already pending or running.

    If an active job exists its priority is raised to the requested one
    (never lowered) and its id is returned instead.

    Args:
        session: Database session
        provider: Registered provider name
        subject: SKU / provider product id
        variant: Optional size
        priority: 200 user refresh, 150 hot, 100 background
        registry: Provider registry used to validate the provider name

    Returns:
        EnqueueResult for the job now covering this key

    Raises:
        UnknownProviderError: If the provider is not registered
    """
    provider = provider.strip().lower()
    (registry or provider_registry).get(provider)
    subject = subject.strip()
    variant = variant.strip() if variant and variant.strip() else None
    if not subject:
        raise ValueError("subject must not be empty")

    priority = _clamp_priority(priority)
    key = dedupe_key(provider, subject, variant)

    for _ in range(_ENQUEUE_ATTEMPTS):
        now = utcnow()
        inserted = await session.execute(
            dialect_insert(session, MarketJob)
            .values(
                provider=provider,
                subject=subject,
                variant=variant,
                priority=priority,
                status=JobStatus.PENDING,
                dedupe_key=key,
                retry_count=0,
                retryable=True,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing()
            .returning(MarketJob.id)
        )
        job_id = inserted.scalar_one_or_none()
        if job_id is not None:
            metrics.record_enqueue(provider, created=True)
            return EnqueueResult(job_id=job_id, created=True, priority=priority)

        # Active job exists; promote it if the new request is more urgent
        await session.execute(
            _bulk(
                update(MarketJob)
                .where(
                    MarketJob.dedupe_key == key,
                    MarketJob.status.in_(JobStatus.ACTIVE),
                    MarketJob.priority < priority,
                )
                .values(priority=priority, updated_at=now)
            )
        )
        existing = (
            await session.execute(
                select(MarketJob.id, MarketJob.priority).where(
                    MarketJob.dedupe_key == key,
                    MarketJob.status.in_(JobStatus.ACTIVE),
                )
            )
        ).first()
        if existing is not None:
            metrics.record_enqueue(provider, created=False)
            return EnqueueResult(job_id=existing.id, created=False, priority=existing.priority)
        # The active job finished between the insert and the lookup; try again

    raise MarketSyncError(f"Could not enqueue {provider}:{subject}/{variant} after {_ENQUEUE_ATTEMPTS} attempts")


def _item_fields(item: Any) -> tuple[str, Optional[str]]:
    if isinstance(item, str):
        return item, None
    if isinstance(item, Mapping):
        return item["subject"], item.get("variant")
    subject, variant = item
    return subject, variant


async def enqueue_many(
    session: AsyncSession,
    provider: str,
    items: Iterable[Any],
    priority: int = PRIORITY_BACKGROUND,
    registry: Optional[ProviderRegistry] = None,
) -> list[EnqueueResult]:
    """
    Enqueue several subjects for one provider.

    Items may be subjects, (subject, variant) pairs or mappings with
    "subject"/"variant" keys. Duplicates within the call collapse.
    """
    results: list[EnqueueResult] = []
    seen: set[str] = set()
    for item in items:
        subject, variant = _item_fields(item)
        key = dedupe_key(provider, subject, variant.strip() if variant else None)
        if key in seen:
            continue
        seen.add(key)
        results.append(await enqueue(session, provider, subject, variant, priority, registry))
    return results


async def claim_pending(
    session: AsyncSession,
    provider: str,
    limit: int,
    now: Optional[datetime] = None,
) -> list[MarketJob]:
    """
    Atomically move up to `limit` pending jobs to running.

    Selection order is priority descending, then age ascending. Rows
    locked by a concurrent claimer are skipped, never double-claimed.

    Returns:
        Claimed jobs in selection order
    """
    if limit <= 0:
        return []
    now = now or utcnow()

    candidates = (
        select(MarketJob.id)
        .where(MarketJob.provider == provider, MarketJob.status == JobStatus.PENDING)
        .order_by(MarketJob.priority.desc(), MarketJob.created_at.asc(), MarketJob.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    stmt = (
        update(MarketJob)
        .where(MarketJob.id.in_(candidates), MarketJob.status == JobStatus.PENDING)
        .values(status=JobStatus.RUNNING, started_at=now, updated_at=now)
        .returning(MarketJob)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    jobs = list((await session.execute(stmt)).scalars().all())
    jobs.sort(key=lambda job: (-job.priority, job.created_at, job.id))

    if jobs:
        logger.info(f"Claimed {len(jobs)} {provider} jobs")
    return jobs


async def mark_completed(session: AsyncSession, job_id: int) -> bool:
    """running -> completed."""
    result = await session.execute(
        _bulk(
            update(MarketJob)
            .where(MarketJob.id == job_id, MarketJob.status == JobStatus.RUNNING)
            .values(
                status=JobStatus.COMPLETED,
                completed_at=utcnow(),
                updated_at=utcnow(),
                error_message=None,
            )
        )
    )
    return result.rowcount > 0


async def mark_failed(
    session: AsyncSession,
    job_id: int,
    error: str,
    retryable: bool = False,
    increment_retry: bool = False,
    max_retries: Optional[int] = None,
) -> Optional[tuple[int, bool]]:
    """
    running -> failed.

    With increment_retry the retry counter goes up and the job stays
    retryable only while the counter is below max_retries.

    Returns:
        (retry_count, retryable) after the update, or None if the job was
        not running
    """
    values: dict[str, Any] = {
        "status": JobStatus.FAILED,
        "completed_at": utcnow(),
        "updated_at": utcnow(),
        "error_message": error[:2000] if error else error,
    }
    if increment_retry:
        values["retry_count"] = MarketJob.retry_count + 1
        if retryable and max_retries is not None:
            values["retryable"] = case((MarketJob.retry_count + 1 < max_retries, True), else_=False)
        else:
            values["retryable"] = retryable
    else:
        values["retryable"] = retryable

    result = await session.execute(
        _bulk(
            update(MarketJob)
            .where(MarketJob.id == job_id, MarketJob.status == JobStatus.RUNNING)
            .values(**values)
            .returning(MarketJob.retry_count, MarketJob.retryable)
        )
    )
    row = result.first()
    if row is None:
        return None
    return row.retry_count, bool(row.retryable)


async def defer(session: AsyncSession, job_ids: Sequence[int]) -> int:
    """running -> pending without consuming a retry; priority is kept."""
    if not job_ids:
        return 0
    result = await session.execute(
        _bulk(
            update(MarketJob)
            .where(MarketJob.id.in_(list(job_ids)), MarketJob.status == JobStatus.RUNNING)
            .values(status=JobStatus.PENDING, started_at=None, updated_at=utcnow())
        )
    )
    return result.rowcount


async def reclaim_orphans(
    session: AsyncSession,
    older_than: timedelta,
    now: Optional[datetime] = None,
) -> int:
    """
    Return running jobs whose worker vanished to pending.

    A job is orphaned when it has been running longer than `older_than`.
    Identity, priority and retry_count are preserved.
    """
    cutoff = (now or utcnow()) - older_than
    result = await session.execute(
        _bulk(
            update(MarketJob)
            .where(MarketJob.status == JobStatus.RUNNING, MarketJob.started_at < cutoff)
            .values(status=JobStatus.PENDING, started_at=None, updated_at=utcnow())
            .returning(MarketJob.id)
        )
    )
    reclaimed = result.scalars().all()
    if reclaimed:
        logger.warning(f"Reclaimed {len(reclaimed)} orphaned jobs: {list(reclaimed)[:20]}")
        metrics.record_jobs_reclaimed(len(reclaimed))
    return len(reclaimed)


async def _revive(session: AsyncSession, failed: list[MarketJob], reset_retries: bool) -> int:
    """Move failed jobs back to pending, newest per dedupe key only."""
    newest: dict[str, MarketJob] = {}
    superseded: list[int] = []
    for job in sorted(failed, key=lambda j: j.id, reverse=True):
        if job.dedupe_key in newest:
            superseded.append(job.id)
        else:
            newest[job.dedupe_key] = job

    if superseded:
        await session.execute(
            _bulk(
                update(MarketJob)
                .where(MarketJob.id.in_(superseded))
                .values(retryable=False, updated_at=utcnow())
            )
        )
    if not newest:
        return 0

    active = aliased(MarketJob)
    has_active = (
        select(active.id)
        .where(active.dedupe_key == MarketJob.dedupe_key, active.status.in_(JobStatus.ACTIVE))
        .exists()
    )
    values: dict[str, Any] = {
        "status": JobStatus.PENDING,
        "started_at": None,
        "completed_at": None,
        "updated_at": utcnow(),
    }
    if reset_retries:
        values.update(retry_count=0, retryable=True, error_message=None)

    # A concurrent enqueue of the same key can still win the race; the
    # resulting IntegrityError is left to the caller's transaction handling.
    result = await session.execute(
        _bulk(
            update(MarketJob)
            .where(
                MarketJob.id.in_([job.id for job in newest.values()]),
                MarketJob.status == JobStatus.FAILED,
                ~has_active,
            )
            .values(**values)
        )
    )
    return result.rowcount


async def requeue_retryable(
    session: AsyncSession,
    max_retries: int,
    provider: Optional[str] = None,
    limit: int = 500,
) -> int:
    """Return transiently failed jobs below the retry ceiling to pending."""
    query = (
        select(MarketJob)
        .where(
            MarketJob.status == JobStatus.FAILED,
            MarketJob.retryable.is_(True),
            MarketJob.retry_count < max_retries,
        )
        .order_by(MarketJob.id.desc())
        .limit(limit)
    )
    if provider:
        query = query.where(MarketJob.provider == provider)
    failed = list((await session.execute(query)).scalars().all())
    if not failed:
        return 0

    requeued = await _revive(session, failed, reset_retries=False)
    if requeued:
        logger.info(f"Re-enqueued {requeued} retryable jobs")
    return requeued


async def reset_failed(
    session: AsyncSession,
    job_ids: Optional[Sequence[int]] = None,
    provider: Optional[str] = None,
    limit: int = 500,
) -> int:
    """
    Manually reset failed jobs to pending with a fresh retry budget.

    Jobs whose key already has an active job are left as they are.
    """
    query = (
        select(MarketJob)
        .where(MarketJob.status == JobStatus.FAILED)
        .order_by(MarketJob.id.desc())
        .limit(limit)
    )
    if job_ids:
        query = query.where(MarketJob.id.in_(list(job_ids)))
    if provider:
        query = query.where(MarketJob.provider == provider)
    failed = list((await session.execute(query)).scalars().all())
    if not failed:
        return 0

    reset = await _revive(session, failed, reset_retries=True)
    logger.info(f"Reset {reset} failed jobs to pending")
    return reset


async def count_running(session: AsyncSession, provider: str) -> int:
    """Jobs currently running (claimed, not yet settled) for a provider."""
    query = select(func.count(MarketJob.id)).where(
        MarketJob.provider == provider,
        MarketJob.status == JobStatus.RUNNING,
    )
    return int((await session.execute(query)).scalar_one())


async def count_by_status(session: AsyncSession, provider: Optional[str] = None) -> dict[str, int]:
    """Job counts keyed by status (every status present, zero if none)."""
    query = select(MarketJob.status, func.count(MarketJob.id)).group_by(MarketJob.status)
    if provider:
        query = query.where(MarketJob.provider == provider)
    counts = {status: 0 for status in JobStatus.ALL}
    for status, count in (await session.execute(query)).all():
        counts[status] = count
    return counts


async def list_jobs(
    session: AsyncSession,
    status: Optional[str] = None,
    provider: Optional[str] = None,
    limit: int = 50,
) -> list[MarketJob]:
    """Most recently created jobs first."""
    query = select(MarketJob).order_by(MarketJob.created_at.desc(), MarketJob.id.desc()).limit(limit)
    if status:
        query = query.where(MarketJob.status == status)
    if provider:
        query = query.where(MarketJob.provider == provider)
    return list((await session.execute(query)).scalars().all())
