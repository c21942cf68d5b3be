"""Market job queue API endpoints."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.api.deps import get_database, get_registry, require_admin_api_key
from marketsync.db.models import JobStatus, MarketJob
from marketsync.errors import UnknownProviderError
from marketsync.ingest import job_queue
from marketsync.ingest.registry import ProviderRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/market", tags=["market-jobs"])


# Request/response models
class EnqueueRequest(BaseModel):
    """Request model for enqueueing one fetch."""
    provider: str
    subject: str = Field(..., min_length=1, max_length=128)
    variant: Optional[str] = Field(None, max_length=32)
    priority: int = Field(job_queue.PRIORITY_BACKGROUND, ge=job_queue.MIN_PRIORITY, le=job_queue.MAX_PRIORITY)


class JobItem(BaseModel):
    subject: str = Field(..., min_length=1, max_length=128)
    variant: Optional[str] = Field(None, max_length=32)


class BatchEnqueueRequest(BaseModel):
    """Request model for enqueueing many subjects for one provider."""
    provider: str
    items: List[JobItem] = Field(..., min_length=1, max_length=1000)
    priority: int = Field(job_queue.PRIORITY_BACKGROUND, ge=job_queue.MIN_PRIORITY, le=job_queue.MAX_PRIORITY)


class EnqueueResponse(BaseModel):
    job_id: int
    created: bool
    priority: int


class MarketJobResponse(BaseModel):
    """Response model for a market job."""
    id: int
    provider: str
    subject: str
    variant: Optional[str]
    priority: int
    status: str
    retry_count: int
    retryable: bool
    error_message: Optional[str]
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class JobStatsResponse(BaseModel):
    counts: dict[str, int]
    total: int


class ResetFailedRequest(BaseModel):
    job_ids: Optional[List[int]] = None
    provider: Optional[str] = None


class ResetFailedResponse(BaseModel):
    reset: int


@router.post("/jobs", response_model=EnqueueResponse)
async def enqueue_job(
    request: EnqueueRequest,
    db: AsyncSession = Depends(get_database),
    registry: ProviderRegistry = Depends(get_registry),
):
    """Enqueue a fetch; returns the existing job when equivalent work is active."""
    try:
        result = await job_queue.enqueue(
            db,
            request.provider,
            request.subject,
            request.variant,
            request.priority,
            registry=registry,
        )
    except UnknownProviderError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    await db.commit()
    return EnqueueResponse(job_id=result.job_id, created=result.created, priority=result.priority)


@router.post("/jobs/batch", response_model=List[EnqueueResponse])
async def enqueue_jobs(
    request: BatchEnqueueRequest,
    db: AsyncSession = Depends(get_database),
    registry: ProviderRegistry = Depends(get_registry),
):
    """Enqueue many subjects for one provider."""
    try:
        results = await job_queue.enqueue_many(
            db,
            request.provider,
            [item.model_dump() for item in request.items],
            request.priority,
            registry=registry,
        )
    except UnknownProviderError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    await db.commit()
    return [
        EnqueueResponse(job_id=r.job_id, created=r.created, priority=r.priority) for r in results
    ]


@router.get("/jobs", response_model=List[MarketJobResponse])
async def list_jobs(
    status: Optional[str] = None,
    provider: Optional[str] = None,
    limit: int = 50,
    db: AsyncSession = Depends(get_database),
):
    """List market jobs, newest first."""
    if status and status not in JobStatus.ALL:
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    jobs = await job_queue.list_jobs(db, status=status, provider=provider, limit=min(limit, 500))
    return [MarketJobResponse.model_validate(job) for job in jobs]


@router.get("/jobs/stats", response_model=JobStatsResponse)
async def job_stats(
    provider: Optional[str] = None,
    db: AsyncSession = Depends(get_database),
):
    """Job counts by status."""
    counts = await job_queue.count_by_status(db, provider)
    return JobStatsResponse(counts=counts, total=sum(counts.values()))


@router.get("/jobs/{job_id}", response_model=MarketJobResponse)
async def get_job(job_id: int, db: AsyncSession = Depends(get_database)):
    """Get a specific market job."""
    job = await db.get(MarketJob, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Market job not found")
    return MarketJobResponse.model_validate(job)


@router.post(
    "/jobs/reset-failed",
    response_model=ResetFailedResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def reset_failed_jobs(
    request: ResetFailedRequest,
    db: AsyncSession = Depends(get_database),
):
    """Reset failed jobs to pending with a fresh retry budget."""
    reset = await job_queue.reset_failed(db, job_ids=request.job_ids, provider=request.provider)
    await db.commit()
    logger.info(f"Admin reset {reset} failed jobs")
    return ResetFailedResponse(reset=reset)
