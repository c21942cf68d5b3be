"""Scheduler control and observability endpoints."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.api.deps import get_database, get_task_runner, require_admin_api_key
from marketsync.db.models import MarketJobRun, ProviderBatchMetric
from marketsync.ingest.budget import budget_ledger
from marketsync.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/market", tags=["market-scheduler"])


class JobRunResponse(BaseModel):
    """Response model for a scheduler run."""
    run_id: str
    started_at: datetime
    completed_at: Optional[datetime]
    duration_ms: Optional[int]
    jobs_reclaimed: int
    jobs_selected: int
    jobs_succeeded: int
    jobs_failed: int
    jobs_deferred: int
    provider_breakdown: Optional[dict]
    error_message: Optional[str]

    class Config:
        from_attributes = True


class ProviderMetricResponse(BaseModel):
    provider: str
    run_id: Optional[str]
    batch_size: int
    succeeded: int
    failed: int
    deferred: int
    duration_ms: Optional[int]
    created_at: datetime

    class Config:
        from_attributes = True


class BudgetResponse(BaseModel):
    provider: str
    hour_window: datetime
    rate_limit: int
    used: int
    remaining: int

    class Config:
        from_attributes = True


class RefreshResponse(BaseModel):
    rows: int


@router.post("/scheduler/run", dependencies=[Depends(require_admin_api_key)])
async def run_scheduler_tick(runner: TaskRunner = Depends(get_task_runner)):
    """Run one scheduler tick now and return its summary."""
    summary = await runner.scheduler.run_tick()
    return summary.to_dict()


@router.post(
    "/latest/refresh",
    response_model=RefreshResponse,
    dependencies=[Depends(require_admin_api_key)],
)
async def refresh_latest(
    db: AsyncSession = Depends(get_database),
    runner: TaskRunner = Depends(get_task_runner),
):
    """Rebuild the latest-price view now."""
    rows = await runner.view.refresh(db)
    return RefreshResponse(rows=rows)


@router.get("/runs", response_model=List[JobRunResponse])
async def list_runs(limit: int = 20, db: AsyncSession = Depends(get_database)):
    """Recent scheduler runs, newest first."""
    result = await db.execute(
        select(MarketJobRun).order_by(MarketJobRun.started_at.desc()).limit(min(limit, 200))
    )
    return [JobRunResponse.model_validate(run) for run in result.scalars().all()]


@router.get("/runs/{run_id}/providers", response_model=List[ProviderMetricResponse])
async def run_provider_metrics(run_id: str, db: AsyncSession = Depends(get_database)):
    """Per-provider batch metrics for one run."""
    result = await db.execute(
        select(ProviderBatchMetric)
        .where(ProviderBatchMetric.run_id == run_id)
        .order_by(ProviderBatchMetric.provider)
    )
    return [ProviderMetricResponse.model_validate(m) for m in result.scalars().all()]


@router.get("/budgets", response_model=List[BudgetResponse])
async def list_budgets(limit: int = 48, db: AsyncSession = Depends(get_database)):
    """Budget windows, newest first."""
    budgets = await budget_ledger.list_budgets(db, limit=min(limit, 500))
    return [BudgetResponse.model_validate(b) for b in budgets]
