"""Market price read endpoints."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.api.deps import get_database
from marketsync.db.models import utcnow
from marketsync.market import queries

router = APIRouter(prefix="/api/market", tags=["market-prices"])


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC; offsets from the query string are folded in."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class MarketPriceResponse(BaseModel):
    """Response model for one price observation."""
    provider: str
    provider_source: str
    subject: str
    size_key: str
    size_numeric: Optional[Decimal]
    size_system: Optional[str]
    currency_code: str
    region_code: Optional[str]
    is_expedited: bool
    is_consigned: bool
    lowest_ask: Optional[Decimal]
    highest_bid: Optional[Decimal]
    last_sale_price: Optional[Decimal]
    sell_faster_price: Optional[Decimal]
    earn_more_price: Optional[Decimal]
    global_indicator_price: Optional[Decimal]
    spread: Optional[Decimal]
    spread_percent: Optional[float]
    ask_count: Optional[int]
    bid_count: Optional[int]
    sales_last_72h: Optional[int]
    sales_last_30d: Optional[int]
    observed_at: datetime
    data_age_minutes: Optional[int] = None
    data_freshness: Optional[str] = None

    class Config:
        from_attributes = True


def _price_response(row, now: datetime) -> MarketPriceResponse:
    response = MarketPriceResponse.model_validate(row)
    response.data_age_minutes = queries.data_age_minutes(row.observed_at, now)
    response.data_freshness = queries.freshness(response.data_age_minutes)
    return response


@router.get("/latest", response_model=List[MarketPriceResponse])
async def latest_prices(
    provider: str,
    subject: str,
    variant: Optional[str] = None,
    currency: Optional[str] = None,
    region: Optional[str] = Query(None, description='Region code, or "global"'),
    expedited: Optional[bool] = None,
    consigned: Optional[bool] = None,
    db: AsyncSession = Depends(get_database),
):
    """Latest prices per size/region/tier with their age. An empty list means no data yet."""
    rows = await queries.get_latest_prices(
        db,
        provider,
        subject,
        variant=variant,
        currency_code=currency,
        region_code=region,
        is_expedited=expedited,
        is_consigned=consigned,
    )
    now = utcnow()
    return [_price_response(row, now) for row in rows]


@router.get("/history", response_model=List[MarketPriceResponse])
async def price_history(
    provider: str,
    subject: str,
    variant: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    days: int = Query(30, ge=1, le=365),
    currency: Optional[str] = None,
    region: Optional[str] = None,
    expedited: Optional[bool] = None,
    consigned: Optional[bool] = None,
    limit: int = Query(queries.DEFAULT_HISTORY_LIMIT, ge=1, le=10000),
    db: AsyncSession = Depends(get_database),
):
    """Observation history; defaults to the last `days` days."""
    end = _naive_utc(end) or utcnow()
    start = _naive_utc(start) or end - timedelta(days=days)
    try:
        rows = await queries.get_price_history(
            db,
            provider,
            subject,
            start,
            end,
            variant=variant,
            currency_code=currency,
            region_code=region,
            is_expedited=expedited,
            is_consigned=consigned,
            limit=limit,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    now = utcnow()
    return [_price_response(row, now) for row in rows]
