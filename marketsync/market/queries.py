"""Read path over the latest-price view and the master history.

These never trigger a provider fetch; an empty result means no data yet.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.db.models import LatestMarketPrice, MasterMarketRecord

GLOBAL_REGION = "global"
DEFAULT_HISTORY_LIMIT = 1000

# Freshness buckets by observation age in minutes
FRESH_MINUTES = 60
AGING_MINUTES = 360


def data_age_minutes(observed_at: datetime, now: datetime) -> int:
    return max(0, int((now - observed_at).total_seconds() // 60))


def freshness(age_minutes: int) -> str:
    """fresh under an hour, aging under six hours, stale beyond."""
    if age_minutes < FRESH_MINUTES:
        return "fresh"
    if age_minutes < AGING_MINUTES:
        return "aging"
    return "stale"


def _series_filters(
    model,
    provider: str,
    subject: str,
    variant: Optional[str],
    currency_code: Optional[str],
    region_code: Optional[str],
    is_expedited: Optional[bool],
    is_consigned: Optional[bool],
) -> list:
    filters = [model.provider == provider, model.subject == subject]
    if variant:
        filters.append(model.size_key == variant)
    if currency_code:
        filters.append(model.currency_code == currency_code.upper())
    if region_code:
        if region_code.lower() == GLOBAL_REGION:
            filters.append(model.region_code.is_(None))
        else:
            filters.append(model.region_code == region_code.upper())
    if is_expedited is not None:
        filters.append(model.is_expedited.is_(is_expedited))
    if is_consigned is not None:
        filters.append(model.is_consigned.is_(is_consigned))
    return filters


async def get_latest_prices(
    session: AsyncSession,
    provider: str,
    subject: str,
    variant: Optional[str] = None,
    currency_code: Optional[str] = None,
    region_code: Optional[str] = None,
    is_expedited: Optional[bool] = None,
    is_consigned: Optional[bool] = None,
) -> list[LatestMarketPrice]:
    """
    Latest known prices for a subject, one row per size/region/tier.

    Args:
        region_code: Region filter; "global" selects rows without a region

    Returns:
        Rows ordered by size; empty when nothing has been ingested yet
    """
    query = (
        select(LatestMarketPrice)
        .where(
            *_series_filters(
                LatestMarketPrice,
                provider,
                subject,
                variant,
                currency_code,
                region_code,
                is_expedited,
                is_consigned,
            )
        )
        .order_by(
            LatestMarketPrice.size_numeric.asc(),
            LatestMarketPrice.size_key.asc(),
            LatestMarketPrice.is_expedited.asc(),
            LatestMarketPrice.is_consigned.asc(),
        )
        .execution_options(populate_existing=True)
    )
    return list((await session.execute(query)).scalars().all())


async def get_price_history(
    session: AsyncSession,
    provider: str,
    subject: str,
    start: datetime,
    end: datetime,
    variant: Optional[str] = None,
    currency_code: Optional[str] = None,
    region_code: Optional[str] = None,
    is_expedited: Optional[bool] = None,
    is_consigned: Optional[bool] = None,
    limit: int = DEFAULT_HISTORY_LIMIT,
) -> list[MasterMarketRecord]:
    """Master observations in [start, end], oldest first."""
    if end < start:
        raise ValueError("end must not be before start")

    query = (
        select(MasterMarketRecord)
        .where(
            *_series_filters(
                MasterMarketRecord,
                provider,
                subject,
                variant,
                currency_code,
                region_code,
                is_expedited,
                is_consigned,
            ),
            MasterMarketRecord.observed_at >= start,
            MasterMarketRecord.observed_at <= end,
        )
        .order_by(MasterMarketRecord.observed_at.asc(), MasterMarketRecord.id.asc())
        .limit(limit)
    )
    return list((await session.execute(query)).scalars().all())
