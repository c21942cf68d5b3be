"""Latest-price view: newest master row per series, rebuilt wholesale."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import DateTime, delete, func, insert, literal, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync import metrics
from marketsync.config import settings
from marketsync.db.models import LatestMarketPrice, MasterMarketRecord, utcnow

logger = logging.getLogger(__name__)

# Columns copied verbatim from the master table
_VIEW_ONLY_COLUMNS = {"id", "source_record_id", "refreshed_at"}
COPIED_COLUMNS = [
    column.name
    for column in LatestMarketPrice.__table__.columns
    if column.name not in _VIEW_ONLY_COLUMNS
]

# pg_advisory_xact_lock key; overlapping refreshes run one after another
REFRESH_LOCK_KEY = 0x6D6B745F6C617465


def series_partition():
    """Columns identifying one price series in the master table."""
    return [
        MasterMarketRecord.provider,
        MasterMarketRecord.subject,
        MasterMarketRecord.size_key,
        MasterMarketRecord.currency_code,
        func.coalesce(MasterMarketRecord.region_code, "global"),
        MasterMarketRecord.is_expedited,
        MasterMarketRecord.is_consigned,
    ]


class LatestPriceView:
    """Materializes the newest observation per series into market_latest_prices.

    Readers see the previous contents until the refresh commits; staleness
    is bounded by the refresh cadence.
    """

    def __init__(self, lookback_days: Optional[int] = None):
        self.lookback_days = settings.latest_view_lookback_days if lookback_days is None else lookback_days

    def _ranked(self, now: datetime):
        master = MasterMarketRecord.__table__
        rank = (
            func.row_number()
            .over(
                partition_by=series_partition(),
                order_by=[MasterMarketRecord.observed_at.desc(), MasterMarketRecord.id.desc()],
            )
            .label("rn")
        )
        query = select(
            MasterMarketRecord.id.label("source_record_id"),
            *[master.c[name] for name in COPIED_COLUMNS],
            rank,
        )
        if self.lookback_days:
            query = query.where(MasterMarketRecord.observed_at >= now - timedelta(days=self.lookback_days))
        return query.subquery("ranked")

    async def refresh(self, session: AsyncSession, now: Optional[datetime] = None) -> int:
        """
        Rebuild the view in a single transaction, serialized on PostgreSQL.

        Returns:
            Number of series in the view after the refresh
        """
        now = now or utcnow()
        ranked = self._ranked(now)

        newest = select(
            *[ranked.c[name] for name in COPIED_COLUMNS],
            ranked.c.source_record_id,
            literal(now, DateTime()).label("refreshed_at"),
        ).where(ranked.c.rn == 1)

        if session.get_bind().dialect.name == "postgresql":
            await session.execute(text("SELECT pg_advisory_xact_lock(:k)"), {"k": REFRESH_LOCK_KEY})
        await session.execute(delete(LatestMarketPrice.__table__))
        result = await session.execute(
            insert(LatestMarketPrice.__table__).from_select(
                [*COPIED_COLUMNS, "source_record_id", "refreshed_at"],
                newest,
            )
        )
        await session.commit()

        count = result.rowcount
        if count is None or count < 0:
            count = await self.count(session)
        metrics.update_latest_view_rows(count)
        logger.info(f"Latest-price view refreshed: {count} series")
        return count

    async def count(self, session: AsyncSession) -> int:
        return int((await session.execute(select(func.count(LatestMarketPrice.id)))).scalar_one())


latest_price_view = LatestPriceView()
