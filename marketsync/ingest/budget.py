"""Per-provider hourly call budget backed by the market_budgets table."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync import metrics
from marketsync.db.models import MarketBudget, utcnow
from marketsync.db.session import dialect_insert
from marketsync.errors import BudgetError

logger = logging.getLogger(__name__)


def hour_window(now: Optional[datetime] = None) -> datetime:
    """Start of the UTC hour containing `now`."""
    return (now or utcnow()).replace(minute=0, second=0, microsecond=0)


class BudgetLedger:
    """Tracks calls made against each provider's hourly limit.

    Rows are created lazily per (provider, hour) and never decremented;
    previous hours remain as history.
    """

    async def ensure_budget(
        self,
        session: AsyncSession,
        provider: str,
        window: datetime,
        rate_limit: int,
    ) -> None:
        """Create the budget row for this window if it does not exist yet."""
        if rate_limit < 0:
            raise BudgetError(f"Negative rate limit for {provider}: {rate_limit}")
        now = utcnow()
        stmt = (
            dialect_insert(session, MarketBudget)
            .values(
                provider=provider,
                hour_window=window,
                rate_limit=rate_limit,
                used=0,
                last_reserved=0,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing()
        )
        await session.execute(stmt)

    async def try_reserve(
        self,
        session: AsyncSession,
        provider: str,
        window: datetime,
        count: int,
    ) -> int:
        """
        Atomically take up to `count` calls from the window's budget.

        The grant is computed and applied in one UPDATE, so concurrent
        reservations can never push `used` past `rate_limit`.

        Returns:
            Calls granted: min(count, rate_limit - used), 0 when exhausted
            or when the window has no budget row
        """
        if count <= 0:
            return 0

        exhausted = MarketBudget.used >= MarketBudget.rate_limit
        overflow = MarketBudget.used + count > MarketBudget.rate_limit

        stmt = (
            update(MarketBudget)
            .where(MarketBudget.provider == provider, MarketBudget.hour_window == window)
            .values(
                used=case(
                    (exhausted, MarketBudget.used),
                    (overflow, MarketBudget.rate_limit),
                    else_=MarketBudget.used + count,
                ),
                last_reserved=case(
                    (exhausted, 0),
                    (overflow, MarketBudget.rate_limit - MarketBudget.used),
                    else_=count,
                ),
                updated_at=utcnow(),
            )
            .returning(MarketBudget.last_reserved, MarketBudget.used, MarketBudget.rate_limit)
            .execution_options(synchronize_session=False)
        )
        row = (await session.execute(stmt)).first()
        if row is None:
            logger.warning(f"No budget row for {provider} at {window.isoformat()}")
            return 0

        granted, used, rate_limit = row
        metrics.update_budget(provider, used, max(rate_limit - used, 0))
        if granted < count:
            logger.info(f"{provider} budget clamped: requested {count}, granted {granted} ({used}/{rate_limit})")
        return granted

    async def get_budget(
        self,
        session: AsyncSession,
        provider: str,
        window: datetime,
    ) -> Optional[MarketBudget]:
        result = await session.execute(
            select(MarketBudget)
            .where(
                MarketBudget.provider == provider,
                MarketBudget.hour_window == window,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def remaining(self, session: AsyncSession, provider: str, window: datetime) -> int:
        """Calls left in the window (0 if the window has no row)."""
        budget = await self.get_budget(session, provider, window)
        return budget.remaining if budget else 0

    async def list_budgets(
        self,
        session: AsyncSession,
        window: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[MarketBudget]:
        """Budget rows, newest window first."""
        query = select(MarketBudget).order_by(
            MarketBudget.hour_window.desc(), MarketBudget.provider
        ).limit(limit)
        if window is not None:
            query = query.where(MarketBudget.hour_window == window)
        result = await session.execute(query)
        return list(result.scalars().all())


budget_ledger = BudgetLedger()
