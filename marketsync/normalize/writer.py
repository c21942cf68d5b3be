"""Persist normalized observations into the master market table."""

import logging
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from marketsync import metrics
from marketsync.db.models import MasterMarketRecord
from marketsync.db.session import dialect_insert
from marketsync.normalize.base import MarketObservation

logger = logging.getLogger(__name__)


class MarketRecordWriter:
    """Appends observations; a duplicate observation key is a no-op."""

    async def write(
        self,
        session: AsyncSession,
        observations: Iterable[MarketObservation],
    ) -> int:
        """
        Insert observations, skipping any already recorded for the same minute.

        Args:
            session: Open session; the caller owns the transaction
            observations: Output of a provider normalizer

        Returns:
            Number of rows actually inserted
        """
        observations = list(observations)
        if not observations:
            return 0
        rows = [observation.to_row() for observation in observations]
        provider = rows[0]["provider"]

        identities = {
            (*observation.key(), row["observed_minute"]) for observation, row in zip(observations, rows)
        }
        if len(identities) < len(rows):
            logger.warning(
                f"{provider}: {len(rows) - len(identities)} observations collide on series key "
                f"for {rows[0]['subject']}; only the first of each is stored"
            )

        stmt = (
            dialect_insert(session, MasterMarketRecord)
            .values(rows)
            .on_conflict_do_nothing()
            .returning(MasterMarketRecord.id)
        )
        result = await session.execute(stmt)
        inserted = len(result.scalars().all())

        metrics.record_records_written(provider, inserted)
        if inserted < len(identities):
            logger.debug(
                f"{provider}: {len(identities) - inserted} of {len(rows)} observations already recorded"
            )
        return inserted


market_record_writer = MarketRecordWriter()
