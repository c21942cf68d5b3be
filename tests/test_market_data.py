"""Tests for the master table writer, the latest-price view and the read queries."""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import OBSERVED_AT, count_rows
from marketsync.db.models import LatestMarketPrice, MasterMarketRecord
from marketsync.market import queries
from marketsync.market.latest_view import LatestPriceView
from marketsync.normalize.base import MarketObservation
from marketsync.normalize.writer import MarketRecordWriter


def _observation(**overrides) -> MarketObservation:
    values = dict(
        provider="stockx",
        provider_source="stockx_market_data",
        subject="prod-1",
        size_key="10",
        size_numeric=Decimal("10"),
        currency_code="USD",
        observed_at=OBSERVED_AT,
        lowest_ask=Decimal("210.00"),
        highest_bid=Decimal("180.00"),
    )
    values.update(overrides)
    return MarketObservation(**values)


@pytest.fixture
def writer():
    return MarketRecordWriter()


class TestMarketRecordWriter:

    @pytest.mark.asyncio
    async def test_duplicate_observations_are_ignored(self, db_session, writer):
        observations = [_observation(), _observation(size_key="10.5", size_numeric=Decimal("10.5"))]

        assert await writer.write(db_session, observations) == 2
        await db_session.commit()

        # Same minute, same key: no new rows
        again = [_observation(observed_at=OBSERVED_AT + timedelta(seconds=30), lowest_ask=Decimal("205.00"))]
        assert await writer.write(db_session, again) == 0
        await db_session.commit()

        assert await count_rows(db_session, MasterMarketRecord) == 2

    @pytest.mark.asyncio
    async def test_global_region_collides_with_itself(self, db_session, writer):
        assert await writer.write(db_session, [_observation(region_code=None)]) == 1
        assert await writer.write(db_session, [_observation(region_code=None)]) == 0
        assert await writer.write(db_session, [_observation(region_code="US")]) == 1
        await db_session.commit()

    @pytest.mark.asyncio
    async def test_tiers_and_minutes_are_distinct_keys(self, db_session, writer):
        observations = [
            _observation(),
            _observation(is_expedited=True, provider_source="stockx_market_data_flex"),
            _observation(is_consigned=True, provider_source="stockx_market_data_direct"),
            _observation(observed_at=OBSERVED_AT + timedelta(minutes=1)),
        ]

        assert await writer.write(db_session, observations) == 4
        await db_session.commit()

    @pytest.mark.asyncio
    async def test_collision_within_one_write_is_logged(self, db_session, writer, caplog):
        observations = [_observation(provider_variant_id="v-a"), _observation(provider_variant_id="v-b")]

        with caplog.at_level(logging.WARNING, logger="marketsync.normalize.writer"):
            assert await writer.write(db_session, observations) == 1
        await db_session.commit()

        assert "1 observations collide on series key for prod-1" in caplog.text

    @pytest.mark.asyncio
    async def test_empty_write(self, db_session, writer):
        assert await writer.write(db_session, []) == 0


class TestLatestPriceView:

    @pytest.mark.asyncio
    async def test_refresh_keeps_newest_per_series(self, db_session, writer):
        await writer.write(
            db_session,
            [
                _observation(lowest_ask=Decimal("200.00")),
                _observation(observed_at=OBSERVED_AT + timedelta(hours=1), lowest_ask=Decimal("215.00")),
                _observation(size_key="11", size_numeric=Decimal("11"), lowest_ask=Decimal("250.00")),
                _observation(is_expedited=True, lowest_ask=Decimal("260.00")),
            ],
        )
        await db_session.commit()

        view = LatestPriceView(lookback_days=7)
        count = await view.refresh(db_session, now=OBSERVED_AT + timedelta(hours=2))

        assert count == 3
        rows = await queries.get_latest_prices(db_session, "stockx", "prod-1", is_expedited=False)
        assert [(row.size_key, row.lowest_ask) for row in rows] == [
            ("10", Decimal("215.00")),
            ("11", Decimal("250.00")),
        ]
        assert all(row.source_record_id for row in rows)

    @pytest.mark.asyncio
    async def test_refresh_replaces_previous_contents(self, db_session, writer):
        view = LatestPriceView(lookback_days=0)
        await writer.write(db_session, [_observation(lowest_ask=Decimal("200.00"))])
        await db_session.commit()
        assert await view.refresh(db_session) == 1

        await writer.write(
            db_session,
            [_observation(observed_at=OBSERVED_AT + timedelta(minutes=5), lowest_ask=Decimal("190.00"))],
        )
        await db_session.commit()
        assert await view.refresh(db_session) == 1

        rows = await queries.get_latest_prices(db_session, "stockx", "prod-1")
        assert len(rows) == 1
        assert rows[0].lowest_ask == Decimal("190.00")
        assert await count_rows(db_session, LatestMarketPrice) == 1

    @pytest.mark.asyncio
    async def test_overlapping_refreshes(self, session_factory, writer):
        async with session_factory() as session:
            await writer.write(session, [_observation(), _observation(size_key="11", size_numeric=Decimal("11"))])
            await session.commit()

        view = LatestPriceView(lookback_days=0)

        async def refresh() -> int:
            async with session_factory() as session:
                return await view.refresh(session)

        assert await asyncio.gather(*(refresh() for _ in range(3))) == [2, 2, 2]
        async with session_factory() as session:
            assert await count_rows(session, LatestMarketPrice) == 2

    @pytest.mark.asyncio
    async def test_lookback_window(self, db_session, writer):
        await writer.write(
            db_session,
            [
                _observation(observed_at=OBSERVED_AT - timedelta(days=10)),
                _observation(size_key="11", size_numeric=Decimal("11")),
            ],
        )
        await db_session.commit()

        assert await LatestPriceView(lookback_days=7).refresh(db_session, now=OBSERVED_AT) == 1
        assert await LatestPriceView(lookback_days=0).refresh(db_session, now=OBSERVED_AT) == 2


class TestQueries:

    @pytest.mark.asyncio
    async def test_latest_prices_region_filter(self, db_session, writer):
        await writer.write(
            db_session,
            [
                _observation(region_code=None, lowest_ask=Decimal("210.00")),
                _observation(region_code="EU", currency_code="EUR", lowest_ask=Decimal("230.00")),
            ],
        )
        await db_session.commit()
        await LatestPriceView(lookback_days=0).refresh(db_session)

        global_rows = await queries.get_latest_prices(db_session, "stockx", "prod-1", region_code="global")
        assert [row.lowest_ask for row in global_rows] == [Decimal("210.00")]

        eu_rows = await queries.get_latest_prices(db_session, "stockx", "prod-1", region_code="eu")
        assert [row.currency_code for row in eu_rows] == ["EUR"]

        assert await queries.get_latest_prices(db_session, "stockx", "unknown") == []

    @pytest.mark.parametrize(
        "age, bucket",
        [(timedelta(seconds=30), "fresh"), (timedelta(hours=2), "aging"), (timedelta(hours=6), "stale")],
    )
    def test_freshness_buckets(self, age, bucket):
        minutes = queries.data_age_minutes(OBSERVED_AT, OBSERVED_AT + age)

        assert queries.freshness(minutes) == bucket

    def test_data_age_never_negative(self):
        assert queries.data_age_minutes(OBSERVED_AT, OBSERVED_AT - timedelta(minutes=5)) == 0

    @pytest.mark.asyncio
    async def test_spread(self, db_session, writer):
        await writer.write(db_session, [_observation()])
        await db_session.commit()
        await LatestPriceView(lookback_days=0).refresh(db_session)

        row = (await queries.get_latest_prices(db_session, "stockx", "prod-1"))[0]
        assert row.spread == Decimal("30.00")
        assert row.spread_percent == 14.29

    @pytest.mark.asyncio
    async def test_price_history(self, db_session, writer):
        await writer.write(
            db_session,
            [
                _observation(observed_at=OBSERVED_AT + timedelta(minutes=minutes), lowest_ask=Decimal(200 + minutes))
                for minutes in (30, 0, 10)
            ],
        )
        await db_session.commit()

        rows = await queries.get_price_history(
            db_session, "stockx", "prod-1", OBSERVED_AT, OBSERVED_AT + timedelta(minutes=15)
        )
        assert [row.lowest_ask for row in rows] == [Decimal("200.00"), Decimal("210.00")]

        limited = await queries.get_price_history(
            db_session, "stockx", "prod-1", OBSERVED_AT, OBSERVED_AT + timedelta(hours=1), limit=1
        )
        assert len(limited) == 1

    @pytest.mark.asyncio
    async def test_price_history_rejects_inverted_range(self, db_session):
        with pytest.raises(ValueError):
            await queries.get_price_history(
                db_session, "stockx", "prod-1", OBSERVED_AT, OBSERVED_AT - timedelta(days=1)
            )
