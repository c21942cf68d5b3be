"""Shared fixtures: a throwaway SQLite database and scripted provider clients."""

import os

# Must be set before marketsync.config is imported
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["WORKER_CALL_DELAY_SECONDS"] = "0"
os.environ["ADMIN_API_KEY"] = ""

from datetime import datetime
from typing import Any, Callable, Optional, Union

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from marketsync.db.models import Base
from marketsync.ingest.providers.base import (
    FetchOutcome,
    FetchRequest,
    FetchResult,
    ProviderClient,
    ProviderContext,
    ProviderResponse,
    classify_status,
)
from marketsync.ingest.registry import ProviderRegistry, ProviderSpec
from marketsync.normalize.alias import AliasNormalizer
from marketsync.normalize.stockx import StockXNormalizer

OBSERVED_AT = datetime(2026, 10, 19, 12, 0, 0)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory bound to a fresh file-backed SQLite database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'marketsync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


async def reload(session: AsyncSession, model, ident):
    """Fetch a row bypassing stale identity-map state."""
    return await session.get(model, ident, populate_existing=True)


async def count_rows(session: AsyncSession, model) -> int:
    return int((await session.execute(select(func.count()).select_from(model))).scalar_one())


# Provider payload builders

def stockx_variant(
    variant_id: str,
    size: Optional[str],
    ask: Any = "210",
    bid: Any = "180",
    last_sale: Any = "195",
    flex: Optional[dict] = None,
    direct: Optional[dict] = None,
) -> dict:
    variant = {
        "productId": "prod-1",
        "variantId": variant_id,
        "currencyCode": "USD",
        "lowestAskAmount": ask,
        "highestBidAmount": bid,
        "lastSaleAmount": last_sale,
        "salesLast72Hours": 4,
        "totalVolume": 120,
        "standardMarketData": {"lowestAsk": ask, "highestBidAmount": bid, "sellFaster": "205", "earnMore": "220"},
    }
    if size is not None:
        variant["variantValue"] = size
    if flex is not None:
        variant["flexMarketData"] = flex
    if direct is not None:
        variant["directMarketData"] = direct
    return variant


def alias_variant(
    size: Any,
    consigned: bool = False,
    lowest_cents: Optional[str] = "21000",
    offer_cents: Optional[str] = "18000",
    last_sold_cents: Optional[str] = "19500",
    product_condition: str = "PRODUCT_CONDITION_NEW",
) -> dict:
    return {
        "size": size,
        "product_condition": product_condition,
        "packaging_condition": "PACKAGING_CONDITION_GOOD_CONDITION",
        "consigned": consigned,
        "availability": {
            "lowest_listing_price_cents": lowest_cents,
            "highest_offer_price_cents": offer_cents,
            "last_sold_listing_price_cents": last_sold_cents,
            "global_indicator_price_cents": "20000",
            "number_of_listings": 12,
            "number_of_offers": 5,
        },
    }


def ok_result(payload: Any, endpoint: str = "market_data") -> FetchResult:
    return FetchResult(
        FetchOutcome.OK,
        [ProviderResponse(endpoint=endpoint, params={}, http_status=200, payload=payload, duration_ms=5)],
    )


def stockx_result(market: Any, listing: Optional[list] = None) -> FetchResult:
    """Market data plus the variants listing, the way the StockX client returns them."""
    result = ok_result(market)
    if listing is not None:
        result.responses.append(
            ProviderResponse(endpoint="variants", params={}, http_status=200, payload=listing, duration_ms=5)
        )
    return result


def status_result(status_code: int, endpoint: str = "market_data") -> FetchResult:
    error = f"HTTP {status_code}"
    return FetchResult(
        classify_status(status_code),
        [
            ProviderResponse(
                endpoint=endpoint,
                params={},
                http_status=status_code,
                payload={"message": error},
                duration_ms=5,
                error=error,
            )
        ],
        error,
    )


Scripted = Union[FetchResult, Exception, Callable[[FetchRequest], FetchResult]]


class FakeProviderClient(ProviderClient):
    """Returns scripted results per subject; everything else gets the default."""

    def __init__(self, provider: str = "stockx", default: Optional[Scripted] = None):
        self.provider = provider
        self.scripted: dict[str, Scripted] = {}
        self.default = default
        self.calls: list[str] = []
        self.closed = False

    def script(self, subject: str, result: Scripted) -> None:
        self.scripted[subject] = result

    async def fetch(self, request: FetchRequest, context: ProviderContext) -> FetchResult:
        self.calls.append(request.subject)
        result = self.scripted.get(request.subject, self.default)
        if result is None:
            if self.provider == "alias":
                return ok_result({"variants": [alias_variant(10)]}, endpoint="availabilities")
            variant_id = f"{request.subject}-v10"
            return stockx_result(
                [stockx_variant(variant_id, None)], [{"variantId": variant_id, "variantValue": "10"}]
            )
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(request)
        return result

    async def close(self) -> None:
        self.closed = True


def fake_spec(name: str, client: ProviderClient, rate_limit: int = 100) -> ProviderSpec:
    normalizer = AliasNormalizer() if name == "alias" else StockXNormalizer()
    return ProviderSpec(
        name=name,
        client_factory=lambda: client,
        normalizer=normalizer,
        context_factory=lambda: ProviderContext(provider=name),
        rate_limit=rate_limit,
    )


@pytest.fixture
def stockx_client():
    return FakeProviderClient("stockx")


@pytest.fixture
def registry(stockx_client):
    return ProviderRegistry([fake_spec("stockx", stockx_client)])
