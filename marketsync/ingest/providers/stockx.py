"""StockX catalog API client."""

import logging
from typing import Optional

import httpx

from marketsync.config import settings
from marketsync.ingest.providers.base import (
    FetchOutcome,
    FetchRequest,
    FetchResult,
    ProviderContext,
    classify_status,
)
from marketsync.ingest.providers.http import HttpProviderClient
from marketsync.normalize.stockx import MARKET_DATA_ENDPOINT, VARIANTS_ENDPOINT

logger = logging.getLogger(__name__)


class StockXClient(HttpProviderClient):
    """Fetches per-variant market data for a StockX product id."""

    provider = "stockx"

    def __init__(
        self,
        base_url: Optional[str] = None,
        fetch_variants: bool = True,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url or settings.stockx_base_url, timeout=timeout, transport=transport)
        self.fetch_variants = fetch_variants

    @staticmethod
    def _headers(context: ProviderContext) -> dict[str, str]:
        headers = {}
        if context.credentials.get("api_key"):
            headers["x-api-key"] = context.credentials["api_key"]
        if context.credentials.get("access_token"):
            headers["Authorization"] = f"Bearer {context.credentials['access_token']}"
        return headers

    async def fetch(self, request: FetchRequest, context: ProviderContext) -> FetchResult:
        headers = self._headers(context)
        market = await self._get(
            MARKET_DATA_ENDPOINT,
            f"/v2/catalog/products/{request.subject}/market-data",
            params={"currencyCode": context.currency_code, "country": context.region_code},
            headers=headers,
        )
        responses = [market]

        if market.http_status is None:
            return FetchResult(FetchOutcome.TRANSIENT, responses, market.error)

        outcome = classify_status(market.http_status)
        if outcome != FetchOutcome.OK:
            return FetchResult(outcome, responses, market.error)

        if self.fetch_variants:
            # Market data carries no sizes; they come from the variants listing
            variants = await self._get(
                VARIANTS_ENDPOINT,
                f"/v2/catalog/products/{request.subject}/variants",
                headers=headers,
            )
            responses.append(variants)

            if variants.http_status is None:
                return FetchResult(FetchOutcome.TRANSIENT, responses, variants.error)
            variants_outcome = classify_status(variants.http_status)
            if variants_outcome in (FetchOutcome.RATE_LIMITED, FetchOutcome.TRANSIENT):
                return FetchResult(variants_outcome, responses, variants.error)
            if variants_outcome == FetchOutcome.NOT_FOUND:
                logger.warning(
                    f"No StockX variants listing for {request.subject}; sizes fall back to variant ids"
                )

        return FetchResult(FetchOutcome.OK, responses)
