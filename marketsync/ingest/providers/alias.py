"""Alias pricing-insights API client."""

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
from marketsync.normalize.alias import AVAILABILITIES_ENDPOINT, RECENT_SALES_ENDPOINT

logger = logging.getLogger(__name__)

RECENT_SALES_LIMIT = 200


class AliasClient(HttpProviderClient):
    """Fetches availabilities (and optionally recent sales) for an Alias catalog id."""

    provider = "alias"

    def __init__(
        self,
        base_url: Optional[str] = None,
        fetch_recent_sales: Optional[bool] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(base_url or settings.alias_base_url, timeout=timeout, transport=transport)
        if fetch_recent_sales is None:
            fetch_recent_sales = settings.alias_fetch_recent_sales
        self.fetch_recent_sales = fetch_recent_sales

    async def fetch(self, request: FetchRequest, context: ProviderContext) -> FetchResult:
        headers = {}
        if context.credentials.get("access_token"):
            headers["Authorization"] = f"Bearer {context.credentials['access_token']}"

        availabilities = await self._get(
            AVAILABILITIES_ENDPOINT,
            f"/api/v1/pricing_insights/availabilities/{request.subject}",
            params={"region_id": context.region_id},
            headers=headers,
        )
        responses = [availabilities]

        if availabilities.http_status is None:
            return FetchResult(FetchOutcome.TRANSIENT, responses, availabilities.error)

        outcome = classify_status(availabilities.http_status)
        if outcome != FetchOutcome.OK:
            return FetchResult(outcome, responses, availabilities.error)

        if self.fetch_recent_sales:
            # Volume is optional; the job succeeds on availabilities alone
            sales = await self._get(
                RECENT_SALES_ENDPOINT,
                "/api/v1/pricing_insights/recent_sales",
                params={
                    "catalog_id": request.subject,
                    "region_id": context.region_id,
                    "limit": RECENT_SALES_LIMIT,
                },
                headers=headers,
            )
            if sales.error:
                logger.info(f"Alias recent sales unavailable for {request.subject}: {sales.error}")
            responses.append(sales)

        return FetchResult(FetchOutcome.OK, responses)
