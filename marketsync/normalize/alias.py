"""Alias pricing-insights normalizer.

Alias quotes every price as integer cents in a string ("14500") and always
in USD; the region only selects the marketplace. Volume comes from the
separate recent-sales endpoint and is merged per (size, consigned).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional

from marketsync.errors import NormalizationError
from marketsync.normalize.base import MarketObservation, NormalizationContext, Normalizer
from marketsync.normalize.units import (
    format_size_key,
    parse_count,
    parse_minor_units,
    parse_size_numeric,
)

logger = logging.getLogger(__name__)

AVAILABILITIES_ENDPOINT = "availabilities"
RECENT_SALES_ENDPOINT = "recent_sales"

SOURCE_AVAILABILITIES = "alias_availabilities"

CURRENCY_CODE = "USD"
REGION_CODES = {1: "US", 2: "EU", 3: "UK"}

STANDARD_PRODUCT_CONDITION = "PRODUCT_CONDITION_NEW"
STANDARD_PACKAGING_CONDITION = "PACKAGING_CONDITION_GOOD_CONDITION"

WINDOW_72H = timedelta(hours=72)
WINDOW_30D = timedelta(days=30)


def region_code_for(region_id: Any) -> Optional[str]:
    """Alias marketplace id -> region code; None means the global marketplace."""
    if region_id in (None, ""):
        return None
    try:
        return REGION_CODES.get(int(region_id))
    except (TypeError, ValueError):
        return None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@dataclass
class SalesStats:
    """Trailing sale counts for one (size, consigned) bucket."""

    sales_72h: int = 0
    sales_30d: int = 0
    last_sale_at: Optional[datetime] = None
    last_sale_price: Optional[Decimal] = None

    def add(self, sold_at: datetime, price: Optional[Decimal], now: datetime) -> None:
        age = now - sold_at
        if age <= WINDOW_72H:
            self.sales_72h += 1
        if age <= WINDOW_30D:
            self.sales_30d += 1
        if self.last_sale_at is None or sold_at > self.last_sale_at:
            self.last_sale_at = sold_at
            self.last_sale_price = price


def bucket_recent_sales(
    payload: Any,
    observed_at: datetime,
) -> dict[tuple[str, bool], SalesStats]:
    """Group recent sales by (size key, consigned) relative to observed_at."""
    sales = payload.get("recent_sales") if isinstance(payload, Mapping) else payload
    if sales is None:
        return {}
    if not isinstance(sales, list):
        raise NormalizationError("Alias recent_sales must be a list")

    buckets: dict[tuple[str, bool], SalesStats] = {}
    for sale in sales:
        if not isinstance(sale, Mapping):
            continue
        sold_at = _parse_timestamp(sale.get("purchased_at"))
        size_key = format_size_key(sale.get("size"))
        if sold_at is None or size_key is None:
            logger.debug(f"Ignoring Alias sale without timestamp or size: {sale!r}")
            continue
        if sold_at > observed_at:
            continue
        key = (size_key, bool(sale.get("consigned")))
        stats = buckets.setdefault(key, SalesStats())
        stats.add(sold_at, parse_minor_units(sale.get("price_cents")), observed_at)
    return buckets


class AliasNormalizer(Normalizer):
    """Normalizes Alias availabilities (+ optional recent sales) responses."""

    provider = "alias"

    def normalize(
        self,
        payloads: Mapping[str, Any],
        context: NormalizationContext,
    ) -> list[MarketObservation]:
        availabilities = payloads.get(AVAILABILITIES_ENDPOINT)
        if not isinstance(availabilities, Mapping) or not isinstance(
            availabilities.get("variants"), list
        ):
            raise NormalizationError("Alias availabilities response has no variants list")

        has_sales = payloads.get(RECENT_SALES_ENDPOINT) is not None
        sales = (
            bucket_recent_sales(payloads[RECENT_SALES_ENDPOINT], context.observed_at)
            if has_sales
            else {}
        )

        region_code = context.region_code or region_code_for(context.region_id)
        wanted_size = format_size_key(context.variant) if context.variant else None
        observations: list[MarketObservation] = []

        for variant in availabilities["variants"]:
            if not isinstance(variant, Mapping):
                raise NormalizationError(f"Alias variant entry is not an object: {variant!r}")
            if variant.get("product_condition") != STANDARD_PRODUCT_CONDITION:
                continue
            if variant.get("packaging_condition") != STANDARD_PACKAGING_CONDITION:
                continue

            availability = variant.get("availability")
            if not availability:
                continue
            if not isinstance(availability, Mapping):
                raise NormalizationError(
                    f"Alias availability for size {variant.get('size')} is not an object: {availability!r}"
                )

            size_key = format_size_key(variant.get("size"))
            if size_key is None:
                logger.warning(f"Skipping Alias variant without size for {context.subject}")
                continue
            if wanted_size and size_key != wanted_size:
                continue

            consigned = bool(variant.get("consigned"))
            stats = sales.get((size_key, consigned))

            last_sale = parse_minor_units(availability.get("last_sold_listing_price_cents"))
            if last_sale is None and stats is not None:
                last_sale = stats.last_sale_price

            observations.append(
                MarketObservation(
                    provider=self.provider,
                    provider_source=SOURCE_AVAILABILITIES,
                    subject=context.subject,
                    size_key=size_key,
                    currency_code=CURRENCY_CODE,
                    region_code=region_code,
                    observed_at=context.observed_at,
                    is_consigned=consigned,
                    lowest_ask=parse_minor_units(availability.get("lowest_listing_price_cents")),
                    highest_bid=parse_minor_units(availability.get("highest_offer_price_cents")),
                    last_sale_price=last_sale,
                    global_indicator_price=parse_minor_units(
                        availability.get("global_indicator_price_cents")
                    ),
                    ask_count=parse_count(availability.get("number_of_listings")),
                    bid_count=parse_count(availability.get("number_of_offers")),
                    sales_last_72h=(stats.sales_72h if stats else 0) if has_sales else None,
                    sales_last_30d=(stats.sales_30d if stats else 0) if has_sales else None,
                    provider_product_id=context.provider_product_id or context.subject,
                    size_numeric=parse_size_numeric(size_key),
                    size_system=variant.get("size_unit") or context.size_system or "US",
                    raw_snapshot_id=context.raw_snapshot_id,
                )
            )

        return observations
