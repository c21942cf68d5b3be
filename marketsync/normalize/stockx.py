"""StockX market-data normalizer.

StockX returns one entry per variant with major-unit amounts. A single
variant fans out into up to three observations: the standard tier, the
flex (expedited) tier and the direct (consigned) tier.
"""

import logging
from typing import Any, Mapping, Optional

from marketsync.errors import NormalizationError
from marketsync.normalize.base import MarketObservation, NormalizationContext, Normalizer
from marketsync.normalize.units import (
    format_size_key,
    parse_count,
    parse_major_units,
    parse_size_numeric,
)

logger = logging.getLogger(__name__)

MARKET_DATA_ENDPOINT = "market_data"
VARIANTS_ENDPOINT = "variants"  # catalog listing, supplies sizes

SOURCE_STANDARD = "stockx_market_data"
SOURCE_FLEX = "stockx_market_data_flex"
SOURCE_DIRECT = "stockx_market_data_direct"

# A tier block counts as present only if it carries one of these
_TIER_SIGNAL_FIELDS = ("lowestAsk", "sellFaster", "earnMore")


def _first_present(*values: Any) -> Any:
    """First value that is neither None nor an empty string."""
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _tier_block(variant: Mapping[str, Any], name: str) -> Optional[Mapping[str, Any]]:
    block = variant.get(name)
    if block is None:
        return None
    if not isinstance(block, Mapping):
        raise NormalizationError(
            f"StockX {name} of variant {variant.get('variantId')} is not an object: {block!r}"
        )
    return block


def _tier_present(block: Optional[Mapping[str, Any]]) -> bool:
    if not block:
        return False
    return any(_first_present(block.get(name)) is not None for name in _TIER_SIGNAL_FIELDS)


class StockXNormalizer(Normalizer):
    """Normalizes StockX v2 catalog market-data responses."""

    provider = "stockx"

    def normalize(
        self,
        payloads: Mapping[str, Any],
        context: NormalizationContext,
    ) -> list[MarketObservation]:
        if MARKET_DATA_ENDPOINT not in payloads:
            raise NormalizationError("StockX response is missing market data")

        variants = payloads[MARKET_DATA_ENDPOINT]
        if isinstance(variants, Mapping) and "variants" in variants:
            variants = variants["variants"]
        if not isinstance(variants, list):
            raise NormalizationError(
                f"StockX market data must be a list of variants, got {type(variants).__name__}"
            )

        sizes = {**variant_size_map(payloads.get(VARIANTS_ENDPOINT)), **context.variant_sizes}
        wanted_size = format_size_key(context.variant) if context.variant else None
        observations: list[MarketObservation] = []
        size_owners: dict[str, str] = {}
        unresolved = 0

        for variant in variants:
            if not isinstance(variant, Mapping):
                raise NormalizationError(f"StockX variant entry is not an object: {variant!r}")

            variant_id = variant.get("variantId")
            if not variant_id:
                logger.warning(f"Skipping StockX variant without variantId for {context.subject}")
                continue
            variant_id = str(variant_id)

            size_key = self._size_key(variant, sizes)
            if size_key is None:
                unresolved += 1
                size_key = variant_id
            elif size_owners.setdefault(size_key, variant_id) != variant_id:
                # Two variants on one size would collapse into a single series
                logger.warning(
                    f"StockX variants {size_owners[size_key]} and {variant_id} of {context.subject} "
                    f"both resolve to size {size_key}; keeping {variant_id} under its variant id"
                )
                size_key = variant_id

            if wanted_size and size_key != wanted_size:
                continue

            observations.extend(self._variant_observations(variant, variant_id, size_key, context))

        if unresolved:
            logger.warning(
                f"{unresolved} StockX variants of {context.subject} have no size; keyed by variant id"
            )
            if wanted_size and not observations:
                raise NormalizationError(
                    f"Cannot resolve size {wanted_size} for {context.subject}: "
                    f"{unresolved} variants have no size mapping"
                )

        return observations

    @staticmethod
    def _size_key(variant: Mapping[str, Any], sizes: Mapping[str, str]) -> Optional[str]:
        size = _first_present(
            sizes.get(str(variant.get("variantId"))),
            variant.get("variantValue"),
            variant.get("size"),
        )
        return format_size_key(size)

    def _variant_observations(
        self,
        variant: Mapping[str, Any],
        variant_id: str,
        size_key: str,
        context: NormalizationContext,
    ) -> list[MarketObservation]:
        standard = _tier_block(variant, "standardMarketData") or {}

        lowest_ask = parse_major_units(_first_present(variant.get("lowestAskAmount"), standard.get("lowestAsk")))
        highest_bid = parse_major_units(
            _first_present(variant.get("highestBidAmount"), standard.get("highestBidAmount"))
        )
        last_sale = parse_major_units(variant.get("lastSaleAmount"))

        base = dict(
            provider=self.provider,
            subject=context.subject,
            size_key=size_key,
            currency_code=context.currency_code,
            region_code=context.region_code,
            observed_at=context.observed_at,
            last_sale_price=last_sale,
            sales_last_72h=parse_count(variant.get("salesLast72Hours")),
            sales_last_30d=parse_count(variant.get("totalVolume")),
            provider_product_id=context.provider_product_id or context.subject,
            provider_variant_id=variant_id,
            size_numeric=parse_size_numeric(size_key) if size_key != variant_id else None,
            size_system=context.size_system or "US",
            raw_snapshot_id=context.raw_snapshot_id,
        )

        observations = [
            MarketObservation(
                provider_source=SOURCE_STANDARD,
                lowest_ask=lowest_ask,
                highest_bid=highest_bid,
                sell_faster_price=parse_major_units(
                    _first_present(standard.get("sellFaster"), variant.get("sellFasterAmount"))
                ),
                earn_more_price=parse_major_units(
                    _first_present(standard.get("earnMore"), variant.get("earnMoreAmount"))
                ),
                **base,
            )
        ]

        flex = _tier_block(variant, "flexMarketData")
        if _tier_present(flex):
            observations.append(
                self._tier_observation(flex, SOURCE_FLEX, base, variant, is_expedited=True)
            )

        direct = _tier_block(variant, "directMarketData")
        if _tier_present(direct):
            observations.append(
                self._tier_observation(direct, SOURCE_DIRECT, base, variant, is_consigned=True)
            )

        return observations

    @staticmethod
    def _tier_observation(
        block: Mapping[str, Any],
        source: str,
        base: dict,
        variant: Mapping[str, Any],
        is_expedited: bool = False,
        is_consigned: bool = False,
    ) -> MarketObservation:
        """Flex/direct tier; missing ask/bid fall back to the standard amounts."""
        return MarketObservation(
            provider_source=source,
            is_expedited=is_expedited,
            is_consigned=is_consigned,
            lowest_ask=parse_major_units(_first_present(block.get("lowestAsk"), variant.get("lowestAskAmount"))),
            highest_bid=parse_major_units(
                _first_present(block.get("highestBidAmount"), variant.get("highestBidAmount"))
            ),
            sell_faster_price=parse_major_units(block.get("sellFaster")),
            earn_more_price=parse_major_units(block.get("earnMore")),
            **base,
        )


def variant_size_map(catalog_variants: Optional[list]) -> dict[str, str]:
    """Build the variantId -> size lookup from a StockX product variants listing."""
    sizes: dict[str, str] = {}
    for entry in catalog_variants or []:
        if not isinstance(entry, Mapping):
            continue
        variant_id = entry.get("variantId")
        size = _first_present(entry.get("variantValue"), entry.get("size"))
        if variant_id and size is not None:
            sizes[str(variant_id)] = str(size)
    return sizes
