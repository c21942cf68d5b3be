"""Shared types for provider normalizers."""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from marketsync.db.models import utcnow


@dataclass
class NormalizationContext:
    """Everything a normalizer needs besides the payload itself."""

    provider: str
    subject: str
    currency_code: str = "USD"
    variant: Optional[str] = None  # restrict output to one size
    region_code: Optional[str] = None
    region_id: Optional[int] = None
    observed_at: datetime = field(default_factory=utcnow)
    raw_snapshot_id: Optional[int] = None
    provider_product_id: Optional[str] = None
    variant_sizes: dict[str, str] = field(default_factory=dict)  # provider variant id -> size
    size_system: Optional[str] = None


@dataclass
class MarketObservation:
    """One canonical price observation for a (size, region, tier)."""

    provider: str
    provider_source: str
    subject: str
    size_key: str
    currency_code: str
    observed_at: datetime
    region_code: Optional[str] = None
    is_expedited: bool = False
    is_consigned: bool = False
    lowest_ask: Optional[Decimal] = None
    highest_bid: Optional[Decimal] = None
    last_sale_price: Optional[Decimal] = None
    sell_faster_price: Optional[Decimal] = None
    earn_more_price: Optional[Decimal] = None
    global_indicator_price: Optional[Decimal] = None
    ask_count: Optional[int] = None
    bid_count: Optional[int] = None
    sales_last_72h: Optional[int] = None
    sales_last_30d: Optional[int] = None
    provider_product_id: Optional[str] = None
    provider_variant_id: Optional[str] = None
    size_numeric: Optional[Decimal] = None
    size_system: Optional[str] = None
    raw_snapshot_id: Optional[int] = None

    def key(self) -> tuple:
        """Identity of the series this observation belongs to."""
        return (
            self.provider,
            self.subject,
            self.size_key,
            self.currency_code,
            self.region_code or "global",
            self.is_expedited,
            self.is_consigned,
        )

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["observed_minute"] = self.observed_at.replace(second=0, microsecond=0)
        return row


class Normalizer(ABC):
    """Maps raw provider payloads to market observations. Never touches storage."""

    provider: str = ""

    @abstractmethod
    def normalize(
        self,
        payloads: Mapping[str, Any],
        context: NormalizationContext,
    ) -> list[MarketObservation]:
        """
        Normalize one fetch worth of provider responses.

        Args:
            payloads: Decoded response bodies keyed by endpoint name
            context: Subject, currency, region and observation time

        Returns:
            Observations ready for the master table (may be empty)

        Raises:
            NormalizationError: If the payload shape is not understood
        """
        pass
