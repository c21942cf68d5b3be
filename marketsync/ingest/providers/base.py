"""Provider client interface and fetch result types."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class FetchOutcome(str, Enum):
    """How a provider call ended, as far as job state is concerned."""

    OK = "ok"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"


def classify_status(status_code: int) -> FetchOutcome:
    """Map an HTTP status to a fetch outcome."""
    if 200 <= status_code < 300:
        return FetchOutcome.OK
    if status_code == 404:
        return FetchOutcome.NOT_FOUND
    if status_code == 429:
        return FetchOutcome.RATE_LIMITED
    # 5xx, 408 and unexpected 4xx are retried up to the ceiling
    return FetchOutcome.TRANSIENT


@dataclass
class ProviderResponse:
    """One HTTP exchange with a provider, successful or not."""

    endpoint: str
    params: dict[str, Any] = field(default_factory=dict)
    http_status: Optional[int] = None
    payload: Any = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None


@dataclass
class FetchRequest:
    """What to fetch."""

    subject: str
    variant: Optional[str] = None


@dataclass
class ProviderContext:
    """Credentials and market selection passed explicitly to every call."""

    provider: str
    credentials: dict[str, str] = field(default_factory=dict)
    currency_code: str = "USD"
    region_code: Optional[str] = None
    region_id: Optional[int] = None


@dataclass
class FetchResult:
    """Outcome of a fetch plus every response received along the way."""

    outcome: FetchOutcome
    responses: list[ProviderResponse] = field(default_factory=list)
    error: Optional[str] = None

    def payloads(self) -> dict[str, Any]:
        """Successful response bodies keyed by endpoint."""
        return {
            response.endpoint: response.payload
            for response in self.responses
            if response.http_status is not None and 200 <= response.http_status < 300
        }


class ProviderClient(ABC):
    """Abstract base class for marketplace API clients."""

    provider: str = ""

    @abstractmethod
    async def fetch(self, request: FetchRequest, context: ProviderContext) -> FetchResult:
        """
        Fetch market data for one subject.

        Args:
            request: Subject (and optional size) to fetch
            context: Credentials, currency and region for this call

        Returns:
            FetchResult; never raises for HTTP or network errors
        """
        pass

    async def close(self) -> None:
        """Release any pooled connections."""
        return None
