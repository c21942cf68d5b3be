"""Exception types raised by the market data pipeline."""


class MarketSyncError(Exception):
    """Base class for pipeline errors."""


class UnknownProviderError(MarketSyncError, ValueError):
    """Raised when a provider name is not registered."""

    def __init__(self, provider: str, available: list[str] | None = None):
        self.provider = provider
        self.available = available or []
        message = f"Unknown provider: {provider}"
        if self.available:
            message += f". Available: {self.available}"
        super().__init__(message)


class NormalizationError(MarketSyncError):
    """Raised when a provider payload cannot be mapped to market records."""


class PriceParseError(NormalizationError):
    """Raised when a price value cannot be converted to a decimal amount."""


class BudgetError(MarketSyncError):
    """Raised for invalid budget ledger operations."""
