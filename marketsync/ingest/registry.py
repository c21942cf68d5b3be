"""Provider registry: client, normalizer, credentials and budget per provider."""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from marketsync.config import settings
from marketsync.errors import UnknownProviderError
from marketsync.ingest.providers.alias import AliasClient
from marketsync.ingest.providers.base import ProviderClient, ProviderContext
from marketsync.ingest.providers.stockx import StockXClient
from marketsync.normalize.alias import AliasNormalizer, region_code_for
from marketsync.normalize.base import Normalizer
from marketsync.normalize.stockx import StockXNormalizer

logger = logging.getLogger(__name__)


@dataclass
class ProviderSpec:
    """Everything needed to fetch and normalize one provider."""

    name: str
    client_factory: Callable[[], ProviderClient]
    normalizer: Normalizer
    context_factory: Callable[[], ProviderContext]
    rate_limit: Optional[int] = None  # falls back to settings.provider_rate_limits


def stockx_context() -> ProviderContext:
    return ProviderContext(
        provider="stockx",
        credentials={
            "api_key": settings.stockx_api_key,
            "access_token": settings.stockx_access_token,
        },
        currency_code=settings.stockx_currency_code,
        region_code=settings.stockx_region_code or None,
    )


def alias_context() -> ProviderContext:
    return ProviderContext(
        provider="alias",
        credentials={"access_token": settings.alias_access_token},
        currency_code="USD",
        region_id=settings.alias_region_id,
        region_code=region_code_for(settings.alias_region_id),
    )


class ProviderRegistry:
    """Registry of marketplace providers."""

    def __init__(self, specs: Optional[list[ProviderSpec]] = None):
        self._specs: dict[str, ProviderSpec] = {}
        self._clients: dict[str, ProviderClient] = {}
        for spec in specs or []:
            self.register(spec)

    @classmethod
    def default(cls) -> "ProviderRegistry":
        return cls(
            [
                ProviderSpec(
                    name="stockx",
                    client_factory=lambda: StockXClient(fetch_variants=settings.stockx_fetch_variants),
                    normalizer=StockXNormalizer(),
                    context_factory=stockx_context,
                ),
                ProviderSpec(
                    name="alias",
                    client_factory=AliasClient,
                    normalizer=AliasNormalizer(),
                    context_factory=alias_context,
                ),
            ]
        )

    def register(self, spec: ProviderSpec) -> None:
        """Register (or replace) a provider."""
        self._specs[spec.name] = spec
        self._clients.pop(spec.name, None)
        logger.info(f"Registered provider: {spec.name}")

    def list_providers(self) -> list[str]:
        return sorted(self._specs)

    def is_registered(self, provider: str) -> bool:
        return provider in self._specs

    def get(self, provider: str) -> ProviderSpec:
        """
        Look up a provider.

        Raises:
            UnknownProviderError: If the provider is not registered
        """
        try:
            return self._specs[provider]
        except KeyError:
            raise UnknownProviderError(provider, self.list_providers()) from None

    def get_client(self, provider: str) -> ProviderClient:
        """Get or create the client instance for a provider."""
        spec = self.get(provider)
        if provider not in self._clients:
            self._clients[provider] = spec.client_factory()
        return self._clients[provider]

    def get_normalizer(self, provider: str) -> Normalizer:
        return self.get(provider).normalizer

    def context_for(self, provider: str) -> ProviderContext:
        """Fresh per-call context; credentials are never shared across providers."""
        return self.get(provider).context_factory()

    def rate_limit(self, provider: str) -> int:
        spec = self.get(provider)
        if spec.rate_limit is not None:
            return spec.rate_limit
        return settings.rate_limit_for(provider)

    async def close(self) -> None:
        """Close all instantiated clients."""
        for provider, client in list(self._clients.items()):
            try:
                await client.close()
            except Exception:
                logger.exception(f"Error closing {provider} client")
        self._clients.clear()


provider_registry = ProviderRegistry.default()
