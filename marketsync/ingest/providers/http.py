"""Shared httpx plumbing for provider clients."""

import logging
import time
from typing import Any, Optional

import httpx

from marketsync.config import settings
from marketsync.ingest.providers.base import ProviderClient, ProviderResponse

logger = logging.getLogger(__name__)


class HttpProviderClient(ProviderClient):
    """Provider client backed by a lazily created httpx.AsyncClient."""

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: Provider API root
            timeout: Per-request timeout in seconds
            transport: Optional transport override (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.provider_timeout_seconds
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _get(
        self,
        endpoint: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> ProviderResponse:
        """
        GET a provider endpoint and capture the exchange.

        Network failures are returned as a response without http_status so
        the caller can still snapshot them.
        """
        client = await self._get_client()
        params = {key: value for key, value in (params or {}).items() if value is not None}
        started = time.monotonic()

        try:
            response = await client.get(path, params=params, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(f"{self.provider} {endpoint} timed out: {e}")
            return ProviderResponse(
                endpoint=endpoint,
                params=params,
                duration_ms=_elapsed_ms(started),
                error=f"Timeout: {e}",
            )
        except httpx.TransportError as e:
            logger.warning(f"{self.provider} {endpoint} transport error: {e}")
            return ProviderResponse(
                endpoint=endpoint,
                params=params,
                duration_ms=_elapsed_ms(started),
                error=f"{type(e).__name__}: {e}",
            )

        payload: Any = None
        error: Optional[str] = None
        if response.content:
            try:
                payload = response.json()
            except ValueError:
                payload = {"body": response.text[:2000]}
                error = "Response body is not JSON"

        if response.is_error:
            error = f"HTTP {response.status_code}"
            logger.info(f"{self.provider} {endpoint} returned HTTP {response.status_code} for {path}")

        return ProviderResponse(
            endpoint=endpoint,
            params=params,
            http_status=response.status_code,
            payload=payload,
            duration_ms=_elapsed_ms(started),
            error=error,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
