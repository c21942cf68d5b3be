"""FastAPI dependencies."""

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.config import settings
from marketsync.db.session import get_db
from marketsync.ingest.registry import ProviderRegistry, provider_registry
from marketsync.worker.tasks import TaskRunner, task_runner


async def get_database() -> AsyncSession:
    """Dependency for database session."""
    async for session in get_db():
        yield session


def get_registry() -> ProviderRegistry:
    """Dependency for the provider registry."""
    return provider_registry


def get_task_runner() -> TaskRunner:
    """Dependency for the background task runner."""
    return task_runner


async def require_admin_api_key(
    x_admin_api_key: str | None = Header(None, alias="X-Admin-API-Key")
) -> None:
    """
    Dependency to require admin API key for protected endpoints.

    Raises:
        HTTPException: 503 if no key is configured, 401 if header missing,
            403 if invalid
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured",
        )

    if not x_admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Admin-API-Key header",
        )

    if x_admin_api_key != settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key",
        )
