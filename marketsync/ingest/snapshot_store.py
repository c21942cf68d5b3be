"""Append-only store for raw provider responses."""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketsync.db.models import RawSnapshot, utcnow
from marketsync.ingest.providers.base import ProviderResponse

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Records every provider response verbatim before it is parsed.

    Snapshots are never updated or deleted here; re-normalizing a snapshot
    is the recovery path for mapping bugs.
    """

    async def record(
        self,
        session: AsyncSession,
        provider: str,
        subject: str,
        response: ProviderResponse,
        variant: Optional[str] = None,
        job_id: Optional[int] = None,
        requested_at: Optional[datetime] = None,
    ) -> RawSnapshot:
        """Insert one snapshot and flush so its id is available."""
        snapshot = RawSnapshot(
            provider=provider,
            endpoint=response.endpoint,
            subject=subject,
            variant=variant,
            request_params=response.params or None,
            raw_payload=_jsonable(response.payload),
            http_status=response.http_status,
            error_message=response.error,
            request_duration_ms=response.duration_ms,
            job_id=job_id,
            requested_at=requested_at or utcnow(),
        )
        session.add(snapshot)
        await session.flush()
        return snapshot

    async def get(self, session: AsyncSession, snapshot_id: int) -> Optional[RawSnapshot]:
        return await session.get(RawSnapshot, snapshot_id)

    async def list_for_subject(
        self,
        session: AsyncSession,
        provider: str,
        subject: str,
        limit: int = 50,
    ) -> list[RawSnapshot]:
        """Most recent snapshots for a subject, newest first."""
        result = await session.execute(
            select(RawSnapshot)
            .where(RawSnapshot.provider == provider, RawSnapshot.subject == subject)
            .order_by(RawSnapshot.requested_at.desc(), RawSnapshot.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


_WRAPPED_KEY = "__payload__"


def _jsonable(payload: Any) -> Any:
    """Wrap non-object payloads so the JSON column always holds an object or null."""
    if payload is None or isinstance(payload, dict):
        return payload
    return {_WRAPPED_KEY: payload}


def payload_of(snapshot: RawSnapshot) -> Any:
    """The decoded provider body as originally received."""
    payload = snapshot.raw_payload
    if isinstance(payload, dict) and set(payload) == {_WRAPPED_KEY}:
        return payload[_WRAPPED_KEY]
    return payload


snapshot_store = SnapshotStore()
