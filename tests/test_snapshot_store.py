"""Tests for raw snapshot storage."""

from datetime import timedelta

import pytest

from conftest import OBSERVED_AT
from marketsync.ingest.providers.base import ProviderResponse
from marketsync.ingest.snapshot_store import SnapshotStore, payload_of


@pytest.fixture
def store():
    return SnapshotStore()


@pytest.mark.asyncio
async def test_records_response_verbatim(db_session, store):
    response = ProviderResponse(
        endpoint="availabilities",
        params={"region_id": 2},
        http_status=200,
        payload={"variants": [{"size": 10}]},
        duration_ms=42,
    )

    snapshot = await store.record(db_session, "alias", "cat-1", response, variant="10", requested_at=OBSERVED_AT)
    await db_session.commit()

    stored = await store.get(db_session, snapshot.id)
    assert stored.provider == "alias"
    assert stored.endpoint == "availabilities"
    assert stored.variant == "10"
    assert stored.request_params == {"region_id": 2}
    assert stored.http_status == 200
    assert stored.request_duration_ms == 42
    assert stored.requested_at == OBSERVED_AT
    assert payload_of(stored) == {"variants": [{"size": 10}]}


@pytest.mark.asyncio
async def test_list_payloads_are_wrapped(db_session, store):
    body = [{"variantId": "v-1"}]
    snapshot = await store.record(
        db_session, "stockx", "prod-1", ProviderResponse(endpoint="market_data", http_status=200, payload=body)
    )
    await db_session.commit()

    assert isinstance(snapshot.raw_payload, dict)
    assert payload_of(snapshot) == body


@pytest.mark.asyncio
async def test_failed_exchange_is_recorded(db_session, store):
    response = ProviderResponse(endpoint="market_data", error="Timeout: read timed out")

    snapshot = await store.record(db_session, "stockx", "prod-1", response)
    await db_session.commit()

    assert snapshot.http_status is None
    assert snapshot.raw_payload is None
    assert snapshot.error_message == "Timeout: read timed out"


@pytest.mark.asyncio
async def test_list_for_subject_newest_first(db_session, store):
    for minutes in (0, 10, 5):
        await store.record(
            db_session,
            "stockx",
            "prod-1",
            ProviderResponse(endpoint="market_data", http_status=200, payload={"n": minutes}),
            requested_at=OBSERVED_AT + timedelta(minutes=minutes),
        )
    await store.record(
        db_session, "stockx", "prod-2", ProviderResponse(endpoint="market_data", http_status=200, payload={})
    )
    await db_session.commit()

    snapshots = await store.list_for_subject(db_session, "stockx", "prod-1")

    assert [payload_of(s)["n"] for s in snapshots] == [10, 5, 0]
