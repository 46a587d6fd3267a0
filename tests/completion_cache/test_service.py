"""Tests for CachedCompletionService.

Business behaviour: a request is sent to the model only when no live
completion exists for it; every fresh completion is timed, priced and
written back; a store outage never blocks a completion.
"""

import asyncio
from decimal import Decimal
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from completion_cache.errors import CompletionClientError
from completion_cache.service import (
    CachedCompletionService,
    CompletionClient,
    build_request,
)
from completion_cache.sqlite import SQLiteCompletionStore

from .conftest import MODEL, execute_raw, make_request, make_response


class FakeClient:
    """Completion client recording calls; optionally waits on a gate."""

    def __init__(self, gate: asyncio.Event | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self.gate = gate

    async def create_completion(self, request: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(request)
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        return make_response(content=f"answer {len(self.calls)}")


class FailingClient:
    async def create_completion(self, request: dict[str, Any]) -> dict[str, Any]:
        raise RuntimeError("rate limited")


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def service(store: SQLiteCompletionStore, client: FakeClient) -> CachedCompletionService:
    return CachedCompletionService(store, client)


# =============================================================================
# Request building
# =============================================================================


class TestBuildRequest:
    """Tests for build_request()."""

    def test_field_order_is_stable(self) -> None:
        request = build_request("Hi", model=MODEL, system="Be brief.")

        assert list(request) == ["model", "messages", "temperature", "stream"]
        assert request["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
        ]
        assert request["stream"] is False

    def test_optional_fields_are_appended(self) -> None:
        schema = {"name": "answer", "schema": {"type": "object"}}

        request = build_request(
            "Hi", model=MODEL, json_schema=schema, max_completion_tokens=64
        )

        assert list(request)[-2:] == ["response_format", "max_completion_tokens"]
        assert request["response_format"] == {
            "type": "json_schema",
            "json_schema": schema,
        }

    def test_fake_client_satisfies_protocol(self) -> None:
        assert isinstance(FakeClient(), CompletionClient)


# =============================================================================
# Cache behaviour
# =============================================================================


class TestCachedCompletionService:
    """Tests for complete()."""

    async def test_miss_calls_model_and_stores_completion(
        self,
        service: CachedCompletionService,
        client: FakeClient,
        store: SQLiteCompletionStore,
    ) -> None:
        result = await service.complete(make_request())

        assert result.cached is False
        assert result.completion_id is not None
        assert result.took is not None and result.took >= 0
        assert result.cost == Decimal("0.00045")
        assert len(client.calls) == 1

        records = await store.find_by_fingerprint(MODEL, make_request())
        assert [record.id for record in records] == [result.completion_id]
        assert records[0].response == result.response
        assert records[0].cost == Decimal("0.00045")

    async def test_hit_returns_stored_response_without_calling_model(
        self, service: CachedCompletionService, client: FakeClient
    ) -> None:
        first = await service.complete(make_request())

        second = await service.complete(make_request())

        assert second.cached is True
        assert second.completion_id == first.completion_id
        assert second.response == first.response
        assert second.cost == first.cost
        assert len(client.calls) == 1

    async def test_different_request_is_a_miss(
        self, service: CachedCompletionService, client: FakeClient
    ) -> None:
        await service.complete(make_request("A"))
        await service.complete(make_request("A", temperature=0.5))

        assert len(client.calls) == 2

    async def test_soft_deleted_completion_is_recomputed(
        self,
        service: CachedCompletionService,
        client: FakeClient,
        db_path: Path,
    ) -> None:
        first = await service.complete(make_request())
        execute_raw(
            db_path,
            "UPDATE completions SET isdeleted = 1 WHERE id = ?",
            (first.completion_id,),
        )

        second = await service.complete(make_request())

        assert second.cached is False
        assert second.completion_id != first.completion_id
        assert len(client.calls) == 2

    async def test_client_receives_request_unchanged(
        self, store: SQLiteCompletionStore
    ) -> None:
        client = AsyncMock()
        client.create_completion.return_value = make_response()
        service = CachedCompletionService(store, client)
        request = build_request("Hi", model=MODEL)

        result = await service.complete(request)

        client.create_completion.assert_awaited_once_with(request)
        assert result.response == make_response()

    async def test_request_without_model_is_rejected(
        self, service: CachedCompletionService
    ) -> None:
        request = make_request()
        del request["model"]

        with pytest.raises(ValueError, match="model"):
            await service.complete(request)

    async def test_client_failure_is_wrapped_and_nothing_stored(
        self, store: SQLiteCompletionStore
    ) -> None:
        service = CachedCompletionService(store, FailingClient())

        with pytest.raises(CompletionClientError, match="rate limited"):
            await service.complete(make_request())

        assert await store.find_by_fingerprint(MODEL, make_request()) == []


class TestCachedCompletionServiceGroups:
    """Tests for group scoping."""

    async def test_default_group_is_applied_to_writes_and_lookups(
        self, store: SQLiteCompletionStore, client: FakeClient
    ) -> None:
        service = CachedCompletionService(store, client, group_id="batch-1")

        result = await service.complete(make_request())

        records = await store.find_by_fingerprint(MODEL, make_request(), "batch-1")
        assert [record.id for record in records] == [result.completion_id]
        assert records[0].group_id == "batch-1"

    async def test_explicit_group_overrides_default(
        self, store: SQLiteCompletionStore, client: FakeClient
    ) -> None:
        service = CachedCompletionService(store, client, group_id="batch-1")

        await service.complete(make_request(), group_id="batch-1")
        result = await service.complete(make_request(), group_id="batch-2")

        assert result.cached is False
        assert len(client.calls) == 2

    async def test_costs_delegates_to_store(
        self, store: SQLiteCompletionStore, client: FakeClient
    ) -> None:
        service = CachedCompletionService(store, client)
        await service.complete(make_request("A"), group_id="G1")
        await service.complete(make_request("B"), group_id="G2")

        summary = await service.costs(group_id="G1")

        assert [bucket.bucket for bucket in summary] == ["G1"]
        assert summary[0].count == 1
        assert summary[0].total_cost == Decimal("0.00045")


class TestCachedCompletionServiceConcurrency:
    """Tests for concurrent misses on the same key."""

    async def test_concurrent_misses_both_insert_and_lowest_id_wins(
        self, store: SQLiteCompletionStore
    ) -> None:
        gate = asyncio.Event()
        client = FakeClient(gate)
        service = CachedCompletionService(store, client)

        pending = asyncio.gather(
            service.complete(make_request()), service.complete(make_request())
        )
        while len(client.calls) < 2:
            await asyncio.sleep(0.01)
        gate.set()
        first, second = await pending

        assert len(client.calls) == 2
        assert first.completion_id != second.completion_id

        follow_up = await service.complete(make_request())
        assert follow_up.cached is True
        assert follow_up.completion_id == min(first.completion_id, second.completion_id)

    async def test_single_flight_shares_one_model_call(
        self, store: SQLiteCompletionStore
    ) -> None:
        client = FakeClient()
        service = CachedCompletionService(store, client, single_flight=True)

        results = await asyncio.gather(
            *(service.complete(make_request()) for _ in range(3))
        )

        assert len(client.calls) == 1
        assert len({result.completion_id for result in results}) == 1
        assert [result.cached for result in results].count(False) == 1
        assert len(await store.find_by_fingerprint(MODEL, make_request())) == 1


class TestCachedCompletionServiceStoreOutage:
    """Tests for an unavailable store."""

    async def test_completion_is_served_when_store_is_unavailable(
        self, tmp_path: Path
    ) -> None:
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("")
        store = SQLiteCompletionStore(blocker / "cache.sqlite")
        client = FakeClient()
        service = CachedCompletionService(store, client)

        result = await service.complete(make_request())

        assert result.cached is False
        assert result.completion_id is None
        assert result.response == make_response(content="answer 1")
        assert len(client.calls) == 1
        await store.close()
