"""Cache-aware completion service.

The service sits between callers and a remote model client:
1. Look up the request by (model, fingerprint, group) in the store
2. Return the canonical cached response on a hit
3. Otherwise call the client, time the call and price the response
4. Write the completion back to the store and return it

A store outage never blocks a completion: lookups that report UNAVAILABLE
fall through to the client, and failed writes are logged.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

from pydantic import JsonValue

from completion_cache.errors import CompletionClientError
from completion_cache.fingerprint import fingerprint
from completion_cache.pricing import compute_cost
from completion_cache.store import CompletionStore
from completion_cache.types import CostBucket, CostSummaryFilter, LookupStatus

logger = logging.getLogger(__name__)


@runtime_checkable
class CompletionClient(Protocol):
    """Protocol for remote chat completion clients.

    The request is an OpenAI-style chat completion body; the response is the
    decoded JSON body, including 'model' and 'usage' for pricing.
    """

    async def create_completion(self, request: dict[str, Any]) -> dict[str, Any]:
        """Send one completion request and return the full response."""
        ...


@dataclass(frozen=True)
class CompletionResult:
    """Return type for CachedCompletionService.complete()."""

    response: JsonValue
    """The full model response (cached or fresh)."""

    completion_id: int | None
    """Store id of the row served or written; None if the write failed."""

    took: int | None
    """Model call duration in milliseconds."""

    cost: Decimal | None
    """Monetary cost of the model call."""

    cached: bool
    """True when served from the store without calling the model."""


@dataclass
class _InFlight:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: int = 0


def build_request(
    content: str,
    *,
    model: str,
    system: str | None = None,
    temperature: float = 0.0,
    json_schema: Mapping[str, Any] | None = None,
    max_completion_tokens: int | None = None,
) -> dict[str, Any]:
    """Build a chat completion request with a stable field order.

    Field order matters: it is part of the fingerprint.

    Args:
        content: User message.
        model: Model identifier.
        system: Optional system message, sent first.
        temperature: Sampling temperature.
        json_schema: Optional JSON schema for structured output.
        max_completion_tokens: Optional completion length limit.

    Returns:
        Request dictionary ready for CompletionClient.create_completion().

    """
    messages: list[dict[str, str]] = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": content})

    request: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "stream": False,
    }
    if json_schema:
        request["response_format"] = {
            "type": "json_schema",
            "json_schema": dict(json_schema),
        }
    if max_completion_tokens:
        request["max_completion_tokens"] = max_completion_tokens
    return request


class CachedCompletionService:
    """Completion service that memoises model calls in a CompletionStore.

    By default concurrent misses for the same key each call the model and
    each insert a row; readers resolve the duplicates by lowest id. With
    single_flight=True, concurrent misses for the same (model, fingerprint,
    group) within this process wait for the first call and reuse its row.
    """

    def __init__(
        self,
        store: CompletionStore,
        client: CompletionClient,
        *,
        group_id: str | None = None,
        pricing: Callable[[Any], Decimal] = compute_cost,
        single_flight: bool = False,
    ) -> None:
        """Initialise the service.

        Args:
            store: Completion store used for lookups and write-back.
            client: Remote model client.
            group_id: Default partition key for lookups and writes.
            pricing: Computes the cost of a response.
            single_flight: Share one model call between concurrent misses
                for the same key.

        """
        self._store = store
        self._client = client
        self._group_id = group_id
        self._pricing = pricing
        self._single_flight = single_flight
        self._inflight: dict[tuple[str, str, str | None], _InFlight] = {}

    @property
    def store(self) -> CompletionStore:
        return self._store

    async def complete(
        self, request: dict[str, Any], *, group_id: str | None = None
    ) -> CompletionResult:
        """Return the response for a request, calling the model only on a miss.

        Args:
            request: Chat completion request; must contain 'model'.
            group_id: Partition key, defaulting to the service's group id.

        Returns:
            CompletionResult describing the served response.

        Raises:
            ValueError: If the request has no model.
            CompletionClientError: If the model call fails.

        """
        model = request.get("model")
        if not isinstance(model, str) or not model:
            raise ValueError("Completion request must contain a 'model' string")
        group_id = group_id if group_id is not None else self._group_id

        if not self._single_flight:
            return await self._complete(model, request, group_id)

        key = (model, fingerprint(request), group_id)
        inflight = self._inflight.setdefault(key, _InFlight())
        inflight.waiters += 1
        try:
            async with inflight.lock:
                return await self._complete(model, request, group_id)
        finally:
            inflight.waiters -= 1
            if inflight.waiters == 0:
                self._inflight.pop(key, None)

    async def _complete(
        self, model: str, request: dict[str, Any], group_id: str | None
    ) -> CompletionResult:
        lookup = await self._store.lookup(model, request, group_id)
        record = lookup.record
        if record is not None and record.response is not None:
            logger.debug(f"Completion cache hit for model '{model}' (id {record.id})")
            return CompletionResult(
                response=record.response,
                completion_id=record.id,
                took=record.took,
                cost=record.cost,
                cached=True,
            )
        if lookup.status is LookupStatus.UNAVAILABLE:
            logger.warning(
                f"Completion cache unavailable ({lookup.error}); calling model '{model}'"
            )

        start = time.perf_counter()
        try:
            response = await self._client.create_completion(request)
        except Exception as e:
            raise CompletionClientError(
                f"Completion request for model '{model}' failed: {e}"
            ) from e
        took = int((time.perf_counter() - start) * 1000)

        cost = self._pricing(response)
        completion_id = await self._store.insert(
            model, request, response, took, cost, group_id, strict=False
        )
        return CompletionResult(
            response=response,
            completion_id=completion_id,
            took=took,
            cost=cost,
            cached=False,
        )

    async def costs(
        self,
        cost_filter: CostSummaryFilter | Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> list[CostBucket]:
        """Cost summary of stored completions; see CompletionStore.cost_summary()."""
        return await self._store.cost_summary(cost_filter, **kwargs)
