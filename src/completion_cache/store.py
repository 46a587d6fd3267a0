"""Async CompletionStore interface shared by all backends.

The base class owns everything that must behave identically across backends:
- Fingerprinting of requests
- The lazy schema state machine (UNINITIALIZED -> READY -> CLOSED)
- Cost filter validation
- The error policy (reads degrade to empty, writes roll back and return None
  unless strict writes are requested)
- Conversion of raw rows into CompletionRecord / CostBucket

Backends only implement connection handling and the queries themselves.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from types import TracebackType
from typing import Any, ClassVar, Self

from pydantic import JsonValue

from completion_cache.errors import (
    CompletionStoreError,
    StoreClosedError,
    StoreWriteError,
)
from completion_cache.fingerprint import fingerprint
from completion_cache.types import (
    CacheLookup,
    CompletionRecord,
    CostBucket,
    CostSummaryFilter,
    LookupStatus,
    StoreState,
)

logger = logging.getLogger(__name__)

# Bucket key formats for interval cost summaries, identical on every backend
BUCKET_FORMATS = {
    "day": "%Y-%m-%d",
    "hour": "%Y-%m-%d %H:00:00",
}


@dataclass(frozen=True)
class NewCompletion:
    """A completion about to be written. The store assigns id and created."""

    model: str
    prompt_hash: str
    prompt: JsonValue
    response: JsonValue
    took: int | None = None
    cost: Decimal | float | int | None = None
    group_id: str | None = None
    label: str = "new"


class CompletionStore(ABC):
    """Abstract base class for async completion store implementations.

    A store persists completed model calls keyed by (model, fingerprint) and
    optionally scoped by group id. Duplicate rows for the same key are legal:
    concurrent misses may both insert. Every read returns live rows in
    ascending id order so the first element is the canonical hit.

    An absent group id on read matches rows of any group. On write it is
    stored as NULL.
    """

    # Exceptions raised by the backend driver that count as storage failures
    _backend_errors: ClassVar[tuple[type[Exception], ...]] = ()

    def __init__(self, *, strict_writes: bool = False) -> None:
        """Initialise store state.

        Args:
            strict_writes: Raise StoreWriteError from insert() on failure
                instead of logging and returning None.

        """
        self._state = StoreState.UNINITIALIZED
        self._state_lock = asyncio.Lock()
        self._strict_writes = strict_writes

    @property
    def state(self) -> StoreState:
        """Current lifecycle state of the store."""
        return self._state

    @property
    def strict_writes(self) -> bool:
        return self._strict_writes

    @property
    def _storage_errors(self) -> tuple[type[Exception], ...]:
        return (CompletionStoreError, *self._backend_errors)

    # ========================================================================
    # Backend hooks
    # ========================================================================

    @abstractmethod
    async def _create_schema(self) -> None:
        """Create the completions table if missing."""
        ...

    @abstractmethod
    async def _select_exact(
        self, request: Any, group_id: str | None
    ) -> list[Mapping[str, Any]]:
        """Fetch live rows whose stored prompt equals the request."""
        ...

    @abstractmethod
    async def _select_by_fingerprint(
        self, model: str, prompt_hash: str, group_id: str | None
    ) -> list[Mapping[str, Any]]:
        """Fetch live rows for (model, prompt_hash[, group_id])."""
        ...

    @abstractmethod
    async def _insert_row(self, row: NewCompletion) -> int:
        """Write one row inside a transaction and return its id."""
        ...

    @abstractmethod
    async def _aggregate_costs(
        self, cost_filter: CostSummaryFilter
    ) -> list[Mapping[str, Any]]:
        """Run the COUNT/SUM/AVG aggregation for the filter."""
        ...

    @abstractmethod
    async def _release(self) -> None:
        """Release the connection, handle or pool."""
        ...

    def _decode_document(self, column: str, value: Any, row_id: Any) -> JsonValue:
        """Turn a stored JSON column value into Python data."""
        return value

    def _decode_timestamp(self, value: Any) -> datetime | None:
        """Turn a stored timestamp into an aware datetime."""
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def _ensure_ready(self) -> None:
        """Run schema setup once per store lifetime.

        Raises:
            StoreClosedError: If the store has been closed.

        """
        if self._state is StoreState.READY:
            return
        async with self._state_lock:
            if self._state is StoreState.CLOSED:
                raise StoreClosedError(f"{type(self).__name__} is closed.")
            if self._state is StoreState.UNINITIALIZED:
                await self._create_schema()
                self._state = StoreState.READY
                logger.debug(f"{type(self).__name__} schema ready")

    async def close(self) -> None:
        """Release backend resources. Further operations are rejected."""
        async with self._state_lock:
            if self._state is StoreState.CLOSED:
                return
            await self._release()
            self._state = StoreState.CLOSED

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ========================================================================
    # Read Operations
    # ========================================================================

    async def find_exact(
        self, request: Any, group_id: str | None = None
    ) -> list[CompletionRecord]:
        """Find live completions whose full request equals `request`.

        Compares the stored request itself rather than its fingerprint, for
        callers that do not want to rely on the digest.

        Args:
            request: The request object to match.
            group_id: Restrict to this group. None matches any group.

        Returns:
            Matching records in ascending id order. Empty on no match or if
            storage is unavailable.

        """
        try:
            await self._ensure_ready()
            rows = await self._select_exact(request, group_id)
        except self._storage_errors as e:
            logger.warning(f"Exact completion lookup failed: {e}")
            return []
        return [self._record_from_row(row) for row in rows]

    async def lookup(
        self, model: str, request: Any, group_id: str | None = None
    ) -> CacheLookup:
        """Look up a completion by model and request fingerprint.

        Unlike find_by_fingerprint(), a storage failure is reported as
        LookupStatus.UNAVAILABLE rather than looking like a miss.

        Args:
            model: Model identifier.
            request: The request object; its fingerprint is the lookup key.
            group_id: Restrict to this group. None matches any group.

        Returns:
            CacheLookup with status HIT, MISS or UNAVAILABLE.

        """
        prompt_hash = fingerprint(request)
        try:
            await self._ensure_ready()
            rows = await self._select_by_fingerprint(model, prompt_hash, group_id)
        except self._storage_errors as e:
            logger.warning(f"Completion lookup failed for model '{model}': {e}")
            return CacheLookup(status=LookupStatus.UNAVAILABLE, error=str(e))

        if not rows:
            return CacheLookup(status=LookupStatus.MISS)

        records = tuple(self._record_from_row(row) for row in rows)
        if len(records) > 1:
            logger.debug(
                f"{len(records)} live completions for model '{model}' and "
                f"hash {prompt_hash}; using id {records[0].id}"
            )
        return CacheLookup(status=LookupStatus.HIT, matches=records)

    async def find_by_fingerprint(
        self, model: str, request: Any, group_id: str | None = None
    ) -> list[CompletionRecord]:
        """Find live completions for (model, fingerprint(request)).

        Args:
            model: Model identifier.
            request: The request object; its fingerprint is the lookup key.
            group_id: Restrict to this group. None matches any group.

        Returns:
            Matching records in ascending id order, the first being the
            canonical hit. Empty on no match or if storage is unavailable.

        """
        result = await self.lookup(model, request, group_id)
        return list(result.matches)

    # ========================================================================
    # Write Operations
    # ========================================================================

    async def insert(
        self,
        model: str,
        request: Any,
        response: Any,
        took: int | None = None,
        cost: Decimal | float | int | None = None,
        group_id: str | None = None,
        *,
        strict: bool | None = None,
    ) -> int | None:
        """Persist a completed model call.

        The row is written atomically with label 'new'; creation time comes
        from the database clock.

        Args:
            model: Model identifier.
            request: The full request as sent to the model.
            response: The full response as received.
            took: Elapsed time of the model call in milliseconds.
            cost: Monetary cost of the call.
            group_id: Partition key, stored as NULL when absent.
            strict: Override the store's strict_writes setting for this call.

        Returns:
            The new row id, or None if the write failed in non-strict mode.

        Raises:
            StoreWriteError: If the write failed and strict mode is on.

        """
        strict = self._strict_writes if strict is None else strict
        try:
            row = NewCompletion(
                model=model,
                prompt_hash=fingerprint(request),
                prompt=request,
                response=response,
                took=took,
                cost=cost,
                group_id=group_id,
            )
            await self._ensure_ready()
            completion_id = await self._insert_row(row)
        except (TypeError, ValueError, *self._storage_errors) as e:
            message = f"Failed to insert completion for model '{model}': {e}"
            if strict:
                raise StoreWriteError(message) from e
            logger.error(message)
            return None

        logger.debug(f"Stored completion {completion_id} for model '{model}'")
        return completion_id

    # ========================================================================
    # Cost Accounting
    # ========================================================================

    async def cost_summary(
        self,
        cost_filter: CostSummaryFilter | Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> list[CostBucket]:
        """Aggregate cost of live completions.

        Filters: group_id (exact), start (inclusive), end (exclusive). Rows are
        bucketed by group id, or by creation time truncated to `interval`
        ('day' or 'hour') when given. Ungrouped rows form a bucket of None.

        Args:
            cost_filter: A CostSummaryFilter or mapping of filter fields.
            **kwargs: Filter fields, overriding those in cost_filter.

        Returns:
            One CostBucket per bucket, ordered by bucket ascending with the
            None bucket first. Empty if storage is unavailable.

        Raises:
            InvalidCostFilterError: If the filter is invalid. Raised before
                storage is touched.

        """
        validated = CostSummaryFilter.build(cost_filter, **kwargs)
        try:
            await self._ensure_ready()
            rows = await self._aggregate_costs(validated)
        except self._storage_errors as e:
            logger.warning(f"Cost summary failed: {e}")
            return []

        return [
            CostBucket(
                bucket=_format_bucket(row["bucket"], validated.interval),
                count=int(row["count"]),
                total_cost=_to_decimal(row["total_cost"]),
                avg_cost=_to_decimal(row["avg_cost"]),
            )
            for row in rows
        ]

    # ========================================================================
    # Row conversion
    # ========================================================================

    def _record_from_row(self, row: Mapping[str, Any]) -> CompletionRecord:
        row_id = row["id"]
        return CompletionRecord(
            id=row_id,
            model=row["model"],
            prompt_hash=row["prompt_hash"],
            prompt=self._decode_document("prompt", row["prompt"], row_id),
            response=self._decode_document("response", row["response"], row_id),
            gold=self._decode_document("gold", row["gold"], row_id),
            label=row["label"],
            took=row["took"],
            cost=_to_decimal(row["cost"]),
            group_id=row["groupid"],
            created=self._decode_timestamp(row["created"]),
            updated=self._decode_timestamp(row["updated"]),
        )


def _to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _format_bucket(value: Any, interval: str | None) -> str | None:
    if value is None:
        return None
    if interval is not None and isinstance(value, datetime):
        return value.strftime(BUCKET_FORMATS[interval])
    return str(value)
