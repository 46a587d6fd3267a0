"""Core types for the completion cache.

This module defines the data shapes exchanged with store callers:
- CompletionRecord: One persisted completion row
- CostBucket: One row of a cost summary
- CostSummaryFilter: Validated cost summary parameters
- StoreState: Lifecycle state of a store instance
- LookupStatus / CacheLookup: Explicit cache lookup result
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum, auto
from typing import Any, Literal, Self

from pydantic import BaseModel, ConfigDict, JsonValue, ValidationError, field_validator

from completion_cache.errors import InvalidCostFilterError

CostInterval = Literal["day", "hour"]


class CompletionRecord(BaseModel):
    """A persisted completion.

    Rows are immutable from the store's point of view: they are created once by
    insert and only ever changed by external curation (gold, label, updated,
    soft delete).
    """

    model_config = ConfigDict(frozen=True)

    id: int
    model: str
    prompt_hash: str
    prompt: JsonValue
    response: JsonValue
    gold: JsonValue = None
    label: str | None = "new"
    took: int | None = None
    cost: Decimal | None = None
    group_id: str | None = None
    created: datetime | None = None
    updated: datetime | None = None


class CostBucket(BaseModel):
    """Aggregated cost for one bucket (group id or time interval)."""

    model_config = ConfigDict(frozen=True)

    bucket: str | None
    count: int
    total_cost: Decimal | None
    avg_cost: Decimal | None


class CostSummaryFilter(BaseModel):
    """Parameters accepted by cost_summary().

    Attributes:
        group_id: Restrict to a single group.
        start: Inclusive lower bound on the creation time.
        end: Exclusive upper bound on the creation time.
        interval: Bucket by 'day' or 'hour' instead of by group id.

    Naive datetimes and ISO strings without an offset are taken as UTC.

    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    group_id: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    interval: CostInterval | None = None

    @field_validator("start", "end", mode="before")
    @classmethod
    def parse_bound(cls, v: Any) -> Any:
        """Accept dates, datetimes and ISO 8601 strings."""
        if isinstance(v, str):
            v = datetime.fromisoformat(v)
        elif isinstance(v, date) and not isinstance(v, datetime):
            v = datetime(v.year, v.month, v.day)
        if isinstance(v, datetime) and v.tzinfo is None:
            v = v.replace(tzinfo=UTC)
        return v

    @classmethod
    def build(
        cls, value: CostSummaryFilter | Mapping[str, Any] | None = None, **kwargs: Any
    ) -> Self:
        """Create a filter from an instance, a mapping and/or keyword arguments.

        Raises:
            InvalidCostFilterError: If any parameter is invalid.

        """
        if isinstance(value, cls) and not kwargs:
            return value
        data: dict[str, Any] = {}
        if isinstance(value, BaseModel):
            data.update(value.model_dump(exclude_none=True))
        elif value is not None:
            data.update(value)
        data.update(kwargs)
        try:
            return cls.model_validate(data)
        except (ValidationError, ValueError) as e:
            raise InvalidCostFilterError(f"Invalid cost summary filter: {e}") from e


class StoreState(Enum):
    """Lifecycle of a completion store instance."""

    UNINITIALIZED = auto()
    """Schema not yet ensured; the next operation will run DDL."""

    READY = auto()
    """Schema ensured; operations go straight to the backend."""

    CLOSED = auto()
    """Resources released; operations fail with StoreClosedError."""


class LookupStatus(Enum):
    """Outcome of a cache lookup."""

    HIT = auto()
    MISS = auto()
    UNAVAILABLE = auto()


@dataclass(frozen=True)
class CacheLookup:
    """Result of CompletionStore.lookup().

    On a hit, `record` is the canonical (lowest id) row and `matches` holds
    every live row for the key in id order.
    """

    status: LookupStatus
    matches: tuple[CompletionRecord, ...] = ()
    error: str | None = None

    @property
    def record(self) -> CompletionRecord | None:
        """The canonical record, or None unless this is a hit."""
        return self.matches[0] if self.matches else None

    @property
    def hit(self) -> bool:
        return self.status is LookupStatus.HIT
