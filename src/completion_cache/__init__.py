"""LLM completion memoisation and cost accounting."""

from completion_cache.configuration import CompletionStoreConfiguration
from completion_cache.errors import (
    CompletionCacheError,
    CompletionClientError,
    CompletionStoreError,
    InvalidCostFilterError,
    StoreClosedError,
    StoreConfigurationError,
    StoreConnectionError,
    StoreWriteError,
)
from completion_cache.factory import CompletionStoreFactory
from completion_cache.fingerprint import canonical_json, fingerprint
from completion_cache.postgres import PostgresCompletionStore
from completion_cache.pricing import compute_cost
from completion_cache.service import (
    CachedCompletionService,
    CompletionClient,
    CompletionResult,
    build_request,
)
from completion_cache.sqlite import SQLiteCompletionStore
from completion_cache.store import CompletionStore
from completion_cache.types import (
    CacheLookup,
    CompletionRecord,
    CostBucket,
    CostSummaryFilter,
    LookupStatus,
    StoreState,
)

__all__ = [
    "CacheLookup",
    "CachedCompletionService",
    "CompletionCacheError",
    "CompletionClient",
    "CompletionClientError",
    "CompletionRecord",
    "CompletionResult",
    "CompletionStore",
    "CompletionStoreConfiguration",
    "CompletionStoreError",
    "CompletionStoreFactory",
    "CostBucket",
    "CostSummaryFilter",
    "InvalidCostFilterError",
    "LookupStatus",
    "PostgresCompletionStore",
    "SQLiteCompletionStore",
    "StoreClosedError",
    "StoreConfigurationError",
    "StoreConnectionError",
    "StoreState",
    "StoreWriteError",
    "build_request",
    "canonical_json",
    "compute_cost",
    "fingerprint",
]
