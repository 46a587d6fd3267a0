"""Error classes for the completion cache.

This module provides:
- CompletionCacheError: Base exception class for all completion cache errors
- CompletionStoreError, StoreConnectionError, StoreWriteError, StoreClosedError: Store exceptions
- InvalidCostFilterError: Cost summary filter validation exception
- StoreConfigurationError: Store configuration exception
- CompletionClientError: Remote model call exception
"""


class CompletionCacheError(Exception):
    """Base exception for all completion cache errors."""

    pass


class CompletionStoreError(CompletionCacheError):
    """Base exception for completion store related errors."""

    pass


class StoreConnectionError(CompletionStoreError):
    """Raised when the backing database cannot be opened or prepared."""

    pass


class StoreWriteError(CompletionStoreError):
    """Raised when an insert fails and strict writes are requested.

    The transaction has already been rolled back when this is raised.
    """

    pass


class StoreClosedError(CompletionStoreError):
    """Raised when an operation is issued against a closed store."""

    pass


class InvalidCostFilterError(CompletionCacheError, ValueError):
    """Raised when cost summary filter parameters are invalid."""

    pass


class StoreConfigurationError(CompletionCacheError):
    """Raised when completion store configuration is invalid."""

    pass


class CompletionClientError(CompletionCacheError):
    """Raised when the remote model call fails."""

    pass
