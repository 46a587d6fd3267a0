"""Completion store factory.

Selects and builds a store backend from explicit configuration, or from
environment variables when none is given.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from completion_cache.configuration import CompletionStoreConfiguration
from completion_cache.errors import StoreConfigurationError
from completion_cache.postgres import PostgresCompletionStore
from completion_cache.sqlite import SQLiteCompletionStore
from completion_cache.store import CompletionStore

logger = logging.getLogger(__name__)


class CompletionStoreFactory:
    """Factory for creating completion store instances.

    Example:
        ```python
        # Zero-config (reads from environment)
        store = CompletionStoreFactory().create()

        # Explicit configuration
        config = CompletionStoreConfiguration(backend="sqlite", sqlite_path="llm.db")
        store = CompletionStoreFactory(config).create()
        ```

    """

    def __init__(self, config: CompletionStoreConfiguration | None = None) -> None:
        """Initialise factory with optional configuration.

        Args:
            config: Optional explicit configuration. If None, configuration is
                   read from environment variables.

        """
        self._config = config

    def _get_config(self) -> CompletionStoreConfiguration | None:
        """Get configuration, either from constructor or environment.

        Returns:
            Configuration instance, or None if configuration is invalid.

        """
        if self._config:
            return self._config

        try:
            return CompletionStoreConfiguration.from_properties({})
        except ValidationError as e:
            logger.debug(f"Cannot create configuration from environment: {e}")
            return None

    def can_create(self) -> bool:
        """Check if a store can be created with the current configuration."""
        return self._get_config() is not None

    def create(self) -> CompletionStore | None:
        """Create a completion store instance.

        Returns:
            CompletionStore instance, or None if configuration is invalid.

        """
        config = self._get_config()
        if not config:
            logger.debug("Cannot create completion store - configuration invalid")
            return None

        if config.backend == "postgres":
            if not config.database_url:
                raise StoreConfigurationError(
                    "database_url is required for the postgres backend"
                )
            logger.info("Creating PostgreSQL completion store")
            return PostgresCompletionStore.from_url(
                config.database_url,
                pool_size=config.pool_size,
                pool_timeout=config.pool_timeout,
                strict_writes=config.strict_writes,
            )

        logger.info(f"Creating SQLite completion store at {config.sqlite_path}")
        return SQLiteCompletionStore(
            config.sqlite_path, strict_writes=config.strict_writes
        )
