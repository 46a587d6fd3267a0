"""Configuration for completion stores.

Configuration supports both explicit instantiation and environment variable
fallback, following a layered lookup:
1. Explicit properties (highest priority)
2. Environment variables (fallback)
3. Defaults (lowest priority)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_TRUTHY = {"1", "true", "yes", "on"}


class CompletionStoreConfiguration(BaseModel):
    """Validated completion store configuration.

    Attributes:
        backend: 'sqlite' (embedded file) or 'postgres' (networked).
        sqlite_path: Database file for the sqlite backend.
        database_url: Connection URL for the postgres backend.
        pool_size: Pooled connections for the postgres backend.
        pool_timeout: Seconds to wait for a pooled connection.
        strict_writes: Raise on failed inserts instead of returning None.

    Example:
        ```python
        # Explicit configuration
        config = CompletionStoreConfiguration(backend="sqlite", sqlite_path="cache.sqlite")

        # From properties dict with env fallback
        config = CompletionStoreConfiguration.from_properties({"backend": "postgres"})
        ```

    """

    model_config = ConfigDict(
        # Immutable - configuration cannot be modified after creation
        frozen=True,
        # Strict - extra fields not in the model are rejected
        extra="forbid",
    )

    backend: Literal["sqlite", "postgres"] = Field(
        default="sqlite", description="Backend type: 'sqlite' or 'postgres'"
    )
    sqlite_path: Path = Field(default=Path("cache.sqlite"))
    database_url: str | None = Field(default=None)
    pool_size: int = Field(default=5, gt=0)
    pool_timeout: float = Field(default=30.0, gt=0)
    strict_writes: bool = Field(default=False)

    @field_validator("backend", mode="before")
    @classmethod
    def normalise_backend(cls, v: Any) -> Any:
        """Accept backend names in any case."""
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @model_validator(mode="after")
    def require_database_url(self) -> Self:
        """The postgres backend cannot be created without a URL."""
        if self.backend == "postgres" and not self.database_url:
            raise ValueError("database_url is required for the postgres backend")
        return self

    @classmethod
    def from_properties(cls, properties: dict[str, Any]) -> Self:
        """Create configuration from properties with environment fallback.

        Environment variables used:
        - COMPLETION_STORE_BACKEND: Backend type (default: "sqlite")
        - COMPLETION_STORE_SQLITE_PATH: SQLite file path
        - COMPLETION_STORE_DATABASE_URL: PostgreSQL URL
        - COMPLETION_STORE_STRICT_WRITES: "1"/"true" to enable strict writes

        Args:
            properties: Configuration properties dictionary

        Returns:
            Validated configuration instance

        Raises:
            ValidationError: If configuration is invalid

        """
        config_data = properties.copy()

        if "backend" not in config_data:
            config_data["backend"] = os.getenv("COMPLETION_STORE_BACKEND", "sqlite")

        if "sqlite_path" not in config_data:
            sqlite_path = os.getenv("COMPLETION_STORE_SQLITE_PATH")
            if sqlite_path:
                config_data["sqlite_path"] = sqlite_path

        if "database_url" not in config_data:
            database_url = os.getenv("COMPLETION_STORE_DATABASE_URL")
            if database_url:
                config_data["database_url"] = database_url

        if "strict_writes" not in config_data:
            strict = os.getenv("COMPLETION_STORE_STRICT_WRITES")
            if strict is not None:
                config_data["strict_writes"] = strict.strip().lower() in _TRUTHY

        return cls.model_validate(config_data)
