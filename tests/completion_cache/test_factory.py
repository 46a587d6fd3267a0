"""Tests for CompletionStoreFactory."""

from __future__ import annotations

from pathlib import Path

import pytest

from completion_cache.configuration import CompletionStoreConfiguration
from completion_cache.factory import CompletionStoreFactory
from completion_cache.postgres import PostgresCompletionStore
from completion_cache.sqlite import SQLiteCompletionStore

from .test_configuration import COMPLETION_STORE_ENV_VARS


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in COMPLETION_STORE_ENV_VARS:
        monkeypatch.delenv(var, raising=False)


class TestCompletionStoreFactory:
    """Test store creation from explicit configuration."""

    async def test_creates_sqlite_store(self, tmp_path: Path) -> None:
        config = CompletionStoreConfiguration(
            backend="sqlite", sqlite_path=tmp_path / "llm.db", strict_writes=True
        )

        store = CompletionStoreFactory(config).create()

        assert isinstance(store, SQLiteCompletionStore)
        assert store.db_path == tmp_path / "llm.db"
        assert store.strict_writes is True
        await store.close()

    async def test_creates_postgres_store_with_own_engine(self) -> None:
        config = CompletionStoreConfiguration(
            backend="postgres", database_url="postgresql://user@localhost/llm"
        )

        store = CompletionStoreFactory(config).create()

        assert isinstance(store, PostgresCompletionStore)
        assert store.engine.url.drivername == "postgresql+asyncpg"
        await store.close()

    def test_can_create_with_explicit_configuration(self) -> None:
        factory = CompletionStoreFactory(CompletionStoreConfiguration())

        assert factory.can_create() is True


class TestCompletionStoreFactoryEnvironment:
    """Test store creation from environment variables."""

    async def test_zero_config_creates_sqlite_store(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        monkeypatch.setenv("COMPLETION_STORE_SQLITE_PATH", str(tmp_path / "env.db"))

        store = CompletionStoreFactory().create()

        assert isinstance(store, SQLiteCompletionStore)
        assert store.db_path == tmp_path / "env.db"
        await store.close()

    def test_invalid_environment_cannot_create(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("COMPLETION_STORE_BACKEND", "invalid_backend")

        factory = CompletionStoreFactory()

        assert factory.can_create() is False
        assert factory.create() is None

    def test_postgres_without_url_cannot_create(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("COMPLETION_STORE_BACKEND", "postgres")

        assert CompletionStoreFactory().create() is None
