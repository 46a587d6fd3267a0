"""Shared fixtures for completion cache tests."""

import sqlite3
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from completion_cache.sqlite import SQLiteCompletionStore

MODEL = "gpt-4o-mini"


def make_request(content: str = "Is the sky blue?", **overrides: Any) -> dict[str, Any]:
    """Build a chat request with a stable field order."""
    request: dict[str, Any] = {
        "model": MODEL,
        "messages": [
            {"role": "system", "content": "You are a helpful assistant."},
            {"role": "user", "content": content},
        ],
        "temperature": 0.0,
        "stream": False,
    }
    request.update(overrides)
    return request


def make_response(
    content: str = "Yes.", prompt_tokens: int = 1000, completion_tokens: int = 500
) -> dict[str, Any]:
    """Build a chat completion response with usage."""
    return {
        "id": "chatcmpl-123",
        "model": MODEL,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
        },
    }


def execute_raw(db_path: Path, sql: str, params: tuple[Any, ...] = ()) -> None:
    """Run a statement on a separate connection, simulating external curation."""
    conn = sqlite3.connect(db_path)
    try:
        conn.execute(sql, params)
        conn.commit()
    finally:
        conn.close()


def query_raw(db_path: Path, sql: str, params: tuple[Any, ...] = ()) -> list[Any]:
    conn = sqlite3.connect(db_path)
    try:
        return conn.execute(sql, params).fetchall()
    finally:
        conn.close()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "cache.sqlite"


@pytest.fixture
async def store(db_path: Path) -> AsyncIterator[SQLiteCompletionStore]:
    store = SQLiteCompletionStore(db_path)
    yield store
    await store.close()
