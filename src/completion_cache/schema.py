"""Completion table definitions and idempotent schema setup.

Both backends declare the same logical columns. SQLite keeps JSON documents
as serialised text; PostgreSQL stores them as JSONB. Setup only ever creates
missing objects, it never drops or alters existing ones.
"""

from __future__ import annotations

import logging
import sqlite3

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    Table,
    Text,
    false,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.schema import CreateIndex, CreateTable

logger = logging.getLogger(__name__)

TABLE_NAME = "completions"
INDEX_NAME = "ix_completions_model_prompt_hash"

# Logical column set shared by both backends, in declaration order
COLUMN_NAMES = (
    "id",
    "model",
    "prompt_hash",
    "prompt",
    "response",
    "gold",
    "label",
    "took",
    "cost",
    "groupid",
    "created",
    "updated",
    "isdeleted",
)

# ============================================================================
# SQLite
# ============================================================================

SQLITE_CREATE_TABLE = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    model       TEXT     NOT NULL,
    prompt_hash TEXT     NOT NULL,
    prompt      TEXT     NOT NULL,
    response    TEXT     NOT NULL,
    gold        TEXT,
    label       TEXT     DEFAULT 'new',
    took        INTEGER,
    cost        NUMERIC,
    groupid     TEXT,
    created     DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated     DATETIME,
    isdeleted   BOOLEAN  DEFAULT 0
)
"""

SQLITE_CREATE_INDEX = (
    f"CREATE INDEX IF NOT EXISTS {INDEX_NAME} ON {TABLE_NAME} (model, prompt_hash)"
)


def ensure_sqlite_schema(connection: sqlite3.Connection) -> None:
    """Create the completions table and lookup index if they are missing.

    Args:
        connection: Open SQLite connection (autocommit mode).

    """
    connection.execute(SQLITE_CREATE_TABLE)
    connection.execute(SQLITE_CREATE_INDEX)
    logger.debug(f"Ensured SQLite schema for table '{TABLE_NAME}'")


# ============================================================================
# PostgreSQL
# ============================================================================

metadata = MetaData()

completions = Table(
    TABLE_NAME,
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("model", Text, nullable=False),
    Column("prompt_hash", Text, nullable=False),
    Column("prompt", JSONB, nullable=False),
    Column("response", JSONB, nullable=False),
    Column("gold", JSONB),
    Column("label", Text, server_default=text("'new'")),
    Column("took", Integer),
    Column("cost", Numeric),
    Column("groupid", Text),
    Column("created", DateTime(timezone=True), server_default=func.now()),
    Column("updated", DateTime(timezone=True)),
    Column("isdeleted", Boolean, server_default=false()),
    Index(INDEX_NAME, "model", "prompt_hash"),
)


async def ensure_postgres_schema(connection: AsyncConnection) -> None:
    """Create the completions table and lookup index if they are missing.

    Args:
        connection: Async SQLAlchemy connection, normally inside a transaction.

    """
    await connection.execute(CreateTable(completions, if_not_exists=True))
    for index in completions.indexes:
        await connection.execute(CreateIndex(index, if_not_exists=True))
    logger.debug(f"Ensured PostgreSQL schema for table '{TABLE_NAME}'")
