"""PostgreSQL-backed completion store.

Uses a SQLAlchemy AsyncEngine (asyncpg driver) as the connection pool.
Request and response documents live in JSONB columns, so exact-match lookups
use native jsonb equality and are insensitive to key order.

Statement builders are module-level functions so the generated SQL can be
inspected without a database.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, ClassVar, Self, override

from sqlalchemy import Insert, Select, cast, false, func, insert, literal_column, select
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from completion_cache.errors import StoreConnectionError
from completion_cache.schema import completions, ensure_postgres_schema
from completion_cache.store import CompletionStore, NewCompletion
from completion_cache.types import CostSummaryFilter

logger = logging.getLogger(__name__)

_SELECT_COLUMNS = (
    completions.c.id,
    completions.c.model,
    completions.c.prompt_hash,
    completions.c.prompt,
    completions.c.response,
    completions.c.gold,
    completions.c.label,
    completions.c.took,
    completions.c.cost,
    completions.c.groupid,
    completions.c.created,
    completions.c.updated,
)


def async_database_url(url: str) -> str:
    """Point a plain postgres URL at the asyncpg driver."""
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix) :]
    return url


# ============================================================================
# Statement builders
# ============================================================================


def select_exact_statement(request: Any, group_id: str | None) -> Select[Any]:
    """SELECT live rows whose prompt document equals the request.

    The request is bound as a JSONB document, exactly as insert_statement()
    binds the stored prompt.
    """
    stmt = select(*_SELECT_COLUMNS).where(
        completions.c.prompt == cast(request, JSONB),
        completions.c.isdeleted == false(),
    )
    if group_id is not None:
        stmt = stmt.where(completions.c.groupid == group_id)
    return stmt.order_by(completions.c.id.asc())


def select_by_fingerprint_statement(
    model: str, prompt_hash: str, group_id: str | None
) -> Select[Any]:
    """SELECT live rows for (model, prompt_hash[, groupid])."""
    stmt = select(*_SELECT_COLUMNS).where(
        completions.c.model == model,
        completions.c.prompt_hash == prompt_hash,
        completions.c.isdeleted == false(),
    )
    if group_id is not None:
        stmt = stmt.where(completions.c.groupid == group_id)
    return stmt.order_by(completions.c.id.asc())


def insert_statement(row: NewCompletion) -> Insert:
    """INSERT one completion, returning its id."""
    return (
        insert(completions)
        .values(
            model=row.model,
            prompt_hash=row.prompt_hash,
            prompt=row.prompt,
            response=row.response,
            label=row.label,
            took=row.took,
            cost=row.cost,
            groupid=row.group_id,
        )
        .returning(completions.c.id)
    )


def cost_summary_statement(cost_filter: CostSummaryFilter) -> Select[Any]:
    """Aggregate COUNT/SUM/AVG of cost per bucket."""
    conditions = [completions.c.isdeleted == false()]
    if cost_filter.group_id is not None:
        conditions.append(completions.c.groupid == cost_filter.group_id)
    if cost_filter.start is not None:
        conditions.append(completions.c.created >= cost_filter.start)
    if cost_filter.end is not None:
        conditions.append(completions.c.created < cost_filter.end)

    if cost_filter.interval is None:
        bucket = completions.c.groupid.label("bucket")
    else:
        # interval is validated to 'day' or 'hour'; literals keep the
        # SELECT and GROUP BY expressions identical
        bucket = func.date_trunc(
            literal_column(f"'{cost_filter.interval}'"),
            func.timezone(literal_column("'UTC'"), completions.c.created),
        ).label("bucket")

    return (
        select(
            bucket,
            func.count().label("count"),
            func.sum(completions.c.cost).label("total_cost"),
            func.avg(completions.c.cost).label("avg_cost"),
        )
        .where(*conditions)
        .group_by(bucket)
        .order_by(bucket.asc().nulls_first())
    )


# ============================================================================
# Store
# ============================================================================


class PostgresCompletionStore(CompletionStore):
    """Completion store backed by PostgreSQL through a pooled AsyncEngine.

    Example:
        ```python
        store = PostgresCompletionStore.from_url("postgresql://localhost/llm")
        completion_id = await store.insert(model, request, response, took, cost)
        summary = await store.cost_summary(interval="day")
        await store.close()
        ```

    """

    _backend_errors: ClassVar[tuple[type[Exception], ...]] = (SQLAlchemyError, OSError)

    def __init__(
        self,
        engine: AsyncEngine,
        *,
        owns_engine: bool = False,
        strict_writes: bool = False,
    ) -> None:
        """Initialise the store around an existing engine.

        Args:
            engine: Async engine whose pool serves all operations.
            owns_engine: Dispose the engine when the store is closed.
            strict_writes: Raise from insert() instead of returning None.

        """
        super().__init__(strict_writes=strict_writes)
        self._engine = engine
        self._owns_engine = owns_engine

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        pool_size: int = 5,
        pool_timeout: float = 30.0,
        strict_writes: bool = False,
    ) -> Self:
        """Create a store with its own connection pool.

        Args:
            url: Database URL. Plain postgresql:// URLs use asyncpg.
            pool_size: Number of pooled connections.
            pool_timeout: Seconds to wait for a free connection.
            strict_writes: Raise from insert() instead of returning None.

        """
        engine = create_async_engine(
            async_database_url(url),
            pool_size=pool_size,
            pool_timeout=pool_timeout,
            pool_pre_ping=True,
        )
        logger.info("Created PostgreSQL completion store engine")
        return cls(engine, owns_engine=True, strict_writes=strict_writes)

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def _fetch_all(self, stmt: Select[Any]) -> list[Mapping[str, Any]]:
        async with self._engine.connect() as conn:
            result = await conn.execute(stmt)
            return list(result.mappings().all())

    @override
    async def _create_schema(self) -> None:
        try:
            async with self._engine.begin() as conn:
                await ensure_postgres_schema(conn)
        except (SQLAlchemyError, OSError) as e:
            raise StoreConnectionError(f"Cannot prepare PostgreSQL schema: {e}") from e

    @override
    async def _release(self) -> None:
        if self._owns_engine:
            await self._engine.dispose()

    @override
    async def _select_exact(
        self, request: Any, group_id: str | None
    ) -> list[Mapping[str, Any]]:
        return await self._fetch_all(select_exact_statement(request, group_id))

    @override
    async def _select_by_fingerprint(
        self, model: str, prompt_hash: str, group_id: str | None
    ) -> list[Mapping[str, Any]]:
        return await self._fetch_all(
            select_by_fingerprint_statement(model, prompt_hash, group_id)
        )

    @override
    async def _insert_row(self, row: NewCompletion) -> int:
        # begin() commits on success and rolls back on any exception
        async with self._engine.begin() as conn:
            result = await conn.execute(insert_statement(row))
            return result.scalar_one()

    @override
    async def _aggregate_costs(
        self, cost_filter: CostSummaryFilter
    ) -> list[Mapping[str, Any]]:
        return await self._fetch_all(cost_summary_statement(cost_filter))
