"""SQLite-backed completion store.

Uses a single `sqlite3` connection in WAL mode. Calls run on worker threads
via asyncio.to_thread and are serialised by an asyncio.Lock, so the handle is
never used by two operations at once.

JSON documents (prompt, response, gold) are stored as compact JSON text;
the prompt text is the same canonical form that is fingerprinted, which is
what makes exact-match lookups a plain text comparison.

Costs are stored with NUMERIC affinity and summed as scaled integers, so cost
summaries are exact to COST_DIGITS decimal places.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, ClassVar, override

from pydantic import JsonValue

from completion_cache.errors import StoreClosedError, StoreConnectionError
from completion_cache.fingerprint import canonical_json
from completion_cache.schema import TABLE_NAME, ensure_sqlite_schema
from completion_cache.store import BUCKET_FORMATS, CompletionStore, NewCompletion
from completion_cache.types import CostSummaryFilter

logger = logging.getLogger(__name__)

_SELECT_COLUMNS = (
    "id, model, prompt_hash, prompt, response, gold, label, took, cost, "
    "groupid, created, updated"
)

# Format of CURRENT_TIMESTAMP, always UTC
_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

# Costs are summed as integers in units of 10**-COST_DIGITS dollars
COST_DIGITS = 12
_COST_UNIT = Decimal(10) ** COST_DIGITS


def _to_sqlite_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).strftime(_TIMESTAMP_FORMAT)


def _bind_cost(cost: Any) -> Any:
    # sqlite3 cannot bind Decimal; numeric text is converted by NUMERIC affinity
    if cost is None or isinstance(cost, int | float):
        return cost
    return str(cost)


def _exact_costs(row: Mapping[str, Any]) -> dict[str, Any]:
    units, priced = row["total_units"], row["priced"]
    total = None if units is None else Decimal(units) / _COST_UNIT
    return {
        "bucket": row["bucket"],
        "count": row["count"],
        "total_cost": total,
        "avg_cost": total / priced if total is not None and priced else None,
    }


class SQLiteCompletionStore(CompletionStore):
    """Completion store backed by a single SQLite file.

    Example:
        ```python
        async with SQLiteCompletionStore("cache.sqlite") as store:
            completion_id = await store.insert(model, request, response, took, cost)
            records = await store.find_by_fingerprint(model, request)
        ```

    """

    _backend_errors: ClassVar[tuple[type[Exception], ...]] = (sqlite3.Error, OSError)

    def __init__(
        self,
        db_path: str | Path = "cache.sqlite",
        *,
        timeout: float = 30.0,
        strict_writes: bool = False,
    ) -> None:
        """Initialise the store. The file is opened lazily on first use.

        Args:
            db_path: Path to the SQLite database file (or ':memory:').
            timeout: Seconds to wait for a database lock before failing.
            strict_writes: Raise from insert() instead of returning None.

        """
        super().__init__(strict_writes=strict_writes)
        self._db_path = Path(db_path)
        self._timeout = timeout
        self._conn: sqlite3.Connection | None = None
        self._released = False
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                if str(self._db_path) != ":memory:":
                    self._db_path.parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(
                    str(self._db_path),
                    timeout=self._timeout,
                    check_same_thread=False,
                    isolation_level=None,
                )
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")
            except (sqlite3.Error, OSError) as e:
                raise StoreConnectionError(
                    f"Cannot open SQLite database '{self._db_path}': {e}"
                ) from e
            self._conn = conn
            logger.info(f"Opened SQLite completion store at {self._db_path}")
        return self._conn

    async def _run[T](self, operation: Callable[[sqlite3.Connection], T]) -> T:
        """Run a blocking operation against the shared handle.

        The lock is held until the worker thread returns, even if the caller
        is cancelled, so the handle is never used by two threads at once.

        Raises:
            StoreClosedError: If the handle has been released.

        """
        async with self._lock:
            if self._released:
                raise StoreClosedError(f"SQLite store at {self._db_path} is closed.")
            work = asyncio.ensure_future(
                asyncio.to_thread(lambda: operation(self._connect()))
            )
            try:
                return await asyncio.shield(work)
            except asyncio.CancelledError:
                await asyncio.gather(work, return_exceptions=True)
                raise

    async def _fetch_all(
        self, sql: str, params: list[Any]
    ) -> list[Mapping[str, Any]]:
        def fetch(conn: sqlite3.Connection) -> list[Mapping[str, Any]]:
            return [dict(row) for row in conn.execute(sql, params).fetchall()]

        return await self._run(fetch)

    @override
    async def _create_schema(self) -> None:
        await self._run(ensure_sqlite_schema)

    @override
    async def _release(self) -> None:
        async with self._lock:
            self._released = True
            if self._conn is not None:
                conn = self._conn
                self._conn = None
                await asyncio.to_thread(conn.close)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @override
    async def _select_exact(
        self, request: Any, group_id: str | None
    ) -> list[Mapping[str, Any]]:
        sql = (
            f"SELECT {_SELECT_COLUMNS} FROM {TABLE_NAME} "
            "WHERE prompt = ? AND isdeleted = 0"
        )
        params: list[Any] = [canonical_json(request)]
        if group_id is not None:
            sql += " AND groupid = ?"
            params.append(group_id)
        sql += " ORDER BY id ASC"
        return await self._fetch_all(sql, params)

    @override
    async def _select_by_fingerprint(
        self, model: str, prompt_hash: str, group_id: str | None
    ) -> list[Mapping[str, Any]]:
        sql = (
            f"SELECT {_SELECT_COLUMNS} FROM {TABLE_NAME} "
            "WHERE model = ? AND prompt_hash = ? AND isdeleted = 0"
        )
        params: list[Any] = [model, prompt_hash]
        if group_id is not None:
            sql += " AND groupid = ?"
            params.append(group_id)
        sql += " ORDER BY id ASC"
        return await self._fetch_all(sql, params)

    @override
    async def _insert_row(self, row: NewCompletion) -> int:
        values = (
            row.model,
            row.prompt_hash,
            canonical_json(row.prompt),
            canonical_json(row.response),
            row.label,
            row.took,
            _bind_cost(row.cost),
            row.group_id,
        )

        def write(conn: sqlite3.Connection) -> int:
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN")
                cursor.execute(
                    f"INSERT INTO {TABLE_NAME} "
                    "(model, prompt_hash, prompt, response, label, took, cost, groupid) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    values,
                )
                completion_id = cursor.lastrowid
                cursor.execute("COMMIT")
            except Exception:
                if conn.in_transaction:
                    cursor.execute("ROLLBACK")
                raise
            finally:
                cursor.close()
            if completion_id is None:
                raise sqlite3.DatabaseError("INSERT did not produce a row id")
            return completion_id

        return await self._run(write)

    @override
    async def _aggregate_costs(
        self, cost_filter: CostSummaryFilter
    ) -> list[Mapping[str, Any]]:
        filters = ["isdeleted = 0"]
        params: list[Any] = []

        if cost_filter.group_id is not None:
            filters.append("groupid = ?")
            params.append(cost_filter.group_id)
        if cost_filter.start is not None:
            filters.append("created >= ?")
            params.append(_to_sqlite_timestamp(cost_filter.start))
        if cost_filter.end is not None:
            filters.append("created < ?")
            params.append(_to_sqlite_timestamp(cost_filter.end))

        bucket = "groupid"
        if cost_filter.interval is not None:
            bucket = f"strftime('{BUCKET_FORMATS[cost_filter.interval]}', created)"

        sql = f"""
            SELECT
                {bucket} AS bucket,
                COUNT(*) AS count,
                SUM(CAST(ROUND(cost * {10**COST_DIGITS}) AS INTEGER)) AS total_units,
                COUNT(cost) AS priced
            FROM {TABLE_NAME}
            WHERE {" AND ".join(filters)}
            GROUP BY bucket
            ORDER BY bucket ASC NULLS FIRST
        """
        rows = await self._fetch_all(sql, params)
        return [_exact_costs(row) for row in rows]

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    @override
    def _decode_document(self, column: str, value: Any, row_id: Any) -> JsonValue:
        if value is None:
            return None
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(
                f"Completion {row_id}: column '{column}' is not valid JSON ({e}); "
                "returning None"
            )
            return None

    @override
    def _decode_timestamp(self, value: Any) -> datetime | None:
        if value is None or isinstance(value, datetime):
            return super()._decode_timestamp(value)
        try:
            parsed = datetime.fromisoformat(str(value))
        except ValueError:
            logger.warning(f"Unparseable completion timestamp '{value}'")
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed
