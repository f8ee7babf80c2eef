"""
CalmText - Durable Store

Persistent relational storage for users, conversations, crisis events and
check-ins. This module only reads and writes rows; the tables are expected
to exist already (schema management is handled outside the service).

Implementations:
    - InMemoryDurableStore: process-local tables (development/testing)
    - PostgresDurableStore: PostgreSQL through an asyncpg pool

Tables and columns:
    users          phone_number PK, first_interaction, last_interaction,
                   total_messages, risk_level, is_active, metadata
    conversations  id, phone_number, message, direction, risk_level,
                   risk_categories, timestamp
    crisis_events  id, phone_number, risk_level, risk_categories,
                   message_preview, escalated, resolved, timestamp
    check_ins      id, phone_number, sent_at, responded, response_text,
                   response_time

Every failure surfaces as DurableStoreError.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import json
import logging
from abc import abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import asyncpg

from calmtext.core.exceptions import DurableStoreError
from calmtext.core.types import Record, RiskLevel, utcnow

logger = logging.getLogger(__name__)

USERS_TABLE = "users"

TABLE_COLUMNS: Dict[str, frozenset] = {
    "users": frozenset({
        "phone_number", "first_interaction", "last_interaction",
        "total_messages", "risk_level", "is_active", "metadata",
    }),
    "conversations": frozenset({
        "id", "phone_number", "message", "direction", "risk_level",
        "risk_categories", "timestamp",
    }),
    "crisis_events": frozenset({
        "id", "phone_number", "risk_level", "risk_categories",
        "message_preview", "escalated", "resolved", "timestamp",
    }),
    "check_ins": frozenset({
        "id", "phone_number", "sent_at", "responded", "response_text",
        "response_time",
    }),
}


def _validate(table: str, columns) -> None:
    allowed = TABLE_COLUMNS.get(table)
    if allowed is None:
        raise DurableStoreError(f"Unknown table: {table}")
    unknown = set(columns) - allowed
    if unknown:
        raise DurableStoreError(
            f"Unknown columns for {table}: {sorted(unknown)}",
            details={"table": table},
        )


def _default_user(user_id: str) -> Record:
    now = utcnow()
    return {
        "phone_number": user_id,
        "first_interaction": now,
        "last_interaction": now,
        "total_messages": 0,
        "risk_level": RiskLevel.NONE.value,
        "is_active": True,
        "metadata": {},
    }


# =============================================================================
# Protocol
# =============================================================================

@runtime_checkable
class DurableStore(Protocol):
    """Protocol for the durable store."""

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def get(self, user_id: str) -> Optional[Record]:
        """Return the users row for an id, or None."""
        ...

    @abstractmethod
    async def upsert(self, user_id: str, fields: Dict[str, Any]) -> None:
        """Create the users row with defaults if missing, then apply fields."""
        ...

    @abstractmethod
    async def insert(self, table: str, record: Record) -> int:
        """Insert a row into an event table and return its id."""
        ...

    @abstractmethod
    async def query(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Record]:
        """Rows matching all equality filters."""
        ...

    @abstractmethod
    async def update(self, table: str, record_id: int, fields: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


# =============================================================================
# In-Memory Implementation
# =============================================================================

class InMemoryDurableStore:
    """
    Dict-backed tables with auto-increment ids.

    Returns copies so callers can never mutate stored rows in place.
    """

    def __init__(self):
        self._users: Dict[str, Record] = {}
        self._tables: Dict[str, List[Record]] = {
            name: [] for name in TABLE_COLUMNS if name != USERS_TABLE
        }
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        return None

    async def get(self, user_id: str) -> Optional[Record]:
        async with self._lock:
            row = self._users.get(user_id)
            return copy.deepcopy(row) if row else None

    async def upsert(self, user_id: str, fields: Dict[str, Any]) -> None:
        _validate(USERS_TABLE, fields)
        async with self._lock:
            row = self._users.setdefault(user_id, _default_user(user_id))
            row.update(copy.deepcopy(fields))

    async def insert(self, table: str, record: Record) -> int:
        _validate(table, record)
        if table == USERS_TABLE:
            raise DurableStoreError("Use upsert() for the users table")
        async with self._lock:
            row_id = next(self._ids)
            row = copy.deepcopy(record)
            row["id"] = row_id
            self._tables[table].append(row)
            return row_id

    async def query(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Record]:
        filters = filters or {}
        _validate(table, list(filters) + ([order_by] if order_by else []))

        async with self._lock:
            rows = list(self._users.values()) if table == USERS_TABLE else list(self._tables[table])
            matches = [
                r for r in rows
                if all(r.get(col) == value for col, value in filters.items())
            ]
            if order_by:
                matches.sort(
                    # id breaks ties so equal timestamps keep insertion order
                    key=lambda r: (r.get(order_by) is not None, r.get(order_by), r.get("id", 0)),
                    reverse=descending,
                )
            if limit is not None:
                matches = matches[:limit]
            return copy.deepcopy(matches)

    async def update(self, table: str, record_id: int, fields: Dict[str, Any]) -> None:
        _validate(table, fields)
        async with self._lock:
            for row in self._tables.get(table, []):
                if row["id"] == record_id:
                    row.update(copy.deepcopy(fields))
                    return

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


# =============================================================================
# PostgreSQL Implementation
# =============================================================================

def _to_db(value: Any) -> Any:
    # Columns are TIMESTAMP WITHOUT TIME ZONE holding UTC
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    if isinstance(value, RiskLevel):
        return value.value
    return value


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
    )


class PostgresDurableStore:
    """
    asyncpg-backed durable store.

    Column and table names are checked against TABLE_COLUMNS before being
    interpolated into SQL; values are always bound parameters.
    """

    def __init__(
        self,
        database_url: str,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
        command_timeout: float = 10.0,
    ):
        self._database_url = database_url
        self._min_pool_size = min_pool_size
        self._max_pool_size = max_pool_size
        self._command_timeout = command_timeout
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        if self._pool is not None:
            return
        try:
            self._pool = await asyncpg.create_pool(
                self._database_url,
                min_size=self._min_pool_size,
                max_size=self._max_pool_size,
                command_timeout=self._command_timeout,
                init=_init_connection,
            )
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            raise DurableStoreError(f"PostgreSQL connection failed: {type(e).__name__}") from e
        logger.info("PostgreSQL pool established: size=%d-%d", self._min_pool_size, self._max_pool_size)

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise DurableStoreError("PostgreSQL pool not initialized; call connect() first")
        return self._pool

    async def _fetch(self, sql: str, *args) -> List[Record]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(sql, *[_to_db(a) for a in args])
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            raise DurableStoreError(f"PostgreSQL query failed: {type(e).__name__}") from e
        return [dict(row) for row in rows]

    async def _execute(self, sql: str, *args) -> None:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(sql, *[_to_db(a) for a in args])
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            raise DurableStoreError(f"PostgreSQL statement failed: {type(e).__name__}") from e

    async def get(self, user_id: str) -> Optional[Record]:
        rows = await self._fetch("SELECT * FROM users WHERE phone_number = $1", user_id)
        return rows[0] if rows else None

    async def upsert(self, user_id: str, fields: Dict[str, Any]) -> None:
        _validate(USERS_TABLE, fields)
        columns = [c for c in fields if c != "phone_number"]
        if not columns:
            await self._execute(
                "INSERT INTO users (phone_number) VALUES ($1) ON CONFLICT (phone_number) DO NOTHING",
                user_id,
            )
            return

        placeholders = ", ".join(f"${i}" for i in range(2, len(columns) + 2))
        assignments = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns)
        sql = (
            f"INSERT INTO users (phone_number, {', '.join(columns)}) "
            f"VALUES ($1, {placeholders}) "
            f"ON CONFLICT (phone_number) DO UPDATE SET {assignments}"
        )
        await self._execute(sql, user_id, *[fields[c] for c in columns])

    async def insert(self, table: str, record: Record) -> int:
        _validate(table, record)
        if table == USERS_TABLE:
            raise DurableStoreError("Use upsert() for the users table")
        columns = [c for c in record if c != "id"]
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) RETURNING id"
        rows = await self._fetch(sql, *[record[c] for c in columns])
        return rows[0]["id"]

    async def query(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Record]:
        filters = filters or {}
        _validate(table, list(filters) + ([order_by] if order_by else []))

        sql = f"SELECT * FROM {table}"
        args: List[Any] = []
        if filters:
            clauses = []
            for col, value in filters.items():
                args.append(value)
                clauses.append(f"{col} = ${len(args)}")
            sql += " WHERE " + " AND ".join(clauses)
        if order_by:
            sql += f" ORDER BY {order_by} {'DESC' if descending else 'ASC'}"
        if limit is not None:
            args.append(limit)
            sql += f" LIMIT ${len(args)}"

        return await self._fetch(sql, *args)

    async def update(self, table: str, record_id: int, fields: Dict[str, Any]) -> None:
        _validate(table, fields)
        if not fields:
            return
        columns = list(fields)
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=1))
        sql = f"UPDATE {table} SET {assignments} WHERE id = ${len(columns) + 1}"
        await self._execute(sql, *[fields[c] for c in columns], record_id)

    async def ping(self) -> bool:
        try:
            await self._fetch("SELECT 1")
            return True
        except DurableStoreError as e:
            logger.warning("PostgreSQL ping failed: %s", e.message)
            return False

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
