from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiosqlite
import asyncpg

from core.errors import DegradedFeatureError, TransientIOError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class DatabaseDsn:
    driver: str
    value: str


def parse_database_dsn(url: str) -> DatabaseDsn:
    if url.startswith("sqlite:///"):
        return DatabaseDsn(driver="sqlite", value=url.replace("sqlite:///", "", 1))
    if url.startswith("postgresql://") or url.startswith("postgres://"):
        return DatabaseDsn(driver="postgresql", value=url)
    raise ValueError("Unsupported database URL. Use sqlite:/// or postgresql://")


def _qmark_to_dollar(query: str) -> str:
    idx = 1
    out: list[str] = []
    for char in query:
        if char == "?":
            out.append(f"${idx}")
            idx += 1
        else:
            out.append(char)
    return "".join(out)


def _is_missing_table(error: Exception) -> bool:
    if isinstance(error, asyncpg.UndefinedTableError):
        return True
    return isinstance(error, sqlite3.OperationalError) and "no such table" in str(error)


@asynccontextmanager
async def _driver_errors(query: str) -> AsyncIterator[None]:
    try:
        yield
    except (sqlite3.Error, asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as error:
        if _is_missing_table(error):
            raise DegradedFeatureError(f"Storage table is missing: {error}") from error
        LOGGER.warning("Database call failed: %s | query=%s", error, " ".join(query.split())[:160])
        raise TransientIOError() from error


class Database:
    """Thin async facade over SQLite (aiosqlite) or PostgreSQL (asyncpg).

    Queries are written with ``?`` placeholders and converted for asyncpg.
    Driver failures surface as ``TransientIOError``; a query against a table
    that does not exist surfaces as ``DegradedFeatureError`` so optional
    features can switch themselves off.
    """

    def __init__(self, url: str, timeout_seconds: int = 30, pool_min_size: int = 2, pool_max_size: int = 10) -> None:
        self._dsn = parse_database_dsn(url)
        self._timeout_seconds = timeout_seconds
        self._pool_min_size = pool_min_size
        self._pool_max_size = pool_max_size
        self._sqlite: aiosqlite.Connection | None = None
        self._pg_pool: asyncpg.Pool | None = None
        self._sqlite_lock = asyncio.Lock()

    @property
    def driver(self) -> str:
        return self._dsn.driver

    async def connect(self) -> None:
        if self.driver == "sqlite":
            sqlite_path = Path(self._dsn.value)
            sqlite_path.parent.mkdir(parents=True, exist_ok=True)
            self._sqlite = await aiosqlite.connect(sqlite_path, timeout=self._timeout_seconds)
            self._sqlite.row_factory = aiosqlite.Row
            await self._sqlite.execute("PRAGMA journal_mode = WAL;")
            await self._sqlite.execute("PRAGMA foreign_keys = ON;")
            await self._sqlite.commit()
            LOGGER.info("Connected to SQLite: %s", sqlite_path)
            return
        self._pg_pool = await asyncpg.create_pool(
            dsn=self._dsn.value,
            min_size=self._pool_min_size,
            max_size=self._pool_max_size,
            timeout=self._timeout_seconds,
        )
        LOGGER.info("Connected to PostgreSQL")

    async def close(self) -> None:
        if self._sqlite:
            await self._sqlite.close()
            self._sqlite = None
        if self._pg_pool:
            await self._pg_pool.close()
            self._pg_pool = None

    async def execute(self, query: str, params: Sequence[Any] | None = None) -> int:
        """Run a write statement and return the affected row count."""
        params = params or []
        async with _driver_errors(query):
            if self.driver == "sqlite":
                assert self._sqlite is not None
                async with self._sqlite_lock:
                    cursor = await self._sqlite.execute(query, tuple(params))
                    await self._sqlite.commit()
                return cursor.rowcount

            assert self._pg_pool is not None
            async with self._pg_pool.acquire() as conn:
                status = await conn.execute(_qmark_to_dollar(query), *params)
            # asyncpg reports e.g. "UPDATE 3" / "INSERT 0 1".
            tail = status.rsplit(" ", 1)[-1]
            return int(tail) if tail.isdigit() else 0

    async def fetchone(self, query: str, params: Sequence[Any] | None = None) -> dict[str, Any] | None:
        params = params or []
        async with _driver_errors(query):
            if self.driver == "sqlite":
                assert self._sqlite is not None
                async with self._sqlite_lock:
                    cursor = await self._sqlite.execute(query, tuple(params))
                    # Drain fully so RETURNING statements complete before commit.
                    rows = await cursor.fetchall()
                    row = rows[0] if rows else None
                    if self._sqlite.in_transaction:
                        await self._sqlite.commit()
                return dict(row) if row is not None else None

            assert self._pg_pool is not None
            async with self._pg_pool.acquire() as conn:
                row = await conn.fetchrow(_qmark_to_dollar(query), *params)
            return dict(row) if row is not None else None

    async def fetchall(self, query: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        params = params or []
        async with _driver_errors(query):
            if self.driver == "sqlite":
                assert self._sqlite is not None
                async with self._sqlite_lock:
                    cursor = await self._sqlite.execute(query, tuple(params))
                    rows = await cursor.fetchall()
                    if self._sqlite.in_transaction:
                        await self._sqlite.commit()
                return [dict(row) for row in rows]

            assert self._pg_pool is not None
            async with self._pg_pool.acquire() as conn:
                rows = await conn.fetch(_qmark_to_dollar(query), *params)
            return [dict(row) for row in rows]

    async def executescript(self, sql_script: str) -> None:
        async with _driver_errors(sql_script):
            if self.driver == "sqlite":
                assert self._sqlite is not None
                async with self._sqlite_lock:
                    await self._sqlite.executescript(sql_script)
                    await self._sqlite.commit()
                return

            assert self._pg_pool is not None
            async with self._pg_pool.acquire() as conn:
                await conn.execute(sql_script)

    async def table_exists(self, table: str) -> bool:
        if self.driver == "sqlite":
            row = await self.fetchone(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?;",
                [table],
            )
        else:
            row = await self.fetchone("SELECT to_regclass(?) AS name;", [table])
            if row is not None and row.get("name") is None:
                row = None
        return row is not None
