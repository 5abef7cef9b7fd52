"""
Async SQLite connection wrapper for the persistent store.

This module provides a thin wrapper around aiosqlite that serializes access
to a single connection and offers an explicit write transaction.
"""

import aiosqlite
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, List, Union, AsyncIterator
import asyncio


class Database:
    """Async SQLite database wrapper."""

    def __init__(self, db_path: Union[Path, str]):
        """
        Initialize database wrapper.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = str(db_path)
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open database connection."""
        if self._connection is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._connection = await aiosqlite.connect(
                self.db_path,
                isolation_level=None  # Autocommit mode
            )
            # several replicas may share one file
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=NORMAL")
            await self._connection.execute("PRAGMA busy_timeout=5000")

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _ensure_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            await self.connect()
        return self._connection

    async def execute(self, sql: str, parameters: tuple = ()) -> None:
        """Execute a statement that returns no rows."""
        async with self._lock:
            connection = await self._ensure_connection()
            await connection.execute(sql, parameters)

    async def executescript(self, script: str) -> None:
        """Execute several statements at once (schema setup)."""
        async with self._lock:
            connection = await self._ensure_connection()
            await connection.executescript(script)

    async def fetchone(self, sql: str, parameters: tuple = ()) -> Optional[tuple]:
        """
        Execute query and fetch one result.

        Args:
            sql: SQL query
            parameters: Query parameters

        Returns:
            Single row or None
        """
        async with self._lock:
            connection = await self._ensure_connection()
            async with connection.execute(sql, parameters) as cursor:
                return await cursor.fetchone()

    async def fetchall(self, sql: str, parameters: tuple = ()) -> List[tuple]:
        """
        Execute query and fetch all results.

        Args:
            sql: SQL query
            parameters: Query parameters

        Returns:
            List of rows
        """
        async with self._lock:
            connection = await self._ensure_connection()
            async with connection.execute(sql, parameters) as cursor:
                return list(await cursor.fetchall())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Hold the connection for an immediate write transaction."""
        async with self._lock:
            connection = await self._ensure_connection()
            await connection.execute("BEGIN IMMEDIATE")
            try:
                yield connection
            except BaseException:
                await connection.execute("ROLLBACK")
                raise
            else:
                await connection.execute("COMMIT")

    @property
    def connection(self) -> Optional[aiosqlite.Connection]:
        """Get raw connection object."""
        return self._connection

    async def __aenter__(self):
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
