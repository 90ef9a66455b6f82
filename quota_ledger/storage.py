"""
Async SQLite persistence for the quota ledger.

This module provides:
- SQLiteAdapter: connection management with writer/reader transactions
- LedgerTransaction: thin row-as-dict wrapper over an aiosqlite connection
- LedgerError / DatabaseError: storage failure types

Locking model:
- Writer transactions use BEGIN IMMEDIATE, so the write lock is taken
  before any availability read and concurrent reserves serialize
- Reader transactions use a deferred BEGIN for a consistent snapshot
- busy_timeout lets a blocked writer wait instead of failing at once
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional
import asyncio
import logging

import aiosqlite

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for quota ledger errors."""
    pass


class DatabaseError(LedgerError):
    """Raised when a storage operation fails. The transaction was rolled back."""
    pass


class LedgerTransaction:
    """Transaction wrapper returning rows as plain dicts."""

    def __init__(self, conn: aiosqlite.Connection):
        self._conn = conn

    async def execute(self, query: str, params: tuple = ()) -> int:
        """Execute a statement and return the affected row count."""
        cursor = await self._conn.execute(query, params)
        return cursor.rowcount

    async def fetch_one(self, query: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        """Fetch a single row as dict."""
        cursor = await self._conn.execute(query, params)
        row = await cursor.fetchone()
        if row is None:
            return None
        columns = [description[0] for description in cursor.description]
        return dict(zip(columns, row))

    async def fetch_all(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Fetch all rows as list of dicts."""
        cursor = await self._conn.execute(query, params)
        rows = await cursor.fetchall()
        columns = [description[0] for description in cursor.description]
        return [dict(zip(columns, row)) for row in rows]


class SQLiteAdapter:
    """
    SQLite adapter using aiosqlite.

    For file-based databases, each transaction opens its own connection so
    that concurrent callers contend on the SQLite lock rather than on a
    shared Python object.

    For in-memory databases (:memory:), a single shared connection is used
    since separate connections would create separate databases; an
    asyncio.Lock serializes transactions on it.
    """

    BUSY_TIMEOUT_MS = 5000

    def __init__(self, db_path: str):
        """
        Initialize SQLite adapter.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory
        """
        self.db_path = db_path
        self._shared_conn: Optional[aiosqlite.Connection] = None
        self._is_memory = db_path == ":memory:"
        self._conn_lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        if self._conn_lock is None:
            self._conn_lock = asyncio.Lock()
        return self._conn_lock

    async def _create_connection(self) -> aiosqlite.Connection:
        """Create a new configured connection."""
        try:
            conn = await aiosqlite.connect(self.db_path, isolation_level=None)
            conn.row_factory = aiosqlite.Row
            await conn.execute(f"PRAGMA busy_timeout = {self.BUSY_TIMEOUT_MS}")
            if not self._is_memory:
                await conn.execute("PRAGMA journal_mode = WAL")
                await conn.execute("PRAGMA synchronous = NORMAL")
        except aiosqlite.Error as e:
            raise DatabaseError(f"Cannot open ledger database {self.db_path}: {e}") from e
        return conn

    async def _ensure_connected(self) -> aiosqlite.Connection:
        if self._shared_conn is None:
            self._shared_conn = await self._create_connection()
        return self._shared_conn

    @asynccontextmanager
    async def _transaction(self, begin: str) -> AsyncIterator[LedgerTransaction]:
        if self._is_memory:
            async with self._get_lock():
                conn = await self._ensure_connected()
                async with self._run(conn, begin) as tx:
                    yield tx
        else:
            conn = await self._create_connection()
            try:
                async with self._run(conn, begin) as tx:
                    yield tx
            finally:
                await conn.close()

    @asynccontextmanager
    async def _run(self, conn: aiosqlite.Connection, begin: str) -> AsyncIterator[LedgerTransaction]:
        try:
            await conn.execute(begin)
        except aiosqlite.Error as e:
            raise DatabaseError(f"{begin} failed: {e}") from e
        try:
            yield LedgerTransaction(conn)
            await conn.execute("COMMIT")
        except aiosqlite.Error as e:
            await conn.execute("ROLLBACK")
            raise DatabaseError(str(e)) from e
        except BaseException:
            await conn.execute("ROLLBACK")
            raise

    def exclusive_transaction(self):
        """
        Writer transaction.

        Uses BEGIN IMMEDIATE to acquire the write lock immediately,
        preventing two writers from observing the same headroom.
        """
        return self._transaction("BEGIN IMMEDIATE")

    def read_transaction(self):
        """Deferred transaction for consistent multi-row reads."""
        return self._transaction("BEGIN")

    async def close(self) -> None:
        """Close the shared connection."""
        if self._shared_conn is not None:
            await self._shared_conn.close()
            self._shared_conn = None
