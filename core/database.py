"""
Async wrapper around a SQLite connection.

All access to the Plex database and the action log goes through
DatabaseWrapper. Queries run on aiosqlite's connection thread, so a slow scan
never blocks the event loop.
"""

import asyncio
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

from core.errors import ServerError

logger = logging.getLogger(__name__)

Statement = Tuple[str, Sequence[Any]]


def _dict_factory(cursor: sqlite3.Cursor, row: tuple) -> Dict[str, Any]:
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


class DatabaseWrapper:
    """Coroutine-based access to a single SQLite database file."""

    def __init__(self, connection: aiosqlite.Connection, path: str = ""):
        self._connection = connection
        self.path = path
        # One connection is shared by every request, so transactions take turns
        self._write_lock = asyncio.Lock()

    @classmethod
    async def create(cls, path: str, allow_create: bool = False) -> "DatabaseWrapper":
        """Open the database at path.

        Raises:
            ServerError: If the file doesn't exist and allow_create is False,
                or if SQLite fails to open it.
        """
        db_path = Path(path)
        if not allow_create and not db_path.exists():
            raise ServerError(f"Database file does not exist: {path}", 500)

        try:
            # isolation_level=None: we manage transactions ourselves.
            connection = await aiosqlite.connect(str(db_path), isolation_level=None)
        except sqlite3.Error as e:
            raise ServerError.from_db_error(e)

        connection.row_factory = _dict_factory
        logger.debug(f"Opened database {path}")
        return cls(connection, str(db_path))

    def _require_open(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise ServerError("Database connection is closed", 500)
        return self._connection

    async def all(self, query: str, parameters: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Run a query and return every row as a dict."""
        async with self._require_open().execute(query, tuple(parameters)) as cursor:
            return list(await cursor.fetchall())

    async def get(self, query: str, parameters: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        """Run a query and return the first row, or None."""
        async with self._require_open().execute(query, tuple(parameters)) as cursor:
            return await cursor.fetchone()

    async def run(self, query: str, parameters: Sequence[Any] = ()) -> int:
        """Run a single write statement. Returns the last inserted row id."""
        async with self._require_open().execute(query, tuple(parameters)) as cursor:
            return cursor.lastrowid

    async def exec(self, script: str) -> None:
        """Run a multi-statement script."""
        connection = self._require_open()
        async with self._write_lock:
            await connection.executescript(script)

    async def transaction(self, statements: Iterable[Statement]) -> int:
        """Run all statements atomically. Returns the number of statements executed.

        On any failure the whole transaction is rolled back and the original
        error is re-raised.
        """
        connection = self._require_open()
        count = 0
        async with self._write_lock:
            await connection.execute("BEGIN")
            try:
                for query, parameters in statements:
                    await connection.execute(query, tuple(parameters))
                    count += 1
                await connection.execute("COMMIT")
            except Exception:
                await connection.execute("ROLLBACK")
                raise
        return count

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.debug(f"Closed database {self.path}")


class TransactionBuilder:
    """Collects statements and runs them in a single transaction."""

    def __init__(self, database: DatabaseWrapper):
        self._database = database
        self._statements: List[Statement] = []

    def add_statement(self, query: str, parameters: Sequence[Any] = ()) -> None:
        self._statements.append((query, tuple(parameters)))

    def empty(self) -> bool:
        return not self._statements

    def statement_count(self) -> int:
        return len(self._statements)

    async def exec(self) -> int:
        if self.empty():
            return 0
        try:
            return await self._database.transaction(self._statements)
        finally:
            self._statements = []
