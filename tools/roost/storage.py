"""SQLite storage for the credential store.

The credential manager and schema reconciler only talk to the ``Storage``
protocol, so tests (or another engine) can stand in for ``SQLiteStorage``.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any, Protocol

from .errors import DuplicateError, StorageError

logger = logging.getLogger(__name__)


class Storage(Protocol):
    """Interface the credential store needs from a relational engine."""

    def execute(self, *statements: str) -> bool:
        """Run statements as one unit. Return True on success."""
        ...

    def select(self, table: str, where: dict[str, Any]) -> list[dict[str, Any]]:
        """Return rows matching every key in ``where`` (all rows if empty)."""
        ...

    def insert(self, table: str, row: dict[str, Any]) -> int:
        """Insert a row. Return the inserted count; raise DuplicateError on uniqueness violations."""
        ...

    def update(self, table: str, updates: dict[str, Any], where: dict[str, Any]) -> int:
        """Apply ``updates`` to matching rows. Return the affected count."""
        ...

    def table_exists(self, table: str) -> bool:
        ...

    def column_exists(self, table: str, column: str) -> bool:
        ...

    def load_schema_metadata(self) -> None:
        """Refresh cached table and column introspection."""
        ...


def quote_identifier(name: str) -> str:
    """Quote a table or column name for SQLite."""
    return '"' + name.replace('"', '""') + '"'


def _where_clause(where: dict[str, Any]) -> tuple[str, list[Any]]:
    if not where:
        return "", []
    conditions = " AND ".join(f"{quote_identifier(col)} = ?" for col in where)
    return f" WHERE {conditions}", list(where.values())


def _integrity_error(e: sqlite3.IntegrityError) -> Exception:
    message = str(e)
    if "UNIQUE" in message or "PRIMARY KEY" in message:
        return DuplicateError(message)
    return StorageError(message)


class SQLiteStorage:
    """SQLite-backed ``Storage``.

    Args:
        db_path: Path to SQLite database file. Parent directories are created
                 automatically. ``":memory:"`` keeps everything in memory.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # autocommit; execute() opens its own transactions
        self._conn = sqlite3.connect(db_path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._schema: dict[str, set[str]] = {}
        self.load_schema_metadata()

    def load_schema_metadata(self) -> None:
        schema: dict[str, set[str]] = {}
        tables = self._conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table'"
        ).fetchall()
        for row in tables:
            table = row["name"]
            columns = self._conn.execute(
                f"PRAGMA table_info({quote_identifier(table)})"
            ).fetchall()
            schema[table] = {col["name"] for col in columns}
        self._schema = schema

    def table_exists(self, table: str) -> bool:
        return table in self._schema

    def column_exists(self, table: str, column: str) -> bool:
        return column in self._schema.get(table, ())

    def execute(self, *statements: str) -> bool:
        try:
            self._conn.execute("BEGIN")
            for sql in statements:
                self._conn.execute(sql)
            self._conn.execute("COMMIT")
        except sqlite3.Error as e:
            logger.error(f"Statement failed, rolling back: {e}")
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
            return False

        self.load_schema_metadata()
        return True

    def select(self, table: str, where: dict[str, Any]) -> list[dict[str, Any]]:
        clause, params = _where_clause(where)
        rows = self._conn.execute(
            f"SELECT * FROM {quote_identifier(table)}{clause}", params
        ).fetchall()
        return [dict(row) for row in rows]

    def insert(self, table: str, row: dict[str, Any]) -> int:
        columns = ", ".join(quote_identifier(col) for col in row)
        placeholders = ", ".join("?" for _ in row)
        try:
            cur = self._conn.execute(
                f"INSERT INTO {quote_identifier(table)} ({columns}) VALUES ({placeholders})",
                list(row.values()),
            )
        except sqlite3.IntegrityError as e:
            raise _integrity_error(e) from e
        return cur.rowcount

    def update(self, table: str, updates: dict[str, Any], where: dict[str, Any]) -> int:
        if not updates:
            return 0
        assignments = ", ".join(f"{quote_identifier(col)} = ?" for col in updates)
        clause, params = _where_clause(where)
        try:
            cur = self._conn.execute(
                f"UPDATE {quote_identifier(table)} SET {assignments}{clause}",
                list(updates.values()) + params,
            )
        except sqlite3.IntegrityError as e:
            raise _integrity_error(e) from e
        return cur.rowcount

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
