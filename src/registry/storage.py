"""Storage substrate for registry tables.

The registry persists every entity as a JSON-compatible dict in a named
table, keyed by a tuple. Two substrates ship:

- InMemoryStore: dict-of-dicts, the default and the one tests use
- SqliteStore: a single SQLite file in WAL mode, rows stored as JSON

Both provide atomic single-key get/put/delete, table iteration, and an
atomic() block that groups multi-row writes. If an exception escapes the
block, none of its writes survive.

Usage:
    store = InMemoryStore()
    with store.atomic():
        store.put("records", (1,), {"id": 1, "name": "Art1"})
        store.put("viewers", (1, "alice"), {"can_view": True})
    store.get("records", (1,))
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Key = tuple[Any, ...]
Row = dict[str, Any]


class KeyValueStore(Protocol):
    """Protocol for storage substrates."""

    def get(self, table: str, key: Key) -> Row | None:
        """Return a copy of the row, or None."""
        ...

    def put(self, table: str, key: Key, value: Row) -> None:
        """Insert or replace a row."""
        ...

    def delete(self, table: str, key: Key) -> bool:
        """Remove a row. Returns True if it existed."""
        ...

    def items(self, table: str) -> list[tuple[Key, Row]]:
        """All rows of a table as (key, row) pairs, in key order."""
        ...

    def atomic(self) -> Any:
        """Context manager grouping writes all-or-nothing."""
        ...


class InMemoryStore:
    """In-memory tables.

    Rows are deep-copied on the way in and out, so callers can never
    mutate stored state without going through put().

    Thread-safety: NOT thread-safe. The registry serializes access.
    """

    _tables: dict[str, dict[Key, Row]]
    _depth: int
    _snapshot: dict[str, dict[Key, Row]] | None

    def __init__(self) -> None:
        self._tables = {}
        self._depth = 0
        self._snapshot = None

    def get(self, table: str, key: Key) -> Row | None:
        row = self._tables.get(table, {}).get(tuple(key))
        return copy.deepcopy(row) if row is not None else None

    def put(self, table: str, key: Key, value: Row) -> None:
        self._tables.setdefault(table, {})[tuple(key)] = copy.deepcopy(value)

    def delete(self, table: str, key: Key) -> bool:
        rows = self._tables.get(table)
        if rows is None or tuple(key) not in rows:
            return False
        del rows[tuple(key)]
        return True

    def items(self, table: str) -> list[tuple[Key, Row]]:
        rows = self._tables.get(table, {})
        return [(k, copy.deepcopy(rows[k])) for k in sorted(rows, key=_sort_key)]

    def count(self, table: str) -> int:
        return len(self._tables.get(table, {}))

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Snapshot on the outermost entry, restore it if an exception escapes."""
        if self._depth == 0:
            self._snapshot = {t: dict(rows) for t, rows in self._tables.items()}
        self._depth += 1
        try:
            yield
        except BaseException:
            if self._depth == 1 and self._snapshot is not None:
                self._tables = self._snapshot
            raise
        finally:
            self._depth -= 1
            if self._depth == 0:
                self._snapshot = None

    def clear(self) -> None:
        """Drop all tables. Use with caution - mainly for testing."""
        self._tables.clear()


def _with_retry(
    func: Callable[[], T],
    max_retries: int,
    base_delay: float,
    max_delay: float,
) -> T:
    """Execute a function with retry logic for SQLite lock errors.

    Uses exponential backoff to handle transient 'database is locked' errors
    that can occur when another process holds the write lock.

    Raises:
        sqlite3.OperationalError: If func raises a non-lock error or
            exceeds max_retries with lock errors
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except sqlite3.OperationalError as e:
            if "database is locked" not in str(e):
                raise

            if attempt >= max_retries:
                logger.warning(
                    "SQLite lock error after %d attempts, giving up: %s",
                    attempt,
                    e,
                )
                raise

            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            logger.debug(
                "SQLite lock error (attempt %d/%d), retrying in %.2fs: %s",
                attempt,
                max_retries,
                delay,
                e,
            )
            time.sleep(delay)


class SqliteStore:
    """SQLite-backed tables in a single file.

    One long-lived connection in autocommit mode. atomic() opens an
    IMMEDIATE transaction on the outermost entry so the write lock is
    taken up front; nested blocks join the outer transaction.

    Thread safety: the connection is shared, so callers must serialize
    access (the registry holds a lock around every operation).
    """

    db_path: Path

    def __init__(
        self,
        db_path: Path | str,
        retry_max: int = 5,
        retry_base: float = 0.1,
        retry_max_delay: float = 5.0,
    ) -> None:
        """
        Args:
            db_path: Path to SQLite database file (":memory:" works too)
            retry_max: Max attempts on 'database is locked'
            retry_base: Base backoff delay in seconds
            retry_max_delay: Backoff delay cap in seconds
        """
        self.db_path = Path(db_path)
        self._retry = (retry_max, retry_base, retry_max_delay)
        self._depth = 0
        self._conn = sqlite3.connect(
            str(db_path),
            isolation_level=None,
            check_same_thread=False,
        )
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._ensure_db()

    def _ensure_db(self) -> None:
        """Create the rows table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS registry_rows (
                tbl TEXT NOT NULL,
                row_key TEXT NOT NULL,
                row_json TEXT NOT NULL,
                PRIMARY KEY (tbl, row_key)
            )
        """)

    def _run(self, func: Callable[[], T]) -> T:
        if self._depth > 0:
            # Inside a transaction the lock is already held
            return func()
        return _with_retry(func, *self._retry)

    def get(self, table: str, key: Key) -> Row | None:
        def do_get() -> Row | None:
            cursor = self._conn.execute(
                "SELECT row_json FROM registry_rows WHERE tbl = ? AND row_key = ?",
                (table, _encode_key(key)),
            )
            row = cursor.fetchone()
            return json.loads(row[0]) if row else None

        return self._run(do_get)

    def put(self, table: str, key: Key, value: Row) -> None:
        row_json = json.dumps(value)

        def do_put() -> None:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO registry_rows (tbl, row_key, row_json)
                VALUES (?, ?, ?)
                """,
                (table, _encode_key(key), row_json),
            )

        self._run(do_put)

    def delete(self, table: str, key: Key) -> bool:
        def do_delete() -> bool:
            cursor = self._conn.execute(
                "DELETE FROM registry_rows WHERE tbl = ? AND row_key = ?",
                (table, _encode_key(key)),
            )
            return cursor.rowcount > 0

        return self._run(do_delete)

    def items(self, table: str) -> list[tuple[Key, Row]]:
        def do_items() -> list[tuple[Key, Row]]:
            cursor = self._conn.execute(
                "SELECT row_key, row_json FROM registry_rows WHERE tbl = ?",
                (table,),
            )
            return [(_decode_key(k), json.loads(v)) for k, v in cursor.fetchall()]

        pairs = self._run(do_items)
        return sorted(pairs, key=lambda kv: _sort_key(kv[0]))

    def count(self, table: str) -> int:
        def do_count() -> int:
            cursor = self._conn.execute(
                "SELECT COUNT(*) FROM registry_rows WHERE tbl = ?", (table,)
            )
            result: int = cursor.fetchone()[0]
            return result

        return self._run(do_count)

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """IMMEDIATE transaction on the outermost entry; rollback on error."""
        outermost = self._depth == 0
        if outermost:
            _with_retry(lambda: self._conn.execute("BEGIN IMMEDIATE"), *self._retry)
        self._depth += 1
        try:
            yield
        except BaseException:
            if outermost:
                self._conn.execute("ROLLBACK")
            raise
        else:
            if outermost:
                self._conn.execute("COMMIT")
        finally:
            self._depth -= 1

    def close(self) -> None:
        self._conn.close()


def _encode_key(key: Key) -> str:
    return json.dumps(list(key))


def _decode_key(raw: str) -> Key:
    return tuple(json.loads(raw))


def _sort_key(key: Key) -> tuple[tuple[int, Any], ...]:
    # Ints sort before strings so mixed keys order deterministically
    return tuple((0, part) if isinstance(part, int) else (1, str(part)) for part in key)


def create_store(backend: str, path: str | None = None, **retry: Any) -> KeyValueStore:
    """Build a store from the storage config section.

    Args:
        backend: "memory" or "sqlite"
        path: Database file for the sqlite backend
        **retry: retry_max / retry_base / retry_max_delay for sqlite
    """
    if backend == "memory":
        return InMemoryStore()
    if backend == "sqlite":
        if not path:
            raise ValueError("sqlite backend requires a path")
        return SqliteStore(path, **retry)
    raise ValueError(f"Unknown storage backend: {backend}")
