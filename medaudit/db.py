"""
Database module for medaudit.

Provides the SQLite handle behind the record and audit regions.
Uses thread-local connections and explicit transactions.
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

REGIONS = ("records", "audit_entries")


class Database:
    """
    SQLite database owning one ordered key-value table per region.

    Connections are created per thread and reused. A `transaction()`
    block spans every write made through this handle on the current
    thread, so several regions can be committed together.
    """

    def __init__(self, path: str):
        self._path = path
        self._local = threading.local()
        self._memory_conn: Optional[sqlite3.Connection] = None
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> str:
        return self._path

    def connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.
        An in-memory database shares a single connection across threads.
        """
        if self._path == ":memory:":
            if self._memory_conn is None:
                self._memory_conn = sqlite3.connect(":memory:", check_same_thread=False)
                self._memory_conn.row_factory = sqlite3.Row
            return self._memory_conn

        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self._path, check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=FULL;")
            conn.execute("PRAGMA temp_store=MEMORY;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database transactions.
        Commits on success, rolls back on failure. Nested blocks join the
        outermost transaction.
        """
        conn = self.connection()
        depth = getattr(self._local, "depth", 0)
        self._local.depth = depth + 1
        try:
            yield conn
            if depth == 0:
                conn.commit()
        except Exception:
            if depth == 0:
                conn.rollback()
            raise
        finally:
            self._local.depth = depth

    def init_schema(self) -> None:
        """
        Initialize the schema.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self.transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS records (
                id INTEGER PRIMARY KEY,
                body BLOB NOT NULL
            );""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_entries (
                id INTEGER PRIMARY KEY,
                body BLOB NOT NULL
            );""")

            # Both regions are write-once; rewrites are rejected by the engine
            for table in REGIONS:
                for op in ("UPDATE", "DELETE"):
                    conn.execute(f"""
                    CREATE TRIGGER IF NOT EXISTS {table}_no_{op.lower()}
                    BEFORE {op} ON {table}
                    BEGIN SELECT RAISE(ABORT, '{table} are write-once'); END;""")

    def close(self) -> None:
        """Close the connection of the calling thread (for cleanup)."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
        if self._memory_conn is not None:
            self._memory_conn.close()
            self._memory_conn = None
