"""SQLite connection layer with sqlite-vec extension."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import sqlite_vec


class Database:
    """One replykb knowledge base: a SQLite file holding every tenant's content.

    Each thread opens its own connection; a background crawl never shares the
    caller's connection.
    """

    def __init__(self, db_path: Path | str, busy_timeout_ms: int = 5000) -> None:
        """
        Args:
            db_path: Path to the SQLite database file (created if missing),
                or ":memory:".
            busy_timeout_ms: How long a writer waits on a locked database.
        """
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Open a connection with sqlite-vec loaded and cascades enabled."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
        # Chunk rows cascade with their document only when this is on.
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        return conn

    def __enter__(self) -> sqlite3.Connection:
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None


def database_file(conn: sqlite3.Connection) -> str:
    """Return the file behind *conn*'s main database.

    Raises:
        RuntimeError: The connection is to an in-memory database.
    """
    row = conn.execute("PRAGMA database_list").fetchone()
    path = row[2] if row else ""
    if not path:
        raise RuntimeError("Background crawls need a file-backed database")
    return path
