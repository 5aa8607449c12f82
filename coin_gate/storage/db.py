"""
Database connection management.

Provides SQLite connections and transaction scopes for data persistence.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "coin_gate.db"
DEFAULT_TIMEOUT = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_TIMEOUT) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection runs in autocommit mode; multi-statement writes go
    through :func:`transaction`.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a competing writer's lock

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_TIMEOUT) -> Iterator[sqlite3.Connection]:
    """Open a connection and run the block inside one write transaction.

    BEGIN IMMEDIATE takes the write lock up front so conditional updates
    observe the latest committed balance. Commits on success, rolls back
    on any exception and always closes the connection.
    """
    conn = get_connection(db_path, timeout)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.rollback()
            raise
        conn.commit()
    finally:
        conn.close()
