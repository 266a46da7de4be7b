"""
Database connection management.

Provides SQLite connections and write transactions for data persistence.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "bounty_escrow.db"

# Seconds a writer waits for another writer's lock before failing
BUSY_TIMEOUT = 30.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection runs in autocommit mode; writes that must be atomic go
    through ``transaction``.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(db_path: str = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Run a block as one write transaction.

    ``BEGIN IMMEDIATE`` takes the write lock up front, so two transactions
    that read a status and then write it are serialized rather than both
    reading the same old value. The block commits on success and rolls back
    on any exception, which is re-raised.
    """
    conn = get_connection(db_path)
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


@contextmanager
def read_connection(db_path: str = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Connection for read-only work, closed on exit."""
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()
