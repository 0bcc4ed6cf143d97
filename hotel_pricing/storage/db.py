"""
Database connection management.

SQLite connections for calculation records and the override ledger.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "hotel_pricing.db"

# Seconds a writer waits for a competing writer's lock
BUSY_TIMEOUT = 5.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open a connection with foreign keys enforced.

    Args:
        db_path: Path to SQLite database file
    """
    conn = sqlite3.connect(str(Path(db_path)), timeout=BUSY_TIMEOUT)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(db_path: str = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Run statements in one immediate transaction.

    The write lock is taken up front so a version check and the write that
    depends on it cannot interleave with another writer. Commits on success,
    rolls back and re-raises on any error.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
