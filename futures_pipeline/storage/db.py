"""
Database connection management.

Provides SQLite connection for data persistence.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "futures_pipeline.db"
DEFAULT_TIMEOUT_SECONDS = 10.0


def get_connection(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before failing

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def write_transaction(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> Iterator[sqlite3.Connection]:
    """Open a connection holding the database write lock for the block.

    ``BEGIN IMMEDIATE`` takes the reserved lock up front, so a read made
    inside the block cannot be invalidated by a concurrent writer before
    the block's own write commits.
    """
    conn = get_connection(db_path, timeout)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
