"""
Database connection management.

Provides SQLite connections and explicit transactions for the usage store.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ai_usage_ledger.core.errors import DataIntegrityError, StoreConnectionError

DEFAULT_DB_PATH = "ai_usage_ledger.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection in autocommit mode.

    Transactions are opened explicitly with ``transaction()`` so that a
    per-file delete+insert or an aggregate regeneration is atomic.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled

    Raises:
        StoreConnectionError: If the database cannot be opened
        DataIntegrityError: If the file exists but is not a valid database
    """
    path = Path(db_path)
    try:
        if str(path) != ":memory:":
            path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), isolation_level=None, timeout=30.0)
    except (sqlite3.OperationalError, OSError) as e:
        raise StoreConnectionError(f"Cannot open usage store at {db_path}: {e}") from e

    try:
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError as e:
        conn.close()
        raise StoreConnectionError(f"Cannot configure usage store at {db_path}: {e}") from e
    except sqlite3.DatabaseError as e:
        conn.close()
        raise DataIntegrityError(f"Usage store at {db_path} is corrupted: {e}") from e
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run the enclosed statements in one transaction.

    Commits on success, rolls back and re-raises on any exception.
    """
    conn.execute("BEGIN")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


@contextmanager
def translate_store_errors() -> Iterator[None]:
    """Map sqlite3 failures onto the ledger's store error classes."""
    try:
        yield
    except sqlite3.OperationalError as e:
        raise StoreConnectionError(f"Usage store operation failed: {e}") from e
    except sqlite3.DatabaseError as e:
        raise DataIntegrityError(f"Usage store rejected operation: {e}") from e
