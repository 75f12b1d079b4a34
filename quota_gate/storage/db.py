"""
Database connection management.

Provides SQLite connections, transactions and timestamp conversion for
data persistence.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

DEFAULT_DB_PATH = "quota_gate.db"
DEFAULT_TIMEOUT_SECONDS = 5.0


class StorageError(Exception):
    """Raised when the durable store is unreachable, locked past its timeout or fails."""


def get_connection(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_TIMEOUT_SECONDS
) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a locked database before failing

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def transaction(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    immediate: bool = False
) -> Iterator[sqlite3.Connection]:
    """Run a block inside a single transaction.

    With ``immediate=True`` the write lock is taken before the first read,
    so a read-modify-write inside the block cannot interleave with another
    writer on the same database, in this process or any other.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for the lock before failing
        immediate: Acquire the write lock when the transaction begins

    Yields:
        Connection with an open transaction

    Raises:
        StorageError: On any SQLite failure, including lock timeouts
    """
    conn: Optional[sqlite3.Connection] = None
    try:
        conn = get_connection(db_path, timeout)
        conn.isolation_level = None
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        yield conn
        conn.execute("COMMIT")
    except sqlite3.Error as e:
        _rollback_quietly(conn)
        raise StorageError(f"Storage operation failed on {db_path}: {e}") from e
    except BaseException:
        _rollback_quietly(conn)
        raise
    finally:
        if conn is not None:
            conn.close()


def _rollback_quietly(conn: Optional[sqlite3.Connection]) -> None:
    if conn is None or not conn.in_transaction:
        return
    try:
        conn.execute("ROLLBACK")
    except sqlite3.Error:
        # Caller re-raises the failure that triggered the rollback.
        pass


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Fixed-width ISO-8601 text so stored timestamps sort chronologically."""
    return to_utc(value).isoformat(timespec="microseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return to_utc(datetime.fromisoformat(value))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
