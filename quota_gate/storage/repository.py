"""
Repository pattern for data access.

Handles schema creation, premium entitlements and the append-only
admission event ledger.
"""

from datetime import datetime
from typing import List, Optional

from .db import (
    DEFAULT_DB_PATH,
    DEFAULT_TIMEOUT_SECONDS,
    format_timestamp,
    parse_timestamp,
    transaction,
    utcnow,
)
from .models import AdmissionEvent, UserEntitlement


def initialize_schema(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_TIMEOUT_SECONDS
) -> None:
    """Create the entitlement, usage counter and event tables if missing.

    ``admission_event`` is an append-only ledger. No UPDATE or DELETE
    operations should ever be performed on it.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a locked database
    """
    with transaction(db_path, timeout) as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS user_entitlement (
                user_id TEXT PRIMARY KEY,
                is_premium INTEGER NOT NULL DEFAULT 0,
                premium_expires_at TEXT,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS command_usage (
                user_id TEXT NOT NULL,
                command_name TEXT NOT NULL,
                usage_count INTEGER NOT NULL,
                window_start TEXT NOT NULL,
                last_used TEXT NOT NULL,
                PRIMARY KEY (user_id, command_name)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS admission_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                user_id TEXT NOT NULL,
                command_name TEXT NOT NULL,
                group_context TEXT,
                is_premium INTEGER,
                status TEXT NOT NULL,
                count_before_decision INTEGER,
                limit_applied INTEGER
            )
        """)


class EntitlementRepository:
    """Repository for reading and mutating premium entitlements."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        timeout: float = DEFAULT_TIMEOUT_SECONDS
    ):
        self.db_path = db_path
        self.timeout = timeout

    def get_entitlement(self, user_id: str) -> Optional[UserEntitlement]:
        """Fetch the stored entitlement for a user, or None if never granted.

        Raises:
            StorageError: If the store cannot be read
        """
        with transaction(self.db_path, self.timeout) as conn:
            row = conn.execute(
                """
                SELECT user_id, is_premium, premium_expires_at
                FROM user_entitlement
                WHERE user_id = ?
                """,
                (user_id,)
            ).fetchone()
        if row is None:
            return None
        return UserEntitlement(
            user_id=row[0],
            is_premium=bool(row[1]),
            premium_expires_at=parse_timestamp(row[2])
        )

    def clear_expired_premium(self, user_id: str, now: datetime) -> bool:
        """Clear the premium flag only if it is still set and already expired.

        The condition is re-checked by the UPDATE itself, so a grant that
        lands between the read and this write is never overwritten, and
        repeating the call is harmless.

        Returns:
            True if a row was normalized by this call
        """
        with transaction(self.db_path, self.timeout) as conn:
            cursor = conn.execute(
                """
                UPDATE user_entitlement
                SET is_premium = 0, premium_expires_at = NULL, updated_at = ?
                WHERE user_id = ?
                  AND is_premium = 1
                  AND premium_expires_at IS NOT NULL
                  AND premium_expires_at < ?
                """,
                (format_timestamp(now), user_id, format_timestamp(now))
            )
            return cursor.rowcount > 0

    def grant_premium(
        self,
        user_id: str,
        expires_at: Optional[datetime]
    ) -> UserEntitlement:
        """Create or overwrite a premium grant. ``None`` means no expiry."""
        expires_text = format_timestamp(expires_at) if expires_at else None
        with transaction(self.db_path, self.timeout) as conn:
            conn.execute(
                """
                INSERT INTO user_entitlement (user_id, is_premium, premium_expires_at, updated_at)
                VALUES (?, 1, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    is_premium = 1,
                    premium_expires_at = excluded.premium_expires_at,
                    updated_at = excluded.updated_at
                """,
                (user_id, expires_text, format_timestamp(utcnow()))
            )
        return UserEntitlement(
            user_id=user_id,
            is_premium=True,
            premium_expires_at=parse_timestamp(expires_text)
        )

    def revoke_premium(self, user_id: str) -> bool:
        """Clear premium unconditionally. Returns False for unknown users."""
        with transaction(self.db_path, self.timeout) as conn:
            cursor = conn.execute(
                """
                UPDATE user_entitlement
                SET is_premium = 0, premium_expires_at = NULL, updated_at = ?
                WHERE user_id = ?
                """,
                (format_timestamp(utcnow()), user_id)
            )
            return cursor.rowcount > 0


def insert_admission_event(
    event: AdmissionEvent,
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_TIMEOUT_SECONDS
) -> None:
    """Insert a single admission event into the append-only ledger.

    Args:
        event: The decision to record
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a locked database
    """
    with transaction(db_path, timeout) as conn:
        conn.execute("""
            INSERT INTO admission_event
            (timestamp, user_id, command_name, group_context, is_premium,
             status, count_before_decision, limit_applied)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            format_timestamp(event.timestamp),
            event.user_id,
            event.command_name,
            event.group_context,
            None if event.is_premium is None else int(event.is_premium),
            event.status,
            event.count_before_decision,
            event.limit_applied
        ))


def fetch_recent_admission_events(
    user_id: Optional[str] = None,
    command_name: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_TIMEOUT_SECONDS
) -> List[AdmissionEvent]:
    """Fetch recent admission events, optionally filtered by user and command.

    Returns events in reverse chronological order (newest first).

    Args:
        user_id: Optional filter for a specific user
        command_name: Optional filter for a specific command
        limit: Maximum number of events to return
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a locked database

    Returns:
        List of admission events ordered by timestamp (newest first)
    """
    query = """
        SELECT timestamp, user_id, command_name, group_context, is_premium,
               status, count_before_decision, limit_applied
        FROM admission_event
    """
    params: list = []
    conditions = []

    if user_id:
        conditions.append("user_id = ?")
        params.append(user_id)
    if command_name:
        conditions.append("command_name = ?")
        params.append(command_name)

    if conditions:
        query += " WHERE " + " AND ".join(conditions)

    query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
    params.append(limit)

    with transaction(db_path, timeout) as conn:
        rows = conn.execute(query, params).fetchall()

    return [
        AdmissionEvent(
            timestamp=parse_timestamp(row[0]),
            user_id=row[1],
            command_name=row[2],
            group_context=row[3],
            is_premium=None if row[4] is None else bool(row[4]),
            status=row[5],
            count_before_decision=row[6],
            limit_applied=row[7]
        )
        for row in rows
    ]
