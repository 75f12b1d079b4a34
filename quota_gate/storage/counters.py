"""
Sliding-window usage counters.

One row per (user, command) holds the number of admitted calls since the
window started. Rows are created on first use, reset in place once their
window has elapsed and never deleted.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from .db import (
    DEFAULT_DB_PATH,
    DEFAULT_TIMEOUT_SECONDS,
    format_timestamp,
    parse_timestamp,
    to_utc,
    transaction,
)
from .models import CounterUpdate, UsageCounter

_SELECT_COUNTER = """
    SELECT user_id, command_name, usage_count, window_start, last_used
    FROM command_usage
    WHERE user_id = ? AND command_name = ?
"""


class UsageCounterStore:
    """Durable (user, command) counters with atomic start-or-increment.

    Mutual exclusion comes from the database write lock, never from
    in-process locks, so separate processes sharing one database file are
    serialized as well as threads.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        timeout: float = DEFAULT_TIMEOUT_SECONDS
    ):
        self.db_path = db_path
        self.timeout = timeout

    def start_or_increment(
        self,
        user_id: str,
        command_name: str,
        window: timedelta,
        now: datetime,
        limit: Optional[int] = None
    ) -> CounterUpdate:
        """Count one call against the (user, command) window.

        Runs as one write-locked transaction:

        - no counter, or the window has elapsed: restart at 1 from ``now``
        - ``limit`` given and already reached: leave the row untouched
        - otherwise: increment

        Denied calls are never counted, so ``limit`` admitted calls fit in
        every window and each admitted caller sees a distinct prior count.

        Args:
            user_id: Chat identity of the caller
            command_name: Command being invoked
            window: Window duration
            now: Current time
            limit: Maximum admitted calls per window, or None for no check

        Returns:
            CounterUpdate with the count observed before this call

        Raises:
            StorageError: If the store is unavailable or stays locked
        """
        now = to_utc(now)
        now_text = format_timestamp(now)

        with transaction(self.db_path, self.timeout, immediate=True) as conn:
            row = conn.execute(_SELECT_COUNTER, (user_id, command_name)).fetchone()
            counter = _row_to_counter(row) if row else None

            if counter is None or counter.is_expired(window, now):
                conn.execute(
                    """
                    INSERT INTO command_usage
                    (user_id, command_name, usage_count, window_start, last_used)
                    VALUES (?, ?, 1, ?, ?)
                    ON CONFLICT(user_id, command_name) DO UPDATE SET
                        usage_count = 1,
                        window_start = excluded.window_start,
                        last_used = excluded.last_used
                    """,
                    (user_id, command_name, now_text, now_text)
                )
                return CounterUpdate(
                    prior_count=0,
                    window_was_reset=True,
                    admitted=True,
                    window_start=now
                )

            if limit is not None and counter.count >= limit:
                return CounterUpdate(
                    prior_count=counter.count,
                    window_was_reset=False,
                    admitted=False,
                    window_start=counter.window_start
                )

            conn.execute(
                """
                UPDATE command_usage
                SET usage_count = usage_count + 1, last_used = ?
                WHERE user_id = ? AND command_name = ?
                """,
                (now_text, user_id, command_name)
            )
            return CounterUpdate(
                prior_count=counter.count,
                window_was_reset=False,
                admitted=True,
                window_start=counter.window_start
            )

    def peek_remaining_window(
        self,
        user_id: str,
        command_name: str,
        window: timedelta,
        now: datetime
    ) -> timedelta:
        """Time left until the current window elapses. Never mutates state."""
        counter = self.get_counter(user_id, command_name)
        if counter is None:
            return timedelta(0)
        return counter.remaining(window, to_utc(now))

    def get_counter(self, user_id: str, command_name: str) -> Optional[UsageCounter]:
        with transaction(self.db_path, self.timeout) as conn:
            row = conn.execute(_SELECT_COUNTER, (user_id, command_name)).fetchone()
        return _row_to_counter(row) if row else None

    def list_counters(self, user_id: Optional[str] = None) -> List[UsageCounter]:
        """All counters, or those of one user, most recently used first."""
        query = """
            SELECT user_id, command_name, usage_count, window_start, last_used
            FROM command_usage
        """
        params: list = []
        if user_id:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY last_used DESC"

        with transaction(self.db_path, self.timeout) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_counter(row) for row in rows]


def _row_to_counter(row) -> UsageCounter:
    return UsageCounter(
        user_id=row[0],
        command_name=row[1],
        count=row[2],
        window_start=parse_timestamp(row[3]),
        last_used=parse_timestamp(row[4])
    )
