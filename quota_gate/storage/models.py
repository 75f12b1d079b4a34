"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class UserEntitlement:
    """Premium entitlement of a chat user.

    A record with ``is_premium`` set and an expiry in the past is stale and
    must be normalized before it is trusted.
    """
    user_id: str
    is_premium: bool
    premium_expires_at: Optional[datetime] = None

    def is_stale(self, now: datetime) -> bool:
        """True when still flagged premium although the expiry has passed."""
        return (
            self.is_premium
            and self.premium_expires_at is not None
            and self.premium_expires_at < now
        )

    def is_active(self, now: datetime) -> bool:
        return self.is_premium and (
            self.premium_expires_at is None or self.premium_expires_at > now
        )


@dataclass(frozen=True)
class UsageCounter:
    """Admitted calls of one user for one command in the current window."""
    user_id: str
    command_name: str
    count: int
    window_start: datetime
    last_used: datetime

    def is_expired(self, window: timedelta, now: datetime) -> bool:
        """The count is meaningless once the window has fully elapsed."""
        return now - self.window_start > window

    def remaining(self, window: timedelta, now: datetime) -> timedelta:
        remaining = self.window_start + window - now
        return max(remaining, timedelta(0))


@dataclass(frozen=True)
class CounterUpdate:
    """Outcome of an atomic start-or-increment on a usage counter."""
    prior_count: int
    window_was_reset: bool
    admitted: bool
    window_start: datetime


@dataclass(frozen=True)
class AdmissionEvent:
    """Immutable record of one admission decision.

    Append-only: one row per evaluation, never modified afterwards. ``is_premium``
    is None when the decision did not consult the entitlement.
    """
    timestamp: datetime
    user_id: str
    command_name: str
    is_premium: Optional[bool]
    status: str
    group_context: Optional[str] = None
    count_before_decision: Optional[int] = None
    limit_applied: Optional[int] = None
