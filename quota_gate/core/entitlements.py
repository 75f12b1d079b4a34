"""
Premium entitlement checks with lazy expiry.

Expired grants are not swept in the background. The first read that finds
one clears it, and reports the user as non-premium whether or not that
cleanup write succeeds.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from quota_gate.storage.db import StorageError, to_utc, utcnow
from quota_gate.storage.models import UserEntitlement
from quota_gate.storage.repository import EntitlementRepository

logger = logging.getLogger(__name__)

_DURATION_PATTERN = re.compile(
    r"^(\d+)\s*(d|days?|dias?|h|hours?|horas?|m|mins?|minutes?|minutos?)?$"
)


def parse_duration(value: str) -> timedelta:
    """Parse a grant duration such as ``30d``, ``24h`` or ``60m``.

    A bare number is taken as days.

    Raises:
        ValueError: If the format is not recognized or the amount is zero or too large
    """
    match = _DURATION_PATTERN.match(value.strip().lower())
    if not match:
        raise ValueError(
            f"Invalid duration {value!r}: use a number followed by 'd', 'h' or 'm' "
            "(e.g. 30d, 24h, 60m)"
        )

    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError("Duration must be greater than zero")

    unit = {"d": "days", "h": "hours", "m": "minutes"}[(match.group(2) or "d")[0]]
    try:
        return timedelta(**{unit: amount})
    except OverflowError:
        raise ValueError("Duration too large") from None


class EntitlementService:
    """Answers whether a user currently holds premium."""

    def __init__(
        self,
        repository: EntitlementRepository,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.repository = repository
        self._clock = clock or utcnow

    def is_premium(self, user_id: str) -> bool:
        """Return True if the user holds an unexpired premium grant.

        A stale grant is normalized with a conditional clear. The clear is
        idempotent and never overwrites a newer grant, so concurrent callers
        may both issue it.

        Raises:
            StorageError: If the entitlement cannot be read
        """
        now = to_utc(self._clock())
        entitlement = self.repository.get_entitlement(user_id)
        if entitlement is None:
            return False

        if entitlement.is_stale(now):
            try:
                if self.repository.clear_expired_premium(user_id, now):
                    logger.info(
                        "Premium expired for user %s at %s; flag cleared",
                        user_id, entitlement.premium_expires_at.isoformat()
                    )
            except StorageError:
                logger.warning(
                    "Failed to clear expired premium for user %s", user_id, exc_info=True
                )
            return False

        return entitlement.is_active(now)

    def get_entitlement(self, user_id: str) -> Optional[UserEntitlement]:
        """Stored record as-is, without normalization."""
        return self.repository.get_entitlement(user_id)

    def grant_premium(
        self,
        user_id: str,
        duration: Union[str, timedelta, None]
    ) -> UserEntitlement:
        """Grant premium from now for ``duration``; ``None`` grants without expiry.

        Raises:
            ValueError: If user_id is empty or the duration is invalid
            StorageError: If the grant cannot be written
        """
        if not user_id or not user_id.strip():
            raise ValueError("user_id is required and cannot be empty")

        if isinstance(duration, str):
            duration = parse_duration(duration)
        if duration is not None and duration <= timedelta(0):
            raise ValueError("Duration must be greater than zero")

        expires_at = None
        if duration is not None:
            try:
                expires_at = to_utc(self._clock()) + duration
            except OverflowError:
                raise ValueError("Duration too large") from None
        entitlement = self.repository.grant_premium(user_id, expires_at)
        logger.info(
            "Granted premium to %s until %s",
            user_id, expires_at.isoformat() if expires_at else "no expiry"
        )
        return entitlement

    def revoke_premium(self, user_id: str) -> bool:
        revoked = self.repository.revoke_premium(user_id)
        if revoked:
            logger.info("Revoked premium for %s", user_id)
        return revoked
