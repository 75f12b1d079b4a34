"""
Command admission control.

Decides whether a chat command invocation may run, combining the user's
premium tier, the command policy and the sliding-window usage counter.

Evaluation Order:
1. Owner bypass - Configured owners are never limited
2. Entitlement - Premium or non-premium tier
3. Policy - Unconfigured, unlimited and disabled tiers short-circuit
4. Usage counter - Atomic check-and-count against the tier's window

Every evaluation is recorded in the analytics ledger, whatever its outcome.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from quota_gate.config.loader import Settings, TierLimit
from quota_gate.storage.counters import UsageCounterStore
from quota_gate.storage.db import StorageError, to_utc, utcnow
from quota_gate.storage.models import AdmissionEvent
from quota_gate.storage.repository import EntitlementRepository

from .analytics import AnalyticsSink
from .entitlements import EntitlementService
from .policy import PolicyStore, load_policy_store

logger = logging.getLogger(__name__)

UNLIMITED = -1

ERROR_MESSAGE = (
    "An internal error occurred while checking your usage limits. "
    "Please try again later."
)


class AdmissionStatus(Enum):
    """Possible outcomes of an admission check."""
    ALLOWED = "allowed"
    RATE_LIMITED = "rate_limited"
    DISABLED = "disabled"
    ERROR = "error"


class InvalidInput(ValueError):
    """Raised when a caller passes an empty user id or command name."""


@dataclass(frozen=True)
class Decision:
    """Admission verdict for one command invocation.

    ``is_premium`` is None when the entitlement was never looked up, as for
    an owner bypass.
    """
    status: AdmissionStatus
    is_premium: Optional[bool]
    message: Optional[str] = None
    limit_applied: Optional[int] = None
    count_before_decision: Optional[int] = None
    bypassed: bool = False

    @property
    def allowed(self) -> bool:
        return self.status == AdmissionStatus.ALLOWED


def disabled_message(command_name: str) -> str:
    return f"Sorry, the command `{command_name}` is currently disabled."


def rate_limited_message(
    command_name: str,
    used: int,
    tier: TierLimit,
    remaining: timedelta,
    is_premium: bool
) -> str:
    """User-facing text for a rejected call, with a whole-minute retry hint."""
    retry_minutes = max(1, math.ceil(remaining.total_seconds() / 60))
    premium_note = " (premium user)" if is_premium else ""
    return (
        f"Usage limit reached: you have used `{command_name}` {used} time(s){premium_note}, "
        f"the limit is {tier.limit} use(s) every {tier.window_minutes} minute(s). "
        f"You can use it again in about {retry_minutes} minute(s)."
    )


class AdmissionEngine:
    """Stateless orchestrator producing a Decision per (user, command).

    All shared mutable state lives in the durable store, so one engine can
    serve any number of concurrent callers and several engines can share
    one database.
    """

    def __init__(
        self,
        entitlements: EntitlementService,
        policies: PolicyStore,
        counters: UsageCounterStore,
        analytics: AnalyticsSink,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.entitlements = entitlements
        self.policies = policies
        self.counters = counters
        self.analytics = analytics
        self._clock = clock or utcnow

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        policies: Optional[PolicyStore] = None,
        clock: Optional[Callable[[], datetime]] = None
    ) -> "AdmissionEngine":
        """Wire an engine against the configured database and policy file."""
        if policies is None:
            policies = load_policy_store(settings.policy_path)
        return cls(
            entitlements=EntitlementService(
                EntitlementRepository(settings.db_path, settings.storage_timeout),
                clock=clock
            ),
            policies=policies,
            counters=UsageCounterStore(settings.db_path, settings.storage_timeout),
            analytics=AnalyticsSink(settings.db_path, settings.storage_timeout),
            clock=clock
        )

    def evaluate(
        self,
        user_id: str,
        command_name: str,
        group_context: Optional[str] = None
    ) -> Decision:
        """Decide whether ``user_id`` may run ``command_name`` now.

        Storage failures never propagate; they produce an ``error``
        decision with a generic message.

        Args:
            user_id: Stable chat identity of the caller
            command_name: Command being invoked
            group_context: Group the message came from, if any

        Returns:
            Decision for this invocation

        Raises:
            InvalidInput: If user_id or command_name is empty
        """
        if not user_id or not user_id.strip():
            raise InvalidInput("user_id is required and cannot be empty")
        if not command_name or not command_name.strip():
            raise InvalidInput("command_name is required and cannot be empty")

        now = to_utc(self._clock())
        decision = self._decide(user_id, command_name, now)

        self.analytics.record(AdmissionEvent(
            timestamp=now,
            user_id=user_id,
            command_name=command_name,
            group_context=group_context,
            is_premium=decision.is_premium,
            status=decision.status.value,
            count_before_decision=decision.count_before_decision,
            limit_applied=decision.limit_applied
        ))
        return decision

    def _decide(self, user_id: str, command_name: str, now: datetime) -> Decision:
        if self.policies.is_owner(user_id):
            logger.info("Owner %s bypassed admission for %s", user_id, command_name)
            return Decision(
                status=AdmissionStatus.ALLOWED,
                is_premium=None,
                limit_applied=UNLIMITED,
                bypassed=True
            )

        try:
            is_premium = self.entitlements.is_premium(user_id)
        except StorageError:
            logger.error(
                "Entitlement lookup failed for %s on %s", user_id, command_name, exc_info=True
            )
            return Decision(status=AdmissionStatus.ERROR, is_premium=False, message=ERROR_MESSAGE)

        policy = self.policies.resolve(command_name)
        tier = policy.tier_for(is_premium)

        if tier is None:
            if policy.is_unconfigured:
                logger.warning(
                    "No policy for '%s' and no default; allowing unmetered", command_name
                )
            else:
                logger.warning(
                    "Policy for '%s' has no %s tier; allowing unmetered",
                    command_name, "premium" if is_premium else "nonPremium"
                )
            return Decision(
                status=AdmissionStatus.ALLOWED, is_premium=is_premium, limit_applied=UNLIMITED
            )

        if tier.unlimited:
            return Decision(
                status=AdmissionStatus.ALLOWED, is_premium=is_premium, limit_applied=UNLIMITED
            )

        if tier.disabled:
            logger.info("Command '%s' is disabled (limit 0). User: %s", command_name, user_id)
            return Decision(
                status=AdmissionStatus.DISABLED,
                is_premium=is_premium,
                message=disabled_message(command_name),
                limit_applied=0
            )

        try:
            update = self.counters.start_or_increment(
                user_id, command_name, tier.window, now, limit=tier.limit
            )
        except StorageError:
            logger.error(
                "Usage counter update failed for %s on %s", user_id, command_name, exc_info=True
            )
            return Decision(
                status=AdmissionStatus.ERROR, is_premium=is_premium, message=ERROR_MESSAGE
            )

        if update.window_was_reset:
            logger.info(
                "User %s used %s. Window started. (Limit: %d/%dm, Premium: %s)",
                user_id, command_name, tier.limit, tier.window_minutes, is_premium
            )
            return Decision(
                status=AdmissionStatus.ALLOWED,
                is_premium=is_premium,
                limit_applied=tier.limit,
                count_before_decision=0
            )

        if not update.admitted:
            logger.warning(
                "User %s rate limited for %s. Count: %d/%d (Premium: %s)",
                user_id, command_name, update.prior_count, tier.limit, is_premium
            )
            return Decision(
                status=AdmissionStatus.RATE_LIMITED,
                is_premium=is_premium,
                message=self._rate_limited_message(
                    user_id, command_name, tier, update.prior_count, now, is_premium
                ),
                limit_applied=tier.limit,
                count_before_decision=update.prior_count
            )

        logger.info(
            "User %s used %s. Count: %d/%d (Window: %dm, Premium: %s)",
            user_id, command_name, update.prior_count + 1, tier.limit,
            tier.window_minutes, is_premium
        )
        return Decision(
            status=AdmissionStatus.ALLOWED,
            is_premium=is_premium,
            limit_applied=tier.limit,
            count_before_decision=update.prior_count
        )

    def _rate_limited_message(
        self,
        user_id: str,
        command_name: str,
        tier: TierLimit,
        used: int,
        now: datetime,
        is_premium: bool
    ) -> str:
        try:
            remaining = self.counters.peek_remaining_window(
                user_id, command_name, tier.window, now
            )
        except StorageError:
            # The denial stands; only the retry hint degrades.
            logger.warning("Could not read remaining window for %s/%s", user_id, command_name)
            remaining = tier.window
        return rate_limited_message(command_name, used, tier, remaining, is_premium)
