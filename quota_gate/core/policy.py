"""
Command policy resolution.

Maps a command name to its tiered limits, falling back to the ``default``
entry and finally to an unconfigured sentinel.
"""

from types import MappingProxyType
from typing import Iterable, Mapping

from quota_gate.config.loader import (
    DEFAULT_POLICY_NAME,
    CommandPolicy,
    PolicyConfig,
    TierLimit,
    load_policy_config,
)

# Returned when neither the command nor a default is configured.
UNCONFIGURED_POLICY = CommandPolicy(command_name="", is_unconfigured=True)

__all__ = [
    "CommandPolicy",
    "PolicyStore",
    "TierLimit",
    "UNCONFIGURED_POLICY",
    "load_policy_store",
]


class PolicyStore:
    """Read-only view over the command policy table.

    Built once at startup; ``resolve`` is a pure lookup.
    """

    def __init__(
        self,
        policies: Mapping[str, CommandPolicy],
        owners: Iterable[str] = ()
    ):
        self._policies = MappingProxyType(dict(policies))
        self._owners = frozenset(owners)

    @classmethod
    def from_config(cls, config: PolicyConfig) -> "PolicyStore":
        return cls(config.commands, config.owners)

    @property
    def policies(self) -> Mapping[str, CommandPolicy]:
        return self._policies

    def resolve(self, command_name: str) -> CommandPolicy:
        """Explicit policy for the command, else ``default``, else the sentinel."""
        policy = self._policies.get(command_name)
        if policy is not None:
            return policy
        return self._policies.get(DEFAULT_POLICY_NAME, UNCONFIGURED_POLICY)

    def is_owner(self, user_id: str) -> bool:
        return user_id in self._owners


def load_policy_store(path: str) -> PolicyStore:
    return PolicyStore.from_config(load_policy_config(path))
