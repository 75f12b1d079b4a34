"""
Quota Gate: tiered admission control for chat commands.
"""

from .config.loader import Settings, load_policy_config, load_settings
from .core.admission import AdmissionEngine, AdmissionStatus, Decision, InvalidInput
from .core.policy import PolicyStore, load_policy_store
from .storage.db import StorageError
from .storage.repository import initialize_schema

__all__ = [
    "AdmissionEngine",
    "AdmissionStatus",
    "Decision",
    "InvalidInput",
    "PolicyStore",
    "Settings",
    "StorageError",
    "initialize_schema",
    "load_policy_config",
    "load_policy_store",
    "load_settings",
]
