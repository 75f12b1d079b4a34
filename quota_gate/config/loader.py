"""
Configuration management and loading.

Handles the command policy file and environment-driven process settings.
"""

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Dict, FrozenSet, Mapping, Optional

import yaml

DEFAULT_POLICY_NAME = "default"
LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})
# 100 years; window arithmetic must stay inside the datetime range
MAX_WINDOW_MINUTES = 100 * 365 * 24 * 60


@dataclass(frozen=True)
class TierLimit:
    """Usage limit for one tier of one command.

    ``limit < 0`` means unlimited, ``limit == 0`` means disabled and
    ``limit > 0`` is bounded by a sliding window of ``window_minutes``.
    """
    limit: int
    window_minutes: int = 0

    def __post_init__(self):
        """Validate that bounded tiers carry a usable window."""
        if self.limit > 0 and self.window_minutes <= 0:
            raise ValueError("windowMinutes must be > 0 when limit > 0")
        if self.window_minutes < 0:
            raise ValueError("windowMinutes cannot be negative")
        if self.window_minutes > MAX_WINDOW_MINUTES:
            raise ValueError(f"windowMinutes cannot exceed {MAX_WINDOW_MINUTES}")

    @property
    def unlimited(self) -> bool:
        return self.limit < 0

    @property
    def disabled(self) -> bool:
        return self.limit == 0

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.window_minutes)


@dataclass(frozen=True)
class CommandPolicy:
    """Tiered limits for a command. A missing tier means no limit is configured."""
    command_name: str
    premium_tier: Optional[TierLimit] = None
    non_premium_tier: Optional[TierLimit] = None
    is_unconfigured: bool = False

    def tier_for(self, is_premium: bool) -> Optional[TierLimit]:
        return self.premium_tier if is_premium else self.non_premium_tier


@dataclass(frozen=True)
class PolicyConfig:
    """Complete admission policy configuration."""
    commands: Dict[str, CommandPolicy]
    owners: FrozenSet[str] = frozenset()

    @property
    def default(self) -> Optional[CommandPolicy]:
        return self.commands.get(DEFAULT_POLICY_NAME)


@dataclass(frozen=True)
class Settings:
    """Process settings resolved from the environment."""
    db_path: str = "quota_gate.db"
    policy_path: str = "quota_gate.yaml"
    storage_timeout: float = 5.0
    log_level: str = "INFO"

    def __post_init__(self):
        if self.storage_timeout <= 0:
            raise ValueError("storage_timeout must be > 0")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {sorted(LOG_LEVELS)}, got {self.log_level!r}")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from ``QUOTA_GATE_*`` environment variables.

    Raises:
        ValueError: If a variable holds an invalid value
    """
    env = os.environ if environ is None else environ
    defaults = Settings()

    timeout_raw = env.get("QUOTA_GATE_STORAGE_TIMEOUT")
    try:
        timeout = float(timeout_raw) if timeout_raw else defaults.storage_timeout
    except ValueError:
        raise ValueError(f"QUOTA_GATE_STORAGE_TIMEOUT must be a number, got {timeout_raw!r}")

    return Settings(
        db_path=env.get("QUOTA_GATE_DB_PATH", defaults.db_path),
        policy_path=env.get("QUOTA_GATE_POLICY_PATH", defaults.policy_path),
        storage_timeout=timeout,
        log_level=env.get("QUOTA_GATE_LOG_LEVEL", defaults.log_level).upper()
    )


def load_policy_config(path: str) -> PolicyConfig:
    """Load and validate command policies from a YAML (or JSON) file.

    Strict validation ensures no silent misconfigurations that could
    leave commands unmetered or disabled by accident.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated PolicyConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Policy config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")

    return parse_policy_config(raw_config)


def parse_policy_config(raw_config: Mapping) -> PolicyConfig:
    """Validate an already-parsed policy document."""
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'commandLimits', 'owners'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'commandLimits' not in raw_config:
        raise ValueError("Missing required 'commandLimits' section")

    limits_data = raw_config['commandLimits']
    if not isinstance(limits_data, dict):
        raise ValueError("'commandLimits' must be a dictionary")

    commands = {}
    for command_name, command_data in limits_data.items():
        if not isinstance(command_name, str) or not command_name.strip():
            raise ValueError("Command names in 'commandLimits' must be non-empty strings")
        if not isinstance(command_data, dict):
            raise ValueError(f"Command '{command_name}' must be a dictionary")
        commands[command_name] = _parse_command_policy(
            command_name, command_data, f"commandLimits.{command_name}"
        )

    owners_data = raw_config.get('owners') or []
    if not isinstance(owners_data, list) or not all(isinstance(o, str) for o in owners_data):
        raise ValueError("'owners' must be a list of user ids")

    return PolicyConfig(commands=commands, owners=frozenset(owners_data))


def _parse_command_policy(command_name: str, data: Dict, path: str) -> CommandPolicy:
    allowed_keys = {'premium', 'nonPremium'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    return CommandPolicy(
        command_name=command_name,
        premium_tier=_parse_tier(data.get('premium'), f"{path}.premium"),
        non_premium_tier=_parse_tier(data.get('nonPremium'), f"{path}.nonPremium")
    )


def _parse_tier(data: Optional[Dict], path: str) -> Optional[TierLimit]:
    """Parse and validate one tier.

    Args:
        data: Tier configuration data, or None when the tier is omitted
        path: Path for error messages

    Returns:
        Validated TierLimit, or None for an omitted tier

    Raises:
        ValueError: If configuration is invalid
    """
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")

    allowed_keys = {'limit', 'windowMinutes'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    if 'limit' not in data:
        raise ValueError(f"Missing required 'limit' in {path}")

    limit = data['limit']
    # bool is an int subclass; reject it explicitly
    if not isinstance(limit, int) or isinstance(limit, bool):
        raise ValueError(f"'limit' in {path} must be an integer")

    window_minutes = data.get('windowMinutes', 0)
    if not isinstance(window_minutes, int) or isinstance(window_minutes, bool):
        raise ValueError(f"'windowMinutes' in {path} must be an integer")

    if limit > 0 and window_minutes <= 0:
        raise ValueError(f"'windowMinutes' in {path} must be > 0 when 'limit' > 0")
    if window_minutes < 0:
        raise ValueError(f"'windowMinutes' in {path} cannot be negative")
    if window_minutes > MAX_WINDOW_MINUTES:
        raise ValueError(f"'windowMinutes' in {path} cannot exceed {MAX_WINDOW_MINUTES}")

    return TierLimit(limit=limit, window_minutes=window_minutes)
