"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for policy configs and settings.
"""

import json
import os
import shutil
import tempfile
from datetime import timedelta

import pytest
import yaml

from quota_gate.config.loader import (
    MAX_WINDOW_MINUTES,
    CommandPolicy,
    Settings,
    TierLimit,
    load_policy_config,
    load_settings,
    parse_policy_config,
)


class TestPolicyConfigLoading:
    """Test policy file loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data: dict, filename: str = "policy.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "owners": ["owner@s.whatsapp.net"],
            "commandLimits": {
                "default": {
                    "premium": {"limit": -1},
                    "nonPremium": {"limit": 5, "windowMinutes": 10}
                },
                "cat": {
                    "premium": {"limit": 50, "windowMinutes": 60},
                    "nonPremium": {"limit": 0}
                }
            }
        }

        config = load_policy_config(self._write_config(config_data))

        assert config.owners == frozenset({"owner@s.whatsapp.net"})
        assert set(config.commands) == {"default", "cat"}

        default = config.default
        assert default.premium_tier.unlimited
        assert default.non_premium_tier == TierLimit(limit=5, window_minutes=10)

        cat = config.commands["cat"]
        assert cat.command_name == "cat"
        assert cat.premium_tier.window == timedelta(minutes=60)
        assert cat.non_premium_tier.disabled

    def test_json_config_is_accepted(self):
        """JSON documents parse through the same loader."""
        config_path = os.path.join(self.temp_dir, "options.json")
        with open(config_path, 'w', encoding='utf-8') as f:
            json.dump({
                "commandLimits": {
                    "s": {"nonPremium": {"limit": 2, "windowMinutes": 1}}
                }
            }, f)

        config = load_policy_config(config_path)

        assert config.commands["s"].non_premium_tier.limit == 2
        assert config.commands["s"].premium_tier is None
        assert config.default is None
        assert config.owners == frozenset()

    def test_missing_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_policy_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_empty_file_raises(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()

        with pytest.raises(ValueError, match="empty"):
            load_policy_config(config_path)

    def test_invalid_yaml_raises(self):
        config_path = os.path.join(self.temp_dir, "broken.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("commandLimits: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_policy_config(config_path)

    def test_unknown_top_level_key_rejected(self):
        config_path = self._write_config({"commandLimits": {}, "budget": {}})

        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_policy_config(config_path)

    def test_missing_command_limits_rejected(self):
        config_path = self._write_config({"owners": []})

        with pytest.raises(ValueError, match="commandLimits"):
            load_policy_config(config_path)


class TestPolicyValidation:
    """Validation of individual command and tier entries."""

    def test_unknown_tier_name_rejected(self):
        with pytest.raises(ValueError, match="commandLimits.cat"):
            parse_policy_config({
                "commandLimits": {"cat": {"gold": {"limit": 1, "windowMinutes": 1}}}
            })

    def test_unknown_tier_key_rejected(self):
        with pytest.raises(ValueError, match="commandLimits.cat.premium"):
            parse_policy_config({
                "commandLimits": {"cat": {"premium": {"limit": 1, "window": 1}}}
            })

    def test_missing_limit_rejected(self):
        with pytest.raises(ValueError, match="Missing required 'limit'"):
            parse_policy_config({
                "commandLimits": {"cat": {"premium": {"windowMinutes": 1}}}
            })

    @pytest.mark.parametrize("limit", ["5", 2.5, True, None])
    def test_non_integer_limit_rejected(self, limit):
        with pytest.raises(ValueError, match="must be an integer"):
            parse_policy_config({
                "commandLimits": {"cat": {"premium": {"limit": limit, "windowMinutes": 1}}}
            })

    def test_positive_limit_requires_window(self):
        with pytest.raises(ValueError, match="windowMinutes"):
            parse_policy_config({
                "commandLimits": {"cat": {"nonPremium": {"limit": 3}}}
            })

    def test_negative_window_rejected(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            parse_policy_config({
                "commandLimits": {"cat": {"nonPremium": {"limit": -1, "windowMinutes": -5}}}
            })

    def test_oversized_window_rejected(self):
        with pytest.raises(ValueError, match="cannot exceed"):
            parse_policy_config({
                "commandLimits": {"once": {"nonPremium": {"limit": 1, "windowMinutes": 10**10}}}
            })

    def test_window_at_maximum_accepted(self):
        config = parse_policy_config({
            "commandLimits": {
                "once": {"nonPremium": {"limit": 1, "windowMinutes": MAX_WINDOW_MINUTES}}
            }
        })

        assert config.commands["once"].non_premium_tier.window_minutes == MAX_WINDOW_MINUTES

    def test_owners_must_be_list_of_strings(self):
        with pytest.raises(ValueError, match="owners"):
            parse_policy_config({"commandLimits": {}, "owners": "someone"})

    def test_command_entry_must_be_mapping(self):
        with pytest.raises(ValueError, match="must be a dictionary"):
            parse_policy_config({"commandLimits": {"cat": 5}})


class TestValueObjects:
    """Direct construction of the policy value objects."""

    def test_tier_limit_validates_window(self):
        with pytest.raises(ValueError):
            TierLimit(limit=3, window_minutes=0)

    def test_tier_limit_rejects_oversized_window(self):
        with pytest.raises(ValueError, match="cannot exceed"):
            TierLimit(limit=1, window_minutes=MAX_WINDOW_MINUTES + 1)

    def test_tier_flags(self):
        assert TierLimit(limit=-1).unlimited
        assert TierLimit(limit=0).disabled
        bounded = TierLimit(limit=3, window_minutes=10)
        assert not bounded.unlimited and not bounded.disabled

    def test_tier_for_selects_by_premium(self):
        premium = TierLimit(limit=10, window_minutes=5)
        regular = TierLimit(limit=2, window_minutes=5)
        policy = CommandPolicy("cat", premium_tier=premium, non_premium_tier=regular)

        assert policy.tier_for(True) is premium
        assert policy.tier_for(False) is regular


class TestSettings:
    """Environment-driven process settings."""

    def test_defaults(self):
        settings = load_settings({})

        assert settings == Settings()
        assert settings.db_path == "quota_gate.db"
        assert settings.storage_timeout == 5.0

    def test_reads_environment(self):
        settings = load_settings({
            "QUOTA_GATE_DB_PATH": "/tmp/qg.db",
            "QUOTA_GATE_POLICY_PATH": "/etc/qg.yaml",
            "QUOTA_GATE_STORAGE_TIMEOUT": "1.5",
            "QUOTA_GATE_LOG_LEVEL": "debug",
        })

        assert settings.db_path == "/tmp/qg.db"
        assert settings.policy_path == "/etc/qg.yaml"
        assert settings.storage_timeout == 1.5
        assert settings.log_level == "DEBUG"

    def test_non_numeric_timeout_rejected(self):
        with pytest.raises(ValueError, match="QUOTA_GATE_STORAGE_TIMEOUT"):
            load_settings({"QUOTA_GATE_STORAGE_TIMEOUT": "soon"})

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ValueError, match="storage_timeout"):
            load_settings({"QUOTA_GATE_STORAGE_TIMEOUT": "0"})

    def test_unknown_log_level_rejected(self):
        with pytest.raises(ValueError, match="log_level"):
            load_settings({"QUOTA_GATE_LOG_LEVEL": "chatty"})
