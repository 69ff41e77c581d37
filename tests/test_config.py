"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for ledger configs.
"""

import os
import tempfile
from decimal import Decimal

import pytest
import yaml

from quota_ledger.config.loader import default_config, load_ledger_config
from quota_ledger.core.tiers import SubscriptionTier
from quota_ledger.storage.db import DEFAULT_DB_PATH


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_path = self._write_config({
            "database": {"path": "ledger.db"},
            "tiers": {
                "free": {"daily_limit": 5},
                "pro": {"daily_limit": "unlimited", "monthly_token_limit": 1_000_000},
            },
            "pricing": {
                "default_model": "house-model",
                "models": {
                    "house-model": {"prompt_rate": "0.000001", "completion_rate": 0.000002},
                },
            },
        })

        config = load_ledger_config(config_path)

        assert config.database_path == "ledger.db"
        free = config.tiers.get_limits(SubscriptionTier.FREE)
        assert free.daily_limit == 5
        assert free.monthly_token_limit == 10_000
        pro = config.tiers.get_limits(SubscriptionTier.PRO)
        assert pro.daily_limit is None
        assert pro.monthly_token_limit == 1_000_000
        assert config.pricing.default_model == "house-model"
        assert config.pricing.get_pricing("house-model").prompt_rate == Decimal("0.000001")
        assert config.pricing.get_pricing("gpt-4").prompt_rate == Decimal("0.00003")

    def test_defaults(self):
        config = default_config()
        assert config.database_path == DEFAULT_DB_PATH
        assert config.tiers.get_limits(SubscriptionTier.PLUS).daily_limit == 30
        assert config.pricing.default_model == "gemini-pro"

    def test_missing_file_raises_error(self):
        with pytest.raises(FileNotFoundError, match="Ledger config file not found"):
            load_ledger_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_empty_file_raises_error(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("")
        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_ledger_config(config_path)

    def test_unknown_top_level_key_raises_error(self):
        config_path = self._write_config({"tiers": {}, "budget": {"daily": 10}})
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_ledger_config(config_path)

    def test_unknown_tier_raises_error(self):
        config_path = self._write_config({"tiers": {"platinum": {"daily_limit": 100}}})
        with pytest.raises(ValueError, match="Unknown tier 'platinum'"):
            load_ledger_config(config_path)

    def test_unknown_limit_key_raises_error(self):
        config_path = self._write_config({"tiers": {"free": {"daily_limt": 100}}})
        with pytest.raises(ValueError, match="Unknown keys in tiers.free"):
            load_ledger_config(config_path)

    def test_invalid_limit_raises_error(self):
        for value in [0, -5, "lots", True]:
            config_path = self._write_config({"tiers": {"free": {"daily_limit": value}}})
            with pytest.raises(ValueError, match="must be a positive integer or 'unlimited'"):
                load_ledger_config(config_path)

    def test_negative_rate_raises_error(self):
        config_path = self._write_config({
            "pricing": {"models": {"m": {"prompt_rate": -0.1, "completion_rate": 0}}}
        })
        with pytest.raises(ValueError, match="must be >= 0"):
            load_ledger_config(config_path)

    def test_missing_rate_raises_error(self):
        config_path = self._write_config({"pricing": {"models": {"m": {"prompt_rate": 0.1}}}})
        with pytest.raises(ValueError, match="Missing required 'completion_rate'"):
            load_ledger_config(config_path)

    def test_unpriced_default_model_raises_error(self):
        config_path = self._write_config({"pricing": {"default_model": "nope"}})
        with pytest.raises(ValueError, match="has no pricing entry"):
            load_ledger_config(config_path)

    def test_empty_database_path_raises_error(self):
        config_path = self._write_config({"database": {"path": "  "}})
        with pytest.raises(ValueError, match="must be a non-empty string"):
            load_ledger_config(config_path)
