"""
Configuration management and loading.

Handles tier limits, model pricing and the database location.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from quota_ledger.core.pricing import PRICING_TABLE, ModelPricing, PricingTable
from quota_ledger.core.tiers import TIER_TABLE, SubscriptionTier, TierLimits, TierTable
from quota_ledger.storage.db import DEFAULT_DB_PATH

UNLIMITED = "unlimited"


@dataclass(frozen=True)
class LedgerConfig:
    """Complete ledger configuration."""
    database_path: str
    tiers: TierTable
    pricing: PricingTable


def default_config() -> LedgerConfig:
    """Built-in configuration used when no file is given."""
    return LedgerConfig(database_path=DEFAULT_DB_PATH, tiers=TIER_TABLE, pricing=PRICING_TABLE)


def load_ledger_config(path: str) -> LedgerConfig:
    """Load and validate ledger configuration from YAML file.

    Strict validation ensures no silent misconfigurations: a typo in a tier
    or limit name would otherwise leave a user with the wrong quota. Every
    section is optional and omitted values keep their built-in defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated LedgerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Ledger config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'database', 'tiers', 'pricing'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    return LedgerConfig(
        database_path=_parse_database(raw_config.get('database', {})),
        tiers=_parse_tiers(raw_config.get('tiers', {})),
        pricing=_parse_pricing(raw_config.get('pricing', {})),
    )


def _require_dict(data: Any, path: str) -> Dict:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return data


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _parse_database(data: Any) -> str:
    data = _require_dict(data, 'database')
    _check_keys(data, {'path'}, 'database')
    db_path = data.get('path', DEFAULT_DB_PATH)
    if not isinstance(db_path, str) or not db_path.strip():
        raise ValueError("'database.path' must be a non-empty string")
    return db_path


def _parse_limit(data: Dict, key: str, default: Optional[int], path: str) -> Optional[int]:
    """Parse a positive integer limit or the string 'unlimited'."""
    if key not in data:
        return default
    value = data[key]
    if isinstance(value, str) and value.lower() == UNLIMITED:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{key}' in {path} must be a positive integer or '{UNLIMITED}'")
    return value


def _parse_tiers(data: Any) -> TierTable:
    data = _require_dict(data, 'tiers')
    limits = dict(TIER_TABLE.limits)
    for tier_name, tier_data in data.items():
        try:
            tier = SubscriptionTier(str(tier_name).lower())
        except ValueError:
            valid_tiers = [tier.value for tier in SubscriptionTier]
            raise ValueError(f"Unknown tier '{tier_name}', expected one of: {valid_tiers}")
        path = f"tiers.{tier_name}"
        tier_data = _require_dict(tier_data, path)
        _check_keys(tier_data, {'daily_limit', 'monthly_token_limit'}, path)
        current = limits[tier]
        limits[tier] = TierLimits(
            daily_limit=_parse_limit(tier_data, 'daily_limit', current.daily_limit, path),
            monthly_token_limit=_parse_limit(
                tier_data, 'monthly_token_limit', current.monthly_token_limit, path
            ),
        )
    return TierTable(limits)


def _parse_rate(data: Dict, key: str, path: str) -> Decimal:
    if key not in data:
        raise ValueError(f"Missing required '{key}' in {path}")
    value = data[key]
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{key}' in {path} must be a number")
    try:
        rate = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{key}' in {path} must be a number")
    if rate < 0:
        raise ValueError(f"'{key}' in {path} must be >= 0")
    return rate


def _parse_pricing(data: Any) -> PricingTable:
    data = _require_dict(data, 'pricing')
    _check_keys(data, {'default_model', 'models'}, 'pricing')

    prices = dict(PRICING_TABLE.prices)
    models_data = _require_dict(data.get('models', {}), 'pricing.models')
    for model_name, model_data in models_data.items():
        path = f"pricing.models.{model_name}"
        model_data = _require_dict(model_data, path)
        _check_keys(model_data, {'prompt_rate', 'completion_rate'}, path)
        prices[str(model_name)] = ModelPricing(
            prompt_rate=_parse_rate(model_data, 'prompt_rate', path),
            completion_rate=_parse_rate(model_data, 'completion_rate', path),
        )

    default_model = data.get('default_model', PRICING_TABLE.default_model)
    if default_model not in prices:
        raise ValueError(f"'pricing.default_model' {default_model!r} has no pricing entry")
    return PricingTable(prices=prices, default_model=default_model)
