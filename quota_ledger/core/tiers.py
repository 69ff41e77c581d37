"""
Subscription tiers and their quota limits.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union


class SubscriptionTier(Enum):
    """Subscription levels, cheapest first."""
    FREE = "free"
    PLUS = "plus"
    PRO = "pro"


@dataclass(frozen=True)
class TierLimits:
    """Quota limits for a tier. ``None`` means unlimited."""
    daily_limit: Optional[int]
    monthly_token_limit: Optional[int]

    def __post_init__(self):
        """Validate limits are positive when set."""
        if self.daily_limit is not None and self.daily_limit <= 0:
            raise ValueError("daily_limit must be > 0 or unlimited")
        if self.monthly_token_limit is not None and self.monthly_token_limit <= 0:
            raise ValueError("monthly_token_limit must be > 0 or unlimited")


@dataclass(frozen=True)
class TierTable:
    """Static mapping from tier to limits."""
    limits: Dict[SubscriptionTier, TierLimits]

    def __post_init__(self):
        missing = set(SubscriptionTier) - set(self.limits)
        if missing:
            raise ValueError(f"Missing limits for tiers: {sorted(t.value for t in missing)}")

    def get_limits(self, tier: SubscriptionTier) -> TierLimits:
        return self.limits[tier]


TIER_TABLE = TierTable({
    SubscriptionTier.FREE: TierLimits(daily_limit=10, monthly_token_limit=10_000),
    SubscriptionTier.PLUS: TierLimits(daily_limit=30, monthly_token_limit=50_000),
    SubscriptionTier.PRO: TierLimits(daily_limit=None, monthly_token_limit=200_000),
})


def parse_tier(value: Union[str, SubscriptionTier, None]) -> SubscriptionTier:
    """Coerce a stored tier value, treating unset as free.

    Raises:
        ValueError: If value names no known tier
    """
    if value is None or value == "":
        return SubscriptionTier.FREE
    if isinstance(value, SubscriptionTier):
        return value
    try:
        return SubscriptionTier(str(value).lower())
    except ValueError:
        valid = [tier.value for tier in SubscriptionTier]
        raise ValueError(f"Unknown subscription tier '{value}', expected one of: {valid}")
