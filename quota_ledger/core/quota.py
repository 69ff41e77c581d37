"""
Subscription quota enforcement.

Decides, before a metered LLM call, whether a user may proceed.

Check Order:
1. Daily operation count - metered operations admitted today
2. Monthly token count - tokens recorded for the current month

A limit of ``None`` is unlimited and never denies.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .periods import Clock, day_key, month_key, next_day_start, next_month_start, utc_now
from .tiers import TIER_TABLE, SubscriptionTier, TierLimits, TierTable
from quota_ledger.storage.models import UserSubscription
from quota_ledger.storage.repository import LedgerRepository

logger = logging.getLogger(__name__)


class LimitType(Enum):
    """Which limit caused a denial."""
    DAILY_OPERATIONS = "daily_operations"
    MONTHLY_TOKENS = "monthly_tokens"


@dataclass(frozen=True)
class QuotaDecision:
    """Outcome of a quota check with the counters it was based on."""
    allowed: bool
    tier: SubscriptionTier
    operations_today: int
    tokens_this_month: int
    daily_limit: Optional[int]
    monthly_token_limit: Optional[int]
    limit_type: Optional[LimitType] = None
    reason: Optional[str] = None


class QuotaExceeded(Exception):
    """Raised when a user has no quota left for a metered operation."""
    def __init__(self, decision: QuotaDecision):
        super().__init__(decision.reason)
        self.decision = decision


@dataclass(frozen=True)
class UsageSummary:
    """Used and remaining quota for display. Remaining is None when unlimited."""
    tier: SubscriptionTier
    operations_today: int
    daily_limit: Optional[int]
    daily_remaining: Optional[int]
    daily_percentage: float
    tokens_this_month: int
    monthly_token_limit: Optional[int]
    tokens_remaining: Optional[int]
    token_percentage: float
    next_daily_reset: datetime
    next_monthly_reset: datetime


def _format_limit(value: int) -> str:
    return f"{value:,}"


def evaluate_limits(
    tier: SubscriptionTier,
    limits: TierLimits,
    operations_today: int,
    tokens_this_month: int,
) -> QuotaDecision:
    """
    Apply the tier limits to the current counters.

    Denies when a finite limit has been reached (count >= limit). The daily
    limit is checked first, so a user over both limits is told about the
    daily one.

    Args:
        tier: The user's subscription tier
        limits: Limits of that tier
        operations_today: Metered operations admitted today
        tokens_this_month: Tokens recorded this month

    Returns:
        QuotaDecision, with a tier-specific reason when denied
    """
    limit_type = None
    reason = None

    if limits.daily_limit is not None and operations_today >= limits.daily_limit:
        limit_type = LimitType.DAILY_OPERATIONS
        reason = (
            f"You've reached your daily limit of {_format_limit(limits.daily_limit)} chats "
            f"for your {tier.value} plan. This resets at midnight UTC. "
            f"Please upgrade for more access."
        )
    elif limits.monthly_token_limit is not None and tokens_this_month >= limits.monthly_token_limit:
        limit_type = LimitType.MONTHLY_TOKENS
        reason = (
            f"You've reached your monthly token limit of {_format_limit(limits.monthly_token_limit)} tokens "
            f"for your {tier.value} plan. Please upgrade for more access."
        )

    return QuotaDecision(
        allowed=limit_type is None,
        tier=tier,
        operations_today=operations_today,
        tokens_this_month=tokens_this_month,
        daily_limit=limits.daily_limit,
        monthly_token_limit=limits.monthly_token_limit,
        limit_type=limit_type,
        reason=reason,
    )


def _percentage(used: int, limit: Optional[int]) -> float:
    if limit is None:
        return 0.0
    return min(100.0, round(used / limit * 100, 1))


class QuotaGate:
    """Quota checks against the tier table and the ledger's counters.

    ``check_limits`` followed by ``increment_daily_usage`` is a read and a
    separate write: concurrent requests can both pass the check. Use
    ``check_and_increment`` (or ``enforce``) to make the two one atomic step.
    """

    def __init__(
        self,
        repository: LedgerRepository,
        tiers: TierTable = TIER_TABLE,
        clock: Optional[Clock] = None,
    ):
        if repository is None:
            raise ValueError("repository is required")
        self.repository = repository
        self.tiers = tiers
        self.clock = clock or utc_now

    def _decide(self, tier: SubscriptionTier, operations: int, tokens: int) -> QuotaDecision:
        return evaluate_limits(tier, self.tiers.get_limits(tier), operations, tokens)

    def _log_denial(self, user_id: str, decision: QuotaDecision) -> None:
        if not decision.allowed:
            logger.warning(
                f"Quota denied for user {user_id} ({decision.tier.value}): {decision.limit_type.value}, "
                f"{decision.operations_today} ops today, {decision.tokens_this_month} tokens this month"
            )

    def check_limits(self, user_id: str) -> QuotaDecision:
        """Check whether the user may start a metered operation.

        Read-only: does not consume quota.
        """
        now = self.clock()
        tier, operations, tokens = self.repository.read_quota_counters(user_id, day_key(now), month_key(now))
        decision = self._decide(tier, operations, tokens)
        self._log_denial(user_id, decision)
        return decision

    def increment_daily_usage(self, user_id: str) -> None:
        """Consume one metered operation from today's counter."""
        self.repository.increment_daily_operations(user_id, day_key(self.clock()))

    def check_and_increment(self, user_id: str) -> QuotaDecision:
        """Check the limits and, if allowed, consume one operation atomically.

        The decision reports the counters as they were before the increment.
        """
        now = self.clock()
        decision = self.repository.check_and_increment(user_id, day_key(now), month_key(now), self._decide)
        self._log_denial(user_id, decision)
        return decision

    def enforce(self, user_id: str) -> QuotaDecision:
        """Like ``check_and_increment`` but raises when denied.

        Raises:
            QuotaExceeded: If the user has reached a limit
        """
        decision = self.check_and_increment(user_id)
        if not decision.allowed:
            raise QuotaExceeded(decision)
        return decision

    def get_usage_summary(self, user_id: str) -> UsageSummary:
        """Used and remaining quota for today and this month."""
        now = self.clock()
        tier, operations, tokens = self.repository.read_quota_counters(user_id, day_key(now), month_key(now))
        limits = self.tiers.get_limits(tier)
        return UsageSummary(
            tier=tier,
            operations_today=operations,
            daily_limit=limits.daily_limit,
            daily_remaining=None if limits.daily_limit is None else max(0, limits.daily_limit - operations),
            daily_percentage=_percentage(operations, limits.daily_limit),
            tokens_this_month=tokens,
            monthly_token_limit=limits.monthly_token_limit,
            tokens_remaining=(
                None if limits.monthly_token_limit is None else max(0, limits.monthly_token_limit - tokens)
            ),
            token_percentage=_percentage(tokens, limits.monthly_token_limit),
            next_daily_reset=next_day_start(now),
            next_monthly_reset=next_month_start(now),
        )

    def set_tier(self, user_id: str, tier: SubscriptionTier) -> None:
        """Change a user's subscription tier (last write wins)."""
        self.repository.set_user_tier(user_id, tier, self.clock())
        logger.info(f"User {user_id} moved to {tier.value} tier")

    def get_subscription(self, user_id: str) -> UserSubscription:
        """The user's stored tier and when it last changed."""
        return self.repository.get_user_subscription(user_id)
