"""
Data models for storage layer.

Defines the ledger records read back from the database.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from quota_ledger.core.categories import UsageCategory
from quota_ledger.core.tiers import SubscriptionTier


@dataclass(frozen=True)
class TransactionUsageRecord:
    """Running totals for one logical operation, e.g. one chat turn.

    ``month`` and ``user_id`` are fixed when the record is created.
    ``category`` is None only for a parent that was implicitly created by a
    subcall arriving before initialization.
    """
    user_id: str
    transaction_id: str
    category: Optional[UsageCategory]
    model: Optional[str]
    created_at: datetime
    month: str
    total_prompt_tokens: int = 0
    total_completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    completed: bool = False
    last_updated: Optional[datetime] = None


@dataclass(frozen=True)
class SubcallRecord:
    """Latest cost estimate for one subcall type within a transaction."""
    user_id: str
    transaction_id: str
    subcall_type: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated_cost: float
    model: str
    timestamp: datetime


@dataclass(frozen=True)
class MonthlyAggregate:
    """Rolled-up usage for one user and one ``YYYY-MM`` month."""
    user_id: str
    month: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    request_count: int = 0
    category_counts: Dict[UsageCategory, int] = field(default_factory=lambda: dict.fromkeys(UsageCategory, 0))
    category_tokens: Dict[UsageCategory, int] = field(default_factory=lambda: dict.fromkeys(UsageCategory, 0))


@dataclass(frozen=True)
class DailyUsage:
    """Metered operations and tokens for one user and one ``YYYY-MM-DD`` day."""
    user_id: str
    day: str
    operation_count: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class LifetimeUsage:
    """All-time usage for one user."""
    user_id: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    request_count: int = 0
    last_updated: Optional[datetime] = None


class BreakdownDimension(Enum):
    """Axis of a usage breakdown."""
    MODEL = "model"
    SOURCE = "source"


@dataclass(frozen=True)
class UsageBreakdown:
    """Monthly usage attributed to one model or one subcall type."""
    user_id: str
    month: str
    dimension: BreakdownDimension
    key: str
    total_tokens: int = 0
    estimated_cost: float = 0.0
    request_count: int = 0


@dataclass(frozen=True)
class ConversationTurn:
    """One user message and the assistant reply, linked to its transaction."""
    user_id: str
    session_id: str
    transaction_id: Optional[str]
    user_message: Any
    assistant_message: Any
    model: str
    created_at: datetime


@dataclass(frozen=True)
class UserSubscription:
    user_id: str
    tier: SubscriptionTier
    updated_at: Optional[datetime] = None
