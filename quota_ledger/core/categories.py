"""
Usage categories for metered operations.

Each category owns a fixed pair of monthly aggregate columns, so the set of
per-category counters is closed and cannot drift through typos.
"""

from enum import Enum
from typing import Union


class UsageCategory(Enum):
    """Kinds of logical operations a transaction can represent."""
    CHAT = "chat"
    EMOTION_ANALYSIS = "emotion_analysis"
    EMOTIONAL_SUPPORT = "emotional_support"
    CONTINUE_CONVERSATION = "continue_conversation"
    JOURNAL = "journal"
    SUMMARY = "summary"
    TTS = "tts"

    @property
    def count_column(self) -> str:
        """Monthly aggregate column counting transactions of this category."""
        return f"{self.value}_count"

    @property
    def tokens_column(self) -> str:
        """Monthly aggregate column summing tokens of this category."""
        return f"{self.value}_tokens"


def parse_category(value: Union[str, UsageCategory]) -> UsageCategory:
    """Coerce a string or enum member into a UsageCategory.

    Raises:
        ValueError: If value does not name a known category
    """
    if isinstance(value, UsageCategory):
        return value
    try:
        return UsageCategory(str(value).lower())
    except ValueError:
        valid = [category.value for category in UsageCategory]
        raise ValueError(f"Unknown usage category '{value}', expected one of: {valid}")
