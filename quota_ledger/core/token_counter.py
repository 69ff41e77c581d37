"""
Token counting and usage tracking.

Normalizes token usage reported by different LLM providers.
"""

from dataclasses import dataclass
from typing import Any, Optional


def _read(source: Any, *names: str) -> Optional[int]:
    """Return the first present attribute or key from names, None when none is set."""
    for name in names:
        if isinstance(source, dict):
            value = source.get(name)
        else:
            value = getattr(source, name, None)
        if value is not None:
            return int(value)
    return None


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts without estimation or model-specific logic.
    Providers occasionally report a total that differs from the sum of its
    parts, so the reported total is kept as-is.
    """
    prompt_tokens: int
    completion_tokens: int
    total_tokens: Optional[int] = None

    def __post_init__(self):
        """Validate counts and fill in the total when it was not reported."""
        if self.prompt_tokens < 0:
            raise ValueError("prompt_tokens cannot be negative")
        if self.completion_tokens < 0:
            raise ValueError("completion_tokens cannot be negative")
        if self.total_tokens is None:
            object.__setattr__(self, "total_tokens", self.prompt_tokens + self.completion_tokens)
        elif self.total_tokens < 0:
            raise ValueError("total_tokens cannot be negative")

    @classmethod
    def from_openai(cls, usage: Any) -> "TokenUsage":
        """Build from an OpenAI ``CompletionUsage`` object or dict."""
        if usage is None:
            raise ValueError("OpenAI response missing usage information")
        return cls(
            prompt_tokens=_read(usage, "prompt_tokens") or 0,
            completion_tokens=_read(usage, "completion_tokens") or 0,
            total_tokens=_read(usage, "total_tokens"),
        )

    @classmethod
    def from_gemini(cls, usage_metadata: Any) -> "TokenUsage":
        """Build from Gemini ``usage_metadata``.

        Accepts both the SDK object (snake_case attributes) and the REST
        shape ``{promptTokenCount, candidatesTokenCount, totalTokenCount}``.
        Missing metadata counts as zero usage.
        """
        if usage_metadata is None:
            return cls(prompt_tokens=0, completion_tokens=0, total_tokens=0)
        return cls(
            prompt_tokens=_read(usage_metadata, "prompt_token_count", "promptTokenCount") or 0,
            completion_tokens=_read(usage_metadata, "candidates_token_count", "candidatesTokenCount") or 0,
            total_tokens=_read(usage_metadata, "total_token_count", "totalTokenCount"),
        )
