"""
Pricing calculations and rate management.

Handles cost computations for the chat and analysis models.
"""

from dataclasses import dataclass
from typing import Dict
from decimal import Decimal, ROUND_HALF_UP


COST_PRECISION = Decimal("0.000001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_rate: Decimal  # Cost per prompt token
    completion_rate: Decimal  # Cost per completion token

    def __post_init__(self):
        """Validate rates are not negative."""
        if self.prompt_rate < 0:
            raise ValueError("prompt_rate cannot be negative")
        if self.completion_rate < 0:
            raise ValueError("completion_rate cannot be negative")


@dataclass(frozen=True)
class PricingTable:
    """Static pricing table with a fallback entry for unknown models."""
    prices: Dict[str, ModelPricing]
    default_model: str

    def __post_init__(self):
        if self.default_model not in self.prices:
            raise ValueError(f"Default model '{self.default_model}' has no pricing entry")

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model, or the default entry when unknown
        """
        return self.prices.get(model, self.prices[self.default_model])

    def calculate_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        """Estimate the cost of one LLM call, rounded to 6 decimal places.

        Raises:
            ValueError: If a token count is negative
        """
        if prompt_tokens < 0 or completion_tokens < 0:
            raise ValueError("token counts cannot be negative")
        pricing = self.get_pricing(model)
        cost = (
            Decimal(prompt_tokens) * pricing.prompt_rate
            + Decimal(completion_tokens) * pricing.completion_rate
        )
        return float(cost.quantize(COST_PRECISION, rounding=ROUND_HALF_UP))


# USD per token
PRICING_TABLE = PricingTable(
    prices={
        "gemini-pro": ModelPricing(
            prompt_rate=Decimal("0.0000025"),
            completion_rate=Decimal("0.0000075")
        ),
        "gpt-4o": ModelPricing(
            prompt_rate=Decimal("0.000005"),
            completion_rate=Decimal("0.000015")
        ),
        "gpt-4": ModelPricing(
            prompt_rate=Decimal("0.00003"),
            completion_rate=Decimal("0.00006")
        ),
        "gpt-3.5-turbo": ModelPricing(
            prompt_rate=Decimal("0.0000005"),
            completion_rate=Decimal("0.0000015")
        ),
        "gpt-4o-mini": ModelPricing(
            prompt_rate=Decimal("0.00000015"),
            completion_rate=Decimal("0.0000006")
        ),
    },
    default_model="gemini-pro",
)

