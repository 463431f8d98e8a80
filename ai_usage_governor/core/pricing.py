"""
Pricing calculations and rate management.

Handles cost computations for the supported provider models.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Mapping, Optional

from .token_counter import TokenUsage


COST_PRECISION = Decimal("0.0001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1k: Decimal  # Cost per 1K input tokens
    completion_cost_per_1k: Decimal  # Cost per 1K output tokens


@dataclass(frozen=True)
class PricingTable:
    """Static pricing table keyed by model identifier."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> Optional[ModelPricing]:
        """Pricing for a model, or None when the model is not listed."""
        return self.prices.get(model)

    def extended(self, overrides: Mapping[str, ModelPricing]) -> "PricingTable":
        """Return a copy with entries added or replaced."""
        prices = dict(self.prices)
        prices.update(overrides)
        return PricingTable(prices)

    def calculate_cost(self, model: str, usage: TokenUsage) -> float:
        """Calculate the cost of a call.

        Unknown models cost nothing: pricing fails open, the request
        ceilings never do.

        Args:
            model: Model identifier
            usage: Token usage data

        Returns:
            Cost rounded to 4 decimal places
        """
        pricing = self.get_pricing(model)
        if pricing is None:
            return 0.0

        prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k
        completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k

        total_cost = prompt_cost + completion_cost
        return float(total_cost.quantize(COST_PRECISION, rounding=ROUND_HALF_UP))

    def max_output_cost(self, model: str, max_tokens: int) -> float:
        """Upper bound on the output cost of one call.

        Pre-flight checks price the input side only, so this is the most
        a single admitted call can overshoot a budget by.
        """
        return self.calculate_cost(model, TokenUsage(prompt_tokens=0, completion_tokens=max_tokens))


def _pricing(prompt: str, completion: str) -> ModelPricing:
    return ModelPricing(
        prompt_cost_per_1k=Decimal(prompt),
        completion_cost_per_1k=Decimal(completion)
    )


# Fixed pricing table - no dynamic fetching
PRICING_TABLE = PricingTable({
    "gpt-4": _pricing("0.03", "0.06"),
    "gpt-4-turbo": _pricing("0.01", "0.03"),
    "gpt-3.5-turbo": _pricing("0.0015", "0.002"),
    "gpt-3.5-turbo-16k": _pricing("0.003", "0.004"),
    "claude-3-opus-20240229": _pricing("0.015", "0.075"),
    "claude-3-sonnet-20240229": _pricing("0.003", "0.015"),
    "claude-3-haiku-20240307": _pricing("0.00025", "0.00125"),
})


def calculate_cost(model: str, input_tokens: int, output_tokens: int = 0) -> float:
    """Cost of a call against the default pricing table."""
    return PRICING_TABLE.calculate_cost(model, TokenUsage(input_tokens, output_tokens))
