"""
Pricing calculations and rate management.

Handles cost computations for the content-generation models in use.
Prices are in the billing currency (GBP) per 1K tokens.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_UP
from typing import Dict

from .token_counter import TokenUsage


COST_QUANTUM = Decimal("0.0001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1k: Decimal  # Cost per 1K prompt tokens
    completion_cost_per_1k: Decimal  # Cost per 1K completion tokens


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If model is not supported
        """
        if model not in self.prices:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[model]

    def supports(self, model: str) -> bool:
        return model in self.prices


# Fixed pricing table - no dynamic fetching, no defaults
PRICING_TABLE = PricingTable({
    "gpt-4o": ModelPricing(
        prompt_cost_per_1k=Decimal("0.0020"),
        completion_cost_per_1k=Decimal("0.0080")
    ),
    "gpt-4o-mini": ModelPricing(
        prompt_cost_per_1k=Decimal("0.00012"),
        completion_cost_per_1k=Decimal("0.00048")
    ),
    "gpt-4-turbo": ModelPricing(
        prompt_cost_per_1k=Decimal("0.0080"),
        completion_cost_per_1k=Decimal("0.0240")
    ),
    "gpt-5-mini": ModelPricing(
        prompt_cost_per_1k=Decimal("0.0002"),
        completion_cost_per_1k=Decimal("0.0016")
    ),
})


def calculate_cost(model: str, usage: TokenUsage, table: PricingTable = PRICING_TABLE) -> float:
    """Calculate total cost for model usage with conservative rounding.

    Args:
        model: Model identifier
        usage: Token usage data
        table: Pricing table to read rates from

    Returns:
        Total cost rounded UP to 4 decimal places

    Raises:
        ValueError: If model is not supported
    """
    pricing = table.get_pricing(model)

    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k

    # Always round UP so the ledger never under-reports spend
    total_cost = prompt_cost + completion_cost
    return float(total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP))


def affordable_completion_tokens(
    model: str,
    prompt_tokens: int,
    budget: float,
    table: PricingTable = PRICING_TABLE,
) -> int:
    """Largest completion size whose worst-case cost stays within ``budget``.

    Returns 0 when the prompt alone already exhausts the budget.
    """
    pricing = table.get_pricing(model)
    remaining = Decimal(str(budget)) - (Decimal(prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k
    if remaining <= 0:
        return 0
    if pricing.completion_cost_per_1k <= 0:
        raise ValueError(f"Model {model} has no completion price")
    tokens = (remaining * Decimal("1000") / pricing.completion_cost_per_1k).to_integral_value(rounding=ROUND_DOWN)
    return int(tokens)
