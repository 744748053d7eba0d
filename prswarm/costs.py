"""
Token usage and cost calculation for model calls.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass
class ModelPricing:
    """Pricing per million tokens."""

    input_per_million: Decimal
    output_per_million: Decimal
    cache_read_per_million: Decimal = Decimal("0")
    cache_write_per_million: Decimal = Decimal("0")

    def calculate_cost(
        self,
        input_tokens: int,
        output_tokens: int,
        cache_read_tokens: int = 0,
        cache_write_tokens: int = 0,
    ) -> Decimal:
        million = Decimal(1_000_000)
        return (
            Decimal(input_tokens) / million * self.input_per_million
            + Decimal(output_tokens) / million * self.output_per_million
            + Decimal(cache_read_tokens) / million * self.cache_read_per_million
            + Decimal(cache_write_tokens) / million * self.cache_write_per_million
        )


MODEL_PRICING: dict[str, ModelPricing] = {
    "claude-opus-4": ModelPricing(
        input_per_million=Decimal("15.00"),
        output_per_million=Decimal("75.00"),
        cache_read_per_million=Decimal("1.50"),
        cache_write_per_million=Decimal("18.75"),
    ),
    "claude-sonnet-4": ModelPricing(
        input_per_million=Decimal("3.00"),
        output_per_million=Decimal("15.00"),
        cache_read_per_million=Decimal("0.30"),
        cache_write_per_million=Decimal("3.75"),
    ),
    "claude-3-7-sonnet": ModelPricing(
        input_per_million=Decimal("3.00"),
        output_per_million=Decimal("15.00"),
        cache_read_per_million=Decimal("0.30"),
        cache_write_per_million=Decimal("3.75"),
    ),
    "claude-haiku-4": ModelPricing(
        input_per_million=Decimal("1.00"),
        output_per_million=Decimal("5.00"),
        cache_read_per_million=Decimal("0.10"),
        cache_write_per_million=Decimal("1.25"),
    ),
    "claude-3-5-haiku": ModelPricing(
        input_per_million=Decimal("0.80"),
        output_per_million=Decimal("4.00"),
        cache_read_per_million=Decimal("0.08"),
        cache_write_per_million=Decimal("1.00"),
    ),
}

DEFAULT_PRICING = ModelPricing(
    input_per_million=Decimal("5.00"),
    output_per_million=Decimal("15.00"),
)


def get_pricing(model: str) -> ModelPricing:
    """Match a model id against the pricing table by substring."""
    model_lower = model.lower()
    for key, pricing in MODEL_PRICING.items():
        if key in model_lower:
            return pricing
    return DEFAULT_PRICING


@dataclass
class TokenUsage:
    """Token usage from one model call."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_write_tokens
        )


def calculate_cost(model: str, usages: list[TokenUsage]) -> float:
    pricing = get_pricing(model)
    total = sum(
        (
            pricing.calculate_cost(
                u.input_tokens, u.output_tokens, u.cache_read_tokens, u.cache_write_tokens
            )
            for u in usages
        ),
        Decimal("0"),
    )
    return float(total)
