# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Model Pricing

Static price tiers consumed as lookup data:
- normal (cache-miss) input
- cached (cache-hit) input
- cache-write input
- output

All arithmetic stays in Decimal; rounding happens only at presentation.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal

from .models import UsageMetrics

logger = logging.getLogger(__name__)


# ============================================================
# MODEL PRICING
# ============================================================


@dataclass(frozen=True)
class ModelPricing:
    """
    Pricing for a model.

    Prices are in USD per `unit_scale` units (1M tokens by default).
    Cached and cache-write prices fall back to the input price.
    """

    input_price: Decimal
    output_price: Decimal
    cached_input_price: Decimal | None = None
    cache_write_price: Decimal | None = None
    unit_scale: int = 1_000_000

    def _per_unit(self, price: Decimal) -> Decimal:
        return price / Decimal(self.unit_scale)

    @property
    def cache_hit_price_per_unit(self) -> Decimal:
        price = self.cached_input_price if self.cached_input_price is not None else self.input_price
        return self._per_unit(price)

    @property
    def cache_miss_price_per_unit(self) -> Decimal:
        return self._per_unit(self.input_price)

    @property
    def cache_write_price_per_unit(self) -> Decimal:
        price = self.cache_write_price if self.cache_write_price is not None else self.input_price
        return self._per_unit(price)

    @property
    def output_price_per_unit(self) -> Decimal:
        return self._per_unit(self.output_price)

    def cost(self, metrics: UsageMetrics) -> Decimal:
        """
        Calculate cost for one stage's usage.

        cached x hit + (input - cached) x miss + output x out + cache_write x write

        Absent counters contribute zero. Full precision is kept.
        """
        cached = metrics.cached_input_units or 0
        input_units = metrics.input_units or 0
        output_units = metrics.output_units or 0
        cache_write = metrics.cache_write_units or 0

        uncached = max(input_units - cached, 0)

        return (
            Decimal(cached) * self.cache_hit_price_per_unit
            + Decimal(uncached) * self.cache_miss_price_per_unit
            + Decimal(output_units) * self.output_price_per_unit
            + Decimal(cache_write) * self.cache_write_price_per_unit
        )


ZERO_PRICING = ModelPricing(input_price=Decimal(0), output_price=Decimal(0))


# Current pricing (USD per 1M tokens)
MODEL_PRICING: dict[str, ModelPricing] = {
    # DeepSeek
    "deepseek-reasoner": ModelPricing(
        input_price=Decimal("0.55"),
        output_price=Decimal("2.19"),
        cached_input_price=Decimal("0.14"),
    ),
    "deepseek-chat": ModelPricing(
        input_price=Decimal("0.27"),
        output_price=Decimal("1.10"),
        cached_input_price=Decimal("0.07"),
    ),
    # Anthropic Claude 4 family
    "claude-opus-4": ModelPricing(
        input_price=Decimal("15.00"),
        output_price=Decimal("75.00"),
        cached_input_price=Decimal("1.50"),
        cache_write_price=Decimal("18.75"),
    ),
    "claude-sonnet-4": ModelPricing(
        input_price=Decimal("3.00"),
        output_price=Decimal("15.00"),
        cached_input_price=Decimal("0.30"),
        cache_write_price=Decimal("3.75"),
    ),
    # Anthropic Claude 3.x family
    "claude-3-7-sonnet": ModelPricing(
        input_price=Decimal("3.00"),
        output_price=Decimal("15.00"),
        cached_input_price=Decimal("0.30"),
        cache_write_price=Decimal("3.75"),
    ),
    "claude-3-5-sonnet": ModelPricing(
        input_price=Decimal("3.00"),
        output_price=Decimal("15.00"),
        cached_input_price=Decimal("0.30"),
        cache_write_price=Decimal("3.75"),
    ),
    "claude-3-5-haiku": ModelPricing(
        input_price=Decimal("0.80"),
        output_price=Decimal("4.00"),
        cached_input_price=Decimal("0.08"),
        cache_write_price=Decimal("1.00"),
    ),
    "claude-3-opus": ModelPricing(
        input_price=Decimal("15.00"),
        output_price=Decimal("75.00"),
        cached_input_price=Decimal("1.50"),
        cache_write_price=Decimal("18.75"),
    ),
    "claude-3-haiku": ModelPricing(
        input_price=Decimal("0.25"),
        output_price=Decimal("1.25"),
        cached_input_price=Decimal("0.03"),
        cache_write_price=Decimal("0.30"),
    ),
    # OpenAI
    "gpt-4o": ModelPricing(
        input_price=Decimal("2.50"),
        output_price=Decimal("10.00"),
        cached_input_price=Decimal("1.25"),
    ),
    "gpt-4o-mini": ModelPricing(
        input_price=Decimal("0.15"),
        output_price=Decimal("0.60"),
        cached_input_price=Decimal("0.075"),
    ),
    "gpt-4.1": ModelPricing(
        input_price=Decimal("2.00"),
        output_price=Decimal("8.00"),
        cached_input_price=Decimal("0.50"),
    ),
    "o1": ModelPricing(
        input_price=Decimal("15.00"),
        output_price=Decimal("60.00"),
        cached_input_price=Decimal("7.50"),
    ),
    "o3-mini": ModelPricing(
        input_price=Decimal("1.10"),
        output_price=Decimal("4.40"),
        cached_input_price=Decimal("0.55"),
    ),
}

# Tier used when a provider's model is not in the table
PROVIDER_DEFAULT_MODELS: dict[str, str] = {
    "deepseek": "deepseek-reasoner",
    "anthropic": "claude-sonnet-4",
    "openai": "gpt-4o",
}


# ============================================================
# PRICING TABLE
# ============================================================


class PricingTable:
    """
    Model identifier to price tier lookup.

    Resolution order:
    1. Exact model match
    2. Longest prefix match ("claude-sonnet-4-20250514" -> "claude-sonnet-4")
    3. The provider's default tier
    4. ZERO_PRICING, with a warning (unknown provider)

    Unknown models never fail a request.
    """

    def __init__(
        self,
        models: Mapping[str, ModelPricing] | None = None,
        provider_defaults: Mapping[str, ModelPricing] | None = None,
    ):
        self._models = dict(MODEL_PRICING if models is None else models)
        if provider_defaults is None:
            provider_defaults = {
                provider: self._models[model]
                for provider, model in PROVIDER_DEFAULT_MODELS.items()
                if model in self._models
            }
        self._provider_defaults = dict(provider_defaults)

    def get(self, model: str) -> ModelPricing | None:
        """Exact or prefix match only."""
        if model in self._models:
            return self._models[model]

        model_lower = model.lower()
        matches = [key for key in self._models if model_lower.startswith(key.lower())]
        if matches:
            return self._models[max(matches, key=len)]
        return None

    def lookup(self, provider: str, model: str | None) -> ModelPricing:
        """
        Get pricing for a stage.

        Args:
            provider: Provider tag from the usage metrics
            model: Model identifier, if known

        Returns:
            The best matching ModelPricing
        """
        if model:
            pricing = self.get(model)
            if pricing is not None:
                return pricing

        default = self._provider_defaults.get(provider)
        if default is not None:
            logger.warning(f"No pricing found for model {model!r}; using {provider} default tier")
            return default

        logger.warning(f"No pricing found for provider {provider!r}; cost reported as zero")
        return ZERO_PRICING


DEFAULT_PRICING_TABLE = PricingTable()


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "ModelPricing",
    "ZERO_PRICING",
    "MODEL_PRICING",
    "PROVIDER_DEFAULT_MODELS",
    "PricingTable",
    "DEFAULT_PRICING_TABLE",
]
