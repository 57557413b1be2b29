# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Usage Accumulator

Reduces each stage's usage report into a CostBreakdown entry.

Usage:
    accumulator = UsageAccumulator(pricing=DEFAULT_PRICING_TABLE)
    accumulator.record(Stage.REASONING, metrics_a)
    accumulator.record(Stage.SYNTHESIS, metrics_b)

    breakdown = accumulator.breakdown()
    print(breakdown.to_dict(precision=6))
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from .models import CostBreakdown, Stage, UsageMetrics, format_cost
from .pricing import DEFAULT_PRICING_TABLE, PricingTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageUsage:
    """Priced usage of one stage."""

    stage: Stage
    metrics: UsageMetrics
    cost: Decimal

    def to_dict(self, precision: int = 6) -> dict[str, Any]:
        return {
            "stage": str(self.stage),
            **self.metrics.to_dict(),
            "cost": format_cost(self.cost, precision),
        }


class UsageAccumulator:
    """
    Per-run cost accumulator.

    A stage that never reports usage stays unavailable in the breakdown;
    it is never counted as zero.
    """

    def __init__(
        self,
        pricing: PricingTable | None = None,
        stage_models: dict[Stage, str] | None = None,
    ):
        """
        Initialize accumulator.

        Args:
            pricing: Price lookup (defaults to the shipped table)
            stage_models: Configured model per stage, used when the upstream
                usage payload does not name one
        """
        self._pricing = pricing or DEFAULT_PRICING_TABLE
        self._stage_models = dict(stage_models or {})
        self._stages: dict[Stage, StageUsage] = {}

    def record(self, stage: Stage, metrics: UsageMetrics) -> StageUsage:
        """Price and store one stage's usage; a second report replaces the first."""
        if stage in self._stages:
            logger.warning(f"Duplicate usage report for {stage} stage; keeping the latest")

        model = metrics.model or self._stage_models.get(stage)
        pricing = self._pricing.lookup(metrics.provider, model)
        entry = StageUsage(stage=stage, metrics=metrics, cost=pricing.cost(metrics))
        self._stages[stage] = entry
        return entry

    def stage_cost(self, stage: Stage) -> Decimal | None:
        entry = self._stages.get(stage)
        return entry.cost if entry else None

    def stage_usage(self, stage: Stage) -> StageUsage | None:
        return self._stages.get(stage)

    def metrics(self) -> dict[str, UsageMetrics]:
        return {str(stage): entry.metrics for stage, entry in self._stages.items()}

    def breakdown(self) -> CostBreakdown:
        return CostBreakdown(
            stage_a_cost=self.stage_cost(Stage.REASONING),
            stage_b_cost=self.stage_cost(Stage.SYNTHESIS),
        )

    def summary(self, precision: int = 6) -> dict[str, Any]:
        """Per-stage units and costs for logging."""
        return {
            "stages": {str(stage): entry.to_dict(precision) for stage, entry in self._stages.items()},
            **self.breakdown().to_dict(precision),
        }


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "StageUsage",
    "UsageAccumulator",
]
