"""
Deliberate Test Suite - Shared Fixtures
"""

import asyncio
from dataclasses import replace
from decimal import Decimal

import pytest

from deliberate.core.models import (
    AdapterMode,
    Message,
    OrchestrationRequest,
    Role,
    StageEvent,
    StageEventType,
    StageRequest,
    UsageMetrics,
)
from deliberate.core.orchestrator import DualStageOrchestrator, OrchestratorConfig
from deliberate.core.pricing import ModelPricing, PricingTable

# ============================================================
# Scripted stage adapter
# ============================================================


def _coalesce(events: list[StageEvent]) -> list[StageEvent]:
    """Merge runs of same-kind deltas, the way a batched response arrives."""
    merged: list[StageEvent] = []
    for event in events:
        previous = merged[-1] if merged else None
        if (
            previous is not None
            and event.type in (StageEventType.REASONING_DELTA, StageEventType.CONTENT_DELTA)
            and previous.type == event.type
            and previous.index == event.index
        ):
            merged[-1] = StageEvent(type=event.type, text=previous.text + event.text, index=event.index)
        else:
            merged.append(event)
    return merged


class ScriptedAdapter:
    """
    Stage adapter double that replays a fixed event script.

    `hang_after=n` blocks forever before the n-th event so tests can
    cancel or time out an exchange mid-flight.
    """

    def __init__(
        self,
        events: list[StageEvent],
        provider: str = "deepseek",
        model: str = "deepseek-reasoner",
        hang_after: int | None = None,
    ):
        self.events = list(events)
        self.provider = provider
        self.model = model
        self.hang_after = hang_after
        self.calls: list[tuple[StageRequest, AdapterMode]] = []
        self.hanging = asyncio.Event()
        self.aborted = False
        self.closed = False

    @property
    def name(self) -> str:
        return f"{self.provider}:{self.model}"

    async def run(self, request: StageRequest, mode: AdapterMode = AdapterMode.STREAMING):
        self.calls.append((request, mode))
        events = self.events if mode == AdapterMode.STREAMING else _coalesce(self.events)
        try:
            for i, event in enumerate(events):
                if self.hang_after is not None and i == self.hang_after:
                    self.hanging.set()
                    await asyncio.Event().wait()
                await asyncio.sleep(0)
                yield event
        except (asyncio.CancelledError, GeneratorExit):
            self.aborted = True
            raise

    async def close(self) -> None:
        self.closed = True


# ============================================================
# Script builders
# ============================================================


def reasoning_script(*chunks: str, answer: str = "", usage: UsageMetrics | None = None):
    events = [StageEvent.reasoning_delta(chunk) for chunk in chunks]
    if answer:
        events.append(StageEvent.content_delta(answer))
    events.append(
        StageEvent.usage_report(
            usage or UsageMetrics("deepseek", "deepseek-reasoner", input_units=10, output_units=20)
        )
    )
    events.append(StageEvent.done(raw={"id": "stage-a"}))
    return events


def synthesis_script(*chunks: str, usage: UsageMetrics | None = None):
    events = [StageEvent.content_delta(chunk) for chunk in chunks]
    events.append(
        StageEvent.usage_report(
            usage or UsageMetrics("anthropic", "claude-sonnet-4", input_units=30, output_units=40)
        )
    )
    events.append(StageEvent.done(raw={"id": "stage-b"}))
    return events


# ============================================================
# Fixtures
# ============================================================


@pytest.fixture
def unit_pricing() -> PricingTable:
    """Whole-unit prices so expected costs are easy to read."""
    return PricingTable(
        models={
            "deepseek-reasoner": ModelPricing(
                input_price=Decimal("0.5"),
                output_price=Decimal("1.0"),
                cached_input_price=Decimal("0.1"),
                unit_scale=1,
            ),
            "claude-sonnet-4": ModelPricing(
                input_price=Decimal("2"),
                output_price=Decimal("3"),
                unit_scale=1,
            ),
        }
    )


@pytest.fixture
def config() -> OrchestratorConfig:
    return OrchestratorConfig(
        reasoning_timeout=5.0,
        synthesis_timeout=5.0,
        buffer_size=64,
        backpressure_timeout=1.0,
    )


@pytest.fixture
def make_request():
    def _make(messages=None, **kwargs) -> OrchestrationRequest:
        kwargs.setdefault("stage_a_credential", "key-a")
        kwargs.setdefault("stage_b_credential", "key-b")
        return OrchestrationRequest(
            messages=tuple(messages or (Message(Role.USER, "What is X?"),)),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_orchestrator(config, unit_pricing):
    """Build an orchestrator over two scripted adapters."""

    def _make(
        reasoning_events=None,
        synthesis_events=None,
        reasoning_hang_after=None,
        synthesis_hang_after=None,
        **config_overrides,
    ):
        stage_a = ScriptedAdapter(
            reasoning_events if reasoning_events is not None else reasoning_script("Let me think"),
            hang_after=reasoning_hang_after,
        )
        stage_b = ScriptedAdapter(
            synthesis_events if synthesis_events is not None else synthesis_script("Answer"),
            provider="anthropic",
            model="claude-sonnet-4",
            hang_after=synthesis_hang_after,
        )
        cfg = replace(config, **config_overrides)
        orchestrator = DualStageOrchestrator(stage_a, stage_b, config=cfg, pricing=unit_pricing)
        return orchestrator, stage_a, stage_b

    return _make


@pytest.fixture
def stage_a_script():
    """Builder for a successful reasoning-stage script."""
    return reasoning_script


@pytest.fixture
def stage_b_script():
    """Builder for a successful synthesis-stage script."""
    return synthesis_script
