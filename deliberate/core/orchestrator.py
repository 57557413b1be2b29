# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Dual-Stage Orchestrator

Drives one reasoning exchange and one synthesis exchange in strict order:

    ┌───────────────┐   ThinkingBlock   ┌────────────────┐
    │ Stage A       │ ────────────────► │ Stage B        │
    │ (reasoning)   │   as assistant    │ (synthesis)    │
    └───────┬───────┘   message         └───────┬────────┘
            │                                   │
            ▼                                   ▼
    ┌─────────────────────────────────────────────────────┐
    │ EventSequencer (one ordered, bounded sequence)      │
    └─────────────────────────┬───────────────────────────┘
                              ▼
                 streaming caller / ResponseCollector

Streaming is the primitive; blocking mode drains the same sequence into a
CombinedResult. Each run has one CancellationToken that aborts whichever
upstream exchange is in flight and keeps the next stage from starting.

Run states:
    idle → running_stage_a → stage_a_done → running_stage_b → completed
    running_stage_a / running_stage_b → failed
    any non-terminal state → cancelled
"""

import asyncio
import contextvars
import logging
import time
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field, replace
from enum import StrEnum
from types import MappingProxyType
from typing import Any
from uuid import uuid4

from deliberate_core import (
    BackpressureExceededError,
    CancelledRunError,
    DeliberateError,
    InvalidStateTransitionError,
    UpstreamProtocolError,
    UpstreamUnavailableError,
    ValidationError,
)

from ..observability.logging import log_stage_exchange, run_id_var, stage_var
from .async_base import CancellationToken, paused_deadline, timeout_context
from .models import (
    AdapterMode,
    CombinedResult,
    DeliveryMode,
    Message,
    OrchestrationRequest,
    Role,
    Stage,
    StageEvent,
    StageEventType,
    StageRequest,
    ThinkingBlock,
    build_stage_request,
)
from .multiplexer import EventSequencer, OutgoingEvent, OutgoingEventType, ResponseCollector
from .pricing import DEFAULT_PRICING_TABLE, PricingTable
from .providers import StageAdapter, adapter_from_settings
from .reasoning import ReasoningExtractor
from .settings import Settings, get_settings, merge_options
from .usage import UsageAccumulator

logger = logging.getLogger(__name__)


# ============================================================
# RUN STATE
# ============================================================


class RunState(StrEnum):
    """Lifecycle of one orchestration run."""

    IDLE = "idle"
    RUNNING_STAGE_A = "running_stage_a"
    STAGE_A_DONE = "stage_a_done"
    RUNNING_STAGE_B = "running_stage_b"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.IDLE: frozenset({RunState.RUNNING_STAGE_A, RunState.CANCELLED}),
    RunState.RUNNING_STAGE_A: frozenset(
        {RunState.STAGE_A_DONE, RunState.FAILED, RunState.CANCELLED}
    ),
    RunState.STAGE_A_DONE: frozenset({RunState.RUNNING_STAGE_B, RunState.CANCELLED}),
    RunState.RUNNING_STAGE_B: frozenset(
        {RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED}
    ),
    RunState.COMPLETED: frozenset(),
    RunState.FAILED: frozenset(),
    RunState.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset({RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED})


# ============================================================
# CONFIGURATION
# ============================================================


@dataclass(frozen=True)
class OrchestratorConfig:
    """Immutable per-orchestrator configuration."""

    reasoning_timeout: float = 300.0
    synthesis_timeout: float = 300.0
    buffer_size: int = 256
    backpressure_timeout: float = 30.0
    reasoning_defaults: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    synthesis_defaults: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    cost_precision: int = 6

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "OrchestratorConfig":
        settings = settings or get_settings()
        return cls(
            reasoning_timeout=settings.reasoning.timeout_seconds,
            synthesis_timeout=settings.synthesis.timeout_seconds,
            buffer_size=settings.streaming.buffer_size,
            backpressure_timeout=settings.streaming.backpressure_timeout_seconds,
            reasoning_defaults=MappingProxyType(dict(settings.reasoning.default_options)),
            synthesis_defaults=MappingProxyType(dict(settings.synthesis.default_options)),
            cost_precision=settings.cost_precision,
        )


def validate_messages(messages: Sequence[Message]) -> tuple[Message, ...]:
    """
    Check the conversation invariants the stages rely on.

    Rejects rather than repairs: an empty conversation, more than one
    system message, or a system message anywhere but first.

    Raises:
        ValidationError: The conversation violates an invariant
    """
    messages = tuple(messages)
    if not messages:
        raise ValidationError("At least one message is required", field="messages")

    system_positions = [i for i, m in enumerate(messages) if m.role == Role.SYSTEM]
    if len(system_positions) > 1:
        raise ValidationError("Only one system message is allowed", field="messages")
    if system_positions and system_positions[0] != 0:
        raise ValidationError("The system message must come first", field="messages")

    return messages


# ============================================================
# ORCHESTRATION RUN
# ============================================================


class OrchestrationRun:
    """
    One request's worth of orchestration state.

    Owns the state machine, reasoning extractor, usage accumulator, event
    sequencer and cancellation token. Nothing here is shared between runs.

    Usage:
        run = orchestrator.create_run(request)
        async with aclosing(run.events()) as events:
            async for event in events:
                ...
    """

    def __init__(
        self,
        request: OrchestrationRequest,
        reasoning_adapter: StageAdapter,
        synthesis_adapter: StageAdapter,
        config: OrchestratorConfig,
        pricing: PricingTable | None = None,
        cancel_token: CancellationToken | None = None,
        run_id: str | None = None,
    ):
        self.request = request
        self.reasoning_adapter = reasoning_adapter
        self.synthesis_adapter = synthesis_adapter
        self.config = config
        self.token = cancel_token or CancellationToken()
        self.run_id = run_id or str(uuid4())

        self._state = RunState.IDLE
        self._extractor = ReasoningExtractor()
        self._usage = UsageAccumulator(
            pricing=pricing or DEFAULT_PRICING_TABLE,
            stage_models={
                Stage.REASONING: reasoning_adapter.model,
                Stage.SYNTHESIS: synthesis_adapter.model,
            },
        )
        self._sequencer = EventSequencer(
            buffer_size=config.buffer_size,
            backpressure_timeout=config.backpressure_timeout,
        )
        self._thinking: ThinkingBlock | None = None
        self._raw: dict[Stage, dict[str, Any] | None] = {}
        self._producer: asyncio.Task | None = None
        self._started = False

    # --------------------------------------------------------
    # State
    # --------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def thinking_block(self) -> ThinkingBlock | None:
        """The frozen stage-A block; partial when stage A failed or was cancelled."""
        return self._thinking

    @property
    def usage(self) -> UsageAccumulator:
        return self._usage

    def _transition(self, target: RunState) -> None:
        if target not in TRANSITIONS[self._state]:
            raise InvalidStateTransitionError(str(self._state), str(target))
        logger.debug(f"Run {self.run_id}: {self._state} -> {target}")
        self._state = target

    def _current_stage(self) -> Stage | None:
        if self._state == RunState.RUNNING_STAGE_A:
            return Stage.REASONING
        if self._state in (RunState.STAGE_A_DONE, RunState.RUNNING_STAGE_B):
            return Stage.SYNTHESIS
        return None

    # --------------------------------------------------------
    # Consumer side
    # --------------------------------------------------------

    async def events(self) -> AsyncIterator[OutgoingEvent]:
        """
        Start the run and yield its outgoing sequence.

        Closing the iterator early cancels the run. A run can be consumed
        only once.
        """
        if self._started:
            raise RuntimeError("An orchestration run can only be consumed once")
        self._started = True

        if self.token.cancelled:
            self._finish_cancelled()
        else:
            context = contextvars.copy_context()
            context.run(run_id_var.set, self.run_id)
            self._producer = asyncio.create_task(
                self._produce(), name=f"deliberate-run-{self.run_id}", context=context
            )
            self._producer.add_done_callback(self._on_producer_done)
            self.token.on_cancel(self._on_cancel)

        try:
            async for event in self._sequencer.drain():
                yield event
        finally:
            producer = self._producer
            if producer is not None and not producer.done():
                self.token.cancel("consumer_closed")
                await asyncio.wait({producer})

    def _on_cancel(self, reason: str) -> None:
        producer = self._producer
        if producer is None or producer.done():
            return
        if producer is asyncio.current_task():
            # Raised from inside the producer; it finishes itself
            return
        logger.info(f"Run {self.run_id} cancelled: {reason}")
        producer.cancel()

    def _on_producer_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            # Cancelled before its first step never reaches _produce's handler
            if not self._sequencer.terminated:
                self._finish_cancelled()
            return

        exc = task.exception()
        if exc is not None and not self._sequencer.terminated:
            logger.error(f"Run {self.run_id} producer crashed: {exc}")
            self._finish_failed(self._current_stage(), DeliberateError(str(exc)))

    # --------------------------------------------------------
    # Producer side
    # --------------------------------------------------------

    async def _produce(self) -> None:
        try:
            await self._drive()
        except asyncio.CancelledError:
            self._finish_cancelled()
            raise
        except BackpressureExceededError as e:
            logger.warning(f"Run {self.run_id}: {e.message}")
            self.token.cancel("backpressure")
            self._finish_cancelled()
        except Exception as e:
            logger.exception(f"Run {self.run_id} failed unexpectedly")
            self._finish_failed(self._current_stage(), DeliberateError(f"Internal error: {e}"))

    async def _drive(self) -> None:
        mode = (
            AdapterMode.STREAMING
            if self.request.delivery_mode == DeliveryMode.STREAMING
            else AdapterMode.BATCHED
        )

        # Stage A
        self._transition(RunState.RUNNING_STAGE_A)
        stage_a = build_stage_request(
            self.request.messages,
            merge_options(self.config.reasoning_defaults, self.request.stage_a_options),
            self.request.stage_a_credential,
        )
        error = await self._run_stage(
            Stage.REASONING, self.reasoning_adapter, stage_a, mode, self.config.reasoning_timeout
        )
        if error is not None:
            self._thinking = self._extractor.abort()
            self._finish_failed(Stage.REASONING, error)
            return

        for delta in self._extractor.finish():
            await self._publish_delta(Stage.REASONING, delta)
        self._thinking = self._extractor.freeze()
        self._transition(RunState.STAGE_A_DONE)

        await self._publish_usage(Stage.REASONING)
        await self._sequencer.publish(
            OutgoingEvent(
                type=OutgoingEventType.THINKING_COMPLETE,
                stage=Stage.REASONING,
                content=self._extractor.answer,
                thinking=self._thinking,
            )
        )

        # Stage B
        self._transition(RunState.RUNNING_STAGE_B)
        stage_b = build_stage_request(
            (*self.request.messages, Message(Role.ASSISTANT, self._thinking.text)),
            merge_options(self.config.synthesis_defaults, self.request.stage_b_options),
            self.request.stage_b_credential,
        )
        error = await self._run_stage(
            Stage.SYNTHESIS, self.synthesis_adapter, stage_b, mode, self.config.synthesis_timeout
        )
        if error is not None:
            self._finish_failed(Stage.SYNTHESIS, error)
            return

        await self._publish_usage(Stage.SYNTHESIS)
        self._transition(RunState.COMPLETED)
        self._sequencer.terminate(
            OutgoingEvent(
                type=OutgoingEventType.DONE,
                cost=self._usage.breakdown(),
                raw=self._raw_payload(),
            )
        )
        logger.info(
            f"Run {self.run_id} completed",
            extra={"usage": self._usage.summary(self.config.cost_precision)},
        )

    async def _run_stage(
        self,
        stage: Stage,
        adapter: StageAdapter,
        request: StageRequest,
        mode: AdapterMode,
        timeout: float,
    ) -> DeliberateError | None:
        """
        Drive one adapter exchange to its terminal event.

        Returns:
            None on `done`, otherwise the stage's error
        """
        stage_token = stage_var.set(str(stage))
        started = time.perf_counter()
        outcome = "cancelled"
        error: DeliberateError | None = None

        try:
            async with timeout_context(timeout, f"{stage} stage") as deadline:
                async with aclosing(adapter.run(request, mode)) as stream:
                    async for event in stream:
                        if event.type == StageEventType.USAGE and event.usage is not None:
                            self._usage.record(stage, event.usage)
                        elif event.type == StageEventType.DONE:
                            self._raw[stage] = event.raw
                            outcome = "done"
                            break
                        elif event.type == StageEventType.FAILED:
                            error = event.error or UpstreamProtocolError(
                                f"{adapter.name} failed without an error", provider=adapter.provider
                            )
                            break
                        else:
                            # Waiting on a slow caller is bounded by backpressure instead
                            async with paused_deadline(deadline):
                                await self._on_delta(stage, event)

            if outcome != "done" and error is None:
                error = UpstreamProtocolError(
                    f"{adapter.name} ended without a terminal event", provider=adapter.provider
                )
        except TimeoutError as e:
            error = UpstreamUnavailableError(
                f"{stage} stage exceeded {timeout}s", provider=adapter.provider, original_error=e
            )
        except BackpressureExceededError:
            raise
        except Exception:
            outcome = "failed"
            raise
        finally:
            if error is not None:
                outcome = "failed"
            entry = self._usage.stage_usage(stage)
            log_stage_exchange(
                stage=str(stage),
                provider=adapter.provider,
                model=adapter.model,
                input_units=entry.metrics.input_units if entry else None,
                output_units=entry.metrics.output_units if entry else None,
                duration_ms=(time.perf_counter() - started) * 1000,
                outcome=outcome,
                error=error.message if error is not None else None,
            )
            stage_var.reset(stage_token)

        return error

    async def _on_delta(self, stage: Stage, event: StageEvent) -> None:
        if stage == Stage.REASONING:
            for delta in self._extractor.feed(event):
                await self._publish_delta(stage, delta)
        else:
            await self._publish_delta(stage, event)

    async def _publish_delta(self, stage: Stage, event: StageEvent) -> None:
        if event.type == StageEventType.REASONING_DELTA:
            outgoing = OutgoingEventType.REASONING_DELTA
        elif event.type == StageEventType.CONTENT_DELTA:
            outgoing = OutgoingEventType.CONTENT_DELTA
        else:
            return
        await self._sequencer.publish(
            OutgoingEvent(type=outgoing, stage=stage, content=event.text, index=event.index)
        )

    async def _publish_usage(self, stage: Stage) -> None:
        entry = self._usage.stage_usage(stage)
        if entry is None:
            logger.warning(f"Run {self.run_id}: {stage} stage reported no usage")
            return
        await self._sequencer.publish(
            OutgoingEvent(
                type=OutgoingEventType.USAGE,
                stage=stage,
                usage=entry.metrics,
                stage_cost=entry.cost,
            )
        )

    # --------------------------------------------------------
    # Termination
    # --------------------------------------------------------

    def _raw_payload(self) -> dict[str, Any] | None:
        if not self.request.include_raw:
            return None
        return {
            "stage_a": self._raw.get(Stage.REASONING),
            "stage_b": self._raw.get(Stage.SYNTHESIS),
        }

    def _enter_terminal(self, target: RunState) -> None:
        if self._state in TERMINAL_STATES:
            return
        if target in TRANSITIONS[self._state]:
            self._transition(target)
        else:
            # Internal failure outside a running stage
            logger.debug(f"Run {self.run_id}: forcing {self._state} -> {target}")
            self._state = target

    def _finish_failed(self, stage: Stage | None, error: DeliberateError) -> None:
        if self._sequencer.terminated:
            return
        self._enter_terminal(RunState.FAILED)
        logger.warning(f"Run {self.run_id} failed in {stage} stage: {error.message}")
        self._sequencer.terminate(
            OutgoingEvent(
                type=OutgoingEventType.ERROR,
                stage=stage,
                error=error,
                thinking=self._thinking,
                cost=self._usage.breakdown(),
                raw=self._raw_payload(),
            )
        )

    def _finish_cancelled(self) -> None:
        if self._sequencer.terminated:
            return
        stage = self._current_stage()
        if self._state == RunState.RUNNING_STAGE_A:
            self._thinking = self._extractor.abort()
        self._enter_terminal(RunState.CANCELLED)
        reason = self.token.reason or "cancelled"
        self._sequencer.terminate(
            OutgoingEvent(
                type=OutgoingEventType.ERROR,
                stage=stage,
                error=CancelledRunError(f"Run cancelled: {reason}", reason=reason),
                thinking=self._thinking,
                cost=self._usage.breakdown(),
            )
        )


# ============================================================
# DUAL-STAGE ORCHESTRATOR
# ============================================================


class DualStageOrchestrator:
    """
    Entry point for running reasoning-then-synthesis requests.

    Adapters are shared across runs; every run gets its own state.

    Usage:
        async with DualStageOrchestrator.from_settings() as orchestrator:
            result = await orchestrator.complete(request)
            print(result.thinking_block.text)
            print(result.text)

            async for event in orchestrator.stream(request):
                print(event.to_sse())
    """

    def __init__(
        self,
        reasoning_adapter: StageAdapter,
        synthesis_adapter: StageAdapter,
        config: OrchestratorConfig | None = None,
        pricing: PricingTable | None = None,
    ):
        self.reasoning_adapter = reasoning_adapter
        self.synthesis_adapter = synthesis_adapter
        self.config = config or OrchestratorConfig()
        self.pricing = pricing or DEFAULT_PRICING_TABLE

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "DualStageOrchestrator":
        """Build adapters and configuration from application settings."""
        settings = settings or get_settings()
        return cls(
            reasoning_adapter=adapter_from_settings(settings.reasoning),
            synthesis_adapter=adapter_from_settings(settings.synthesis),
            config=OrchestratorConfig.from_settings(settings),
        )

    def create_run(
        self,
        request: OrchestrationRequest,
        cancel_token: CancellationToken | None = None,
    ) -> OrchestrationRun:
        """
        Validate a request and prepare its run without starting it.

        Raises:
            ValidationError: The conversation is malformed
        """
        validate_messages(request.messages)
        return OrchestrationRun(
            request=request,
            reasoning_adapter=self.reasoning_adapter,
            synthesis_adapter=self.synthesis_adapter,
            config=self.config,
            pricing=self.pricing,
            cancel_token=cancel_token,
        )

    async def stream(
        self,
        request: OrchestrationRequest,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[OutgoingEvent]:
        """Run with streaming adapters and yield the live event sequence."""
        run = self.create_run(replace(request, delivery_mode=DeliveryMode.STREAMING), cancel_token)
        async with aclosing(run.events()) as events:
            async for event in events:
                yield event

    async def complete(
        self,
        request: OrchestrationRequest,
        cancel_token: CancellationToken | None = None,
    ) -> CombinedResult:
        """
        Run with batched adapters and return the combined result.

        Raises:
            ValidationError: The conversation is malformed
            RunFailedError: Either stage failed
            RunCancelledError: The run was cancelled
        """
        run = self.create_run(replace(request, delivery_mode=DeliveryMode.BLOCKING), cancel_token)
        collector = ResponseCollector(
            include_raw=request.include_raw, precision=self.config.cost_precision
        )
        async with aclosing(run.events()) as events:
            async for event in events:
                collector.add(event)
        return collector.result()

    async def run(
        self,
        request: OrchestrationRequest,
        cancel_token: CancellationToken | None = None,
    ) -> CombinedResult | AsyncIterator[OutgoingEvent]:
        """Dispatch on the request's delivery mode."""
        if request.delivery_mode == DeliveryMode.STREAMING:
            return self.stream(request, cancel_token)
        return await self.complete(request, cancel_token)

    async def close(self) -> None:
        await self.reasoning_adapter.close()
        if self.synthesis_adapter is not self.reasoning_adapter:
            await self.synthesis_adapter.close()

    async def __aenter__(self) -> "DualStageOrchestrator":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "RunState",
    "TRANSITIONS",
    "TERMINAL_STATES",
    "OrchestratorConfig",
    "validate_messages",
    "OrchestrationRun",
    "DualStageOrchestrator",
]
