# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Response Multiplexer

Imposes one total order on the two stages' events and delivers it either
live (streaming) or as one CombinedResult (blocking).

Streaming order for a successful run:

    reasoning-delta / content-delta   (reasoning stage, upstream order)
    usage                             (reasoning stage)
    thinking-complete                 (frozen ThinkingBlock, one unit)
    reasoning-delta / content-delta   (synthesis stage, upstream order)
    usage                             (synthesis stage)
    done                              (CostBreakdown)

A failure or cancellation replaces the tail with a single `error` event.
Blocking mode is ResponseCollector draining that same sequence.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from deliberate_core import (
    BackpressureExceededError,
    DeliberateError,
    ErrorKind,
    RunCancelledError,
    RunFailedError,
)

from .async_base import utcnow
from .models import (
    CombinedResult,
    CostBreakdown,
    Stage,
    ThinkingBlock,
    UsageMetrics,
    format_cost,
)

logger = logging.getLogger(__name__)


# ============================================================
# OUTGOING EVENTS
# ============================================================


class OutgoingEventType(StrEnum):
    """Kinds of event delivered to the caller."""

    REASONING_DELTA = "reasoning-delta"
    CONTENT_DELTA = "content-delta"
    THINKING_COMPLETE = "thinking-complete"
    USAGE = "usage"
    ERROR = "error"
    DONE = "done"


TERMINAL_EVENT_TYPES = frozenset({OutgoingEventType.DONE, OutgoingEventType.ERROR})


@dataclass
class OutgoingEvent:
    """Event emitted to the caller during a run."""

    type: OutgoingEventType
    stage: Stage | None = None
    content: str = ""
    index: int = 0
    thinking: ThinkingBlock | None = None
    usage: UsageMetrics | None = None
    stage_cost: Decimal | None = None
    cost: CostBreakdown | None = None
    error: DeliberateError | None = None
    raw: dict[str, Any] | None = None
    sequence: int = -1
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_dict(self, precision: int = 6) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": str(self.type),
            "sequence": self.sequence,
            "stage": str(self.stage) if self.stage else None,
            "timestamp": self.timestamp.isoformat(),
        }

        if self.type in (OutgoingEventType.REASONING_DELTA, OutgoingEventType.CONTENT_DELTA):
            data["content"] = self.content
            if self.type == OutgoingEventType.CONTENT_DELTA:
                data["index"] = self.index

        elif self.type == OutgoingEventType.THINKING_COMPLETE:
            data["thinking"] = self.thinking.to_dict() if self.thinking else None
            data["answer"] = self.content

        elif self.type == OutgoingEventType.USAGE:
            data["usage"] = self.usage.to_dict() if self.usage else None
            data["cost"] = format_cost(self.stage_cost, precision)

        else:
            data["cost"] = self.cost.to_dict(precision) if self.cost else None
            if self.error is not None:
                data["error"] = self.error.to_dict()
            if self.thinking is not None:
                data["thinking"] = self.thinking.to_dict()
            if self.raw is not None:
                data["raw"] = self.raw

        return data

    def to_sse(self, precision: int = 6) -> str:
        """Format as Server-Sent Event."""
        return f"event: {self.type}\ndata: {json.dumps(self.to_dict(precision), default=str)}\n\n"


# ============================================================
# EVENT SEQUENCER
# ============================================================


class EventSequencer:
    """
    Bounded, ordered buffer between a run's producer and its caller.

    - `publish` suspends while `buffer_size` events are undelivered and gives
      up with BackpressureExceededError after `backpressure_timeout` seconds
    - `terminate` enqueues the one terminal event without blocking
    - reasoning-stage events are refused once synthesis output has started

    Usage:
        sequencer = EventSequencer(buffer_size=256)

        # producer
        await sequencer.publish(event)
        sequencer.terminate(done_event)

        # consumer
        async for event in sequencer.drain():
            ...
    """

    def __init__(self, buffer_size: int = 256, backpressure_timeout: float = 30.0):
        if buffer_size < 1:
            raise ValueError("buffer_size must be at least 1")
        self.buffer_size = buffer_size
        self.backpressure_timeout = backpressure_timeout

        self._queue: asyncio.Queue[OutgoingEvent] = asyncio.Queue()
        self._slots = asyncio.Semaphore(buffer_size)
        self._sequence = 0
        self._terminated = False
        self._synthesis_started = False

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def pending(self) -> int:
        """Events enqueued but not yet delivered."""
        return self._queue.qsize()

    def _stamp(self, event: OutgoingEvent) -> None:
        event.sequence = self._sequence
        self._sequence += 1
        self._queue.put_nowait(event)

    async def publish(self, event: OutgoingEvent) -> None:
        """Enqueue one non-terminal event, waiting for buffer space."""
        if self._terminated:
            raise RuntimeError("Event sequence already terminated")
        if event.is_terminal:
            raise ValueError("Use terminate() for terminal events")

        if event.stage == Stage.SYNTHESIS:
            self._synthesis_started = True
        elif event.stage == Stage.REASONING and self._synthesis_started:
            raise RuntimeError("Reasoning-stage event after synthesis output started")

        try:
            async with asyncio.timeout(self.backpressure_timeout):
                await self._slots.acquire()
        except TimeoutError as e:
            raise BackpressureExceededError(
                f"Caller did not drain events within {self.backpressure_timeout}s",
                buffer_size=self.buffer_size,
            ) from e

        self._stamp(event)

    def terminate(self, event: OutgoingEvent) -> bool:
        """
        Enqueue the terminal event.

        Returns:
            False if the sequence was already terminated (event dropped)
        """
        if not event.is_terminal:
            raise ValueError("terminate() requires a done or error event")
        if self._terminated:
            logger.debug(f"Dropping {event.type} event after termination")
            return False

        self._terminated = True
        self._stamp(event)
        return True

    async def drain(self) -> AsyncIterator[OutgoingEvent]:
        """Yield events in order until the terminal event."""
        while True:
            event = await self._queue.get()
            if not event.is_terminal:
                self._slots.release()
            yield event
            if event.is_terminal:
                return


# ============================================================
# BLOCKING COLLECTOR
# ============================================================


class ResponseCollector:
    """
    Assemble one CombinedResult from an outgoing event sequence.

    Stage-B content deltas are grouped into segments by content index;
    the thinking block and stage-A answer come from `thinking-complete`.
    """

    def __init__(self, include_raw: bool = False, precision: int = 6):
        self.include_raw = include_raw
        self.precision = precision

        self._thinking: ThinkingBlock | None = None
        self._answer = ""
        self._segments: list[tuple[int, list[str]]] = []
        self._metrics: dict[str, UsageMetrics] = {}
        self._terminal: OutgoingEvent | None = None

    @property
    def finished(self) -> bool:
        return self._terminal is not None

    def add(self, event: OutgoingEvent) -> None:
        if self._terminal is not None:
            raise RuntimeError("Collector already received a terminal event")

        if event.type == OutgoingEventType.CONTENT_DELTA and event.stage == Stage.SYNTHESIS:
            if self._segments and self._segments[-1][0] == event.index:
                self._segments[-1][1].append(event.content)
            else:
                self._segments.append((event.index, [event.content]))

        elif event.type == OutgoingEventType.THINKING_COMPLETE:
            self._thinking = event.thinking
            self._answer = event.content

        elif event.type == OutgoingEventType.USAGE and event.usage and event.stage:
            self._metrics[str(event.stage)] = event.usage

        elif event.is_terminal:
            self._terminal = event

    def result(self) -> CombinedResult:
        """
        Return the assembled result.

        Raises:
            RunCancelledError: The run ended cancelled
            RunFailedError: Either stage failed (partial output in details)
        """
        terminal = self._terminal
        if terminal is None:
            raise RuntimeError("Event sequence ended without a terminal event")

        if terminal.type == OutgoingEventType.ERROR:
            raise self._failure(terminal)

        raw = terminal.raw or {}
        return CombinedResult(
            thinking_block=self._thinking or ThinkingBlock(),
            stage_b_content=tuple("".join(parts) for _, parts in self._segments),
            usage=terminal.cost or CostBreakdown(),
            stage_a_content=self._answer,
            metrics=MappingProxyType(dict(self._metrics)),
            raw_stage_a=raw.get("stage_a") if self.include_raw else None,
            raw_stage_b=raw.get("stage_b") if self.include_raw else None,
        )

    def _failure(self, terminal: OutgoingEvent) -> RunFailedError:
        error = terminal.error
        kind = error.kind if error is not None else ErrorKind.INTERNAL
        message = error.message if error is not None else "Run failed"

        details: dict[str, Any] = {
            "error": error.to_dict() if error is not None else None,
            "usage": (terminal.cost or CostBreakdown()).to_dict(self.precision),
            "metrics": {stage: m.to_dict() for stage, m in self._metrics.items()},
        }
        thinking = terminal.thinking or self._thinking
        if thinking is not None:
            details["thinking"] = thinking.to_dict()
        if self.include_raw and terminal.raw:
            details["raw"] = terminal.raw

        if kind == ErrorKind.CANCELLED:
            return RunCancelledError(message, details=details)
        stage = str(terminal.stage) if terminal.stage else None
        return RunFailedError(message, kind=kind, stage=stage, details=details)


async def collect(
    events: AsyncIterable[OutgoingEvent], include_raw: bool = False, precision: int = 6
) -> CombinedResult:
    """Drain an outgoing sequence into a CombinedResult."""
    collector = ResponseCollector(include_raw=include_raw, precision=precision)
    async for event in events:
        collector.add(event)
    return collector.result()


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "OutgoingEventType",
    "TERMINAL_EVENT_TYPES",
    "OutgoingEvent",
    "EventSequencer",
    "ResponseCollector",
    "collect",
]
