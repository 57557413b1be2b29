# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Orchestration Data Model

Messages, per-stage requests and events, usage metrics, cost breakdowns,
thinking blocks and the combined result of one run.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from deliberate_core import DeliberateError

# ============================================================
# MESSAGES
# ============================================================


class Role(StrEnum):
    """Conversation roles."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """One conversation turn."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": str(self.role), "content": self.content}


class DeliveryMode(StrEnum):
    """How the caller receives the run's output."""

    BLOCKING = "blocking"
    STREAMING = "streaming"


class Stage(StrEnum):
    """The two stages of a run."""

    REASONING = "reasoning"
    SYNTHESIS = "synthesis"


class AdapterMode(StrEnum):
    """How a stage adapter talks to its upstream."""

    BATCHED = "batched"
    STREAMING = "streaming"


# ============================================================
# STAGE REQUEST
# ============================================================


@dataclass(frozen=True)
class StageRequest:
    """
    Everything one stage adapter needs for one upstream exchange.

    Immutable once constructed; build a fresh one for each stage with
    `build_stage_request`.
    """

    messages: tuple[Message, ...]
    options: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    credential: str = field(default="", repr=False)

    @property
    def system_prompt(self) -> str | None:
        if self.messages and self.messages[0].role == Role.SYSTEM:
            return self.messages[0].content
        return None

    def to_payload_messages(self, include_system: bool = True) -> list[dict[str, str]]:
        """Messages as plain dicts, optionally without the system turn."""
        return [
            m.to_dict() for m in self.messages if include_system or m.role != Role.SYSTEM
        ]


def build_stage_request(
    messages: Iterable[Message],
    options: Mapping[str, Any] | None = None,
    credential: str = "",
) -> StageRequest:
    """Freeze messages and options into a StageRequest."""
    return StageRequest(
        messages=tuple(messages),
        options=MappingProxyType(dict(options or {})),
        credential=credential,
    )


# ============================================================
# USAGE
# ============================================================


@dataclass(frozen=True)
class UsageMetrics:
    """
    Provider-reported consumption counters for one stage.

    Fields a provider does not report stay None; absence is not zero.
    `input_units` counts every prompt unit including cache hits.
    `cache_write_units` are billed separately from `input_units`.
    """

    provider: str
    model: str | None = None
    input_units: int | None = None
    output_units: int | None = None
    cached_input_units: int | None = None
    cache_write_units: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "input_units": self.input_units,
            "output_units": self.output_units,
            "cached_input_units": self.cached_input_units,
            "cache_write_units": self.cache_write_units,
        }


def format_cost(amount: Decimal | None, precision: int = 6) -> str | None:
    """Round a cost for presentation; None stays unavailable."""
    if amount is None:
        return None
    quantum = Decimal(1).scaleb(-precision)
    return str(amount.quantize(quantum, rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class CostBreakdown:
    """
    Per-stage cost in full Decimal precision.

    A stage cost of None means that stage reported no usage (it failed or
    never ran); it is unavailable, not free.
    """

    stage_a_cost: Decimal | None = None
    stage_b_cost: Decimal | None = None

    @property
    def total_cost(self) -> Decimal:
        return sum(
            (c for c in (self.stage_a_cost, self.stage_b_cost) if c is not None),
            Decimal(0),
        )

    @property
    def is_complete(self) -> bool:
        return self.stage_a_cost is not None and self.stage_b_cost is not None

    def to_dict(self, precision: int = 6) -> dict[str, Any]:
        return {
            "stage_a_cost": format_cost(self.stage_a_cost, precision),
            "stage_b_cost": format_cost(self.stage_b_cost, precision),
            "total_cost": format_cost(self.total_cost, precision),
            "complete": self.is_complete,
            "currency": "USD",
        }


# ============================================================
# STAGE EVENTS
# ============================================================


class StageEventType(StrEnum):
    """Kinds of event a stage adapter produces."""

    REASONING_DELTA = "reasoning_delta"
    CONTENT_DELTA = "content_delta"
    USAGE = "usage"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class StageEvent:
    """
    One unit flowing out of a stage adapter.

    `done` and `failed` are terminal; exactly one ends each sequence.
    """

    type: StageEventType
    text: str = ""
    index: int = 0
    usage: UsageMetrics | None = None
    error: DeliberateError | None = None
    raw: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (StageEventType.DONE, StageEventType.FAILED)

    @classmethod
    def reasoning_delta(cls, text: str) -> "StageEvent":
        return cls(type=StageEventType.REASONING_DELTA, text=text)

    @classmethod
    def content_delta(cls, text: str, index: int = 0) -> "StageEvent":
        return cls(type=StageEventType.CONTENT_DELTA, text=text, index=index)

    @classmethod
    def usage_report(cls, usage: UsageMetrics) -> "StageEvent":
        return cls(type=StageEventType.USAGE, usage=usage)

    @classmethod
    def done(cls, raw: dict[str, Any] | None = None) -> "StageEvent":
        return cls(type=StageEventType.DONE, raw=raw)

    @classmethod
    def failed(cls, error: DeliberateError) -> "StageEvent":
        return cls(type=StageEventType.FAILED, error=error)


# ============================================================
# THINKING BLOCK
# ============================================================

THINKING_PREFIX = "<thinking>\n"
THINKING_SUFFIX = "\n</thinking>"


def wrap_thinking(reasoning: str) -> str:
    """
    Wrap reasoning text in the fixed thinking markers.

    At most one leading and one trailing newline are dropped so the markers
    sit on their own lines; nothing else is altered.
    """
    body = reasoning
    if body.startswith("\n"):
        body = body[1:]
    if body.endswith("\n"):
        body = body[:-1]
    return f"{THINKING_PREFIX}{body}{THINKING_SUFFIX}"


@dataclass(frozen=True)
class ThinkingBlock:
    """Frozen stage-A reasoning plus its wrapped rendering."""

    reasoning: str = ""

    @property
    def text(self) -> str:
        return wrap_thinking(self.reasoning)

    @property
    def is_empty(self) -> bool:
        return self.reasoning == ""

    def to_dict(self) -> dict[str, Any]:
        return {"reasoning": self.reasoning, "text": self.text, "empty": self.is_empty}


# ============================================================
# RESULTS
# ============================================================


@dataclass(frozen=True)
class ContentSegment:
    """One ordered piece of the combined output."""

    kind: str  # thinking or text
    text: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.kind, "text": self.text}


@dataclass(frozen=True)
class CombinedResult:
    """Terminal artifact of one successful orchestration run."""

    thinking_block: ThinkingBlock
    stage_b_content: tuple[str, ...]
    usage: CostBreakdown
    stage_a_content: str = ""
    metrics: Mapping[str, UsageMetrics] = field(default_factory=lambda: MappingProxyType({}))
    raw_stage_a: dict[str, Any] | None = None
    raw_stage_b: dict[str, Any] | None = None

    @property
    def content_segments(self) -> tuple[ContentSegment, ...]:
        """Thinking block first, then each stage-B segment."""
        return (ContentSegment("thinking", self.thinking_block.text),) + tuple(
            ContentSegment("text", text) for text in self.stage_b_content
        )

    @property
    def text(self) -> str:
        return "".join(self.stage_b_content)

    def to_dict(self, include_raw: bool = False, precision: int = 6) -> dict[str, Any]:
        data: dict[str, Any] = {
            "content": [segment.to_dict() for segment in self.content_segments],
            "reasoning_answer": self.stage_a_content,
            "usage": self.usage.to_dict(precision),
            "metrics": {stage: m.to_dict() for stage, m in self.metrics.items()},
        }
        if include_raw:
            data["raw"] = {"stage_a": self.raw_stage_a, "stage_b": self.raw_stage_b}
        return data


# ============================================================
# INBOUND REQUEST
# ============================================================


@dataclass(frozen=True)
class OrchestrationRequest:
    """Validated inbound value for one run."""

    messages: tuple[Message, ...]
    stage_a_options: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    stage_b_options: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    stage_a_credential: str = field(default="", repr=False)
    stage_b_credential: str = field(default="", repr=False)
    delivery_mode: DeliveryMode = DeliveryMode.BLOCKING
    include_raw: bool = False


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    # Messages
    "Role",
    "Message",
    "DeliveryMode",
    "AdapterMode",
    "Stage",
    # Stage I/O
    "StageRequest",
    "build_stage_request",
    "StageEventType",
    "StageEvent",
    # Usage
    "UsageMetrics",
    "CostBreakdown",
    "format_cost",
    # Thinking
    "THINKING_PREFIX",
    "THINKING_SUFFIX",
    "wrap_thinking",
    "ThinkingBlock",
    # Results
    "ContentSegment",
    "CombinedResult",
    "OrchestrationRequest",
]
