# Deliberate - Dual-Stage Reasoning Orchestrator
# Copyright (c) 2026 George Scott Foley
# ORCID: 0009-0006-4957-0540
# Email: Georgescottfoley@proton.me
# Licensed under the MIT License - see LICENSE file for details

"""
Reasoning Extraction

Separates stage-A reasoning from stage-A final-answer text.

Two upstream styles are supported:
1. Structured reasoning: a dedicated field (DeepSeek `reasoning_content`,
   Anthropic thinking blocks). Captured verbatim, in emission order.
2. Inline delimiters: plain content carrying <think>...</think>. Text between
   the first opening and the last closing delimiter is reasoning; everything
   else, including an unmatched opening delimiter, is answer text.

Text with neither produces an empty ThinkingBlock.

Classification is incremental. Only text whose classification is still
undecided is held back:
- a trailing fragment that may be the start of a delimiter
- everything after the first <think> until the first </think> arrives
- everything after the latest </think> until another one arrives or the
  stage ends
"""

import logging
from enum import StrEnum

from .models import StageEvent, StageEventType, ThinkingBlock

logger = logging.getLogger(__name__)

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"


class _Phase(StrEnum):
    BEFORE_OPEN = "before_open"
    AWAIT_FIRST_CLOSE = "await_first_close"
    AFTER_CLOSE = "after_close"


def _partial_suffix(text: str, marker: str) -> int:
    """Length of the longest proper prefix of `marker` that ends `text`."""
    for size in range(min(len(marker) - 1, len(text)), 0, -1):
        if text.endswith(marker[:size]):
            return size
    return 0


class ReasoningExtractor:
    """
    Incremental classifier for one stage-A event sequence.

    Usage:
        extractor = ReasoningExtractor()
        for event in stage_a_deltas:
            for classified in extractor.feed(event):
                forward(classified)
        for classified in extractor.finish():
            forward(classified)
        block = extractor.freeze()
    """

    def __init__(self, open_marker: str = THINK_OPEN, close_marker: str = THINK_CLOSE):
        self.open_marker = open_marker
        self.close_marker = close_marker

        self._structured = False
        self._phase = _Phase.BEFORE_OPEN
        self._held = ""
        self._reasoning: list[str] = []
        self._answer: list[str] = []
        self._block: ThinkingBlock | None = None

    # --------------------------------------------------------
    # State
    # --------------------------------------------------------

    @property
    def frozen(self) -> bool:
        return self._block is not None

    @property
    def structured(self) -> bool:
        """True once the upstream emitted a dedicated reasoning field."""
        return self._structured

    @property
    def answer(self) -> str:
        """Stage-A final-answer text classified so far."""
        return "".join(self._answer)

    @property
    def reasoning(self) -> str:
        return "".join(self._reasoning)

    # --------------------------------------------------------
    # Feeding
    # --------------------------------------------------------

    def feed(self, event: StageEvent) -> list[StageEvent]:
        """
        Classify one stage-A delta.

        Returns:
            Zero or more reasoning/content deltas, in upstream order
        """
        if self.frozen:
            raise RuntimeError("ThinkingBlock already frozen")

        if event.type == StageEventType.REASONING_DELTA:
            out: list[StageEvent] = []
            if not self._structured:
                # Text held for inline scanning is answer text once a
                # dedicated reasoning field shows up.
                out.extend(self._flush_held())
                self._structured = True
            self._reasoning.append(event.text)
            out.append(StageEvent.reasoning_delta(event.text))
            return out

        if event.type == StageEventType.CONTENT_DELTA:
            if self._structured:
                return [self._emit_answer(event.text)]
            return self._scan(event.text)

        return []

    def finish(self) -> list[StageEvent]:
        """Resolve held text at a successful end of stage."""
        if self.frozen:
            return []
        out = self._flush_held()
        self.freeze()
        return out

    def abort(self) -> ThinkingBlock:
        """Freeze after a failed stage; undecided text is discarded."""
        if self._held:
            logger.debug(f"Discarding {len(self._held)} undecided chars after stage failure")
        self._held = ""
        return self.freeze()

    def freeze(self) -> ThinkingBlock:
        """Freeze and return the ThinkingBlock (idempotent)."""
        if self._block is None:
            self._block = ThinkingBlock(reasoning=self.reasoning)
        return self._block

    # --------------------------------------------------------
    # Inline delimiter scanning
    # --------------------------------------------------------

    def _emit_answer(self, text: str) -> StageEvent:
        self._answer.append(text)
        return StageEvent.content_delta(text)

    def _emit_reasoning(self, text: str) -> StageEvent:
        self._reasoning.append(text)
        return StageEvent.reasoning_delta(text)

    def _flush_held(self) -> list[StageEvent]:
        held, self._held = self._held, ""
        if self._phase == _Phase.AWAIT_FIRST_CLOSE:
            # Unmatched opening delimiter: the whole tail is answer text
            held = self.open_marker + held
        self._phase = _Phase.BEFORE_OPEN
        return [self._emit_answer(held)] if held else []

    def _scan(self, text: str) -> list[StageEvent]:
        out: list[StageEvent] = []
        buf = self._held + text
        scan_from = max(0, len(self._held) - len(self.close_marker) + 1)
        self._held = ""

        while True:
            if self._phase == _Phase.BEFORE_OPEN:
                at = buf.find(self.open_marker)
                if at == -1:
                    keep = _partial_suffix(buf, self.open_marker)
                    emit = buf[: len(buf) - keep]
                    if emit:
                        out.append(self._emit_answer(emit))
                    self._held = buf[len(buf) - keep :]
                    return out
                if at:
                    out.append(self._emit_answer(buf[:at]))
                buf = buf[at + len(self.open_marker) :]
                scan_from = 0
                self._phase = _Phase.AWAIT_FIRST_CLOSE

            elif self._phase == _Phase.AWAIT_FIRST_CLOSE:
                at = buf.find(self.close_marker, scan_from)
                if at == -1:
                    self._held = buf
                    return out
                if at:
                    out.append(self._emit_reasoning(buf[:at]))
                buf = buf[at + len(self.close_marker) :]
                scan_from = 0
                self._phase = _Phase.AFTER_CLOSE

            else:
                at = buf.find(self.close_marker, scan_from)
                if at == -1:
                    self._held = buf
                    return out
                # The previous closing delimiter was not the last one
                out.append(self._emit_reasoning(self.close_marker + buf[:at]))
                buf = buf[at + len(self.close_marker) :]
                scan_from = 0


# ============================================================
# EXPORTS
# ============================================================

__all__ = [
    "THINK_OPEN",
    "THINK_CLOSE",
    "ReasoningExtractor",
]
