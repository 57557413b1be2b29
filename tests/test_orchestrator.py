"""
Tests for the dual-stage orchestrator: ordering, failure isolation,
cancellation, timeouts, backpressure and blocking/streaming equivalence.
"""

import asyncio
import logging
from contextlib import aclosing
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from deliberate.core.async_base import CancellationToken
from deliberate.core.models import (
    AdapterMode,
    DeliveryMode,
    Message,
    Role,
    Stage,
    StageEvent,
    UsageMetrics,
)
from deliberate.core.multiplexer import OutgoingEventType, ResponseCollector
from deliberate.core.orchestrator import (
    TRANSITIONS,
    DualStageOrchestrator,
    OrchestratorConfig,
    RunState,
    validate_messages,
)
from deliberate_core import (
    ErrorKind,
    InvalidStateTransitionError,
    RunCancelledError,
    RunFailedError,
    UpstreamRejectedError,
    UpstreamUnavailableError,
    ValidationError,
)

# ============================================================
# Helpers
# ============================================================


async def _drain(orchestrator, request, cancel_token=None):
    events = []
    async with aclosing(orchestrator.stream(request, cancel_token)) as stream:
        async for event in stream:
            events.append(event)
    return events


def _streaming(make_request, **kwargs):
    return make_request(delivery_mode=DeliveryMode.STREAMING, **kwargs)


# ============================================================
# Validation
# ============================================================


class TestValidation:

    def test_accepts_leading_system_message(self):
        messages = [Message(Role.SYSTEM, "Be brief"), Message(Role.USER, "Hi")]
        assert validate_messages(messages) == tuple(messages)

    def test_rejects_empty_conversation(self):
        with pytest.raises(ValidationError):
            validate_messages([])

    def test_rejects_two_system_messages(self):
        with pytest.raises(ValidationError):
            validate_messages(
                [Message(Role.SYSTEM, "a"), Message(Role.SYSTEM, "b"), Message(Role.USER, "c")]
            )

    def test_rejects_misplaced_system_message(self):
        with pytest.raises(ValidationError):
            validate_messages([Message(Role.USER, "Hi"), Message(Role.SYSTEM, "late")])

    @pytest.mark.asyncio
    async def test_invalid_request_never_reaches_an_upstream(self, make_orchestrator, make_request):
        orchestrator, stage_a, stage_b = make_orchestrator()
        request = make_request(messages=[Message(Role.USER, "Hi"), Message(Role.SYSTEM, "late")])

        with pytest.raises(ValidationError):
            await orchestrator.complete(request)

        assert stage_a.calls == []
        assert stage_b.calls == []


# ============================================================
# Blocking mode
# ============================================================


class TestBlockingRun:

    @pytest.mark.asyncio
    async def test_reasoning_becomes_thinking_block(
        self, make_orchestrator, make_request, stage_a_script, stage_b_script
    ):
        orchestrator, _, _ = make_orchestrator(
            stage_a_script("Let", " me think", " about X"),
            stage_b_script("Answer: X"),
        )

        result = await orchestrator.complete(make_request())

        assert result.thinking_block.reasoning == "Let me think about X"
        assert result.thinking_block.text == "<thinking>\nLet me think about X\n</thinking>"
        assert result.stage_b_content == ("Answer: X",)
        assert [s.kind for s in result.content_segments] == ["thinking", "text"]

    @pytest.mark.asyncio
    async def test_stage_b_gets_thinking_block_as_final_assistant_message(
        self, make_orchestrator, make_request
    ):
        orchestrator, _, stage_b = make_orchestrator()
        request = make_request(
            messages=[Message(Role.SYSTEM, "Be brief"), Message(Role.USER, "What is X?")]
        )

        result = await orchestrator.complete(request)

        sent = stage_b.calls[0][0].messages
        assert sent[:-1] == request.messages
        assert sent[-1] == Message(Role.ASSISTANT, result.thinking_block.text)

    @pytest.mark.asyncio
    async def test_blocking_mode_uses_batched_exchanges(self, make_orchestrator, make_request):
        orchestrator, stage_a, stage_b = make_orchestrator()

        await orchestrator.complete(make_request())

        assert stage_a.calls[0][1] == AdapterMode.BATCHED
        assert stage_b.calls[0][1] == AdapterMode.BATCHED

    @pytest.mark.asyncio
    async def test_credentials_are_routed_per_stage(self, make_orchestrator, make_request):
        orchestrator, stage_a, stage_b = make_orchestrator()

        await orchestrator.complete(make_request())

        assert stage_a.calls[0][0].credential == "key-a"
        assert stage_b.calls[0][0].credential == "key-b"

    @pytest.mark.asyncio
    async def test_caller_options_layer_over_defaults(self, make_orchestrator, make_request):
        orchestrator, stage_a, _ = make_orchestrator(
            reasoning_defaults={"max_tokens": 100, "temperature": 0.1}
        )
        request = make_request(stage_a_options={"temperature": 0.7, "stream": True})

        await orchestrator.complete(request)

        assert dict(stage_a.calls[0][0].options) == {"max_tokens": 100, "temperature": 0.7}

    @pytest.mark.asyncio
    async def test_cost_breakdown_sums_both_stages(self, make_orchestrator, make_request):
        orchestrator, _, _ = make_orchestrator()

        result = await orchestrator.complete(make_request())

        # 10 x 0.5 + 20 x 1.0 and 30 x 2 + 40 x 3
        assert result.usage.stage_a_cost == Decimal("25")
        assert result.usage.stage_b_cost == Decimal("180")
        assert result.usage.total_cost == Decimal("205")
        assert result.usage.is_complete
        assert result.to_dict()["usage"]["total_cost"] == "205.000000"

    @pytest.mark.asyncio
    async def test_metrics_reported_per_stage(self, make_orchestrator, make_request):
        orchestrator, _, _ = make_orchestrator()

        result = await orchestrator.complete(make_request())

        assert result.metrics["reasoning"].input_units == 10
        assert result.metrics["synthesis"].output_units == 40

    @pytest.mark.asyncio
    async def test_stage_a_answer_is_surfaced_not_injected(
        self, make_orchestrator, make_request, stage_a_script
    ):
        orchestrator, _, stage_b = make_orchestrator(
            stage_a_script("thinking", answer="draft answer")
        )

        result = await orchestrator.complete(make_request())

        assert result.stage_a_content == "draft answer"
        assert all("draft answer" not in m.content for m in stage_b.calls[0][0].messages)

    @pytest.mark.asyncio
    async def test_raw_payloads_only_when_requested(self, make_orchestrator, make_request):
        orchestrator, _, _ = make_orchestrator()

        quiet = await orchestrator.complete(make_request())
        verbose = await orchestrator.complete(make_request(include_raw=True))

        assert "raw" not in quiet.to_dict()
        assert verbose.raw_stage_a == {"id": "stage-a"}
        assert verbose.to_dict(include_raw=True)["raw"]["stage_b"] == {"id": "stage-b"}

    @pytest.mark.asyncio
    async def test_content_indices_become_segments(self, make_orchestrator, make_request):
        orchestrator, _, _ = make_orchestrator(
            synthesis_events=[
                StageEvent.content_delta("first ", index=0),
                StageEvent.content_delta("block", index=0),
                StageEvent.content_delta("second", index=1),
                StageEvent.usage_report(UsageMetrics("anthropic", input_units=1, output_units=1)),
                StageEvent.done(),
            ]
        )

        result = await orchestrator.complete(make_request())

        assert result.stage_b_content == ("first block", "second")
        assert result.text == "first blocksecond"

    @pytest.mark.asyncio
    async def test_reruns_are_identical(self, make_orchestrator, make_request):
        orchestrator, _, _ = make_orchestrator()

        first = await orchestrator.complete(make_request())
        second = await orchestrator.complete(make_request())

        assert first.content_segments == second.content_segments
        assert first.to_dict() == second.to_dict()


# ============================================================
# Stage failures
# ============================================================


class TestStageFailure:

    @pytest.mark.asyncio
    async def test_rate_limited_stage_a_never_starts_stage_b(self, make_orchestrator, make_request):
        orchestrator, _, stage_b = make_orchestrator(
            reasoning_events=[
                StageEvent.failed(
                    UpstreamRejectedError("HTTP 429", status=429, provider="deepseek")
                )
            ]
        )

        with pytest.raises(RunFailedError) as exc_info:
            await orchestrator.complete(make_request())

        assert exc_info.value.kind == ErrorKind.UPSTREAM_REJECTED
        assert exc_info.value.stage == "reasoning"
        assert exc_info.value.details["usage"]["stage_b_cost"] is None
        assert exc_info.value.details["usage"]["complete"] is False
        assert stage_b.calls == []

    @pytest.mark.asyncio
    async def test_stage_b_failure_discloses_stage_a_output(
        self, make_orchestrator, make_request, stage_a_script
    ):
        orchestrator, _, _ = make_orchestrator(
            stage_a_script("Let me think"),
            [StageEvent.failed(UpstreamUnavailableError("connection reset"))],
        )

        with pytest.raises(RunFailedError) as exc_info:
            await orchestrator.complete(make_request())

        details = exc_info.value.details
        assert exc_info.value.kind == ErrorKind.UPSTREAM_UNAVAILABLE
        assert exc_info.value.stage == "synthesis"
        assert details["thinking"]["reasoning"] == "Let me think"
        assert details["usage"]["stage_a_cost"] == "25.000000"
        assert details["usage"]["stage_b_cost"] is None

    @pytest.mark.asyncio
    async def test_stage_a_failure_keeps_partial_thinking(self, make_orchestrator, make_request):
        orchestrator, _, stage_b = make_orchestrator(
            reasoning_events=[
                StageEvent.reasoning_delta("half a "),
                StageEvent.reasoning_delta("thought"),
                StageEvent.failed(UpstreamRejectedError("HTTP 500", status=500)),
            ]
        )

        events = await _drain(orchestrator, _streaming(make_request))
        with pytest.raises(RunFailedError) as exc_info:
            await orchestrator.complete(make_request())

        assert events[-1].thinking.reasoning == "half a thought"
        assert exc_info.value.details["thinking"]["reasoning"] == "half a thought"
        assert stage_b.calls == []

    @pytest.mark.asyncio
    async def test_adapter_crash_is_logged_as_a_failed_exchange(
        self, make_orchestrator, make_request, caplog
    ):
        async def explode(request, mode):
            raise TypeError("'str' object has no attribute 'get'")
            yield

        crashing = MagicMock(provider="deepseek", model="deepseek-reasoner")
        crashing.name = "deepseek:deepseek-reasoner"
        crashing.run = explode
        base, _, stage_b = make_orchestrator()
        orchestrator = DualStageOrchestrator(
            crashing, stage_b, config=base.config, pricing=base.pricing
        )

        with caplog.at_level(logging.INFO, logger="stage"):
            events = await _drain(orchestrator, _streaming(make_request))

        assert events[-1].error.kind == ErrorKind.INTERNAL
        exchange = next(r for r in caplog.records if r.name == "stage")
        assert exchange.outcome == "failed"
        assert stage_b.calls == []

    @pytest.mark.asyncio
    async def test_stage_without_terminal_event_is_a_protocol_error(
        self, make_orchestrator, make_request
    ):
        orchestrator, _, stage_b = make_orchestrator(
            reasoning_events=[StageEvent.reasoning_delta("trailing off")]
        )

        with pytest.raises(RunFailedError) as exc_info:
            await orchestrator.complete(make_request())

        assert exc_info.value.kind == ErrorKind.UPSTREAM_PROTOCOL
        assert stage_b.calls == []

    @pytest.mark.asyncio
    async def test_stage_a_timeout_never_starts_stage_b(self, make_orchestrator, make_request):
        orchestrator, stage_a, stage_b = make_orchestrator(
            reasoning_hang_after=1, reasoning_timeout=0.05
        )

        with pytest.raises(RunFailedError) as exc_info:
            await orchestrator.complete(make_request())

        assert exc_info.value.kind == ErrorKind.UPSTREAM_UNAVAILABLE
        assert stage_a.aborted
        assert stage_b.calls == []

    @pytest.mark.asyncio
    async def test_stage_timeouts_are_independent(self, make_orchestrator, make_request):
        orchestrator, _, stage_b = make_orchestrator(
            synthesis_hang_after=0, reasoning_timeout=5.0, synthesis_timeout=0.05
        )

        with pytest.raises(RunFailedError) as exc_info:
            await orchestrator.complete(make_request())

        assert exc_info.value.stage == "synthesis"
        assert exc_info.value.details["thinking"]["reasoning"] == "Let me think"
        assert stage_b.aborted

    @pytest.mark.asyncio
    async def test_streamed_failure_ends_with_one_error_event(
        self, make_orchestrator, make_request
    ):
        orchestrator, _, _ = make_orchestrator(
            reasoning_events=[
                StageEvent.reasoning_delta("partial"),
                StageEvent.failed(UpstreamRejectedError("HTTP 500", status=500)),
            ]
        )

        events = await _drain(orchestrator, _streaming(make_request))

        assert events[-1].type == OutgoingEventType.ERROR
        assert events[-1].error.kind == ErrorKind.UPSTREAM_REJECTED
        assert sum(1 for e in events if e.is_terminal) == 1
        assert all(e.stage != Stage.SYNTHESIS for e in events)


# ============================================================
# Streaming mode
# ============================================================


class TestStreamingRun:

    @pytest.mark.asyncio
    async def test_event_order(self, make_orchestrator, make_request, stage_a_script, stage_b_script):
        orchestrator, _, _ = make_orchestrator(
            stage_a_script("Let", " me think"), stage_b_script("A", "B")
        )

        events = await _drain(orchestrator, _streaming(make_request))

        assert [e.type for e in events] == [
            OutgoingEventType.REASONING_DELTA,
            OutgoingEventType.REASONING_DELTA,
            OutgoingEventType.USAGE,
            OutgoingEventType.THINKING_COMPLETE,
            OutgoingEventType.CONTENT_DELTA,
            OutgoingEventType.CONTENT_DELTA,
            OutgoingEventType.USAGE,
            OutgoingEventType.DONE,
        ]
        assert [e.sequence for e in events] == list(range(len(events)))

    @pytest.mark.asyncio
    async def test_all_stage_a_events_precede_stage_b_events(
        self, make_orchestrator, make_request, stage_a_script, stage_b_script
    ):
        orchestrator, _, _ = make_orchestrator(
            stage_a_script("a1", "a2", "a3", answer="draft"), stage_b_script("b1", "b2")
        )

        events = await _drain(orchestrator, _streaming(make_request))

        stages = [e.stage for e in events if e.stage is not None]
        last_a = max(i for i, s in enumerate(stages) if s == Stage.REASONING)
        first_b = min(i for i, s in enumerate(stages) if s == Stage.SYNTHESIS)
        assert last_a < first_b

    @pytest.mark.asyncio
    async def test_streaming_mode_uses_streaming_exchanges(self, make_orchestrator, make_request):
        orchestrator, stage_a, stage_b = make_orchestrator()

        await _drain(orchestrator, _streaming(make_request))

        assert stage_a.calls[0][1] == AdapterMode.STREAMING
        assert stage_b.calls[0][1] == AdapterMode.STREAMING

    @pytest.mark.asyncio
    async def test_done_event_carries_cost_breakdown(self, make_orchestrator, make_request):
        orchestrator, _, _ = make_orchestrator()

        events = await _drain(orchestrator, _streaming(make_request))

        usage_events = [e for e in events if e.type == OutgoingEventType.USAGE]
        assert [e.stage_cost for e in usage_events] == [Decimal("25"), Decimal("180")]
        assert events[-1].cost.total_cost == sum(e.stage_cost for e in usage_events)

    @pytest.mark.asyncio
    async def test_blocking_and_streaming_agree(self, make_orchestrator, make_request):
        stage_a_events = [
            StageEvent.content_delta("<thi"),
            StageEvent.content_delta("nk>step one"),
            StageEvent.content_delta("</think>final"),
            StageEvent.usage_report(UsageMetrics("deepseek", input_units=1, output_units=1)),
            StageEvent.done(),
        ]
        orchestrator, _, _ = make_orchestrator(reasoning_events=stage_a_events)

        blocking = await orchestrator.complete(make_request())

        collector = ResponseCollector()
        for event in await _drain(orchestrator, _streaming(make_request)):
            collector.add(event)
        streamed = collector.result()

        assert blocking.thinking_block.reasoning == "step one"
        assert blocking.stage_a_content == "final"
        assert streamed.content_segments == blocking.content_segments
        assert streamed.to_dict() == blocking.to_dict()


# ============================================================
# Cancellation
# ============================================================


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancel_mid_stage_b(self, make_orchestrator, make_request, stage_b_script):
        orchestrator, _, stage_b = make_orchestrator(
            synthesis_events=stage_b_script("Answer", " more"), synthesis_hang_after=1
        )
        token = CancellationToken()
        events = []

        async with aclosing(orchestrator.stream(_streaming(make_request), token)) as stream:
            async for event in stream:
                events.append(event)
                if event.stage == Stage.SYNTHESIS and event.type == OutgoingEventType.CONTENT_DELTA:
                    token.cancel("user_abort")

        terminal = events[-1]
        assert terminal.type == OutgoingEventType.ERROR
        assert terminal.error.kind == ErrorKind.CANCELLED
        assert terminal.stage == Stage.SYNTHESIS
        # Already delivered stage-A events stay in the sequence
        assert OutgoingEventType.THINKING_COMPLETE in [e.type for e in events]
        assert stage_b.aborted

    @pytest.mark.asyncio
    async def test_cancel_during_stage_a_prevents_stage_b(self, make_orchestrator, make_request):
        orchestrator, stage_a, stage_b = make_orchestrator(reasoning_hang_after=1)
        token = CancellationToken()

        async def cancel_when_stalled():
            await stage_a.hanging.wait()
            token.cancel("user_abort")

        canceller = asyncio.create_task(cancel_when_stalled())
        with pytest.raises(RunCancelledError) as exc_info:
            await orchestrator.complete(make_request(), cancel_token=token)
        await canceller

        assert exc_info.value.kind == ErrorKind.CANCELLED
        assert stage_a.aborted
        assert stage_b.calls == []

    @pytest.mark.asyncio
    async def test_pre_cancelled_token_makes_no_calls(self, make_orchestrator, make_request):
        orchestrator, stage_a, stage_b = make_orchestrator()
        token = CancellationToken()
        token.cancel("before_start")

        with pytest.raises(RunCancelledError):
            await orchestrator.complete(make_request(), cancel_token=token)

        assert stage_a.calls == []
        assert stage_b.calls == []

    @pytest.mark.asyncio
    async def test_closing_the_stream_cancels_the_run(self, make_orchestrator, make_request):
        orchestrator, _, stage_b = make_orchestrator(synthesis_hang_after=0)
        run = orchestrator.create_run(_streaming(make_request))

        async with aclosing(run.events()) as events:
            async for event in events:
                if event.type == OutgoingEventType.THINKING_COMPLETE:
                    break

        assert run.state == RunState.CANCELLED
        assert run.token.reason == "consumer_closed"

    @pytest.mark.asyncio
    async def test_slow_consumer_overflow_cancels_the_run(self, make_orchestrator, make_request):
        chunks = [f"r{i}" for i in range(10)]
        orchestrator, _, stage_b = make_orchestrator(
            reasoning_events=[StageEvent.reasoning_delta(c) for c in chunks] + [StageEvent.done()],
            buffer_size=2,
            backpressure_timeout=0.05,
        )
        run = orchestrator.create_run(_streaming(make_request))

        async with aclosing(run.events()) as events:
            first = await anext(events)
            await asyncio.sleep(0.3)
            rest = [event async for event in events]

        assert first.type == OutgoingEventType.REASONING_DELTA
        assert rest[-1].type == OutgoingEventType.ERROR
        assert rest[-1].error.kind == ErrorKind.CANCELLED
        assert run.token.reason == "backpressure"
        assert len(rest) <= 3
        assert stage_b.calls == []

    @pytest.mark.asyncio
    async def test_waiting_on_the_caller_does_not_use_up_the_stage_timeout(
        self, make_orchestrator, make_request, stage_b_script
    ):
        orchestrator, _, _ = make_orchestrator(
            synthesis_events=stage_b_script("A", "B", "C"),
            synthesis_timeout=0.2,
            buffer_size=1,
            backpressure_timeout=2.0,
        )
        events = []

        async with aclosing(orchestrator.stream(_streaming(make_request))) as stream:
            async for event in stream:
                events.append(event)
                if event.stage == Stage.SYNTHESIS and event.content == "A":
                    await asyncio.sleep(0.5)

        assert events[-1].type == OutgoingEventType.DONE
        content = [e.content for e in events if e.type == OutgoingEventType.CONTENT_DELTA]
        assert content == ["A", "B", "C"]


# ============================================================
# Run state machine
# ============================================================


class TestRunState:

    def test_terminal_states_have_no_exits(self):
        for state in (RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED):
            assert TRANSITIONS[state] == frozenset()

    def test_stage_b_only_follows_stage_a(self):
        assert RunState.RUNNING_STAGE_B in TRANSITIONS[RunState.STAGE_A_DONE]
        assert RunState.RUNNING_STAGE_B not in TRANSITIONS[RunState.RUNNING_STAGE_A]
        assert RunState.RUNNING_STAGE_B not in TRANSITIONS[RunState.FAILED]

    def test_invalid_transition_raises(self, make_orchestrator, make_request):
        orchestrator, _, _ = make_orchestrator()
        run = orchestrator.create_run(make_request())

        with pytest.raises(InvalidStateTransitionError):
            run._transition(RunState.COMPLETED)

    @pytest.mark.asyncio
    async def test_successful_run_ends_completed(self, make_orchestrator, make_request):
        orchestrator, _, _ = make_orchestrator()
        run = orchestrator.create_run(_streaming(make_request))

        async with aclosing(run.events()) as events:
            async for _ in events:
                pass

        assert run.state == RunState.COMPLETED
        assert run.thinking_block.reasoning == "Let me think"

    @pytest.mark.asyncio
    async def test_run_is_consumed_once(self, make_orchestrator, make_request):
        orchestrator, _, _ = make_orchestrator()
        run = orchestrator.create_run(_streaming(make_request))

        async with aclosing(run.events()) as events:
            async for _ in events:
                pass

        with pytest.raises(RuntimeError):
            async with aclosing(run.events()) as events:
                await anext(events)


# ============================================================
# Orchestrator lifecycle
# ============================================================


class TestOrchestratorLifecycle:

    @pytest.mark.asyncio
    async def test_close_closes_both_adapters(self):
        reasoning = MagicMock(model="deepseek-reasoner", close=AsyncMock())
        synthesis = MagicMock(model="claude-sonnet-4", close=AsyncMock())

        async with DualStageOrchestrator(reasoning, synthesis):
            pass

        reasoning.close.assert_awaited_once()
        synthesis.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shared_adapter_closed_once(self):
        adapter = MagicMock(model="gpt-4o", close=AsyncMock())

        await DualStageOrchestrator(adapter, adapter).close()

        adapter.close.assert_awaited_once()

    def test_default_config(self):
        orchestrator = DualStageOrchestrator(MagicMock(), MagicMock())

        assert orchestrator.config == OrchestratorConfig()

    @pytest.mark.asyncio
    async def test_run_dispatches_on_delivery_mode(self, make_orchestrator, make_request):
        orchestrator, _, _ = make_orchestrator()

        result = await orchestrator.run(make_request())
        stream = await orchestrator.run(_streaming(make_request))
        async with aclosing(stream) as events:
            streamed = [event async for event in events]

        assert result.text == "Answer"
        assert streamed[-1].type == OutgoingEventType.DONE
