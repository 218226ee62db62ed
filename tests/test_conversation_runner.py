"""Tests for the conversation runner state machine."""

from __future__ import annotations

import pytest

from diffscout.ai.orchestration.cancellation import CancellationToken
from diffscout.ai.orchestration.conversation import MessageStore
from diffscout.ai.orchestration.errors import CancellationError, ModelRequestError
from diffscout.ai.orchestration.runner import (
    EMPTY_COMPLETION_NOTICE,
    FINAL_ANSWER_DIRECTIVE,
    MAX_ITERATIONS_NOTICE,
    ConversationRunner,
    RunnerConfig,
    RunState,
)
from diffscout.ai.orchestration.services.budget import CONTEXT_FULL_NOTICE, ContextBudgetManager
from diffscout.ai.orchestration.tools import (
    DispatcherConfig,
    ExecutionContext,
    ToolDispatcher,
    ToolRegistry,
    ToolResult,
    ToolSpec,
)
from diffscout.ai.orchestration.types import Message, ProgressEvent, ToolCallRecord, ToolCallRef
from diffscout.ai.tools import SubmitReviewTool

from tests.helpers import EchoTool, FakeModel, ScriptedModelClient, SleepTool, text_reply, tool_reply

REVIEW = "## Review\n\nEverything checks out, ship it."


def make_runner(client, registry, *, budget=None, max_tool_calls=50):
    dispatcher = ToolDispatcher(registry, DispatcherConfig(max_tool_calls=max_tool_calls))
    return ConversationRunner(client, dispatcher, budget)


def seeded_store(text: str = "Please review this change.") -> MessageStore:
    store = MessageStore()
    store.add_user(text)
    return store


class TestSingleTurn:
    """Plain replies complete the run."""

    @pytest.mark.asyncio
    async def test_plain_reply_completes_with_two_messages(self, registry, context):
        client = ScriptedModelClient([text_reply("All good.")])
        store = seeded_store()

        outcome = await make_runner(client, registry).run(RunnerConfig(system_prompt="sys"), store, context)

        assert outcome.state is RunState.COMPLETED
        assert outcome.completed
        assert outcome.text == "All good."
        assert outcome.iterations == 1
        assert [m.role for m in store.history()] == ["user", "assistant"]

    @pytest.mark.asyncio
    async def test_empty_reply_uses_notice(self, registry, context):
        client = ScriptedModelClient([text_reply(None)])

        outcome = await make_runner(client, registry).run(RunnerConfig(system_prompt="sys"), seeded_store(), context)

        assert outcome.text == EMPTY_COMPLETION_NOTICE

    @pytest.mark.asyncio
    async def test_request_carries_prompt_history_and_tools(self, registry, context):
        client = ScriptedModelClient([text_reply("ok")])

        await make_runner(client, registry).run(RunnerConfig(system_prompt="be thorough"), seeded_store("diff"), context)

        (request,) = client.requests
        assert request.system_prompt == "be thorough"
        assert [m.content for m in request.messages] == ["diff"]
        assert [tool["function"]["name"] for tool in request.tools] == ["echo"]
        assert client.tokens == [context.cancellation]

    @pytest.mark.asyncio
    async def test_empty_tool_tuple_disables_tools(self, registry, context):
        client = ScriptedModelClient([text_reply("ok")])

        await make_runner(client, registry).run(RunnerConfig(system_prompt="s", tools=()), seeded_store(), context)

        assert client.requests[0].tools == ()


class TestToolCalling:
    """Tool calls are dispatched and fed back."""

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, registry, context, echo_tool):
        client = ScriptedModelClient([
            tool_reply(("echo", {"text": "found it"}, "c1"), content="Let me check."),
            text_reply("Final answer"),
        ])
        store = seeded_store()

        outcome = await make_runner(client, registry).run(RunnerConfig(system_prompt="s"), store, context)

        assert outcome.text == "Final answer"
        assert outcome.iterations == 2
        history = store.history()
        assert [m.role for m in history] == ["user", "assistant", "tool", "assistant"]
        assert history[1].content == "Let me check."
        assert history[2].tool_call_id == "c1"
        assert history[2].content == "found it"
        (record,) = outcome.tool_records
        assert record.name == "echo"
        assert record.arguments == {"text": "found it"}
        assert record.success and record.result == "found it"

    @pytest.mark.asyncio
    async def test_missing_call_ids_are_filled_on_both_sides(self, registry, context, echo_tool):
        client = ScriptedModelClient([
            tool_reply(("echo", {"text": "a"}, ""), ("echo", {"text": "b"}, "")),
            text_reply("done"),
        ])
        store = seeded_store()

        outcome = await make_runner(client, registry).run(RunnerConfig(system_prompt="s"), store, context)

        history = store.history()
        issued = [call.id for call in history[1].tool_calls]
        assert issued == ["tool_call_1_0", "tool_call_1_1"]
        assert [m.tool_call_id for m in history[2:4]] == issued
        assert [record.call_id for record in outcome.tool_records] == issued

    @pytest.mark.asyncio
    async def test_malformed_arguments_become_validation_error(self, registry, context, echo_tool):
        client = ScriptedModelClient([tool_reply(("echo", "{not json", "c1")), text_reply("done")])
        store = seeded_store()

        outcome = await make_runner(client, registry).run(RunnerConfig(system_prompt="s"), store, context)

        tool_message = store.history()[2]
        assert tool_message.content.startswith("Error: Invalid arguments:")
        assert "text: required property is missing" in tool_message.content
        assert echo_tool.calls == []
        assert outcome.tool_records[0].arguments == {}
        assert outcome.tool_records[0].success is False

    @pytest.mark.asyncio
    async def test_non_object_arguments_treated_as_empty(self, registry, context):
        client = ScriptedModelClient([tool_reply(("echo", "[1, 2]", "c1")), text_reply("done")])

        outcome = await make_runner(client, registry).run(RunnerConfig(system_prompt="s"), seeded_store(), context)

        assert outcome.tool_records[0].arguments == {}

    @pytest.mark.asyncio
    async def test_parallel_results_follow_call_order(self, context):
        registry = ToolRegistry([SleepTool("slow", delay=0.1), SleepTool("fast", delay=0.0)])
        client = ScriptedModelClient([
            tool_reply(("slow", {}, "c1"), ("fast", {}, "c2")),
            text_reply("done"),
        ])
        store = seeded_store()

        await make_runner(client, registry).run(RunnerConfig(system_prompt="s"), store, context)

        assert [m.tool_call_id for m in store.by_role("tool")] == ["c1", "c2"]

    @pytest.mark.asyncio
    async def test_tool_failures_stay_in_conversation(self, registry, context):
        client = ScriptedModelClient([tool_reply(("nope", {}, "c1")), text_reply("recovered")])
        store = seeded_store()

        outcome = await make_runner(client, registry).run(RunnerConfig(system_prompt="s"), store, context)

        assert outcome.completed
        assert store.by_role("tool")[0].content == "Error: Tool 'nope' not found in registry"

    @pytest.mark.asyncio
    async def test_nested_records_are_attached(self, context):
        nested = ToolCallRecord(call_id="n1", name="search", arguments={}, result="x", success=True)
        registry = ToolRegistry()
        registry.register_function(
            ToolSpec(name="delegate", description="d", parameters={"type": "object", "properties": {}}),
            lambda args, ctx: ToolResult.ok("summary", nested_tool_calls=(nested,)),
        )
        client = ScriptedModelClient([tool_reply(("delegate", {}, "c1")), text_reply("done")])

        outcome = await make_runner(client, registry).run(RunnerConfig(system_prompt="s"), seeded_store(), context)

        assert outcome.tool_records[0].nested_calls == (nested,)


class TestTermination:
    """Iteration ceiling and completion tool."""

    @pytest.mark.asyncio
    async def test_stops_at_max_iterations(self, registry, context):
        client = ScriptedModelClient(fallback=tool_reply(("echo", {"text": "again"}, "c")))

        outcome = await make_runner(client, registry).run(
            RunnerConfig(system_prompt="s", max_iterations=3), seeded_store(), context
        )

        assert outcome.state is RunState.MAX_ITERATIONS_REACHED
        assert not outcome.completed
        assert outcome.text == MAX_ITERATIONS_NOTICE
        assert "maximum iterations" in outcome.text
        assert outcome.iterations == 3
        assert client.call_count == 3
        assert len(outcome.tool_records) == 3

    @pytest.mark.asyncio
    async def test_completion_tool_ends_run(self, context):
        registry = ToolRegistry([EchoTool(), SubmitReviewTool()])
        client = ScriptedModelClient([
            tool_reply(("echo", {"text": "x"}, "c1")),
            tool_reply(("submit_review", {"review_content": REVIEW}, "c2")),
            text_reply("should never be requested"),
        ])
        config = RunnerConfig(system_prompt="s", requires_explicit_completion=True)

        outcome = await make_runner(client, registry).run(config, seeded_store(), context)

        assert outcome.state is RunState.COMPLETED
        assert outcome.text == REVIEW
        assert client.call_count == 2

    @pytest.mark.asyncio
    async def test_plain_reply_is_nudged_when_completion_required(self, context):
        registry = ToolRegistry([SubmitReviewTool()])
        client = ScriptedModelClient([
            text_reply("I will now review the code."),
            tool_reply(("submit_review", {"review_content": REVIEW}, "c1")),
        ])
        store = seeded_store()
        config = RunnerConfig(system_prompt="s", requires_explicit_completion=True)

        outcome = await make_runner(client, registry).run(config, store, context)

        assert outcome.text == REVIEW
        nudges = [m.content for m in store.by_role("user")][1:]
        assert len(nudges) == 1
        assert "submit_review" in nudges[0]

    @pytest.mark.asyncio
    async def test_plain_reply_accepted_after_nudges_run_out(self, context):
        registry = ToolRegistry([SubmitReviewTool()])
        client = ScriptedModelClient([text_reply("one"), text_reply("two"), text_reply("three")])
        config = RunnerConfig(system_prompt="s", requires_explicit_completion=True, max_completion_nudges=2)

        outcome = await make_runner(client, registry).run(config, seeded_store(), context)

        assert outcome.state is RunState.COMPLETED
        assert outcome.text == "three"
        assert client.call_count == 3

    @pytest.mark.asyncio
    async def test_invalid_completion_call_does_not_complete(self, context):
        registry = ToolRegistry([SubmitReviewTool()])
        client = ScriptedModelClient([
            tool_reply(("submit_review", {"review_content": "short"}, "c1")),
            tool_reply(("submit_review", {"review_content": REVIEW}, "c2")),
        ])
        config = RunnerConfig(system_prompt="s", requires_explicit_completion=True)

        outcome = await make_runner(client, registry).run(config, seeded_store(), context)

        assert outcome.text == REVIEW
        assert [r.success for r in outcome.tool_records] == [False, True]


class TestModelErrors:
    """Model failures are noted and retried while iterations remain."""

    @pytest.mark.asyncio
    async def test_error_is_noted_and_retried(self, registry, context):
        client = ScriptedModelClient([RuntimeError("upstream 502"), text_reply("recovered")])
        store = seeded_store()

        outcome = await make_runner(client, registry).run(
            RunnerConfig(system_prompt="s", label="Test"), store, context
        )

        assert outcome.state is RunState.COMPLETED
        assert outcome.text == "recovered"
        note = store.history()[1]
        assert note.role == "assistant"
        assert note.content == (
            "I encountered an error: [Test] Error in iteration 1: upstream 502. Let me try to continue."
        )

    @pytest.mark.asyncio
    async def test_error_on_last_iteration_terminates(self, registry, context):
        client = ScriptedModelClient(fallback=RuntimeError("down"))

        outcome = await make_runner(client, registry).run(
            RunnerConfig(system_prompt="s", max_iterations=2, label="Test"), seeded_store(), context
        )

        assert outcome.state is RunState.ERRORED
        assert outcome.error == "[Test] Error in iteration 2: down"
        assert "down" in outcome.text
        assert client.call_count == 2

    @pytest.mark.asyncio
    async def test_fatal_error_stops_immediately(self, registry, context):
        client = ScriptedModelClient(
            fallback=ModelRequestError('The selected model "foo" is not supported.', fatal=True)
        )
        store = seeded_store()

        outcome = await make_runner(client, registry).run(
            RunnerConfig(system_prompt="s", max_iterations=100, label="Test"), store, context
        )

        assert client.call_count == 1
        assert outcome.state is RunState.ERRORED
        assert outcome.iterations == 1
        assert outcome.error == '[Test] Error in iteration 1: The selected model "foo" is not supported.'
        history = store.history()
        assert len(history) == 2
        assert history[1].content == f"I encountered an error: {outcome.error}."

    @pytest.mark.asyncio
    async def test_non_fatal_model_error_is_retried(self, registry, context):
        client = ScriptedModelClient([ModelRequestError("Model returned no choices"), text_reply("ok")])

        outcome = await make_runner(client, registry).run(RunnerConfig(system_prompt="s"), seeded_store(), context)

        assert outcome.state is RunState.COMPLETED
        assert client.call_count == 2


class TestCancellation:
    """Cancellation propagates instead of becoming an error outcome."""

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, registry):
        token = CancellationToken()
        token.cancel()
        client = ScriptedModelClient([text_reply("never")])

        with pytest.raises(CancellationError):
            await make_runner(client, registry).run(
                RunnerConfig(system_prompt="s"), seeded_store(), ExecutionContext(cancellation=token)
            )
        assert client.call_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_by_tool_mid_run(self):
        token = CancellationToken()
        registry = ToolRegistry()

        def cancel_everything(args, ctx):
            ctx.cancellation.cancel("user stop")
            return "cancelled"

        registry.register_function(
            ToolSpec(name="stop", description="s", parameters={"type": "object", "properties": {}}),
            cancel_everything,
        )
        client = ScriptedModelClient([tool_reply(("stop", {}, "c1")), text_reply("never")])

        with pytest.raises(CancellationError):
            await make_runner(client, registry).run(
                RunnerConfig(system_prompt="s"), seeded_store(), ExecutionContext(cancellation=token)
            )
        assert client.call_count == 1

    @pytest.mark.asyncio
    async def test_cancellation_from_model_client_is_not_an_error(self, registry, context):
        client = ScriptedModelClient([CancellationError("aborted")])

        with pytest.raises(CancellationError):
            await make_runner(client, registry).run(RunnerConfig(system_prompt="s"), seeded_store(), context)


class TestBudgetIntegration:
    """The budget is consulted before every request."""

    @pytest.mark.asyncio
    async def test_full_context_requests_final_answer(self, registry, context):
        budget = ContextBudgetManager(FakeModel(max_input_tokens=20))
        client = ScriptedModelClient([text_reply("final")])

        outcome = await make_runner(client, registry, budget=budget).run(
            RunnerConfig(system_prompt="sys"), seeded_store(" ".join(["w"] * 30)), context
        )

        assert outcome.text == "final"
        assert client.requests[0].messages[-1].content == FINAL_ANSWER_DIRECTIVE

    @pytest.mark.asyncio
    async def test_old_context_is_evicted(self, registry, context):
        budget = ContextBudgetManager(FakeModel(max_input_tokens=100))
        store = MessageStore([
            Message.user("review"),
            Message.assistant(None, [ToolCallRef(id="c1", name="echo", arguments_json="{}")]),
            Message.tool("c1", " ".join(["w"] * 70)),
        ])
        client = ScriptedModelClient([text_reply("final")])

        await make_runner(client, registry, budget=budget).run(RunnerConfig(system_prompt=""), store, context)

        sent = client.requests[0].messages
        assert [m.content for m in sent] == ["review", CONTEXT_FULL_NOTICE]
        assert [m.role for m in store.history()] == ["user", "user", "assistant"]

    @pytest.mark.asyncio
    async def test_context_status_appended_to_tool_results(self, registry, context):
        budget = ContextBudgetManager(FakeModel(max_input_tokens=100))
        client = ScriptedModelClient([tool_reply(("echo", {"text": "hi"}, "c1")), text_reply("done")])
        store = seeded_store(" ".join(["w"] * 50))

        outcome = await make_runner(client, registry, budget=budget).run(
            RunnerConfig(system_prompt="", append_context_status=True), store, context
        )

        tool_message = store.by_role("tool")[0]
        assert tool_message.content.startswith("hi\n\n[Context: ")
        assert "% used" in tool_message.content
        assert outcome.tool_records[0].result == "hi"


class TestProgress:
    """Progress callbacks fire at iteration and tool boundaries."""

    @pytest.mark.asyncio
    async def test_events_emitted(self, registry, context):
        events: list[ProgressEvent] = []
        client = ScriptedModelClient([tool_reply(("echo", {"text": "x"}, "c1")), text_reply("done")])

        await make_runner(client, registry).run(
            RunnerConfig(system_prompt="s", label="Main"), seeded_store(), context, events.append
        )

        assert [event.kind for event in events] == ["iteration", "tool_call", "iteration"]
        tool_event = events[1]
        assert tool_event.tool_name == "echo"
        assert tool_event.success is True
        assert tool_event.label == "Main"
        assert tool_event.duration_ms is not None

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self, registry, context):
        seen: list[str] = []

        async def callback(event):
            seen.append(event.kind)

        await make_runner(ScriptedModelClient([text_reply("ok")]), registry).run(
            RunnerConfig(system_prompt="s"), seeded_store(), context, callback
        )

        assert seen == ["iteration"]

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_break_run(self, registry, context):
        def callback(event):
            raise RuntimeError("ui gone")

        outcome = await make_runner(ScriptedModelClient([text_reply("ok")]), registry).run(
            RunnerConfig(system_prompt="s"), seeded_store(), context, callback
        )

        assert outcome.text == "ok"
