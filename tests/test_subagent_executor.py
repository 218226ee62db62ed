"""Tests for isolated subagent runs."""

from __future__ import annotations

import pytest

from diffscout.ai.orchestration.cancellation import CancellationToken
from diffscout.ai.orchestration.errors import CancellationError
from diffscout.ai.orchestration.session import SessionRegistry
from diffscout.ai.orchestration.subagent_executor import (
    DISALLOWED_SUBAGENT_TOOLS,
    SubagentConfig,
    SubagentExecutor,
    SubagentTask,
)
from diffscout.ai.orchestration.tools import DispatcherConfig, ToolRegistry
from diffscout.ai.tools import core_tools

from tests.helpers import EchoTool, ScriptedModelClient, text_reply, tool_reply

TASK = "Trace every caller of parse_header in src/codec and report argument types."


def full_registry() -> ToolRegistry:
    return ToolRegistry([*core_tools(), EchoTool()])


class TestSubagentExecutor:
    """Subagents run on their own state and report back."""

    @pytest.mark.asyncio
    async def test_reports_response_and_records(self, token):
        client = ScriptedModelClient([
            tool_reply(("echo", {"text": "caller in reader.py"}, "s1")),
            text_reply("parse_header is called from reader.py with bytes."),
        ])
        executor = SubagentExecutor(client, full_registry())

        result = await executor.execute(SubagentTask(task=TASK), token, 1)

        assert result.success
        assert result.response == "parse_header is called from reader.py with bytes."
        assert result.tool_calls_made == 1
        assert [record.name for record in result.tool_calls] == ["echo"]
        assert result.error is None

    @pytest.mark.asyncio
    async def test_recursive_and_completion_tools_hidden(self, token):
        client = ScriptedModelClient([text_reply("nothing found")])
        executor = SubagentExecutor(client, full_registry())

        await executor.execute(SubagentTask(task=TASK), token, 1)

        offered = [tool["function"]["name"] for tool in client.requests[0].tools]
        assert offered == ["echo"]
        assert set(DISALLOWED_SUBAGENT_TOOLS) == {"run_subagent", "submit_review", "update_plan"}

    @pytest.mark.asyncio
    async def test_hidden_tool_call_is_rejected(self, token):
        client = ScriptedModelClient([
            tool_reply(("run_subagent", {"task": TASK}, "s1")),
            text_reply("gave up"),
        ])
        executor = SubagentExecutor(client, full_registry())

        result = await executor.execute(SubagentTask(task=TASK), token, 1)

        (record,) = result.tool_calls
        assert record.success is False
        assert "not found" in record.error

    @pytest.mark.asyncio
    async def test_seed_message_and_prompt(self, token):
        client = ScriptedModelClient([text_reply("ok")])
        executor = SubagentExecutor(client, full_registry())

        await executor.execute(SubagentTask(task=TASK, context="header.py was changed"), token, 4)

        request = client.requests[0]
        seed = request.messages[0].content
        assert seed.startswith(f"Please investigate: {TASK}")
        assert "Context from the main analysis:\nheader.py was changed" in seed
        assert TASK in request.system_prompt

    @pytest.mark.asyncio
    async def test_fresh_store_per_run(self, token):
        client = ScriptedModelClient([text_reply("first"), text_reply("second")])
        executor = SubagentExecutor(client, full_registry())

        await executor.execute(SubagentTask(task=TASK), token, 1)
        await executor.execute(SubagentTask(task="Another focused investigation of the cache layer."), token, 2)

        assert len(client.requests[1].messages) == 1

    @pytest.mark.asyncio
    async def test_own_call_counter(self, token):
        client = ScriptedModelClient([
            tool_reply(("echo", {"text": "a"}, "s1"), ("echo", {"text": "b"}, "s2")),
            text_reply("done"),
        ])
        config = SubagentConfig(dispatcher=DispatcherConfig(max_tool_calls=1))
        executor = SubagentExecutor(client, full_registry(), config=config)

        result = await executor.execute(SubagentTask(task=TASK), token, 1)

        assert [record.success for record in result.tool_calls] == [True, False]
        assert "maximum 1" in result.tool_calls[1].error

    @pytest.mark.asyncio
    async def test_task_iteration_override(self, token):
        client = ScriptedModelClient(fallback=tool_reply(("echo", {"text": "x"}, "s")))
        executor = SubagentExecutor(client, full_registry(), config=SubagentConfig(max_iterations=10))

        result = await executor.execute(SubagentTask(task=TASK, max_iterations=2), token, 1)

        assert client.call_count == 2
        assert "maximum iterations" in result.response

    @pytest.mark.asyncio
    async def test_session_key_discarded(self, token):
        sessions = SessionRegistry()
        executor = SubagentExecutor(ScriptedModelClient([text_reply("ok")]), full_registry(), sessions=sessions)

        await executor.execute(SubagentTask(task=TASK), token, 1)

        assert sessions.keys() == []

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        token = CancellationToken()
        token.cancel("stop")
        sessions = SessionRegistry()
        executor = SubagentExecutor(ScriptedModelClient([text_reply("never")]), full_registry(), sessions=sessions)

        with pytest.raises(CancellationError):
            await executor.execute(SubagentTask(task=TASK), token, 1)
        assert sessions.keys() == []
