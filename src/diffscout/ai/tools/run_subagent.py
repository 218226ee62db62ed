"""Spawn a focused, isolated investigation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from ..orchestration.errors import CancellationError
from ..orchestration.subagent_executor import SubagentResult, SubagentTask
from ..orchestration.tools.types import ExecutionContext, ToolResult
from .base import BaseTool

LOGGER = logging.getLogger(__name__)

MIN_TASK_LENGTH = 30
DEFAULT_TIMEOUT_SECONDS = 120.0


class RunSubagentTool(BaseTool):
    """Delegates a task to :class:`SubagentExecutor` under a per-analysis quota."""

    name = "run_subagent"
    description = (
        "Spawn a focused investigation agent for complex analysis. Give it ONE module per "
        "subagent and concrete questions about the CURRENT code. Use it when a change touches "
        "4+ files, security-sensitive code or long dependency chains."
    )
    parameters = {
        "type": "object",
        "properties": {
            "task": {
                "type": "string",
                "minLength": MIN_TASK_LENGTH,
                "description": (
                    "Detailed investigation task: WHAT to investigate, WHERE to look "
                    "and WHAT to return."
                ),
            },
            "context": {
                "type": "string",
                "description": "Relevant findings from your analysis: snippets, file paths or symbol names.",
            },
        },
        "required": ["task"],
    }

    # The subagent budget below replaces the dispatcher's per-tool timeout.
    timeout_seconds: float | None = None

    def __init__(self, *, subagent_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._subagent_timeout = float(subagent_timeout_seconds)

    async def execute(self, arguments: Mapping[str, Any], context: ExecutionContext) -> ToolResult:
        task = str(arguments.get("task", ""))
        if len(task.strip()) < MIN_TASK_LENGTH:
            return ToolResult.fail(
                f"Task too brief ({MIN_TASK_LENGTH}+ chars needed). "
                "Include: WHAT to investigate, WHERE to look, WHAT to return."
            )
        executor = context.subagent_executor
        tracker = context.subagent_tracker
        if executor is None or tracker is None:
            return ToolResult.fail("Subagents are not available in this session.")

        if not tracker.can_spawn():
            LOGGER.warning("Subagent spawn rejected: session limit reached (%d)", tracker.max_per_session)
            return ToolResult.fail(
                f"Maximum subagents ({tracker.max_per_session}) reached for this session. "
                "Use direct tools for remaining investigations."
            )

        subagent_id = tracker.record_spawn()
        LOGGER.info(
            "Subagent #%d spawned (%d/%d, %d remaining)",
            subagent_id,
            tracker.count,
            tracker.max_per_session,
            tracker.remaining,
        )

        parent = context.cancellation
        child = parent.child()
        request = SubagentTask(task=task, context=_optional_text(arguments.get("context")))
        try:
            result = await asyncio.wait_for(
                executor.execute(request, child, subagent_id),
                timeout=self._subagent_timeout,
            )
        except TimeoutError:
            child.cancel("subagent timeout")
            parent.raise_if_cancelled()
            LOGGER.warning("Subagent #%d timed out after %gs", subagent_id, self._subagent_timeout)
            return ToolResult.fail(
                f"Subagent timed out after {self._subagent_timeout:g}s. "
                "Break into smaller, more focused tasks."
            )
        except CancellationError:
            if parent.cancelled:
                raise
            return ToolResult.fail("Subagent was cancelled")
        finally:
            parent.detach(child)

        if not result.success:
            return ToolResult.fail(f"Subagent failed: {result.error}")
        return ToolResult.ok(_format_result(result, subagent_id), nested_tool_calls=result.tool_calls)


def _format_result(result: SubagentResult, subagent_id: int) -> str:
    return (
        f"## Subagent #{subagent_id} Investigation Complete\n\n"
        f"**Tool calls made:** {result.tool_calls_made}\n\n"
        f"---\n\n{result.response}"
    )


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
