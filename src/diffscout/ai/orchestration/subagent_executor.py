"""Isolated nested investigations ("subagents").

A subagent is a full :class:`ConversationRunner` run with its own message
store, dispatcher (and therefore call counter) and session key. It shares
only the parent's cancellation (through a child token) and the read-only
tool registry, minus the tools that would let it recurse or finish the
parent's review.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from ...utils.logging import session_context
from ..prompts import DefaultPromptBuilder, PromptBuilder
from .cancellation import CancellationToken
from .conversation import MessageStore
from .errors import CancellationError
from .runner import ConversationRunner, ModelClient, RunnerConfig
from .services.budget import ContextBudgetManager
from .session import SessionRegistry
from .tools.executor import DispatcherConfig, ToolDispatcher
from .tools.registry import ToolRegistry
from .tools.types import ExecutionContext
from .types import ToolCallRecord

__all__ = [
    "DISALLOWED_SUBAGENT_TOOLS",
    "SubagentConfig",
    "SubagentExecutor",
    "SubagentResult",
    "SubagentTask",
]

LOGGER = logging.getLogger(__name__)

DISALLOWED_SUBAGENT_TOOLS: tuple[str, ...] = ("run_subagent", "submit_review", "update_plan")


@dataclass(slots=True, frozen=True)
class SubagentTask:
    """What a subagent should investigate."""

    task: str
    context: str | None = None
    max_iterations: int | None = None


@dataclass(slots=True, frozen=True)
class SubagentResult:
    """Outcome of a subagent investigation."""

    success: bool
    response: str
    tool_calls_made: int = 0
    tool_calls: tuple[ToolCallRecord, ...] = ()
    error: str | None = None


@dataclass(slots=True, frozen=True)
class SubagentConfig:
    """Limits applied to every subagent run."""

    max_iterations: int = 100
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    disallowed_tools: tuple[str, ...] = DISALLOWED_SUBAGENT_TOOLS


class SubagentExecutor:
    """Runs subagent investigations on fresh per-run state."""

    def __init__(
        self,
        client: ModelClient,
        registry: ToolRegistry,
        *,
        config: SubagentConfig | None = None,
        budget: ContextBudgetManager | None = None,
        prompt_builder: PromptBuilder | None = None,
        sessions: SessionRegistry | None = None,
    ) -> None:
        self._client = client
        self._registry = registry
        self._config = config or SubagentConfig()
        self._budget = budget
        self._prompts = prompt_builder or DefaultPromptBuilder()
        self._sessions = sessions or SessionRegistry()

    async def execute(
        self,
        task: SubagentTask,
        cancellation: CancellationToken,
        subagent_id: int,
    ) -> SubagentResult:
        """Run one investigation.

        Raises:
            CancellationError: If *cancellation* fires; never converted to a result.
        """
        label = f"Subagent #{subagent_id}"
        LOGGER.info("[%s] Starting: %s", label, _short_label(task.task))
        start_time = time.perf_counter()

        registry = self._registry.filtered(exclude=self._config.disallowed_tools)
        dispatcher = ToolDispatcher(registry, self._config.dispatcher)
        runner = ConversationRunner(self._client, dispatcher, self._budget)
        store = MessageStore()
        session_key = self._sessions.new_key("subagent")

        max_iterations = task.max_iterations or self._config.max_iterations
        tools = tuple(registry.specs())
        config = RunnerConfig(
            system_prompt=self._prompts.subagent_system_prompt(task.task, tools, max_iterations),
            max_iterations=max_iterations,
            tools=tools,
            label=label,
        )
        store.add_user(_seed_message(task))
        context = ExecutionContext(cancellation=cancellation, plan=self._sessions.handle(session_key))

        try:
            with session_context(session_key):
                outcome = await runner.run(config, store, context)
        except CancellationError:
            LOGGER.info("[%s] Cancelled after %d tool call(s)", label, dispatcher.call_count())
            raise
        except Exception as exc:
            LOGGER.error("[%s] Failed: %s", label, exc, exc_info=True)
            return SubagentResult(
                success=False,
                response="",
                tool_calls_made=dispatcher.call_count(),
                error=str(exc) or exc.__class__.__name__,
            )
        finally:
            self._sessions.discard(session_key)

        duration_ms = (time.perf_counter() - start_time) * 1000
        LOGGER.info(
            "[%s] Completed in %.0fms with %d tool call(s) (%s)",
            label,
            duration_ms,
            len(outcome.tool_records),
            outcome.state.value,
        )
        return SubagentResult(
            success=True,
            response=outcome.text,
            tool_calls_made=len(outcome.tool_records),
            tool_calls=outcome.tool_records,
        )


def _seed_message(task: SubagentTask) -> str:
    message = f"Please investigate: {task.task}"
    if task.context:
        message += f"\n\nContext from the main analysis:\n{task.context}"
    return message


def _short_label(text: str, limit: int = 50) -> str:
    collapsed = " ".join(text.split())
    if len(collapsed) > limit:
        return collapsed[:limit].rstrip() + "..."
    return collapsed
