"""Top-level analysis entry point.

:class:`ToolCallingAnalyzer` wires one analysis together: it sizes the seed
turn against the model window, builds fresh per-analysis state (message
store, dispatcher, subagent quota, session key) and hands the conversation to
:class:`ConversationRunner`. Nothing mutable is shared between two calls to
:meth:`ToolCallingAnalyzer.analyze`, so concurrent analyses stay isolated.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol, Sequence

from ...services.settings import AnalysisLimits
from ...utils.logging import session_context
from ..ai_types import ModelDescriptor
from ..prompts import DefaultPromptBuilder, PromptBuilder
from .cancellation import CancellationToken
from .conversation import MessageStore
from .errors import CancellationError
from .runner import ConversationRunner, ModelClient, RunnerConfig, RunState
from .services.budget import BudgetConfig, ContextBudgetManager
from .session import SessionRegistry, SubagentSessionTracker
from .subagent_executor import SubagentConfig, SubagentExecutor
from .tools.executor import DispatcherConfig, ToolDispatcher
from .tools.registry import ToolRegistry
from .tools.types import ExecutionContext
from .types import AnalysisResult, Message, ProgressCallback

__all__ = ["AnalysisClient", "ToolCallingAnalyzer", "summarize_result"]

LOGGER = logging.getLogger(__name__)

COMPLETION_TOOL_NAME = "submit_review"


class AnalysisClient(ModelClient, Protocol):
    """Model client that can also describe the model it talks to."""

    async def get_current_model(self) -> ModelDescriptor:
        ...


class ToolCallingAnalyzer:
    """Runs tool-assisted analyses of a change.

    Example:
        analyzer = ToolCallingAnalyzer(client, registry, settings.analysis_limits())
        result = await analyzer.analyze(diff_text, CancellationToken())
        print(result.analysis_text)
    """

    def __init__(
        self,
        client: AnalysisClient,
        registry: ToolRegistry,
        limits: AnalysisLimits | None = None,
        *,
        session_registry: SessionRegistry | None = None,
        prompt_builder: PromptBuilder | None = None,
    ) -> None:
        self._client = client
        self._registry = registry
        self._limits = limits or AnalysisLimits()
        self._sessions = session_registry or SessionRegistry()
        self._prompts = prompt_builder or DefaultPromptBuilder()

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    @property
    def limits(self) -> AnalysisLimits:
        return self._limits

    async def analyze(
        self,
        input_text: str,
        cancellation: CancellationToken,
        progress: ProgressCallback | None = None,
        *,
        session_key: str | None = None,
        history: Sequence[Message] = (),
    ) -> AnalysisResult:
        """Analyze *input_text* and return the final review.

        Raises:
            CancellationError: If *cancellation* fires before the run ends.
        """
        generated_key = session_key is None
        key = session_key or self._sessions.new_key("analysis")
        start_time = time.perf_counter()
        LOGGER.info("Starting analysis (session=%s, %d chars)", key, len(input_text))
        try:
            with session_context(key):
                result = await self._run(input_text, cancellation, progress, key, history)
        except CancellationError:
            LOGGER.info("Analysis cancelled (session=%s)", key)
            raise
        except Exception as exc:
            LOGGER.error("Analysis failed: %s", exc, exc_info=True)
            return AnalysisResult.from_error(exc)
        finally:
            if generated_key:
                self._sessions.discard(key)

        LOGGER.info(
            "Analysis finished in %.0fms: %d tool call(s), %d failed, completed=%s",
            (time.perf_counter() - start_time) * 1000,
            result.total_calls,
            result.failed_calls,
            result.completed,
        )
        return result

    async def _run(
        self,
        input_text: str,
        cancellation: CancellationToken,
        progress: ProgressCallback | None,
        session_key: str,
        history: Sequence[Message],
    ) -> AnalysisResult:
        cancellation.raise_if_cancelled()
        limits = self._limits
        model = await self._client.get_current_model()
        budget = ContextBudgetManager(model, _budget_config(limits))

        specs = tuple(self._registry.specs())
        system_prompt = self._prompts.system_prompt(specs)
        fit = await budget.fit_initial_input(system_prompt, input_text)
        if not fit.tools_available:
            specs = ()
            system_prompt = self._prompts.system_prompt(specs)

        dispatcher_config = DispatcherConfig(
            max_tool_calls=limits.max_tool_calls,
            max_response_chars=limits.max_tool_response_chars,
            tool_timeout_seconds=limits.tool_timeout_seconds,
        )
        dispatcher = ToolDispatcher(self._registry, dispatcher_config)
        runner = ConversationRunner(self._client, dispatcher, budget)
        tracker = SubagentSessionTracker(limits.max_subagents_per_session)
        subagents = SubagentExecutor(
            self._client,
            self._registry,
            config=SubagentConfig(max_iterations=limits.max_iterations, dispatcher=dispatcher_config),
            budget=budget,
            prompt_builder=self._prompts,
            sessions=self._sessions,
        )

        store = MessageStore()
        store.add_user(self._prompts.user_prompt(fit.text, tools_notice=fit.notice))
        store.prepend(history)

        context = ExecutionContext(
            cancellation=cancellation,
            plan=self._sessions.handle(session_key),
            subagent_executor=subagents,
            subagent_tracker=tracker,
        )
        config = RunnerConfig(
            system_prompt=system_prompt,
            max_iterations=limits.max_iterations,
            tools=specs,
            label="Main Analysis",
            requires_explicit_completion=fit.tools_available and COMPLETION_TOOL_NAME in self._registry,
            completion_tool_name=COMPLETION_TOOL_NAME,
            max_completion_nudges=limits.max_completion_nudges,
            append_context_status=True,
        )

        outcome = await runner.run(config, store, context, progress)
        return AnalysisResult(
            analysis_text=outcome.text,
            tool_calls=outcome.tool_records,
            completed=outcome.state is RunState.COMPLETED,
            error=outcome.error,
        )


def _budget_config(limits: AnalysisLimits) -> BudgetConfig:
    return BudgetConfig(
        warning_ratio=limits.context_warning_ratio,
        cleanup_target_ratio=limits.cleanup_target_ratio,
        default_max_input_tokens=limits.default_max_input_tokens,
        max_input_tokens=limits.max_input_tokens,
        max_tool_response_chars=limits.max_tool_response_chars,
    )


def summarize_result(result: AnalysisResult) -> dict[str, Any]:
    """Compact counters for logs and CLI output."""
    return {
        "total": result.total_calls,
        "successful": result.successful_calls,
        "failed": result.failed_calls,
        "completed": result.completed,
    }
