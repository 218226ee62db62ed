"""Conversation Runner: the iterate / call tools / check budget loop.

The runner drives one conversation (a top-level analysis or a subagent)
until the model produces a final answer, the iteration ceiling is hit, or
the final model request fails. Tool failures stay inside the conversation
as data; :class:`CancellationError` always propagates to the caller.
"""

from __future__ import annotations

import enum
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from .cancellation import CancellationToken, run_cancellable
from .conversation import MessageStore
from .errors import CancellationError, ModelRequestError
from .services.budget import ContextBudgetManager
from .tools.executor import ToolDispatcher, ToolExecutionRequest, ToolExecutionResult
from .tools.types import ExecutionContext, ToolSpec
from .types import (
    ModelReply,
    ModelRequest,
    ProgressCallback,
    ProgressEvent,
    ToolCallRecord,
    ToolCallRef,
)

__all__ = [
    "ConversationRunner",
    "ModelClient",
    "RunnerConfig",
    "RunOutcome",
    "RunState",
    "FINAL_ANSWER_DIRECTIVE",
    "MAX_ITERATIONS_NOTICE",
    "EMPTY_COMPLETION_NOTICE",
]

LOGGER = logging.getLogger(__name__)

FINAL_ANSWER_DIRECTIVE = (
    "Context window is full. Please provide your final analysis based on the "
    "information you have gathered so far."
)
MAX_ITERATIONS_NOTICE = "Conversation reached maximum iterations. The conversation may be incomplete."
EMPTY_COMPLETION_NOTICE = "Conversation completed but no content returned."


# -----------------------------------------------------------------------------
# Protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class ModelClient(Protocol):
    """Request/response model transport used by the runner."""

    async def send_request(self, request: ModelRequest, cancellation: CancellationToken | None = None) -> ModelReply:
        ...


# -----------------------------------------------------------------------------
# Configuration and Outcome
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class RunnerConfig:
    """Configuration for a single conversation run.

    Attributes:
        system_prompt: System prompt sent with every request.
        max_iterations: Model round-trips allowed.
        tools: Tool definitions offered to the model; ``None`` offers every
            tool in the dispatcher's registry, an empty tuple disables tools.
        label: Log prefix, e.g. ``"Main Analysis"`` or ``"Subagent #2"``.
        requires_explicit_completion: Plain replies do not end the run until
            the completion tool is called (or nudges run out).
        completion_tool_name: Tool the model is nudged towards.
        max_completion_nudges: Reminders sent before a plain reply is accepted.
        append_context_status: Append context usage notes to tool results.
    """

    system_prompt: str
    max_iterations: int = 100
    tools: tuple[ToolSpec, ...] | None = None
    label: str = "Conversation"
    requires_explicit_completion: bool = False
    completion_tool_name: str = "submit_review"
    max_completion_nudges: int = 2
    append_context_status: bool = False


class RunState(str, enum.Enum):
    """Terminal states of a run."""

    COMPLETED = "completed"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    ERRORED = "errored"


@dataclass(slots=True, frozen=True)
class RunOutcome:
    """What a run produced."""

    text: str
    state: RunState
    iterations: int
    tool_records: tuple[ToolCallRecord, ...] = ()
    error: str | None = None

    @property
    def completed(self) -> bool:
        return self.state is RunState.COMPLETED


@dataclass(slots=True)
class _RunState:
    iteration: int = 0
    nudges: int = 0
    records: list[ToolCallRecord] = field(default_factory=list)


# -----------------------------------------------------------------------------
# Runner
# -----------------------------------------------------------------------------


class ConversationRunner:
    """Runs a tool-calling conversation loop.

    One runner (and one dispatcher) belongs to exactly one analysis or
    subagent; nothing here is shared between concurrent runs.
    """

    def __init__(
        self,
        client: ModelClient,
        dispatcher: ToolDispatcher,
        budget: ContextBudgetManager | None = None,
    ) -> None:
        self._client = client
        self._dispatcher = dispatcher
        self._budget = budget

    @property
    def dispatcher(self) -> ToolDispatcher:
        return self._dispatcher

    async def run(
        self,
        config: RunnerConfig,
        store: MessageStore,
        context: ExecutionContext,
        progress: ProgressCallback | None = None,
    ) -> RunOutcome:
        """Drive the conversation in *store* to a terminal state.

        Raises:
            CancellationError: If ``context.cancellation`` fires.
        """
        prefix = f"[{config.label}]"
        token = context.cancellation
        tools = self._tool_definitions(config)
        state = _RunState()

        while state.iteration < config.max_iterations:
            state.iteration += 1
            token.raise_if_cancelled()
            LOGGER.info("%s Iteration %d/%d", prefix, state.iteration, config.max_iterations)
            await self._notify(
                progress,
                ProgressEvent(
                    kind="iteration",
                    label=config.label,
                    iteration=state.iteration,
                    max_iterations=config.max_iterations,
                ),
            )

            try:
                await self._apply_budget(config, store, prefix)
                request = ModelRequest(
                    system_prompt=config.system_prompt,
                    messages=tuple(store.history()),
                    tools=tools,
                )
                reply = await run_cancellable(self._client.send_request(request, token), token)
            except CancellationError:
                LOGGER.info("%s Cancelled during iteration %d", prefix, state.iteration)
                raise
            except Exception as exc:
                error_text = f"{prefix} Error in iteration {state.iteration}: {exc}"
                LOGGER.error(error_text, exc_info=True)
                if isinstance(exc, ModelRequestError) and exc.fatal:
                    store.add_assistant(f"I encountered an error: {error_text}.")
                    LOGGER.error("%s Stopping: the model request cannot succeed on retry", prefix)
                    return RunOutcome(
                        text=error_text,
                        state=RunState.ERRORED,
                        iterations=state.iteration,
                        tool_records=tuple(state.records),
                        error=error_text,
                    )
                store.add_assistant(f"I encountered an error: {error_text}. Let me try to continue.")
                if state.iteration >= config.max_iterations:
                    return RunOutcome(
                        text=error_text,
                        state=RunState.ERRORED,
                        iterations=state.iteration,
                        tool_records=tuple(state.records),
                        error=error_text,
                    )
                continue

            token.raise_if_cancelled()
            reply = reply.with_call_ids(f"tool_call_{state.iteration}")
            store.add(reply.to_message())

            if reply.has_tool_calls:
                state.nudges = 0
                completion = await self._handle_tool_calls(config, reply.tool_calls, store, context, progress, state)
                if completion is not None:
                    LOGGER.info("%s Completed via %s", prefix, config.completion_tool_name)
                    return RunOutcome(
                        text=completion,
                        state=RunState.COMPLETED,
                        iterations=state.iteration,
                        tool_records=tuple(state.records),
                    )
                continue

            if config.requires_explicit_completion and state.nudges < config.max_completion_nudges:
                state.nudges += 1
                LOGGER.info(
                    "%s Plain reply without %s; nudging (%d/%d)",
                    prefix,
                    config.completion_tool_name,
                    state.nudges,
                    config.max_completion_nudges,
                )
                store.add_user(_completion_nudge(config.completion_tool_name))
                continue

            LOGGER.info("%s Completed successfully", prefix)
            return RunOutcome(
                text=reply.content or EMPTY_COMPLETION_NOTICE,
                state=RunState.COMPLETED,
                iterations=state.iteration,
                tool_records=tuple(state.records),
            )

        LOGGER.warning("%s Reached maximum iterations (%d)", prefix, config.max_iterations)
        return RunOutcome(
            text=MAX_ITERATIONS_NOTICE,
            state=RunState.MAX_ITERATIONS_REACHED,
            iterations=state.iteration,
            tool_records=tuple(state.records),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _tool_definitions(self, config: RunnerConfig) -> tuple[Mapping[str, Any], ...]:
        specs = config.tools if config.tools is not None else tuple(self._dispatcher.get_available_tools())
        return tuple(spec.to_openai_tool() for spec in specs)

    async def _apply_budget(self, config: RunnerConfig, store: MessageStore, prefix: str) -> None:
        if self._budget is None:
            return
        validation = await self._budget.validate(store.history(), config.system_prompt)
        if validation.suggested_action == "request_final_answer":
            LOGGER.warning(
                "%s Context full (%d/%d tokens); requesting final answer",
                prefix,
                validation.total_tokens,
                validation.max_tokens,
            )
            store.add_user(FINAL_ANSWER_DIRECTIVE)
        elif validation.suggested_action == "remove_old_context":
            cleanup = await self._budget.cleanup(store.history(), config.system_prompt)
            if cleanup.changed:
                store.replace(cleanup.messages)
                LOGGER.info(
                    "%s Context cleanup: removed %d tool results and %d assistant messages",
                    prefix,
                    cleanup.tool_results_removed,
                    cleanup.assistant_messages_removed,
                )

    async def _handle_tool_calls(
        self,
        config: RunnerConfig,
        calls: Sequence[ToolCallRef],
        store: MessageStore,
        context: ExecutionContext,
        progress: ProgressCallback | None,
        state: _RunState,
    ) -> str | None:
        prefix = f"[{config.label}]"
        LOGGER.info("%s Executing %d tool(s): %s", prefix, len(calls), ", ".join(call.name for call in calls))

        requests = [
            ToolExecutionRequest(
                name=call.name,
                arguments=_parse_arguments(call, prefix),
                call_id=call.id,
            )
            for call in calls
        ]
        results = await self._dispatcher.execute_many(requests, context)

        completion: str | None = None
        for call, request, result in zip(calls, requests, results):
            call_id = call.id
            base_content = result.content
            suffix = ""
            if config.append_context_status and self._budget is not None:
                suffix = await self._budget.context_status_suffix(store.history(), config.system_prompt)
            store.add_tool(call_id, base_content + suffix)

            record = _build_record(call_id, request, result, base_content)
            state.records.append(record)
            await self._notify(
                progress,
                ProgressEvent(
                    kind="tool_call",
                    label=config.label,
                    iteration=state.iteration,
                    max_iterations=config.max_iterations,
                    tool_name=result.name,
                    duration_ms=result.duration_ms,
                    success=result.success,
                    nested_calls=record.nested_calls,
                ),
            )
            if completion is None and result.success and result.metadata.get("is_completion"):
                completion = result.result or ""
        return completion

    async def _notify(self, progress: ProgressCallback | None, event: ProgressEvent) -> None:
        if progress is None:
            return
        try:
            outcome = progress(event)
            if inspect.isawaitable(outcome):
                await outcome
        except CancellationError:
            raise
        except Exception:
            LOGGER.debug("Progress callback failed", exc_info=True)


def _parse_arguments(call: ToolCallRef, prefix: str) -> dict[str, Any]:
    """Decode model-supplied arguments; malformed input becomes ``{}``."""
    raw = call.arguments_json or ""
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        LOGGER.error("%s Failed to parse args for %s: %s", prefix, call.name, raw)
        return {}
    if not isinstance(parsed, dict):
        LOGGER.error("%s Arguments for %s are not a JSON object: %s", prefix, call.name, raw)
        return {}
    return parsed


def _build_record(
    call_id: str,
    request: ToolExecutionRequest,
    result: ToolExecutionResult,
    content: str,
) -> ToolCallRecord:
    nested = result.metadata.get("nested_tool_calls") or ()
    return ToolCallRecord(
        call_id=call_id,
        name=result.name,
        arguments=dict(request.arguments),
        result=content,
        success=result.success,
        error=result.error,
        duration_ms=result.duration_ms,
        nested_calls=tuple(record for record in nested if isinstance(record, ToolCallRecord)),
    )


def _completion_nudge(tool_name: str) -> str:
    return (
        f"You have not called the `{tool_name}` tool yet. Continue investigating if needed, "
        f"then call `{tool_name}` with your complete analysis to finish. "
        "Plain text replies do not complete the review."
    )
