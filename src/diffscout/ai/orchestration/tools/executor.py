"""Tool dispatcher for the orchestration core.

:class:`ToolDispatcher` turns ``{name, arguments}`` requests into
:class:`ToolExecutionResult` values and owns every cross-cutting policy a
tool author should not have to reimplement: the per-analysis call ceiling,
schema validation, time budgets, response size limits and error
normalization. One dispatcher is created per analysis (and per subagent), so
its call counter is never shared.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from ..errors import (
    CancellationError,
    ResponseTooLargeError,
    ToolError,
    ToolNotFoundError,
    ToolRateLimitError,
    ToolTimeoutError,
    ToolValidationError,
)
from .registry import ToolRegistry
from .types import ExecutionContext, ToolResult, ToolSpec
from .validation import validate_arguments

__all__ = [
    "DispatcherConfig",
    "ToolDispatcher",
    "ToolExecutionRequest",
    "ToolExecutionResult",
    "format_tool_result_content",
]

LOGGER = logging.getLogger(__name__)

_UNSET = object()


# -----------------------------------------------------------------------------
# Requests and Results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolExecutionRequest:
    """A single tool call to dispatch."""

    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    call_id: str = ""


@dataclass(slots=True, frozen=True)
class ToolExecutionResult:
    """Outcome of one dispatched call; exactly one of ``result``/``error`` is set."""

    name: str
    success: bool
    result: str | None = None
    error: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0

    @classmethod
    def from_success(
        cls,
        name: str,
        result: str,
        *,
        metadata: Mapping[str, Any] | None = None,
        duration_ms: float = 0.0,
    ) -> ToolExecutionResult:
        return cls(
            name=name,
            success=True,
            result=result,
            metadata=dict(metadata or {}),
            duration_ms=duration_ms,
        )

    @classmethod
    def from_error(
        cls,
        name: str,
        error: str,
        *,
        metadata: Mapping[str, Any] | None = None,
        duration_ms: float = 0.0,
    ) -> ToolExecutionResult:
        return cls(
            name=name,
            success=False,
            error=error,
            metadata=dict(metadata or {}),
            duration_ms=duration_ms,
        )

    @property
    def content(self) -> str:
        """Text placed in the conversation for this call."""
        if self.success:
            return self.result or ""
        return f"Error: {self.error}"


@dataclass(slots=True, frozen=True)
class DispatcherConfig:
    """Configuration for the tool dispatcher.

    Attributes:
        max_tool_calls: Calls allowed over the dispatcher's lifetime.
        max_response_chars: Largest successful result accepted (inclusive).
        tool_timeout_seconds: Per-call time budget; ``None`` or ``0`` disables it.
        log_arguments: Whether to log tool arguments at DEBUG.
    """

    max_tool_calls: int = 50
    max_response_chars: int = 8_000
    tool_timeout_seconds: float | None = 60.0
    log_arguments: bool = False


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------


class ToolDispatcher:
    """Validates, rate-limits and executes tool calls against a registry."""

    def __init__(self, registry: ToolRegistry, config: DispatcherConfig | None = None) -> None:
        self._registry = registry
        self._config = config or DispatcherConfig()
        self._call_count = 0

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def config(self) -> DispatcherConfig:
        return self._config

    def call_count(self) -> int:
        return self._call_count

    def get_available_tools(self) -> list[ToolSpec]:
        return self._registry.specs()

    def is_available(self, name: str) -> bool:
        return self._registry.has(name)

    async def execute(
        self,
        request: ToolExecutionRequest,
        context: ExecutionContext,
    ) -> ToolExecutionResult:
        """Dispatch a single call.

        Raises:
            CancellationError: If the context's token is (or becomes) cancelled.
        """
        # Cancellation wins over the rate limit and leaves the counter untouched.
        context.cancellation.raise_if_cancelled()

        name = request.name
        self._call_count += 1
        if self._call_count > self._config.max_tool_calls:
            error = ToolRateLimitError(call_count=self._call_count, max_calls=self._config.max_tool_calls)
            LOGGER.warning("Tool %s rejected: %s", name, error.message)
            return ToolExecutionResult.from_error(name, error.message)

        tool = self._registry.get(name)
        if tool is None:
            error = ToolNotFoundError(tool_name=name)
            LOGGER.warning(error.message)
            return ToolExecutionResult.from_error(name, error.message)

        problems = validate_arguments(tool.spec.parameters, request.arguments)
        if problems:
            error = ToolValidationError.from_problems(problems)
            LOGGER.warning("Tool %s rejected arguments: %s", name, "; ".join(problems))
            return ToolExecutionResult.from_error(name, error.message)

        if self._config.log_arguments:
            LOGGER.debug("Executing tool %s (call_id=%s) with arguments: %s", name, request.call_id, request.arguments)
        else:
            LOGGER.debug("Executing tool %s (call_id=%s)", name, request.call_id)

        timeout = self._timeout_for(tool)
        start_time = time.perf_counter()
        try:
            if timeout is not None and timeout > 0:
                raw = await asyncio.wait_for(tool.execute(request.arguments, context), timeout=timeout)
            else:
                raw = await tool.execute(request.arguments, context)
        except CancellationError:
            LOGGER.info("Tool %s cancelled", name)
            raise
        except TimeoutError:
            duration_ms = _elapsed_ms(start_time)
            context.cancellation.raise_if_cancelled()
            error = ToolTimeoutError(tool_name=name, timeout_seconds=timeout)
            LOGGER.warning("Tool %s timed out after %.1fms", name, duration_ms)
            return ToolExecutionResult.from_error(name, error.message, duration_ms=duration_ms)
        except ToolError as exc:
            duration_ms = _elapsed_ms(start_time)
            LOGGER.warning("Tool %s failed after %.1fms: %s", name, duration_ms, exc.to_dict())
            return ToolExecutionResult.from_error(name, exc.message, duration_ms=duration_ms)
        except Exception as exc:
            duration_ms = _elapsed_ms(start_time)
            LOGGER.warning("Tool %s failed after %.1fms: %s", name, duration_ms, exc, exc_info=True)
            return ToolExecutionResult.from_error(name, str(exc) or exc.__class__.__name__, duration_ms=duration_ms)

        duration_ms = _elapsed_ms(start_time)
        result = self._normalize(name, raw, duration_ms)
        LOGGER.debug("Tool %s finished in %.1fms (success=%s)", name, duration_ms, result.success)
        return result

    async def execute_many(
        self,
        requests: Sequence[ToolExecutionRequest],
        context: ExecutionContext,
    ) -> list[ToolExecutionResult]:
        """Run all requests concurrently; results keep the input order."""
        if not requests:
            return []
        tasks = [asyncio.ensure_future(self.execute(request, context)) for request in requests]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def execute_sequentially(
        self,
        requests: Sequence[ToolExecutionRequest],
        context: ExecutionContext,
    ) -> list[ToolExecutionResult]:
        """Run requests one at a time, continuing past individual failures."""
        results: list[ToolExecutionResult] = []
        for request in requests:
            results.append(await self.execute(request, context))
        return results

    def _timeout_for(self, tool: Any) -> float | None:
        # Tools that manage their own budget (subagents) declare timeout_seconds.
        override = getattr(tool, "timeout_seconds", _UNSET)
        if override is _UNSET:
            return self._config.tool_timeout_seconds
        return override

    def _normalize(self, name: str, raw: Any, duration_ms: float) -> ToolExecutionResult:
        if isinstance(raw, ToolResult):
            if not raw.success:
                return ToolExecutionResult.from_error(
                    name,
                    raw.error or "Tool reported failure",
                    metadata=raw.metadata,
                    duration_ms=duration_ms,
                )
            text = raw.data or ""
            metadata = raw.metadata
        else:
            text = format_tool_result_content(raw)
            metadata = {}

        if len(text) > self._config.max_response_chars:
            error = ResponseTooLargeError(actual_chars=len(text), max_chars=self._config.max_response_chars)
            LOGGER.warning("Tool %s response rejected: %s", name, error.message)
            return ToolExecutionResult.from_error(name, error.message, duration_ms=duration_ms)
        return ToolExecutionResult.from_success(name, text, metadata=metadata, duration_ms=duration_ms)


def format_tool_result_content(result: Any) -> str:
    """Serialize a bare tool return value for the conversation."""
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    if isinstance(result, (dict, list, tuple)):
        try:
            return json.dumps(result, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return str(result)
    return str(result)


def _elapsed_ms(start_time: float) -> float:
    return (time.perf_counter() - start_time) * 1000
