"""Tool system types for the orchestration core.

Tools report ordinary failures through :class:`ToolResult` rather than by
raising; raising is reserved for cancellation (and for :class:`ToolError`
subclasses, which the dispatcher folds back into failed results).
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Mapping, Protocol, runtime_checkable

from ..cancellation import CancellationToken

if TYPE_CHECKING:
    from ..session import SessionHandle, SubagentSessionTracker
    from ..subagent_executor import SubagentExecutor

__all__ = [
    "ToolSpec",
    "ToolResult",
    "ToolHandler",
    "AsyncToolHandler",
    "Tool",
    "SimpleTool",
    "ExecutionContext",
]


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description shown to the model.
        parameters: JSON Schema for the tool's arguments.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }


# -----------------------------------------------------------------------------
# Tool Result
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolResult:
    """Tagged outcome of a tool invocation.

    Metadata keys understood by the core:
        ``is_completion``: the call concludes the analysis with ``data``.
        ``nested_tool_calls``: records produced by a subagent.
    """

    success: bool
    data: str | None = None
    error: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, data: str, **metadata: Any) -> ToolResult:
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def fail(cls, error: str, **metadata: Any) -> ToolResult:
        return cls(success=False, error=error, metadata=metadata)


# -----------------------------------------------------------------------------
# Execution Context
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ExecutionContext:
    """Per-call context handed to every tool.

    Tools treat it as read-only apart from ``plan.update_plan``.

    Attributes:
        cancellation: Token for the analysis (or subagent) making the call.
        plan: Handle onto the caller's session plan slot, if any.
        subagent_executor: Runs nested investigations, if enabled.
        subagent_tracker: Per-analysis subagent quota.
    """

    cancellation: CancellationToken = field(default_factory=CancellationToken)
    plan: SessionHandle | None = None
    subagent_executor: SubagentExecutor | None = None
    subagent_tracker: SubagentSessionTracker | None = None


# -----------------------------------------------------------------------------
# Tool Handler Types
# -----------------------------------------------------------------------------

ToolHandler = Callable[[Mapping[str, Any], ExecutionContext], Any]

AsyncToolHandler = Callable[[Mapping[str, Any], ExecutionContext], Coroutine[Any, Any, Any]]


# -----------------------------------------------------------------------------
# Tool Protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class Tool(Protocol):
    """Protocol for tool implementations."""

    @property
    def name(self) -> str:
        ...

    @property
    def spec(self) -> ToolSpec:
        ...

    async def execute(self, arguments: Mapping[str, Any], context: ExecutionContext) -> ToolResult | Any:
        """Run the tool.

        Returning a bare value counts as success. Raise
        :class:`~diffscout.ai.orchestration.errors.CancellationError` to abort
        the analysis; any other exception becomes a failed result.
        """
        ...


# -----------------------------------------------------------------------------
# Simple Tool Implementation
# -----------------------------------------------------------------------------


@dataclass
class SimpleTool:
    """Tool wrapping a plain sync or async callable.

    Example:
        def greet(args, context):
            return f"Hello, {args.get('name', 'World')}!"

        tool = SimpleTool(
            spec=ToolSpec(name="greet", description="Greet someone"),
            handler=greet,
        )
    """

    spec: ToolSpec
    handler: ToolHandler | AsyncToolHandler
    _is_async: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        self._is_async = inspect.iscoroutinefunction(self.handler)

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any], context: ExecutionContext) -> Any:
        if self._is_async:
            return await self.handler(arguments, context)  # type: ignore[misc]
        return self.handler(arguments, context)
