"""Tool system for the orchestration core.

Example:
    from diffscout.ai.orchestration.tools import (
        ExecutionContext,
        ToolDispatcher,
        ToolExecutionRequest,
        ToolRegistry,
        ToolSpec,
    )

    registry = ToolRegistry()
    registry.register_function(
        spec=ToolSpec(name="greet", description="Greet someone"),
        handler=lambda args, context: f"Hello, {args.get('name', 'World')}!",
    )

    dispatcher = ToolDispatcher(registry)
    result = await dispatcher.execute(
        ToolExecutionRequest("greet", {"name": "Alice"}),
        ExecutionContext(),
    )
"""

from .types import (
    AsyncToolHandler,
    ExecutionContext,
    SimpleTool,
    Tool,
    ToolHandler,
    ToolResult,
    ToolSpec,
)

from .registry import (
    DuplicateToolError,
    ToolRegistry,
)

from .validation import validate_arguments

from .executor import (
    DispatcherConfig,
    ToolDispatcher,
    ToolExecutionRequest,
    ToolExecutionResult,
    format_tool_result_content,
)

__all__ = [
    # types.py
    "AsyncToolHandler",
    "ExecutionContext",
    "SimpleTool",
    "Tool",
    "ToolHandler",
    "ToolResult",
    "ToolSpec",
    # registry.py
    "DuplicateToolError",
    "ToolRegistry",
    # validation.py
    "validate_arguments",
    # executor.py
    "DispatcherConfig",
    "ToolDispatcher",
    "ToolExecutionRequest",
    "ToolExecutionResult",
    "format_tool_result_content",
]
