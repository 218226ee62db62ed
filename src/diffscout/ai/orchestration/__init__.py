"""Orchestration core: the tool-calling conversation loop and its services."""

# Core types
from .types import (
    AnalysisResult,
    Message,
    MessageRole,
    ModelReply,
    ModelRequest,
    ProgressCallback,
    ProgressEvent,
    ToolCallRecord,
    ToolCallRef,
)

# Errors and cancellation
from .errors import (
    CancellationError,
    ErrorCode,
    ModelRequestError,
    ToolError,
)
from .cancellation import CancellationToken, run_cancellable

# Conversation state
from .conversation import MessageStore
from .session import (
    DEFAULT_SESSION_KEY,
    SessionHandle,
    SessionRegistry,
    SubagentSessionTracker,
)

# Tool system
from .tools import (
    DispatcherConfig,
    ExecutionContext,
    SimpleTool,
    Tool,
    ToolDispatcher,
    ToolExecutionRequest,
    ToolExecutionResult,
    ToolRegistry,
    ToolResult,
    ToolSpec,
)

# Budget
from .services.budget import BudgetConfig, ContextBudgetManager

# Runner, subagents and the analysis entry point
from .runner import (
    ConversationRunner,
    ModelClient,
    RunnerConfig,
    RunOutcome,
    RunState,
)
from .subagent_executor import (
    SubagentConfig,
    SubagentExecutor,
    SubagentResult,
    SubagentTask,
)
from .analysis import AnalysisClient, ToolCallingAnalyzer

__all__ = [
    # Core types
    "AnalysisResult",
    "Message",
    "MessageRole",
    "ModelReply",
    "ModelRequest",
    "ProgressCallback",
    "ProgressEvent",
    "ToolCallRecord",
    "ToolCallRef",
    # Errors and cancellation
    "CancellationError",
    "CancellationToken",
    "ErrorCode",
    "ModelRequestError",
    "ToolError",
    "run_cancellable",
    # Conversation state
    "DEFAULT_SESSION_KEY",
    "MessageStore",
    "SessionHandle",
    "SessionRegistry",
    "SubagentSessionTracker",
    # Tool system
    "DispatcherConfig",
    "ExecutionContext",
    "SimpleTool",
    "Tool",
    "ToolDispatcher",
    "ToolExecutionRequest",
    "ToolExecutionResult",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    # Budget
    "BudgetConfig",
    "ContextBudgetManager",
    # Runner
    "ConversationRunner",
    "ModelClient",
    "RunnerConfig",
    "RunOutcome",
    "RunState",
    # Subagents and analysis
    "AnalysisClient",
    "SubagentConfig",
    "SubagentExecutor",
    "SubagentResult",
    "SubagentTask",
    "ToolCallingAnalyzer",
]
