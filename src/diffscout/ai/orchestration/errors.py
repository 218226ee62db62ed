"""Error taxonomy for the orchestration core.

Tool-shaped errors (:class:`ToolError` and subclasses) never escape the
dispatcher: they are folded into failed tool results so the model can
correct itself. :class:`CancellationError` is the one signal that always
propagates, and :class:`ModelRequestError` wraps transport failures that the
conversation runner records and retries unless the error is fatal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

__all__ = [
    "ErrorCode",
    "ToolError",
    "ToolValidationError",
    "ToolNotFoundError",
    "ToolRateLimitError",
    "ResponseTooLargeError",
    "ToolTimeoutError",
    "CancellationError",
    "ModelRequestError",
]


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------

class ErrorCode:
    """Constants for error codes used in tool responses."""

    INVALID_ARGUMENTS = "invalid_arguments"
    TOOL_NOT_FOUND = "tool_not_found"
    RATE_LIMITED = "rate_limited"
    RESPONSE_TOO_LARGE = "response_too_large"
    TIMEOUT = "timeout"
    OPERATION_CANCELLED = "operation_cancelled"
    MISSING_CONTEXT = "missing_context"
    INTERNAL_ERROR = "internal_error"


# -----------------------------------------------------------------------------
# Tool Errors
# -----------------------------------------------------------------------------

@dataclass
class ToolError(Exception):
    """Base exception class for tool failures.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Text surfaced to the model as the tool result.
        details: Additional structured error information.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    severity: ClassVar[str] = "error"

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for logging and telemetry."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return self.message


@dataclass
class ToolValidationError(ToolError):
    """Arguments did not match the tool's declared schema."""

    error_code: str = field(default=ErrorCode.INVALID_ARGUMENTS)
    message: str = field(default="Invalid arguments")
    details: dict[str, Any] = field(default_factory=dict)
    problems: tuple[str, ...] = ()

    @classmethod
    def from_problems(cls, problems: list[str] | tuple[str, ...]) -> "ToolValidationError":
        joined = "; ".join(problems) if problems else "arguments rejected"
        return cls(
            message=f"Invalid arguments: {joined}",
            details={"problems": list(problems)},
            problems=tuple(problems),
        )


@dataclass
class ToolNotFoundError(ToolError):
    """The model asked for a tool that is not registered."""

    error_code: str = field(default=ErrorCode.TOOL_NOT_FOUND)
    message: str = field(default="")
    details: dict[str, Any] = field(default_factory=dict)
    tool_name: str = ""

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f"Tool '{self.tool_name}' not found in registry"
        super().__post_init__()


@dataclass
class ToolRateLimitError(ToolError):
    """The dispatcher's call ceiling has been exceeded."""

    error_code: str = field(default=ErrorCode.RATE_LIMITED)
    message: str = field(default="")
    details: dict[str, Any] = field(default_factory=dict)
    call_count: int = 0
    max_calls: int = 0

    def __post_init__(self) -> None:
        if not self.message:
            self.message = (
                f"Rate limit exceeded: {self.call_count} tool calls made, "
                f"maximum {self.max_calls} per analysis session. "
                "Please refine your analysis approach."
            )
        super().__post_init__()


@dataclass
class ResponseTooLargeError(ToolError):
    """A successful tool result exceeded the configured size ceiling."""

    error_code: str = field(default=ErrorCode.RESPONSE_TOO_LARGE)
    message: str = field(default="")
    details: dict[str, Any] = field(default_factory=dict)
    actual_chars: int = 0
    max_chars: int = 0

    def __post_init__(self) -> None:
        if not self.message:
            self.message = (
                f"Response too large: {self.actual_chars} characters exceeds maximum of "
                f"{self.max_chars}. Please refine parameters for more specific results."
            )
        super().__post_init__()


@dataclass
class ToolTimeoutError(ToolError):
    """A tool ran past its time budget."""

    error_code: str = field(default=ErrorCode.TIMEOUT)
    message: str = field(default="")
    details: dict[str, Any] = field(default_factory=dict)
    tool_name: str = ""
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if not self.message:
            budget = f" after {self.timeout_seconds:g}s" if self.timeout_seconds else ""
            self.message = (
                f"Tool '{self.tool_name}' timed out{budget}. Narrow your query "
                "(a more specific path, pattern or symbol) and try again."
            )
        super().__post_init__()


# -----------------------------------------------------------------------------
# Session-level Errors
# -----------------------------------------------------------------------------

class CancellationError(Exception):
    """Raised when the caller's cancellation token fires.

    Never caught-and-converted by the tool or dispatch layers.
    """

    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message)


class ModelRequestError(RuntimeError):
    """Raised when the model transport fails after retries.

    ``fatal`` marks failures that no later attempt can fix, such as a rejected
    API key or an unknown model. The runner stops on these instead of retrying
    in the next iteration.
    """

    def __init__(self, message: str, *, cause: BaseException | None = None, fatal: bool = False) -> None:
        super().__init__(message)
        self.cause = cause
        self.fatal = fatal
