"""Core data types for the analysis conversation.

Messages are frozen dataclasses; the message store still hands out deep
copies so that nothing a caller holds can alias stored history.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Literal, Mapping, Sequence

__all__ = [
    "MessageRole",
    "ToolCallRef",
    "Message",
    "ModelRequest",
    "ModelReply",
    "ToolCallRecord",
    "ProgressEvent",
    "ProgressCallback",
    "AnalysisResult",
]


MessageRole = Literal["system", "user", "assistant", "tool"]


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCallRef:
    """A single tool invocation requested by the model.

    Attributes:
        id: Call identifier, unique within the assistant turn.
        name: Name of the tool to invoke.
        arguments_json: Raw JSON argument string as produced by the model.
    """

    id: str
    name: str
    arguments_json: str = "{}"

    def to_chat_param(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json},
        }

    @classmethod
    def from_chat_param(cls, data: Mapping[str, Any]) -> ToolCallRef:
        function = data.get("function") or {}
        return cls(
            id=str(data.get("id", "")),
            name=str(function.get("name", data.get("name", ""))),
            arguments_json=str(function.get("arguments", data.get("arguments", "{}")) or "{}"),
        )


@dataclass(slots=True, frozen=True)
class Message:
    """A single turn in the conversation.

    Attributes:
        role: Author of the turn.
        content: Text content; may be ``None`` on an assistant turn that only calls tools.
        tool_calls: Calls issued by an assistant turn.
        tool_call_id: For ``tool`` turns, the id of the call being answered.
    """

    role: MessageRole
    content: str | None
    tool_calls: tuple[ToolCallRef, ...] | None = None
    tool_call_id: str | None = None

    def __post_init__(self) -> None:
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages require a tool_call_id")
        if self.tool_calls is not None and self.role != "assistant":
            raise ValueError("only assistant messages may carry tool calls")

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_chat_param(self) -> dict[str, Any]:
        """Convert to the OpenAI chat completion message format."""
        result: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            result["tool_calls"] = [call.to_chat_param() for call in self.tool_calls]
        if self.tool_call_id:
            result["tool_call_id"] = self.tool_call_id
        return result

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(
        cls,
        content: str | None,
        tool_calls: Sequence[ToolCallRef] | None = None,
    ) -> Message:
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
        )

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id)


# -----------------------------------------------------------------------------
# Model Request / Reply
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ModelRequest:
    """Everything sent to the model for one iteration."""

    system_prompt: str
    messages: tuple[Message, ...]
    tools: tuple[Mapping[str, Any], ...] = ()

    def to_chat_messages(self) -> list[dict[str, Any]]:
        payload: list[dict[str, Any]] = []
        if self.system_prompt:
            payload.append(Message.system(self.system_prompt).to_chat_param())
        payload.extend(message.to_chat_param() for message in self.messages)
        return payload


@dataclass(slots=True, frozen=True)
class ModelReply:
    """The model's answer to a :class:`ModelRequest`."""

    content: str | None = None
    tool_calls: tuple[ToolCallRef, ...] = ()
    finish_reason: str | None = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def with_call_ids(self, prefix: str) -> ModelReply:
        """Return a copy where every tool call has an id, filling blanks as ``{prefix}_{index}``."""

        if all(call.id for call in self.tool_calls):
            return self
        calls = tuple(
            call if call.id else replace(call, id=f"{prefix}_{index}") for index, call in enumerate(self.tool_calls)
        )
        return replace(self, tool_calls=calls)

    def to_message(self) -> Message:
        return Message.assistant(self.content, self.tool_calls or None)


# -----------------------------------------------------------------------------
# Records and Progress
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    """Record of a single executed tool call.

    Attributes:
        call_id: Identifier from the assistant turn.
        name: Tool name.
        arguments: Parsed arguments passed to the tool.
        result: Text placed in the conversation for this call.
        success: Whether the call succeeded.
        error: Failure text, if any.
        duration_ms: Wall-clock execution time.
        timestamp: Completion time (epoch seconds).
        nested_calls: Records produced by a subagent spawned through this call.
    """

    call_id: str
    name: str
    arguments: Mapping[str, Any]
    result: str
    success: bool = True
    error: str | None = None
    duration_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)
    nested_calls: tuple[ToolCallRecord, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "name": self.name,
            "arguments": dict(self.arguments),
            "result": self.result,
            "success": self.success,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp,
            "nested_calls": [record.to_dict() for record in self.nested_calls],
        }


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    """Progress notification emitted by the conversation runner."""

    kind: Literal["iteration", "tool_call"]
    label: str
    iteration: int
    max_iterations: int
    tool_name: str | None = None
    duration_ms: float | None = None
    success: bool | None = None
    nested_calls: tuple[ToolCallRecord, ...] = ()


ProgressCallback = Callable[[ProgressEvent], Any]


# -----------------------------------------------------------------------------
# Analysis Result
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class AnalysisResult:
    """Final output of :meth:`ToolCallingAnalyzer.analyze`."""

    analysis_text: str
    tool_calls: tuple[ToolCallRecord, ...] = ()
    completed: bool = False
    error: str | None = None

    @property
    def total_calls(self) -> int:
        return len(self.tool_calls)

    @property
    def successful_calls(self) -> int:
        return sum(1 for record in self.tool_calls if record.success)

    @property
    def failed_calls(self) -> int:
        return sum(1 for record in self.tool_calls if not record.success)

    def to_dict(self) -> dict[str, Any]:
        return {
            "analysis": self.analysis_text,
            "tool_calls": {
                "calls": [record.to_dict() for record in self.tool_calls],
                "total_calls": self.total_calls,
                "successful_calls": self.successful_calls,
                "failed_calls": self.failed_calls,
                "analysis_completed": self.completed,
                "analysis_error": self.error,
            },
        }

    @classmethod
    def from_error(cls, error: str | BaseException, *, tool_calls: Sequence[ToolCallRecord] = ()) -> AnalysisResult:
        message = str(error) or error.__class__.__name__
        return cls(
            analysis_text=f"Error during analysis: {message}",
            tool_calls=tuple(tool_calls),
            completed=False,
            error=message,
        )
