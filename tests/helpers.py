"""Shared test helpers and stub classes.

This module contains reusable test stubs that are used across multiple test files.
Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from typing import Any, Callable, Iterable, Mapping, Sequence

from diffscout.ai.ai_types import ModelDescriptor
from diffscout.ai.orchestration.cancellation import CancellationToken
from diffscout.ai.orchestration.tools.types import ExecutionContext, ToolResult, ToolSpec
from diffscout.ai.orchestration.types import ModelReply, ModelRequest, ToolCallRef


def word_count(text: str) -> int:
    """Deterministic token counter: one token per whitespace-separated word."""
    return len(text.split())


def text_reply(content: str | None) -> ModelReply:
    return ModelReply(content=content, finish_reason="stop")


def tool_reply(*calls: tuple[str, Mapping[str, Any] | str, str], content: str | None = None) -> ModelReply:
    """Build a reply requesting ``(name, arguments, call_id)`` tool calls.

    Arguments given as a string are passed through verbatim, which lets
    tests send malformed JSON.
    """
    refs = []
    for name, arguments, call_id in calls:
        raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
        refs.append(ToolCallRef(id=call_id, name=name, arguments_json=raw))
    return ModelReply(content=content, tool_calls=tuple(refs), finish_reason="tool_calls")


class ScriptedModelClient:
    """Model client stub that replays a script of replies.

    Each script entry may be a :class:`ModelReply`, an exception to raise,
    or a callable receiving the request and returning a reply. When the
    script runs out, ``fallback`` is used (or a plain "done" reply).

    Example:
        client = ScriptedModelClient([tool_reply(("echo", {"text": "hi"}, "c1")), text_reply("done")])
    """

    def __init__(
        self,
        script: Iterable[Any] = (),
        *,
        fallback: Any = None,
        max_input_tokens: int | None = 100_000,
        counter: Callable[[str], int] = word_count,
        model_name: str = "test-model",
    ) -> None:
        self.script = list(script)
        self.fallback = fallback
        self.max_input_tokens = max_input_tokens
        self.counter = counter
        self.model_name = model_name
        self.requests: list[ModelRequest] = []
        self.tokens: list[CancellationToken | None] = []

    @property
    def call_count(self) -> int:
        return len(self.requests)

    async def send_request(self, request: ModelRequest, cancellation: CancellationToken | None = None) -> ModelReply:
        self.requests.append(request)
        self.tokens.append(cancellation)
        item = self.script.pop(0) if self.script else self.fallback
        if item is None:
            return text_reply("done")
        if isinstance(item, BaseException):
            raise item
        if callable(item) and not isinstance(item, ModelReply):
            item = item(request)
            if inspect.isawaitable(item):
                item = await item
        return item

    async def get_current_model(self) -> ModelDescriptor:
        return ModelDescriptor(
            name=self.model_name,
            max_input_tokens=self.max_input_tokens,
            counter=self.counter,
        )


class FakeModel:
    """Budget-manager model stub with a configurable window and counter."""

    def __init__(self, max_input_tokens: int | None = 1_000, counter: Callable[[str], int] = word_count) -> None:
        self.max_input_tokens = max_input_tokens
        self._counter = counter
        self.calls = 0

    async def count_tokens(self, text: str) -> int:
        self.calls += 1
        return self._counter(text)


class FailingModel(FakeModel):
    """Model whose token counting always fails."""

    async def count_tokens(self, text: str) -> int:
        raise RuntimeError("tokenizer unavailable")


def object_schema(properties: Mapping[str, Any] | None = None, required: Sequence[str] = ()) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object", "properties": dict(properties or {})}
    if required:
        schema["required"] = list(required)
    return schema


class EchoTool:
    """Tool that returns its ``text`` argument."""

    name = "echo"

    def __init__(self) -> None:
        self.calls: list[Mapping[str, Any]] = []

    @property
    def spec(self) -> ToolSpec:
        return ToolSpec(
            name=self.name,
            description="Echo text back.",
            parameters=object_schema({"text": {"type": "string"}}, required=["text"]),
        )

    async def execute(self, arguments: Mapping[str, Any], context: ExecutionContext) -> ToolResult:
        self.calls.append(dict(arguments))
        return ToolResult.ok(str(arguments["text"]))


class SleepTool:
    """Tool that sleeps for ``delay`` seconds before answering."""

    def __init__(self, name: str = "sleep", delay: float = 0.1, *, timeout_seconds: Any = None, declare_timeout: bool = False) -> None:
        self.name = name
        self.delay = delay
        self.started = 0
        self.finished = 0
        if declare_timeout:
            self.timeout_seconds = timeout_seconds

    @property
    def spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, description="Sleep for a while.", parameters=object_schema())

    async def execute(self, arguments: Mapping[str, Any], context: ExecutionContext) -> str:
        self.started += 1
        await asyncio.sleep(self.delay)
        self.finished += 1
        return f"{self.name} slept"
