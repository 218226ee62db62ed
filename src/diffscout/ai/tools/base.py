"""Base class for the tools that drive the analysis itself."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Mapping

from ..orchestration.tools.types import ExecutionContext, ToolResult, ToolSpec


class BaseTool(ABC):
    """Declarative tool: subclasses set ``name``, ``description`` and ``parameters``.

    Example:
        class EchoTool(BaseTool):
            name = "echo"
            description = "Echo the input back."
            parameters = {"type": "object", "properties": {"text": {"type": "string"}}}

            async def execute(self, arguments, context):
                return ToolResult.ok(arguments["text"])
    """

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    parameters: ClassVar[Mapping[str, Any]] = {}

    @property
    def spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, description=self.description, parameters=self.parameters)

    @abstractmethod
    async def execute(self, arguments: Mapping[str, Any], context: ExecutionContext) -> ToolResult:
        ...
