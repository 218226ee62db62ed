"""Name-to-tool lookup table."""

from __future__ import annotations

import logging
from typing import Any, Iterable

from .types import AsyncToolHandler, SimpleTool, Tool, ToolHandler, ToolSpec

__all__ = [
    "ToolRegistry",
    "DuplicateToolError",
]

LOGGER = logging.getLogger(__name__)


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolRegistry:
    """Registry owning the tool instances available to an analysis.

    The registry is read-only while analyses run and may be shared across
    them; subagents get a filtered copy via :meth:`filtered`.

    Example:
        registry = ToolRegistry()
        registry.register(my_tool)
        registry.register_function(
            spec=ToolSpec(name="greet", description="Greet"),
            handler=lambda args, context: f"Hello, {args['name']}!",
        )
    """

    def __init__(self, tools: Iterable[Tool] = ()) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> Tool:
        """Register a tool implementation.

        Raises:
            DuplicateToolError: If a tool with the same name is already registered.
        """
        name = tool.name
        if name in self._tools:
            raise DuplicateToolError(name)
        self._tools[name] = tool
        LOGGER.debug("Registered tool: %s", name)
        return tool

    def register_function(self, spec: ToolSpec, handler: ToolHandler | AsyncToolHandler) -> Tool:
        """Register a plain function as a tool."""
        return self.register(SimpleTool(spec=spec, handler=handler))

    def unregister(self, name: str) -> bool:
        """Remove a tool; returns whether anything was removed."""
        if name in self._tools:
            del self._tools[name]
            LOGGER.debug("Unregistered tool: %s", name)
            return True
        return False

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def all(self) -> list[Tool]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    def specs(self) -> list[ToolSpec]:
        return [tool.spec for tool in self._tools.values()]

    def get_openai_tools(self) -> list[dict[str, Any]]:
        """Get tool definitions in OpenAI format."""
        return [tool.spec.to_openai_tool() for tool in self._tools.values()]

    def filtered(self, *, exclude: Iterable[str] = ()) -> ToolRegistry:
        """Return a new registry without the tools named in *exclude*."""
        excluded = set(exclude)
        return ToolRegistry(tool for name, tool in self._tools.items() if name not in excluded)

    def clear(self) -> None:
        self._tools.clear()

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
