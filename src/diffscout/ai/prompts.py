"""Default prompt text for analyses and subagents.

Prompt wording is deliberately minimal; deployments supply their own via the
:class:`PromptBuilder` protocol.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from .orchestration.tools.types import ToolSpec

__all__ = ["PromptBuilder", "DefaultPromptBuilder"]


class PromptBuilder(Protocol):
    """Produces the prompt text used by :class:`ToolCallingAnalyzer`."""

    def system_prompt(self, tools: Sequence[ToolSpec]) -> str:
        ...

    def user_prompt(self, input_text: str, *, tools_notice: str | None = None) -> str:
        ...

    def subagent_system_prompt(self, task: str, tools: Sequence[ToolSpec], max_iterations: int) -> str:
        ...


class DefaultPromptBuilder:
    """Plain prompts describing the review task and the available tools."""

    def system_prompt(self, tools: Sequence[ToolSpec]) -> str:
        lines = [
            "You are an expert code reviewer analyzing a code change.",
            "Investigate the surrounding code with the available tools before drawing conclusions.",
        ]
        lines.extend(_tool_section(tools))
        if any(spec.name == "submit_review" for spec in tools):
            lines.append("When your review is complete, call `submit_review` with the full review text.")
        return "\n".join(lines)

    def user_prompt(self, input_text: str, *, tools_notice: str | None = None) -> str:
        parts = ["Please review the following change.", "", "```diff", input_text.rstrip("\n"), "```"]
        if tools_notice:
            parts.extend(["", tools_notice])
        return "\n".join(parts)

    def subagent_system_prompt(self, task: str, tools: Sequence[ToolSpec], max_iterations: int) -> str:
        lines = [
            "You are a focused investigation agent working for a code reviewer.",
            f"Answer the task below in at most {max_iterations} tool-calling rounds.",
            "Report concrete findings with file paths and symbol names; do not speculate.",
            "",
            f"Task: {task}",
        ]
        lines.extend(_tool_section(tools))
        return "\n".join(lines)


def _tool_section(tools: Sequence[ToolSpec]) -> list[str]:
    if not tools:
        return ["", "No tools are available for this analysis."]
    section = ["", "Available tools:"]
    section.extend(f"- {spec.name}: {spec.description.splitlines()[0] if spec.description else ''}" for spec in tools)
    return section
