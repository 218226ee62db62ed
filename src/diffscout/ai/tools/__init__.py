"""Tools that drive the analysis itself (planning, completion, subagents).

Investigation tools (search, symbol lookup, listings) are supplied by the
embedding application and registered alongside these.
"""

from .base import BaseTool
from .run_subagent import RunSubagentTool
from .submit_review import SubmitReviewTool
from .update_plan import UpdatePlanTool

__all__ = [
    "BaseTool",
    "RunSubagentTool",
    "SubmitReviewTool",
    "UpdatePlanTool",
    "core_tools",
]


def core_tools(*, subagent_timeout_seconds: float = 120.0, include_subagents: bool = True) -> list[BaseTool]:
    """Instantiate the built-in tools in registration order."""

    tools: list[BaseTool] = [UpdatePlanTool(), SubmitReviewTool()]
    if include_subagents:
        tools.append(RunSubagentTool(subagent_timeout_seconds=subagent_timeout_seconds))
    return tools
