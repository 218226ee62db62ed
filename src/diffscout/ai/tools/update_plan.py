"""Create or update the review plan for the current session."""

from __future__ import annotations

import logging
from typing import Any, Mapping

from ..orchestration.tools.types import ExecutionContext, ToolResult
from .base import BaseTool

LOGGER = logging.getLogger(__name__)

MIN_PLAN_LENGTH = 10


class UpdatePlanTool(BaseTool):
    """Stores a markdown checklist in the caller's session slot."""

    name = "update_plan"
    description = (
        "Create or update your review plan. Use this to structure your analysis, track progress "
        "and ensure coverage. Call early to create a plan, then update it as you complete items."
    )
    parameters = {
        "type": "object",
        "properties": {
            "plan": {
                "type": "string",
                "minLength": MIN_PLAN_LENGTH,
                "description": (
                    "Markdown review plan with checklist items. Use - [ ] for pending "
                    "and - [x] for completed items."
                ),
            },
        },
        "required": ["plan"],
    }

    async def execute(self, arguments: Mapping[str, Any], context: ExecutionContext) -> ToolResult:
        plan = str(arguments.get("plan", ""))
        if context.plan is None:
            return ToolResult.fail(
                "No active analysis session. The update_plan tool is only available during an analysis."
            )

        is_update = context.plan.has_plan()
        context.plan.update_plan(plan)
        LOGGER.debug("Plan %s for session %s", "updated" if is_update else "created", context.plan.key)

        status = "Plan updated successfully." if is_update else "Review plan created."
        return ToolResult.ok(
            f"{status}\n\n"
            f"## Current Plan\n\n{plan}\n\n---\n\n"
            "**Next Steps:**\n"
            "- Continue investigating items marked as pending (- [ ])\n"
            "- Use tools to gather evidence for each checklist item\n"
            "- Update the plan as you complete investigations"
        )
