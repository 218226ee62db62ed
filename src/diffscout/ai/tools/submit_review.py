"""Explicit completion signal for a review."""

from __future__ import annotations

from typing import Any, Mapping

from ..orchestration.tools.types import ExecutionContext, ToolResult
from .base import BaseTool

MIN_REVIEW_LENGTH = 20


class SubmitReviewTool(BaseTool):
    """Ends the analysis with the submitted review as its final text.

    Some models answer with a planning message ("I will review X") and no
    tool call; requiring this tool keeps such replies from being taken as
    the finished review.
    """

    name = "submit_review"
    description = (
        "Submit your final review. Call this as the FINAL step when all analysis is complete. "
        "The review should contain a summary, findings and recommendations."
    )
    parameters = {
        "type": "object",
        "properties": {
            "review_content": {
                "type": "string",
                "minLength": MIN_REVIEW_LENGTH,
                "description": "The complete markdown-formatted review.",
            },
        },
        "required": ["review_content"],
        "additionalProperties": False,
    }

    async def execute(self, arguments: Mapping[str, Any], context: ExecutionContext) -> ToolResult:
        return ToolResult.ok(str(arguments["review_content"]), is_completion=True)
