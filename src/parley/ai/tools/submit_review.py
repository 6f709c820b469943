"""Explicit completion tool for review-style analyses.

Some models answer with a planning message ("I will now review X") and no
tool call. With ``requires_explicit_completion`` enabled the runner only
treats a call to this tool as the final answer.
"""

from __future__ import annotations

from typing import Any, Mapping

from .base import BaseTool, ExecutionContext, ToolResult, tool_success

__all__ = ["SubmitReviewTool", "MIN_REVIEW_LENGTH"]

# Lower than the salvage threshold: an explicit call is trusted.
MIN_REVIEW_LENGTH = 20


class SubmitReviewTool(BaseTool):
    """Return ``review_content`` verbatim and flag it as the completion result."""

    name = "submit_review"
    description = (
        "Submit your final review. Call this as the FINAL step when all analysis is complete. "
        "The review content should follow the output format with summary, findings, and recommendations."
    )
    parameters = {
        "type": "object",
        "properties": {
            "review_content": {
                "type": "string",
                "minLength": MIN_REVIEW_LENGTH,
                "description": (
                    "The complete markdown-formatted review following the output format specification. "
                    "Must include summary section, findings by category, and recommendations."
                ),
            },
        },
        "required": ["review_content"],
        "additionalProperties": False,
    }

    async def run(self, arguments: Mapping[str, Any], context: ExecutionContext) -> ToolResult:
        return tool_success(arguments["review_content"], isCompletion=True)
