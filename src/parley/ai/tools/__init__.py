"""Model-callable tools and the machinery that dispatches them."""

from .base import BaseTool, ExecutionContext, Tool, ToolResult, ToolSpec, tool_error, tool_success
from .executor import MAX_TOOL_CALLS_PER_SESSION, ExecutorConfig, ToolExecutor
from .registry import DuplicateToolError, ToolNotFoundError, ToolRegistry
from .run_subagent import RunSubagentTool
from .submit_review import SubmitReviewTool

__all__ = [
    "BaseTool",
    "ExecutionContext",
    "Tool",
    "ToolResult",
    "ToolSpec",
    "tool_success",
    "tool_error",
    "ToolRegistry",
    "DuplicateToolError",
    "ToolNotFoundError",
    "ToolExecutor",
    "ExecutorConfig",
    "MAX_TOOL_CALLS_PER_SESSION",
    "SubmitReviewTool",
    "RunSubagentTool",
]
