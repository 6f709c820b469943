"""Tool that spawns isolated subagent investigations.

Execution is delegated to the :class:`SubagentExecutor` carried by the
execution context; spawn accounting lives in the
:class:`SubagentSessionManager`. Subagents never see this tool, so
recursion is bounded to one level.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Mapping

from ..orchestration.cancellation import CancellationToken
from ..orchestration.errors import error_message
from .base import BaseTool, ExecutionContext, ToolResult, tool_error, tool_success

if TYPE_CHECKING:  # pragma: no cover - typing helpers
    from ..agents.subagents.executor import SubagentResult

__all__ = [
    "RunSubagentTool",
    "MIN_TASK_LENGTH",
    "DEFAULT_SUBAGENT_TIMEOUT_SECONDS",
]

LOGGER = logging.getLogger(__name__)

MIN_TASK_LENGTH = 30
DEFAULT_SUBAGENT_TIMEOUT_SECONDS = 120.0


def _max_exceeded(limit: int) -> str:
    return f"Maximum subagents ({limit}) reached for this session. Use direct tools for remaining investigations."


def _timed_out(seconds: float) -> str:
    return f"Subagent timed out after {seconds:g}s. Break into smaller, more focused tasks."


class RunSubagentTool(BaseTool):
    """Spawn a focused investigation agent and report its findings to the parent."""

    name = "run_subagent"
    description = (
        "Spawn a focused investigation agent for complex analysis.\n\n"
        "Use this template:\n"
        '"Task about [module/file]:\n'
        "Questions:\n"
        "1. How does [function] work?\n"
        "2. Does [function] handle [concern]?\n"
        'Examine: [function names]"\n\n'
        "Rules:\n"
        "- ONE MODULE per subagent (spawn multiple for multiple modules)\n"
        "- Questions about CURRENT code only\n"
        "- Subagents cannot run tests or execute code"
    )
    parameters = {
        "type": "object",
        "properties": {
            "task": {
                "type": "string",
                "minLength": MIN_TASK_LENGTH,
                "description": (
                    "Detailed investigation task. Include: 1) WHAT to investigate, "
                    "2) WHERE to look (files, directories, symbols), 3) WHAT to return."
                ),
            },
            "context": {
                "type": "string",
                "description": "Relevant context from your current analysis: snippets, file paths, findings.",
            },
        },
        "required": ["task"],
    }
    min_length_messages = {
        "task": (
            f"Task too brief ({MIN_TASK_LENGTH}+ chars needed). "
            "Include: WHAT to investigate, WHERE to look, WHAT to return."
        ),
    }

    def __init__(self, *, timeout_seconds: float = DEFAULT_SUBAGENT_TIMEOUT_SECONDS) -> None:
        self._timeout_seconds = timeout_seconds

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    async def run(self, arguments: Mapping[str, Any], context: ExecutionContext) -> ToolResult:
        executor = context.subagent_executor
        session = context.subagent_session
        if executor is None or session is None:
            return tool_error("Subagents are not available in this context")

        task = str(arguments["task"])
        extra_context = arguments.get("context") or None

        if not session.can_spawn():
            LOGGER.warning("Subagent spawn rejected: session limit reached (%d)", session.max_per_session)
            return tool_error(_max_exceeded(session.max_per_session))

        subagent_id = session.record_spawn()
        LOGGER.info(
            "Subagent #%d spawned (%d/%d, %d remaining)",
            subagent_id,
            session.count,
            session.max_per_session,
            session.remaining_budget,
        )

        token = CancellationToken.linked(context.cancellation)
        unregister = session.register_subagent_cancellation(token)
        timed_out = False

        def _on_timeout() -> None:
            nonlocal timed_out
            timed_out = True
            token.cancel()

        timer = asyncio.get_running_loop().call_later(self._timeout_seconds, _on_timeout)
        try:
            result = await executor.execute(task, token, subagent_id, context=extra_context)
        except Exception as exc:
            if timed_out:
                return tool_error(_timed_out(self._timeout_seconds))
            return tool_error(f"Subagent failed: {error_message(exc)}")
        finally:
            timer.cancel()
            unregister()
            token.dispose()

        if not result.success and result.error == "cancelled":
            if timed_out:
                return tool_error(_timed_out(self._timeout_seconds))
            return tool_error("Subagent was cancelled")

        return tool_success(format_subagent_result(result, subagent_id), nestedToolCalls=result.tool_calls_made)


def format_subagent_result(result: SubagentResult, subagent_id: int) -> str:
    """Render a subagent result for the parent model."""
    if not result.success:
        return (
            f"## Subagent #{subagent_id} Failed\n\n"
            f"Error: {result.error}\n\n"
            f"Tool calls made: {result.tool_calls_made}"
        )
    return (
        f"## Subagent #{subagent_id} Investigation Complete\n\n"
        f"**Tool calls made:** {result.tool_calls_made}\n\n"
        f"---\n\n{result.response}"
    )
