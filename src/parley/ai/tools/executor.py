"""Tool executor used by the conversation runner.

This module provides the ToolExecutor class that conforms to the runner's
ToolDispatcher protocol: it turns a batch of tool execution requests into
results, one per request and in the same order, never raising for
individual tool failures.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from ..orchestration.errors import error_message
from ..orchestration.types import ToolExecutionRequest, ToolExecutionResult
from .base import ExecutionContext, ToolResult
from .registry import ToolRegistry

if TYPE_CHECKING:  # pragma: no cover - typing helpers
    from ..agents.subagents.executor import SubagentExecutor
    from ..agents.subagents.session import SubagentSessionManager
    from ..orchestration.cancellation import CancellationToken

__all__ = [
    "ToolExecutor",
    "ExecutorConfig",
    "MAX_TOOL_CALLS_PER_SESSION",
]

LOGGER = logging.getLogger(__name__)

MAX_TOOL_CALLS_PER_SESSION = 50


# -----------------------------------------------------------------------------
# Executor Configuration
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ExecutorConfig:
    """Configuration for the tool executor.

    Attributes:
        default_timeout: Per-call timeout in seconds; None disables it.
        max_calls_per_session: Tool calls allowed before every further call
            is rejected with a rate-limit error.
        parallel: Whether batches run concurrently by default.
        log_arguments: Whether to log tool arguments (may contain sensitive data).
    """

    default_timeout: float | None = None
    max_calls_per_session: int = MAX_TOOL_CALLS_PER_SESSION
    parallel: bool = True
    log_arguments: bool = False


# -----------------------------------------------------------------------------
# Tool Executor
# -----------------------------------------------------------------------------


class ToolExecutor:
    """Executor for running tools from a registry.

    Example:
        registry = ToolRegistry([SubmitReviewTool()])
        executor = ToolExecutor(registry)
        results = await executor.execute_tools(
            [ToolExecutionRequest("submit_review", {"review_content": "..."})]
        )
    """

    def __init__(
        self,
        registry: ToolRegistry,
        config: ExecutorConfig | None = None,
        *,
        subagent_executor: SubagentExecutor | None = None,
        subagent_session: SubagentSessionManager | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            registry: The tool registry to use.
            config: Optional executor configuration.
            subagent_executor: Handed to tools through the execution context;
                only the main analysis sets it.
            subagent_session: Spawn bookkeeping shared with ``run_subagent``.
        """
        self._registry = registry
        self._config = config or ExecutorConfig()
        self._subagent_executor = subagent_executor
        self._subagent_session = subagent_session
        self._calls_made = 0

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    @property
    def calls_made(self) -> int:
        """Tool calls attempted in this session, including rejected ones."""
        return self._calls_made

    def reset_session(self) -> None:
        self._calls_made = 0

    async def execute_tools(
        self,
        requests: Sequence[ToolExecutionRequest],
        *,
        cancellation: CancellationToken | None = None,
        parallel: bool | None = None,
    ) -> list[ToolExecutionResult]:
        """Execute a batch of tool calls.

        Args:
            requests: Calls to execute.
            cancellation: Cancellation signal forwarded to each tool.
            parallel: Overrides ``config.parallel`` for this batch.

        Returns:
            One result per request, in request order.
        """
        if not requests:
            return []
        context = ExecutionContext(
            cancellation=cancellation,
            subagent_executor=self._subagent_executor,
            subagent_session=self._subagent_session,
        )
        run_parallel = self._config.parallel if parallel is None else parallel
        if run_parallel and len(requests) > 1:
            return list(await asyncio.gather(*(self.execute_tool(r, context) for r in requests)))
        results: list[ToolExecutionResult] = []
        for request in requests:
            results.append(await self.execute_tool(request, context))
        return results

    async def execute_tool(
        self,
        request: ToolExecutionRequest,
        context: ExecutionContext | None = None,
    ) -> ToolExecutionResult:
        """Execute a single tool call, converting every failure into a result."""
        name = request.name
        context = context or ExecutionContext()
        self._calls_made += 1

        limit = self._config.max_calls_per_session
        if limit and self._calls_made > limit:
            LOGGER.warning("Tool call limit reached (%d); rejecting %s", limit, name)
            return ToolExecutionResult.from_error(
                name,
                f"Tool call limit reached ({limit} calls per session). "
                "Provide your final answer with the information gathered so far.",
            )

        if context.cancellation is not None and context.cancellation.is_cancellation_requested:
            return ToolExecutionResult.from_error(name, "Operation cancelled")

        tool = self._registry.get(name)
        if tool is None:
            LOGGER.warning("Tool '%s' not found in registry", name)
            return ToolExecutionResult.from_error(name, f"Tool '{name}' not found in registry")

        if self._config.log_arguments:
            LOGGER.debug("Executing tool %s with arguments: %s", name, dict(request.args))
        else:
            LOGGER.debug("Executing tool %s", name)

        timeout = self._config.default_timeout
        start_time = time.perf_counter()
        try:
            if timeout is not None and timeout > 0:
                outcome = await asyncio.wait_for(tool.execute(request.args, context), timeout=timeout)
            else:
                outcome = await tool.execute(request.args, context)
        except asyncio.TimeoutError:
            LOGGER.warning("Tool %s timed out after %.1fs", name, timeout)
            return ToolExecutionResult.from_error(name, f"Tool '{name}' timed out after {timeout:g} seconds")
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning("Tool %s failed after %.1fms: %s", name, duration_ms, exc)
            return ToolExecutionResult.from_error(name, error_message(exc))

        duration_ms = (time.perf_counter() - start_time) * 1000
        LOGGER.debug("Tool %s completed in %.1fms", name, duration_ms)
        return _to_execution_result(name, outcome)

    def has_tool(self, name: str) -> bool:
        return self._registry.has(name)

    def list_tools(self) -> list[str]:
        return self._registry.list_names()


def _to_execution_result(name: str, outcome: Any) -> ToolExecutionResult:
    if isinstance(outcome, ToolResult):
        metadata: Mapping[str, Any] = outcome.metadata or {}
        if outcome.success:
            return ToolExecutionResult.from_success(name, outcome.data or "", metadata)
        return ToolExecutionResult(
            name=name,
            success=False,
            error=outcome.error or "Unknown error",
            metadata=metadata,
        )
    if outcome is None:
        return ToolExecutionResult.from_success(name, "")
    return ToolExecutionResult.from_success(name, str(outcome))
