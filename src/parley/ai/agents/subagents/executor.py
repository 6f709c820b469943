"""Isolated subagent investigations driven by the shared conversation runner."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Collection

from ...orchestration.cancellation import CancellationToken
from ...orchestration.conversation import ConversationStore
from ...orchestration.errors import FatalErrorClassifier, error_message
from ...orchestration.runner import ConversationRunner, ModelClient
from ...orchestration.types import RunnerConfig
from ...tools.executor import ExecutorConfig, ToolExecutor
from ...tools.registry import ToolRegistry
from .prompts import SubagentPromptGenerator, parse_subagent_response

__all__ = [
    "SubagentExecutor",
    "SubagentResult",
    "DISALLOWED_TOOLS",
    "DEFAULT_SUBAGENT_MAX_ITERATIONS",
]

LOGGER = logging.getLogger(__name__)

DISALLOWED_TOOLS: tuple[str, ...] = ("run_subagent",)
DEFAULT_SUBAGENT_MAX_ITERATIONS = 100
_LABEL_PREVIEW_CHARS = 50


@dataclass(slots=True, frozen=True)
class SubagentResult:
    """Outcome of one subagent investigation.

    ``response`` is the raw final answer; ``findings``, ``summary`` and
    ``answer`` are its tagged sections, each falling back to the raw answer.
    """

    success: bool
    response: str = ""
    findings: str = ""
    summary: str = ""
    answer: str = ""
    tool_calls_made: int = 0
    error: str | None = None


class _ToolCallCounter:
    def __init__(self) -> None:
        self.count = 0

    def on_tool_call_complete(self, *_args: Any) -> None:
        self.count += 1


class SubagentExecutor:
    """Runs a subagent as a fresh conversation over a filtered tool registry.

    Each call builds its own conversation store, tool executor and runner so
    subagents share nothing mutable with the parent except the model client.
    """

    def __init__(
        self,
        client: ModelClient,
        registry: ToolRegistry,
        *,
        prompt_generator: SubagentPromptGenerator | None = None,
        max_iterations: int = DEFAULT_SUBAGENT_MAX_ITERATIONS,
        executor_config: ExecutorConfig | None = None,
        fatal_classifier: FatalErrorClassifier | None = None,
        model_name: str | None = None,
        disallowed_tools: Collection[str] = DISALLOWED_TOOLS,
    ) -> None:
        self._client = client
        self._registry = registry
        self._prompt_generator = prompt_generator or SubagentPromptGenerator()
        self._max_iterations = max(1, int(max_iterations))
        self._executor_config = executor_config
        self._fatal_classifier = fatal_classifier
        self._model_name = model_name
        self._disallowed = tuple(disallowed_tools)

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    def allowed_registry(self) -> ToolRegistry:
        return self._registry.filtered(self._disallowed)

    async def execute(
        self,
        task: str,
        cancellation: CancellationToken | None,
        subagent_id: int,
        *,
        context: str | None = None,
    ) -> SubagentResult:
        """Run one investigation.

        Args:
            task: The investigation request.
            cancellation: Child token; fires on parent cancel or timeout.
            subagent_id: 1-based id used for log labels.
            context: Optional excerpt from the parent analysis.

        Returns:
            A result; failures are reported, never raised.
        """
        started = time.perf_counter()
        label = f"Subagent #{subagent_id}"
        preview = " ".join(task.split())
        if len(preview) > _LABEL_PREVIEW_CHARS:
            preview = preview[:_LABEL_PREVIEW_CHARS].rstrip() + "..."
        LOGGER.info('[%s] Starting: "%s"', label, preview)

        registry = self.allowed_registry()
        tools = tuple(registry.list_tools())
        runner = ConversationRunner(
            self._client,
            ToolExecutor(registry, self._executor_config),
            fatal_classifier=self._fatal_classifier,
            model_name=self._model_name,
        )
        conversation = ConversationStore()
        conversation.add_user_message(f"Please investigate: {task}")
        config = RunnerConfig(
            system_prompt=self._prompt_generator.generate_system_prompt(
                task, tools, self._max_iterations, context=context
            ),
            max_iterations=self._max_iterations,
            tools=tools,
            label=label,
            requires_explicit_completion=False,
        )
        counter = _ToolCallCounter()

        try:
            response = await runner.run(config, conversation, cancellation, counter)
        except Exception as exc:
            LOGGER.error("[%s] Failed: %s", label, error_message(exc))
            return SubagentResult(success=False, tool_calls_made=counter.count, error=error_message(exc))

        if runner.was_cancelled:
            LOGGER.info("[%s] Cancelled after %d tool call(s)", label, counter.count)
            return SubagentResult(success=False, tool_calls_made=counter.count, error="cancelled")

        duration_ms = (time.perf_counter() - started) * 1000
        LOGGER.info("[%s] Completed in %.0fms with %d tool calls", label, duration_ms, counter.count)
        parsed = parse_subagent_response(response)
        return SubagentResult(
            success=True,
            response=response,
            findings=parsed.findings,
            summary=parsed.summary,
            answer=parsed.answer,
            tool_calls_made=counter.count,
        )
