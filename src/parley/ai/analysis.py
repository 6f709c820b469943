"""High-level entry point wiring the client, tools, subagents and runner together."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Sequence

from .agents.subagents.executor import SubagentExecutor
from .agents.subagents.session import SubagentSessionManager
from .client import AIClient
from .orchestration.cancellation import CancellationToken
from .orchestration.conversation import ConversationStore
from .orchestration.errors import FatalErrorClassifier
from .orchestration.runner import ConversationObserver, ConversationRunner, ModelClient
from .orchestration.types import RunnerConfig
from .tools.base import Tool
from .tools.executor import ExecutorConfig, ToolExecutor
from .tools.registry import ToolRegistry
from .tools.run_subagent import RunSubagentTool
from .tools.submit_review import SubmitReviewTool
from ..services.settings import Settings

__all__ = ["AnalysisSession"]

LOGGER = logging.getLogger(__name__)


class AnalysisSession:
    """One reviewer: a main conversation that may spawn subagents.

    Every :meth:`run` starts a fresh analysis session: the tool-call counter
    and the subagent spawn budget are reset, and a previous run still in
    flight is not supported.

    Example:
        >>> session = AnalysisSession(Settings(api_key="sk-..."), tools=[ReadFileTool()])
        >>> review = await session.run(SYSTEM_PROMPT, "Review this diff: ...")
    """

    def __init__(
        self,
        settings: Settings,
        *,
        tools: Sequence[Tool] = (),
        client: ModelClient | None = None,
        notify_user: Callable[[str], Any] | None = None,
        requires_explicit_completion: bool = True,
    ) -> None:
        self._settings = settings
        self._client: ModelClient = client or AIClient(settings.client_settings())
        self._requires_explicit_completion = requires_explicit_completion
        self._fatal_classifier = FatalErrorClassifier.from_settings(settings.fatal_error_patterns)
        executor_config = ExecutorConfig(max_calls_per_session=settings.max_tool_calls_per_session)

        self._registry = ToolRegistry(tools)
        if not self._registry.has(SubmitReviewTool.name):
            self._registry.register(SubmitReviewTool())
        if not self._registry.has(RunSubagentTool.name):
            self._registry.register(RunSubagentTool(timeout_seconds=settings.subagent_timeout_seconds))

        self._subagent_session = SubagentSessionManager(max_per_session=settings.max_subagents_per_session)
        self._subagent_executor = SubagentExecutor(
            self._client,
            self._registry,
            max_iterations=settings.max_iterations,
            executor_config=executor_config,
            fatal_classifier=self._fatal_classifier,
            model_name=settings.model,
        )
        self._tool_executor = ToolExecutor(
            self._registry,
            executor_config,
            subagent_executor=self._subagent_executor,
            subagent_session=self._subagent_session,
        )
        self._runner = ConversationRunner(
            self._client,
            self._tool_executor,
            fatal_classifier=self._fatal_classifier,
            notify_user=notify_user,
            model_name=settings.model,
        )
        self._active_token: CancellationToken | None = None

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def runner(self) -> ConversationRunner:
        return self._runner

    @property
    def subagent_session(self) -> SubagentSessionManager:
        return self._subagent_session

    async def run(
        self,
        system_prompt: str,
        user_message: str,
        *,
        cancellation: CancellationToken | None = None,
        observer: ConversationObserver | None = None,
        history: ConversationStore | None = None,
    ) -> str:
        """Run one analysis to completion.

        Args:
            system_prompt: Instructions for the main conversation.
            user_message: The request, appended after ``history``.
            cancellation: Cancellation signal; a private one is used when omitted.
            observer: Optional UI/telemetry hooks.
            history: Earlier turns to continue from; left untouched. They are
                replayed under the same tool-pairing mode as ``history``.

        Returns:
            The final answer, a sentinel message, or ``""`` when cancelled.
        """
        token = CancellationToken.linked(cancellation)
        self._active_token = token
        self._runner.reset()
        self._tool_executor.reset_session()
        self._subagent_session.reset()

        if history is None:
            conversation = ConversationStore()
        else:
            conversation = ConversationStore(strict_tool_pairing=history.strict_tool_pairing)
            conversation.replay(history.history())
        conversation.add_user_message(user_message)
        config = RunnerConfig(
            system_prompt=system_prompt,
            max_iterations=self._settings.max_iterations,
            tools=tuple(self._registry.list_tools()),
            label="Analysis",
            requires_explicit_completion=self._requires_explicit_completion,
            completion_tool_name=SubmitReviewTool.name,
        )
        try:
            return await self._runner.run(config, conversation, token, observer)
        finally:
            self._subagent_session.cancel_all()
            token.dispose()
            if self._active_token is token:
                self._active_token = None

    def cancel(self) -> None:
        """Cancel the analysis in flight, including its subagents."""
        token = self._active_token
        if token is not None:
            LOGGER.info("Cancelling active analysis")
            token.cancel()
        self._subagent_session.cancel_all()

    async def aclose(self) -> None:
        self.cancel()
        close = getattr(self._client, "aclose", None)
        if callable(close):
            result = close()
            if inspect.isawaitable(result):
                await result
