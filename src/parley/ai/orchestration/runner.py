"""Conversation Runner: the tool-calling iteration loop.

This module provides the :class:`ConversationRunner` used both for the main
analysis and, through :mod:`parley.ai.agents.subagents`, for nested
subagent investigations. One runner drives one conversation at a time:

1. Check cancellation
2. Check the context budget (request a final answer or drop old context)
3. Send history plus tool schemas to the model
4. Dispatch tool calls and fold the results back into history
5. Stop on a completion signal, a plain answer, cancellation or the cap
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol, Sequence, runtime_checkable

from .budget_manager import BudgetManager, ModelHandle
from .cancellation import CancellationToken
from .conversation import ConversationStore
from .errors import (
    FatalErrorClassifier,
    OperationCancelledError,
    error_message,
    is_cancellation_error,
    is_service_unavailable_error,
)
from .review_extraction import extract_completion_from_malformed_tool_call, looks_like_review
from .types import (
    BudgetAction,
    Message,
    RunnerConfig,
    ToolCall,
    ToolCallRequest,
    ToolCallResponse,
    ToolExecutionRequest,
    ToolExecutionResult,
)

__all__ = [
    "ConversationRunner",
    "ConversationObserver",
    "ModelClient",
    "ToolDispatcher",
    "RunnerState",
    "MAX_NUDGES",
    "NO_CONTENT_MESSAGE",
    "MAX_ITERATIONS_MESSAGE",
    "FINAL_ANSWER_REQUEST",
]

LOGGER = logging.getLogger(__name__)

MAX_NUDGES = 2
NO_CONTENT_MESSAGE = "Conversation completed but no content returned."
MAX_ITERATIONS_MESSAGE = "Conversation reached maximum iterations. The conversation may be incomplete."
FINAL_ANSWER_REQUEST = (
    "Context window is full. Please provide your final analysis based on the information you have gathered so far."
)
NUDGE_TEMPLATE = (
    "You responded without calling any tool. When your analysis is complete you must call the "
    "`{tool}` tool with your full result. If you still need information, call the appropriate tool now."
)


# -----------------------------------------------------------------------------
# Collaborator Protocols
# -----------------------------------------------------------------------------


@runtime_checkable
class ModelClient(Protocol):
    """Model transport used by the runner."""

    async def send_request(
        self,
        request: ToolCallRequest,
        cancellation: CancellationToken | None = None,
    ) -> ToolCallResponse:
        ...

    async def get_current_model(self) -> ModelHandle | None:
        ...


@runtime_checkable
class ToolDispatcher(Protocol):
    """Executes one batch of tool calls; ``result[i]`` answers ``request[i]``."""

    async def execute_tools(
        self,
        requests: Sequence[ToolExecutionRequest],
        *,
        cancellation: CancellationToken | None = None,
    ) -> Sequence[ToolExecutionResult]:
        ...


class ConversationObserver(Protocol):
    """Optional UI/telemetry hooks. Every method may be sync or async.

    Observers never influence control flow; exceptions they raise are logged
    and swallowed.
    """

    def on_iteration_start(self, current: int, maximum: int) -> Any:
        ...

    def on_tool_call_start(self, name: str, index: int, total: int, args: Mapping[str, Any]) -> Any:
        ...

    def on_tool_call_complete(
        self,
        call_id: str,
        name: str,
        args: Mapping[str, Any],
        result: str,
        success: bool,
        error: str | None,
        duration_ms: int,
        metadata: Mapping[str, Any],
    ) -> Any:
        ...

    def get_context_status_suffix(self) -> Any:
        ...


# -----------------------------------------------------------------------------
# Runner State
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class RunnerState:
    """Mutable per-run bookkeeping, reset at the start of every run."""

    iteration: int = 0
    completion_nudge_count: int = 0
    hit_max_iterations: bool = False
    was_cancelled: bool = False


# -----------------------------------------------------------------------------
# Conversation Runner
# -----------------------------------------------------------------------------


class ConversationRunner:
    """Runs a tool-calling conversation until it produces a final answer.

    Terminal outcomes:

    * completion tool result (any result with ``metadata["isCompletion"]``)
    * plain response when explicit completion is not required
    * nudges exhausted, accepting (or salvaging) the prose response
    * ``max_iterations`` exhausted
    * cancellation, which always wins and resolves to ``""``
    * fatal or service-unavailable errors, which are raised

    Example:
        >>> runner = ConversationRunner(client, executor)
        >>> conversation = ConversationStore()
        >>> conversation.add_user_message("Review the diff")
        >>> review = await runner.run(config, conversation, CancellationToken())
    """

    def __init__(
        self,
        client: ModelClient,
        tool_executor: ToolDispatcher,
        *,
        budget_manager: BudgetManager | None = None,
        fatal_classifier: FatalErrorClassifier | None = None,
        notify_user: Callable[[str], Any] | None = None,
        logger: logging.Logger | None = None,
        max_nudges: int = MAX_NUDGES,
        model_name: str | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        """Initialize the runner.

        Args:
            client: Model client used to send requests and count tokens.
            tool_executor: Dispatcher that runs tool call batches.
            budget_manager: Optional budget manager; built lazily from
                ``client.get_current_model()`` when omitted.
            fatal_classifier: Classifier for vendor errors that abort a run.
            notify_user: Host hook used to surface fatal errors to the user.
            logger: Logger to use instead of the module logger.
            max_nudges: Completion nudges tolerated before accepting prose.
            model_name: Model named in fatal error messages. Defaults to the
                name of the budget manager's model, once one is known.
            clock: Monotonic clock in seconds, used for tool timings.
        """
        self._client = client
        self._tool_executor = tool_executor
        self._injected_budget_manager = budget_manager
        self._budget_manager = budget_manager
        self._budget_resolved = budget_manager is not None
        self._fatal_classifier = fatal_classifier or FatalErrorClassifier()
        self._notify_user = notify_user
        self._log = logger or LOGGER
        self._max_nudges = max(0, int(max_nudges))
        self._clock = clock
        self._configured_model_name = model_name
        self._model_name = model_name or _model_name_of(budget_manager)
        self._state = RunnerState()

    # ------------------------------------------------------------------
    # Outcome accessors
    # ------------------------------------------------------------------
    @property
    def hit_max_iterations(self) -> bool:
        return self._state.hit_max_iterations

    @property
    def was_cancelled(self) -> bool:
        return self._state.was_cancelled

    @property
    def iteration(self) -> int:
        return self._state.iteration

    @property
    def completion_nudge_count(self) -> int:
        return self._state.completion_nudge_count

    @property
    def max_nudges(self) -> int:
        return self._max_nudges

    def reset(self) -> None:
        """Clear budget and outcome state so the runner can be reused."""
        self._budget_manager = self._injected_budget_manager
        self._budget_resolved = self._injected_budget_manager is not None
        self._model_name = self._configured_model_name or _model_name_of(self._injected_budget_manager)
        self._state = RunnerState()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    async def run(
        self,
        config: RunnerConfig,
        conversation: ConversationStore,
        cancellation: CancellationToken | None = None,
        observer: ConversationObserver | None = None,
    ) -> str:
        """Execute the conversation loop until a terminal state.

        Args:
            config: Immutable run configuration.
            conversation: History seeded by the caller with a user message.
            cancellation: Cooperative cancellation signal.
            observer: Optional UI/telemetry hooks.

        Returns:
            The final answer, a sentinel message, or ``""`` when cancelled.

        Raises:
            FatalModelError: The model rejected the request in a way that
                retrying cannot fix.
            ServiceUnavailableError: Upstream is unavailable; the caller may retry.
        """
        token = cancellation or CancellationToken()
        self._state = RunnerState()
        state = self._state
        prefix = config.log_prefix
        tool_schemas = _tool_schemas(config.tools)

        while state.iteration < config.max_iterations:
            state.iteration += 1
            iteration = state.iteration
            self._log.info("%s Iteration %d/%d", prefix, iteration, config.max_iterations)

            if token.is_cancellation_requested:
                return self._cancelled(prefix, f"before iteration {iteration}")

            await self._notify(observer, "on_iteration_start", iteration, config.max_iterations)

            try:
                await self._apply_budget(config, conversation, token, prefix)

                request = ToolCallRequest(
                    messages=_compose_messages(config.system_prompt, conversation),
                    tools=tool_schemas,
                )
                response = await token.guard(self._client.send_request(request, token))

                if token.is_cancellation_requested:
                    return self._cancelled(prefix, f"after model response in iteration {iteration}")

                tool_calls = _ensure_call_ids(response.tool_calls, iteration)
                conversation.add_assistant_message(response.content or None, tool_calls or None)

                if tool_calls:
                    state.completion_nudge_count = 0
                    final = await self._handle_tool_calls(tool_calls, conversation, token, observer, prefix)
                    if token.is_cancellation_requested:
                        return self._cancelled(prefix, f"during tool execution in iteration {iteration}")
                    if final is not None:
                        self._log.info("%s Completed via completion tool", prefix)
                        return final
                    continue

                if not config.requires_explicit_completion:
                    self._log.info("%s Completed successfully", prefix)
                    return response.content or NO_CONTENT_MESSAGE

                outcome = self._handle_missing_completion(config, conversation, response.content, prefix)
                if outcome is not None:
                    return outcome

            except Exception as exc:
                outcome = self._handle_error(exc, config, conversation, token, prefix)
                if outcome is not None:
                    return outcome

        state.hit_max_iterations = True
        self._log.warning("%s Reached maximum iterations (%d)", prefix, config.max_iterations)
        return MAX_ITERATIONS_MESSAGE

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------
    async def _resolve_budget_manager(self) -> BudgetManager | None:
        if not self._budget_resolved:
            model = await self._client.get_current_model()
            if model is not None:
                self._budget_manager = BudgetManager(model)
                self._model_name = self._model_name or getattr(model, "name", None)
            self._budget_resolved = True
        return self._budget_manager

    async def _apply_budget(
        self,
        config: RunnerConfig,
        conversation: ConversationStore,
        cancellation: CancellationToken,
        prefix: str,
    ) -> None:
        manager = await self._resolve_budget_manager()
        if manager is None:
            return
        history = conversation.history()
        validation = await manager.validate_tokens(history, config.system_prompt, cancellation)

        if validation.suggested_action is BudgetAction.REQUEST_FINAL_ANSWER:
            self._log.info(
                "%s Context window full (%d/%d tokens); requesting final answer",
                prefix,
                validation.total_tokens,
                validation.max_tokens,
            )
            conversation.add_user_message(FINAL_ANSWER_REQUEST)
        elif validation.suggested_action is BudgetAction.REMOVE_OLD_CONTEXT:
            cleanup = await manager.cleanup_context(history, config.system_prompt, cancellation=cancellation)
            conversation.replay(cleanup.cleaned_messages)
            if cleanup.context_full_message_added:
                self._log.info(
                    "%s Context cleanup: removed %d tool results and %d assistant messages",
                    prefix,
                    cleanup.tool_results_removed,
                    cleanup.assistant_messages_removed,
                )

    # ------------------------------------------------------------------
    # Tool calls
    # ------------------------------------------------------------------
    async def _handle_tool_calls(
        self,
        tool_calls: Sequence[ToolCall],
        conversation: ConversationStore,
        cancellation: CancellationToken,
        observer: ConversationObserver | None,
        prefix: str,
    ) -> str | None:
        """Dispatch one assistant turn's tool calls and record the results.

        Returns:
            The content of the first result flagged ``isCompletion``, or None.
        """
        total = len(tool_calls)
        self._log.info(
            "%s Executing %d tool(s): %s",
            prefix,
            total,
            ", ".join(call.name for call in tool_calls),
        )

        requests = [
            ToolExecutionRequest(name=call.name, args=self._parse_arguments(call, prefix)) for call in tool_calls
        ]
        for index, request in enumerate(requests):
            await self._notify(observer, "on_tool_call_start", request.name, index, total, dict(request.args))

        started = self._clock()
        results = list(
            await cancellation.guard(self._tool_executor.execute_tools(requests, cancellation=cancellation))
        )
        elapsed_ms = max(0.0, (self._clock() - started) * 1000.0)
        if len(results) != total:
            raise RuntimeError(f"Tool dispatcher returned {len(results)} result(s) for {total} call(s)")
        average_ms = int(elapsed_ms / total) if total else 0

        final: str | None = None
        for call, request, result in zip(tool_calls, requests, results):
            if result.success:
                base = result.result if result.result is not None else ""
            else:
                base = f"Error: {result.error or 'Unknown error'}"
            suffix = await self._context_suffix(observer)

            await self._notify(
                observer,
                "on_tool_call_complete",
                call.id,
                result.name,
                dict(request.args),
                base,
                result.success,
                result.error,
                average_ms,
                dict(result.metadata),
            )
            conversation.add_tool_message(call.id, base + suffix)

            if result.is_completion and final is None:
                final = base
        return final

    def _parse_arguments(self, call: ToolCall, prefix: str) -> dict[str, Any]:
        try:
            return call.parse_arguments()
        except (ValueError, TypeError):
            self._log.error("%s Failed to parse args for %s: %s", prefix, call.name, call.arguments_json)
            return {}

    async def _context_suffix(self, observer: ConversationObserver | None) -> str:
        suffix = await self._notify(observer, "get_context_status_suffix")
        return suffix if isinstance(suffix, str) else ""

    # ------------------------------------------------------------------
    # Completion nudges
    # ------------------------------------------------------------------
    def _handle_missing_completion(
        self,
        config: RunnerConfig,
        conversation: ConversationStore,
        content: str | None,
        prefix: str,
    ) -> str | None:
        state = self._state
        state.completion_nudge_count += 1

        if state.completion_nudge_count > self._max_nudges:
            self._log.warning(
                "%s Model did not call %s after %d nudge(s); accepting response",
                prefix,
                config.completion_tool_name,
                self._max_nudges,
            )
            salvaged = extract_completion_from_malformed_tool_call(content)
            if salvaged and looks_like_review(salvaged):
                self._log.info("%s Recovered completion payload from malformed tool call", prefix)
                return salvaged
            return content or NO_CONTENT_MESSAGE

        self._log.info(
            "%s No tool call in response; nudging towards %s (%d/%d)",
            prefix,
            config.completion_tool_name,
            state.completion_nudge_count,
            self._max_nudges,
        )
        conversation.add_user_message(NUDGE_TEMPLATE.format(tool=config.completion_tool_name))
        return None

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------
    def _handle_error(
        self,
        error: Exception,
        config: RunnerConfig,
        conversation: ConversationStore,
        cancellation: CancellationToken,
        prefix: str,
    ) -> str | None:
        """Classify an iteration failure.

        Returns:
            A terminal string, or None to continue with the next iteration.
        """
        iteration = self._state.iteration

        if isinstance(error, OperationCancelledError) or is_cancellation_error(error):
            return self._cancelled(prefix, f"during iteration {iteration}")

        if cancellation.is_cancellation_requested:
            self._log.debug("%s Error raced with cancellation: %s", prefix, error, exc_info=error)
            return self._cancelled(prefix, f"during iteration {iteration}")

        fatal = self._fatal_classifier.classify(error, model_name=self._model_name)
        if fatal is not None:
            self._surface(fatal.user_message)
            if fatal is error:
                raise error
            raise fatal from error

        message = f"{prefix} Error in iteration {iteration}: {error_message(error)}"
        self._log.error(message)

        if is_service_unavailable_error(error):
            raise error

        _close_dangling_tool_calls(conversation, error_message(error))
        conversation.add_assistant_message(f"I encountered an error: {message}. Let me try to continue.")

        if iteration >= config.max_iterations:
            self._state.hit_max_iterations = True
            return message
        return None

    def _cancelled(self, prefix: str, where: str) -> str:
        self._state.was_cancelled = True
        self._log.info("%s Cancelled %s", prefix, where)
        return ""

    def _surface(self, message: str) -> None:
        if self._notify_user is None:
            self._log.warning(message)
            return
        try:
            self._notify_user(message)
        except Exception:
            self._log.debug("notify_user hook raised", exc_info=True)

    async def _notify(self, observer: Any, hook: str, *args: Any) -> Any:
        if observer is None:
            return None
        callback = getattr(observer, hook, None)
        if not callable(callback):
            return None
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception:
            self._log.debug("Observer hook %s raised", hook, exc_info=True)
            return None


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _compose_messages(system_prompt: str, conversation: ConversationStore) -> tuple[Message, ...]:
    return (Message.system(system_prompt), *conversation.history())


def _tool_schemas(tools: Sequence[Any]) -> tuple[Any, ...]:
    schemas: list[Any] = []
    for tool in tools:
        spec = getattr(tool, "spec", None)
        if spec is not None and hasattr(spec, "to_openai_tool"):
            schemas.append(spec.to_openai_tool())
        elif isinstance(tool, Mapping):
            schemas.append(dict(tool))
        else:
            raise TypeError(f"Unsupported tool definition: {tool!r}")
    return tuple(schemas)


def _ensure_call_ids(tool_calls: Sequence[ToolCall], iteration: int) -> tuple[ToolCall, ...]:
    normalized: list[ToolCall] = []
    for index, call in enumerate(tool_calls or ()):
        if call.id:
            normalized.append(call)
        else:
            normalized.append(ToolCall(id=f"tool_call_{iteration}_{index}", name=call.name, arguments_json=call.arguments_json))
    return tuple(normalized)


def _close_dangling_tool_calls(conversation: ConversationStore, reason: str) -> None:
    """Answer tool calls left without results so history stays well-formed."""
    history = conversation.history()
    for position in range(len(history) - 1, -1, -1):
        message = history[position]
        if message.role == "assistant" and message.tool_calls:
            answered = {m.tool_call_id for m in history[position + 1 :] if m.role == "tool"}
            for call in message.tool_calls:
                if call.id not in answered:
                    conversation.add_tool_message(call.id, f"Error: {reason}")
            return
        if message.role != "tool":
            return


def _model_name_of(budget_manager: BudgetManager | None) -> str | None:
    model = getattr(budget_manager, "model", None)
    return getattr(model, "name", None)
