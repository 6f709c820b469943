"""Context-window supervision for the conversation loop.

The budget manager decides *when* history has to shrink; counting tokens is
delegated to the model handle returned by the client.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Protocol, Sequence, runtime_checkable

from .cancellation import CancellationToken
from .errors import is_cancellation_error
from .types import BudgetAction, ContextCleanupResult, Message, TokenValidationResult

__all__ = [
    "ModelHandle",
    "BudgetManager",
    "TOKEN_OVERHEAD_PER_MESSAGE",
    "DEFAULT_MAX_INPUT_TOKENS",
    "CONTEXT_WARNING_RATIO",
    "CLEANUP_TARGET_UTILIZATION",
    "CONTEXT_FULL_MESSAGE",
]

LOGGER = logging.getLogger(__name__)

TOKEN_OVERHEAD_PER_MESSAGE = 5
DEFAULT_MAX_INPUT_TOKENS = 8_000
CONTEXT_WARNING_RATIO = 0.9
CLEANUP_TARGET_UTILIZATION = 0.8
CONTEXT_FULL_MESSAGE = (
    "Previous tool results removed due to context limits. Provide final analysis with available information."
)


@runtime_checkable
class ModelHandle(Protocol):
    """The slice of a model the budget manager needs."""

    @property
    def max_input_tokens(self) -> int | None:
        ...

    async def count_tokens(self, text: str, cancellation: CancellationToken | None = None) -> int:
        ...


@dataclass(slots=True)
class BudgetManager:
    """Evaluates history against the model's input window and trims it.

    Attributes:
        model: Handle used for token counting and the window size.
        warning_ratio: Fraction of the window at which old context is removed.
        overhead_per_message: Fixed token overhead added for every message.
    """

    model: ModelHandle
    warning_ratio: float = CONTEXT_WARNING_RATIO
    overhead_per_message: int = TOKEN_OVERHEAD_PER_MESSAGE

    @property
    def max_tokens(self) -> int:
        limit = self.model.max_input_tokens
        return int(limit) if limit else DEFAULT_MAX_INPUT_TOKENS

    async def validate_tokens(
        self,
        messages: Sequence[Message],
        system_prompt: str,
        cancellation: CancellationToken | None = None,
    ) -> TokenValidationResult:
        """Count tokens for ``messages`` plus the system prompt.

        ``messages`` must not contain the system prompt itself. Counting
        failures are logged and reported as ``BudgetAction.NONE`` so that a
        broken tokenizer never blocks the conversation.
        """
        max_tokens = self.max_tokens
        try:
            total = await self.model.count_tokens(system_prompt, cancellation)
            for message in messages:
                total += await self._count_message(message, cancellation)
        except Exception as exc:
            if is_cancellation_error(exc):
                raise
            LOGGER.error("Error validating tokens: %s", exc, exc_info=True)
            return TokenValidationResult(
                total_tokens=0,
                max_tokens=max_tokens,
                exceeds_warning_threshold=False,
                exceeds_max_tokens=False,
                suggested_action=BudgetAction.NONE,
            )

        warning_threshold = math.floor(max_tokens * self.warning_ratio)
        exceeds_warning = total >= warning_threshold
        exceeds_max = total >= max_tokens
        if exceeds_max:
            action = BudgetAction.REQUEST_FINAL_ANSWER
        elif exceeds_warning:
            action = BudgetAction.REMOVE_OLD_CONTEXT
        else:
            action = BudgetAction.NONE
        return TokenValidationResult(
            total_tokens=total,
            max_tokens=max_tokens,
            exceeds_warning_threshold=exceeds_warning,
            exceeds_max_tokens=exceeds_max,
            suggested_action=action,
        )

    async def cleanup_context(
        self,
        messages: Sequence[Message],
        system_prompt: str,
        target_utilization: float = CLEANUP_TARGET_UTILIZATION,
        cancellation: CancellationToken | None = None,
    ) -> ContextCleanupResult:
        """Drop the oldest tool interactions until history fits ``target_utilization``.

        A tool interaction is an assistant turn with tool calls plus every
        tool message answering it, so removals never leave an orphaned tool
        result behind. If anything was removed, a user message explaining the
        truncation is appended.
        """
        target_tokens = math.floor(self.max_tokens * target_utilization)
        cleaned = list(messages)
        tool_results_removed = 0
        assistant_messages_removed = 0

        try:
            while cleaned:
                validation = await self.validate_tokens(cleaned, system_prompt, cancellation)
                if validation.total_tokens <= target_tokens:
                    break
                removed = _remove_oldest_tool_interaction(cleaned)
                if removed is None:
                    break
                cleaned, tools_removed, assistants_removed = removed
                tool_results_removed += tools_removed
                assistant_messages_removed += assistants_removed
        except Exception as exc:
            if is_cancellation_error(exc):
                raise
            LOGGER.error("Error during context cleanup: %s", exc, exc_info=True)

        context_full_added = False
        if tool_results_removed or assistant_messages_removed:
            cleaned.append(Message.user(CONTEXT_FULL_MESSAGE))
            context_full_added = True

        return ContextCleanupResult(
            cleaned_messages=tuple(cleaned),
            tool_results_removed=tool_results_removed,
            assistant_messages_removed=assistant_messages_removed,
            context_full_message_added=context_full_added,
        )

    async def _count_message(self, message: Message, cancellation: CancellationToken | None) -> int:
        tokens = self.overhead_per_message
        if message.content:
            tokens += await self.model.count_tokens(message.content, cancellation)
        for call in message.tool_calls or ():
            tokens += await self.model.count_tokens(json.dumps(call.to_chat_param()), cancellation)
        return tokens


def _remove_oldest_tool_interaction(
    messages: list[Message],
) -> tuple[list[Message], int, int] | None:
    tool_index = next((i for i, msg in enumerate(messages) if msg.role == "tool"), None)
    if tool_index is None:
        return None
    target_id = messages[tool_index].tool_call_id

    owner_index: int | None = None
    for index in range(tool_index - 1, -1, -1):
        candidate = messages[index]
        if candidate.role == "assistant" and candidate.tool_calls:
            if any(call.id == target_id for call in candidate.tool_calls):
                owner_index = index
                break

    if owner_index is None:
        return messages[:tool_index] + messages[tool_index + 1 :], 1, 0

    owned_ids = {call.id for call in messages[owner_index].tool_calls or ()}
    remaining: list[Message] = []
    tools_removed = 0
    for index, message in enumerate(messages):
        if index == owner_index:
            continue
        if message.role == "tool" and message.tool_call_id in owned_ids:
            tools_removed += 1
            continue
        remaining.append(message)
    return remaining, tools_removed, 1
