"""Append-only conversation history shared by the runner and its callers."""

from __future__ import annotations

import logging
from typing import Iterable, Sequence

from .types import Message, MessageRole, ToolCall

__all__ = ["ConversationStore"]

LOGGER = logging.getLogger(__name__)


class ConversationStore:
    """Role-tagged message history for a single conversation.

    Messages are frozen values, so every read hands out the stored objects
    themselves; nothing a caller does to a returned message can reach back
    into the history. The system prompt is not stored here, it travels with
    the :class:`~parley.ai.orchestration.types.RunnerConfig`.

    Example:
        >>> store = ConversationStore()
        >>> store.add_user_message("Review this diff")
        >>> store.history()[0].role
        'user'
    """

    def __init__(self, *, strict_tool_pairing: bool = True) -> None:
        self._messages: list[Message] = []
        self._known_call_ids: set[str] = set()
        self._strict = strict_tool_pairing

    # ------------------------------------------------------------------
    # Writers
    # ------------------------------------------------------------------
    def add_message(self, message: Message) -> None:
        """Append an already-built message, validating tool pairing."""
        if message.role == "system":
            raise ValueError("system prompts belong to RunnerConfig, not conversation history")
        if message.role == "tool" and self._strict and message.tool_call_id not in self._known_call_ids:
            raise ValueError(f"tool message references unknown tool call id {message.tool_call_id!r}")
        if message.tool_calls:
            self._known_call_ids.update(call.id for call in message.tool_calls)
        self._messages.append(message)

    def add_user_message(self, content: str) -> None:
        self.add_message(Message.user(content))

    def add_assistant_message(
        self,
        content: str | None,
        tool_calls: Sequence[ToolCall] | None = None,
    ) -> None:
        self.add_message(Message.assistant(content, tool_calls))

    def add_tool_message(self, tool_call_id: str, content: str) -> None:
        self.add_message(Message.tool(tool_call_id, content))

    def prepend_history(self, messages: Iterable[Message]) -> None:
        """Insert prior conversation context ahead of the current messages."""
        existing = list(self._messages)
        self.clear()
        for message in (*messages, *existing):
            self.add_message(message)

    def replay(self, messages: Iterable[Message]) -> None:
        """Clear the history and rebuild it through the role constructors.

        Used after context cleanup so that pairing between assistant tool
        calls and tool results is re-validated on the way back in.
        """
        self.clear()
        for message in messages:
            if message.role == "user":
                self.add_user_message(message.content or "")
            elif message.role == "assistant":
                self.add_assistant_message(message.content, message.tool_calls)
            elif message.role == "tool":
                self.add_tool_message(message.tool_call_id or "", message.content or "")
            else:
                LOGGER.debug("Skipping %s message during replay", message.role)

    def clear(self) -> None:
        self._messages.clear()
        self._known_call_ids.clear()

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------
    def history(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def last_message(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def messages_by_role(self, role: MessageRole) -> tuple[Message, ...]:
        return tuple(message for message in self._messages if message.role == role)

    def slice(self, start: int, end: int | None = None) -> tuple[Message, ...]:
        return tuple(self._messages[start:end])

    @property
    def strict_tool_pairing(self) -> bool:
        return self._strict

    @property
    def message_count(self) -> int:
        return len(self._messages)

    def has_messages(self) -> bool:
        return bool(self._messages)

    def __len__(self) -> int:  # pragma: no cover - trivial accessor
        return len(self._messages)
