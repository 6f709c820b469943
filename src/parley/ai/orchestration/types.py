"""Core type definitions for the conversation loop.

This module defines the immutable dataclasses that flow between the
conversation store, the runner, the budget manager and the tool executor.
All message types are frozen so that history can be shared with observers
without defensive copying.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Literal, Mapping, Sequence

from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam

__all__ = [
    # Message types
    "MessageRole",
    "Message",
    "ToolCall",
    # Tool execution
    "ToolExecutionRequest",
    "ToolExecutionResult",
    # Model interaction
    "ToolCallRequest",
    "ToolCallResponse",
    # Runner configuration
    "RunnerConfig",
    # Budget
    "BudgetAction",
    "TokenValidationResult",
    "ContextCleanupResult",
]


def _freeze(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


# -----------------------------------------------------------------------------
# Message Types
# -----------------------------------------------------------------------------

MessageRole = Literal["system", "user", "assistant", "tool"]


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A tool invocation requested by the model.

    Attributes:
        id: Identifier echoed back by the matching tool message.
        name: Name of the tool to invoke.
        arguments_json: Raw JSON-encoded arguments, opaque to the runner.
    """

    id: str
    name: str
    arguments_json: str = "{}"

    def parse_arguments(self) -> dict[str, Any]:
        """Decode ``arguments_json`` into a dict.

        Raises:
            ValueError: If the payload is not a JSON object.
        """
        if not self.arguments_json or not self.arguments_json.strip():
            return {}
        parsed = json.loads(self.arguments_json)
        if not isinstance(parsed, dict):
            raise ValueError(f"Tool arguments for {self.name} must be a JSON object")
        return parsed

    def to_chat_param(self) -> dict[str, Any]:
        """Convert to the OpenAI ``tool_calls`` entry format."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments_json},
        }

    @classmethod
    def from_chat_param(cls, param: Mapping[str, Any]) -> ToolCall:
        """Create a ToolCall from an OpenAI ``tool_calls`` entry."""
        function = param.get("function") or {}
        arguments = function.get("arguments")
        if arguments is None:
            arguments = "{}"
        elif not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(
            id=str(param.get("id") or ""),
            name=str(function.get("name") or ""),
            arguments_json=arguments,
        )


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message stored in conversation history.

    Attributes:
        role: The role of the message sender.
        content: Text content; ``None`` for assistant turns that only call tools.
        tool_calls: Tool calls made by an assistant turn.
        tool_call_id: ID linking a tool result to the call that produced it.
    """

    role: MessageRole
    content: str | None
    tool_calls: tuple[ToolCall, ...] | None = None
    tool_call_id: str | None = None

    def __post_init__(self) -> None:
        if self.tool_calls is not None and not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))
        if self.role == "tool" and not self.tool_call_id:
            raise ValueError("tool messages require a tool_call_id")
        if self.tool_calls and self.role != "assistant":
            raise ValueError("only assistant messages may carry tool calls")

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    def to_chat_param(self) -> ChatCompletionMessageParam:
        """Convert to OpenAI's ChatCompletionMessageParam format."""
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_chat_param() for call in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        return payload  # type: ignore[return-value]

    @classmethod
    def from_chat_param(cls, param: Mapping[str, Any]) -> Message:
        """Create a Message from OpenAI's ChatCompletionMessageParam format."""
        raw_calls = param.get("tool_calls")
        tool_calls = tuple(ToolCall.from_chat_param(call) for call in raw_calls) if raw_calls else None
        content = param.get("content")
        return cls(
            role=param.get("role", "user"),  # type: ignore[arg-type]
            content=None if content is None else str(content),
            tool_calls=tool_calls,
            tool_call_id=param.get("tool_call_id"),
        )

    @classmethod
    def system(cls, content: str) -> Message:
        """Create a system message."""
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        """Create a user message."""
        return cls(role="user", content=content)

    @classmethod
    def assistant(
        cls,
        content: str | None,
        tool_calls: Sequence[ToolCall] | None = None,
    ) -> Message:
        """Create an assistant message."""
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
        )

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> Message:
        """Create a tool result message."""
        return cls(role="tool", content=content, tool_call_id=tool_call_id)


# -----------------------------------------------------------------------------
# Tool Execution
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolExecutionRequest:
    """One entry of a tool dispatch batch."""

    name: str
    args: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", _freeze(self.args))


@dataclass(slots=True, frozen=True)
class ToolExecutionResult:
    """Outcome of a single dispatched tool call.

    ``metadata["isCompletion"]`` is the generic completion signal: any tool
    setting it ends the conversation with ``result`` as the final answer.

    Attributes:
        name: Name of the tool that was called.
        success: Whether execution succeeded.
        result: Result text when successful.
        error: Error message when failed.
        metadata: Extra flags attached by the tool.
    """

    name: str
    success: bool
    result: str | None = None
    error: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", _freeze(self.metadata))

    @property
    def is_completion(self) -> bool:
        return bool(self.metadata.get("isCompletion"))

    @classmethod
    def from_success(
        cls,
        name: str,
        result: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolExecutionResult:
        """Create a successful result."""
        return cls(name=name, success=True, result=result, metadata=metadata or {})

    @classmethod
    def from_error(cls, name: str, error: str) -> ToolExecutionResult:
        """Create a failed result."""
        return cls(name=name, success=False, error=error)


# -----------------------------------------------------------------------------
# Model Interaction
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolCallRequest:
    """Payload handed to the model client for one iteration."""

    messages: tuple[Message, ...]
    tools: tuple[ChatCompletionToolParam, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.messages, tuple):
            object.__setattr__(self, "messages", tuple(self.messages))
        if not isinstance(self.tools, tuple):
            object.__setattr__(self, "tools", tuple(self.tools))


@dataclass(slots=True, frozen=True)
class ToolCallResponse:
    """Model output for one iteration."""

    content: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls or ()))


# -----------------------------------------------------------------------------
# Runner Configuration
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class RunnerConfig:
    """Configuration for one conversation run.

    Attributes:
        system_prompt: System prompt prepended to every request.
        max_iterations: Maximum number of model requests.
        tools: Tool implementations offered to the model (empty disables tools).
        label: Optional label used to prefix log lines.
        requires_explicit_completion: If True, prose-only answers are nudged
            towards the completion tool instead of being accepted.
        completion_tool_name: Tool named in nudge prompts.
    """

    system_prompt: str
    max_iterations: int
    tools: tuple[Any, ...] = ()
    label: str | None = None
    requires_explicit_completion: bool = False
    completion_tool_name: str = "submit_review"

    def __post_init__(self) -> None:
        if not isinstance(self.tools, tuple):
            object.__setattr__(self, "tools", tuple(self.tools))
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

    @property
    def log_prefix(self) -> str:
        return f"[{self.label}]" if self.label else "[Conversation]"


# -----------------------------------------------------------------------------
# Budget
# -----------------------------------------------------------------------------


class BudgetAction(str, Enum):
    """Suggested action after evaluating the context window."""

    NONE = "none"
    REQUEST_FINAL_ANSWER = "request_final_answer"
    REMOVE_OLD_CONTEXT = "remove_old_context"


@dataclass(slots=True, frozen=True)
class TokenValidationResult:
    """Result of checking history against the model's input window."""

    total_tokens: int
    max_tokens: int
    exceeds_warning_threshold: bool
    exceeds_max_tokens: bool
    suggested_action: BudgetAction


@dataclass(slots=True, frozen=True)
class ContextCleanupResult:
    """Result of removing old tool interactions from history."""

    cleaned_messages: tuple[Message, ...]
    tool_results_removed: int = 0
    assistant_messages_removed: int = 0
    context_full_message_added: bool = False
