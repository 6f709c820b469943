"""Base classes for model-callable tools.

This module provides the tool specification, the result container and the
execution context shared by every tool the conversation runner can dispatch.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Mapping, Protocol, runtime_checkable

from openai.types.chat import ChatCompletionToolParam

if TYPE_CHECKING:  # pragma: no cover - typing helpers
    from ..agents.subagents.executor import SubagentExecutor
    from ..agents.subagents.session import SubagentSessionManager
    from ..orchestration.cancellation import CancellationToken

__all__ = [
    "ToolSpec",
    "ToolResult",
    "ToolArgumentError",
    "ExecutionContext",
    "Tool",
    "BaseTool",
    "tool_success",
    "tool_error",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: Human-readable description shown to the model.
        parameters: JSON Schema for the tool's parameters.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def to_openai_tool(self) -> ChatCompletionToolParam:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolResult:
    """Standardized result container for tool execution.

    Data is always text since tool responses go back to the model verbatim.

    Attributes:
        success: Whether the tool achieved its intended goal.
        data: Result text when successful.
        error: Error message when unsuccessful.
        metadata: Flags for the runner, e.g. ``isCompletion``.
    """

    success: bool
    data: str | None = None
    error: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


def tool_success(data: str, **metadata: Any) -> ToolResult:
    """Create a successful ToolResult."""
    return ToolResult(success=True, data=data, metadata=metadata)


def tool_error(error: str, **metadata: Any) -> ToolResult:
    """Create a failed ToolResult."""
    return ToolResult(success=False, error=error, metadata=metadata)


class ToolArgumentError(ValueError):
    """Raised when tool arguments fail validation."""


# -----------------------------------------------------------------------------
# Execution Context
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ExecutionContext:
    """Per-conversation dependencies handed to each tool call.

    Attributes:
        cancellation: Cancellation signal of the conversation running the tool.
        subagent_executor: Available to the main analysis only.
        subagent_session: Spawn bookkeeping, main analysis only.
    """

    cancellation: CancellationToken | None = None
    subagent_executor: SubagentExecutor | None = None
    subagent_session: SubagentSessionManager | None = None


# -----------------------------------------------------------------------------
# Tool Protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class Tool(Protocol):
    """Protocol for tool implementations."""

    @property
    def name(self) -> str:
        ...

    @property
    def spec(self) -> ToolSpec:
        ...

    async def execute(self, arguments: Mapping[str, Any], context: ExecutionContext) -> ToolResult:
        ...


class BaseTool(ABC):
    """Convenience base class providing spec construction and argument checks.

    Subclasses set ``name``, ``description`` and ``parameters`` and implement
    :meth:`run`. Validation failures become ``tool_error`` results rather than
    exceptions so the model sees what went wrong.
    """

    name: ClassVar[str]
    description: ClassVar[str]
    parameters: ClassVar[Mapping[str, Any]] = {"type": "object", "properties": {}}
    min_length_messages: ClassVar[Mapping[str, str]] = {}

    @property
    def spec(self) -> ToolSpec:
        return ToolSpec(name=self.name, description=self.description, parameters=self.parameters)

    async def execute(self, arguments: Mapping[str, Any], context: ExecutionContext) -> ToolResult:
        try:
            self.validate(arguments)
        except ToolArgumentError as exc:
            LOGGER.debug("Tool %s rejected arguments: %s", self.name, exc)
            return tool_error(str(exc))
        return await self.run(arguments, context)

    def validate(self, arguments: Mapping[str, Any]) -> None:
        """Check required properties, string types and ``minLength``/``additionalProperties``."""
        properties: Mapping[str, Any] = self.parameters.get("properties", {})
        for required in self.parameters.get("required", ()):
            if arguments.get(required) in (None, ""):
                raise ToolArgumentError(f"Missing required parameter: {required}")
        if self.parameters.get("additionalProperties") is False:
            unknown = sorted(set(arguments) - set(properties))
            if unknown:
                raise ToolArgumentError(f"Unexpected parameter(s): {', '.join(unknown)}")
        for key, schema in properties.items():
            if key not in arguments or arguments[key] is None:
                continue
            value = arguments[key]
            if schema.get("type") == "string":
                if not isinstance(value, str):
                    raise ToolArgumentError(f"Parameter '{key}' must be a string")
                min_length = schema.get("minLength")
                if min_length and len(value) < int(min_length):
                    message = self.min_length_messages.get(key) or (
                        f"Parameter '{key}' must be at least {min_length} characters"
                    )
                    raise ToolArgumentError(message)

    @abstractmethod
    async def run(self, arguments: Mapping[str, Any], context: ExecutionContext) -> ToolResult:
        """Execute the tool with validated arguments."""
