"""Tool registry shared by the main analysis and its subagents.

This module provides a registry for managing tool registrations,
allowing tools to be registered, retrieved, listed and filtered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Collection, Iterator, Mapping

from openai.types.chat import ChatCompletionToolParam

from .base import Tool, ToolSpec

__all__ = [
    "ToolRegistry",
    "ToolRegistration",
    "DuplicateToolError",
    "ToolNotFoundError",
]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Exceptions
# -----------------------------------------------------------------------------


class DuplicateToolError(Exception):
    """Raised when attempting to register a tool with a name that already exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolNotFoundError(Exception):
    """Raised when a requested tool is not found in the registry."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


# -----------------------------------------------------------------------------
# Tool Registration
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ToolRegistration:
    """Record of a registered tool.

    Attributes:
        name: Tool name.
        tool: The tool implementation.
        spec: Tool specification.
        metadata: Additional registration metadata.
    """

    name: str
    tool: Tool
    spec: ToolSpec
    metadata: dict[str, Any] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Tool Registry
# -----------------------------------------------------------------------------


class ToolRegistry:
    """Registry for managing tool registrations.

    Registration order is preserved; it is the order tools are offered to
    the model.

    Example:
        registry = ToolRegistry()
        registry.register(SubmitReviewTool())
        registry.register(RunSubagentTool())

        # Subagents get everything except the spawner
        subagent_tools = registry.filtered(["run_subagent"])
    """

    def __init__(self, tools: Collection[Tool] = ()) -> None:
        self._tools: dict[str, ToolRegistration] = {}
        for tool in tools:
            self.register(tool)

    def register(
        self,
        tool: Tool,
        *,
        allow_override: bool = False,
        metadata: Mapping[str, Any] | None = None,
    ) -> ToolRegistration:
        """Register a tool implementation.

        Args:
            tool: The tool to register.
            allow_override: If True, allows overriding an existing registration.
            metadata: Additional metadata to store with the registration.

        Returns:
            The tool registration record.

        Raises:
            DuplicateToolError: If the name is already registered and
                ``allow_override`` is False.
        """
        name = tool.name
        if name in self._tools and not allow_override:
            raise DuplicateToolError(name)

        registration = ToolRegistration(
            name=name,
            tool=tool,
            spec=tool.spec,
            metadata=dict(metadata) if metadata else {},
        )
        self._tools[name] = registration
        LOGGER.debug("Registered tool: %s", name)
        return registration

    def unregister(self, name: str) -> bool:
        """Unregister a tool by name; returns False if it was not registered."""
        if name in self._tools:
            del self._tools[name]
            LOGGER.debug("Unregistered tool: %s", name)
            return True
        return False

    def get(self, name: str) -> Tool | None:
        registration = self._tools.get(name)
        return registration.tool if registration is not None else None

    def get_required(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError: If the tool is not registered.
        """
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_names(self) -> list[str]:
        return list(self._tools)

    def list_tools(self) -> list[Tool]:
        return [registration.tool for registration in self._tools.values()]

    def openai_tools(self) -> list[ChatCompletionToolParam]:
        """Tool definitions in OpenAI format, in registration order."""
        return [registration.spec.to_openai_tool() for registration in self._tools.values()]

    def filtered(self, disallowed: Collection[str]) -> ToolRegistry:
        """Return a new registry without the tools named in ``disallowed``.

        Args:
            disallowed: Names to exclude. Unknown names are ignored.

        Returns:
            A fresh registry; this one is left untouched.
        """
        blocked = set(disallowed)
        subset = ToolRegistry()
        for registration in self._tools.values():
            if registration.name in blocked:
                continue
            subset.register(registration.tool, metadata=registration.metadata)
        return subset

    def clear(self) -> None:
        """Remove all registered tools."""
        self._tools.clear()

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[Tool]:
        return iter(self.list_tools())
