"""Isolated subagent investigations."""

from .executor import DISALLOWED_TOOLS, SubagentExecutor, SubagentResult
from .prompts import SubagentPromptGenerator, parse_subagent_response
from .session import SubagentSessionManager

__all__ = [
    "SubagentExecutor",
    "SubagentResult",
    "SubagentSessionManager",
    "SubagentPromptGenerator",
    "parse_subagent_response",
    "DISALLOWED_TOOLS",
]
