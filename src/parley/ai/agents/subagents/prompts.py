"""System prompts and response parsing for subagent investigations."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence

from ...tools.base import Tool

__all__ = ["SubagentPromptGenerator", "ParsedSubagentResponse", "parse_subagent_response"]

_SECTION_TEMPLATE = r"<{tag}>\s*(.*?)\s*</{tag}>"


@dataclass(slots=True, frozen=True)
class ParsedSubagentResponse:
    """Structured sections of a subagent's final answer.

    Missing sections fall back to the whole raw response so callers always
    have something to show.
    """

    findings: str
    summary: str
    answer: str
    structured: bool


def _section(text: str, tag: str) -> str | None:
    match = re.search(_SECTION_TEMPLATE.format(tag=tag), text, re.DOTALL | re.IGNORECASE)
    if match is None:
        return None
    body = match.group(1).strip()
    return body or None


def parse_subagent_response(text: str) -> ParsedSubagentResponse:
    raw = (text or "").strip()
    findings = _section(raw, "findings")
    summary = _section(raw, "summary")
    answer = _section(raw, "answer")
    return ParsedSubagentResponse(
        findings=findings or raw,
        summary=summary or raw,
        answer=answer or raw,
        structured=any(part is not None for part in (findings, summary, answer)),
    )


class SubagentPromptGenerator:
    """Builds the focused system prompt a subagent runs under."""

    def generate_system_prompt(
        self,
        task: str,
        tools: Sequence[Tool],
        max_iterations: int,
        *,
        context: str | None = None,
    ) -> str:
        context_section = context.strip() if context and context.strip() else "No additional context provided."
        return f"""You are a focused investigation subagent. Your job is to thoroughly investigate a specific question and return actionable findings.

## Your Task
{task}

## Context from Parent Analysis
{context_section}

## Available Tools
{self.format_tool_list(tools)}

## Instructions

1. **Parse the Task**: Identify what needs to be investigated and what deliverables are expected.

2. **Investigate Systematically**: Orient yourself first, then go deep on the specific code, then trace its impact.

3. **Be Proactive**: If the task is unclear, use tools to gather context that helps clarify it.

4. **Be Efficient**: You have a limited budget of {max_iterations} model turns. Prioritize the most impactful investigations.

5. **Return Structured Results**:

<findings>
Detailed findings with evidence:
- Include file paths and line numbers
- Quote relevant code snippets
- Explain implications
</findings>

<summary>
2-3 sentence executive summary of the most important discoveries.
</summary>

<answer>
If the task posed a specific question, provide a direct answer here.
</answer>

## Important
- Focus only on the assigned task
- Return your findings when you have sufficient evidence
- If you cannot find relevant information, explain what you searched and why it wasn't found"""

    @staticmethod
    def format_tool_list(tools: Sequence[Tool]) -> str:
        if not tools:
            return "No tools available."
        lines = []
        for tool in tools:
            description = tool.spec.description.split("\n", 1)[0]
            lines.append(f"- **{tool.name}**: {description}")
        return "\n".join(lines)
